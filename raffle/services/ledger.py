from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session
from web3 import Web3

from ..errors import InsufficientFunds
from ..models import Account, LedgerEvent

# Called with the amount being received; returning False rejects the transfer.
ReceiveHook = Callable[[int], bool]

logger = logging.getLogger("chainraffle.ledger")


def normalise_address(address: str) -> str:
    if not Web3.is_address(address):
        raise ValueError(f"Invalid account address: {address!r}")
    return Web3.to_checksum_address(address)


class Ledger:
    """Account balances and event log of the host ledger, bound to one session."""

    def __init__(self, session: Session, receivers: Optional[Mapping[str, ReceiveHook]] = None) -> None:
        self._session = session
        self._receivers: Dict[str, ReceiveHook] = {
            normalise_address(address): hook for address, hook in (receivers or {}).items()
        }

    @property
    def session(self) -> Session:
        return self._session

    def register_receiver(self, address: str, hook: ReceiveHook) -> None:
        self._receivers[normalise_address(address)] = hook

    def _account(self, address: str) -> Account:
        address = normalise_address(address)
        account = self._session.get(Account, address)
        if account is None:
            account = Account(address=address, balance=0, accepts_transfers=True)
            self._session.add(account)
            self._session.flush()
        return account

    def get_account(self, address: str) -> Account:
        """Look up an account; unknown addresses read as an empty, unsaved account."""
        address = normalise_address(address)
        account = self._session.get(Account, address)
        if account is None:
            return Account(address=address, balance=0, accepts_transfers=True)
        return account

    def balance_of(self, address: str) -> int:
        account = self._session.get(Account, normalise_address(address))
        return int(account.balance) if account is not None else 0

    def mint(self, address: str, amount: int) -> int:
        if amount <= 0:
            raise ValueError("Minted amount must be positive.")
        account = self._account(address)
        account.balance = int(account.balance) + int(amount)
        self._session.flush()
        return int(account.balance)

    def set_accepts_transfers(self, address: str, accepts: bool) -> Account:
        account = self._account(address)
        account.accepts_transfers = bool(accepts)
        self._session.flush()
        return account

    def pay_in(self, sender: str, recipient: str, amount: int) -> None:
        """Move value attached to a call; the caller's whole operation fails if it cannot be covered."""
        source = self._account(sender)
        if amount < 0:
            raise ValueError("Amount must not be negative.")
        if int(source.balance) < amount:
            raise InsufficientFunds(source.address, int(source.balance), amount)
        target = self._account(recipient)
        source.balance = int(source.balance) - amount
        target.balance = int(target.balance) + amount
        self._session.flush()

    def transfer(self, sender: str, recipient: str, amount: int) -> bool:
        source = self._account(sender)
        target = self._account(recipient)
        if amount < 0 or int(source.balance) < amount:
            logger.warning("Transfer of %s from %s refused: balance %s", amount, source.address, source.balance)
            return False
        if not target.accepts_transfers:
            logger.warning("Transfer of %s to %s rejected by recipient", amount, target.address)
            return False

        source.balance = int(source.balance) - amount
        target.balance = int(target.balance) + amount
        self._session.flush()

        hook = self._receivers.get(target.address)
        if hook is not None and not hook(amount):
            logger.warning("Receive hook of %s rejected %s", target.address, amount)
            source.balance = int(source.balance) + amount
            target.balance = int(target.balance) - amount
            self._session.flush()
            return False
        return True

    def emit(self, contract: str, name: str, **args: Any) -> LedgerEvent:
        event = LedgerEvent(contract=normalise_address(contract), name=name)
        event.set_args(args)
        self._session.add(event)
        self._session.flush()
        logger.debug("%s emitted %s %s", event.contract, name, args)
        return event

    def events(self, name: Optional[str] = None, limit: Optional[int] = None) -> List[LedgerEvent]:
        query = select(LedgerEvent).order_by(LedgerEvent.id.desc())
        if name:
            query = query.where(LedgerEvent.name == name)
        if limit:
            query = query.limit(limit)
        return list(self._session.scalars(query))
