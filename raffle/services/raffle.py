from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select

from ..config import RaffleSettings
from ..errors import (
    InsufficientFee,
    NothingToReset,
    OnlyCoordinatorCanFulfill,
    PayoutFailed,
    RaffleInvariantError,
    RoundNotOpen,
    UnexpectedRequest,
    UpkeepNotNeeded,
)
from ..models import RaffleEntry, RaffleRound, RaffleState
from .coordinator import RandomnessCoordinator
from .ledger import Ledger, normalise_address

Clock = Callable[[], int]

logger = logging.getLogger("chainraffle.raffle")


def system_clock() -> int:
    return int(time.time())


class Raffle:
    """Entry admission, upkeep evaluation and winner selection for the singleton round.

    One instance wraps one ledger transaction: every public method either
    completes or raises, and the surrounding session scope rolls the whole
    operation back on any exception.
    """

    def __init__(
        self,
        settings: RaffleSettings,
        ledger: Ledger,
        coordinator: RandomnessCoordinator,
        clock: Optional[Clock] = None,
        address: Optional[str] = None,
    ) -> None:
        self._settings = settings
        self._ledger = ledger
        self._session = ledger.session
        self._coordinator = coordinator
        self._clock = clock or system_clock
        self._address = normalise_address(address or settings.raffle_address)

    @property
    def address(self) -> str:
        return self._address

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    @property
    def coordinator(self) -> RandomnessCoordinator:
        return self._coordinator

    def _round(self, lock: bool = False) -> RaffleRound:
        if lock:
            # Serialise writers on the round row; refresh whatever the session already holds.
            round_ = self._session.get(RaffleRound, 1, with_for_update=True, populate_existing=True)
        else:
            round_ = self._session.get(RaffleRound, 1)
        if round_ is None:
            raise RuntimeError("Raffle has not been deployed; call deploy() first.")
        return round_

    def _players(self) -> List[str]:
        query = select(RaffleEntry.player).order_by(RaffleEntry.id)
        return list(self._session.scalars(query))

    # --------------------------------------------------------------------- #
    # Admission
    # --------------------------------------------------------------------- #

    def enter(self, sender: str, amount: int) -> int:
        round_ = self._round(lock=True)
        if amount < int(round_.entrance_fee):
            raise InsufficientFee(amount, int(round_.entrance_fee))
        if round_.raffle_state != RaffleState.OPEN:
            raise RoundNotOpen()

        player = normalise_address(sender)
        self._ledger.pay_in(player, self._address, amount)
        self._session.add(RaffleEntry(player=player))
        self._session.flush()
        self._ledger.emit(self._address, "Entered", player=player)
        logger.info("%s entered the raffle with %s", player, amount)
        return self.get_number_of_players()

    # --------------------------------------------------------------------- #
    # Readiness
    # --------------------------------------------------------------------- #

    def check_upkeep(self) -> Tuple[bool, bytes]:
        round_ = self._round()
        time_passed = self._clock() - int(round_.last_timestamp) >= int(round_.interval)
        is_open = round_.raffle_state == RaffleState.OPEN
        has_balance = self.get_balance() > 0
        has_players = self.get_number_of_players() > 0
        return (time_passed and is_open and has_balance and has_players), b""

    # --------------------------------------------------------------------- #
    # Draw controller
    # --------------------------------------------------------------------- #

    def perform_upkeep(self, perform_data: bytes = b"") -> int:
        round_ = self._round(lock=True)
        upkeep_needed, _ = self.check_upkeep()
        if not upkeep_needed:
            raise UpkeepNotNeeded(self.get_balance(), self.get_number_of_players(), round_.state)

        round_.state = int(RaffleState.CALCULATING)
        self._session.flush()
        request_id = self._coordinator.request_random_words(
            consumer=self._address,
            key_hash=round_.key_hash,
            subscription_id=int(round_.subscription_id),
            request_confirmations=self._settings.request_confirmations,
            callback_gas_limit=int(round_.callback_gas_limit),
            num_words=self._settings.num_words,
        )
        round_.pending_request_id = request_id
        self._session.flush()
        self._ledger.emit(self._address, "RequestedRaffleWinner", request_id=request_id)
        logger.info("Requested randomness %s for %s players", request_id, self.get_number_of_players())
        return request_id

    def raw_fulfill_random_words(self, caller: str, request_id: int, random_words: Sequence[int]) -> None:
        coordinator = normalise_address(self._round().coordinator_address)
        if normalise_address(caller) != coordinator:
            raise OnlyCoordinatorCanFulfill(caller, coordinator)
        self.fulfill_random_words(request_id, random_words)

    def fulfill_random_words(self, request_id: int, random_words: Sequence[int]) -> str:
        round_ = self._round(lock=True)
        if round_.pending_request_id != request_id:
            raise UnexpectedRequest(request_id, round_.pending_request_id)

        players = self._players()
        if not players:
            raise RaffleInvariantError(f"request {request_id} fulfilled with no players in the round")
        if not random_words:
            raise RaffleInvariantError(f"request {request_id} delivered no random words")

        winner = players[int(random_words[0]) % len(players)]

        # Reset the round before paying out so a re-entering recipient sees a clean round.
        round_.recent_winner = winner
        self._session.execute(delete(RaffleEntry))
        round_.last_timestamp = self._clock()
        round_.state = int(RaffleState.OPEN)
        round_.pending_request_id = None
        self._session.flush()
        self._ledger.emit(self._address, "WinnerPicked", winner=winner)

        prize = self.get_balance()
        if not self._ledger.transfer(self._address, winner, prize):
            raise PayoutFailed(winner, prize)
        logger.info("Request %s picked %s out of %s players, paid %s", request_id, winner, len(players), prize)
        return winner

    def force_reset(self, operator: str) -> Optional[int]:
        """Reopen a round stuck in CALCULATING without drawing or refunding.

        Entries, pooled balance and the interval timer are left untouched, so
        the next upkeep draws the same round again with a fresh request.
        """
        round_ = self._round(lock=True)
        if round_.raffle_state != RaffleState.CALCULATING:
            raise NothingToReset()

        request_id = round_.pending_request_id
        if request_id is not None:
            self._coordinator.cancel_request(request_id)
        round_.pending_request_id = None
        round_.state = int(RaffleState.OPEN)
        self._session.flush()
        self._ledger.emit(self._address, "RaffleReset", request_id=request_id, operator=operator)
        logger.warning("Operator %s reset stuck draw (request %s)", operator, request_id)
        return request_id

    # --------------------------------------------------------------------- #
    # Views
    # --------------------------------------------------------------------- #

    def get_entrance_fee(self) -> int:
        return int(self._round().entrance_fee)

    def get_interval(self) -> int:
        return int(self._round().interval)

    def get_raffle_state(self) -> RaffleState:
        return self._round().raffle_state

    def get_player(self, index: int) -> str:
        if index < 0:
            raise IndexError(index)
        query = select(RaffleEntry.player).order_by(RaffleEntry.id).offset(index).limit(1)
        player = self._session.scalars(query).first()
        if player is None:
            raise IndexError(index)
        return player

    def get_players(self) -> List[str]:
        return self._players()

    def get_number_of_players(self) -> int:
        return int(self._session.scalar(select(func.count(RaffleEntry.id))) or 0)

    def get_recent_winner(self) -> Optional[str]:
        return self._round().recent_winner

    def get_last_timestamp(self) -> int:
        return int(self._round().last_timestamp)

    def get_pending_request_id(self) -> Optional[int]:
        return self._round().pending_request_id

    def get_num_words(self) -> int:
        return self._settings.num_words

    def get_request_confirmations(self) -> int:
        return self._settings.request_confirmations

    def get_balance(self) -> int:
        return self._ledger.balance_of(self._address)

    def snapshot(self) -> dict:
        round_ = self._round()
        upkeep_needed, _ = self.check_upkeep()
        return {
            "address": self._address,
            "raffle_state": round_.raffle_state.name,
            "entrance_fee": str(round_.entrance_fee),
            "interval": int(round_.interval),
            "last_timestamp": int(round_.last_timestamp),
            "number_of_players": self.get_number_of_players(),
            "balance": str(self.get_balance()),
            "recent_winner": round_.recent_winner,
            "pending_request_id": round_.pending_request_id,
            "num_words": self._settings.num_words,
            "request_confirmations": self._settings.request_confirmations,
            "upkeep_needed": upkeep_needed,
        }
