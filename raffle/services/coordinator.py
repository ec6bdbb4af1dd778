from __future__ import annotations

import datetime as dt
import logging
from typing import List, Optional, Protocol, Sequence

from sqlalchemy import select
from web3 import Web3

from ..errors import (
    InvalidConsumer,
    InvalidSubscription,
    InsufficientSubscriptionBalance,
    NonexistentRequest,
    RaffleInvariantError,
)
from ..models import RandomnessRequest, RequestStatus, Subscription
from .ledger import Ledger, normalise_address

logger = logging.getLogger("chainraffle.coordinator")

MAX_REQUEST_CONFIRMATIONS = 200
MAX_NUM_WORDS = 500


class RandomnessConsumer(Protocol):
    @property
    def address(self) -> str:
        ...

    def raw_fulfill_random_words(self, caller: str, request_id: int, random_words: Sequence[int]) -> None:
        ...


def derive_random_words(request_id: int, num_words: int) -> List[int]:
    """Deterministic words, ``keccak256(abi.encode(request_id, i))`` for each index."""
    return [
        int.from_bytes(Web3.solidity_keccak(["uint256", "uint256"], [request_id, index]), "big")
        for index in range(num_words)
    ]


class RandomnessCoordinator:
    """Local request/callback randomness provider with prepaid subscriptions.

    Fulfilment is charged to the subscription (``base_fee`` plus
    ``gas_price_link`` per unit of the request's callback gas budget), never to
    the consumer's own balance. A consumer callback that fails is rolled back on
    its own; the request is still consumed and reported with ``success=False``
    along with the consumer's error code.
    """

    def __init__(self, ledger: Ledger, address: str, base_fee: int, gas_price_link: int) -> None:
        self._ledger = ledger
        self._session = ledger.session
        self._address = normalise_address(address)
        self._base_fee = base_fee
        self._gas_price_link = gas_price_link

    @property
    def address(self) -> str:
        return self._address

    def create_subscription(self, owner: str) -> int:
        subscription = Subscription(owner=normalise_address(owner), balance=0)
        subscription.set_consumers([])
        self._session.add(subscription)
        self._session.flush()
        self._ledger.emit(self._address, "SubscriptionCreated", sub_id=subscription.id, owner=subscription.owner)
        return int(subscription.id)

    def get_subscription(self, subscription_id: int) -> Subscription:
        subscription = self._session.get(Subscription, subscription_id)
        if subscription is None:
            raise InvalidSubscription(subscription_id)
        return subscription

    def fund_subscription(self, subscription_id: int, amount: int) -> int:
        if amount <= 0:
            raise ValueError("Funding amount must be positive.")
        subscription = self.get_subscription(subscription_id)
        old_balance = int(subscription.balance)
        subscription.balance = old_balance + amount
        self._session.flush()
        self._ledger.emit(
            self._address,
            "SubscriptionFunded",
            sub_id=subscription.id,
            old_balance=str(old_balance),
            new_balance=str(subscription.balance),
        )
        return int(subscription.balance)

    def add_consumer(self, subscription_id: int, consumer: str) -> None:
        subscription = self.get_subscription(subscription_id)
        consumer = normalise_address(consumer)
        consumers = subscription.get_consumers()
        if consumer in consumers:
            return
        consumers.append(consumer)
        subscription.set_consumers(consumers)
        self._session.flush()
        self._ledger.emit(self._address, "ConsumerAdded", sub_id=subscription.id, consumer=consumer)

    def consumer_is_added(self, subscription_id: int, consumer: str) -> bool:
        subscription = self._session.get(Subscription, subscription_id)
        if subscription is None:
            return False
        return normalise_address(consumer) in subscription.get_consumers()

    def request_random_words(
        self,
        consumer: str,
        key_hash: str,
        subscription_id: int,
        request_confirmations: int,
        callback_gas_limit: int,
        num_words: int,
    ) -> int:
        subscription = self.get_subscription(subscription_id)
        consumer = normalise_address(consumer)
        if consumer not in subscription.get_consumers():
            raise InvalidConsumer(subscription_id, consumer)
        if not 0 < request_confirmations <= MAX_REQUEST_CONFIRMATIONS:
            raise ValueError(f"request_confirmations must be in 1..{MAX_REQUEST_CONFIRMATIONS}")
        if not 0 < num_words <= MAX_NUM_WORDS:
            raise ValueError(f"num_words must be in 1..{MAX_NUM_WORDS}")

        request = RandomnessRequest(
            subscription_id=subscription_id,
            consumer=consumer,
            key_hash=key_hash,
            request_confirmations=request_confirmations,
            callback_gas_limit=callback_gas_limit,
            num_words=num_words,
            status=int(RequestStatus.PENDING),
        )
        self._session.add(request)
        self._session.flush()
        self._ledger.emit(
            self._address,
            "RandomWordsRequested",
            key_hash=key_hash,
            request_id=request.id,
            sub_id=subscription_id,
            minimum_request_confirmations=request_confirmations,
            callback_gas_limit=callback_gas_limit,
            num_words=num_words,
            sender=consumer,
        )
        logger.info("Randomness request %s registered for %s", request.id, consumer)
        return int(request.id)

    def _pending(self, request_id: int) -> RandomnessRequest:
        request = self._session.get(RandomnessRequest, request_id)
        if request is None or request.status != int(RequestStatus.PENDING):
            raise NonexistentRequest(request_id)
        return request

    def pending_requests(self) -> List[RandomnessRequest]:
        query = (
            select(RandomnessRequest)
            .where(RandomnessRequest.status == int(RequestStatus.PENDING))
            .order_by(RandomnessRequest.id)
        )
        return list(self._session.scalars(query))

    def get_request(self, request_id: int) -> Optional[RandomnessRequest]:
        return self._session.get(RandomnessRequest, request_id)

    def fulfill_random_words(
        self,
        request_id: int,
        consumer: RandomnessConsumer,
        words: Optional[Sequence[int]] = None,
    ) -> bool:
        request = self._pending(request_id)
        if normalise_address(consumer.address) != request.consumer:
            raise InvalidConsumer(request.subscription_id, consumer.address)

        if words is None:
            random_words = derive_random_words(request.id, request.num_words)
        else:
            random_words = [int(word) for word in words]
            if len(random_words) != request.num_words:
                raise ValueError(f"Expected {request.num_words} random words, got {len(random_words)}")

        subscription = self.get_subscription(request.subscription_id)
        payment = self._base_fee + self._gas_price_link * request.callback_gas_limit
        if int(subscription.balance) < payment:
            raise InsufficientSubscriptionBalance(subscription.id, int(subscription.balance), payment)

        success = True
        error_code = None
        try:
            with self._session.begin_nested():
                consumer.raw_fulfill_random_words(self._address, request.id, random_words)
        except RaffleInvariantError:
            raise
        except Exception as exc:
            logger.exception("Consumer %s failed to handle request %s", request.consumer, request.id)
            success = False
            error_code = getattr(exc, "code", None) or type(exc).__name__

        request.status = int(RequestStatus.FULFILLED)
        request.success = success
        request.error_code = error_code
        request.fulfilled_at = dt.datetime.utcnow()
        subscription.balance = int(subscription.balance) - payment
        self._session.flush()
        self._ledger.emit(
            self._address,
            "RandomWordsFulfilled",
            request_id=request.id,
            output_seed=str(random_words[0]),
            payment=str(payment),
            success=success,
        )
        return success

    def cancel_request(self, request_id: int) -> bool:
        request = self._session.get(RandomnessRequest, request_id)
        if request is None or request.status != int(RequestStatus.PENDING):
            return False
        request.status = int(RequestStatus.CANCELLED)
        self._session.flush()
        self._ledger.emit(self._address, "RequestCancelled", request_id=request.id)
        logger.info("Randomness request %s cancelled", request.id)
        return True
