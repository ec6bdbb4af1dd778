from __future__ import annotations

import datetime as dt
import json
from enum import IntEnum
from typing import Any, Dict

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


class Wei(TypeDecorator):
    """Arbitrary-size non-negative integer amounts stored as decimal strings."""

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class RaffleState(IntEnum):
    OPEN = 0
    CALCULATING = 1


class RequestStatus(IntEnum):
    PENDING = 0
    FULFILLED = 1
    CANCELLED = 2


class Account(Base):
    __tablename__ = "accounts"

    address = Column(String(42), primary_key=True)
    balance = Column(Wei, nullable=False, default=0)
    accepts_transfers = Column(Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "balance": str(self.balance),
            "accepts_transfers": self.accepts_transfers,
        }


class LedgerEvent(Base):
    __tablename__ = "ledger_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contract = Column(String(42), nullable=False, index=True)
    name = Column(String(64), nullable=False, index=True)
    args = Column(Text, nullable=False, default="{}")
    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)

    def set_args(self, args: Dict[str, Any]) -> None:
        self.args = json.dumps(args)

    def get_args(self) -> Dict[str, Any]:
        return json.loads(self.args)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contract": self.contract,
            "name": self.name,
            "args": self.get_args(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class RaffleRound(Base):
    __tablename__ = "raffle_round"

    id = Column(Integer, primary_key=True, default=1)
    state = Column(Integer, nullable=False, default=int(RaffleState.OPEN))
    last_timestamp = Column(BigInteger, nullable=False)
    recent_winner = Column(String(42), nullable=True)
    pending_request_id = Column(Integer, nullable=True)

    # Captured once at deployment, never written afterwards.
    raffle_address = Column(String(42), nullable=False)
    entrance_fee = Column(Wei, nullable=False)
    interval = Column(BigInteger, nullable=False)
    coordinator_address = Column(String(42), nullable=False)
    key_hash = Column(String(66), nullable=False)
    subscription_id = Column(Integer, nullable=False)
    callback_gas_limit = Column(Integer, nullable=False)

    @property
    def raffle_state(self) -> RaffleState:
        return RaffleState(self.state)


class RaffleEntry(Base):
    __tablename__ = "raffle_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    player = Column(String(42), nullable=False)


class Subscription(Base):
    __tablename__ = "vrf_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner = Column(String(42), nullable=False)
    balance = Column(Wei, nullable=False, default=0)
    consumers = Column(Text, nullable=False, default="[]")

    def get_consumers(self) -> list:
        return json.loads(self.consumers)

    def set_consumers(self, consumers: list) -> None:
        self.consumers = json.dumps(consumers)

    def to_dict(self) -> dict:
        return {
            "subscription_id": self.id,
            "owner": self.owner,
            "balance": str(self.balance),
            "consumers": self.get_consumers(),
        }


class RandomnessRequest(Base):
    __tablename__ = "vrf_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Integer, nullable=False)
    consumer = Column(String(42), nullable=False)
    key_hash = Column(String(66), nullable=False)
    request_confirmations = Column(Integer, nullable=False)
    callback_gas_limit = Column(Integer, nullable=False)
    num_words = Column(Integer, nullable=False)
    status = Column(Integer, nullable=False, default=int(RequestStatus.PENDING))
    success = Column(Boolean, nullable=True)
    error_code = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)
    fulfilled_at = Column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "request_id": self.id,
            "subscription_id": self.subscription_id,
            "consumer": self.consumer,
            "key_hash": self.key_hash,
            "request_confirmations": self.request_confirmations,
            "callback_gas_limit": self.callback_gas_limit,
            "num_words": self.num_words,
            "status": RequestStatus(self.status).name.lower(),
            "success": self.success,
            "error_code": self.error_code,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "fulfilled_at": self.fulfilled_at.isoformat() if self.fulfilled_at else None,
        }
