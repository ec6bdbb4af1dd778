from __future__ import annotations

import unittest
from typing import Optional

from sqlalchemy.orm import sessionmaker
from web3 import Web3

from raffle.config import RaffleSettings
from raffle.db import build_engine, build_session_scope
from raffle.models import Base
from raffle.services.deployment import build_raffle, deploy

FEE = 100
INTERVAL = 60
START = 1_700_000_000

PLAYER_A = Web3.to_checksum_address("0x" + "a1" * 20)
PLAYER_B = Web3.to_checksum_address("0x" + "b2" * 20)
PLAYER_C = Web3.to_checksum_address("0x" + "c3" * 20)
OUTSIDER = Web3.to_checksum_address("0x" + "de" * 20)


class FakeClock:
    def __init__(self, now: int = START) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


def make_settings(**overrides) -> RaffleSettings:
    values = dict(entrance_fee=FEE, interval=INTERVAL)
    values.update(overrides)
    return RaffleSettings(**values)


class RaffleTestCase(unittest.TestCase):
    settings_overrides: dict = {}

    def setUp(self) -> None:
        self.engine = build_engine("sqlite+pysqlite:///:memory:")
        Base.metadata.create_all(self.engine)
        self.session_scope = build_session_scope(
            sessionmaker(bind=self.engine, autoflush=False, future=True)
        )
        self.clock = FakeClock()
        self.settings = make_settings(**self.settings_overrides)
        with self.session_scope() as session:
            deploy(session, self.settings, clock=self.clock)

    def tearDown(self) -> None:
        self.engine.dispose()

    def raffle(self, session, receivers: Optional[dict] = None):
        return build_raffle(session, self.settings, clock=self.clock, receivers=receivers)

    def fund(self, *players: str, amount: int = 10 * FEE) -> None:
        with self.session_scope() as session:
            ledger = self.raffle(session).ledger
            for player in players:
                ledger.mint(player, amount)

    def enter(self, *players: str, amount: int = FEE) -> None:
        with self.session_scope() as session:
            raffle = self.raffle(session)
            for player in players:
                raffle.enter(player, amount)

    def request_draw(self) -> int:
        self.clock.advance(INTERVAL + 1)
        with self.session_scope() as session:
            return self.raffle(session).perform_upkeep()

    def balance_of(self, address: str) -> int:
        with self.session_scope() as session:
            return self.raffle(session).ledger.balance_of(address)
