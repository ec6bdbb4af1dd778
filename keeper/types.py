from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional


class RaffleState(IntEnum):
    OPEN = 0
    CALCULATING = 1


@dataclass(frozen=True)
class UpkeepCheck:
    upkeep_needed: bool
    perform_data: str = "0x"


@dataclass(frozen=True)
class RaffleSnapshot:
    raffle_state: RaffleState
    number_of_players: int
    balance: int
    last_timestamp: int
    interval: int
    recent_winner: Optional[str]
    pending_request_id: Optional[int]
