from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from web3 import Web3


def _checksum(value: str) -> str:
    if not Web3.is_address(value):
        raise ValueError("Not a valid account address.")
    return Web3.to_checksum_address(value)


class EnterRaffleRequest(BaseModel):
    player: str = Field(..., description="Account paying the entrance fee.")
    value: int = Field(..., ge=0, description="Amount attached to the entry, in wei.")

    @field_validator("player")
    @classmethod
    def validate_player(cls, value: str) -> str:
        return _checksum(value)


class EnterRaffleResponse(BaseModel):
    player: str
    number_of_players: int


class UpkeepResponse(BaseModel):
    upkeep_needed: bool
    perform_data: str = "0x"


class PerformUpkeepResponse(BaseModel):
    request_id: int


class FulfillRequest(BaseModel):
    random_words: Optional[List[int]] = Field(
        None, description="Override the derived words; only honoured by the local coordinator."
    )

    @field_validator("random_words")
    @classmethod
    def validate_words(cls, value: Optional[List[int]]) -> Optional[List[int]]:
        if value is None:
            return value
        if not value:
            raise ValueError("random_words must not be empty.")
        for word in value:
            if word < 0 or word >= 2**256:
                raise ValueError("random words must be uint256 values.")
        return value


class FulfillResponse(BaseModel):
    request_id: int
    success: bool
    error_code: Optional[str] = None
    raffle_state: str
    recent_winner: Optional[str] = None


class FundAccountRequest(BaseModel):
    amount: int = Field(..., gt=0)


class AccountUpdateRequest(BaseModel):
    accepts_transfers: bool


class ForceResetRequest(BaseModel):
    operator: str = Field("admin", min_length=1, max_length=64)


class ForceResetResponse(BaseModel):
    cancelled_request_id: Optional[int] = None
    raffle_state: str
