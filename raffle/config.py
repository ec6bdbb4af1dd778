from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

DEFAULT_RAFFLE_ADDRESS = "0x" + "0" * 39 + "1"
DEFAULT_COORDINATOR_ADDRESS = "0x" + "0" * 39 + "2"
# 30 gwei gas lane on Sepolia; any 32-byte value works against the local coordinator.
DEFAULT_KEY_HASH = "0x474e34a077df58807dbe9c96d3c009b23b3c6d0cce433e59bbf5b34f823bc56c"


def _int_from_env(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return int(value)


@dataclass(frozen=True)
class FlaskSettings:
    secret_key: str = "chainraffle-dev-secret"
    debug: bool = True


@dataclass(frozen=True)
class RaffleSettings:
    entrance_fee: int = 10**16
    interval: int = 30
    raffle_address: str = DEFAULT_RAFFLE_ADDRESS
    coordinator_address: str = DEFAULT_COORDINATOR_ADDRESS
    key_hash: str = DEFAULT_KEY_HASH
    subscription_id: Optional[int] = None
    callback_gas_limit: int = 500000
    request_confirmations: int = 3
    num_words: int = 1
    coordinator_base_fee: int = 25 * 10**16
    coordinator_gas_price_link: int = 10**9
    subscription_fund_amount: int = 10**21


@dataclass(frozen=True)
class AppSettings:
    flask: FlaskSettings = field(default_factory=FlaskSettings)
    raffle: RaffleSettings = field(default_factory=RaffleSettings)
    database_url: str = "sqlite:///chainraffle.db"
    admin_api_key: Optional[str] = None
    provider_token: Optional[str] = None


@lru_cache(maxsize=1)
def load_settings(dotenv_path: Optional[str] = None) -> AppSettings:
    if dotenv_path:
        load_dotenv(dotenv_path)
    else:
        load_dotenv()

    flask_settings = FlaskSettings(
        secret_key=os.getenv("FLASK_SECRET_KEY", "chainraffle-dev-secret"),
        debug=os.getenv("FLASK_DEBUG", "1") == "1",
    )

    subscription_id = os.getenv("VRF_SUBSCRIPTION_ID")
    raffle_settings = RaffleSettings(
        entrance_fee=_int_from_env("RAFFLE_ENTRANCE_FEE", 10**16),
        interval=_int_from_env("RAFFLE_INTERVAL", 30),
        raffle_address=os.getenv("RAFFLE_ADDRESS", DEFAULT_RAFFLE_ADDRESS),
        coordinator_address=os.getenv("VRF_COORDINATOR_ADDRESS", DEFAULT_COORDINATOR_ADDRESS),
        key_hash=os.getenv("VRF_KEY_HASH", DEFAULT_KEY_HASH),
        subscription_id=int(subscription_id) if subscription_id else None,
        callback_gas_limit=_int_from_env("VRF_CALLBACK_GAS_LIMIT", 500000),
        coordinator_base_fee=_int_from_env("VRF_BASE_FEE", 25 * 10**16),
        coordinator_gas_price_link=_int_from_env("VRF_GAS_PRICE_LINK", 10**9),
        subscription_fund_amount=_int_from_env("VRF_SUBSCRIPTION_FUND_AMOUNT", 10**21),
    )
    if raffle_settings.entrance_fee <= 0:
        raise RuntimeError("RAFFLE_ENTRANCE_FEE must be positive")
    if raffle_settings.interval < 0:
        raise RuntimeError("RAFFLE_INTERVAL must not be negative")

    return AppSettings(
        flask=flask_settings,
        raffle=raffle_settings,
        database_url=os.getenv("DATABASE_URL", "sqlite:///chainraffle.db"),
        admin_api_key=os.getenv("ADMIN_API_KEY"),
        provider_token=os.getenv("PROVIDER_TOKEN"),
    )
