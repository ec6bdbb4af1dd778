from __future__ import annotations

import os
import pathlib
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv


def _bool_from_env(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_from_env(value: Optional[str], default: int) -> int:
    if value is None or value == "":
        return default
    return int(value)


@dataclass(frozen=True)
class KeeperSettings:
    api_url: str = "http://localhost:5000"
    poll_interval_seconds: int = 15
    run_once: bool = False
    state_file: str = "keeper_state.json"
    timeout_seconds: int = 10
    auto_fulfill: bool = False
    provider_token: Optional[str] = None

    def copy(self, **updates) -> "KeeperSettings":
        return replace(self, **updates)


def load_from_environment() -> KeeperSettings:
    return KeeperSettings(
        api_url=os.getenv("RAFFLE_API_URL", "http://localhost:5000").rstrip("/"),
        poll_interval_seconds=_int_from_env(os.getenv("POLL_INTERVAL_SECONDS"), 15),
        run_once=_bool_from_env(os.getenv("KEEPER_RUN_ONCE"), False),
        state_file=os.getenv("KEEPER_STATE_FILE", "keeper_state.json"),
        timeout_seconds=_int_from_env(os.getenv("KEEPER_TIMEOUT_SECONDS"), 10),
        auto_fulfill=_bool_from_env(os.getenv("KEEPER_AUTO_FULFILL"), False),
        provider_token=os.getenv("PROVIDER_TOKEN") or None,
    )


@lru_cache(maxsize=1)
def load_config(dotenv_path: Optional[str] = None) -> KeeperSettings:
    if dotenv_path:
        load_dotenv(dotenv_path)
    else:
        default_path = pathlib.Path(".env")
        if default_path.exists():
            load_dotenv(default_path)
    return load_from_environment()
