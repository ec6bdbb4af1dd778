from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from flask import current_app

from .. import db
from ..config import AppSettings
from ..services.deployment import build_raffle
from ..services.raffle import Raffle


def get_app_settings() -> AppSettings:
    return current_app.config["APP_SETTINGS"]


@contextmanager
def raffle_scope() -> Iterator[Raffle]:
    """One ledger transaction around a raffle bound to the app's settings and clock."""
    settings = get_app_settings()
    with db.session_scope() as session:
        yield build_raffle(session, settings.raffle, clock=current_app.config["RAFFLE_CLOCK"])
