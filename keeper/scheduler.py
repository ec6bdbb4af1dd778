from __future__ import annotations

import asyncio
import json
import logging
import pathlib
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from .config import KeeperSettings
from .raffle_client import RaffleApiError
from .types import UpkeepCheck


class RaffleClientProtocol(Protocol):
    async def check_upkeep(self) -> UpkeepCheck:
        ...

    async def perform_upkeep(self) -> int:
        ...

    async def fulfill(self, request_id: int) -> Dict[str, Any]:
        ...

    async def close(self) -> None:
        ...


@dataclass
class KeeperResult:
    request_id: int
    fulfilled: bool = False
    success: Optional[bool] = None
    winner: Optional[str] = None


class KeeperStateStore:
    """Very small persistence layer so a restarted keeper does not fulfil twice."""

    def __init__(self, path: str) -> None:
        self._path = pathlib.Path(path)

    def load(self) -> Dict[str, Optional[int]]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, last_request_id: Optional[int], last_fulfilled_id: Optional[int]) -> None:
        payload = {"last_request_id": last_request_id, "last_fulfilled_id": last_fulfilled_id}
        self._path.write_text(json.dumps(payload), encoding="utf-8")


class KeeperScheduler:
    def __init__(
        self,
        settings: KeeperSettings,
        client: RaffleClientProtocol,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._state = KeeperStateStore(settings.state_file)
        stored = self._state.load()
        self._last_request_id: Optional[int] = stored.get("last_request_id")
        self._last_fulfilled_id: Optional[int] = stored.get("last_fulfilled_id")
        self._logger = logger or logging.getLogger("chainraffle.keeper")

    async def run_forever(self) -> None:
        interval = self._settings.poll_interval_seconds
        self._logger.info("Keeper loop started; poll interval=%s", interval)
        while True:
            try:
                await self._attempt_upkeep()
            except Exception as exc:
                self._logger.exception("Keeper iteration failed: %s", exc)
            await asyncio.sleep(interval)

    async def run_once(self) -> Optional[KeeperResult]:
        try:
            return await self._attempt_upkeep()
        finally:
            await self._client.close()

    def _persist(self) -> None:
        self._state.save(self._last_request_id, self._last_fulfilled_id)

    async def _attempt_upkeep(self) -> Optional[KeeperResult]:
        if self._settings.auto_fulfill and self._has_unfulfilled_request():
            self._logger.info("Resuming fulfilment of request %s", self._last_request_id)
            return await self._fulfill(self._last_request_id)

        check = await self._client.check_upkeep()
        if not check.upkeep_needed:
            self._logger.debug("Upkeep not needed; waiting.")
            return None

        try:
            request_id = await self._client.perform_upkeep()
        except RaffleApiError as exc:
            if exc.code == "upkeep_not_needed":
                self._logger.info("Upkeep was performed elsewhere first: %s", exc.payload)
                return None
            raise

        self._logger.info("performUpkeep issued randomness request %s", request_id)
        self._last_request_id = request_id
        self._persist()

        if not self._settings.auto_fulfill:
            return KeeperResult(request_id=request_id)
        return await self._fulfill(request_id)

    def _has_unfulfilled_request(self) -> bool:
        return self._last_request_id is not None and self._last_request_id != self._last_fulfilled_id

    async def _fulfill(self, request_id: int) -> KeeperResult:
        try:
            outcome = await self._client.fulfill(request_id)
        except RaffleApiError as exc:
            if exc.code != "nonexistent_request":
                raise
            self._logger.warning("Request %s is no longer pending; forgetting it.", request_id)
            self._last_fulfilled_id = request_id
            self._persist()
            return KeeperResult(request_id=request_id)

        self._last_fulfilled_id = request_id
        self._persist()
        success = bool(outcome.get("success"))
        if success:
            self._logger.info("Request %s fulfilled; winner %s", request_id, outcome.get("recent_winner"))
        else:
            self._logger.warning("Request %s fulfilled but the raffle rejected the callback", request_id)
        return KeeperResult(
            request_id=request_id,
            fulfilled=True,
            success=success,
            winner=outcome.get("recent_winner") if success else None,
        )
