from __future__ import annotations

import asyncio
from typing import Any, Dict, Mapping, Optional

import requests

from .config import KeeperSettings
from .types import RaffleSnapshot, RaffleState, UpkeepCheck


class RaffleApiError(RuntimeError):
    """Non-2xx answer from the raffle API, carrying its JSON error body."""

    def __init__(self, status_code: int, payload: Mapping[str, Any]) -> None:
        super().__init__(f"raffle API returned {status_code}: {payload.get('error', payload)}")
        self.status_code = status_code
        self.payload = dict(payload)

    @property
    def code(self) -> Optional[str]:
        return self.payload.get("error")


class RaffleApiClient:
    """Wrapper around the raffle HTTP entry points used by automation."""

    def __init__(self, settings: KeeperSettings, http: Optional[requests.Session] = None) -> None:
        self._settings = settings
        self._http = http or requests.Session()

    async def check_upkeep(self) -> UpkeepCheck:
        data = await asyncio.to_thread(self._request, "GET", "/raffle/upkeep")
        return UpkeepCheck(
            upkeep_needed=bool(data["upkeep_needed"]),
            perform_data=str(data.get("perform_data", "0x")),
        )

    async def perform_upkeep(self) -> int:
        data = await asyncio.to_thread(self._request, "POST", "/raffle/perform-upkeep")
        return int(data["request_id"])

    async def fulfill(self, request_id: int) -> Dict[str, Any]:
        headers = {}
        if self._settings.provider_token:
            headers["X-Provider-Token"] = self._settings.provider_token
        return await asyncio.to_thread(
            self._request, "POST", f"/provider/requests/{int(request_id)}/fulfill", {}, headers
        )

    async def get_state(self) -> RaffleSnapshot:
        data = await asyncio.to_thread(self._request, "GET", "/raffle")
        pending = data.get("pending_request_id")
        return RaffleSnapshot(
            raffle_state=RaffleState[data["raffle_state"]],
            number_of_players=int(data["number_of_players"]),
            balance=int(data["balance"]),
            last_timestamp=int(data["last_timestamp"]),
            interval=int(data["interval"]),
            recent_winner=data.get("recent_winner"),
            pending_request_id=int(pending) if pending is not None else None,
        )

    async def close(self) -> None:
        self._http.close()

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Mapping[str, Any]:
        url = f"{self._settings.api_url}{path}"
        resp = self._http.request(
            method,
            url,
            json=payload,
            headers=dict(headers or {}),
            timeout=self._settings.timeout_seconds,
        )
        try:
            data = resp.json()
        except ValueError:
            resp.raise_for_status()
            raise ValueError(f"raffle API returned non-JSON payload for {path}")
        if resp.status_code >= 400:
            raise RaffleApiError(resp.status_code, data if isinstance(data, Mapping) else {"error": data})
        if not isinstance(data, Mapping):
            raise ValueError(f"raffle API returned non-object payload for {path}")
        return data
