from __future__ import annotations

from datetime import date
from typing import Any

import httpx


class MaintenanceClient:
    """Calls the service's machine endpoints on behalf of the maintenance worker."""

    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def reap_expired_jobs(self, limit: int = 100) -> int:
        payload = await self._post("/jobs/reap-expired", params={"limit": limit})
        return int(payload.get("requeued", 0))

    async def compute_daily_analytics(self, today: date | None = None) -> dict[str, Any]:
        body = {"today": today.isoformat()} if today else {}
        return await self._post("/analytics/daily", json=body)

    async def refresh_datasets(self) -> dict[str, Any]:
        return await self._post("/analytics/refresh")

    async def _post(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}{path}", params=params, json=json, headers=self.headers)
            response.raise_for_status()
            return response.json()
