"""Async client for the BuddyUp REST API and change feed.

Service errors come back as the same TripServiceError subclasses the server
raises. Only idempotent calls (reads and join requests) are retried on
transport failures; seat-changing calls are sent once and the caller
reconciles by refetching.
"""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx
import websockets

from buddyup.errors import (
    CapacityExceeded,
    ConflictError,
    NotFoundError,
    PermissionDenied,
    TransientStoreError,
    TripServiceError,
    ValidationError,
)

log = logging.getLogger(__name__)

ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (ValidationError, NotFoundError, PermissionDenied, CapacityExceeded, ConflictError, TransientStoreError)
}

MAX_RETRIES = 3
RETRY_DELAYS = [0.5, 1, 2]


class BuddyUpClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_delays: list[float] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.retry_delays = RETRY_DELAYS if retry_delays is None else retry_delays
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"authorization": f"Bearer {token}"},
            timeout=10,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> BuddyUpClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ==================== Transport ====================

    @staticmethod
    def _raise_for_error(r: httpx.Response) -> None:
        if r.status_code < 400:
            return
        try:
            body = r.json()
        except ValueError:
            body = {}
        code = body.get("code") if isinstance(body, dict) else None
        detail = body.get("detail") if isinstance(body, dict) else None
        error_cls = ERRORS_BY_CODE.get(code)
        if error_cls is None:
            if r.status_code == 422:
                error_cls = ValidationError
            elif r.status_code in (401, 403):
                error_cls = PermissionDenied
            elif r.status_code >= 500:
                error_cls = TransientStoreError
            else:
                error_cls = TripServiceError
        raise error_cls(detail if isinstance(detail, str) else r.text)

    async def _request(self, method: str, path: str, idempotent: bool = False, **kwargs) -> Any:
        attempts = MAX_RETRIES if idempotent else 1
        for attempt in range(attempts):
            try:
                r = await self._client.request(method, path, **kwargs)
            except httpx.TransportError as e:
                if attempt < attempts - 1:
                    delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
                    log.warning(f"[Client] {method} {path} failed ({e}), retrying in {delay}s")
                    await asyncio.sleep(delay)
                    continue
                raise TransientStoreError(str(e)) from e

            # Idempotent calls may also retry a store outage reported by the server
            if r.status_code == 503 and attempt < attempts - 1:
                delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
                log.warning(f"[Client] {method} {path} store unavailable, retrying in {delay}s")
                await asyncio.sleep(delay)
                continue

            self._raise_for_error(r)
            return r.json()

    # ==================== Trips ====================

    async def create_trip(self, fields: dict) -> dict:
        return await self._request("POST", "/api/v1/trips/", json=fields)

    async def get_trip_details(self, trip_id: str) -> dict:
        return await self._request("GET", f"/api/v1/trips/{trip_id}", idempotent=True)

    async def get_detailed_user_trips(self) -> list[dict]:
        return await self._request("GET", "/api/v1/trips/mine", idempotent=True)

    async def search_nearby_trips(self, lat: float, lng: float, radius_km: float | None = None) -> list[dict]:
        params: dict[str, Any] = {"lat": lat, "lng": lng}
        if radius_km is not None:
            params["radius_km"] = radius_km
        return await self._request("GET", "/api/v1/trips/nearby", idempotent=True, params=params)

    async def update_trip(self, trip_id: str, fields: dict) -> dict:
        return await self._request("PATCH", f"/api/v1/trips/{trip_id}", json=fields)

    async def cancel_trip(self, trip_id: str) -> dict:
        return await self._request("POST", f"/api/v1/trips/{trip_id}/cancel")

    async def complete_trip(self, trip_id: str) -> dict:
        return await self._request("POST", f"/api/v1/trips/{trip_id}/complete")

    # ==================== Participation ====================

    async def request_to_join(self, trip_id: str, seats_requested: int = 1) -> dict:
        # Upsert on the server, so retrying cannot create a second request
        return await self._request(
            "POST", f"/api/v1/trips/{trip_id}/requests", idempotent=True, json={"seats_requested": seats_requested}
        )

    async def accept_trip_request(self, trip_id: str, participant_id: str) -> dict:
        return await self._request("POST", f"/api/v1/trips/{trip_id}/participants/{participant_id}/accept")

    async def reject_trip_request(self, trip_id: str, participant_id: str) -> dict:
        return await self._request("POST", f"/api/v1/trips/{trip_id}/participants/{participant_id}/reject")

    async def remove_participant(self, trip_id: str, participant_id: str, reason: str | None = None) -> dict:
        return await self._request(
            "POST", f"/api/v1/trips/{trip_id}/participants/{participant_id}/remove", json={"reason": reason}
        )

    async def leave_trip(self, trip_id: str) -> dict:
        return await self._request("POST", f"/api/v1/trips/{trip_id}/leave")

    # ==================== Chat & notifications ====================

    async def get_trip_messages(self, trip_id: str) -> list[dict]:
        return await self._request("GET", f"/api/v1/trips/{trip_id}/messages", idempotent=True)

    async def send_message(self, trip_id: str, content: str) -> dict:
        return await self._request("POST", f"/api/v1/trips/{trip_id}/messages", json={"content": content})

    async def fetch_notifications(self, limit: int = 50) -> list[dict]:
        return await self._request("GET", "/api/v1/notifications/", idempotent=True, params={"limit": limit})

    async def get_unread_count(self) -> int:
        body = await self._request("GET", "/api/v1/notifications/unread-count", idempotent=True)
        return body["count"]

    # ==================== Change feed ====================

    @asynccontextmanager
    async def changes(self, scope: str, trip_id: str | None = None) -> AsyncIterator[AsyncIterator[dict]]:
        """Open the realtime socket for a scope; yields an async iterator of change notices.

        The socket is closed when the block exits.
        """
        ws_url = self.base_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        params = {"token": self.token, "scope": scope}
        if trip_id:
            params["trip_id"] = trip_id
        url = f"{ws_url}/api/v1/realtime?{httpx.QueryParams(params)}"

        async with websockets.connect(url) as ws:
            subscribed = json.loads(await ws.recv())
            log.info(f"[Client] Subscribed to {subscribed.get('scope')}:{subscribed.get('id')}")

            async def notices():
                async for raw in ws:
                    yield json.loads(raw)

            yield notices()
