"""HTTP client for the RaceStay API.

Error bodies are mapped back onto the shared error taxonomy. Transport
failures become :class:`NetworkError`. Reads are retried with exponential
backoff; mutations are never retried here, the caller decides.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import httpx

from racestay.config import Settings, get_settings
from racestay.errors import NetworkError, RaceStayError, ServerError, error_from_payload, is_retryable
from racestay.sync.backoff import ExponentialBackoff

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class ApiClient:
    """Typed wrappers over ``/api/v1``. Rows are returned as plain dicts."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        http: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(connect=5.0, read=15.0, write=10.0, pool=5.0),
        )
        self.token = token
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:  # noqa: ANN401
        try:
            response = await self.http.request(
                method,
                path,
                params={k: v for k, v in (params or {}).items() if v is not None} or None,
                json=json,
                headers={"Authorization": f"Bearer {self.token}"},
            )
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {"detail": response.text}
            if not isinstance(body, dict):
                body = {"detail": str(body)}
            raise error_from_payload(body, response.status_code)

        try:
            return response.json()
        except ValueError as exc:
            raise ServerError(f"Invalid JSON from {path}") from exc

    async def _read(self, path: str, params: dict[str, Any] | None = None) -> Any:  # noqa: ANN401
        """GET with transparent retries on transport failures."""
        backoff = ExponentialBackoff.for_reads(self.settings)
        while True:
            try:
                return await self._send("GET", path, params=params)
            except RaceStayError as exc:
                delay = backoff.next_delay() if is_retryable(exc) else None
                if delay is None:
                    raise
                logger.info("Read %s failed, retrying in %.1fs", path, delay)
                await self._sleep(delay)

    async def _mutate(self, path: str, body: dict[str, Any] | None = None) -> Any:  # noqa: ANN401
        return await self._send("POST", path, json=body)

    # -- bookings ----------------------------------------------------------

    async def get_bookings(
        self,
        *,
        status: str | None = None,
        role: str | None = None,
        date_range: str | None = None,
    ) -> list[dict[str, Any]]:
        data = await self._read(
            "/api/v1/bookings",
            {"status": status, "role": role, "date_range": date_range, "limit": 500},
        )
        return data["bookings"]

    async def get_booking(self, booking_id: int) -> dict[str, Any]:
        return await self._read(f"/api/v1/bookings/{booking_id}")

    async def get_booking_stats(self) -> dict[str, Any]:
        return await self._read("/api/v1/bookings/stats")

    async def request_booking(self, **fields: Any) -> dict[str, Any]:  # noqa: ANN401
        return await self._mutate("/api/v1/bookings", fields)

    async def respond(
        self,
        booking_id: int,
        response: str,
        message: str | None = None,
        *,
        operation_id: str | None = None,
    ) -> dict[str, Any]:
        return await self._mutate(
            f"/api/v1/bookings/{booking_id}/respond",
            {"response": response, "message": message, "operation_id": operation_id},
        )

    async def confirm(self, booking_id: int, *, operation_id: str | None = None) -> dict[str, Any]:
        return await self._mutate(f"/api/v1/bookings/{booking_id}/confirm", {"operation_id": operation_id})

    async def cancel(
        self,
        booking_id: int,
        cancelled_by: str,
        *,
        operation_id: str | None = None,
    ) -> dict[str, Any]:
        return await self._mutate(
            f"/api/v1/bookings/{booking_id}/cancel",
            {"cancelled_by": cancelled_by, "operation_id": operation_id},
        )

    async def complete(self, booking_id: int, *, operation_id: str | None = None) -> dict[str, Any]:
        return await self._mutate(f"/api/v1/bookings/{booking_id}/complete", {"operation_id": operation_id})

    async def expire_overdue(self) -> dict[str, Any]:
        return await self._mutate("/api/v1/bookings/expire-overdue")

    # -- points ------------------------------------------------------------

    async def get_balance(self) -> int:
        data = await self._read("/api/v1/points/balance")
        return int(data["balance"])

    async def get_transactions(self, limit: int = 200, offset: int = 0) -> dict[str, Any]:
        return await self._read("/api/v1/points/transactions", {"limit": limit, "offset": offset})

    async def get_all_transactions(self, page_size: int = 200) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        while True:
            page = await self.get_transactions(limit=page_size, offset=len(rows))
            rows.extend(page["transactions"])
            if not page["transactions"] or len(rows) >= page["total"]:
                return rows

    # -- notifications -----------------------------------------------------

    async def get_notifications(
        self,
        page: int = 1,
        per_page: int = 100,
        unread_only: bool = False,
    ) -> dict[str, Any]:
        return await self._read(
            "/api/v1/notifications",
            {"page": page, "per_page": per_page, "unread_only": "true" if unread_only else None},
        )

    async def get_all_notifications(self, per_page: int = 100) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        page = 1
        while True:
            data = await self.get_notifications(page=page, per_page=per_page)
            rows.extend(data["notifications"])
            if not data["notifications"] or len(rows) >= data["total"]:
                return rows
            page += 1

    async def get_unread_count(self) -> int:
        data = await self._read("/api/v1/notifications/unread-count")
        return int(data["unread_count"])

    async def mark_notification_read(self, notification_id: int) -> int:
        data = await self._mutate(f"/api/v1/notifications/{notification_id}/read")
        return int(data["updated"])

    async def mark_all_notifications_read(self) -> int:
        data = await self._mutate("/api/v1/notifications/read-all")
        return int(data["updated"])

    # -- messaging ---------------------------------------------------------

    async def send_message(self, booking_id: int, text: str, *, client_id: str | None = None) -> dict[str, Any]:
        return await self._mutate(
            f"/api/v1/bookings/{booking_id}/messages",
            {"message": text, "client_id": client_id},
        )

    async def get_messages(self, booking_id: int, since: datetime | None = None) -> list[dict[str, Any]]:
        data = await self._read(
            f"/api/v1/bookings/{booking_id}/messages",
            {"since": since.isoformat() if since else None},
        )
        return data["messages"]

    async def mark_conversation_read(self, booking_id: int) -> int:
        data = await self._mutate(f"/api/v1/bookings/{booking_id}/messages/read")
        return int(data["updated"])

    async def get_conversations(self) -> list[dict[str, Any]]:
        data = await self._read("/api/v1/conversations")
        return data["conversations"]


