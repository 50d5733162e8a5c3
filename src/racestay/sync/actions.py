"""Client-side booking mutations.

Each call is guarded per booking id, shows its target status optimistically
and rolls the guess back on failure. A call that failed on the network keeps
its operation id, so the user's manual retry is recognised by the server as
the same operation. Conflicts force a re-fetch of the booking.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from racestay.config import Settings, get_settings
from racestay.errors import ConflictError, InvalidTransitionError, NetworkError, RaceStayError
from racestay.sync.api import ApiClient
from racestay.sync.cache import SyncCache
from racestay.sync.inflight import InFlightRegistry

logger = logging.getLogger(__name__)

Call = Callable[[str], Awaitable[dict[str, Any]]]


class BookingActions:
    def __init__(
        self,
        api: ApiClient,
        bookings: SyncCache,
        *,
        registry: InFlightRegistry | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api = api
        self.bookings = bookings
        self.registry = registry or InFlightRegistry()
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._operation_ids: dict[tuple[int, str], str] = {}

    def pending_operation(self, booking_id: int, action: str) -> str | None:
        """Operation id a manual retry of ``action`` will reuse, if any."""
        return self._operation_ids.get((booking_id, action))

    async def refresh(self, booking_id: int) -> dict[str, Any] | None:
        row = await self.api.get_booking(booking_id)
        self.bookings.upsert(row)
        return self.bookings.get(booking_id)

    async def _perform(self, booking_id: int, action: str, target: str, call: Call) -> dict[str, Any]:
        with self.registry.guard(booking_id):
            key = (booking_id, action)
            operation_id = self._operation_ids.setdefault(key, uuid.uuid4().hex)
            self.bookings.patch(booking_id, status=target)
            try:
                result = await call(operation_id)
            except NetworkError:
                self.bookings.drop_patch(booking_id)
                raise
            except (ConflictError, InvalidTransitionError):
                self._operation_ids.pop(key, None)
                self.bookings.drop_patch(booking_id)
                logger.info("Booking %d %s rejected as stale, re-fetching", booking_id, action)
                await self.refresh(booking_id)
                raise
            except RaceStayError:
                self._operation_ids.pop(key, None)
                self.bookings.drop_patch(booking_id)
                raise

            self._operation_ids.pop(key, None)
            self.bookings.drop_patch(booking_id)
            self.bookings.upsert(result["booking"])
            return result["booking"]

    async def respond(self, booking_id: int, response: str, message: str | None = None) -> dict[str, Any]:
        return await self._perform(
            booking_id, f"respond:{response}", response,
            lambda op: self.api.respond(booking_id, response, message, operation_id=op),
        )

    async def confirm(self, booking_id: int) -> dict[str, Any]:
        return await self._perform(
            booking_id, "confirm", "confirmed",
            lambda op: self.api.confirm(booking_id, operation_id=op),
        )

    async def cancel(self, booking_id: int, cancelled_by: str) -> dict[str, Any]:
        return await self._perform(
            booking_id, f"cancel:{cancelled_by}", "cancelled",
            lambda op: self.api.cancel(booking_id, cancelled_by, operation_id=op),
        )

    async def complete(self, booking_id: int) -> dict[str, Any]:
        return await self._perform(
            booking_id, "complete", "completed",
            lambda op: self.api.complete(booking_id, operation_id=op),
        )

    async def accept_and_confirm(self, booking_id: int, message: str | None = None) -> dict[str, Any]:
        """Two sequential awaited transitions with a short read-after-write grace delay."""
        await self.respond(booking_id, "accepted", message)
        await self._sleep(self.settings.sync_transition_grace_seconds)
        return await self.confirm(booking_id)
