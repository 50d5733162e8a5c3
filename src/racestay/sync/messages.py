"""Optimistic message sending with explicit retry."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from racestay.errors import NetworkError, NotFoundError, RaceStayError, ValidationError
from racestay.sync.api import ApiClient
from racestay.sync.cache import FAILED, SENDING, SyncCache

logger = logging.getLogger(__name__)


class MessageComposer:
    """Sends messages as placeholders keyed by a client id.

    The server's row (from the response, the feed or a reconciliation pass)
    retires the placeholder. A placeholder whose send failed on the network
    stays visible as ``failed`` until :meth:`retry` or :meth:`discard`.
    """

    def __init__(self, api: ApiClient, cache_for: Callable[[int], SyncCache], user_id: int) -> None:
        self.api = api
        self.cache_for = cache_for
        self.user_id = user_id

    async def send(self, booking_id: int, text: str) -> dict[str, Any]:
        body = (text or "").strip()
        if not body:
            raise ValidationError("Message cannot be empty")

        client_id = uuid.uuid4().hex
        self.cache_for(booking_id).add_placeholder(client_id, {
            "id": None,
            "booking_id": booking_id,
            "sender_id": self.user_id,
            "message": body,
            "message_type": "text",
            "client_id": client_id,
            "created_at": datetime.now(timezone.utc).isoformat(),
        })
        return await self._deliver(booking_id, client_id, body)

    async def _deliver(self, booking_id: int, client_id: str, body: str) -> dict[str, Any]:
        cache = self.cache_for(booking_id)
        try:
            row = await self.api.send_message(booking_id, body, client_id=client_id)
        except NetworkError as exc:
            cache.mark_placeholder(client_id, FAILED, str(exc))
            raise
        except RaceStayError:
            cache.remove_placeholder(client_id)
            raise
        cache.upsert(row)
        return row

    async def retry(self, booking_id: int, client_id: str) -> dict[str, Any]:
        """Resend a failed placeholder under the same client id."""
        cache = self.cache_for(booking_id)
        placeholder = cache.placeholder(client_id)
        if placeholder is None:
            raise NotFoundError("No pending message with that id", client_id=client_id)
        cache.mark_placeholder(client_id, SENDING)
        return await self._deliver(booking_id, client_id, placeholder["message"])

    def discard(self, booking_id: int, client_id: str) -> None:
        self.cache_for(booking_id).remove_placeholder(client_id)

    def failed(self, booking_id: int) -> list[dict[str, Any]]:
        return self.cache_for(booking_id).placeholders(FAILED)
