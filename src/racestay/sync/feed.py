"""aiohttp WebSocket client for the ``/ws`` change feed."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import aiohttp
import structlog

from racestay.errors import NetworkError

logger = structlog.get_logger()


class FeedConnection:
    """One WebSocket connection speaking the subscribe/ping protocol.

    :meth:`events` yields ``{"channel": ..., "data": {"table", "op", "row"}}``
    frames and returns when the server closes the socket.
    """

    def __init__(
        self,
        ws_url: str,
        token: str,
        *,
        session: aiohttp.ClientSession | None = None,
        heartbeat: float = 30.0,
        receive_timeout: float | None = 45.0,
    ) -> None:
        self.ws_url = ws_url
        self.token = token
        self.heartbeat = heartbeat
        self.receive_timeout = receive_timeout
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    @property
    def closed(self) -> bool:
        return self._ws is None or self._ws.closed

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(
                self.ws_url,
                params={"token": self.token},
                heartbeat=self.heartbeat,
                receive_timeout=self.receive_timeout,
            )
        except (aiohttp.ClientError, OSError) as exc:
            raise NetworkError(f"Feed connection failed: {exc}") from exc
        logger.info("feed_connected", url=self.ws_url)

    async def _send(self, frame: dict[str, Any]) -> None:
        if self._ws is None or self._ws.closed:
            raise NetworkError("Feed connection is not open")
        try:
            await self._ws.send_json(frame)
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise NetworkError(f"Feed send failed: {exc}") from exc

    async def subscribe(self, channel: str) -> None:
        await self._send({"action": "subscribe", "channel": channel})

    async def unsubscribe(self, channel: str) -> None:
        await self._send({"action": "unsubscribe", "channel": channel})

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        if self._ws is None:
            raise NetworkError("Feed connection is not open")
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.warning("feed_invalid_frame")
                        continue
                    if "channel" in frame and "data" in frame:
                        yield frame
                    elif frame.get("type") == "error":
                        logger.warning("feed_server_error", message=frame.get("message"))
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        except TimeoutError as exc:
            raise NetworkError("Feed receive timed out") from exc
        except aiohttp.ClientError as exc:
            raise NetworkError(f"Feed receive failed: {exc}") from exc
        logger.info("feed_closed", code=self._ws.close_code)

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
