"""WebSocket endpoint: auth, protocol and channel admission."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Iterator

import pytest
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from racestay.auth.jwt import create_access_token
from racestay.database import get_session
from racestay.main import create_app
from racestay.ws import router as ws_router
from racestay.ws.manager import manager


@pytest.fixture
def ws_token() -> str:
    return create_access_token(user_id=1, email="guest@example.com")


@pytest.fixture
def parties(monkeypatch: pytest.MonkeyPatch) -> dict[int, set[int]]:
    """booking_id -> party user ids, consulted instead of the database."""
    table: dict[int, set[int]] = {}

    async def _is_party(db, booking_id: int, user_id: int) -> bool:  # noqa: ANN001
        return user_id in table.get(booking_id, set())

    monkeypatch.setattr(ws_router, "_is_booking_party", _is_party)
    return table


@pytest.fixture
def test_client(parties) -> Iterator[TestClient]:  # noqa: ANN001
    app = create_app()

    async def _no_session() -> AsyncGenerator[None, None]:
        yield None

    app.dependency_overrides[get_session] = _no_session
    yield TestClient(app)
    manager._connections.clear()
    manager._channels.clear()
    manager._user_connections.clear()


class TestWebSocketAuth:
    def test_invalid_token_closes_with_4001(self, test_client: TestClient) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with test_client.websocket_connect("/ws?token=invalid.jwt.token") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4001

    def test_connection_limit_closes_with_4008(
        self, test_client: TestClient, ws_token: str, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(manager, "user_connection_count", lambda user_id: 99)
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with test_client.websocket_connect(f"/ws?token={ws_token}") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4008


class TestWebSocketProtocol:
    def test_ping_pong(self, test_client: TestClient, ws_token: str) -> None:
        with test_client.websocket_connect(f"/ws?token={ws_token}") as ws:
            ws.send_json({"action": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_invalid_json(self, test_client: TestClient, ws_token: str) -> None:
        with test_client.websocket_connect(f"/ws?token={ws_token}") as ws:
            ws.send_text("not valid json {{{")
            data = ws.receive_json()
            assert data["type"] == "error"
            assert "Invalid JSON" in data["message"]

    def test_unknown_action(self, test_client: TestClient, ws_token: str) -> None:
        with test_client.websocket_connect(f"/ws?token={ws_token}") as ws:
            ws.send_json({"action": "explode"})
            assert "Unknown action" in ws.receive_json()["message"]


class TestSubscriptions:
    def test_subscribe_user_channel(self, test_client: TestClient, ws_token: str) -> None:
        with test_client.websocket_connect(f"/ws?token={ws_token}") as ws:
            ws.send_json({"action": "subscribe", "channel": "bookings"})
            assert ws.receive_json() == {"type": "subscribed", "channel": "bookings"}
            assert manager.get_stats()["unique_users"] == 1

    def test_invalid_channel(self, test_client: TestClient, ws_token: str) -> None:
        with test_client.websocket_connect(f"/ws?token={ws_token}") as ws:
            ws.send_json({"action": "subscribe", "channel": "leaderboard"})
            data = ws.receive_json()
            assert data["type"] == "error"
            assert "Invalid channel" in data["message"]

    def test_booking_channel_requires_party(self, test_client: TestClient, ws_token: str, parties) -> None:  # noqa: ANN001
        parties[7] = {1, 2}
        parties[8] = {2, 3}
        with test_client.websocket_connect(f"/ws?token={ws_token}") as ws:
            ws.send_json({"action": "subscribe", "channel": "messages:8"})
            assert "Not allowed" in ws.receive_json()["message"]

            ws.send_json({"action": "subscribe", "channel": "messages:7"})
            assert ws.receive_json() == {"type": "subscribed", "channel": "messages:7"}
            assert manager.get_stats()["channels"] == {"messages:7": 1}

    def test_unsubscribe(self, test_client: TestClient, ws_token: str, parties) -> None:  # noqa: ANN001
        parties[7] = {1}
        with test_client.websocket_connect(f"/ws?token={ws_token}") as ws:
            ws.send_json({"action": "subscribe", "channel": "messages:7"})
            ws.receive_json()
            ws.send_json({"action": "unsubscribe", "channel": "messages:7"})
            assert ws.receive_json() == {"type": "unsubscribed", "channel": "messages:7"}
            assert manager.get_stats()["channels"] == {}
