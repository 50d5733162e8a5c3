"""Client cache: newest-wins merge, placeholders and patches."""

from __future__ import annotations

from racestay.sync.cache import FAILED, SENDING, SyncCache, parse_timestamp


def _row(row_id: int, ts: str, **fields) -> dict:  # noqa: ANN003
    return {"id": row_id, "updated_at": ts, **fields}


class TestParseTimestamp:
    def test_zulu_suffix(self) -> None:
        assert parse_timestamp("2026-05-01T10:00:00Z") == parse_timestamp("2026-05-01T10:00:00+00:00")

    def test_garbage(self) -> None:
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None


class TestAuthoritativeTier:
    def test_newer_row_replaces(self) -> None:
        cache = SyncCache("bookings")
        cache.upsert(_row(1, "2026-05-01T10:00:00Z", status="pending"))
        assert cache.upsert(_row(1, "2026-05-01T10:00:05Z", status="accepted")) is True
        assert cache.get(1)["status"] == "accepted"

    def test_older_row_is_ignored(self) -> None:
        cache = SyncCache("bookings")
        cache.upsert(_row(1, "2026-05-01T10:00:05Z", status="accepted"))
        assert cache.upsert(_row(1, "2026-05-01T10:00:00Z", status="pending")) is False
        assert cache.get(1)["status"] == "accepted"

    def test_duplicate_delivery_is_a_no_op(self) -> None:
        cache = SyncCache("messages")
        calls = []
        cache.subscribe(lambda: calls.append(1))
        row = _row(9, "2026-05-01T10:00:00Z", message="hi")

        assert cache.apply_event("insert", row) is True
        assert cache.apply_event("insert", row) is False
        assert len(cache) == 1
        assert calls == [1]

    def test_unknown_op_ignored(self) -> None:
        cache = SyncCache("bookings")
        assert cache.apply_event("delete", _row(1, "2026-05-01T10:00:00Z")) is False
        assert 1 not in cache

    def test_replace_all_drops_stale_rows(self) -> None:
        cache = SyncCache("bookings")
        cache.upsert(_row(1, "2026-05-01T10:00:00Z"))
        cache.upsert(_row(2, "2026-05-01T10:00:00Z"))
        cache.replace_all([_row(2, "2026-05-01T11:00:00Z"), _row(3, "2026-05-01T11:00:00Z")])
        assert [r["id"] for r in cache.rows()] == [2, 3]

    def test_replace_all_keeps_row_updated_during_fetch(self) -> None:
        cache = SyncCache("bookings")
        cache.upsert(_row(1, "2026-05-01T10:00:05Z", status="accepted"))
        cache.replace_all([_row(1, "2026-05-01T10:00:00Z", status="pending")])
        assert cache.get(1)["status"] == "accepted"

    def test_replace_all_keeps_row_inserted_during_fetch(self) -> None:
        cache = SyncCache("bookings")
        cache.upsert(_row(7, "2026-05-01T10:00:09Z"))
        cache.replace_all([_row(1, "2026-05-01T10:00:00Z")])
        assert [r["id"] for r in cache.rows()] == [1, 7]

    def test_replace_all_takes_fetched_copy_on_equal_stamp(self) -> None:
        cache = SyncCache("bookings")
        cache.upsert(_row(1, "2026-05-01T10:00:00Z", status="pending"))
        cache.replace_all([_row(1, "2026-05-01T10:00:00Z", status="accepted")])
        assert cache.get(1)["status"] == "accepted"


class TestPlaceholders:
    def test_server_row_retires_placeholder(self) -> None:
        cache = SyncCache("messages")
        cache.add_placeholder("c-1", {"id": None, "message": "hello", "client_id": "c-1"})
        assert cache.placeholders(SENDING)[0]["message"] == "hello"

        cache.upsert(_row(5, "2026-05-01T10:00:00Z", message="hello", client_id="c-1"))

        assert cache.placeholders() == []
        assert [r["id"] for r in cache.rows()] == [5]

    def test_feed_echo_after_response_keeps_single_row(self) -> None:
        cache = SyncCache("messages")
        cache.add_placeholder("c-1", {"id": None, "client_id": "c-1"})
        row = _row(5, "2026-05-01T10:00:00Z", client_id="c-1")
        cache.upsert(row)
        cache.apply_event("insert", row)
        assert len(cache.rows()) == 1

    def test_failed_placeholder_keeps_error(self) -> None:
        cache = SyncCache("messages")
        cache.add_placeholder("c-1", {"id": None})
        cache.mark_placeholder("c-1", FAILED, "offline")
        [failed] = cache.placeholders(FAILED)
        assert failed["_error"] == "offline"

    def test_replace_all_keeps_unsent_placeholders(self) -> None:
        cache = SyncCache("messages")
        cache.add_placeholder("c-1", {"id": None})
        cache.add_placeholder("c-2", {"id": None})
        cache.replace_all([_row(1, "2026-05-01T10:00:00Z", client_id="c-1")])
        assert cache.placeholder("c-1") is None
        assert cache.placeholder("c-2") is not None


class TestPatches:
    def test_patch_overlays_until_dropped(self) -> None:
        cache = SyncCache("bookings")
        cache.upsert(_row(1, "2026-05-01T10:00:00Z", status="pending"))
        cache.patch(1, status="accepted")
        assert cache.get(1)["status"] == "accepted"
        assert cache.authoritative(1)["status"] == "pending"

        cache.drop_patch(1)
        assert cache.get(1)["status"] == "pending"

    def test_confirm_patch_folds_in(self) -> None:
        cache = SyncCache("notifications")
        cache.upsert(_row(1, "2026-05-01T10:00:00Z", read=False))
        cache.patch(1, read=True)
        cache.confirm_patch(1)
        assert cache.authoritative(1)["read"] is True

    def test_newer_server_row_discards_patch(self) -> None:
        cache = SyncCache("bookings")
        cache.upsert(_row(1, "2026-05-01T10:00:00Z", status="pending"))
        cache.patch(1, status="accepted")
        cache.upsert(_row(1, "2026-05-01T10:01:00Z", status="cancelled"))
        assert cache.get(1)["status"] == "cancelled"


class TestListeners:
    def test_unsubscribe(self) -> None:
        cache = SyncCache("points")
        calls = []
        stop = cache.subscribe(lambda: calls.append(1))
        cache.upsert(_row(1, "2026-05-01T10:00:00Z"))
        stop()
        cache.upsert(_row(2, "2026-05-01T10:00:00Z"))
        assert calls == [1]

    def test_failing_listener_does_not_break_others(self) -> None:
        cache = SyncCache("points")
        calls = []

        def broken() -> None:
            raise RuntimeError("boom")

        cache.subscribe(broken)
        cache.subscribe(lambda: calls.append(1))
        cache.upsert(_row(1, "2026-05-01T10:00:00Z"))
        assert calls == [1]
