"""Two-tier client cache for one feed table.

Tier one holds authoritative rows keyed by id, written only from server
responses, feed events and reconciliation passes. Tier two is an optimistic
overlay: placeholder rows keyed by a client-generated correlation id (rows
that do not exist on the server yet) and field patches keyed by row id
(local guesses about an existing row).

Reconciliation rules:
- an incoming row replaces the stored copy only if its timestamp is newer;
  duplicates and out-of-order rows are no-ops
- an incoming row carrying a correlation id retires the matching placeholder
- a newer authoritative row drops any optimistic patch on that id
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)

Row = dict[str, Any]
Listener = Callable[[], None]

SENDING = "sending"
FAILED = "failed"


def parse_timestamp(value: Any) -> datetime | None:  # noqa: ANN401
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


class SyncCache:
    """Authoritative rows plus an optimistic overlay, with change listeners."""

    def __init__(
        self,
        table: str,
        *,
        key: str = "id",
        timestamp_field: str = "updated_at",
        correlation_field: str | None = "client_id",
    ) -> None:
        self.table = table
        self.key = key
        self.timestamp_field = timestamp_field
        self.correlation_field = correlation_field
        self._rows: dict[Any, Row] = {}
        self._placeholders: dict[str, Row] = {}
        self._patches: dict[Any, Row] = {}
        self._listeners: list[Listener] = []

    # -- listeners ------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns its unsubscribe handle."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Cache listener failed for %s", self.table)

    # -- authoritative tier --------------------------------------------

    def _is_newer(self, incoming: Row, current: Row) -> bool:
        new_ts = parse_timestamp(incoming.get(self.timestamp_field))
        old_ts = parse_timestamp(current.get(self.timestamp_field))
        if new_ts is None or old_ts is None:
            return incoming != current
        return new_ts > old_ts

    def _outdates(self, current: Row, fetched: Row) -> bool:
        """True only when both rows are stamped and ``current`` is strictly later."""
        current_ts, fetched_ts = self._stamp(current), self._stamp(fetched)
        return current_ts is not None and fetched_ts is not None and current_ts > fetched_ts

    def _retire_placeholder(self, row: Row) -> bool:
        if self.correlation_field is None:
            return False
        correlation = row.get(self.correlation_field)
        return correlation is not None and self._placeholders.pop(correlation, None) is not None

    def _merge(self, row: Row) -> bool:
        retired = self._retire_placeholder(row)
        row_id = row.get(self.key)
        if row_id is None:
            return retired

        current = self._rows.get(row_id)
        if current is not None and not self._is_newer(row, current):
            return retired
        self._rows[row_id] = dict(row)
        self._patches.pop(row_id, None)
        return True

    def upsert(self, row: Row) -> bool:
        """Merge one authoritative row. Returns True if visible state changed."""
        changed = self._merge(row)
        if changed:
            self._notify()
        return changed

    def apply_event(self, op: str, row: Row) -> bool:
        """Apply a change-feed event (``insert`` or ``update``)."""
        if op not in ("insert", "update"):
            logger.debug("Ignoring %s event on %s", op, self.table)
            return False
        return self.upsert(row)

    def _stamp(self, row: Row) -> datetime | None:
        return parse_timestamp(row.get(self.timestamp_field))

    def replace_all(self, rows: Iterable[Row]) -> None:
        """Reconciliation pass: the fetched rows become the authoritative set.

        Feed events keep arriving while the fetch is in flight, so a cached
        row stamped later than the snapshot survives it: over its fetched
        copy, or when absent from the fetch and newer than every fetched row.
        Patches are dropped. Placeholders survive unless the fetch shows the
        server already has their row.
        """
        fresh: dict[Any, Row] = {}
        for row in rows:
            self._retire_placeholder(row)
            row_id = row[self.key]
            current = self._rows.get(row_id)
            if current is not None and self._outdates(current, row):
                fresh[row_id] = current
            else:
                fresh[row_id] = dict(row)

        stamps = [stamp for stamp in map(self._stamp, fresh.values()) if stamp is not None]
        snapshot = max(stamps, default=None)
        if snapshot is not None:
            for row_id, current in self._rows.items():
                stamp = self._stamp(current)
                if row_id not in fresh and stamp is not None and stamp > snapshot:
                    fresh[row_id] = current
        self._rows = fresh
        self._patches.clear()
        self._notify()

    def clear(self) -> None:
        self._rows.clear()
        self._placeholders.clear()
        self._patches.clear()
        self._notify()

    # -- optimistic tier ------------------------------------------------

    def add_placeholder(self, correlation_id: str, row: Row) -> None:
        self._placeholders[correlation_id] = {**row, "_status": SENDING}
        self._notify()

    def placeholder(self, correlation_id: str) -> Row | None:
        row = self._placeholders.get(correlation_id)
        return dict(row) if row is not None else None

    def mark_placeholder(self, correlation_id: str, status: str, error: str | None = None) -> None:
        row = self._placeholders.get(correlation_id)
        if row is None:
            return
        row["_status"] = status
        row["_error"] = error
        self._notify()

    def remove_placeholder(self, correlation_id: str) -> None:
        if self._placeholders.pop(correlation_id, None) is not None:
            self._notify()

    def patch(self, row_id: Any, **fields: Any) -> None:  # noqa: ANN401
        """Overlay a local guess onto an existing row."""
        self._patches.setdefault(row_id, {}).update(fields)
        self._notify()

    def drop_patch(self, row_id: Any) -> None:  # noqa: ANN401
        """Roll an optimistic guess back."""
        if self._patches.pop(row_id, None) is not None:
            self._notify()

    def confirm_patch(self, row_id: Any) -> None:  # noqa: ANN401
        """The server accepted the guess: fold it into the authoritative copy."""
        fields = self._patches.pop(row_id, None)
        if fields and row_id in self._rows:
            self._rows[row_id].update(fields)

    # -- reads -----------------------------------------------------------

    def get(self, row_id: Any) -> Row | None:  # noqa: ANN401
        row = self._rows.get(row_id)
        if row is None:
            return None
        return {**row, **self._patches.get(row_id, {})}

    def authoritative(self, row_id: Any) -> Row | None:  # noqa: ANN401
        row = self._rows.get(row_id)
        return dict(row) if row is not None else None

    def rows(self) -> list[Row]:
        """Visible rows: authoritative with patches applied, by id, then placeholders."""
        visible = [self.get(row_id) for row_id in sorted(self._rows)]
        return [row for row in visible if row is not None] + [dict(p) for p in self._placeholders.values()]

    def placeholders(self, status: str | None = None) -> list[Row]:
        return [
            dict(row) for row in self._placeholders.values()
            if status is None or row.get("_status") == status
        ]

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, row_id: object) -> bool:
        return row_id in self._rows
