"""Bounded in-memory history for instant undo and redo.

The cache holds the most recent history points of one document together with
the full graph state at each point, most-recent-last. A cursor marks the
entry matching the live state. Undo and redo only move the cursor; pushing
a new entry discards everything after the cursor, so history stays linear.
"""

from __future__ import annotations

from dataclasses import dataclass

from mindmap_history.history.models import GraphState, HistoryPoint


@dataclass(frozen=True)
class CacheEntry:
    point: HistoryPoint
    state: GraphState


class HistoryCache:
    """Ring of recent (point, state) entries with an undo cursor.

    Args:
        capacity: Maximum number of entries, normally the tier's cache_size.

    Raises:
        ValueError: If capacity is less than 1.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self._capacity = capacity
        self._entries: list[CacheEntry] = []
        self._cursor = -1
        # Set by the revert coordinator while a revert is in flight. New
        # mutations arriving in that window are dropped, not queued.
        self.is_reverting = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def entries(self) -> tuple[CacheEntry, ...]:
        return tuple(self._entries)

    @property
    def current(self) -> CacheEntry | None:
        if self._cursor < 0:
            return None
        return self._entries[self._cursor]

    @property
    def can_undo(self) -> bool:
        return self._cursor > 0

    @property
    def can_redo(self) -> bool:
        return 0 <= self._cursor < len(self._entries) - 1

    def __len__(self) -> int:
        return len(self._entries)

    def push(self, point: HistoryPoint, state: GraphState) -> bool:
        """Record a new entry after the cursor.

        Returns:
            False if ``state`` equals the state under the cursor (nothing was
            recorded), True otherwise.
        """
        current = self.current
        if current is not None and current.state == state:
            return False

        del self._entries[self._cursor + 1 :]
        self._entries.append(CacheEntry(point=point, state=state))
        self._cursor = len(self._entries) - 1
        self._evict()
        return True

    def peek_undo(self) -> CacheEntry | None:
        return self._entries[self._cursor - 1] if self.can_undo else None

    def peek_redo(self) -> CacheEntry | None:
        return self._entries[self._cursor + 1] if self.can_redo else None

    def undo(self) -> CacheEntry | None:
        """Move the cursor one entry back and return the new current entry."""
        if not self.can_undo:
            return None
        self._cursor -= 1
        return self._entries[self._cursor]

    def redo(self) -> CacheEntry | None:
        """Move the cursor one entry forward and return the new current entry."""
        if not self.can_redo:
            return None
        self._cursor += 1
        return self._entries[self._cursor]

    def find(self, point_id: str) -> CacheEntry | None:
        for entry in self._entries:
            if entry.point.id == point_id:
                return entry
        return None

    def move_to(self, point_id: str) -> CacheEntry | None:
        """Place the cursor on the entry for ``point_id``, if cached."""
        for index, entry in enumerate(self._entries):
            if entry.point.id == point_id:
                self._cursor = index
                return entry
        return None

    def replace_point(self, point: HistoryPoint) -> None:
        """Swap in updated metadata for an already cached point (same id)."""
        for index, entry in enumerate(self._entries):
            if entry.point.id == point.id:
                self._entries[index] = CacheEntry(point=point, state=entry.state)
                return

    def _evict(self) -> None:
        # Oldest entries go first; the entry under the cursor is never evicted,
        # redo entries are dropped instead once the cursor reaches index 0.
        while len(self._entries) > self._capacity:
            if self._cursor > 0:
                self._entries.pop(0)
                self._cursor -= 1
            else:
                self._entries.pop()
