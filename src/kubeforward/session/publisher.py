"""
State publisher: the single source of truth read by the presentation layer.

The session manager's control loop is the only writer. Every publish swaps
in a new immutable tuple of SessionView rows under a new version, so readers
calling snapshot() always see a fully applied state. Subscribers receive a
SnapshotEvent first and EntryChanged deltas after it.
"""

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Iterable

from kubeforward.config import config
from kubeforward.models.entries import EntryKey, SessionView
from kubeforward.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SnapshotEvent:
    """Full table at one version."""

    version: int
    rows: tuple[SessionView, ...]


@dataclass(frozen=True)
class EntryChanged:
    """One row changed at a version."""

    version: int
    row: SessionView
    previous: SessionView | None = None


StateEvent = SnapshotEvent | EntryChanged

_CLOSED = object()


def _row_order(row: SessionView) -> tuple[str, int, str]:
    return row.entry.sort_key


class _Subscription:
    def __init__(self, limit: int):
        self.limit = limit
        self.queue: asyncio.Queue = asyncio.Queue()
        self.resyncs = 0

    def offer(self, events: list[EntryChanged], snapshot: SnapshotEvent) -> None:
        if self.queue.qsize() + len(events) > self.limit:
            # Too far behind: replace the backlog with the full state
            while not self.queue.empty():
                self.queue.get_nowait()
            self.queue.put_nowait(snapshot)
            self.resyncs += 1
            return
        for event in events:
            self.queue.put_nowait(event)

    def close(self) -> None:
        self.queue.put_nowait(_CLOSED)


class StatePublisher:
    """
    Versioned, immutable view of all session rows.

    Args:
        rows: Initial rows (one per port entry).
        queue_size: Events buffered per subscriber before it is resynchronised.
    """

    def __init__(
        self,
        rows: Iterable[SessionView] = (),
        queue_size: int | None = None,
    ):
        self._index: dict[EntryKey, SessionView] = {row.key: row for row in rows}
        self._rows: tuple[SessionView, ...] = tuple(
            sorted(self._index.values(), key=_row_order)
        )
        self._version = 0
        self._queue_size = queue_size or config.SUBSCRIBER_QUEUE_SIZE
        self._subscribers: set[_Subscription] = set()
        self._closed = False

    @property
    def version(self) -> int:
        return self._version

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def snapshot(self) -> tuple[SessionView, ...]:
        """Current rows ordered by (service, remote port)."""
        return self._rows

    def get(self, key: EntryKey) -> SessionView | None:
        return self._index.get(key)

    def publish(self, updates: Iterable[SessionView]) -> list[EntryChanged]:
        """
        Apply a batch of row updates as one version.

        Rows equal to the current ones are skipped; if nothing changed no
        version is created and nothing is sent.
        """
        version = self._version + 1
        changes = []
        index = dict(self._index)
        for row in updates:
            previous = index.get(row.key)
            if previous == row:
                continue
            index[row.key] = row
            changes.append(EntryChanged(version=version, row=row, previous=previous))

        if not changes:
            return []

        self._index = index
        self._rows = tuple(sorted(index.values(), key=_row_order))
        self._version = version

        snapshot = SnapshotEvent(version=version, rows=self._rows)
        for sub in self._subscribers:
            sub.offer(changes, snapshot)
        return changes

    async def subscribe(self) -> AsyncIterator[StateEvent]:
        """
        Yield the current state, then every change, until close().

        Each call is an independent subscription; breaking out of the loop
        unsubscribes.
        """
        sub = _Subscription(self._queue_size)
        if self._closed:
            return
        # Registration and the initial snapshot happen in one step, so no
        # change can fall between them
        sub.queue.put_nowait(SnapshotEvent(version=self._version, rows=self._rows))
        self._subscribers.add(sub)
        try:
            while True:
                event = await sub.queue.get()
                if event is _CLOSED:
                    return
                yield event
        finally:
            self._subscribers.discard(sub)
            if sub.resyncs:
                logger.debug(f"Subscriber resynchronised {sub.resyncs} times")

    def close(self) -> None:
        """End every subscription."""
        self._closed = True
        for sub in self._subscribers:
            sub.close()
