"""Per-table row buffers and the flush-trigger policy."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

Row = Dict[str, Any]

MINUTE_MS = 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class TableBuffer:
    last_sent: int
    queue: List[Row] = field(default_factory=list)


class BufferStore:
    """Queue of pending rows per table name.

    Buffers are created on the first rows seen for a table and live for the
    lifetime of the store. ``last_sent`` is in epoch milliseconds.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None) -> None:
        self._clock = clock or now_ms
        self._buffers: Dict[str, TableBuffer] = {}

    def __contains__(self, table: object) -> bool:
        return table in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)

    def tables(self) -> List[str]:
        return list(self._buffers)

    def get(self, table: str) -> TableBuffer:
        return self._buffers[table]

    def pending(self, table: str) -> List[Row]:
        """Return a snapshot of the queued rows for ``table``."""

        buffer = self._buffers.get(table)
        return list(buffer.queue) if buffer is not None else []

    def total_rows(self) -> int:
        return sum(len(buffer.queue) for buffer in self._buffers.values())

    def append(self, table: str, rows: Iterable[Row], now: Optional[int] = None) -> None:
        buffer = self._buffers.get(table)
        if buffer is None:
            buffer = TableBuffer(last_sent=self._clock() if now is None else now)
            self._buffers[table] = buffer
        buffer.queue.extend(rows)

    def should_flush(
        self,
        table: str,
        rows_to_buffer: int,
        max_buffer_minutes: float,
        now: Optional[int] = None,
    ) -> bool:
        """Return True when the buffer is over its size or age threshold."""

        buffer = self._buffers.get(table)
        if buffer is None:
            return False
        if now is None:
            now = self._clock()
        if len(buffer.queue) > rows_to_buffer:
            return True
        return now - buffer.last_sent >= max_buffer_minutes * MINUTE_MS

    def replace(
        self, table: str, remaining: Iterable[Row], now: Optional[int] = None
    ) -> None:
        """Swap the queue for the rows left over by a flush and reset its age."""

        buffer = self._buffers[table]
        buffer.queue = list(remaining)
        buffer.last_sent = self._clock() if now is None else now


__all__ = ["BufferStore", "MINUTE_MS", "TableBuffer", "now_ms"]
