"""Polling loop that moves stats from a Screeps server into the writer."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from .api_client import ScreepsAPIClient
from .writer import IngestWriter


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class StatsFormatError(ValueError):
    """Raised when the stats blob read from the server is not an object."""


def format_stats(data: Any) -> Dict[str, Any]:
    """Normalise a stats blob read from memory or a segment into a mapping."""

    if isinstance(data, str) and data.startswith("{"):
        try:
            data = json.loads(data)
        except ValueError as exc:
            raise StatsFormatError(f"stats misformed: {exc}") from exc
    if not isinstance(data, dict):
        raise StatsFormatError("stats misformed")
    return data


class StatsPoller:
    """Fetch stats for each shard on a fixed interval and hand them to a writer."""

    def __init__(
        self,
        client: ScreepsAPIClient,
        writer: IngestWriter,
        *,
        shards: Iterable[str] = ("shard0",),
        segment: Optional[int] = None,
        memory_path: str = "stats",
        interval: float = 60.0,
        progress_callback: Optional[Callable[[str], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.writer = writer
        self.shards: List[str] = list(shards) or ["shard0"]
        self.segment = segment
        self.memory_path = memory_path
        self.interval = float(interval)
        self._progress_callback = progress_callback
        self._sleep = sleep

    def _report(self, message: str) -> None:
        if self._progress_callback:
            self._progress_callback(message)
        else:
            logger.info(message)

    def fetch_stats(self, shard: str) -> Any:
        if self.segment is not None:
            return self.client.get_segment(self.segment, shard)
        return self.client.get_memory(self.memory_path, shard)

    def tick(self, shard: str) -> bool:
        """Run one fetch-and-write cycle for ``shard``.

        Failures are logged and reported as ``False`` so the next cycle still
        runs.
        """

        self._report(f"Fetching Stats ({shard})")
        try:
            data = self.fetch_stats(shard)
            if data is None:
                self._report("No stats found, is Memory.stats defined?")
                return False
            stats = format_stats(data)
            self.writer.write_to_database(stats)
        except Exception as exc:
            logger.error("Stats cycle for %s failed: %s", shard, exc, exc_info=True)
            return False
        return True

    def run_once(self) -> bool:
        results = [self.tick(shard) for shard in self.shards]
        return all(results)

    def run(self, max_cycles: Optional[int] = None) -> None:
        """Poll every shard each interval until ``max_cycles`` is reached."""

        cycles = 0
        while True:
            started = time.monotonic()
            self.run_once()
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            remaining = self.interval - (time.monotonic() - started)
            if remaining > 0:
                self._sleep(remaining)


__all__ = ["StatsFormatError", "StatsPoller", "format_stats"]
