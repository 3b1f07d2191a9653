"""Buffered, schema-evolving writer for stats payloads.

Each payload carries a timestamp and a set of named tables. Rows are stamped
with the payload time and buffered per table. A table is flushed when it holds
more than ``rows_to_buffer`` rows or has not been flushed for
``max_buffer_minutes``. When the warehouse rejects rows because they carry
columns it does not know yet, the missing columns are inferred from the
buffered batch and added to the table, and the rejected rows are handed back
to the buffer for the next flush.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .buffer import BufferStore, Row, now_ms
from .config import ConfigError
from .display import format_rows
from .schema import FieldSpec, deduce_type_and_mode
from .tables import TableManager
from .warehouse import RowRejectionError, UnknownRemoteError, WarehouseClient


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class PayloadError(ValueError):
    """Raised when a stats payload does not have the expected shape."""


class FlushError(Exception):
    """Raised after a cycle in which one or more tables failed to flush.

    ``failures`` maps each failed table name to its exception. Rows of failed
    tables stay buffered, except rows the warehouse already accepted.
    """

    def __init__(self, failures: Mapping[str, BaseException]) -> None:
        self.failures = dict(failures)
        details = "; ".join(f"{name}: {exc}" for name, exc in self.failures.items())
        super().__init__(f"Failed to flush {len(self.failures)} table(s): {details}")


class PartialFlushError(Exception):
    """Raised when part of a batch landed but the rejected rows can't be handled.

    ``rows_to_keep`` holds the rejected rows only; the rest of the batch was
    accepted by the warehouse and must not be queued again.
    """

    def __init__(self, table: str, rows_to_keep: List[Row], error: BaseException) -> None:
        self.table = table
        self.rows_to_keep = rows_to_keep
        self.error = error
        super().__init__(
            f"Kept {len(rows_to_keep)} rejected rows of [{table}]: {error}"
        )


@dataclass(frozen=True)
class DoubleInsertFailure:
    """An eager re-insert that failed again within the same flush."""

    table: str
    row_count: int
    error: BaseException


# camelCase config keys mapped to setting names
_SETTING_ALIASES = {
    "rowsToBuffer": "rows_to_buffer",
    "maxBufferTime": "max_buffer_minutes",
    "max_buffer_time": "max_buffer_minutes",
    "createMissingTables": "create_missing_tables",
    "createMissingColumns": "create_missing_columns",
    "clusterOnUnderscore": "cluster_on_underscore",
    "partionExpiryDays": "partition_expiry_days",
    "partitionExpiryDays": "partition_expiry_days",
    "printToConsole": "print_to_console",
    "immediateRetry": "immediate_retry",
}


@dataclass(frozen=True)
class WriterSettings:
    rows_to_buffer: int = 100
    max_buffer_minutes: float = 10.0
    create_missing_tables: bool = True
    create_missing_columns: bool = True
    cluster_on_underscore: bool = False
    partition_expiry_days: int = 0
    print_to_console: bool = False
    immediate_retry: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "WriterSettings":
        """Build settings from a config table, ignoring unrelated keys."""

        known = {f.name: f for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in data.items():
            name = _SETTING_ALIASES.get(key, key)
            if name not in known:
                continue
            default = known[name].default
            if isinstance(default, bool):
                if not isinstance(value, bool):
                    raise ConfigError(f"{key} must be a boolean.")
            elif isinstance(default, int):
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ConfigError(f"{key} must be an integer.")
                if value < 0:
                    raise ConfigError(f"{key} must not be negative.")
            elif isinstance(default, float):
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ConfigError(f"{key} must be a number.")
                if value < 0:
                    raise ConfigError(f"{key} must not be negative.")
                value = float(value)
            values[name] = value
        return cls(**values)


def _unpack_payload(payload: Mapping[str, Any]) -> Tuple[Any, Dict[str, List[Row]]]:
    if not isinstance(payload, Mapping):
        raise PayloadError("stats payload must be an object")
    if payload.get("time") is None:
        raise PayloadError("stats payload has no 'time'")
    tables = payload.get("tables")
    if tables is None:
        tables = {}
    if not isinstance(tables, Mapping):
        raise PayloadError("stats payload 'tables' must be an object")
    result: Dict[str, List[Row]] = {}
    for name, rows in tables.items():
        if not isinstance(rows, (list, tuple)):
            raise PayloadError(f"rows of table '{name}' must be a list")
        for row in rows:
            if not isinstance(row, Mapping):
                raise PayloadError(f"table '{name}' contains a non-object row")
        result[str(name)] = list(rows)
    return payload["time"], result


class IngestWriter:
    """Accept stats payloads and land them in the warehouse."""

    def __init__(
        self,
        warehouse: WarehouseClient,
        settings: Optional[WriterSettings] = None,
        *,
        buffers: Optional[BufferStore] = None,
        tables: Optional[TableManager] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.warehouse = warehouse
        self.settings = settings or WriterSettings()
        self._clock = clock or now_ms
        self.buffers = buffers or BufferStore(clock=self._clock)
        self.tables = tables or TableManager(
            warehouse,
            create_missing_tables=self.settings.create_missing_tables,
            cluster_on_underscore=self.settings.cluster_on_underscore,
            partition_expiry_days=self.settings.partition_expiry_days,
            verbose=self.settings.print_to_console,
        )
        self.double_insert_failures: List[DoubleInsertFailure] = []
        self._log_level = logging.INFO if self.settings.print_to_console else logging.DEBUG
        self._lock = threading.Lock()

    def write_to_database(self, payload: Mapping[str, Any]) -> None:
        """Buffer the rows of ``payload`` and flush every eligible table.

        Raises :class:`FlushError` after the sweep when any table failed; the
        rows of failed tables remain buffered for the next cycle.
        """

        time_value, tables = _unpack_payload(payload)
        failures: Dict[str, BaseException] = {}
        with self._lock:
            now = self._clock()
            for name, rows in tables.items():
                self.buffers.append(name, [dict(row, time=time_value) for row in rows], now)

            for name in self.buffers.tables():
                if not self.buffers.should_flush(
                    name,
                    self.settings.rows_to_buffer,
                    self.settings.max_buffer_minutes,
                    now,
                ):
                    continue
                queued = len(self.buffers.get(name).queue)
                if queued > self.settings.rows_to_buffer:
                    logger.info("%s has %d rows queued, flushing", name, queued)
                else:
                    logger.info("Flushing %s due to time", name)
                try:
                    remaining = self.flush_table(name)
                except PartialFlushError as exc:
                    logger.error("Failed to flush [%s]: %s", name, exc)
                    failures[name] = exc.error
                    self.buffers.replace(
                        name, exc.rows_to_keep, self.buffers.get(name).last_sent
                    )
                    continue
                except Exception as exc:
                    logger.error("Failed to flush [%s]: %s", name, exc)
                    failures[name] = exc
                    continue
                self.buffers.replace(name, remaining, now)

            logger.log(
                self._log_level,
                "%d rows buffered in %d tables",
                self.buffers.total_rows(),
                len(self.buffers),
            )
        if failures:
            raise FlushError(failures) from next(iter(failures.values()))

    def flush_table(self, table: str) -> List[Row]:
        """Insert the buffered rows of ``table`` and return rows to re-queue."""

        rows = self.buffers.pending(table)
        if not rows:
            return []
        logger.log(self._log_level, "%s", format_rows(table, rows))

        handle = self.tables.ensure_table(table, rows)
        try:
            self.warehouse.insert_rows(handle, rows)
        except RowRejectionError as exc:
            logger.info("Failed to insert rows into [%s]: %s", table, exc)
            try:
                if not self.settings.create_missing_columns:
                    raise
                return self._evolve_schema(table, rows, exc)
            except Exception as error:
                # Rows without an error entry were accepted
                rejected = [
                    rows[row_error.index]
                    for row_error in exc.row_errors
                    if 0 <= row_error.index < len(rows)
                ]
                raise PartialFlushError(table, rejected, error) from error
        logger.info("Inserted %d rows into [%s]", len(rows), table)
        return []

    def _evolve_schema(
        self, table: str, rows: Sequence[Row], rejection: RowRejectionError
    ) -> List[Row]:
        rows_to_reinsert: List[Row] = []
        new_fields: Dict[str, FieldSpec] = {}
        for row_error in rejection.row_errors:
            if not 0 <= row_error.index < len(rows):
                raise UnknownRemoteError(
                    f"Insert into [{table}] rejected unknown row index {row_error.index}"
                ) from rejection
            rows_to_reinsert.append(rows[row_error.index])
            for error in row_error.errors:
                if not error.is_missing_field:
                    raise UnknownRemoteError(
                        f"Insert into [{table}] failed on row {row_error.index}: "
                        f"{error.reason}: {error.message}"
                    ) from rejection
                if error.location in new_fields:
                    continue
                type_, mode = deduce_type_and_mode(
                    error.location, [row.get(error.location) for row in rows]
                )
                new_fields[error.location] = FieldSpec(error.location, type_, mode)

        self.tables.add_columns(table, new_fields.values())

        if self.settings.immediate_retry and rows_to_reinsert:
            return self._reinsert(table, rows, rows_to_reinsert)
        logger.info(
            "Re-queued %d rows for [%s] until the next flush", len(rows_to_reinsert), table
        )
        return rows_to_reinsert

    def _reinsert(
        self, table: str, rows: Sequence[Row], rows_to_reinsert: List[Row]
    ) -> List[Row]:
        handle = self.tables.ensure_table(table, rows)
        try:
            self.warehouse.insert_rows(handle, rows_to_reinsert)
        except Exception as exc:
            failure = DoubleInsertFailure(table, len(rows_to_reinsert), exc)
            self.double_insert_failures.append(failure)
            logger.warning(
                "Re-insert of %d rows into [%s] failed again, deferring: %s",
                len(rows_to_reinsert),
                table,
                exc,
            )
            return rows_to_reinsert
        logger.info("Re-inserted %d rows into [%s]", len(rows_to_reinsert), table)
        return []


__all__ = [
    "DoubleInsertFailure",
    "FlushError",
    "IngestWriter",
    "PartialFlushError",
    "PayloadError",
    "WriterSettings",
]
