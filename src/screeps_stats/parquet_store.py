"""Local Parquet backend for the stats writer.

Each table lives in its own directory under a base directory::

    <base>/<table>/_table.json                 schema and creation options
    <base>/<table>/date=YYYY-MM-DD/part-00001.parquet

Partitions are day-granular on the ``time`` column, like the BigQuery tables.
Inserts behave like a streaming insert with invalid rows skipped: rows that
carry a column unknown to the table schema are rejected with a
``no such field`` error while the other rows are written.
"""

from __future__ import annotations

import datetime as dt
import json
import re
import shutil
import time
from collections import defaultdict
from pathlib import Path
from typing import Any, DefaultDict, Dict, List, Optional, Sequence, Tuple

import pyarrow as pa
import pyarrow.parquet as pq

from .schema import TIME_COLUMN, FieldMode, FieldSpec, FieldType, TableSchema
from .warehouse import (
    FieldError,
    Found,
    LookupFailure,
    LookupResult,
    NotFound,
    Row,
    RowError,
    RowRejectionError,
    TableHandle,
    TableMetadata,
    TableOptions,
    WarehouseClient,
)

METADATA_FILE = "_table.json"

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_ARROW_TYPES = {
    FieldType.STRING: pa.string(),
    FieldType.BOOLEAN: pa.bool_(),
    FieldType.FLOAT: pa.float64(),
    FieldType.TIMESTAMP: pa.timestamp("ms", tz="UTC"),
}


def arrow_field(spec: FieldSpec) -> pa.Field:
    arrow_type = _ARROW_TYPES[spec.type]
    if spec.mode is FieldMode.REPEATED:
        arrow_type = pa.list_(arrow_type)
    return pa.field(spec.name, arrow_type)


def arrow_schema(schema: TableSchema) -> pa.Schema:
    return pa.schema([arrow_field(spec) for spec in schema.fields])


def _partition_date(value: Any) -> Optional[str]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    moment = dt.datetime.fromtimestamp(value / 1000, tz=dt.timezone.utc)
    return moment.date().isoformat()


class ParquetWarehouse(WarehouseClient):
    """Warehouse client backed by a directory of Parquet datasets."""

    def __init__(
        self,
        base_dir: Path,
        *,
        compression: Optional[str] = None,
        clock=time.time,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._compression = compression
        self._clock = clock
        self._file_counters: DefaultDict[Tuple[str, str], int] = defaultdict(int)

    def _table_dir(self, table_id: str) -> Path:
        return self.base_dir / table_id

    def _metadata_path(self, table_id: str) -> Path:
        return self._table_dir(table_id) / METADATA_FILE

    def _read_metadata(self, table_id: str) -> Dict[str, Any]:
        return json.loads(self._metadata_path(table_id).read_text(encoding="utf-8"))

    def _write_metadata(self, table_id: str, data: Dict[str, Any]) -> None:
        path = self._metadata_path(table_id)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(path)

    def _handle(self, table_id: str, data: Dict[str, Any]) -> TableHandle:
        schema = TableSchema.from_api(data["schema"]["fields"])
        return TableHandle(table_id=table_id, schema=schema, native=data)

    def lookup_table(self, table_id: str) -> LookupResult:
        if not _TABLE_NAME.match(table_id):
            return LookupFailure(table_id, f"Invalid table name: {table_id!r}")
        if not self._metadata_path(table_id).is_file():
            return NotFound(table_id)
        try:
            data = self._read_metadata(table_id)
            return Found(self._handle(table_id, data))
        except (OSError, ValueError, KeyError) as exc:
            return LookupFailure(table_id, f"Unreadable table metadata: {exc}", exc)

    def create_table(self, table_id: str, options: TableOptions) -> TableHandle:
        if not _TABLE_NAME.match(table_id):
            raise ValueError(f"Invalid table name: {table_id!r}")
        self._table_dir(table_id).mkdir(parents=True, exist_ok=True)
        data = dict(options.to_api(), tableId=table_id)
        self._write_metadata(table_id, data)
        return self._handle(table_id, data)

    def get_metadata(self, handle: TableHandle) -> TableMetadata:
        data = self._read_metadata(handle.table_id)
        return TableMetadata(
            schema=TableSchema.from_api(data["schema"]["fields"]), native=data
        )

    def set_metadata(self, handle: TableHandle, metadata: TableMetadata) -> TableHandle:
        data = dict(metadata.native or self._read_metadata(handle.table_id))
        data["schema"] = {"fields": metadata.schema.to_api()}
        self._write_metadata(handle.table_id, data)
        return self._handle(handle.table_id, data)

    def insert_rows(self, handle: TableHandle, rows: Sequence[Row]) -> None:
        data = self._read_metadata(handle.table_id)
        schema = TableSchema.from_api(data["schema"]["fields"])

        errors: List[RowError] = []
        partitions: DefaultDict[str, List[Row]] = defaultdict(list)
        for index, row in enumerate(rows):
            unknown = [
                name
                for name, value in row.items()
                if name not in schema and value is not None
            ]
            if unknown:
                errors.append(
                    RowError(
                        index=index,
                        errors=[
                            FieldError("invalid", name, f"no such field: {name}.")
                            for name in unknown
                        ],
                    )
                )
                continue
            date = _partition_date(row.get(TIME_COLUMN))
            partitions["null" if date is None else date].append(row)

        for date, partition_rows in partitions.items():
            self._write_partition(handle.table_id, date, partition_rows, schema)

        partitioning = data.get("timePartitioning") or {}
        if partitioning.get("expirationMs"):
            self._expire_partitions(handle.table_id, int(partitioning["expirationMs"]))

        if errors:
            raise RowRejectionError(errors)

    def _write_partition(
        self, table_id: str, date: str, rows: List[Row], schema: TableSchema
    ) -> None:
        dirpath = self._table_dir(table_id) / f"date={date}"
        dirpath.mkdir(parents=True, exist_ok=True)
        key = (table_id, date)
        if self._file_counters[key] == 0:
            self._file_counters[key] = len(list(dirpath.glob("part-*.parquet")))
        # Unique filename per flush
        self._file_counters[key] += 1
        filename = dirpath / f"part-{self._file_counters[key]:05d}.parquet"
        columns = {
            name: [
                list(value) if isinstance(value, tuple) else value
                for value in (row.get(name) for row in rows)
            ]
            for name in schema.names
        }
        table = pa.table(columns, schema=arrow_schema(schema))
        pq.write_table(table, filename, compression=self._compression)

    def _expire_partitions(self, table_id: str, expiration_ms: int) -> None:
        cutoff = _partition_date(self._clock() * 1000 - expiration_ms)
        for dirpath in self._table_dir(table_id).glob("date=*"):
            date = dirpath.name.split("=", 1)[1]
            if date != "null" and cutoff is not None and date < cutoff:
                shutil.rmtree(dirpath)

    def read_rows(self, table_id: str) -> List[Row]:
        """Return every stored row of ``table_id``, oldest partition first."""

        rows: List[Row] = []
        for path in sorted(self._table_dir(table_id).glob("date=*/part-*.parquet")):
            rows.extend(pq.ParquetFile(path).read().to_pylist())
        return rows


__all__ = ["ParquetWarehouse", "arrow_field", "arrow_schema"]
