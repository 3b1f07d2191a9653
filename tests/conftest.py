import sys
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List

import pytest

# Make tests robust to both flat and src/ layouts without requiring installation
_HERE = Path(__file__).resolve()
_ROOT = _HERE.parents[1]
_SRC = _ROOT / "src"
for _p in (_SRC, _ROOT):
    if _p.exists() and str(_p) not in sys.path:
        sys.path.insert(0, str(_p))

from screeps_stats.schema import TableSchema  # noqa: E402
from screeps_stats.warehouse import (  # noqa: E402
    FieldError,
    Found,
    LookupFailure,
    NotFound,
    RowError,
    RowRejectionError,
    TableHandle,
    TableMetadata,
    WarehouseClient,
)


class FakeClock:
    def __init__(self, now: int) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += int(minutes * 60 * 1000)


class InMemoryWarehouse(WarehouseClient):
    """Warehouse fake that rejects rows carrying unknown columns."""

    def __init__(self) -> None:
        self.tables: Dict[str, Dict[str, Any]] = {}
        self.rows: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.calls: List[tuple] = []
        self.lookup_failures: Dict[str, Exception] = {}
        self.insert_failures: List[Exception] = []
        self.set_metadata_calls: List[tuple] = []

    def add_table(self, table_id, fields) -> None:
        self.tables[table_id] = {"schema": TableSchema(tuple(fields)), "options": None}

    def schema(self, table_id) -> TableSchema:
        return self.tables[table_id]["schema"]

    def lookup_table(self, table_id):
        self.calls.append(("lookup_table", table_id))
        if table_id in self.lookup_failures:
            exc = self.lookup_failures[table_id]
            return LookupFailure(table_id, str(exc), exc)
        if table_id not in self.tables:
            return NotFound(table_id)
        return Found(TableHandle(table_id, self.schema(table_id)))

    def create_table(self, table_id, options):
        self.calls.append(("create_table", table_id))
        self.tables[table_id] = {"schema": options.schema, "options": options}
        return TableHandle(table_id, options.schema)

    def insert_rows(self, handle, rows):
        self.calls.append(("insert_rows", handle.table_id, len(rows)))
        if self.insert_failures:
            raise self.insert_failures.pop(0)
        schema = self.schema(handle.table_id)
        errors = []
        for index, row in enumerate(rows):
            unknown = [n for n, v in row.items() if n not in schema and v is not None]
            if unknown:
                errors.append(
                    RowError(
                        index,
                        [FieldError("invalid", n, f"no such field: {n}.") for n in unknown],
                    )
                )
                continue
            self.rows[handle.table_id].append(row)
        if errors:
            raise RowRejectionError(errors)

    def get_metadata(self, handle):
        self.calls.append(("get_metadata", handle.table_id))
        return TableMetadata(schema=self.schema(handle.table_id))

    def set_metadata(self, handle, metadata):
        self.calls.append(("set_metadata", handle.table_id))
        self.set_metadata_calls.append((handle.table_id, metadata.schema))
        self.tables[handle.table_id]["schema"] = metadata.schema
        return TableHandle(handle.table_id, metadata.schema)

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def clock():
    return FakeClock(1_700_000_000_000)


@pytest.fixture
def warehouse():
    return InMemoryWarehouse()
