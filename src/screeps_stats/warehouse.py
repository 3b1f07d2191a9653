"""Warehouse client contract and the structured outcomes of remote calls.

Backends (BigQuery, local Parquet) implement :class:`WarehouseClient`. Table
lookups return a :class:`Found`, :class:`NotFound` or :class:`LookupFailure`
value instead of raising, so callers branch on the outcome rather than on
exception messages. Row-level insert rejections are raised as
:class:`RowRejectionError`, which carries the per-row errors reported by the
backend.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .schema import TableSchema

Row = Dict[str, Any]

DAY_MS = 1000 * 60 * 60 * 24


class MissingTableError(Exception):
    """Raised when a destination table is absent and creation is disabled."""

    def __init__(self, table_id: str) -> None:
        super().__init__(f"Missing table: {table_id}")
        self.table_id = table_id


class UnknownRemoteError(Exception):
    """Raised for warehouse failures that are not handled locally."""


@dataclass(frozen=True)
class FieldError:
    reason: str
    location: str
    message: str

    @property
    def is_missing_field(self) -> bool:
        return self.reason == "invalid" and self.message.startswith("no such field")


@dataclass(frozen=True)
class RowError:
    index: int
    errors: Sequence[FieldError]


class RowRejectionError(Exception):
    """Raised by ``insert_rows`` when individual rows were rejected."""

    def __init__(self, row_errors: Sequence[RowError]) -> None:
        super().__init__(f"{len(row_errors)} row(s) rejected by the warehouse")
        self.row_errors = list(row_errors)

    @classmethod
    def from_api(cls, errors: Sequence[Mapping[str, Any]]) -> "RowRejectionError":
        """Build from an ``insertAll`` style error list."""

        row_errors = []
        for item in errors:
            field_errors = [
                FieldError(
                    reason=str(err.get("reason") or ""),
                    location=str(err.get("location") or ""),
                    message=str(err.get("message") or ""),
                )
                for err in item.get("errors") or []
            ]
            row_errors.append(RowError(index=int(item["index"]), errors=field_errors))
        return cls(row_errors)


@dataclass
class TableHandle:
    """Identity of a destination table plus its last known schema."""

    table_id: str
    schema: Optional[TableSchema] = None
    native: Any = None


@dataclass
class TableMetadata:
    schema: TableSchema
    native: Any = None


@dataclass(frozen=True)
class PartitionSpec:
    type: str = "DAY"
    field: str = "time"
    expiration_ms: Optional[int] = None


@dataclass(frozen=True)
class TableOptions:
    schema: TableSchema
    time_partitioning: PartitionSpec = field(default_factory=PartitionSpec)
    clustering_fields: Optional[List[str]] = None

    def to_api(self) -> Dict[str, Any]:
        return {
            "schema": {"fields": self.schema.to_api()},
            "timePartitioning": {
                "type": self.time_partitioning.type,
                "field": self.time_partitioning.field,
                "expirationMs": self.time_partitioning.expiration_ms,
            },
            "clustering": (
                {"fields": list(self.clustering_fields)}
                if self.clustering_fields
                else None
            ),
        }


@dataclass(frozen=True)
class Found:
    handle: TableHandle


@dataclass(frozen=True)
class NotFound:
    table_id: str


@dataclass(frozen=True)
class LookupFailure:
    table_id: str
    detail: str
    cause: Optional[BaseException] = None


LookupResult = Union[Found, NotFound, LookupFailure]


class WarehouseClient:
    """Interface implemented by warehouse backends."""

    def lookup_table(self, table_id: str) -> LookupResult:
        raise NotImplementedError

    def create_table(self, table_id: str, options: TableOptions) -> TableHandle:
        raise NotImplementedError

    def insert_rows(self, handle: TableHandle, rows: Sequence[Row]) -> None:
        """Insert ``rows``; raise :class:`RowRejectionError` on per-row errors."""

        raise NotImplementedError

    def get_metadata(self, handle: TableHandle) -> TableMetadata:
        raise NotImplementedError

    def set_metadata(self, handle: TableHandle, metadata: TableMetadata) -> TableHandle:
        raise NotImplementedError

    def close(self) -> None:
        return None


__all__ = [
    "DAY_MS",
    "FieldError",
    "Found",
    "LookupFailure",
    "LookupResult",
    "MissingTableError",
    "NotFound",
    "PartitionSpec",
    "Row",
    "RowError",
    "RowRejectionError",
    "TableHandle",
    "TableMetadata",
    "TableOptions",
    "UnknownRemoteError",
    "WarehouseClient",
]
