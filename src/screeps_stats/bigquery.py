"""BigQuery backend for the stats writer.

The reserved ``time`` value is read as epoch milliseconds, the unit of
``Date.now()`` in the game's JavaScript, and sent as an RFC 3339 timestamp.
Stats that stamp ``time`` in seconds or game ticks must convert it before
writing. ``None`` values are omitted from inserted rows, which BigQuery stores
as NULL.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, List, Optional, Sequence

from google.api_core.exceptions import GoogleAPIError, NotFound as NotFoundError
from google.cloud import bigquery

from .schema import TIME_COLUMN, FieldMode, FieldSpec, FieldType, TableSchema
from .warehouse import (
    Found,
    LookupFailure,
    LookupResult,
    NotFound,
    Row,
    RowRejectionError,
    TableHandle,
    TableMetadata,
    TableOptions,
    WarehouseClient,
)


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

_TYPE_ALIASES = {"FLOAT64": "FLOAT", "BOOL": "BOOLEAN"}
_MODE_ALIASES = {"REQUIRED": "NULLABLE"}


def _to_field_spec(field: bigquery.SchemaField) -> Optional[FieldSpec]:
    type_name = str(field.field_type).upper()
    type_name = _TYPE_ALIASES.get(type_name, type_name)
    if type_name not in FieldType.__members__:
        return None
    mode = str(field.mode or "NULLABLE").upper()
    # REQUIRED columns accept the same values; the remote mode is left untouched
    mode = _MODE_ALIASES.get(mode, mode)
    if mode not in FieldMode.__members__:
        return None
    return FieldSpec.from_api({"name": field.name, "type": type_name, "mode": mode})


def _to_schema_field(spec: FieldSpec) -> bigquery.SchemaField:
    return bigquery.SchemaField(spec.name, spec.type.value, mode=spec.mode.value)


def _schema_from_table(table: bigquery.Table) -> TableSchema:
    specs: List[FieldSpec] = []
    for field in table.schema or []:
        spec = _to_field_spec(field)
        if spec is None:
            # Columns of other types are kept remotely but never widened here
            logger.debug("Ignoring column %s of type %s", field.name, field.field_type)
            continue
        specs.append(spec)
    return TableSchema(tuple(specs))


def _json_value(name: str, value: Any) -> Any:
    if name == TIME_COLUMN and isinstance(value, (int, float)) and not isinstance(
        value, bool
    ):
        # Stats time is epoch milliseconds
        return dt.datetime.fromtimestamp(value / 1000, tz=dt.timezone.utc).isoformat()
    if isinstance(value, tuple):
        return list(value)
    return value


def _json_row(row: Row) -> Dict[str, Any]:
    return {
        name: _json_value(name, value)
        for name, value in row.items()
        if value is not None
    }


class BigQueryWarehouse(WarehouseClient):
    """Warehouse client writing into one BigQuery dataset."""

    def __init__(
        self,
        dataset: str,
        *,
        project: Optional[str] = None,
        client: Optional[bigquery.Client] = None,
        timeout: float = 30.0,
    ) -> None:
        self._client = client or bigquery.Client(project=project)
        self.project = project or self._client.project
        self.dataset = dataset
        self.timeout = float(timeout)
        logger.info("Writing into [%s.%s]", self.project, self.dataset)

    @property
    def client(self) -> bigquery.Client:
        return self._client

    def table_ref(self, table_id: str) -> str:
        return f"{self.project}.{self.dataset}.{table_id}"

    def _handle(self, table_id: str, table: bigquery.Table) -> TableHandle:
        return TableHandle(
            table_id=table_id, schema=_schema_from_table(table), native=table
        )

    def lookup_table(self, table_id: str) -> LookupResult:
        try:
            table = self._client.get_table(self.table_ref(table_id), timeout=self.timeout)
        except NotFoundError:
            return NotFound(table_id)
        except GoogleAPIError as exc:
            return LookupFailure(table_id, str(exc), exc)
        return Found(self._handle(table_id, table))

    def create_table(self, table_id: str, options: TableOptions) -> TableHandle:
        table = bigquery.Table(
            self.table_ref(table_id),
            schema=[_to_schema_field(spec) for spec in options.schema.fields],
        )
        partitioning = options.time_partitioning
        table.time_partitioning = bigquery.TimePartitioning(
            type_=partitioning.type,
            field=partitioning.field,
            expiration_ms=partitioning.expiration_ms,
        )
        if options.clustering_fields:
            table.clustering_fields = list(options.clustering_fields)
        created = self._client.create_table(table, timeout=self.timeout)
        return self._handle(table_id, created)

    def insert_rows(self, handle: TableHandle, rows: Sequence[Row]) -> None:
        # skip_invalid_rows lets valid rows land when others are rejected
        errors = self._client.insert_rows_json(
            self.table_ref(handle.table_id),
            [_json_row(row) for row in rows],
            skip_invalid_rows=True,
            timeout=self.timeout,
        )
        if errors:
            raise RowRejectionError.from_api(errors)

    def get_metadata(self, handle: TableHandle) -> TableMetadata:
        table = self._client.get_table(self.table_ref(handle.table_id), timeout=self.timeout)
        return TableMetadata(schema=_schema_from_table(table), native=table)

    def set_metadata(self, handle: TableHandle, metadata: TableMetadata) -> TableHandle:
        table = metadata.native
        if table is None:
            table = self._client.get_table(
                self.table_ref(handle.table_id), timeout=self.timeout
            )
        current = list(table.schema or [])
        known = {field.name for field in current}
        additions = [
            _to_schema_field(spec)
            for spec in metadata.schema.fields
            if spec.name not in known
        ]
        table.schema = current + additions
        updated = self._client.update_table(table, ["schema"], timeout=self.timeout)
        return self._handle(handle.table_id, updated)

    def close(self) -> None:
        self._client.close()


__all__ = ["BigQueryWarehouse"]
