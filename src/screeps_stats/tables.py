"""Destination table resolution, creation and schema widening."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from .schema import TIME_COLUMN, FieldSpec, deduce_columns, deduce_schema
from .warehouse import (
    DAY_MS,
    Found,
    LookupFailure,
    MissingTableError,
    NotFound,
    PartitionSpec,
    TableHandle,
    TableOptions,
    UnknownRemoteError,
    WarehouseClient,
)


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def build_table_options(
    rows: Sequence[Mapping[str, Any]],
    *,
    cluster_on_underscore: bool = False,
    partition_expiry_days: int = 0,
) -> TableOptions:
    """Derive creation options for a new table from its first batch."""

    clustering = [name for name in deduce_columns(rows) if name.startswith("_")]
    expiration_ms = partition_expiry_days * DAY_MS if partition_expiry_days else None
    return TableOptions(
        schema=deduce_schema(rows),
        time_partitioning=PartitionSpec(
            type="DAY", field=TIME_COLUMN, expiration_ms=expiration_ms
        ),
        clustering_fields=clustering if cluster_on_underscore and clustering else None,
    )


class TableManager:
    """Resolve destination tables, creating or widening them as configured."""

    def __init__(
        self,
        warehouse: WarehouseClient,
        *,
        create_missing_tables: bool = True,
        cluster_on_underscore: bool = False,
        partition_expiry_days: int = 0,
        verbose: bool = False,
    ) -> None:
        self.warehouse = warehouse
        self.create_missing_tables = create_missing_tables
        self.cluster_on_underscore = cluster_on_underscore
        self.partition_expiry_days = int(partition_expiry_days)
        self._log_level = logging.INFO if verbose else logging.DEBUG
        self._handles: Dict[str, TableHandle] = {}

    def cached(self, table_id: str) -> bool:
        return table_id in self._handles

    def ensure_table(
        self, table_id: str, sample_rows: Sequence[Mapping[str, Any]]
    ) -> TableHandle:
        """Return a handle for ``table_id``, creating the table when allowed."""

        handle = self._handles.get(table_id)
        if handle is not None:
            return handle

        result = self.warehouse.lookup_table(table_id)
        if isinstance(result, Found):
            handle = result.handle
        elif isinstance(result, NotFound):
            logger.info("table [%s] does not exist", table_id)
            if not self.create_missing_tables:
                raise MissingTableError(table_id)
            handle = self._create(table_id, sample_rows)
        elif isinstance(result, LookupFailure):
            raise UnknownRemoteError(
                f"Lookup of table [{table_id}] failed: {result.detail}"
            ) from result.cause
        else:
            raise TypeError(f"Unexpected lookup result: {result!r}")

        self._handles[table_id] = handle
        return handle

    def _create(
        self, table_id: str, sample_rows: Sequence[Mapping[str, Any]]
    ) -> TableHandle:
        options = build_table_options(
            sample_rows,
            cluster_on_underscore=self.cluster_on_underscore,
            partition_expiry_days=self.partition_expiry_days,
        )
        logger.log(
            self._log_level,
            "Creating table [%s] with options: %s",
            table_id,
            options.to_api(),
        )
        return self.warehouse.create_table(table_id, options)

    def add_columns(
        self, table_id: str, new_fields: Iterable[FieldSpec]
    ) -> List[FieldSpec]:
        """Append unseen ``new_fields`` to the table schema in one update.

        Returns the fields that were actually added.
        """

        new_fields = list(new_fields)
        if not new_fields:
            return []
        handle = self._handles.get(table_id)
        if handle is None:
            result = self.warehouse.lookup_table(table_id)
            if isinstance(result, Found):
                handle = result.handle
            elif isinstance(result, NotFound):
                raise MissingTableError(table_id)
            else:
                raise UnknownRemoteError(
                    f"Lookup of table [{table_id}] failed: {result.detail}"
                ) from result.cause

        metadata = self.warehouse.get_metadata(handle)
        schema = metadata.schema.extend(new_fields)
        added = [spec for spec in schema.fields if spec.name not in metadata.schema]
        if not added:
            handle.schema = metadata.schema
            self._handles[table_id] = handle
            return []

        for spec in added:
            logger.log(
                self._log_level,
                "Adding column '%s' of type '%s' (%s) to '%s'",
                spec.name,
                spec.type.value,
                spec.mode.value,
                table_id,
            )
        updated = self.warehouse.set_metadata(handle, replace(metadata, schema=schema))
        updated.schema = schema
        self._handles[table_id] = updated
        logger.debug("new schema for [%s]: %s", table_id, schema.to_api())
        return added


__all__ = ["TableManager", "build_table_options"]
