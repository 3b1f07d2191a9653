"""Utilities for ingesting Screeps stats into a data warehouse."""

from .buffer import BufferStore
from .ingest import StatsPoller
from .schema import deduce_schema
from .tables import TableManager
from .writer import IngestWriter, WriterSettings

__all__ = [
    "BufferStore",
    "IngestWriter",
    "StatsPoller",
    "TableManager",
    "WriterSettings",
    "deduce_schema",
]
