"""Warehouse schema inference from sampled stats rows.

Rows are plain dictionaries produced by the game-side stats collector. Each
value is classified into a :class:`FieldKind` and mapped to a BigQuery-style
field type and mode. One level of repetition (a list of scalars) is allowed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

TIME_COLUMN = "time"


class FieldKind(str, Enum):
    """Primitive kind of a single runtime value."""

    TEXT = "text"
    BOOLEAN = "boolean"
    NUMBER = "number"
    SEQUENCE = "sequence"


class FieldType(str, Enum):
    STRING = "STRING"
    BOOLEAN = "BOOLEAN"
    FLOAT = "FLOAT"
    TIMESTAMP = "TIMESTAMP"


class FieldMode(str, Enum):
    NULLABLE = "NULLABLE"
    REPEATED = "REPEATED"


_KIND_TYPES = {
    FieldKind.TEXT: FieldType.STRING,
    FieldKind.BOOLEAN: FieldType.BOOLEAN,
    FieldKind.NUMBER: FieldType.FLOAT,
}


class TypeInferenceError(ValueError):
    """Raised when a column's values cannot be mapped to a single field type."""

    def __init__(self, column: str, message: str) -> None:
        super().__init__(f"Unable to deduce type of column '{column}': {message}")
        self.column = column


@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: FieldType
    mode: FieldMode = FieldMode.NULLABLE

    def to_api(self) -> Dict[str, str]:
        return {"name": self.name, "type": self.type.value, "mode": self.mode.value}

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "FieldSpec":
        return cls(
            name=str(data["name"]),
            type=FieldType(str(data["type"]).upper()),
            mode=FieldMode(str(data.get("mode") or "NULLABLE").upper()),
        )


@dataclass(frozen=True)
class TableSchema:
    """Ordered collection of fields with unique names."""

    fields: Tuple[FieldSpec, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        seen = set()
        for spec in self.fields:
            if spec.name in seen:
                raise ValueError(f"Duplicate column in schema: {spec.name}")
            seen.add(spec.name)

    @property
    def names(self) -> List[str]:
        return [spec.name for spec in self.fields]

    def __contains__(self, name: object) -> bool:
        return any(spec.name == name for spec in self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    def get(self, name: str) -> Optional[FieldSpec]:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    def extend(self, new_fields: Iterable[FieldSpec]) -> "TableSchema":
        """Return a schema with the unseen ``new_fields`` appended.

        Fields whose name already exists are skipped; existing fields are never
        retyped, so a schema only ever grows.
        """

        names = set(self.names)
        merged = list(self.fields)
        for spec in new_fields:
            if spec.name in names:
                continue
            names.add(spec.name)
            merged.append(spec)
        return TableSchema(tuple(merged))

    def to_api(self) -> List[Dict[str, str]]:
        return [spec.to_api() for spec in self.fields]

    @classmethod
    def from_api(cls, fields: Iterable[Mapping[str, Any]]) -> "TableSchema":
        return cls(tuple(FieldSpec.from_api(item) for item in fields))


def kind_of(value: Any) -> Optional[FieldKind]:
    """Classify a runtime value, returning ``None`` for unsupported types."""

    # bool is a subclass of int and must be checked first
    if isinstance(value, bool):
        return FieldKind.BOOLEAN
    if isinstance(value, (int, float)):
        return FieldKind.NUMBER
    if isinstance(value, str):
        return FieldKind.TEXT
    if isinstance(value, (list, tuple)):
        return FieldKind.SEQUENCE
    return None


def deduce_columns(rows: Iterable[Mapping[str, Any]]) -> List[str]:
    """Return the union of column names across ``rows`` in first-seen order."""

    columns: Dict[str, None] = {}
    for row in rows:
        for name in row.keys():
            columns.setdefault(name, None)
    return list(columns)


def deduce_type_and_mode(
    column: str, values: Sequence[Any]
) -> Tuple[FieldType, FieldMode]:
    """Infer the field type and mode of ``column`` from its observed values."""

    if column == TIME_COLUMN:
        return FieldType.TIMESTAMP, FieldMode.NULLABLE

    kinds: List[FieldKind] = []
    present: List[Any] = []
    for value in values:
        if value is None:
            continue
        kind = kind_of(value)
        if kind is None:
            raise TypeInferenceError(
                column, f"unsupported value type {type(value).__name__}"
            )
        if kind not in kinds:
            kinds.append(kind)
        present.append(value)

    if not kinds:
        raise TypeInferenceError(column, "no values to deduce a type from")
    if len(kinds) > 1:
        raise TypeInferenceError(
            column,
            "multiple types in same column " + ", ".join(k.value for k in kinds),
        )

    kind = kinds[0]
    if kind is not FieldKind.SEQUENCE:
        return _KIND_TYPES[kind], FieldMode.NULLABLE

    elements = [item for value in present for item in value]
    subtype, submode = deduce_type_and_mode(column, elements)
    if submode is FieldMode.REPEATED:
        raise TypeInferenceError(column, "arrays can only have a nesting level of one")
    return subtype, FieldMode.REPEATED


def deduce_schema(rows: Sequence[Mapping[str, Any]]) -> TableSchema:
    """Infer a complete table schema from sample rows.

    The reserved ``time`` column is always present as a nullable timestamp.
    Columns that are null in every row are left out; they are added once a
    later batch carries a value.
    """

    columns = deduce_columns(rows)
    fields: List[FieldSpec] = []
    if TIME_COLUMN not in columns:
        fields.append(FieldSpec(TIME_COLUMN, FieldType.TIMESTAMP, FieldMode.NULLABLE))
    for column in columns:
        values = [row.get(column) for row in rows]
        if column != TIME_COLUMN and all(value is None for value in values):
            continue
        type_, mode = deduce_type_and_mode(column, values)
        fields.append(FieldSpec(column, type_, mode))
    return TableSchema(tuple(fields))


__all__ = [
    "FieldKind",
    "FieldMode",
    "FieldSpec",
    "FieldType",
    "TIME_COLUMN",
    "TableSchema",
    "TypeInferenceError",
    "deduce_columns",
    "deduce_schema",
    "deduce_type_and_mode",
    "kind_of",
]
