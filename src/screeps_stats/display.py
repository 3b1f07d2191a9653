"""Plain-text rendering of a batch of rows for console output."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from .schema import deduce_columns


def _cell(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(_cell(item) for item in value)
    return str(value)


def format_rows(
    table_id: str, rows: Sequence[Mapping[str, Any]], *, max_rows: int = 11
) -> str:
    """Render up to ``max_rows`` rows as a bordered text table."""

    columns = deduce_columns(rows)
    shown = list(rows[:max_rows])
    widths = [
        max([len(column)] + [len(_cell(row.get(column))) for row in shown])
        for column in columns
    ]

    lines = [f"[{table_id}]"]
    header = "| " + "".join(
        f" {column.ljust(width + 1)}|" for column, width in zip(columns, widths)
    )
    separator = "+-" + "".join("-" * (width + 2) + "+" for width in widths)
    lines.append(header)
    lines.append(separator)
    for row in shown:
        lines.append(
            "| "
            + "".join(
                f" {_cell(row.get(column)).ljust(width + 1)}|"
                for column, width in zip(columns, widths)
            )
        )
    if len(shown) < len(rows):
        lines.append(f"... {len(rows) - len(shown)} more rows ...")
    return "\n".join(lines)


__all__ = ["format_rows"]
