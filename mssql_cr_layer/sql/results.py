"""Row construction and duplicate column folding."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Sequence

Row = Dict[str, Any]


def build_row(columns: Sequence[str], values: Iterable[Any]) -> Row:
    """Zip column names and values into a dict.

    A column name that appears more than once maps to the list of its
    values in column order, e.g. ``SELECT a.id, b.id`` gives
    ``{'id': [1, 2]}``.
    """
    row: Row = {}
    duplicated = set()
    for name, value in zip(columns, values):
        if name not in row:
            row[name] = value
        elif name in duplicated:
            row[name].append(value)
        else:
            row[name] = [row[name], value]
            duplicated.add(name)
    return row


def _all_equal(values: List[Any]) -> bool:
    first = values[0]
    return all(v == first for v in values[1:])


def fold_row(row: Row) -> Row:
    """Collapse duplicated columns whose values are all equal."""
    folded: Row = {}
    for name, value in row.items():
        if isinstance(value, list) and len(value) > 1 and _all_equal(value):
            folded[name] = value[0]
        else:
            folded[name] = value
    return folded


def fold_rows(rows: Iterable[Row] | None) -> List[Row]:
    if not rows:
        return []
    return [fold_row(row) for row in rows]
