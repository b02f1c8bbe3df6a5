"""Comparable keys extracted from link columns.

A key is built from the values a row holds under an ordered list of link columns, and
owners are matched with related rows by comparing such keys. Scalars are normalized to
their string form so that ``1`` read from one table matches ``"1"`` read from another.
Composite links produce one tuple per row; a single column holding a list produces one
key per element.
"""

from __future__ import annotations

from collections.abc import Hashable, Sequence
from typing import Any

from .tools import Row, row_get


def normalize_key(value: Any) -> Hashable:
    """Normalize a single key value: strings are kept, other scalars are stringified.

    Binary values read as ``memoryview`` (PostgreSQL ``bytea``) are compared by content.
    """
    if isinstance(value, str):
        return value

    if isinstance(value, memoryview):
        value = value.tobytes()

    if isinstance(value, (list, tuple)):
        return tuple(normalize_key(item) for item in value)

    return str(value)


def get_model_keys(row: Row, properties: Sequence[str]) -> list[Hashable]:
    """Return the keys *row* holds under *properties*.

    Args:
        row: Model instance or plain dict row.
        properties: Ordered link column names.

    Returns:
        * ``[]`` when every value is missing, or when any part of a composite key is;
        * one key per element when the only property holds a list;
        * ``[key]`` for a single scalar;
        * ``[(k1, k2, ...)]`` for a composite link.

    Example:
        >>> get_model_keys({"id": 7}, ["id"])
        ['7']
        >>> get_model_keys({"tags": [1, 2]}, ["tags"])
        ['1', '2']
        >>> get_model_keys({"a": 1, "b": None}, ["a", "b"])
        []
    """
    values = [row_get(row, name) for name in properties]
    present = [value for value in values if value is not None]

    if not present or len(present) != len(values):
        return []

    if len(present) == 1:
        (value,) = present
        if isinstance(value, (list, tuple)):
            return [normalize_key(item) for item in value]
        return [normalize_key(value)]

    return [tuple(normalize_key(value) for value in present)]
