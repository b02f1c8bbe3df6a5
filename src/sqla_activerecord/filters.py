from __future__ import annotations

import logging
from collections.abc import Hashable, Sequence
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy.sql.expression import ClauseElement

from .conditions import ArrayOverlaps, JsonOverlaps
from .exceptions import InvalidConfigError
from .tools import Row, qualify_columns, row_get


if TYPE_CHECKING:
    from .query import ActiveQuery


logger = logging.getLogger(__name__)


def apply_relation_filter(query: ActiveQuery[Any], models: Sequence[Row]) -> None:
    """Restrict *query* to the rows linked to *models*.

    For a single-column link the owners' values are collected (list values are
    flattened, ``None`` skipped, duplicates dropped) and matched with ``IN``, or with an
    overlap test when the related column is an array or JSON column. For a composite
    link a tuple ``IN`` is used, built only from owners holding every link value.

    When no owner contributes a value the query is switched to emulated execution and
    also gets an always-false condition, so it returns nothing without touching the
    database and stays correct if the emulation flag is later cleared.

    Args:
        query: Relation query; its ``link`` maps related columns to owner properties.
        models: Owner rows (models or dicts).

    Raises:
        InvalidConfigError: If the query has no link.
    """
    link = query.get_link()
    if not link:
        raise InvalidConfigError(
            f"Relation query for {query.model_class.__name__} has no link to filter by."
        )

    columns = qualify_columns(query, list(link))

    if len(link) == 1:
        ((column_name, property_name),) = link.items()
        (column,) = columns
        values: list[Any] = []
        for model in models:
            value = row_get(model, property_name)
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                values.extend(value)
            else:
                values.append(value)

        if not values:
            _match_nothing(query)
            return

        values = _unique_values(values)
        column_type = query.column_type(column_name)

        if isinstance(column_type, sa.ARRAY):
            condition: sa.ColumnElement[bool] = ArrayOverlaps(
                column, values, item_type=column_type.item_type
            )
        elif isinstance(column_type, sa.JSON):
            condition = JsonOverlaps(column, values)
        else:
            condition = column.in_(values)

        query.and_where(condition)
        return

    tuples: list[tuple[Any, ...]] = []
    for model in models:
        row = tuple(row_get(model, name) for name in link.values())
        if any(value is None for value in row):
            continue
        tuples.append(row)

    if not tuples:
        _match_nothing(query)
        return

    query.and_where(sa.tuple_(*columns).in_(list(dict.fromkeys(tuples))))


def find_junction_rows(query: ActiveQuery[Any], models: Sequence[Row]) -> list[dict[str, Any]]:
    """Fetch the link-table rows of *models* as plain dicts."""
    if not models:
        return []

    apply_relation_filter(query, models)

    return list(query.as_array().all())


def _match_nothing(query: ActiveQuery[Any]) -> None:
    logger.debug("No link values for %s, emulating empty result", query.model_class.__name__)
    query.emulate_execution()
    query.and_where(sa.false())


def _unique_values(values: list[Any]) -> list[Any]:
    """Drop duplicate scalars keeping first-seen order; non-scalars are kept as is."""
    scalars: dict[Hashable, None] = {}
    others: list[Any] = []
    for value in values:
        if isinstance(value, ClauseElement) or not isinstance(value, Hashable):
            others.append(value)
        else:
            scalars.setdefault(value, None)

    return [*scalars, *others]
