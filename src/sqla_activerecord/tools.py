from __future__ import annotations

import re
from collections.abc import Callable, Mapping, MutableMapping, Sequence
from functools import lru_cache
from typing import TYPE_CHECKING, Any, TypeAlias

import sqlalchemy as sa

from .conditions import AliasedColumn
from .exceptions import InvalidConfigError


if TYPE_CHECKING:
    from .query import ActiveQuery
    from .record import ActiveRecord


Row: TypeAlias = "ActiveRecord | MutableMapping[str, Any]"
"""A loaded row: either a model instance or a plain ``dict`` (``as_array`` queries)."""

_TABLE_WITH_ALIAS = re.compile(r"^(.*?)\s+(\w+)$")


def row_get(row: Row, name: str) -> Any:
    """Read property *name* from a model or a plain dict row, ``None`` when absent."""
    return row.get(name)


def row_set(row: Row, name: str, value: Any) -> None:
    """Assign relation *name* on a model (as populated relation) or a plain dict row."""
    if isinstance(row, MutableMapping):
        row[name] = value
    else:
        row.populate_relation(name, value)


def get_value_by_path(row: Row, key: str | Callable[[Row], Any]) -> Any:
    """Resolve *key* against *row*.

    *key* is either a callable receiving the row, or a dotted path such as
    ``"customer.email"`` walking through nested dicts, populated relations and
    properties.
    """
    if callable(key):
        return key(row)

    value: Any = row
    for part in key.split("."):
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(part)
        elif value.has_property(part):
            value = value.get(part)
        elif value.is_relation_populated(part):
            value = value.related_records()[part]
        else:
            value = getattr(value, part, None)

    return value


def index_rows(rows: Sequence[Row], key: str | Callable[[Row], Any]) -> dict[Any, Row]:
    """Index *rows* by the value found under *key*; later rows win on collisions."""
    return {get_value_by_path(row, key): row for row in rows}


@lru_cache
def get_table_name(model: type[ActiveRecord]) -> str:
    """Get the table name of an active record class.

    Args:
        model: Active record class with a ``__table__``.

    Returns:
        The table name as a string.

    Raises:
        InvalidConfigError: If the model has no table attached.
    """
    table = getattr(model, "__table__", None)
    if table is None or not table.name:
        raise InvalidConfigError(f"Cannot determine tablename for {model}")

    return table.name


def get_table_names(query: sa.Select[Any]) -> Sequence[str]:
    """Extract the table names and aliases a built statement selects from.

    Joins are walked left to right; aliased tables are reported by their alias.

    Args:
        query: A statement returned by :meth:`ActiveQuery.build`.

    Returns:
        Sequence of names in FROM/JOIN order, without duplicates.
    """
    seen: set[str] = set()
    out: list[str] = []

    def add(name: str | None) -> None:
        if name and name not in seen:
            seen.add(name)
            out.append(name)

    for root in query.get_final_froms():
        stack: list[Any] = [root]
        while stack:
            node = stack.pop()

            if isinstance(node, sa.Join):
                stack.extend([node.right, node.left])
                continue

            add(getattr(node, "name", None))

    return out


def split_table_alias(spec: str) -> tuple[str, str | None]:
    """Split a ``"table alias"`` spec into its parts; the alias is ``None`` when absent."""
    if match := _TABLE_WITH_ALIAS.match(spec.strip()):
        return match[1], match[2]

    return spec.strip(), None


def lookup_table(metadata: sa.MetaData, name: str) -> sa.TableClause:
    """The table *name* from *metadata*, or a lightweight column-less table for unknown names."""
    table = metadata.tables.get(name)

    return sa.table(name) if table is None else table


def resolve_table_and_alias(query: ActiveQuery[Any]) -> tuple[sa.FromClause | str, str]:
    """Return the table a query selects from together with the alias it is referred by.

    * without an explicit FROM, the model table and its name;
    * with an explicit alias, the table and that alias;
    * a ``"table alias"`` string is split on its last whitespace;
    * a bare table (or table name) is its own alias.

    Raises:
        InvalidConfigError: If FROM is an expression (subquery, select) without an alias.
    """
    source = query.get_from()
    if source is None:
        table = query.model_class.__table__
        return table, table.name

    alias, table = source
    if alias:
        return table, alias

    if isinstance(table, str):
        name, alias = split_table_alias(table)
        return name, alias or name

    if isinstance(table, sa.TableClause):
        return table, table.name

    raise InvalidConfigError("Alias must be set for a table specified by an expression.")


def resolve_from_clause(query: ActiveQuery[Any]) -> sa.FromClause:
    """Materialize the FROM of *query* as a selectable, applying its alias."""
    table, alias = resolve_table_and_alias(query)

    if isinstance(table, str):
        table = lookup_table(query.model_class.__table__.metadata, table)

    if isinstance(table, sa.TableClause):
        return table if alias == table.name else table.alias(alias)

    if isinstance(table, sa.Select):
        return table.subquery(alias)

    if isinstance(table, sa.FromClause):
        return table.alias(alias)

    raise InvalidConfigError(f"Cannot select from {table!r}.")


def qualify_columns(query: ActiveQuery[Any], names: Sequence[str]) -> list[sa.ColumnElement[Any]]:
    """Column references for *names* as the WHERE clause of *query* should spell them.

    Names are qualified with the query's table alias only when the query joins other
    tables; otherwise they are left bare.
    """
    if not query.get_joins() and not query.get_join_with():
        return [sa.column(name) for name in names]

    _, alias = resolve_table_and_alias(query)

    return [AliasedColumn(alias, name, query.column_type(name)) for name in names]
