"""SQL constructs used by relation filters and join synthesis.

``AliasedColumn`` references ``alias.column`` without dragging a table object into the
FROM list, which lets join ON-conditions and link filters name a table by its alias
only.  ``ArrayOverlaps`` and ``JsonOverlaps`` select rows whose array / JSON-array
column shares at least one element with a list of values; both compile per dialect.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy.dialects import postgresql
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.compiler import SQLCompiler
from sqlalchemy.sql.expression import ColumnElement


class AliasedColumn(ColumnElement[Any]):
    """A column qualified by a table alias name, e.g. ``"o"."customer_id"``.

    Both parts are quoted by the dialect's identifier preparer at compile time.
    """

    inherit_cache = False

    def __init__(self, alias: str, name: str, type_: sa.types.TypeEngine[Any] | None = None) -> None:
        self.alias = alias
        self.name = name
        self.key = name
        self.type = sa.types.to_instance(type_)

    def __repr__(self) -> str:
        return f"AliasedColumn({self.alias!r}, {self.name!r})"


class ArrayOverlaps(ColumnElement[bool]):
    """``column && ARRAY[values]`` (PostgreSQL only)."""

    inherit_cache = False
    type = sa.Boolean()

    def __init__(
        self,
        column: ColumnElement[Any],
        values: Sequence[Any],
        item_type: sa.types.TypeEngine[Any] | None = None,
    ) -> None:
        self.column = column
        self.values = tuple(values)
        self.item_type = item_type


class JsonOverlaps(ColumnElement[bool]):
    """True when the JSON array stored in ``column`` shares an element with ``values``."""

    inherit_cache = False
    type = sa.Boolean()

    def __init__(self, column: ColumnElement[Any], values: Sequence[Any]) -> None:
        self.column = column
        self.values = tuple(values)


@compiles(AliasedColumn)
def _compile_aliased_column(element: AliasedColumn, compiler: SQLCompiler, **kw: Any) -> str:
    preparer = compiler.preparer

    return f"{preparer.quote(element.alias)}.{preparer.quote(element.name)}"


@compiles(ArrayOverlaps)
def _compile_array_overlaps(element: ArrayOverlaps, compiler: SQLCompiler, **kw: Any) -> str:
    raise sa_exc.CompileError(
        f"Array overlap conditions are not supported by the {compiler.dialect.name} dialect"
    )


@compiles(ArrayOverlaps, "postgresql")
def _compile_array_overlaps_pg(element: ArrayOverlaps, compiler: SQLCompiler, **kw: Any) -> str:
    values = postgresql.array(element.values, type_=element.item_type)

    return f"{compiler.process(element.column, **kw)} && {compiler.process(values, **kw)}"


@compiles(JsonOverlaps)
def _compile_json_overlaps(element: JsonOverlaps, compiler: SQLCompiler, **kw: Any) -> str:
    raise sa_exc.CompileError(
        f"JSON overlap conditions are not supported by the {compiler.dialect.name} dialect"
    )


@compiles(JsonOverlaps, "postgresql")
def _compile_json_overlaps_pg(element: JsonOverlaps, compiler: SQLCompiler, **kw: Any) -> str:
    column = sa.cast(element.column, postgresql.JSONB)
    clause = sa.or_(
        *(
            column.op("@>")(sa.cast(sa.literal(json.dumps([value])), postgresql.JSONB))
            for value in element.values
        )
    )

    return compiler.process(clause.self_group(), **kw)


@compiles(JsonOverlaps, "mysql")
@compiles(JsonOverlaps, "mariadb")
def _compile_json_overlaps_mysql(element: JsonOverlaps, compiler: SQLCompiler, **kw: Any) -> str:
    values = sa.literal(json.dumps(list(element.values)))

    return f"JSON_OVERLAPS({compiler.process(element.column, **kw)}, {compiler.process(values, **kw)})"


@compiles(JsonOverlaps, "sqlite")
def _compile_json_overlaps_sqlite(element: JsonOverlaps, compiler: SQLCompiler, **kw: Any) -> str:
    values = ", ".join(compiler.process(sa.literal(value), **kw) for value in element.values)

    return (
        f"EXISTS (SELECT 1 FROM json_each({compiler.process(element.column, **kw)}) "
        f"WHERE json_each.value IN ({values}))"
    )
