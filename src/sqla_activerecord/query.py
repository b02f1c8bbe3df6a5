from __future__ import annotations

import copy
import logging
import re
import sys
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Generic, TypeAlias, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm

from .conditions import AliasedColumn
from .datastructures import frozendict
from .exceptions import InvalidCallError, InvalidConfigError, NotFoundError
from .filters import apply_relation_filter, find_junction_rows
from .joins import DEFAULT_JOIN_TYPE, JoinSpec, JoinWith, build_joins_with, normalize_join_type
from .populator import populate_relation
from .tools import (
    Row,
    index_rows,
    lookup_table,
    resolve_from_clause,
    resolve_table_and_alias,
    split_table_alias,
)
from .via import JunctionVia, RelationVia, Via


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if TYPE_CHECKING:
    from .record import ActiveRecord


logger = logging.getLogger(__name__)

T = TypeVar("T", bound="ActiveRecord")

Executor: TypeAlias = "sa.Connection | orm.Session"
Condition: TypeAlias = "sa.ColumnElement[bool] | sa.TextClause | Mapping[str, Any] | str"
RelationCallback: TypeAlias = "Callable[[ActiveQuery[Any]], Any]"

_ORDER_DIRECTION = re.compile(r"^(.*?)\s+(asc|desc)$", re.IGNORECASE)
_RELATION_ALIAS = re.compile(r"^(.*?)(?:\s+AS\s+|\s+)(\w+)$", re.IGNORECASE)
_IDENTIFIER = re.compile(r"^[\w.]+$")


def column_ref(name: str) -> sa.ColumnElement[Any]:
    """Column reference for ``"name"`` or ``"alias.name"``."""
    alias, sep, column = name.rpartition(".")
    if sep:
        return AliasedColumn(alias, column)

    return sa.column(name)


def normalize_condition(condition: Condition) -> sa.ColumnElement[bool]:
    """Convert a condition given as expression, raw SQL string or hash to an expression.

    A hash maps column names to values and means "all of them match":

    * ``None`` becomes ``IS NULL``;
    * a list, tuple or set becomes ``IN``;
    * an :class:`ActiveQuery` or a select becomes ``IN (subquery)``;
    * anything else is compared with ``=``.

    Example:
        >>> str(normalize_condition({"status": 1, "id": [1, 2]}))
        'status = :status_1 AND id IN (__[POSTCOMPILE_id_1])'
    """
    if isinstance(condition, str):
        return sa.text(condition)  # type: ignore[return-value]

    if isinstance(condition, Mapping):
        parts = [_hash_condition(column_ref(name), value) for name, value in condition.items()]
        return sa.and_(*parts) if parts else sa.true()

    return condition  # type: ignore[return-value]


def _hash_condition(column: sa.ColumnElement[Any], value: Any) -> sa.ColumnElement[bool]:
    if value is None:
        return column.is_(None)

    if isinstance(value, ActiveQuery):
        return column.in_(value.build())

    if isinstance(value, (sa.Select, sa.CompoundSelect)):
        return column.in_(value)

    if isinstance(value, (list, tuple, set, frozenset)):
        return column.in_(list(value))

    return column == value


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, tuple, set, frozenset, dict)) and not value)


class ActiveQuery(Generic[T]):
    """Query builder returning active records, and the descriptor of a relation.

    A query built from a model class (``Customer.query(db)``) selects from the model
    table. A relation method of a model returns an ``ActiveQuery`` that additionally
    carries the relation metadata: the :meth:`link` between the two tables, whether the
    relation is :meth:`multiple`, the owner (:meth:`primary_model`), an optional
    intermediate hop (:meth:`via` / :meth:`via_table`) and the :meth:`inverse_of`
    relation name. Executed directly, such a query is restricted to the records linked
    to its owner.

    Builder methods mutate the query in place and return it for chaining.

    Example:
        >>> customers = (
        ...     Customer.query(db)
        ...     .where({"status": 1})
        ...     .with_("orders.items")
        ...     .order_by("id")
        ...     .all()
        ... )
    """

    def __init__(self, model: type[T], db: Executor | None = None) -> None:
        self._model_class = model
        self._db = db

        self._select: list[sa.ColumnElement[Any]] = []
        self._distinct = False
        self._from: tuple[str | None, sa.FromClause | sa.Select[Any] | str] | None = None
        self._where: sa.ColumnElement[bool] | None = None
        self._order_by: list[sa.ColumnElement[Any]] = []
        self._group_by: list[sa.ColumnElement[Any]] = []
        self._having: sa.ColumnElement[bool] | None = None
        self._limit: int | None = None
        self._offset: int | None = None
        self._unions: list[tuple[ActiveQuery[Any] | sa.Select[Any], bool]] = []
        self._joins: list[JoinSpec] = []
        self._join_with: list[JoinWith] = []
        self._on: sa.ColumnElement[bool] | None = None
        self._index_by: str | Callable[[Row], Any] | None = None
        self._as_array: bool | None = None
        self._with: dict[str, RelationCallback | None] = {}
        self._emulate_execution = False

        self._multiple = False
        self._primary_model: ActiveRecord | None = None
        self._link: frozendict[str, str] = frozendict()
        self._inverse_of: str | None = None
        self._via: Via | None = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._model_class.__name__}>"

    @property
    def model_class(self) -> type[T]:
        """The active record class this query returns."""
        return self._model_class

    @property
    def db(self) -> Executor | None:
        return self._db

    def get_model(self) -> T:
        """A blank record of :attr:`model_class` bound to the same connection."""
        return self._model_class(db=self._db)

    def clone(self) -> Self:
        """Copy of the query that can be modified without affecting this one."""
        query = copy.copy(self)
        query._select = list(self._select)
        query._order_by = list(self._order_by)
        query._group_by = list(self._group_by)
        query._unions = list(self._unions)
        query._joins = list(self._joins)
        query._join_with = list(self._join_with)
        query._with = dict(self._with)
        if self._via is not None:
            query._via = replace(self._via, query=self._via.query.clone())

        return query

    # Query building

    def select(self, *columns: str | sa.ColumnElement[Any]) -> Self:
        """Set the selected columns; strings may list several comma-separated names."""
        self._select = []
        return self.add_select(*columns)

    def add_select(self, *columns: str | sa.ColumnElement[Any]) -> Self:
        for column in columns:
            if isinstance(column, str):
                for part in (part.strip() for part in column.split(",")):
                    self._select.append(column_ref(part) if _IDENTIFIER.match(part) else sa.literal_column(part))
            else:
                self._select.append(column)

        return self

    def distinct(self, value: bool = True) -> Self:
        self._distinct = value
        return self

    def from_(self, table: sa.FromClause | sa.Select[Any] | str, alias: str | None = None) -> Self:
        """Select from *table* instead of the model table.

        Args:
            table: A table, a ``"table alias"`` string, or a subquery / select. An
                expression needs *alias*.
            alias: Name the table is referred to by in conditions and joins.
        """
        self._from = (alias, table)
        return self

    def alias(self, alias: str) -> Self:
        """Refer to the queried table as *alias*."""
        table, _ = resolve_table_and_alias(self)
        if isinstance(table, str):
            table = lookup_table(self._model_class.__table__.metadata, table)
        self._from = (alias, table)
        return self

    def get_from(self) -> tuple[str | None, sa.FromClause | sa.Select[Any] | str] | None:
        """``(alias, table)`` given to :meth:`from_`, or ``None`` for the model table."""
        return self._from

    def where(self, condition: Condition | None) -> Self:
        self._where = None if condition is None else normalize_condition(condition)
        return self

    def and_where(self, condition: Condition) -> Self:
        condition = normalize_condition(condition)
        self._where = condition if self._where is None else sa.and_(self._where, condition)
        return self

    def or_where(self, condition: Condition) -> Self:
        condition = normalize_condition(condition)
        self._where = condition if self._where is None else sa.or_(self._where, condition)
        return self

    def filter_where(self, condition: Mapping[str, Any]) -> Self:
        """Like :meth:`and_where` with a hash, ignoring entries with empty values."""
        condition = {name: value for name, value in condition.items() if not _is_empty(value)}
        if condition:
            self.and_where(condition)
        return self

    def get_where(self) -> sa.ColumnElement[bool] | None:
        return self._where

    def order_by(self, *columns: str | Mapping[str, str] | sa.ColumnElement[Any]) -> Self:
        """Set the ordering.

        Strings accept ``"created_at DESC, id"``; a mapping maps column names to
        ``"asc"`` / ``"desc"``.
        """
        self._order_by = []
        return self.add_order_by(*columns)

    def add_order_by(self, *columns: str | Mapping[str, str] | sa.ColumnElement[Any]) -> Self:
        for column in columns:
            if isinstance(column, str):
                self._order_by.extend(
                    _order_clause(part.strip()) for part in column.split(",") if part.strip()
                )
            elif isinstance(column, Mapping):
                self._order_by.extend(
                    _order_clause(f"{name} {direction}") for name, direction in column.items()
                )
            else:
                self._order_by.append(column)

        return self

    def get_order_by(self) -> list[sa.ColumnElement[Any]]:
        return self._order_by

    def group_by(self, *columns: str | sa.ColumnElement[Any]) -> Self:
        self._group_by = [column_ref(column) if isinstance(column, str) else column for column in columns]
        return self

    def get_group_by(self) -> list[sa.ColumnElement[Any]]:
        return self._group_by

    def having(self, condition: Condition | None) -> Self:
        self._having = None if condition is None else normalize_condition(condition)
        return self

    def get_having(self) -> sa.ColumnElement[bool] | None:
        return self._having

    def union(self, query: ActiveQuery[Any] | sa.Select[Any], all: bool = False) -> Self:  # noqa: A002
        self._unions.append((query, all))
        return self

    def get_unions(self) -> list[tuple[ActiveQuery[Any] | sa.Select[Any], bool]]:
        return self._unions

    def limit(self, limit: int | None) -> Self:
        self._limit = limit
        return self

    def offset(self, offset: int | None) -> Self:
        self._offset = offset
        return self

    def join(
        self,
        join_type: str,
        table: sa.FromClause | str | type[ActiveRecord],
        on: Condition | None = None,
    ) -> Self:
        """Append a JOIN.

        Args:
            join_type: ``"LEFT JOIN"``, ``"INNER JOIN"`` or ``"FULL JOIN"``.
            table: Table, ``"table alias"`` string, model class or any from clause.
            on: Join condition.
        """
        self._joins.append(
            JoinSpec(
                normalize_join_type(join_type),
                self._join_target(table),
                None if on is None else normalize_condition(on),
            )
        )
        return self

    def inner_join(self, table: sa.FromClause | str | type[ActiveRecord], on: Condition | None = None) -> Self:
        return self.join("INNER JOIN", table, on)

    def left_join(self, table: sa.FromClause | str | type[ActiveRecord], on: Condition | None = None) -> Self:
        return self.join("LEFT JOIN", table, on)

    def get_joins(self) -> list[JoinSpec]:
        return self._joins

    def set_joins(self, joins: Iterable[JoinSpec]) -> Self:
        self._joins = list(joins)
        return self

    def _join_target(self, table: sa.FromClause | str | type[ActiveRecord]) -> sa.FromClause:
        if isinstance(table, type):
            return table.__table__

        if isinstance(table, str):
            name, alias = split_table_alias(table)
            target = lookup_table(self._model_class.__table__.metadata, name)
            return target if alias is None else target.alias(alias)

        return table

    def on(self, condition: Condition | None) -> Self:
        """Extra condition used in the ON clause when the relation is joined.

        When the query runs on its own the condition is added to WHERE.
        """
        self._on = None if condition is None else normalize_condition(condition)
        return self

    def and_on(self, condition: Condition) -> Self:
        condition = normalize_condition(condition)
        self._on = condition if self._on is None else sa.and_(self._on, condition)
        return self

    def or_on(self, condition: Condition) -> Self:
        condition = normalize_condition(condition)
        self._on = condition if self._on is None else sa.or_(self._on, condition)
        return self

    def get_on(self) -> sa.ColumnElement[bool] | None:
        return self._on

    def index_by(self, column: str | Callable[[Row], Any] | None) -> Self:
        """Return results as a dict keyed by *column* (a dotted path or a callable)."""
        self._index_by = column
        return self

    def get_index_by(self) -> str | Callable[[Row], Any] | None:
        return self._index_by

    def as_array(self, value: bool | None = True) -> Self:
        """Return plain dicts instead of records."""
        self._as_array = value
        return self

    def is_as_array(self) -> bool | None:
        return self._as_array

    def with_(self, *relations: str | Mapping[str, RelationCallback | None]) -> Self:
        """Eager load the named relations.

        Nested relations use dotted names (``"orders.items"``); a mapping attaches a
        callback that customizes the relation query.
        """
        for relation in relations:
            if isinstance(relation, str):
                self._with.setdefault(relation, None)
            else:
                self._with.update(relation)

        return self

    def get_with(self) -> dict[str, RelationCallback | None]:
        return self._with

    def join_with(
        self,
        relations: str | Sequence[str] | Mapping[str, RelationCallback | None],
        eager_loading: bool | Sequence[str] = True,
        join_type: str | Mapping[str, str] = DEFAULT_JOIN_TYPE,
    ) -> Self:
        """Join the tables of the named relations, and eager load them.

        A relation name may carry an alias for the joined table: ``"orders o"`` or
        ``"orders AS o"``.

        Args:
            relations: Relation names, optionally with callbacks.
            eager_loading: Whether (or which of) the relations are also eager loaded.
            join_type: Join type for all relations, or per relation name.
        """
        if isinstance(relations, str):
            relations = {relations: None}
        elif not isinstance(relations, Mapping):
            relations = dict.fromkeys(relations)

        normalized: dict[str, RelationCallback | None] = {}
        for name, callback in relations.items():
            if match := _RELATION_ALIAS.match(name):
                name, alias = match[1], match[2]
                callback = _aliasing(alias, callback)
            normalized[name] = callback

        if isinstance(join_type, str):
            join_type = normalize_join_type(join_type)
        else:
            join_type = {name: normalize_join_type(value) for name, value in join_type.items()}

        self._join_with.append(JoinWith(frozendict(normalized), eager_loading, join_type))
        return self

    def inner_join_with(
        self,
        relations: str | Sequence[str] | Mapping[str, RelationCallback | None],
        eager_loading: bool | Sequence[str] = True,
    ) -> Self:
        return self.join_with(relations, eager_loading, "INNER JOIN")

    def get_join_with(self) -> list[JoinWith]:
        return self._join_with

    def set_join_with(self, join_with: Iterable[JoinWith]) -> Self:
        self._join_with = list(join_with)
        return self

    def emulate_execution(self, value: bool = True) -> Self:
        """Make every fetch return an empty result without querying the database."""
        self._emulate_execution = value
        return self

    def should_emulate_execution(self) -> bool:
        return self._emulate_execution

    def column_type(self, name: str) -> sa.types.TypeEngine[Any]:
        """SQL type of column *name* of the queried table, ``NullType`` when unknown."""
        metadata = self._model_class.__table__.metadata
        table: Any = self._model_class.__table__
        if self._from is not None:
            table = self._from[1]
            if isinstance(table, str):
                table = lookup_table(metadata, split_table_alias(table)[0])

        for candidate in (table, self._model_class.__table__):
            columns = getattr(candidate, "c", None)
            if columns is not None and name in columns:
                return columns[name].type

        return sa.types.NULLTYPE

    # Relation metadata

    def link(self, link: Mapping[str, str]) -> Self:
        """Map columns of the related table to properties of the owner.

        Raises:
            InvalidConfigError: If *link* is empty or not a mapping of names.
        """
        if (
            not isinstance(link, Mapping)
            or not link
            or not all(isinstance(key, str) and isinstance(value, str) for key, value in link.items())
        ):
            raise InvalidConfigError(
                f"Relation link must be a non-empty mapping of column names, got {link!r}"
            )
        self._link = frozendict(link)
        return self

    def get_link(self) -> frozendict[str, str]:
        return self._link

    def multiple(self, value: bool) -> Self:
        self._multiple = value
        return self

    def is_multiple(self) -> bool:
        return self._multiple

    def primary_model(self, model: ActiveRecord | None) -> Self:
        self._primary_model = model
        return self

    def get_primary_model(self) -> ActiveRecord | None:
        return self._primary_model

    def inverse_of(self, name: str) -> Self:
        """Name of the relation of the related model pointing back to the owner."""
        self._inverse_of = name
        return self

    def get_inverse_of(self) -> str | None:
        return self._inverse_of

    def via(self, name: str, callback: RelationCallback | None = None) -> Self:
        """Route the relation through relation *name* of the owner.

        Raises:
            InvalidCallError: If the query has no owner.
        """
        if self._primary_model is None:
            raise InvalidCallError("A relation can only be routed via another one of its owner.")

        relation = self._primary_model.relation_query(name)
        if callback is not None:
            callback(relation)

        self._via = RelationVia(name, relation, callback is not None)
        return self

    def via_table(
        self,
        table: sa.TableClause | str,
        link: Mapping[str, str],
        callback: RelationCallback | None = None,
    ) -> Self:
        """Route the relation through a link table.

        Args:
            table: The link table or its name.
            link: Link-table columns mapped to owner properties.
            callback: Customizes the query on the link table.
        """
        owner = type(self._primary_model) if self._primary_model is not None else self._model_class
        relation: ActiveQuery[Any] = (
            ActiveQuery(owner, self._db).from_(table).link(link).multiple(True).as_array()
        )
        if callback is not None:
            callback(relation)

        self._via = JunctionVia(relation)
        return self

    def get_via(self) -> Via | None:
        return self._via

    def reset_via(self) -> Self:
        self._via = None
        return self

    # Statement

    def build(self) -> sa.Select[Any] | sa.CompoundSelect:
        """Build the statement this query executes.

        Pending ``join_with`` calls are resolved into joins, and a relation query is
        restricted to the records linked to its owner.
        """
        return self._prepare().to_statement()

    def _prepare(self) -> ActiveQuery[T]:
        if self._join_with:
            build_joins_with(self)

        if self._primary_model is None:
            query = self.clone()
        else:
            where, emulate = self._where, self._emulate_execution
            apply_relation_filter(self, self._via_models(self._primary_model))
            query = self.clone()
            self._where, self._emulate_execution = where, emulate

        if self._on is not None:
            query.and_where(self._on)

        return query

    def _via_models(self, owner: ActiveRecord) -> Sequence[Row]:
        """Rows the lazy relation filter is built from: the owner or the intermediate rows."""
        match self._via:
            case JunctionVia(query=junction):
                return find_junction_rows(junction.clone(), [owner])
            case RelationVia(name=name, query=intermediate, callback_used=callback_used):
                if not callback_used and owner.is_relation_populated(name):
                    related = owner.related_records()[name]
                else:
                    related = intermediate.related_records()
                    if not callback_used:
                        owner.populate_relation(name, related)

                if not intermediate.is_multiple():
                    return [] if related is None else [related]
                return list(related.values()) if isinstance(related, Mapping) else list(related)
            case _:
                return [owner]

    def to_statement(self) -> sa.Select[Any] | sa.CompoundSelect:
        """Render the query as it is, without relation filtering."""
        source = resolve_from_clause(self)
        from_clause: sa.FromClause = source
        for join in self._joins:
            from_clause = join.apply(from_clause)

        stmt = sa.select(*self._select_columns(source)).select_from(from_clause)

        if self._distinct:
            stmt = stmt.distinct()
        if self._where is not None:
            stmt = stmt.where(self._where)
        if self._group_by:
            stmt = stmt.group_by(*self._group_by)
        if self._having is not None:
            stmt = stmt.having(self._having)

        result: sa.Select[Any] | sa.CompoundSelect = stmt
        if self._unions:
            result = self._union_statement(stmt)

        if self._order_by:
            result = result.order_by(*self._order_by)
        if self._limit is not None:
            result = result.limit(self._limit)
        if self._offset is not None:
            result = result.offset(self._offset)

        return result

    def _select_columns(self, source: sa.FromClause) -> list[sa.ColumnElement[Any]]:
        if self._select:
            return self._select

        if len(source.c):
            return list(source.c)

        if self._joins:
            _, alias = resolve_table_and_alias(self)
            return [sa.literal_column(f"{alias}.*")]

        return [sa.literal_column("*")]

    def _union_statement(self, stmt: sa.Select[Any]) -> sa.CompoundSelect:
        selects = [stmt]
        union_all = True
        for other, all_ in self._unions:
            selects.append(other.build() if isinstance(other, ActiveQuery) else other)
            union_all = union_all and all_

        return sa.union_all(*selects) if union_all else sa.union(*selects)

    # Execution

    def all(self) -> list[T] | list[dict[str, Any]] | dict[Any, Any]:
        """Fetch every matching record.

        Returns:
            A list, or a dict when :meth:`index_by` is set. Records are plain dicts
            when :meth:`as_array` is set.
        """
        if self._emulate_execution or (query := self._prepare()).should_emulate_execution():
            logger.debug("Emulated %s query, no statement executed", self._model_class.__name__)
            return self._index([])

        rows = self._fetch(query.to_statement())

        return self._index(self.populate(rows))

    def one(self) -> T | dict[str, Any] | None:
        """Fetch the first matching record, or ``None``."""
        if self._emulate_execution:
            return None

        query = self._prepare()
        if query.should_emulate_execution():
            return None

        result = self._require_db().execute(query.to_statement()).mappings().first()
        if result is None:
            return None

        (model,) = self.populate([dict(result)])
        return model

    def count(self) -> int:
        if self._emulate_execution:
            return 0

        query = self._prepare()
        if query.should_emulate_execution():
            return 0

        stmt = sa.select(sa.func.count()).select_from(query.to_statement().subquery())

        return int(self._require_db().execute(stmt).scalar_one())

    def exists(self) -> bool:
        if self._emulate_execution:
            return False

        query = self._prepare()
        if query.should_emulate_execution():
            return False

        stmt = sa.select(query.to_statement().exists())

        return bool(self._require_db().execute(stmt).scalar())

    def scalar(self) -> Any:
        """Value of the first column of the first row."""
        if self._emulate_execution:
            return None

        query = self._prepare()
        if query.should_emulate_execution():
            return None

        return self._require_db().execute(query.to_statement()).scalar()

    def column(self) -> list[Any]:
        """Values of the first column of every row."""
        if self._emulate_execution:
            return []

        query = self._prepare()
        if query.should_emulate_execution():
            return []

        return list(self._require_db().execute(query.to_statement()).scalars())

    def related_records(self) -> Any:
        """The records of a relation: a list (or dict) when multiple, a record or ``None``."""
        return self.all() if self._multiple else self.one()

    def find_by_pk(self, *values: Any) -> T | dict[str, Any] | None:
        """Fetch the record with the given primary key value(s).

        Raises:
            InvalidConfigError: If the model has no primary key.
            ValueError: If the number of values does not match the primary key.
        """
        primary_key = self._model_class.primary_key()
        if not primary_key:
            raise InvalidConfigError(f"{self._model_class.__name__} has no primary key.")
        if len(values) != len(primary_key):
            raise ValueError(
                f"{self._model_class.__name__} primary key has {len(primary_key)} columns, "
                f"got {len(values)} values"
            )

        query = self.clone()
        if query.get_joins() or query.get_join_with():
            _, alias = resolve_table_and_alias(query)
            columns: list[sa.ColumnElement[Any]] = [AliasedColumn(alias, name) for name in primary_key]
        else:
            columns = [sa.column(name) for name in primary_key]

        for column, value in zip(columns, values):
            query.and_where(column == value)

        return query.one()

    def find_by_pk_or_fail(self, *values: Any) -> T | dict[str, Any]:
        """Like :meth:`find_by_pk`, raising :class:`NotFoundError` when nothing matches."""
        record = self.find_by_pk(*values)
        if record is None:
            raise NotFoundError(f"No {self._model_class.__name__} record with primary key {values!r}")

        return record

    def _fetch(self, stmt: sa.Executable) -> list[dict[str, Any]]:
        rows = [dict(row) for row in self._require_db().execute(stmt).mappings()]
        logger.debug("Fetched %d %s rows", len(rows), self._model_class.__name__)

        return rows

    def _require_db(self) -> Executor:
        if self._db is None:
            raise InvalidCallError(
                f"Query for {self._model_class.__name__} has no connection or session to run on."
            )

        return self._db

    def _index(self, models: list[Any]) -> list[Any] | dict[Any, Any]:
        if self._index_by is None:
            return models

        return index_rows(models, self._index_by)

    # Population

    def populate(self, rows: Sequence[Mapping[str, Any]]) -> list[Any]:
        """Turn fetched rows into records (or dicts) and load the requested relations."""
        if not rows:
            return []

        if self._joins and self._index_by is None:
            rows = self._remove_duplicated_rows(rows)

        if self._as_array:
            models: list[Any] = [dict(row) for row in rows]
        else:
            models = [self._model_class.instantiate(row, db=self._db) for row in rows]

        if self._with:
            self._find_with(self._with, models)

        self._add_inverse_relations(models)

        return models

    def _remove_duplicated_rows(self, rows: Sequence[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
        """Drop repeated rows produced by joins, comparing primary key values."""
        primary_key = self._model_class.primary_key()
        if not primary_key or any(name not in rows[0] for name in primary_key):
            return list(rows)

        unique: dict[tuple[Any, ...], Mapping[str, Any]] = {}
        for row in rows:
            unique.setdefault(tuple(row[name] for name in primary_key), row)

        return list(unique.values())

    def _find_with(self, with_: Mapping[str, RelationCallback | None], models: list[Any]) -> None:
        first = models[0]
        primary_model = self.get_model() if isinstance(first, Mapping) else first

        for name, relation in self._normalize_relations(primary_model, with_).items():
            if relation.is_as_array() is None:
                relation.as_array(self._as_array)
            populate_relation(relation, name, models)

    @staticmethod
    def _normalize_relations(
        model: ActiveRecord, with_: Mapping[str, RelationCallback | None]
    ) -> dict[str, ActiveQuery[Any]]:
        relations: dict[str, ActiveQuery[Any]] = {}

        for full_name, callback in with_.items():
            name, _, child = full_name.partition(".")

            if name not in relations:
                relations[name] = model.relation_query(name).primary_model(None)
            relation = relations[name]

            if child:
                relation.with_({child: callback})
            elif callback is not None:
                callback(relation)

        return relations

    def _add_inverse_relations(self, models: list[Any]) -> None:
        if self._inverse_of is None or self._primary_model is None:
            return

        first = models[0]
        if isinstance(first, Mapping):
            inverse = self.get_model().relation_query(self._inverse_of)
        else:
            inverse = first.relation_query(self._inverse_of)

        value = [self._primary_model] if inverse.is_multiple() else self._primary_model
        for model in models:
            if isinstance(model, Mapping):
                model[self._inverse_of] = value
            else:
                model.populate_relation(self._inverse_of, value)


def _order_clause(spec: str) -> sa.ColumnElement[Any]:
    if match := _ORDER_DIRECTION.match(spec):
        column = column_ref(match[1].strip())
        return column.desc() if match[2].lower() == "desc" else column.asc()

    return column_ref(spec)


def _aliasing(alias: str, callback: RelationCallback | None) -> RelationCallback:
    def _apply(query: ActiveQuery[Any]) -> None:
        query.alias(alias)
        if callback is not None:
            callback(query)

    return _apply
