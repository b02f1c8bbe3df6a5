from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

import sqlalchemy as sa

from .conditions import AliasedColumn
from .datastructures import frozendict
from .exceptions import InvalidConfigError
from .tools import resolve_from_clause, resolve_table_and_alias
from .via import JunctionVia, RelationVia


if TYPE_CHECKING:
    from .query import ActiveQuery
    from .record import ActiveRecord


logger = logging.getLogger(__name__)

DEFAULT_JOIN_TYPE: Final[str] = "LEFT JOIN"
"""Join type used by ``join_with`` when none is given."""

FALLBACK_JOIN_TYPE: Final[str] = "INNER JOIN"
"""Join type for relations missing from a per-relation join type mapping."""

JOIN_TYPES: Final[frozendict[str, str]] = frozendict({
    "JOIN": "INNER JOIN",
    "INNER JOIN": "INNER JOIN",
    "LEFT JOIN": "LEFT JOIN",
    "LEFT OUTER JOIN": "LEFT JOIN",
    "FULL JOIN": "FULL JOIN",
    "FULL OUTER JOIN": "FULL JOIN",
})


def normalize_join_type(join_type: str) -> str:
    """Canonical spelling of *join_type*.

    Raises:
        InvalidConfigError: For join types that cannot be expressed (``RIGHT JOIN``...).
    """
    normalized = " ".join(join_type.upper().split())
    try:
        return JOIN_TYPES[normalized]
    except KeyError:
        raise InvalidConfigError(
            f"Unsupported join type {join_type!r}. Supported: {sorted(set(JOIN_TYPES.values()))}"
        ) from None


@dataclass(frozen=True, slots=True)
class JoinSpec:
    """A single JOIN fragment of a query."""

    join_type: str
    target: sa.FromClause
    on: sa.ColumnElement[bool] | None = None

    @property
    def target_key(self) -> str:
        """The joined table as written: its name, followed by its alias if it has one."""
        target = self.target
        if isinstance(target, sa.TableClause):
            return target.name
        if isinstance(target, sa.Alias) and isinstance(target.element, sa.TableClause):
            return f"{target.element.name} {target.name}"

        return f"{type(target).__name__} {getattr(target, 'name', id(target))}"

    @property
    def key(self) -> tuple[str, str, str]:
        """Structural identity: join type, target and rendered condition with its values."""
        return self.join_type, self.target_key, _clause_key(self.on)

    def apply(self, source: sa.FromClause) -> sa.Join:
        """Join :attr:`target` onto *source*."""
        return source.join(
            self.target,
            self.on if self.on is not None else sa.true(),
            isouter=self.join_type == "LEFT JOIN",
            full=self.join_type == "FULL JOIN",
        )


@dataclass(frozen=True, slots=True)
class JoinWith:
    """A pending ``join_with`` call, resolved into joins when the query is built.

    Attributes:
        relations: Relation names (dotted for nested relations) with optional callbacks
            customizing the relation query.
        eager_loading: ``True`` to also eager load every relation, ``False`` for none,
            or the names of the relations to eager load.
        join_type: One join type for all relations or a mapping per relation name.
    """

    relations: frozendict[str, Callable[[ActiveQuery[Any]], Any] | None]
    eager_loading: bool | Sequence[str] = True
    join_type: str | Mapping[str, str] = DEFAULT_JOIN_TYPE

    def get_join_type(self, name: str) -> str:
        if isinstance(self.join_type, str):
            return self.join_type

        return self.join_type.get(name, FALLBACK_JOIN_TYPE)

    def get_with(self) -> dict[str, Callable[[ActiveQuery[Any]], Any] | None]:
        """Relations to eager load along with the join."""
        if self.eager_loading is True:
            return dict(self.relations)

        if self.eager_loading is False:
            return {}

        return {name: self.relations.get(name) for name in self.eager_loading}


def build_joins_with(query: ActiveQuery[Any]) -> None:
    """Turn the pending ``join_with`` calls of *query* into plain joins.

    Joins produced for the relations come first, deduplicated twice: by full structure,
    then by joined table (name and alias). Joins added explicitly before the build are
    appended after them untouched. Relations marked for eager loading are registered
    with ``with_``.
    """
    explicit = list(query.get_joins())
    query.set_joins([])

    model = query.get_model()
    for join_with in query.get_join_with():
        _join_with_relations(query, model, join_with)
        query.with_(join_with.get_with())

    query.set_join_with([])

    by_structure: dict[tuple[str, str, str], JoinSpec] = {}
    for join in query.get_joins():
        by_structure.setdefault(join.key, join)

    by_table: dict[str, JoinSpec] = {}
    for join in by_structure.values():
        by_table.setdefault(join.target_key, join)

    joins = list(by_table.values())
    if len(joins) != len(query.get_joins()):
        logger.debug(
            "Dropped %d duplicated joins for %s",
            len(query.get_joins()) - len(joins),
            query.model_class.__name__,
        )

    query.set_joins([*joins, *explicit])


def _join_with_relations(query: ActiveQuery[Any], model: ActiveRecord, join_with: JoinWith) -> None:
    relations: dict[str, ActiveQuery[Any]] = {}

    for name, callback in join_with.relations.items():
        primary_model = model
        parent = query
        prefix = ""
        *path, leaf = name.split(".")

        for part in path:
            full_name = f"{prefix}.{part}" if prefix else part
            if full_name not in relations:
                relations[full_name] = relation = primary_model.relation_query(part)
                _join_with_relation(query, parent, relation, join_with.get_join_type(full_name))
            else:
                relation = relations[full_name]

            primary_model = relation.get_model()
            parent = relation
            prefix = full_name

        full_name = f"{prefix}.{leaf}" if prefix else leaf
        if full_name in relations:
            continue

        relations[full_name] = relation = primary_model.relation_query(leaf)
        if callback is not None:
            callback(relation)

        if relation.get_join_with():
            build_joins_with(relation)

        _join_with_relation(query, parent, relation, join_with.get_join_type(full_name))


def _join_with_relation(
    query: ActiveQuery[Any], parent: ActiveQuery[Any], child: ActiveQuery[Any], join_type: str
) -> None:
    """Join *child* onto *parent*, adding the fragments to *query*."""
    if child.get_having() is not None or child.get_group_by() or child.get_unions():
        raise InvalidConfigError(
            "Joining with a relation that has GROUP BY, HAVING, or UNION is not supported."
        )

    via = child.get_via()
    child.reset_via()

    match via:
        case JunctionVia(query=intermediate) | RelationVia(query=intermediate):
            _join_with_relation(query, parent, intermediate, join_type)
            _join_with_relation(query, intermediate, child, join_type)
            return

    _, parent_alias = resolve_table_and_alias(parent)
    _, child_alias = resolve_table_and_alias(child)

    on: sa.ColumnElement[bool] | None
    link = child.get_link()
    if link:
        on = sa.and_(
            *(
                AliasedColumn(parent_alias, parent_column) == AliasedColumn(child_alias, child_column)
                for child_column, parent_column in link.items()
            )
        )
        if child.get_on() is not None:
            on = sa.and_(on, child.get_on())
    else:
        on = child.get_on()

    query.join(join_type, resolve_from_clause(child), on)

    if (where := child.get_where()) is not None:
        query.and_where(where)

    if order_by := child.get_order_by():
        query.add_order_by(*order_by)

    if child_joins := child.get_joins():
        query.set_joins([*query.get_joins(), *child_joins])


def _clause_key(clause: sa.ClauseElement | None) -> str:
    if clause is None:
        return ""

    compiled = clause.compile()

    return f"{compiled} {compiled.params!r}"
