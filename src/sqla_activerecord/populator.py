"""Eager population of relations over a batch of owner rows.

One query is issued per relation (plus one per intermediate hop for relations declared
through ``via`` / ``via_table``). Related rows are grouped into buckets by key, the
buckets are mapped back onto owner keys through the intermediate rows when needed, and
every owner receives its share:

* a list (or a dict when the relation is indexed) for ``multiple`` relations;
* a single row or ``None`` otherwise.
"""

from __future__ import annotations

import logging
import os
import sys
import warnings
from collections.abc import Hashable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, TypeAlias

from .datastructures import frozendict
from .filters import apply_relation_filter, find_junction_rows
from .keys import get_model_keys
from .tools import Row, index_rows, row_set
from .via import JunctionVia, RelationVia


if TYPE_CHECKING:
    from types import FrameType

    from .query import ActiveQuery


logger = logging.getLogger(__name__)

Buckets: TypeAlias = "dict[Hashable, Any]"
ViaMap: TypeAlias = "dict[Hashable, dict[Hashable, None]]"


def populate_relation(query: ActiveQuery[Any], name: str, primary_models: Sequence[Row]) -> list[Row]:
    """Load relation *name* for every row in *primary_models* and assign it in place.

    Args:
        query: The relation query, as returned by the owner's relation method.
        name: Relation name; used as the key the related rows are assigned under.
        primary_models: Owner rows, models or dicts. They are modified in place.

    Returns:
        All related rows that were loaded.
    """
    models, _ = _populate(query, name, primary_models)
    return models


def _populate(
    query: ActiveQuery[Any], name: str, primary_models: Sequence[Row]
) -> tuple[list[Row], ViaMap]:
    via_query: ActiveQuery[Any] | None = None
    via_models: list[Row] | None = None
    via_map: ViaMap = {}

    match query.get_via():
        case JunctionVia(query=junction):
            via_query = junction
            via_models = find_junction_rows(junction, primary_models)
            apply_relation_filter(query, via_models)
        case RelationVia(name=via_name, query=intermediate):
            via_query = intermediate
            if intermediate.is_as_array() is None:
                intermediate.as_array(bool(query.is_as_array()))
            intermediate.primary_model(None)
            via_models, via_map = _populate(intermediate, via_name, primary_models)
            apply_relation_filter(query, via_models)
        case _:
            apply_relation_filter(query, primary_models)

    if query.get_index_by() is not None and not query.is_multiple():
        warnings.warn(
            f"index_by is ignored for the single-record relation {name!r}.",
            stacklevel=_external_stacklevel(),
        )

    owner_map: ViaMap = {}
    if via_query is not None and via_models is not None:
        owner_map = _build_via_map(query, via_models, via_query, via_map)

    if not query.is_multiple() and len(primary_models) == 1:
        model = query.one()
        related = [] if model is None else [model]
        _populate_inverse_relation(query, related, primary_models)
        row_set(primary_models[0], name, model)
        return related, owner_map

    index_by = query.get_index_by()
    query.index_by(None)
    models = list(query.all())
    query.index_by(index_by)

    _populate_inverse_relation(query, models, primary_models)

    buckets = _build_buckets(query, models, owner_map if via_query is not None else None)

    if index_by is not None and query.is_multiple():
        buckets = {key: index_rows(bucket, index_by) for key, bucket in buckets.items()}

    link = query.get_link() if via_query is None else _deepest_link(via_query)
    _populate_relation_from_buckets(query, primary_models, buckets, name, link)

    logger.debug(
        "Populated %r for %d owners with %d %s rows",
        name,
        len(primary_models),
        len(models),
        query.model_class.__name__,
    )

    return models, owner_map


def _build_via_map(
    query: ActiveQuery[Any],
    via_models: Sequence[Row],
    via_query: ActiveQuery[Any],
    via_map: ViaMap,
) -> ViaMap:
    """Map keys of the related side onto owner keys through the intermediate rows.

    When the intermediate relation is itself routed through another hop, its own map
    (already expressed in owner keys) is composed in, so the result always points at
    the outermost owners.
    """
    owner_columns = list(via_query.get_link())
    related_columns = list(query.get_link().values())

    mapping: ViaMap = {}
    for via_model in via_models:
        owner_keys = get_model_keys(via_model, owner_columns)
        for key in get_model_keys(via_model, related_columns):
            bucket = mapping.setdefault(key, {})
            for owner_key in owner_keys:
                bucket[owner_key] = None

    if via_query.get_via() is None:
        return mapping

    composed: ViaMap = {}
    for key, intermediate_keys in mapping.items():
        bucket = composed.setdefault(key, {})
        for intermediate_key in intermediate_keys:
            bucket.update(via_map.get(intermediate_key, {}))

    return composed


def _build_buckets(
    query: ActiveQuery[Any], models: Sequence[Row], owner_map: ViaMap | None = None
) -> Buckets:
    link_columns = list(query.get_link())
    buckets: dict[Hashable, list[Row]] = {}

    for model in models:
        keys = get_model_keys(model, link_columns)
        if owner_map is not None:
            keys = list(dict.fromkeys(owner for key in keys for owner in owner_map.get(key, {})))
        for key in keys:
            buckets.setdefault(key, []).append(model)

    if not query.is_multiple():
        return {key: bucket[0] for key, bucket in buckets.items()}

    return buckets


def _populate_relation_from_buckets(
    query: ActiveQuery[Any],
    models: Sequence[Row],
    buckets: Buckets,
    name: str,
    link: Mapping[str, str],
) -> None:
    multiple = query.is_multiple()
    indexed = multiple and query.get_index_by() is not None
    owner_columns = list(link.values())

    for model in models:
        keys = get_model_keys(model, owner_columns)

        value: Any
        if not multiple:
            value = buckets.get(keys[0]) if len(keys) == 1 else None
        elif indexed:
            value = {}
            for key in keys:
                value.update(buckets.get(key, {}))
        else:
            value = [row for key in keys for row in buckets.get(key, [])]

        row_set(model, name, value)


def _populate_inverse_relation(
    query: ActiveQuery[Any], models: Sequence[Row], primary_models: Sequence[Row]
) -> None:
    """Assign the owners back onto the freshly loaded related rows."""
    name = query.get_inverse_of()
    if name is None or not models:
        return

    first = models[0]
    if isinstance(first, Mapping):
        relation = query.get_model().relation_query(name)
    else:
        relation = first.relation_query(name)

    buckets = _build_buckets(relation, primary_models)
    if relation.get_index_by() is not None and relation.is_multiple():
        buckets = {key: index_rows(bucket, relation.get_index_by()) for key, bucket in buckets.items()}

    _populate_relation_from_buckets(relation, models, buckets, name, relation.get_link())


def _external_stacklevel() -> int:
    """Stack level of the first caller outside this package, for ``warnings.warn``."""
    package_dir = os.path.dirname(__file__) + os.sep
    frame: FrameType | None = sys._getframe(1)
    level = 1
    while frame is not None and frame.f_code.co_filename.startswith(package_dir):
        frame = frame.f_back
        level += 1

    return level


def _deepest_link(via_query: ActiveQuery[Any]) -> frozendict[str, str]:
    """The link of the innermost hop: the one that touches the owner rows."""
    while (via := via_query.get_via()) is not None:
        via_query = via.query

    return via_query.get_link()
