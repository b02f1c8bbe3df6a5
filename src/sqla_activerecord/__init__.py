"""Active record models with relation loading on top of SQLAlchemy Core.

Declare a model by attaching a ``sqlalchemy.Table`` to an ``ActiveRecord``
subclass and describe its relations with ``@relation`` methods returning
``has_one`` / ``has_many`` queries.  Relations load lazily on attribute access,
or for a whole result set with ``ActiveQuery.with_`` (one query per relation,
whatever the number of owners) and ``ActiveQuery.join_with``.
"""

import logging

from ._version import __version__, __version_tuple__
from .conditions import AliasedColumn, ArrayOverlaps, JsonOverlaps
from .datastructures import frozendict
from .exceptions import (
    ActiveRecordError,
    InvalidCallError,
    InvalidConfigError,
    NotFoundError,
    StaleObjectError,
    UnknownPropertyError,
)
from .joins import DEFAULT_JOIN_TYPE, JoinSpec, JoinWith
from .keys import get_model_keys, normalize_key
from .populator import populate_relation
from .query import ActiveQuery, normalize_condition
from .record import ActiveRecord
from .registry import ModelSpec, relation
from .tools import get_table_name, get_table_names, resolve_table_and_alias


logging.getLogger(__name__).addHandler(logging.NullHandler())


__all__ = (
    "DEFAULT_JOIN_TYPE",
    "ActiveQuery",
    "ActiveRecord",
    "ActiveRecordError",
    "AliasedColumn",
    "ArrayOverlaps",
    "InvalidCallError",
    "InvalidConfigError",
    "JoinSpec",
    "JoinWith",
    "JsonOverlaps",
    "ModelSpec",
    "NotFoundError",
    "StaleObjectError",
    "UnknownPropertyError",
    "__version__",
    "__version_tuple__",
    "frozendict",
    "get_model_keys",
    "get_table_name",
    "get_table_names",
    "normalize_condition",
    "normalize_key",
    "populate_relation",
    "relation",
    "resolve_table_and_alias",
)
