from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeAlias


if TYPE_CHECKING:
    from .query import ActiveQuery


@dataclass(slots=True)
class JunctionVia:
    """Relation routed through a link table that has no model (``via_table``)."""

    query: ActiveQuery[Any]


@dataclass(slots=True)
class RelationVia:
    """Relation routed through another relation of the owner model (``via``).

    ``callback_used`` records that the intermediate query was customized, in which case
    an already populated intermediate relation on the owner cannot be reused.
    """

    name: str
    query: ActiveQuery[Any]
    callback_used: bool = False


Via: TypeAlias = "JunctionVia | RelationVia"
