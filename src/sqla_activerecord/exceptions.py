"""Exception hierarchy.

Configuration mistakes (a malformed link, a relation that cannot be joined) raise
``InvalidConfigError`` and are never retried. Everything that merely finds nothing
resolves to an empty result instead of raising. Errors raised by SQLAlchemy while
executing a statement propagate unchanged.
"""

from __future__ import annotations


class ActiveRecordError(Exception):
    """Base class for all errors raised by sqla_activerecord."""


class InvalidConfigError(ActiveRecordError, ValueError):
    """A model, relation or query is declared in a way that cannot work."""


class InvalidCallError(ActiveRecordError, RuntimeError):
    """A method was called in a state that does not allow it."""


class UnknownPropertyError(ActiveRecordError, AttributeError):
    """The model has no property or relation with the requested name."""


class NotFoundError(ActiveRecordError, LookupError):
    """A record expected to exist was not found."""


class StaleObjectError(ActiveRecordError):
    """An optimistic-locked update or delete matched no row."""
