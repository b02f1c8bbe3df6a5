from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, final, overload

import sqlalchemy as sa

from .datastructures import frozendict
from .exceptions import InvalidConfigError, UnknownPropertyError


if TYPE_CHECKING:
    from .query import ActiveQuery
    from .record import ActiveRecord


class relation:  # noqa: N801
    """Declare a relation on an active record class.

    The decorated method returns the relation query, usually built with
    :meth:`ActiveRecord.has_one` or :meth:`ActiveRecord.has_many`. Reading the attribute
    on an instance returns the related records (loaded lazily and cached), assigning
    it populates the relation.

    Example:
        >>> class Customer(ActiveRecord):
        ...     __table__ = customer_table
        ...
        ...     @relation
        ...     def orders(self) -> ActiveQuery[Order]:
        ...         return self.has_many(Order, {"customer_id": "id"})
    """

    def __init__(self, method: Callable[[Any], ActiveQuery[Any]]) -> None:
        self.method = method
        self.name = method.__name__
        self.__doc__ = method.__doc__

    def __set_name__(self, owner: type[Any], name: str) -> None:
        self.name = name

    @overload
    def __get__(self, instance: None, owner: type[Any] | None = None) -> relation: ...

    @overload
    def __get__(self, instance: ActiveRecord, owner: type[Any] | None = None) -> Any: ...

    def __get__(self, instance: ActiveRecord | None, owner: type[Any] | None = None) -> Any:
        if instance is None:
            return self

        return instance.relation(self.name)

    def __set__(self, instance: ActiveRecord, value: Any) -> None:
        instance.populate_relation(self.name, value)

    def query(self, instance: ActiveRecord) -> ActiveQuery[Any]:
        """Build a fresh relation query for *instance*."""
        return self.method(instance)


class ColumnProperty:
    """Attribute access to a table column: ``record.email`` reads ``record.get("email")``.

    On the class the attribute resolves to the table column itself, so
    ``Customer.email == "a@b.c"`` builds a condition.
    """

    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __get__(self, instance: ActiveRecord | None, owner: type[ActiveRecord] | None = None) -> Any:
        if instance is None:
            assert owner is not None
            return owner.__table__.c[self.name]

        return instance.get(self.name)

    def __set__(self, instance: ActiveRecord, value: Any) -> None:
        instance.set(self.name, value)


@final
@dataclass(frozen=True, slots=True)
class ModelSpec:
    """What an active record class is made of: its table, columns and relations.

    Built once per class when the class is created; used to tell properties from
    relations by name.
    """

    table: sa.Table
    columns: tuple[str, ...]
    primary_key: tuple[str, ...]
    relations: frozendict[str, relation]
    optimistic_lock: str | None = None

    def kind(self, name: str) -> Literal["property", "relation"] | None:
        """Whether *name* is a column property, a relation, or neither."""
        if name in self.columns:
            return "property"
        if name in self.relations:
            return "relation"

        return None

    def get_relation(self, name: str, model: type[Any]) -> relation:
        """Look up relation *name*, raising ``UnknownPropertyError`` if undeclared."""
        try:
            return self.relations[name]
        except KeyError:
            raise UnknownPropertyError(f"{model.__name__} has no relation named {name!r}.") from None


def build_model_spec(model: type[ActiveRecord]) -> ModelSpec:
    """Introspect *model* and install a :class:`ColumnProperty` for each column.

    Columns whose name is already taken by an attribute of the class (a method, a
    relation...) stay reachable through ``get`` / ``set`` only.

    Raises:
        InvalidConfigError: If ``__table__`` is not a table, or if the primary key or
            the optimistic lock names unknown columns.
    """
    table = getattr(model, "__table__", None)
    if not isinstance(table, sa.Table):
        raise InvalidConfigError(f"{model.__name__}.__table__ must be a sqlalchemy Table, got {table!r}")

    columns = tuple(table.c.keys())

    declared = getattr(model, "__primary_key__", None)
    primary_key = tuple(declared) if declared is not None else tuple(column.key for column in table.primary_key)

    optimistic_lock = getattr(model, "__optimistic_lock__", None)
    for name in (*primary_key, *((optimistic_lock,) if optimistic_lock else ())):
        if name not in columns:
            raise InvalidConfigError(f"{model.__name__} has no column {name!r} in table {table.name!r}")

    relations: dict[str, relation] = {}
    for klass in reversed(model.__mro__):
        for name, attribute in vars(klass).items():
            if isinstance(attribute, relation):
                relations[name] = attribute

    for name in columns:
        taken = _find_attribute(model, name)
        if taken is None or isinstance(taken, ColumnProperty):
            setattr(model, name, ColumnProperty(name))

    return ModelSpec(
        table=table,
        columns=columns,
        primary_key=primary_key,
        relations=frozendict(relations),
        optimistic_lock=optimistic_lock,
    )


def _find_attribute(model: type[Any], name: str) -> Any:
    for klass in model.__mro__:
        namespace: Mapping[str, Any] = vars(klass)
        if name in namespace:
            return namespace[name]

    return None
