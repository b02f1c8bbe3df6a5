from __future__ import annotations

import logging
import sys
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, ClassVar, TypeVar

import sqlalchemy as sa

from .exceptions import InvalidCallError, InvalidConfigError, StaleObjectError, UnknownPropertyError
from .query import ActiveQuery, Condition, Executor, normalize_condition
from .registry import ModelSpec, build_model_spec
from .tools import get_table_name, lookup_table, resolve_table_and_alias
from .via import JunctionVia, RelationVia


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


logger = logging.getLogger(__name__)

R = TypeVar("R", bound="ActiveRecord")


class ActiveRecord:
    """A row of a table, with its relations.

    Subclasses attach a SQLAlchemy :class:`~sqlalchemy.Table` and declare relations
    with the :class:`~sqla_activerecord.relation` decorator. Every column becomes an
    attribute; relations are loaded lazily on first access and cached on the
    instance, or eager loaded for a whole result with :meth:`ActiveQuery.with_`.

    Records are bound to a :class:`~sqlalchemy.Connection` or
    :class:`~sqlalchemy.orm.Session` given at construction, or inherited from the
    query that loaded them.

    Class attributes:
        __table__: The table the records are stored in.
        __primary_key__: Overrides the primary key of the table.
        __optimistic_lock__: Name of an integer version column; when set, ``update``
            and ``delete`` fail with :class:`StaleObjectError` on concurrent changes.

    Example:
        >>> class Order(ActiveRecord):
        ...     __table__ = orders_table
        ...
        ...     @relation
        ...     def customer(self) -> ActiveQuery[Customer]:
        ...         return self.has_one(Customer, {"id": "customer_id"})
        >>> order = Order.query(connection).find_by_pk(1)
        >>> order.customer.email
        'user1@example.com'
    """

    __table__: ClassVar[sa.Table]
    __primary_key__: ClassVar[Sequence[str] | None] = None
    __optimistic_lock__: ClassVar[str | None] = None
    __model_spec__: ClassVar[ModelSpec]

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)

        if getattr(cls, "__table__", None) is not None:
            cls.__model_spec__ = build_model_spec(cls)

    def __init__(self, db: Executor | None = None, **values: Any) -> None:
        if getattr(type(self), "__model_spec__", None) is None:
            raise InvalidConfigError(f"{type(self).__name__} has no __table__.")

        self._db = db
        self._values: dict[str, Any] = {}
        self._old_values: dict[str, Any] | None = None
        self._related: dict[str, Any] = {}
        self._relations_dependencies: dict[str, dict[str, None]] = {}

        for name, value in values.items():
            self.set(name, value)

    def __getattr__(self, name: str) -> Any:
        # Values selected beyond the table columns, e.g. aggregates.
        values = self.__dict__.get("_values")
        if values is not None and not name.startswith("_") and name in values:
            return values[name]

        raise UnknownPropertyError(f"{type(self).__name__} has no property named {name!r}.")

    def __repr__(self) -> str:
        keys = ", ".join(f"{name}={self._values.get(name)!r}" for name in self.primary_key())
        return f"<{type(self).__name__} {keys}>"

    @property
    def db(self) -> Executor | None:
        return self._db

    @classmethod
    def query(cls, db: Executor | None = None) -> ActiveQuery[Self]:
        """Start a query for records of this class."""
        return ActiveQuery(cls, db)

    def create_query(self, model: type[R] | None = None) -> ActiveQuery[Any]:
        """Start a query for *model* (this class by default) on the record's connection."""
        return (model or type(self)).query(self._db)

    @classmethod
    def instantiate(cls, row: Mapping[str, Any], db: Executor | None = None) -> Self:
        """Build an existing record from a fetched row."""
        return cls(db=db).populate_record(row)

    @classmethod
    def table_name(cls) -> str:
        return get_table_name(cls)

    @classmethod
    def primary_key(cls) -> tuple[str, ...]:
        return cls.__model_spec__.primary_key

    @classmethod
    def property_names(cls) -> tuple[str, ...]:
        return cls.__model_spec__.columns

    # Properties

    def has_property(self, name: str) -> bool:
        return name in self.__model_spec__.columns or name in self._values

    def get(self, name: str) -> Any:
        """Value of property *name*, ``None`` when it was never set."""
        return self._values.get(name)

    def set(self, name: str, value: Any) -> None:
        """Set property *name*.

        Relations depending on the property are reset when the value changes or is set
        to ``None``.

        Raises:
            UnknownPropertyError: If the record has no such property.
        """
        if not self.has_property(name):
            raise UnknownPropertyError(f"{type(self).__name__} has no property named {name!r}.")

        if name in self._relations_dependencies and (value is None or self.get(name) != value):
            self._reset_dependent_relations(name)

        self.populate_property(name, value)

    def populate_property(self, name: str, value: Any) -> None:
        """Store *value* without any checks or side effects."""
        self._values[name] = value

    def populate_properties(self, values: Mapping[str, Any]) -> None:
        for name, value in values.items():
            self.populate_property(name, value)

    def property_values(self, names: Iterable[str] | None = None, except_: Iterable[str] = ()) -> dict[str, Any]:
        """Values of the properties that were set, restricted to *names*."""
        selected = set(self.__model_spec__.columns if names is None else names) - set(except_)

        return {name: value for name, value in self._values.items() if name in selected}

    # Change tracking

    def is_new(self) -> bool:
        """Whether the record has not been stored yet."""
        return self._old_values is None

    def old_value(self, name: str) -> Any:
        return (self._old_values or {}).get(name)

    def old_values(self) -> dict[str, Any]:
        return dict(self._old_values or {})

    def assign_old_value(self, name: str, value: Any) -> None:
        if not self.has_property(name) and name not in (self._old_values or {}):
            raise UnknownPropertyError(f"{type(self).__name__} has no property named {name!r}.")

        if self._old_values is None:
            self._old_values = {}
        self._old_values[name] = value

    def assign_old_values(self, values: Mapping[str, Any] | None = None) -> None:
        self._old_values = None if values is None else dict(values)

    def mark_as_new(self) -> None:
        self._old_values = None

    def mark_as_existing(self) -> None:
        self._old_values = dict(self._values)

    def mark_property_changed(self, name: str) -> None:
        if self._old_values is not None:
            self._old_values.pop(name, None)

    def new_values(self, names: Iterable[str] | None = None) -> dict[str, Any]:
        """Properties whose value differs from the stored one (all of them for a new record)."""
        values = self.property_values(names)
        if self._old_values is None:
            return values

        return {
            name: value
            for name, value in values.items()
            if name not in self._old_values or self._old_values[name] != value
        }

    def is_changed(self) -> bool:
        return bool(self.new_values())

    def is_property_changed(self, name: str) -> bool:
        if name not in self._values:
            return False
        if self._old_values is None or name not in self._old_values:
            return True

        return self._old_values[name] != self._values[name]

    def populate_record(self, row: Mapping[str, Any]) -> Self:
        """Load a fetched row as the stored state of the record."""
        old_values = self._old_values if self._old_values is not None else {}
        for name, value in row.items():
            self.populate_property(name, value)
            old_values[name] = value

        self._old_values = old_values
        self._related = {}
        self._relations_dependencies = {}

        return self

    # Keys

    def primary_key_value(self) -> Any:
        return self._single_key(self.primary_key_values())

    def primary_key_values(self) -> dict[str, Any]:
        return {name: self.get(name) for name in self._require_primary_key()}

    def primary_key_old_value(self) -> Any:
        return self._single_key(self.primary_key_old_values())

    def primary_key_old_values(self) -> dict[str, Any]:
        old_values = self._old_values or {}

        return {name: old_values.get(name) for name in self._require_primary_key()}

    def is_primary_key(self, keys: Iterable[str]) -> bool:
        """Whether *keys* are exactly the primary key columns, in any order."""
        keys = list(keys)
        primary_key = self.primary_key()

        return len(keys) == len(primary_key) and set(keys) == set(primary_key)

    def equals(self, other: ActiveRecord) -> bool:
        """Whether both records are stored and refer to the same row."""
        if self.is_new() or other.is_new():
            return False

        return self.table_name() == other.table_name() and self.primary_key_values() == other.primary_key_values()

    def _require_primary_key(self) -> tuple[str, ...]:
        primary_key = self.primary_key()
        if not primary_key:
            raise InvalidConfigError(
                f"{type(self).__name__} does not have a primary key. Define one for the "
                f"{self.table_name()} table or set __primary_key__."
            )

        return primary_key

    def _single_key(self, values: dict[str, Any]) -> Any:
        if len(values) > 1:
            raise InvalidCallError(f"{type(self).__name__} has a composite primary key.")

        (value,) = values.values()
        return value

    # Relations

    def has_one(self, model: type[R], link: Mapping[str, str]) -> ActiveQuery[R]:
        """Relation to at most one *model* record.

        Args:
            model: The related active record class.
            link: Columns of the related table mapped to properties of this record.
        """
        return self._create_relation_query(model, link, multiple=False)

    def has_many(self, model: type[R], link: Mapping[str, str]) -> ActiveQuery[R]:
        """Relation to any number of *model* records; see :meth:`has_one`."""
        return self._create_relation_query(model, link, multiple=True)

    def _create_relation_query(self, model: type[R], link: Mapping[str, str], multiple: bool) -> ActiveQuery[R]:
        return model.query(self._db).primary_model(self).link(link).multiple(multiple)

    def relation_query(self, name: str) -> ActiveQuery[Any]:
        """A fresh query for relation *name*.

        Raises:
            UnknownPropertyError: If the class declares no such relation.
            InvalidConfigError: If the relation method does not return a query.
        """
        query = self.__model_spec__.get_relation(name, type(self)).query(self)
        if not isinstance(query, ActiveQuery):
            raise InvalidConfigError(
                f"Relation {type(self).__name__}.{name} must return an ActiveQuery, got {query!r}"
            )

        return query

    def relation(self, name: str) -> Any:
        """Records of relation *name*, loaded on first access and cached."""
        if name in self._related:
            return self._related[name]

        query = self.relation_query(name)
        self._set_relation_dependencies(name, query)
        self._related[name] = query.related_records()

        return self._related[name]

    def is_relation_populated(self, name: str) -> bool:
        return name in self._related

    def populate_relation(self, name: str, records: Any) -> None:
        """Set the records of relation *name* without querying."""
        for names in self._relations_dependencies.values():
            names.pop(name, None)

        self._related[name] = records

    def reset_relation(self, name: str) -> None:
        """Forget the loaded records of relation *name*."""
        for names in self._relations_dependencies.values():
            names.pop(name, None)

        self._related.pop(name, None)

    def related_records(self) -> dict[str, Any]:
        """All loaded relations by name."""
        return dict(self._related)

    def _set_relation_dependencies(
        self, name: str, relation: ActiveQuery[Any], via_relation_name: str | None = None
    ) -> None:
        match relation.get_via():
            case None:
                for property_name in relation.get_link().values():
                    dependents = self._relations_dependencies.setdefault(property_name, {})
                    dependents[name] = None
                    if via_relation_name is not None:
                        dependents[via_relation_name] = None
            case JunctionVia(query=junction):
                self._set_relation_dependencies(name, junction)
            case RelationVia(name=via_name, query=intermediate):
                self._set_relation_dependencies(name, intermediate, via_name)

    def _reset_dependent_relations(self, property_name: str) -> None:
        for name in self._relations_dependencies.pop(property_name, {}):
            self._related.pop(name, None)

    # Persistence

    def insert(self, properties: Iterable[str] | None = None) -> None:
        """Insert the record and pick up the generated primary key."""
        values = self.property_values(properties)
        result = self._require_db().execute(self.__table__.insert().values(values))

        if self.primary_key() and result.inserted_primary_key is not None:
            for name, value in zip(self.primary_key(), result.inserted_primary_key):
                if value is not None and self.get(name) is None:
                    self.populate_property(name, value)

        self._old_values = dict(self._values)
        logger.debug("Inserted %r", self)

    def update(self, properties: Iterable[str] | None = None) -> int:
        """Write the changed properties; returns the number of affected rows.

        Raises:
            InvalidCallError: If the record is new.
            StaleObjectError: If optimistic locking detects a concurrent change.
        """
        if self.is_new():
            raise InvalidCallError(f"Cannot update a new {type(self).__name__} record.")

        values = self.new_values(properties)
        if not values:
            return 0

        condition = self.primary_key_old_values()
        lock = self.__optimistic_lock__
        if lock is not None:
            version = self.get(lock) or 0
            condition[lock] = version
            values[lock] = version + 1

        rows = type(self).update_all(self._require_db(), values, condition)
        if lock is not None and not rows:
            raise StaleObjectError(f"The {type(self).__name__} record being updated is outdated.")

        if lock is not None:
            self.populate_property(lock, values[lock])

        assert self._old_values is not None
        self._old_values.update(values)

        return rows

    def save(self, properties: Iterable[str] | None = None) -> None:
        """Insert a new record, update an existing one."""
        if self.is_new():
            self.insert(properties)
        else:
            self.update(properties)

    def delete(self) -> int:
        """Delete the record; it becomes new again.

        Raises:
            InvalidCallError: If the record is new.
            StaleObjectError: If optimistic locking detects a concurrent change.
        """
        if self.is_new():
            raise InvalidCallError(f"Cannot delete a new {type(self).__name__} record.")

        condition = self.primary_key_old_values()
        lock = self.__optimistic_lock__
        if lock is not None:
            condition[lock] = self.get(lock)

        rows = type(self).delete_all(self._require_db(), condition)
        if lock is not None and not rows:
            raise StaleObjectError(f"The {type(self).__name__} record being deleted is outdated.")

        self._old_values = None

        return rows

    def refresh(self) -> bool:
        """Reload the record from the database; ``False`` if the row is gone."""
        record = self.create_query().find_by_pk(*self.primary_key_old_values().values())
        if record is None:
            return False

        for name in self.property_names():
            self.populate_property(name, record.get(name))

        self._old_values = record.old_values()
        self._related = {}
        self._relations_dependencies = {}

        return True

    @classmethod
    def update_all(cls, db: Executor, values: Mapping[str, Any], condition: Condition | None = None) -> int:
        stmt = cls.__table__.update().values(dict(values))
        if condition is not None:
            stmt = stmt.where(normalize_condition(condition))

        return db.execute(stmt).rowcount

    @classmethod
    def update_all_counters(
        cls, db: Executor, counters: Mapping[str, int], condition: Condition | None = None
    ) -> int:
        """Add *counters* (column: increment) to the matching rows."""
        columns = cls.__table__.c
        stmt = cls.__table__.update().values({name: columns[name] + value for name, value in counters.items()})
        if condition is not None:
            stmt = stmt.where(normalize_condition(condition))

        return db.execute(stmt).rowcount

    @classmethod
    def delete_all(cls, db: Executor, condition: Condition | None = None) -> int:
        stmt = cls.__table__.delete()
        if condition is not None:
            stmt = stmt.where(normalize_condition(condition))

        return db.execute(stmt).rowcount

    def update_counters(self, counters: Mapping[str, int]) -> None:
        """Increment counters of this record in the database and in memory."""
        if self.is_new():
            raise InvalidCallError("Updating counters is not possible for new records.")

        type(self).update_all_counters(self._require_db(), counters, self.primary_key_old_values())

        assert self._old_values is not None
        for name, increment in counters.items():
            value = (self.get(name) or 0) + increment
            self.populate_property(name, value)
            self._old_values[name] = value

    def _require_db(self) -> Executor:
        if self._db is None:
            raise InvalidCallError(f"{type(self).__name__} record has no connection or session.")

        return self._db

    # Linking

    def link(self, name: str, model: ActiveRecord, extra_columns: Mapping[str, Any] | None = None) -> None:
        """Establish relation *name* between this record and *model*.

        For a plain relation the foreign key is set on whichever side does not hold the
        primary key, and that record is saved. For a relation through a link table or
        an intermediate relation a link row is inserted.

        Raises:
            InvalidCallError: If the records cannot be linked in their current state.
        """
        relation = self.relation_query(name)
        via = relation.get_via()

        if via is not None:
            if self.is_new() or model.is_new():
                raise InvalidCallError("Unable to link models: the models being linked cannot be newly created.")

            columns = {column: self.get(prop) for column, prop in via.query.get_link().items()}
            columns.update({prop: model.get(column) for column, prop in relation.get_link().items()})
            columns.update(extra_columns or {})

            if isinstance(via, RelationVia):
                self._related.pop(via.name, None)
                via_model = via.query.get_model()
                for column, value in columns.items():
                    via_model.set(column, value)
                via_model.insert()
            else:
                self._require_db().execute(_via_table(via.query, columns).insert().values(columns))
        else:
            link = relation.get_link()
            related_has_key = model.is_primary_key(link.keys())
            owner_has_key = self.is_primary_key(link.values())

            if related_has_key and owner_has_key:
                if self.is_new() and model.is_new():
                    raise InvalidCallError("Unable to link models: at most one model can be newly created.")
                if self.is_new():
                    _bind_models(link.flip(), self, model)
                else:
                    _bind_models(link, model, self)
            elif related_has_key:
                _bind_models(link.flip(), self, model)
            elif owner_has_key:
                _bind_models(link, model, self)
            else:
                raise InvalidCallError(
                    "Unable to link models: the link defining the relation does not involve any primary key."
                )

        if not relation.is_multiple():
            self._related[name] = model
        elif name in self._related:
            index_by = relation.get_index_by()
            related = self._related[name]
            if index_by is not None and isinstance(related, dict):
                index = index_by(model) if callable(index_by) else model.get(index_by)
                if index is not None:
                    related[index] = model
            elif isinstance(related, list):
                related.append(model)

    def unlink(self, name: str, model: ActiveRecord, delete: bool = False) -> None:
        """Remove relation *name* between this record and *model*.

        The foreign key is set to ``None`` (or the link row is cleared), or the record
        holding it is deleted when *delete* is true.
        """
        relation = self.relation_query(name)
        via = relation.get_via()

        if via is not None:
            columns = {column: self.get(prop) for column, prop in via.query.get_link().items()}
            columns.update({prop: model.get(column) for column, prop in relation.get_link().items()})
            nulls = dict.fromkeys(columns)
            condition: sa.ColumnElement[bool] = normalize_condition(columns)
            if (on := via.query.get_on()) is not None:
                condition = sa.and_(condition, on)

            self._unlink_via(via, nulls, condition, delete)
        elif self.is_primary_key(relation.get_link().values()):
            if delete:
                model.delete()
            else:
                for column in relation.get_link():
                    model.set(column, None)
                model.save()
        elif model.is_primary_key(relation.get_link().keys()):
            for column, prop in relation.get_link().items():
                values = self.get(prop)
                if isinstance(values, list):
                    if model.get(column) in values:
                        values = list(values)
                        values.remove(model.get(column))
                        self.set(prop, values)
                else:
                    self.set(prop, None)
            if delete:
                self.delete()
            else:
                self.save()
        else:
            raise InvalidCallError("Unable to unlink models: the link does not involve any primary key.")

        if not relation.is_multiple():
            self._related.pop(name, None)
        elif isinstance(related := self._related.get(name), (list, dict)):
            keys = model.primary_key_values()
            if isinstance(related, list):
                related[:] = [record for record in related if record.primary_key_values() != keys]
            else:
                for index in [index for index, record in related.items() if record.primary_key_values() == keys]:
                    del related[index]

    def unlink_all(self, name: str, delete: bool = False) -> None:
        """Remove relation *name* for every related record at once."""
        relation = self.relation_query(name)
        via = relation.get_via()

        if via is not None:
            link = via.query.get_link()
            nulls = dict.fromkeys(link)
            condition: sa.ColumnElement[bool] = normalize_condition(
                {column: self.get(prop) for column, prop in link.items()}
            )
            if (where := via.query.get_where()) is not None:
                condition = sa.and_(condition, where)
            if (on := via.query.get_on()) is not None:
                condition = sa.and_(condition, on)

            self._unlink_via(via, nulls, condition, delete)
        else:
            link = relation.get_link()
            (first_prop, *_) = link.values()
            if not delete and len(link) == 1 and isinstance(self.get(first_prop), list):
                self.set(first_prop, [])
                self.save()
            else:
                nulls = dict.fromkeys(link)
                condition = normalize_condition({column: self.get(prop) for column, prop in link.items()})
                if (where := relation.get_where()) is not None:
                    condition = sa.and_(condition, where)
                if (on := relation.get_on()) is not None:
                    condition = sa.and_(condition, on)

                related_model = relation.model_class
                if delete:
                    related_model.delete_all(self._require_db(), condition)
                else:
                    related_model.update_all(self._require_db(), nulls, condition)

        self._related.pop(name, None)

    def _unlink_via(
        self,
        via: JunctionVia | RelationVia,
        nulls: Mapping[str, None],
        condition: sa.ColumnElement[bool],
        delete: bool,
    ) -> None:
        db = self._require_db()

        if isinstance(via, RelationVia):
            self._related.pop(via.name, None)
            via_model = via.query.model_class
            if delete:
                via_model.delete_all(db, condition)
            else:
                via_model.update_all(db, nulls, condition)
            return

        table = _via_table(via.query, nulls)
        if delete:
            db.execute(table.delete().where(condition))
        else:
            db.execute(table.update().values(dict(nulls)).where(condition))


def _via_table(query: ActiveQuery[Any], columns: Iterable[str]) -> sa.TableClause:
    """The link table of a ``via_table`` relation, as a table object.

    A table unknown to the metadata is described with just *columns*.
    """
    table, _ = resolve_table_and_alias(query)
    if isinstance(table, str):
        table = lookup_table(query.model_class.__table__.metadata, table)
    if not isinstance(table, sa.TableClause):
        raise InvalidConfigError(f"Link table must be a table, got {table!r}")

    if not len(table.c):
        return sa.table(table.name, *(sa.column(name) for name in columns))

    return table


def _bind_models(link: Mapping[str, str], foreign_model: ActiveRecord, primary_model: ActiveRecord) -> None:
    """Copy key values of *primary_model* into the foreign key of *foreign_model* and save it."""
    for foreign_key, key in link.items():
        value = primary_model.get(key)
        if value is None:
            raise InvalidCallError(
                f"Unable to link active record: the primary key of {type(primary_model).__name__} is null."
            )

        current = foreign_model.get(foreign_key)
        if isinstance(current, list):
            foreign_model.set(foreign_key, [*current, value])
        else:
            foreign_model.set(foreign_key, value)

    foreign_model.save()
