from __future__ import annotations

import pytest
import sqlalchemy as sa

from sqla_activerecord import ActiveQuery, ActiveRecord, relation
from sqla_activerecord.exceptions import InvalidConfigError, UnknownPropertyError
from sqla_activerecord.registry import ColumnProperty

from ..models import Customer, Order, customer_table


class TestModelSpec:
    def test_kind(self) -> None:
        spec = Customer.__model_spec__
        assert spec.kind("email") == "property"
        assert spec.kind("orders") == "relation"
        assert spec.kind("missing") is None

    def test_primary_key_from_table(self) -> None:
        assert Customer.primary_key() == ("id",)
        assert Customer.property_names() == ("id", "email", "name", "status", "profile_id")

    def test_unknown_relation(self) -> None:
        with pytest.raises(UnknownPropertyError):
            Customer.__model_spec__.get_relation("missing", Customer)

        with pytest.raises(UnknownPropertyError):
            Customer(id=1).relation_query("missing")

    def test_relations_are_inherited(self) -> None:
        class VipCustomer(Customer):
            @relation
            def big_orders(self) -> ActiveQuery[Order]:
                return self.has_many(Order, {"customer_id": "id"}).and_where({"total": 110})

        assert {"orders", "profile", "big_orders"} <= set(VipCustomer.__model_spec__.relations)
        assert "big_orders" not in Customer.__model_spec__.relations


class TestColumnProperty:
    def test_class_access_is_column(self) -> None:
        assert isinstance(vars(Customer)["email"], ColumnProperty)
        assert Customer.email is customer_table.c.email

    def test_instance_access(self) -> None:
        customer = Customer(email="a@example.com")
        assert customer.email == "a@example.com"

        customer.email = "b@example.com"
        assert customer.get("email") == "b@example.com"

    def test_unset_column_is_none(self) -> None:
        assert Customer().name is None

    def test_column_shadowed_by_method(self) -> None:
        class Node(ActiveRecord):
            __table__ = sa.Table(
                "node",
                sa.MetaData(),
                sa.Column("id", sa.Integer, primary_key=True),
                sa.Column("link", sa.String(32)),
            )

        node = Node(link="parent")
        assert node.get("link") == "parent"
        assert callable(node.link)


class TestModelDeclaration:
    def test_table_must_be_a_table(self) -> None:
        with pytest.raises(InvalidConfigError):

            class Broken(ActiveRecord):
                __table__ = "customer"  # type: ignore[assignment]

    def test_unknown_primary_key_column(self) -> None:
        with pytest.raises(InvalidConfigError):

            class Broken(ActiveRecord):
                __table__ = sa.Table("broken", sa.MetaData(), sa.Column("code", sa.String(8)))
                __primary_key__ = ("id",)

    def test_unknown_lock_column(self) -> None:
        with pytest.raises(InvalidConfigError):

            class Broken(ActiveRecord):
                __table__ = sa.Table("broken", sa.MetaData(), sa.Column("id", sa.Integer, primary_key=True))
                __optimistic_lock__ = "version"

    def test_primary_key_override(self) -> None:
        class Country(ActiveRecord):
            __table__ = sa.Table("country", sa.MetaData(), sa.Column("code", sa.String(2)))
            __primary_key__ = ("code",)

        assert Country.primary_key() == ("code",)
        assert Country(code="NL").primary_key_value() == "NL"

    def test_abstract_base_cannot_be_instantiated(self) -> None:
        class Base(ActiveRecord):
            pass

        with pytest.raises(InvalidConfigError):
            Base()


class TestExtraValues:
    def test_selected_values_are_attributes(self) -> None:
        customer = Customer.instantiate({"id": 1, "order_count": 3})
        assert customer.order_count == 3
        assert customer.has_property("order_count")

    def test_unknown_attribute(self) -> None:
        with pytest.raises(UnknownPropertyError):
            Customer(id=1).order_count  # noqa: B018

        with pytest.raises(AttributeError):
            Customer(id=1).order_count  # noqa: B018

    def test_unknown_property_on_set(self) -> None:
        with pytest.raises(UnknownPropertyError):
            Customer().set("missing", 1)
