from __future__ import annotations

from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from sqla_activerecord import ActiveQuery
from sqla_activerecord.exceptions import InvalidCallError, InvalidConfigError
from sqla_activerecord.query import column_ref, normalize_condition

from ..models import Customer, Order


def _compile(clause: Any) -> str:
    compiled = clause.compile(dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True})

    return " ".join(str(compiled).split())


class TestNormalizeCondition:
    def test_hash(self) -> None:
        assert _compile(normalize_condition({"status": 1, "id": [1, 2]})) == "status = 1 AND id IN (1, 2)"

    def test_hash_null(self) -> None:
        assert _compile(normalize_condition({"profile_id": None})) == "profile_id IS NULL"

    def test_hash_qualified_name(self) -> None:
        assert _compile(normalize_condition({"o.total": 40})) == "o.total = 40"

    def test_hash_subquery(self) -> None:
        condition = normalize_condition({"id": Order.query().select("customer_id")})
        assert _compile(condition) == 'id IN (SELECT customer_id FROM "order")'

    def test_empty_hash(self) -> None:
        assert _compile(normalize_condition({})) == "true"

    def test_raw_sql(self) -> None:
        condition = normalize_condition("status > 1")
        assert isinstance(condition, sa.TextClause)

    def test_expression_untouched(self) -> None:
        expression = sa.column("id") > 1
        assert normalize_condition(expression) is expression


class TestColumnRef:
    def test_bare(self) -> None:
        assert _compile(column_ref("email")) == "email"

    def test_qualified(self) -> None:
        assert _compile(column_ref("order.total")) == '"order".total'


class TestBuilder:
    def test_full_statement(self) -> None:
        query = Customer.query().where({"status": 1}).order_by("id DESC, name").limit(2).offset(1)
        sql = _compile(query.build())
        assert sql.startswith("SELECT customer.id, customer.email")
        assert "FROM customer WHERE status = 1 ORDER BY id DESC, name" in sql
        assert "LIMIT 2 OFFSET 1" in sql

    def test_select_columns(self) -> None:
        query = Customer.query().select("id, name").add_select("count(*) AS cnt")
        assert _compile(query.build()).startswith("SELECT id, name, count(*) AS cnt FROM customer")

    def test_distinct(self) -> None:
        assert _compile(Customer.query().select("status").distinct().build()).startswith("SELECT DISTINCT status")

    def test_order_by_mapping(self) -> None:
        query = Customer.query().order_by({"status": "desc", "id": "asc"})
        assert _compile(query.build()).endswith("ORDER BY status DESC, id ASC")

    def test_and_or_where(self) -> None:
        query = Customer.query().where({"status": 1}).and_where({"id": 2}).or_where({"id": 3})
        assert _compile(query.get_where()) == "status = 1 AND id = 2 OR id = 3"

    def test_filter_where_ignores_empty_values(self) -> None:
        query = Customer.query().filter_where({"name": "", "status": 1, "email": None, "id": []})
        assert _compile(query.get_where()) == "status = 1"

    def test_filter_where_all_empty(self) -> None:
        assert Customer.query().filter_where({"name": ""}).get_where() is None

    def test_group_by_having(self) -> None:
        query = Order.query().select("customer_id", "count(*) AS cnt").group_by("customer_id").having("count(*) > 1")
        sql = _compile(query.build())
        assert 'GROUP BY customer_id HAVING count(*) > 1' in sql

    def test_union(self) -> None:
        query = Customer.query().where({"id": 1}).union(Customer.query().where({"id": 2}))
        stmt = query.build()
        assert isinstance(stmt, sa.CompoundSelect)
        assert " UNION " in _compile(stmt)

    def test_union_all(self) -> None:
        query = Customer.query().union(Customer.query(), all=True)
        assert " UNION ALL " in _compile(query.build())

    def test_from_alias(self) -> None:
        sql = _compile(Order.query().alias("o").build())
        assert 'FROM "order" AS o' in sql

    def test_from_subquery(self) -> None:
        inner = Order.query().where({"total": 40}).build()
        sql = _compile(Order.query().from_(inner, "big").build())
        assert "FROM (SELECT" in sql
        assert ") AS big" in sql

    def test_column_type(self) -> None:
        assert isinstance(Order.query().column_type("total"), sa.Integer)
        assert isinstance(Order.query().column_type("missing"), sa.types.NullType)

    def test_clone_is_independent(self) -> None:
        query = Customer.query().where({"status": 1})
        clone = query.clone().and_where({"id": 1}).order_by("id")
        assert _compile(query.get_where()) == "status = 1"
        assert query.get_order_by() == []
        assert clone.get_order_by() != []

    def test_with_merges_callbacks(self) -> None:
        def callback(query: ActiveQuery[Any]) -> None:
            query.where({"total": 1})

        query = Customer.query().with_("orders", {"profile": callback}).with_("orders")
        assert query.get_with() == {"orders": None, "profile": callback}


class TestRelationMetadata:
    def test_link_must_be_mapping_of_names(self) -> None:
        with pytest.raises(InvalidConfigError):
            Order.query().link({})

        with pytest.raises(InvalidConfigError):
            Order.query().link({"customer_id": 1})  # type: ignore[dict-item]

    def test_via_needs_owner(self) -> None:
        with pytest.raises(InvalidCallError):
            Order.query().via("orders")

    def test_relation_query_metadata(self) -> None:
        query = Customer(id=1).relation_query("orders")
        assert query.is_multiple()
        assert query.get_link() == {"customer_id": "id"}
        assert query.get_inverse_of() == "customer"
        assert query.get_primary_model() is not None

    def test_has_one(self) -> None:
        assert not Order(id=1).relation_query("customer").is_multiple()

    def test_lazy_filter_does_not_stick(self) -> None:
        query = Customer(id=1).relation_query("orders")
        assert _compile(query.build()).endswith("WHERE customer_id IN (1)")
        assert query.get_where() is None

    def test_on_condition_used_as_where(self) -> None:
        query = Customer(id=1).relation_query("orders").on({"total": 10})
        assert _compile(query.build()).endswith("WHERE customer_id IN (1) AND total = 10")


class TestExecutionWithoutDatabase:
    def test_requires_connection(self) -> None:
        with pytest.raises(InvalidCallError):
            Customer.query().all()

    def test_emulated_execution(self) -> None:
        query = Customer.query().emulate_execution()
        assert query.all() == []
        assert query.one() is None
        assert query.count() == 0
        assert query.exists() is False
        assert query.scalar() is None
        assert query.column() == []

    def test_emulated_execution_indexed(self) -> None:
        assert Customer.query().index_by("id").emulate_execution().all() == {}

    def test_find_by_pk_value_count(self) -> None:
        with pytest.raises(ValueError):
            Customer.query().find_by_pk(1, 2)

    def test_owner_without_link_values_runs_nothing(self) -> None:
        assert Customer(id=1).relation_query("profile").one() is None
        assert Customer().relation_query("orders").all() == []
