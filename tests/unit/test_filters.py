from __future__ import annotations

from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql, sqlite

from sqla_activerecord import ActiveQuery, ActiveRecord, relation
from sqla_activerecord.conditions import ArrayOverlaps, JsonOverlaps
from sqla_activerecord.exceptions import InvalidConfigError
from sqla_activerecord.filters import apply_relation_filter, find_junction_rows

from ..models import Customer, Employee, Item, Order, Promotion


tagged_metadata = sa.MetaData()

post_table = sa.Table(
    "post",
    tagged_metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("tag_ids", postgresql.ARRAY(sa.Integer)),
)

tag_table = sa.Table(
    "tag",
    tagged_metadata,
    sa.Column("id", sa.Integer, primary_key=True),
)


class Tag(ActiveRecord):
    __table__ = tag_table

    @relation
    def posts(self) -> ActiveQuery[Post]:
        return self.has_many(Post, {"tag_ids": "id"})


class Post(ActiveRecord):
    __table__ = post_table


def _where(query: ActiveQuery[Any], dialect: sa.Dialect | None = None) -> str:
    where = query.get_where()
    assert where is not None

    return str(where.compile(dialect=dialect or postgresql.dialect(), compile_kwargs={"literal_binds": True}))


class TestSingleColumnFilter:
    def test_in_condition(self) -> None:
        query = Customer(id=1).relation_query("orders")
        apply_relation_filter(query, [Customer(id=1), Customer(id=2)])
        assert _where(query) == "customer_id IN (1, 2)"

    def test_deduplicates_values(self) -> None:
        query = Customer(id=1).relation_query("orders")
        apply_relation_filter(query, [Customer(id=2), Customer(id=1), Customer(id=2)])
        assert _where(query) == "customer_id IN (2, 1)"

    def test_skips_missing_values(self) -> None:
        query = Customer(id=1).relation_query("profile")
        apply_relation_filter(query, [Customer(id=1, profile_id=None), Customer(id=2, profile_id=7)])
        assert _where(query) == "id IN (7)"
        assert not query.should_emulate_execution()

    def test_flattens_list_values(self) -> None:
        query = Promotion(id=1).relation_query("items")
        apply_relation_filter(query, [Promotion(item_ids=[1, 2]), Promotion(item_ids=[2, 5])])
        assert _where(query) == "id IN (1, 2, 5)"

    def test_plain_dict_owners(self) -> None:
        query = Customer(id=1).relation_query("orders")
        apply_relation_filter(query, [{"id": 3}])
        assert _where(query) == "customer_id IN (3)"

    def test_and_with_existing_condition(self) -> None:
        query = Customer(id=1).relation_query("expensive_orders")
        apply_relation_filter(query, [Customer(id=1)])
        assert _where(query) == "total > 50 AND customer_id IN (1)"


class TestEmptyFilter:
    def test_no_owners(self) -> None:
        query = Customer(id=1).relation_query("orders")
        apply_relation_filter(query, [])
        assert query.should_emulate_execution()
        assert _where(query) == "false"

    def test_only_missing_values(self) -> None:
        query = Customer(id=1).relation_query("profile")
        apply_relation_filter(query, [Customer(id=1), Customer(id=2)])
        assert query.should_emulate_execution()

    def test_empty_lists(self) -> None:
        query = Promotion(id=1).relation_query("items")
        apply_relation_filter(query, [Promotion(item_ids=[])])
        assert query.should_emulate_execution()


class TestCompositeFilter:
    def test_tuple_in(self) -> None:
        query = Employee(id=1, department_id=1).relation_query("dossier")
        apply_relation_filter(
            query,
            [Employee(id=1, department_id=1), Employee(id=2, department_id=1)],
        )
        sql = _where(query)
        assert sql.startswith("(department_id, employee_id) IN ")
        assert "(1, 1)" in sql
        assert "(1, 2)" in sql

    def test_skips_owners_with_partial_key(self) -> None:
        query = Employee(id=1, department_id=1).relation_query("dossier")
        apply_relation_filter(query, [Employee(id=1, department_id=None), Employee(id=2, department_id=1)])
        sql = _where(query)
        assert "(1, 2)" in sql
        assert "None" not in sql
        assert "NULL" not in sql

    def test_all_partial_keys(self) -> None:
        query = Employee(id=1, department_id=1).relation_query("dossier")
        apply_relation_filter(query, [Employee(id=1)])
        assert query.should_emulate_execution()


class TestQualification:
    def test_qualified_when_joined(self) -> None:
        query = Customer(id=1).relation_query("orders").join_with("customer")
        apply_relation_filter(query, [Customer(id=1)])
        assert _where(query) == '"order".customer_id IN (1)'

    def test_qualified_with_alias(self) -> None:
        query = Customer(id=1).relation_query("orders").alias("o").inner_join("customer", "true")
        apply_relation_filter(query, [Customer(id=1)])
        assert _where(query) == "o.customer_id IN (1)"

    def test_expression_without_alias(self) -> None:
        query = Customer(id=1).relation_query("orders").from_(sa.select(sa.literal_column("*"))).join_with("customer")
        with pytest.raises(InvalidConfigError):
            apply_relation_filter(query, [Customer(id=1)])

    def test_missing_link(self) -> None:
        with pytest.raises(InvalidConfigError):
            apply_relation_filter(Order.query(), [Customer(id=1)])


class TestCollectionColumns:
    def test_json_column(self) -> None:
        query = Item(id=1).relation_query("promotions")
        apply_relation_filter(query, [Item(id=1), Item(id=2)])
        assert isinstance(query.get_where(), JsonOverlaps)
        assert "json_each(item_ids)" in _where(query, sqlite.dialect())

    def test_array_column(self) -> None:
        query = Tag(id=1).relation_query("posts")
        apply_relation_filter(query, [Tag(id=1), Tag(id=3)])
        assert isinstance(query.get_where(), ArrayOverlaps)
        assert _where(query) == "tag_ids && ARRAY[1, 3]"


class TestFindJunctionRows:
    def test_no_owners_skips_query(self) -> None:
        junction = Order(id=1).relation_query("items_via_table").get_via()
        assert junction is not None
        assert find_junction_rows(junction.query, []) == []
