"""Self-referential relations: a category tree.

A relation may point back at its own model; the inverse relation lets each
child reach its parent without another query.
"""

from __future__ import annotations

import sqlalchemy as sa

from .models import Category


def load_tree(conn: sa.Connection) -> list[Category]:
    """Root categories with two levels of children."""
    return (
        Category.query(conn)
        .where({"parent_id": None})
        .with_("children.children")
        .order_by("name")
        .all()
    )


def breadcrumbs(category: Category) -> list[str]:
    names = []
    node: Category | None = category
    while node is not None:
        names.append(node.name)
        node = node.parent

    return list(reversed(names))


def children_of(conn: sa.Connection, name: str) -> list[Category]:
    """Categories whose parent is called *name*; the table is joined with itself."""
    return (
        Category.query(conn)
        .alias("c")
        .inner_join_with("parent p", eager_loading=False)
        .where({"p.name": name})
        .order_by("c.name")
        .all()
    )
