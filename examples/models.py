"""Minimal models for sqla-activerecord examples."""

from __future__ import annotations

import sqlalchemy as sa

from sqla_activerecord import ActiveQuery, ActiveRecord, relation


metadata = sa.MetaData()

users = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(100), nullable=False),
)

posts = sa.Table(
    "posts",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("title", sa.String(200), nullable=False),
    sa.Column("author_id", sa.Integer, nullable=False),
    sa.Column("version", sa.Integer, nullable=False, server_default="0"),
)

comments = sa.Table(
    "comments",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("text", sa.Text, nullable=False),
    sa.Column("post_id", sa.Integer, nullable=False),
)

roles = sa.Table(
    "roles",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(50), nullable=False),
    sa.Column("level", sa.Integer, nullable=False),
)

user_roles = sa.Table(
    "user_roles",
    metadata,
    sa.Column("user_id", sa.Integer, primary_key=True),
    sa.Column("role_id", sa.Integer, primary_key=True),
)

categories = sa.Table(
    "categories",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(100), nullable=False),
    sa.Column("parent_id", sa.Integer, nullable=True),
)


class User(ActiveRecord):
    __table__ = users

    @relation
    def posts(self) -> ActiveQuery[Post]:
        return self.has_many(Post, {"author_id": "id"}).inverse_of("author")

    @relation
    def comments(self) -> ActiveQuery[Comment]:
        return self.has_many(Comment, {"post_id": "id"}).via("posts")

    @relation
    def roles(self) -> ActiveQuery[Role]:
        return self.has_many(Role, {"id": "role_id"}).via_table("user_roles", {"user_id": "id"})


class Post(ActiveRecord):
    __table__ = posts
    __optimistic_lock__ = "version"

    @relation
    def author(self) -> ActiveQuery[User]:
        return self.has_one(User, {"id": "author_id"})

    @relation
    def comments(self) -> ActiveQuery[Comment]:
        return self.has_many(Comment, {"post_id": "id"}).inverse_of("post")


class Comment(ActiveRecord):
    __table__ = comments

    @relation
    def post(self) -> ActiveQuery[Post]:
        return self.has_one(Post, {"id": "post_id"})


class Role(ActiveRecord):
    __table__ = roles


class Category(ActiveRecord):
    __table__ = categories

    @relation
    def parent(self) -> ActiveQuery[Category]:
        return self.has_one(Category, {"id": "parent_id"})

    @relation
    def children(self) -> ActiveQuery[Category]:
        return self.has_many(Category, {"parent_id": "id"}).inverse_of("parent")
