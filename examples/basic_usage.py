"""Basic sqla-activerecord usage examples.

Demonstrates lazy and eager relation loading, relations through link tables,
joining relations, and persistence.

Run with ``python -m examples.basic_usage`` from the repository root.
"""

from __future__ import annotations

import logging

import sqlalchemy as sa

from sqla_activerecord import ActiveQuery

from .models import Comment, Post, Role, User, metadata


logger = logging.getLogger(__name__)


# ── 1. Set up an in-memory database ─────────────────────────────────


def setup(conn: sa.Connection) -> None:
    metadata.create_all(conn)

    User(conn, id=1, name="alice").insert()
    User(conn, id=2, name="bob").insert()

    for post_id, author_id, title in [(1, 1, "Hello"), (2, 1, "Again"), (3, 2, "Bob here")]:
        Post(conn, id=post_id, author_id=author_id, title=title).insert()

    Comment(conn, text="First!", post_id=1).insert()
    Comment(conn, text="Nice", post_id=3).insert()

    Role(conn, id=1, name="admin", level=5).insert()
    Role(conn, id=2, name="editor", level=2).insert()


# ── 2. Lazy loading: one query on first access, cached afterwards ──


def lazy(conn: sa.Connection) -> None:
    alice = User.query(conn).find_by_pk_or_fail(1)
    logger.info("alice wrote %s", [post.title for post in alice.posts])
    logger.info("posts know their author: %s", alice.posts[0].author is alice)


# ── 3. Eager loading: one query per relation for the whole result ──


def eager(conn: sa.Connection) -> list[User]:
    return User.query(conn).with_("posts.comments").order_by("id").all()


def eager_with_conditions(conn: sa.Connection) -> list[User]:
    def senior(query: ActiveQuery[Role]) -> None:
        query.where(sa.column("level") > 3)  # noqa: PLR2004

    return User.query(conn).with_({"roles": senior}).all()


# ── 4. Relations through an intermediate relation or a link table ──


def via(conn: sa.Connection) -> None:
    alice = User.query(conn).find_by_pk_or_fail(1)
    logger.info("comments on alice's posts: %s", [comment.text for comment in alice.comments])

    admin = Role.query(conn).find_by_pk_or_fail(1)
    alice.link("roles", admin)
    logger.info("alice's roles: %s", [role.name for role in alice.roles])


# ── 5. Joining relations ────────────────────────────────────────────


def authors_of(conn: sa.Connection, title: str) -> list[User]:
    return (
        User.query(conn)
        .inner_join_with("posts p", eager_loading=False)
        .where({"p.title": title})
        .all()
    )


# ── 6. Persistence ──────────────────────────────────────────────────


def rename_post(conn: sa.Connection, post_id: int, title: str) -> Post:
    post = Post.query(conn).find_by_pk_or_fail(post_id)
    post.title = title
    post.save()  # bumps the version column

    return post


def main() -> None:
    logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")

    engine = sa.create_engine("sqlite://")
    with engine.begin() as conn:
        setup(conn)
        lazy(conn)

        for user in eager(conn):
            logger.info("%s: %s", user.name, {post.title: len(post.comments) for post in user.posts})

        via(conn)
        logger.info("wrote 'Bob here': %s", [user.name for user in authors_of(conn, "Bob here")])
        logger.info("renamed: %r", rename_post(conn, 2, "Again and again").version)


if __name__ == "__main__":
    main()
