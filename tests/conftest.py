from __future__ import annotations

import os
from collections.abc import Iterator
from typing import Any, Final

import pytest
import sqlalchemy as sa

from sqla_activerecord.tools import get_table_name

from .models import (
    category_table,
    customer_table,
    department_table,
    document_table,
    dossier_table,
    employee_table,
    item_table,
    metadata,
    order_item_table,
    order_table,
    profile_table,
    promotion_table,
)


POSTGRES_BACKENDS: Final[frozenset[str]] = frozenset({"postgres"})


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["sqlite", "postgres"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+psycopg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> Iterator[sa.Engine]:
    engine = sa.create_engine(db_config, echo=False)
    yield engine
    engine.dispose()


@pytest.fixture(scope="session")
def _create_tables(engine: sa.Engine) -> Iterator[None]:
    with engine.begin() as conn:
        metadata.create_all(conn)
    yield
    with engine.begin() as conn:
        metadata.drop_all(conn)


@pytest.fixture
def connection(engine: sa.Engine, _create_tables: None) -> Iterator[sa.Connection]:
    with engine.connect() as conn:
        trans = conn.begin()
        yield conn
        trans.rollback()


@pytest.fixture
def seed_data(connection: sa.Connection) -> dict[str, list[dict[str, Any]]]:
    data: dict[str, list[dict[str, Any]]] = {
        "profile": [
            {"id": 1, "description": "profile customer 1"},
            {"id": 2, "description": "profile customer 3"},
        ],
        "customer": [
            {"id": 1, "email": "user1@example.com", "name": "user1", "status": 1, "profile_id": 1},
            {"id": 2, "email": "user2@example.com", "name": "user2", "status": 1, "profile_id": None},
            {"id": 3, "email": "user3@example.com", "name": "user3", "status": 2, "profile_id": 2},
        ],
        "category": [
            {"id": 1, "name": "Books"},
            {"id": 2, "name": "Movies"},
        ],
        "item": [
            {"id": 1, "name": "Agile Web Application Development", "category_id": 1},
            {"id": 2, "name": "Application Development Cookbook", "category_id": 1},
            {"id": 3, "name": "Ice Age", "category_id": 2},
            {"id": 4, "name": "Toy Story", "category_id": 2},
            {"id": 5, "name": "Cars", "category_id": 2},
        ],
        "order": [
            {"id": 1, "customer_id": 1, "created_at": 1325282384, "total": 110},
            {"id": 2, "customer_id": 2, "created_at": 1325334482, "total": 33},
            {"id": 3, "customer_id": 2, "created_at": 1325502201, "total": 40},
        ],
        "order_item": [
            {"order_id": 1, "item_id": 1, "quantity": 1, "subtotal": 30},
            {"order_id": 1, "item_id": 2, "quantity": 2, "subtotal": 80},
            {"order_id": 2, "item_id": 4, "quantity": 1, "subtotal": 10},
            {"order_id": 2, "item_id": 5, "quantity": 1, "subtotal": 15},
            {"order_id": 2, "item_id": 3, "quantity": 1, "subtotal": 8},
            {"order_id": 3, "item_id": 2, "quantity": 1, "subtotal": 40},
        ],
        "promotion": [
            {"id": 1, "title": "Books", "item_ids": [1, 2]},
            {"id": 2, "title": "Cartoons", "item_ids": [4, 5]},
            {"id": 3, "title": "Empty", "item_ids": []},
        ],
        "department": [
            {"id": 1, "title": "IT"},
            {"id": 2, "title": "Accounting"},
        ],
        "employee": [
            {"id": 1, "department_id": 1, "first_name": "John"},
            {"id": 2, "department_id": 1, "first_name": "Ann"},
            {"id": 1, "department_id": 2, "first_name": "Will"},
        ],
        "dossier": [
            {"id": 1, "department_id": 1, "employee_id": 1, "summary": "Excellent"},
            {"id": 2, "department_id": 1, "employee_id": 2, "summary": "Brilliant"},
            {"id": 3, "department_id": 2, "employee_id": 1, "summary": "Good"},
        ],
        "document": [
            {"id": 1, "title": "Draft", "version": 0},
        ],
    }

    for table in (
        profile_table,
        customer_table,
        category_table,
        item_table,
        order_table,
        order_item_table,
        promotion_table,
        department_table,
        employee_table,
        dossier_table,
        document_table,
    ):
        connection.execute(table.insert(), data[table.name])

        # Explicit ids do not advance PostgreSQL sequences.
        if connection.dialect.name == "postgresql" and "id" in table.c and table.c.id.autoincrement is not False:
            quoted = connection.dialect.identifier_preparer.quote(table.name)
            connection.execute(
                sa.select(
                    sa.func.setval(
                        sa.func.pg_get_serial_sequence(quoted, "id"),
                        sa.select(sa.func.max(table.c.id)).scalar_subquery(),
                    )
                )
            )

    return data


@pytest.fixture
def statements(connection: sa.Connection, seed_data: dict[str, Any]) -> Iterator[list[str]]:
    """SQL statements executed on the connection once the data is seeded."""
    captured: list[str] = []

    def _before_cursor_execute(
        conn: sa.Connection,
        cursor: Any,
        statement: str,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        captured.append(statement)

    sa.event.listen(connection, "before_cursor_execute", _before_cursor_execute)
    yield captured
    sa.event.remove(connection, "before_cursor_execute", _before_cursor_execute)


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    get_table_name.cache_clear()


# Multi-dialect: auto-skip @pytest.mark.postgres on other backends


@pytest.fixture(autouse=True)
def _skip_postgres_only(request: pytest.FixtureRequest) -> None:
    if request.node.get_closest_marker("postgres"):
        backend = request.config.getoption("--db")
        if backend not in POSTGRES_BACKENDS:
            pytest.skip("needs PostgreSQL")
