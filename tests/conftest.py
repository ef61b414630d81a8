from __future__ import annotations

import datetime
import os
from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    create_async_engine,
)

from sqla_batchloads import cache_clear
from sqla_batchloads import models as orders
from sqla_batchloads.node import Node, get_node, init_node

from .models import Base, Category, Comment, Post, Profile, Role, User, user_roles


pytestmark = pytest.mark.anyio


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
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session", autouse=True)
def _init_node() -> None:
    """Initialize the Node singleton with both schemas.

    Sync, no DB needed -- safe to run for all tests including unit tests.
    """
    try:
        Node()
    except RuntimeError:
        Node.reset()
        init_node(get_node(orders.Base, Base))


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
                    f"postgresql+asyncpg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> AsyncEngine:
    return create_async_engine(db_config, echo=False)


@pytest.fixture(scope="session")
async def _create_tables(engine: AsyncEngine) -> AsyncIterator[None]:
    async with engine.begin() as conn:
        await conn.run_sync(orders.Base.metadata.create_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(orders.Base.metadata.drop_all)


@pytest.fixture
async def connection(
    engine: AsyncEngine, _create_tables: None
) -> AsyncIterator[AsyncConnection]:
    async with engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


@pytest.fixture
async def session(connection: AsyncConnection) -> AsyncIterator[AsyncSession]:
    sess = AsyncSession(bind=connection, expire_on_commit=False)
    yield sess
    await sess.close()


@pytest.fixture
async def seed_data(session: AsyncSession) -> dict[str, list[Base]]:
    alice = User(id=1, name="alice", active=True)
    bob = User(id=2, name="bob", active=True)
    charlie = User(id=3, name="charlie", active=False)
    session.add_all([alice, bob, charlie])
    await session.flush()

    posts = [
        Post(id=1, title="Alice Post 1", author_id=1),
        Post(id=2, title="Alice Post 2", author_id=1),
        Post(id=3, title="Alice Post 3", author_id=1),
        Post(id=4, title="Bob Post 1", author_id=2),
        Post(id=5, title="Bob Post 2", author_id=2),
        Post(id=6, title="Bob Post 3", author_id=2),
    ]
    session.add_all(posts)
    await session.flush()

    comments = [
        Comment(id=1, text="Great post!", post_id=1, author_id=2),
        Comment(id=2, text="Nice work", post_id=1, author_id=3),
        Comment(id=3, text="Thanks", post_id=4, author_id=1),
    ]
    session.add_all(comments)
    await session.flush()

    admin = Role(id=1, name="admin", level=10)
    editor = Role(id=2, name="editor", level=5)
    viewer = Role(id=3, name="viewer", level=1)
    session.add_all([admin, editor, viewer])
    await session.flush()

    await session.execute(
        user_roles.insert().values([
            {"user_id": 1, "role_id": 1},
            {"user_id": 1, "role_id": 2},
            {"user_id": 2, "role_id": 2},
            {"user_id": 2, "role_id": 3},
        ])
    )
    await session.flush()

    profiles = [
        Profile(id=1, bio="Alice bio", user_id=1),
        Profile(id=2, bio="Bob bio", user_id=2),
    ]
    session.add_all(profiles)
    await session.flush()

    root = Category(id=1, name="root", parent_id=None)
    child1 = Category(id=2, name="child_1", parent_id=1)
    child2 = Category(id=3, name="child_2", parent_id=1)
    grandchild = Category(id=4, name="grandchild", parent_id=2)
    session.add_all([root, child1, child2, grandchild])
    await session.flush()

    session.expunge_all()

    return {
        "users": [alice, bob, charlie],
        "posts": posts,
        "comments": comments,
        "roles": [admin, editor, viewer],
        "profiles": profiles,
        "categories": [root, child1, child2, grandchild],
    }


@pytest.fixture
async def order_data(session: AsyncSession) -> dict[str, list[orders.Base]]:
    """Two placed orders with two lines each, one cancelled order without lines."""
    members = [
        orders.Member(id=1, name="userA", city="Seoul", street="1", zipcode="1111"),
        orders.Member(id=2, name="userB", city="Busan", street="2", zipcode="2222"),
        orders.Member(id=3, name="userC", city="Incheon", street="3", zipcode="3333"),
    ]
    items = [
        orders.Item(id=1, name="JPA1 BOOK", price=10000, stock_quantity=99),
        orders.Item(id=2, name="JPA2 BOOK", price=20000, stock_quantity=98),
        orders.Item(id=3, name="SPRING1 BOOK", price=20000, stock_quantity=197),
        orders.Item(id=4, name="SPRING2 BOOK", price=40000, stock_quantity=296),
    ]
    deliveries = [
        orders.Delivery(id=1, city="Seoul", street="1", zipcode="1111"),
        orders.Delivery(id=2, city="Busan", street="2", zipcode="2222"),
    ]
    session.add_all([*members, *items, *deliveries])
    await session.flush()

    placed = [
        orders.Order(
            id=1,
            member_id=1,
            delivery_id=1,
            order_date=datetime.datetime(2024, 3, 1, 10, 0),
            status=orders.OrderStatus.ORDER,
        ),
        orders.Order(
            id=2,
            member_id=2,
            delivery_id=2,
            order_date=datetime.datetime(2024, 3, 2, 11, 30),
            status=orders.OrderStatus.ORDER,
        ),
        orders.Order(
            id=3,
            member_id=3,
            delivery_id=None,
            order_date=datetime.datetime(2024, 3, 3, 9, 15),
            status=orders.OrderStatus.CANCEL,
        ),
    ]
    session.add_all(placed)
    await session.flush()

    lines = [
        orders.OrderItem(id=1, order_id=1, item_id=1, order_price=10000, count=1),
        orders.OrderItem(id=2, order_id=1, item_id=2, order_price=20000, count=2),
        orders.OrderItem(id=3, order_id=2, item_id=3, order_price=20000, count=3),
        orders.OrderItem(id=4, order_id=2, item_id=4, order_price=40000, count=4),
    ]
    session.add_all(lines)
    await session.flush()

    session.expunge_all()

    return {
        "members": members,
        "items": items,
        "deliveries": deliveries,
        "orders": placed,
        "order_items": lines,
    }


class QueryCounter:
    """Records every SELECT sent to the database."""

    def __init__(self) -> None:
        self.statements: list[str] = []

    def __call__(self, conn: Any, cursor: Any, statement: str, *args: Any) -> None:
        if statement.lstrip().upper().startswith("SELECT"):
            self.statements.append(statement)

    @property
    def count(self) -> int:
        return len(self.statements)

    def reset(self) -> None:
        self.statements.clear()


@pytest.fixture
def query_counter(engine: AsyncEngine) -> Iterator[QueryCounter]:
    """Counts SELECTs issued after the fixture is set up.

    Request it after the data fixtures so seeding is not counted.
    """
    counter = QueryCounter()
    sa.event.listen(engine.sync_engine, "before_cursor_execute", counter)
    yield counter
    sa.event.remove(engine.sync_engine, "before_cursor_execute", counter)


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    cache_clear()


@pytest.fixture
def reset_node_singleton() -> Iterator[None]:
    saved = Node._Node__instance  # type: ignore[attr-defined]
    yield
    Node._Node__instance = saved  # type: ignore[attr-defined]
