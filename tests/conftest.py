from __future__ import annotations

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

from sqla_relations import relations_cache_clear

from .models import (
    Base,
    Car,
    Comment,
    Country,
    Node,
    Post,
    PostTag,
    Profile,
    Tag,
    User,
    car_user,
)


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
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


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
def query_log(engine: AsyncEngine) -> Iterator[list[str]]:
    """SQL statements executed while the test runs."""
    statements: list[str] = []

    def _record(
        conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: bool
    ) -> None:
        statements.append(statement)

    sa.event.listen(engine.sync_engine, "before_cursor_execute", _record)
    yield statements
    sa.event.remove(engine.sync_engine, "before_cursor_execute", _record)


@pytest.fixture
async def seed_data(session: AsyncSession) -> dict[str, list[Base]]:
    wonderland = Country(id=1, name="Wonderland")
    nowhere = Country(id=2, name="Nowhere")
    session.add_all([wonderland, nowhere])
    await session.flush()

    alice = User(id=1, name="alice", country_id=1)
    bob = User(id=2, name="bob", country_id=1)
    charlie = User(id=3, name="charlie", country_id=None)
    session.add_all([alice, bob, charlie])
    await session.flush()

    profile_alice = Profile(id=1, bio="Alice bio", user_id=1)
    session.add(profile_alice)
    await session.flush()

    post1 = Post(id=1, title="Alice Post 1", is_published=True, user_id=1)
    post2 = Post(id=2, title="Alice Post 2", is_published=False, user_id=1)
    post3 = Post(id=3, title="Bob Post 1", is_published=True, user_id=2)
    session.add_all([post1, post2, post3])
    await session.flush()

    comment1 = Comment(id=1, body="Great post!", post_id=1)
    comment2 = Comment(id=2, body="Nice work", post_id=1)
    comment3 = Comment(id=3, body="Hello Bob", post_id=3)
    session.add_all([comment1, comment2, comment3])
    await session.flush()

    cars = [Car(id=i, name=f"car-{i}") for i in range(1, 7)]
    session.add_all(cars)
    await session.flush()

    await session.execute(
        car_user.insert(),
        [
            {"user_id": 1, "car_id": 1, "color": "red"},
            {"user_id": 1, "car_id": 2, "color": "blue"},
            {"user_id": 2, "car_id": 2, "color": None},
        ],
    )

    tag_python = Tag(id=1, name="python")
    tag_sql = Tag(id=2, name="sql")
    session.add_all([tag_python, tag_sql])
    await session.flush()

    session.add_all([
        PostTag(post_id=1, tag_id=1),
        PostTag(post_id=1, tag_id=2),
        PostTag(post_id=3, tag_id=1),
    ])
    await session.flush()

    # 1 -> (2 -> 5, 3), 4
    nodes = [
        Node(id=1, name="n1"),
        Node(id=2, name="n2", parent_id=1),
        Node(id=3, name="n3", parent_id=1),
        Node(id=4, name="n4"),
        Node(id=5, name="n5", parent_id=2),
    ]
    for node in nodes:
        session.add(node)
        await session.flush()

    session.expunge_all()

    return {
        "countries": [wonderland, nowhere],
        "users": [alice, bob, charlie],
        "profiles": [profile_alice],
        "posts": [post1, post2, post3],
        "comments": [comment1, comment2, comment3],
        "cars": cars,
        "tags": [tag_python, tag_sql],
        "nodes": nodes,
    }


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    relations_cache_clear()
