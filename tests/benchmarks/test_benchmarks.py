"""Async execution benchmarks: batched eager loading vs per-owner relation queries.

Measures actual query execution time (not just query building).
Run with: pytest tests/benchmarks/ -v -s
Skip with: pytest tests/ -m "not benchmark"
"""
from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import Final

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Comment, Post, User

pytestmark = [pytest.mark.anyio, pytest.mark.benchmark]


N: Final[int] = 20
USERS: Final[int] = 50
POSTS_PER_USER: Final[int] = 4


@pytest.fixture
async def bulk_data(session: AsyncSession) -> None:
    users = [User(id=1000 + i, name=f"user-{i}") for i in range(USERS)]
    session.add_all(users)
    await session.flush()

    posts = [
        Post(id=10_000 + i * POSTS_PER_USER + j, title=f"post-{i}-{j}", user_id=1000 + i)
        for i in range(USERS)
        for j in range(POSTS_PER_USER)
    ]
    session.add_all(posts)
    await session.flush()

    session.add_all(Comment(id=100_000 + p.id, body="c", post_id=p.id) for p in posts)
    await session.flush()
    session.expunge_all()


async def _measure(session: AsyncSession, fn: Callable[[], Awaitable[object]], n: int = N) -> float:
    # warm up
    await fn()
    session.expunge_all()

    start = time.perf_counter()
    for _ in range(n):
        await fn()
        session.expunge_all()
    return time.perf_counter() - start


class TestEagerVsPerOwner:
    async def test_posts_and_comments(self, session: AsyncSession, bulk_data: None) -> None:
        async def batched() -> object:
            return await User.query(session).where_in("id", range(1000, 1000 + USERS)).with_("posts.comments").fetch()

        async def per_owner() -> object:
            users = await User.query(session).where_in("id", range(1000, 1000 + USERS)).fetch()
            for user in users:
                for post in await user.related("posts").fetch():
                    await post.related("comments").fetch()
            return users

        batched_time = await _measure(session, batched)
        per_owner_time = await _measure(session, per_owner, n=max(1, N // 4))

        print(f"\nbatched: {batched_time / N * 1000:.2f} ms/op")
        print(f"per owner: {per_owner_time / max(1, N // 4) * 1000:.2f} ms/op")

        assert batched_time > 0
        assert per_owner_time > 0

    async def test_query_count(
        self, session: AsyncSession, bulk_data: None, query_log: list[str]
    ) -> None:
        query_log.clear()
        users = await User.query(session).where_in("id", range(1000, 1000 + USERS)).with_("posts.comments").fetch()

        assert len(users) == USERS
        assert sum(len(u.posts) for u in users) == USERS * POSTS_PER_USER
        assert len(query_log) == 3
