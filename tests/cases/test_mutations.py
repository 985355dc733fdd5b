from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from sqla_relations import (
    SUPPORTED_OPERATIONS,
    RelationKind,
    UnsupportedConstraint,
    UnsupportedOperation,
    bind_relation,
)

from ..models import Base, Car, Country, Post, Profile, User

pytestmark = pytest.mark.anyio


async def _get(session: AsyncSession, model: type[Base], key: int) -> Base:
    instance = await session.get(model, key)
    assert instance is not None
    return instance


class TestHasMany:
    async def test_create(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        alice = await _get(session, User, 1)

        post = await alice.related("posts").create(id=100, title="Fresh")

        assert post.user_id == 1
        assert await alice.related("posts").count() == 3

    async def test_save_many(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        charlie = await _get(session, User, 3)

        saved = await charlie.related("posts").save_many([Post(id=101, title="a"), Post(id=102, title="b")])

        assert [p.user_id for p in saved] == [3, 3]
        assert sorted(await charlie.related("posts").ids()) == [101, 102]

    async def test_create_many(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        bob = await _get(session, User, 2)

        await bob.related("posts").create_many([{"id": 103, "title": "x"}, {"id": 104, "title": "y"}])

        assert await bob.related("posts").count() == 3

    async def test_pivot_callback_rejected(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        alice = await _get(session, User, 1)

        with pytest.raises(UnsupportedConstraint):
            await alice.related("posts").save(Post(id=105, title="z"), lambda row: None)


class TestHasOne:
    async def test_save(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        bob = await _get(session, User, 2)

        profile = await bob.related("profile").save(Profile(id=100, bio="Bob bio"))
        fetched = await bob.related("profile").fetch()

        assert profile.user_id == 2
        assert fetched is profile

    async def test_save_many_unsupported(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        bob = await _get(session, User, 2)

        with pytest.raises(UnsupportedOperation):
            await bob.related("profile").save_many([Profile(id=101)])


class TestBelongsTo:
    async def test_associate(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        post = await _get(session, Post, 2)
        bob = await _get(session, User, 2)

        await post.related("user").associate(bob)

        assert post.user_id == 2
        assert post.user is bob
        assert (await post.related("user").fetch()) is bob

    async def test_dissociate(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        alice = await _get(session, User, 1)

        await alice.related("country").dissociate()

        assert alice.country_id is None
        assert alice.country is None
        assert await alice.related("country").fetch() is None

    async def test_save_unsupported(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        alice = await _get(session, User, 1)

        with pytest.raises(UnsupportedOperation):
            await alice.related("country").save(Country(id=100, name="x"))


class TestBelongsToMany:
    async def test_save_attaches(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        charlie = await _get(session, User, 3)

        await charlie.related("cars").save(Car(id=100, name="new"), lambda row: row.update(color="black"))
        cars = await charlie.related("cars").fetch()

        assert [c.id for c in cars] == [100]
        assert cars[0].pivot["color"] == "black"

    async def test_create_many(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        charlie = await _get(session, User, 3)

        await charlie.related("cars").create_many([{"id": 101, "name": "a"}, {"id": 102, "name": "b"}])

        assert sorted(await charlie.related("cars").ids()) == [101, 102]


class TestLegality:
    @pytest.mark.parametrize(
        ("model", "key", "relation", "operation"),
        [
            (User, 1, "posts", "attach"),
            (User, 1, "posts", "associate"),
            (User, 1, "profile", "detach"),
            (Post, 1, "user", "create"),
            (Country, 1, "posts", "create"),
            (Country, 1, "posts", "attach"),
            (User, 1, "cars", "dissociate"),
        ],
    )
    async def test_outside_matrix(
        self,
        session: AsyncSession,
        seed_data: dict[str, list[Base]],
        model: type[Base],
        key: int,
        relation: str,
        operation: str,
    ) -> None:
        owner = await _get(session, model, key)
        query = owner.related(relation)

        with pytest.raises(UnsupportedOperation):
            match operation:
                case "attach":
                    await query.attach([1])
                case "detach":
                    await query.detach()
                case "associate":
                    await query.associate(owner)
                case "dissociate":
                    await query.dissociate()
                case "create":
                    await query.create(id=999)

    async def test_many_owners_rejected(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        alice = await _get(session, User, 1)
        bob = await _get(session, User, 2)

        with pytest.raises(UnsupportedOperation):
            await bind_relation(User, "posts", [alice, bob], session).create(id=106, title="x")

    async def test_matrix_shape(self) -> None:
        assert SUPPORTED_OPERATIONS[RelationKind.MANY_THROUGH] == frozenset()
        assert "sync" in SUPPORTED_OPERATIONS[RelationKind.BELONGS_TO_MANY]
        assert "pivot_query" in SUPPORTED_OPERATIONS[RelationKind.BELONGS_TO_MANY]
        assert all(
            "pivot_query" not in SUPPORTED_OPERATIONS[kind]
            for kind in RelationKind
            if kind is not RelationKind.BELONGS_TO_MANY
        )
        assert "save_many" not in SUPPORTED_OPERATIONS[RelationKind.HAS_ONE]
