from __future__ import annotations

import pytest
import sqlalchemy as sa
from sqlalchemy import orm

from sqla_relations import UnresolvedRelatedModel, get_resolver
from sqla_relations.registry import ModelResolver, get_models

from ..models import Base, Post, User


class TestModelResolver:
    def test_resolve_by_class_name(self) -> None:
        assert get_resolver(User).resolve("Post") is Post

    def test_resolve_by_table_name(self) -> None:
        assert get_resolver(User).resolve("posts") is Post

    def test_resolve_by_qualified_name(self) -> None:
        assert get_resolver(User).resolve(f"{Post.__module__}.{Post.__qualname__}") is Post

    def test_resolve_class(self) -> None:
        assert get_resolver(User).resolve(Post) is Post

    def test_resolve_callable(self) -> None:
        assert get_resolver(User).resolve(lambda: "Post") is Post
        assert get_resolver(User).resolve(lambda: Post) is Post

    @pytest.mark.parametrize("reference", ["Nope", int, 42])
    def test_unknown_reference(self, reference: object) -> None:
        with pytest.raises(UnresolvedRelatedModel):
            get_resolver(User).resolve(reference)  # type: ignore[arg-type]

    def test_unmapped_model(self) -> None:
        with pytest.raises(UnresolvedRelatedModel):
            get_resolver(object)

    def test_contains(self) -> None:
        resolver = get_resolver(User)

        assert "User" in resolver
        assert "Nope" not in resolver


class TestResolverCaching:
    def test_one_resolver_per_registry(self) -> None:
        assert get_resolver(User) is get_resolver(Post)

    def test_models_snapshot(self) -> None:
        models = get_models(Base.registry)

        assert models["User"] is User
        assert models["users"] is User
        assert isinstance(ModelResolver(models).models["Post"], type)


class TestNameCollisions:
    def test_duplicate_class_name_warns(self) -> None:
        class Other(orm.DeclarativeBase):
            pass

        first = type(
            "Thing",
            (Other,),
            {"__tablename__": "things_a", "__module__": "pkg_a", "id": sa.Column(sa.Integer, primary_key=True)},
        )
        second = type(
            "Thing",
            (Other,),
            {"__tablename__": "things_b", "__module__": "pkg_b", "id": sa.Column(sa.Integer, primary_key=True)},
        )

        with pytest.warns(UserWarning, match="mapped twice"):
            models = get_models(Other.registry)

        assert models["Thing"] in (first, second)
        assert models["pkg_a.Thing"] is first
        assert models["pkg_b.Thing"] is second
