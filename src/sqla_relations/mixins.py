from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import async_object_session

from . import state
from .builder import QueryBuilder
from .datastructures import Constraint
from .definitions import relations_of
from .loader import load, load_many
from .relations import RelationQuery, bind_relation


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


class RelationsMixin:
    """Adds relation querying and loading to a declarative model.

    Example::

        class Base(DeclarativeBase):
            pass

        class User(RelationsMixin, Base):
            __tablename__ = "users"

            id: Mapped[int] = mapped_column(primary_key=True)
            posts = has_many("Post")

        users = await User.query(session).with_("posts").fetch()
        users[0].posts  # list of Post
    """

    __slots__ = ()

    @classmethod
    def query(cls, session: AsyncSession | None = None) -> QueryBuilder[Any]:
        return QueryBuilder(cls, session)

    def related(self, name: str, session: AsyncSession | None = None) -> RelationQuery[Any]:
        """Relation query of *name* bound to this instance.

        The session defaults to the one this instance is attached to.
        """
        if session is None:
            session = async_object_session(self)
        return bind_relation(type(self), name, (self,), session)

    async def load(
        self,
        relation: str,
        constraint: Constraint | None = None,
        *,
        session: AsyncSession | None = None,
    ) -> None:
        await load(self, relation, constraint, session=session)

    async def load_many(
        self,
        relations: Mapping[str, Constraint | None] | Iterable[str],
        *,
        session: AsyncSession | None = None,
    ) -> None:
        await load_many(self, relations, session=session)

    @property
    def preloaded(self) -> dict[str, Any]:
        return state.preloaded(self)

    @property
    def meta(self) -> dict[str, Any]:
        return state.meta(self)

    @property
    def pivot(self) -> dict[str, Any] | None:
        """Pivot row for the owner whose relation list this instance was last read from."""
        return state.pivot(self)

    def serialize(self) -> dict[str, Any]:
        return serialize(self)


def serialize(instance: Any) -> dict[str, Any]:
    """Convert *instance*, its loaded relations, aggregates and pivot data to plain dicts.

    Column values come from the mapper, relations from what was eagerly or
    lazily loaded; an instance already being serialized higher up the tree is
    reduced to its columns.
    """
    return _serialize(instance, set())


def _serialize(instance: Any, stack: set[int]) -> dict[str, Any]:
    mapper = sa.inspect(type(instance))
    data: dict[str, Any] = {
        attr.key: _plain(getattr(instance, attr.key)) for attr in mapper.column_attrs
    }
    # read before nested lists switch a shared instance to another owner's pivot row
    pivot = state.pivot(instance)
    if id(instance) in stack:
        return data

    stack.add(id(instance))
    try:
        known = relations_of(type(instance))
        for name, value in state.preloaded(instance).items():
            if name not in known:
                continue
            if isinstance(value, list):
                data[name] = [_serialize(item, stack) for item in value]
            else:
                data[name] = None if value is None else _serialize(value, stack)
    finally:
        stack.discard(id(instance))

    meta = state.meta(instance)
    if meta:
        data[state.META_KEY] = dict(meta)

    if pivot is not None:
        data[state.PIVOT_KEY] = {key: _plain(value) for key, value in pivot.items()}

    return data


def _plain(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value
