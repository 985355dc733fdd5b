from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import async_object_session

from .datastructures import Constraint, LoadNode, LoadTree
from .exceptions import UnsupportedOperation
from .relations import bind_relation


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class EagerLoader:
    """Runs a :class:`LoadTree` over already fetched instances.

    Every node costs one query per owner model, whatever the number of
    owners: related rows are selected for all owner keys at once and then
    distributed back.  Siblings load one after another since a session
    cannot run statements concurrently.
    """

    __slots__ = ("session", "tree")

    def __init__(self, session: AsyncSession, tree: LoadTree) -> None:
        self.session = session
        self.tree = tree

    async def run(self, owners: Sequence[Any]) -> None:
        await self._load_level(list(owners), self.tree)

    async def _load_level(self, owners: list[Any], tree: LoadTree) -> None:
        if not owners or not tree:
            return

        by_model: dict[type[Any], list[Any]] = {}
        for owner in owners:
            by_model.setdefault(type(owner), []).append(owner)

        for model, group in by_model.items():
            for node in tree:
                await self._load_node(model, group, node)

    async def _load_node(self, model: type[Any], owners: list[Any], node: LoadNode) -> None:
        relation = bind_relation(model, node.name, owners, self.session)
        # only constraints registered for this exact path; child paths never add any here
        for constraint in node.constraints:
            constraint(relation)

        grouped = await relation.fetch_grouped()
        relation.assign(grouped)
        logger.debug("Eager loaded %s.%s for %d owner(s)", model.__name__, node.name, len(owners))

        # loads requested inside a constraint callback run below this node
        children = node.children.merge(relation.query.eager)
        await self._load_level(relation.flatten(grouped), children)


def _as_list(instances: Any) -> list[Any]:
    if isinstance(instances, (list, tuple)):
        return list(instances)
    return [instances]


def _resolve_session(instances: list[Any], session: AsyncSession | None, operation: str) -> AsyncSession:
    if session is not None:
        return session

    for instance in instances:
        found = async_object_session(instance)
        if found is not None:
            return found

    raise UnsupportedOperation(
        operation,
        type(instances[0]).__name__,
        f"`{operation}` needs a session: pass session= or load instances attached to one",
    )


async def load_many(
    instances: Any,
    relations: Mapping[str, Constraint | None] | Iterable[str],
    *,
    session: AsyncSession | None = None,
) -> None:
    """Eager-load *relations* onto already fetched *instances*.

    Args:
        instances: One instance or a list of instances.
        relations: Dotted relation paths, optionally mapped to a constraint.
        session: Session to query with. Defaults to the session the instances
            are attached to.

    Raises:
        UnsupportedOperation: If no session is given or attached.
    """
    instances = _as_list(instances)
    if not instances:
        return

    tree = LoadTree()
    if isinstance(relations, Mapping):
        for path, constraint in relations.items():
            tree.add(path, constraint)
    else:
        for path in relations:
            tree.add(path)

    if not tree:
        return

    await EagerLoader(_resolve_session(instances, session, "load_many"), tree).run(instances)


async def load(
    instances: Any,
    relation: str,
    constraint: Constraint | None = None,
    *,
    session: AsyncSession | None = None,
) -> None:
    """Lazy-load one relation path onto already fetched *instances*."""
    await load_many(instances, {relation: constraint}, session=session)
