"""Which writes each relation kind allows, and the persistence helpers they share.

Writes end with ``flush()``, never ``commit()``: a caller that needs several
writes (``sync``, ``create_many``) to be atomic wraps them in its own
transaction.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Final

from .datastructures import frozendict
from .definitions import RelationKind
from .exceptions import UnsupportedOperation


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


SUPPORTED_OPERATIONS: Final[frozendict[RelationKind, frozenset[str]]] = frozendict({
    RelationKind.HAS_ONE: frozenset({"save", "create"}),
    RelationKind.HAS_MANY: frozenset({"save", "create", "save_many", "create_many"}),
    RelationKind.BELONGS_TO: frozenset({"associate", "dissociate"}),
    RelationKind.BELONGS_TO_MANY: frozenset({
        "save",
        "create",
        "save_many",
        "create_many",
        "attach",
        "detach",
        "sync",
        "pivot_query",
    }),
    RelationKind.MANY_THROUGH: frozenset(),
})


def is_supported(kind: RelationKind, operation: str) -> bool:
    return operation in SUPPORTED_OPERATIONS[kind]


def ensure_supported(kind: RelationKind, operation: str) -> None:
    """Raise :class:`UnsupportedOperation` unless *kind* relations allow *operation*."""
    if not is_supported(kind, operation):
        raise UnsupportedOperation(operation, kind)


def single_owner(owners: Sequence[Any], operation: str, kind: RelationKind) -> Any:
    """Return the only owner of a relation query.

    Writes are defined for one owner at a time; relation queries bound to
    several owners exist only inside eager loading.
    """
    if len(owners) != 1:
        raise UnsupportedOperation(
            operation,
            kind,
            f"`{operation}` needs exactly one owner, this relation query has {len(owners)}",
        )
    return owners[0]


async def persist(session: AsyncSession, *instances: Any) -> None:
    session.add_all(instances)
    await session.flush()


async def persist_if_new(session: AsyncSession, instance: Any, key: str) -> None:
    """Flush *instance* first when its *key* attribute has no value yet."""
    if getattr(instance, key) is None:
        await persist(session, instance)
