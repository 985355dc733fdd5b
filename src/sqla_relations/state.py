"""Per-instance slots for preloaded relations, aggregates and pivot data.

The values live in the instance ``__dict__`` under private keys, next to the
ORM's own state, so any mapped instance can carry them whether or not its
class uses :class:`~sqla_relations.mixins.RelationsMixin`.
"""

from __future__ import annotations

from collections.abc import Hashable, Iterable, Iterator
from typing import Any, Final


META_KEY: Final[str] = "__meta__"
PIVOT_KEY: Final[str] = "pivot"

_PRELOADED: Final[str] = "_sqla_relations_preloaded"
_META: Final[str] = "_sqla_relations_meta"
_PIVOT: Final[str] = "_sqla_relations_pivot"
_PIVOTS: Final[str] = "_sqla_relations_pivots"


def preloaded(instance: Any) -> dict[str, Any]:
    """Relations loaded onto *instance*, keyed by relation name."""
    return instance.__dict__.setdefault(_PRELOADED, {})


def set_preloaded(instance: Any, name: str, value: Any) -> None:
    preloaded(instance)[name] = value


def is_loaded(instance: Any, name: str) -> bool:
    return name in instance.__dict__.get(_PRELOADED, ())


def meta(instance: Any) -> dict[str, Any]:
    """Computed aggregate values of *instance*, keyed by alias."""
    return instance.__dict__.setdefault(_META, {})


def pivot(instance: Any) -> dict[str, Any] | None:
    """Pivot row of *instance* for the owner list it was last read from."""
    return instance.__dict__.get(_PIVOT)


def set_pivot(instance: Any, values: dict[str, Any] | None, scope: Hashable | None = None) -> None:
    """Store *values* as the pivot row of *instance*, remembered under *scope* when given.

    *scope* names one owner of one relation.  A related instance shared by
    several owners keeps one pivot row per scope; :class:`PivotList` switches
    between them.
    """
    instance.__dict__[_PIVOT] = values
    if scope is not None:
        instance.__dict__.setdefault(_PIVOTS, {})[scope] = values


def pivot_for(instance: Any, scope: Hashable) -> dict[str, Any] | None:
    return instance.__dict__.get(_PIVOTS, {}).get(scope)


def use_pivot(instance: Any, scope: Hashable) -> None:
    pivots = instance.__dict__.get(_PIVOTS)
    if pivots is not None and scope in pivots:
        instance.__dict__[_PIVOT] = pivots[scope]


class PivotList(list):  # type: ignore[type-arg]
    """Related instances of one owner of a many-to-many relation.

    The session's identity map hands every owner the same related instance,
    so the instance alone cannot hold each owner's pivot row.  Items read
    from this list (by index or iteration) are switched to the pivot row of
    the owner the list belongs to.
    """

    __slots__ = ("scope",)

    def __init__(self, instances: Iterable[Any] = (), scope: Hashable | None = None) -> None:
        super().__init__(instances)
        self.scope = scope

    def __getitem__(self, index: Any) -> Any:
        item = super().__getitem__(index)
        if isinstance(index, slice):
            return PivotList(item, self.scope)
        use_pivot(item, self.scope)
        return item

    def __iter__(self) -> Iterator[Any]:
        for item in super().__iter__():
            use_pivot(item, self.scope)
            yield item

    def __reversed__(self) -> Iterator[Any]:
        for item in super().__reversed__():
            use_pivot(item, self.scope)
            yield item
