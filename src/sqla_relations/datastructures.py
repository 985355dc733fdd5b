from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .naming import validate_identifier


K = TypeVar("K")
V = TypeVar("V")

Constraint = Callable[[Any], object]


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, hashable mapping.

    Used for the cached model and relation lookups so a cached value can never
    be mutated by a caller.

    Example:
        >>> fd = frozendict({"posts": 1})
        >>> fd["posts"]
        1
        >>> fd | {"profile": 2}
        <frozendict {'posts': 1, 'profile': 2}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __or__(self, other: Mapping[K, V]) -> frozendict[K, V]:
        return type(self)({**self._dict, **other})

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        # values may be unhashable descriptors; hash lazily so plain lookups never pay for it
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))
        return self._hash


@dataclass(slots=True)
class LoadNode:
    """One relation hop of an eager-load request."""

    name: str
    constraints: list[Constraint] = field(default_factory=list)
    children: LoadTree = field(default_factory=lambda: LoadTree())

    def copy(self) -> LoadNode:
        return LoadNode(
            name=self.name,
            constraints=list(self.constraints),
            children=self.children.copy(),
        )


class LoadTree:
    """Eager-load requests merged into a tree keyed by relation name.

    ``add("posts.comments", fn)`` creates (or reuses) the ``posts`` node and
    attaches ``fn`` to ``comments`` only: a constraint always belongs to the
    last segment of the path it was given with.

    Example:
        >>> tree = LoadTree()
        >>> _ = tree.add("posts.comments")
        >>> _ = tree.add("profile")
        >>> list(tree.paths())
        ['posts', 'posts.comments', 'profile']
    """

    __slots__ = ("_roots",)

    def __init__(self) -> None:
        self._roots: dict[str, LoadNode] = {}

    def add(self, path: str, constraint: Constraint | None = None) -> LoadNode:
        """Merge *path* into the tree and return its leaf node.

        Raises:
            InvalidIdentifier: If any segment is not a valid relation name.
        """
        segments = [validate_identifier(part, "relation path") for part in path.split(".")]
        level = self._roots
        node: LoadNode | None = None
        for segment in segments:
            node = level.get(segment)
            if node is None:
                node = level[segment] = LoadNode(name=segment)
            level = node.children._roots

        assert node is not None
        if constraint is not None:
            node.constraints.append(constraint)

        return node

    def merge(self, other: LoadTree) -> LoadTree:
        """Return a new tree holding the nodes of both trees."""
        merged = self.copy()
        _merge_into(merged._roots, other._roots)
        return merged

    def copy(self) -> LoadTree:
        tree = LoadTree()
        tree._roots = {name: node.copy() for name, node in self._roots.items()}
        return tree

    def paths(self, prefix: str = "") -> Iterator[str]:
        for name, node in self._roots.items():
            path = f"{prefix}.{name}" if prefix else name
            yield path
            yield from node.children.paths(path)

    def __getitem__(self, name: str) -> LoadNode:
        return self._roots[name]

    def __contains__(self, name: object) -> bool:
        return name in self._roots

    def __iter__(self) -> Iterator[LoadNode]:
        return iter(self._roots.values())

    def __len__(self) -> int:
        return len(self._roots)

    def __bool__(self) -> bool:
        return bool(self._roots)

    def __repr__(self) -> str:
        return f"<LoadTree {list(self.paths())!r}>"


def _merge_into(target: dict[str, LoadNode], source: dict[str, LoadNode]) -> None:
    for name, node in source.items():
        existing = target.get(name)
        if existing is None:
            target[name] = node.copy()
            continue

        existing.constraints.extend(node.constraints)
        _merge_into(existing.children._roots, node.children._roots)
