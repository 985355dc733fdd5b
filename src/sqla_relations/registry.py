from __future__ import annotations

import warnings
from collections.abc import Callable, Mapping
from functools import lru_cache
from typing import Any, Union, final

from sqlalchemy import orm

from .datastructures import frozendict
from .exceptions import UnresolvedRelatedModel


ModelReference = Union[str, type[Any], Callable[[], Any]]


@final
class ModelResolver:
    """Look up mapped model classes by reference.

    A resolver is a read-only snapshot of one declarative registry.  It accepts
    the model class itself, its class name, its ``module.QualName``, its table
    name, or a zero-argument callable returning any of those (handy for
    forward references).

    Example:
        >>> resolver = get_resolver(User)
        >>> resolver.resolve("Post") is Post
        True
    """

    __slots__ = ("_models",)

    def __init__(self, models: Mapping[str, type[Any]]) -> None:
        self._models = models

    def resolve(self, reference: ModelReference) -> type[Any]:
        """Return the model class for *reference*.

        Raises:
            UnresolvedRelatedModel: If no mapped class matches *reference*.
        """
        if isinstance(reference, type):
            if reference not in self._models.values():
                raise UnresolvedRelatedModel(reference)
            return reference

        if isinstance(reference, str):
            try:
                return self._models[reference]
            except KeyError:
                raise UnresolvedRelatedModel(reference) from None

        if callable(reference):
            return self.resolve(reference())

        raise UnresolvedRelatedModel(reference)

    def __contains__(self, reference: object) -> bool:
        return reference in self._models

    @property
    def models(self) -> Mapping[str, type[Any]]:
        """The name-to-class mapping this resolver was built from (read-only)."""
        return self._models


def get_models(registry: orm.registry) -> frozendict[str, type[Any]]:
    """Collect every mapped class of *registry* under its lookup names.

    Class names win over table names when both collide.  When two classes
    share a name, the first one mapped keeps it and the other stays reachable
    through its ``module.QualName``.
    """
    by_table: dict[str, type[Any]] = {}
    by_name: dict[str, type[Any]] = {}
    for mapper in registry.mappers:
        cls = mapper.class_
        existing = by_name.get(cls.__name__)
        if existing is not None and existing is not cls:
            warnings.warn(
                f"Model name {cls.__name__!r} is mapped twice ({existing.__module__} and "
                f"{cls.__module__}); use '{cls.__module__}.{cls.__qualname__}' to reference the latter.",
                stacklevel=2,
            )
        else:
            by_name[cls.__name__] = cls
        by_name[f"{cls.__module__}.{cls.__qualname__}"] = cls
        if tablename := getattr(cls, "__tablename__", None):
            by_table[tablename] = cls

    return frozendict({**by_table, **by_name})


@lru_cache(maxsize=64)
def _resolver_for(registry: orm.registry, size: int) -> ModelResolver:
    # *size* invalidates the entry once more classes get mapped on the registry
    return ModelResolver(get_models(registry))


def get_resolver(model: type[Any]) -> ModelResolver:
    """Return a resolver over the declarative registry *model* belongs to.

    Raises:
        UnresolvedRelatedModel: If *model* is not a mapped declarative class.
    """
    registry = getattr(model, "registry", None)
    if not isinstance(registry, orm.registry):
        raise UnresolvedRelatedModel(model)

    return _resolver_for(registry, len(registry.mappers))


def resolver_cache_clear() -> None:
    _resolver_for.cache_clear()


def resolver_cache_info() -> Any:
    return _resolver_for.cache_info()
