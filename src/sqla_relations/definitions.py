from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import lru_cache
from typing import Any, ClassVar, Final

from . import state
from .datastructures import frozendict
from .exceptions import MissingThroughMethod, PivotModelConflict, UndefinedRelation
from .naming import (
    foreign_key_name,
    get_table_name,
    naming_cache_clear,
    naming_cache_info,
    pivot_table_name,
    primary_key_name,
    validate_identifier,
)
from .registry import ModelReference, get_resolver, resolver_cache_clear, resolver_cache_info


PIVOT_TIMESTAMPS: Final[tuple[str, str]] = ("created_at", "updated_at")


class RelationKind(str, Enum):
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    BELONGS_TO = "belongs_to"
    BELONGS_TO_MANY = "belongs_to_many"
    MANY_THROUGH = "many_through"

    @property
    def many(self) -> bool:
        """Whether the relation yields a list rather than a single instance."""
        return self not in (RelationKind.HAS_ONE, RelationKind.BELONGS_TO)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class PivotSpec:
    """Pivot table settings of a many-to-many relation.

    When ``model`` is set the table name comes from that model and
    ``with_timestamps`` stays ``False``: the pivot model owns both.
    """

    table_name: str
    foreign_key: str
    related_foreign_key: str
    extra_columns: frozenset[str] = field(default_factory=frozenset)
    with_timestamps: bool = False
    model: type[Any] | None = None

    @property
    def columns(self) -> tuple[str, ...]:
        """Pivot columns exposed on related instances, in a stable order."""
        columns = [self.foreign_key, self.related_foreign_key, *sorted(self.extra_columns)]
        if self.with_timestamps:
            columns.extend(c for c in PIVOT_TIMESTAMPS if c not in columns)
        return tuple(dict.fromkeys(columns))

    def with_table(self, table_name: str) -> PivotSpec:
        if self.model is not None:
            raise PivotModelConflict(
                f"Pivot table of {self.table_name!r} is owned by {self.model.__name__}; "
                "it cannot be renamed"
            )
        return replace(self, table_name=validate_identifier(table_name, "pivot table"))

    def with_timestamps_enabled(self) -> PivotSpec:
        if self.model is not None:
            raise PivotModelConflict(
                f"Timestamps of {self.table_name!r} are managed by {self.model.__name__}"
            )
        return replace(self, with_timestamps=True)

    def with_columns(self, columns: Iterable[str]) -> PivotSpec:
        extra = {validate_identifier(c, "pivot column") for c in columns}
        return replace(self, extra_columns=self.extra_columns | extra)

    def with_model(self, model: type[Any]) -> PivotSpec:
        return replace(self, table_name=get_table_name(model), with_timestamps=False, model=model)


@dataclass(frozen=True, slots=True)
class RelationDefinition:
    """Resolved description of one relation of one owner model.

    ``primary_key`` is always the attribute read from owner instances and
    ``foreign_key`` the attribute it is compared with: a column of the related
    model for has-one/has-many, the related primary key for belongs-to, a
    pivot column for belongs-to-many and a column of the intermediary model
    for many-through.
    """

    kind: RelationKind
    name: str
    owner: type[Any]
    related: type[Any]
    primary_key: str
    foreign_key: str
    related_primary_key: str | None = None
    pivot: PivotSpec | None = None
    through: type[Any] | None = None
    through_method: str | None = None

    @property
    def many(self) -> bool:
        return self.kind.many

    def replace(self, **changes: Any) -> RelationDefinition:
        return replace(self, **changes)


class Relation:
    """Base descriptor for relations declared on a model class.

    Accessed on the class it returns itself; accessed on an instance it
    returns the value loaded by eager or lazy loading, or ``None`` when the
    relation was never loaded.
    """

    kind: ClassVar[RelationKind]

    def __init__(
        self,
        related: ModelReference,
        *,
        primary_key: str | None = None,
        foreign_key: str | None = None,
    ) -> None:
        self.related = related
        self.primary_key = primary_key and validate_identifier(primary_key, "primary key")
        self.foreign_key = foreign_key and validate_identifier(foreign_key, "foreign key")
        self.name = ""

    def __set_name__(self, owner: type[Any], name: str) -> None:
        self.name = validate_identifier(name, "relation name")

    def __get__(self, instance: Any, owner: type[Any] | None = None) -> Any:
        if instance is None:
            return self

        return state.preloaded(instance).get(self.name)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name or '?'} -> {self.related!r}>"

    def definition(self, owner: type[Any]) -> RelationDefinition:
        """Build the :class:`RelationDefinition` of this relation for *owner*.

        Raises:
            UnresolvedRelatedModel: If the related model cannot be resolved.
        """
        related = get_resolver(owner).resolve(self.related)
        primary_key, foreign_key = self.default_keys(owner, related)

        return RelationDefinition(
            kind=self.kind,
            name=self.name,
            owner=owner,
            related=related,
            primary_key=self.primary_key or primary_key,
            foreign_key=self.foreign_key or foreign_key,
        )

    def default_keys(self, owner: type[Any], related: type[Any]) -> tuple[str, str]:
        return primary_key_name(owner), foreign_key_name(owner)


class HasOne(Relation):
    kind = RelationKind.HAS_ONE


class HasMany(Relation):
    kind = RelationKind.HAS_MANY


class BelongsTo(Relation):
    kind = RelationKind.BELONGS_TO

    def default_keys(self, owner: type[Any], related: type[Any]) -> tuple[str, str]:
        return foreign_key_name(related), primary_key_name(related)


class BelongsToMany(Relation):
    kind = RelationKind.BELONGS_TO_MANY

    def __init__(
        self,
        related: ModelReference,
        *,
        pivot_table: str | None = None,
        foreign_key: str | None = None,
        related_foreign_key: str | None = None,
        primary_key: str | None = None,
        related_primary_key: str | None = None,
        with_pivot: Iterable[str] = (),
        with_timestamps: bool = False,
        pivot_model: ModelReference | None = None,
    ) -> None:
        super().__init__(related, primary_key=primary_key, foreign_key=foreign_key)
        if pivot_model is not None and (pivot_table is not None or with_timestamps):
            raise PivotModelConflict(
                "`pivot_table` and `with_timestamps` cannot be combined with `pivot_model`"
            )
        self.pivot_table = pivot_table and validate_identifier(pivot_table, "pivot table")
        self.related_foreign_key = related_foreign_key and validate_identifier(
            related_foreign_key, "foreign key"
        )
        self.related_primary_key = related_primary_key and validate_identifier(
            related_primary_key, "primary key"
        )
        self.with_pivot = frozenset(validate_identifier(c, "pivot column") for c in with_pivot)
        self.with_timestamps = with_timestamps
        self.pivot_model = pivot_model

    def definition(self, owner: type[Any]) -> RelationDefinition:
        resolver = get_resolver(owner)
        related = resolver.resolve(self.related)
        pivot = PivotSpec(
            table_name=self.pivot_table or pivot_table_name(owner, related),
            foreign_key=self.foreign_key or foreign_key_name(owner),
            related_foreign_key=self.related_foreign_key or foreign_key_name(related),
            extra_columns=self.with_pivot,
            with_timestamps=self.with_timestamps,
        )
        if self.pivot_model is not None:
            pivot = pivot.with_model(resolver.resolve(self.pivot_model))

        return RelationDefinition(
            kind=self.kind,
            name=self.name,
            owner=owner,
            related=related,
            primary_key=self.primary_key or primary_key_name(owner),
            foreign_key=pivot.foreign_key,
            related_primary_key=self.related_primary_key or primary_key_name(related),
            pivot=pivot,
        )


class ManyThrough(Relation):
    kind = RelationKind.MANY_THROUGH

    def __init__(
        self,
        through: ModelReference,
        method: str | None,
        *,
        primary_key: str | None = None,
        foreign_key: str | None = None,
    ) -> None:
        if not method:
            raise MissingThroughMethod(
                f"many_through({through!r}) needs the name of a relation declared on it"
            )
        super().__init__(through, primary_key=primary_key, foreign_key=foreign_key)
        self.method = validate_identifier(method, "through method")

    def definition(self, owner: type[Any]) -> RelationDefinition:
        through = get_resolver(owner).resolve(self.related)
        try:
            target = get_relation(through, self.method).definition(through)
        except UndefinedRelation:
            raise MissingThroughMethod(
                f"{through.__name__} has no relation {self.method!r} to go through"
            ) from None

        return RelationDefinition(
            kind=self.kind,
            name=self.name,
            owner=owner,
            related=target.related,
            primary_key=self.primary_key or primary_key_name(owner),
            foreign_key=self.foreign_key or foreign_key_name(owner),
            through=through,
            through_method=self.method,
        )


def has_one(
    related: ModelReference, *, primary_key: str | None = None, foreign_key: str | None = None
) -> HasOne:
    """Declare a one-to-one relation whose foreign key lives on *related*.

    Args:
        related: Related model class, name, table name or callable.
        primary_key: Owner attribute matched by the foreign key. Defaults to
            the owner's primary key.
        foreign_key: Column on *related*. Defaults to ``<singular owner table>_<pk>``.
    """
    return HasOne(related, primary_key=primary_key, foreign_key=foreign_key)


def has_many(
    related: ModelReference, *, primary_key: str | None = None, foreign_key: str | None = None
) -> HasMany:
    """Declare a one-to-many relation; keys default as for :func:`has_one`."""
    return HasMany(related, primary_key=primary_key, foreign_key=foreign_key)


def belongs_to(
    related: ModelReference, *, primary_key: str | None = None, foreign_key: str | None = None
) -> BelongsTo:
    """Declare the inverse of has-one/has-many.

    Args:
        related: Related model class, name, table name or callable.
        primary_key: Foreign key column on *this* model. Defaults to
            ``<singular related table>_<related pk>``.
        foreign_key: Attribute of *related* it points at. Defaults to the
            related primary key.
    """
    return BelongsTo(related, primary_key=primary_key, foreign_key=foreign_key)


def belongs_to_many(related: ModelReference, **options: Any) -> BelongsToMany:
    """Declare a many-to-many relation stored in a pivot table.

    Keyword options: ``pivot_table``, ``foreign_key``, ``related_foreign_key``,
    ``primary_key``, ``related_primary_key``, ``with_pivot``,
    ``with_timestamps`` and ``pivot_model``.  The pivot table defaults to both
    singular model names sorted and joined with ``_`` (``car_user``).
    """
    return BelongsToMany(related, **options)


def many_through(
    through: ModelReference,
    method: str,
    *,
    primary_key: str | None = None,
    foreign_key: str | None = None,
) -> ManyThrough:
    """Declare a relation reached through the *method* relation of *through*.

    ``foreign_key`` is the column of *through* that points at the owner; it
    defaults to ``<singular owner table>_<pk>``.
    """
    return ManyThrough(through, method, primary_key=primary_key, foreign_key=foreign_key)


@lru_cache(maxsize=256)
def _relations_of(model: type[Any]) -> frozendict[str, Relation]:
    found: dict[str, Relation] = {}
    for cls in reversed(model.__mro__):
        for name, value in vars(cls).items():
            if isinstance(value, Relation):
                found[name] = value
            elif name in found:
                del found[name]

    return frozendict(found)


def relations_of(model: type[Any]) -> frozendict[str, Relation]:
    """All relation descriptors declared on *model* and its bases (cached)."""
    return _relations_of(model)


def get_relation(model: type[Any], name: str) -> Relation:
    """Return the relation descriptor *name* of *model*.

    Raises:
        UndefinedRelation: If *model* declares no such relation.
    """
    try:
        return _relations_of(model)[name]
    except KeyError:
        raise UndefinedRelation(model, name) from None


def relations_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    return {
        _relations_of.__name__: _relations_of.cache_info(),
        "_resolver_for": resolver_cache_info(),
        **naming_cache_info(),
    }


def relations_cache_clear() -> None:
    """Clear all internal LRU caches."""
    _relations_of.cache_clear()
    resolver_cache_clear()
    naming_cache_clear()
