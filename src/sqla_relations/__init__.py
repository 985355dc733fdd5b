"""Declarative model relations for SQLAlchemy's async ORM.

Declare relations on a model with ``has_one``, ``has_many``, ``belongs_to``,
``belongs_to_many`` and ``many_through``; then query with
``Model.query(session)``: ``with_`` eager-loads relation trees with one
batched query per relation, ``has``/``where_has``/``doesnt_have`` filter by
related rows, ``with_count`` adds correlated counts, and ``instance.related()``
reads and writes a single relation (including pivot rows of many-to-many
relations).
"""

from ._version import __version__, __version_tuple__
from .aggregates import COUNT_SUFFIX
from .builder import QueryBuilder
from .datastructures import LoadTree, frozendict
from .definitions import (
    PIVOT_TIMESTAMPS,
    BelongsTo,
    BelongsToMany,
    HasMany,
    HasOne,
    ManyThrough,
    Relation,
    RelationDefinition,
    RelationKind,
    belongs_to,
    belongs_to_many,
    get_relation,
    has_many,
    has_one,
    many_through,
    relations_cache_clear,
    relations_cache_info,
    relations_of,
)
from .exceptions import (
    DuplicateAggregateAlias,
    ExecutionFailure,
    InvalidIdentifier,
    MissingThroughMethod,
    PivotModelConflict,
    RelationError,
    UndefinedRelation,
    UnresolvedRelatedModel,
    UnsupportedConstraint,
    UnsupportedOperation,
)
from .loader import EagerLoader, load, load_many
from .mixins import RelationsMixin, serialize
from .mutations import SUPPORTED_OPERATIONS
from .naming import DEFAULT_PRIMARY_KEY, foreign_key_name, pivot_table_name, primary_key_name
from .pivot import PivotManager, PivotQuery
from .registry import ModelResolver, get_resolver
from .relations import (
    OWNER_KEY_LABEL,
    BelongsToManyQuery,
    BelongsToQuery,
    HasManyQuery,
    HasOneQuery,
    ManyThroughQuery,
    RelationQuery,
    bind_relation,
)
from .state import META_KEY, PIVOT_KEY


__all__ = (
    "COUNT_SUFFIX",
    "DEFAULT_PRIMARY_KEY",
    "META_KEY",
    "OWNER_KEY_LABEL",
    "PIVOT_KEY",
    "PIVOT_TIMESTAMPS",
    "SUPPORTED_OPERATIONS",
    "BelongsTo",
    "BelongsToMany",
    "BelongsToManyQuery",
    "BelongsToQuery",
    "DuplicateAggregateAlias",
    "EagerLoader",
    "ExecutionFailure",
    "HasMany",
    "HasManyQuery",
    "HasOne",
    "HasOneQuery",
    "InvalidIdentifier",
    "LoadTree",
    "ManyThrough",
    "ManyThroughQuery",
    "MissingThroughMethod",
    "ModelResolver",
    "PivotManager",
    "PivotModelConflict",
    "PivotQuery",
    "QueryBuilder",
    "Relation",
    "RelationDefinition",
    "RelationError",
    "RelationKind",
    "RelationQuery",
    "RelationsMixin",
    "UndefinedRelation",
    "UnresolvedRelatedModel",
    "UnsupportedConstraint",
    "UnsupportedOperation",
    "__version__",
    "__version_tuple__",
    "belongs_to",
    "belongs_to_many",
    "bind_relation",
    "foreign_key_name",
    "frozendict",
    "get_relation",
    "get_resolver",
    "has_many",
    "has_one",
    "load",
    "load_many",
    "many_through",
    "pivot_table_name",
    "primary_key_name",
    "relations_cache_clear",
    "relations_cache_info",
    "relations_of",
    "serialize",
)
