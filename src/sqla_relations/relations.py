from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Final, Generic, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

import sqlalchemy as sa
from sqlalchemy import orm

from . import state
from .builder import QueryBuilder
from .datastructures import Constraint, frozendict
from .definitions import RelationDefinition, RelationKind, get_relation
from .exceptions import UnsupportedConstraint, UnsupportedOperation
from .mutations import ensure_supported, persist, persist_if_new, single_owner
from .naming import get_primary_key, model_attribute, primary_key_name, validate_identifier
from .registry import ModelReference, get_resolver


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from .pivot import PivotManager, PivotQuery

T = TypeVar("T")

logger = logging.getLogger(__name__)

OWNER_KEY_LABEL: Final[str] = "_sqla_owner_key"
ROW_NUMBER_LABEL: Final[str] = "_sqla_row_number"
PIVOT_LABEL_PREFIX: Final[str] = "pivot_"


class RelationQuery(Generic[T]):
    """A relation bound to its owner instances.

    Wraps a :class:`QueryBuilder` of the related model and scopes it to the
    owners.  Subclasses describe how related rows link to owners:

    * :meth:`link` correlates related rows to the owner model (used by the
      ``has`` and ``with_count`` subqueries);
    * :meth:`partition_column` is the column whose value names the owner a
      related row belongs to;
    * :meth:`join` adds the tables needed between the two;
    * :meth:`scope` filters related rows down to a batch of owner keys.

    Filtering methods are forwarded to the wrapped builder and return the
    relation query, so ``user.related("posts").where(...).fetch()`` reads
    naturally.

    ``source`` is the owner-side entity correlated subqueries refer to and
    ``target`` the related-side entity they select from.  Both default to the
    mapped classes; a self-referential subquery selects from an alias.
    """

    __slots__ = ("definition", "owners", "query", "session", "source", "target")

    def __init__(
        self,
        definition: RelationDefinition,
        owners: Iterable[Any] = (),
        session: AsyncSession | None = None,
        *,
        source: Any = None,
        target: Any = None,
    ) -> None:
        self.definition = definition
        self.owners: tuple[Any, ...] = tuple(owners)
        self.session = session
        self.source = source if source is not None else definition.owner
        self.target = target if target is not None else definition.related
        self.query: QueryBuilder[T] = QueryBuilder(self.target, session)

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} {self.definition.owner.__name__}.{self.definition.name}"
            f" owners={len(self.owners)}>"
        )

    @property
    def related(self) -> type[T]:
        return self.definition.related

    # key wiring

    def owner_keys(self) -> list[Any]:
        """Distinct, non-null owner key values in owner order."""
        key = self.definition.primary_key
        return list(dict.fromkeys(
            value for owner in self.owners if (value := getattr(owner, key)) is not None
        ))

    def link(self, owner: Any) -> sa.ColumnElement[bool]:
        raise NotImplementedError

    def partition_column(self) -> sa.ColumnElement[Any]:
        raise NotImplementedError

    def join(self, statement: sa.Select[Any]) -> sa.Select[Any]:
        return statement

    def scope(self, keys: Sequence[Any]) -> sa.ColumnElement[bool]:
        return self.partition_column().in_(keys)

    def extra_columns(self) -> Sequence[sa.Label[Any]]:
        return ()

    def on_row(self, instance: T, row: sa.Row[Any]) -> None:
        pass

    def correlated(self) -> sa.Select[Any]:
        """Related rows of the current criteria, correlated to the owner model.

        Embedded in a query of the owner model, this select only sees rows
        belonging to the outer row; ``has`` and ``with_count`` are built on it.
        """
        return (
            self.join(self.query.filtered)
            .where(self.link(self.source))
            .correlate(self.source)
        )

    def scoped(self, keys: Sequence[Any]) -> sa.Select[Any]:
        """The batched select of related rows for *keys*, labelled with the owner key.

        A limit or offset on the wrapped builder bounds the rows of each owner,
        not the batch.
        """
        statement = (
            self.join(self.query.statement)
            .where(self.scope(keys))
            .add_columns(self.partition_column().label(OWNER_KEY_LABEL), *self.extra_columns())
        )
        limit, offset = self.query.limit_value, self.query.offset_value
        if limit is None and not offset:
            return statement
        return self._windowed(statement, limit, offset or 0)

    def _windowed(self, statement: sa.Select[Any], limit: int | None, offset: int) -> sa.Select[Any]:
        ordering = self.query.ordering or (get_primary_key(self.related).desc(),)
        ranked = (
            statement.limit(None)
            .offset(None)
            .order_by(None)
            .add_columns(
                sa.func.row_number()
                .over(partition_by=self.partition_column(), order_by=ordering)
                .label(ROW_NUMBER_LABEL)
            )
            .subquery()
        )
        row_number = ranked.c[ROW_NUMBER_LABEL]
        bounds = [row_number > offset]
        if limit is not None:
            bounds.append(row_number <= offset + limit)

        labels = (
            *self.query.aggregates,
            OWNER_KEY_LABEL,
            *(column.name for column in self.extra_columns()),
        )
        return (
            sa.select(orm.aliased(self.related, ranked), *(ranked.c[label] for label in labels))
            .where(*bounds)
            .order_by(ranked.c[OWNER_KEY_LABEL], row_number)
        )

    def bucket(self, owner_key: Any, instances: Iterable[T]) -> list[T]:
        """The list stored on (or returned to) the owner with *owner_key*."""
        return list(instances)

    # forwarded builder surface

    def where(self, *clauses: sa.ColumnExpressionArgument[bool], **values: Any) -> Self:
        self.query.where(*clauses, **values)
        return self

    def or_where(self, *clauses: sa.ColumnExpressionArgument[bool], **values: Any) -> Self:
        self.query.or_where(*clauses, **values)
        return self

    def where_in(self, column: str | sa.ColumnElement[Any], values: Iterable[Any]) -> Self:
        self.query.where_in(column, values)
        return self

    def where_not_in(self, column: str | sa.ColumnElement[Any], values: Iterable[Any]) -> Self:
        self.query.where_not_in(column, values)
        return self

    def order_by(self, *columns: str | sa.ColumnElement[Any]) -> Self:
        self.query.order_by(*columns)
        return self

    def limit(self, limit: int | None) -> Self:
        self.query.limit(limit)
        return self

    def offset(self, offset: int | None) -> Self:
        self.query.offset(offset)
        return self

    def with_(self, path: str, constraint: Constraint | None = None) -> Self:
        self.query.with_(path, constraint)
        return self

    def with_count(self, expression: str, constraint: Constraint | None = None) -> Self:
        self.query.with_count(expression, constraint)
        return self

    def has(self, relation: str, operator: str | None = None, value: Any = None) -> Self:
        self.query.has(relation, operator, value)
        return self

    def or_has(self, relation: str, operator: str | None = None, value: Any = None) -> Self:
        self.query.or_has(relation, operator, value)
        return self

    def where_has(
        self,
        relation: str,
        constraint: Constraint | None = None,
        operator: str | None = None,
        value: Any = None,
    ) -> Self:
        self.query.where_has(relation, constraint, operator, value)
        return self

    def or_where_has(
        self,
        relation: str,
        constraint: Constraint | None = None,
        operator: str | None = None,
        value: Any = None,
    ) -> Self:
        self.query.or_where_has(relation, constraint, operator, value)
        return self

    def doesnt_have(self, relation: str, *count: Any) -> Self:
        self.query.doesnt_have(relation, *count)
        return self

    def or_doesnt_have(self, relation: str, *count: Any) -> Self:
        self.query.or_doesnt_have(relation, *count)
        return self

    def where_doesnt_have(
        self, relation: str, constraint: Constraint | None = None, *count: Any
    ) -> Self:
        self.query.where_doesnt_have(relation, constraint, *count)
        return self

    def or_where_doesnt_have(
        self, relation: str, constraint: Constraint | None = None, *count: Any
    ) -> Self:
        self.query.or_where_doesnt_have(relation, constraint, *count)
        return self

    # reads

    async def fetch_grouped(self, *, limit: int | None = None) -> dict[Any, list[T]]:
        """Run one batched query for every owner and group the rows by owner key."""
        keys = self.owner_keys()
        if not keys:
            return {}

        statement = self.scoped(keys)
        if limit is not None:
            statement = statement.limit(limit)

        result = await self._session("fetch").execute(statement)
        grouped: dict[Any, list[T]] = {}
        seen: dict[Any, set[int]] = {}
        rows = 0
        for row in result:
            rows += 1
            instance = row[0]
            self.query.read_aggregates(instance, row)
            self.on_row(instance, row)
            owner_key = row._mapping[OWNER_KEY_LABEL]
            ids = seen.setdefault(owner_key, set())
            if id(instance) in ids:
                continue
            ids.add(id(instance))
            grouped.setdefault(owner_key, []).append(instance)

        logger.debug(
            "Loaded %s.%s: %d owner keys, %d rows",
            self.definition.owner.__name__,
            self.definition.name,
            len(keys),
            rows,
        )
        return grouped

    def assign(self, grouped: Mapping[Any, list[T]]) -> None:
        """Store the grouped rows on every owner under the relation name."""
        key = self.definition.primary_key
        for owner in self.owners:
            owner_key = getattr(owner, key)
            rows = grouped.get(owner_key, [])
            if self.definition.many:
                value: Any = self.bucket(owner_key, rows)
            else:
                value = rows[0] if rows else None
            state.set_preloaded(owner, self.definition.name, value)

    async def fetch(self) -> Any:
        """Fetch the related rows: a list, or one instance / ``None`` for has-one and belongs-to."""
        instances = self.flatten(await self.fetch_grouped())
        await self.query.load_eager(instances)
        if self.definition.many:
            keys = self.owner_keys()
            return self.bucket(keys[0], instances) if len(keys) == 1 else instances
        return instances[0] if instances else None

    async def first(self) -> T | None:
        instances = self.flatten(await self.fetch_grouped(limit=1))
        await self.query.load_eager(instances)
        return instances[0] if instances else None

    async def count(self) -> int:
        keys = self.owner_keys()
        if not keys:
            return 0

        subquery = (
            self.join(self.query.filtered).where(self.scope(keys)).order_by(None).subquery()
        )
        statement = sa.select(sa.func.count()).select_from(subquery)
        return int((await self._session("count").execute(statement)).scalar_one())

    async def ids(self) -> list[Any]:
        """Primary keys of the related rows."""
        keys = self.owner_keys()
        if not keys:
            return []

        primary_key = self.definition.related_primary_key or primary_key_name(self.related)
        statement = (
            self.join(self.query.filtered)
            .where(self.scope(keys))
            .with_only_columns(model_attribute(self.related, primary_key), maintain_column_froms=True)
        )
        result = await self._session("ids").execute(statement)
        return list(dict.fromkeys(result.scalars().all()))

    # writes, checked against mutations.SUPPORTED_OPERATIONS

    async def save(self, instance: T, pivot_callback: Constraint | None = None) -> T:
        owner = self._writable("save")
        return await self._save(owner, instance, pivot_callback)

    async def create(self, pivot_callback: Constraint | None = None, **attributes: Any) -> T:
        owner = self._writable("create")
        return await self._save(owner, self.related(**attributes), pivot_callback)

    async def save_many(
        self, instances: Iterable[T], pivot_callback: Constraint | None = None
    ) -> list[T]:
        owner = self._writable("save_many")
        return await self._save_many(owner, list(instances), pivot_callback)

    async def create_many(
        self, rows: Iterable[Mapping[str, Any]], pivot_callback: Constraint | None = None
    ) -> list[T]:
        owner = self._writable("create_many")
        return await self._save_many(owner, [self.related(**row) for row in rows], pivot_callback)

    async def associate(self, instance: T) -> Any:
        owner = self._writable("associate")
        return await self._associate(owner, instance)

    async def dissociate(self) -> Any:
        owner = self._writable("dissociate")
        return await self._dissociate(owner)

    async def attach(self, ids: Any, callback: Constraint | None = None) -> list[Any]:
        return await self._pivot_manager("attach").attach(ids, callback)

    async def detach(self, ids: Any = None) -> int:
        return await self._pivot_manager("detach").detach(ids)

    async def sync(self, ids: Any, callback: Constraint | None = None) -> list[Any]:
        return await self._pivot_manager("sync").sync(ids, callback)

    def pivot_query(self) -> PivotQuery:
        return self._pivot_manager("pivot_query").query()

    async def _save(self, owner: Any, instance: T, pivot_callback: Constraint | None) -> T:
        raise UnsupportedOperation("save", self.definition.kind)

    async def _save_many(
        self, owner: Any, instances: list[T], pivot_callback: Constraint | None
    ) -> list[T]:
        return [await self._save(owner, instance, pivot_callback) for instance in instances]

    async def _associate(self, owner: Any, instance: T) -> Any:
        raise UnsupportedOperation("associate", self.definition.kind)

    async def _dissociate(self, owner: Any) -> Any:
        raise UnsupportedOperation("dissociate", self.definition.kind)

    def _pivot_manager(self, operation: str) -> PivotManager:
        raise UnsupportedOperation(operation, self.definition.kind)

    # internals

    def _writable(self, operation: str) -> Any:
        ensure_supported(self.definition.kind, operation)
        owner = single_owner(self.owners, operation, self.definition.kind)
        self._session(operation)
        return owner

    def _session(self, operation: str) -> AsyncSession:
        if self.session is None:
            raise UnsupportedOperation(
                operation,
                self.definition.kind,
                f"`{operation}` on {self!r} needs a session",
            )
        return self.session

    def flatten(self, grouped: Mapping[Any, list[T]]) -> list[T]:
        instances: dict[int, T] = {}
        for key in self.owner_keys():
            for instance in grouped.get(key, ()):
                instances.setdefault(id(instance), instance)
        return list(instances.values())


class _HasQuery(RelationQuery[T]):
    __slots__ = ()

    def link(self, owner: Any) -> sa.ColumnElement[bool]:
        return self.partition_column() == model_attribute(owner, self.definition.primary_key)

    def partition_column(self) -> sa.ColumnElement[Any]:
        return model_attribute(self.target, self.definition.foreign_key)

    async def _save(self, owner: Any, instance: T, pivot_callback: Constraint | None) -> T:
        if pivot_callback is not None:
            raise UnsupportedConstraint("pivot callbacks only apply to belongs-to-many relations")

        session = self._session("save")
        await persist_if_new(session, owner, self.definition.primary_key)
        setattr(instance, self.definition.foreign_key, getattr(owner, self.definition.primary_key))
        await persist(session, instance)
        return instance


class HasOneQuery(_HasQuery[T]):
    __slots__ = ()


class HasManyQuery(_HasQuery[T]):
    __slots__ = ()


class BelongsToQuery(RelationQuery[T]):
    __slots__ = ()

    def link(self, owner: Any) -> sa.ColumnElement[bool]:
        return self.partition_column() == model_attribute(owner, self.definition.primary_key)

    def partition_column(self) -> sa.ColumnElement[Any]:
        return model_attribute(self.target, self.definition.foreign_key)

    async def _associate(self, owner: Any, instance: T) -> Any:
        session = self._session("associate")
        await persist_if_new(session, instance, self.definition.foreign_key)
        setattr(owner, self.definition.primary_key, getattr(instance, self.definition.foreign_key))
        await persist(session, owner)
        state.set_preloaded(owner, self.definition.name, instance)
        return owner

    async def _dissociate(self, owner: Any) -> Any:
        setattr(owner, self.definition.primary_key, None)
        await persist(self._session("dissociate"), owner)
        state.set_preloaded(owner, self.definition.name, None)
        return owner


class BelongsToManyQuery(RelationQuery[T]):
    """Many-to-many relation query; rows are joined through the pivot table.

    Fetched instances expose the pivot foreign keys, the ``with_pivot``
    columns and, with ``with_timestamps()``, the timestamps as
    ``instance.pivot``.
    """

    __slots__ = ("pivot_clause",)

    def __init__(
        self,
        definition: RelationDefinition,
        owners: Iterable[Any] = (),
        session: AsyncSession | None = None,
        *,
        source: Any = None,
        target: Any = None,
    ) -> None:
        from .pivot import pivot_table_clause

        super().__init__(definition, owners, session, source=source, target=target)
        self.pivot_clause: sa.TableClause = pivot_table_clause(definition)

    @property
    def pivot(self) -> Any:
        assert self.definition.pivot is not None
        return self.definition.pivot

    def pivot_column(self, name: str) -> sa.ColumnElement[Any]:
        from .pivot import pivot_column

        return pivot_column(self.pivot_clause, name)

    def link(self, owner: Any) -> sa.ColumnElement[bool]:
        return self.partition_column() == model_attribute(owner, self.definition.primary_key)

    def partition_column(self) -> sa.ColumnElement[Any]:
        return self.pivot_column(self.pivot.foreign_key)

    def join(self, statement: sa.Select[Any]) -> sa.Select[Any]:
        assert self.definition.related_primary_key is not None
        return statement.join(
            self.pivot_clause,
            self.pivot_column(self.pivot.related_foreign_key)
            == model_attribute(self.target, self.definition.related_primary_key),
        )

    def extra_columns(self) -> Sequence[sa.Label[Any]]:
        return [
            self.pivot_column(column).label(f"{PIVOT_LABEL_PREFIX}{column}")
            for column in self.pivot.columns
        ]

    def on_row(self, instance: T, row: sa.Row[Any]) -> None:
        values = row._mapping
        state.set_pivot(
            instance,
            {column: values[f"{PIVOT_LABEL_PREFIX}{column}"] for column in self.pivot.columns},
            self.pivot_scope(values[OWNER_KEY_LABEL]),
        )

    def pivot_scope(self, owner_key: Any) -> tuple[Any, ...]:
        """Key of the pivot rows fetched for the owner with *owner_key*."""
        return (self.definition.owner, self.definition.name, owner_key)

    def bucket(self, owner_key: Any, instances: Iterable[T]) -> list[T]:
        return state.PivotList(instances, self.pivot_scope(owner_key))

    # pivot configuration

    def pivot_table(self, name: str) -> Self:
        """Use *name* as pivot table.

        Raises:
            PivotModelConflict: If a pivot model is bound.
        """
        return self._with_pivot_spec(self.pivot.with_table(name))

    def with_timestamps(self) -> Self:
        """Stamp ``created_at``/``updated_at`` on attach and expose them on fetch.

        Raises:
            PivotModelConflict: If a pivot model is bound.
        """
        return self._with_pivot_spec(self.pivot.with_timestamps_enabled())

    def with_pivot(self, *columns: str) -> Self:
        return self._with_pivot_spec(self.pivot.with_columns(columns))

    def pivot_model(self, reference: ModelReference) -> Self:
        """Route pivot reads and writes through the mapped *reference* model."""
        model = get_resolver(self.definition.owner).resolve(reference)
        return self._with_pivot_spec(self.pivot.with_model(model))

    def where_pivot(self, column: str, value: Any) -> Self:
        self.query.where(self.pivot_column(validate_identifier(column, "pivot column")) == value)
        return self

    def or_where_pivot(self, column: str, value: Any) -> Self:
        self.query.or_where(self.pivot_column(validate_identifier(column, "pivot column")) == value)
        return self

    def where_in_pivot(self, column: str, values: Iterable[Any]) -> Self:
        self.query.where(
            self.pivot_column(validate_identifier(column, "pivot column")).in_(list(values))
        )
        return self

    # writes

    async def _save(self, owner: Any, instance: T, pivot_callback: Constraint | None) -> T:
        session = self._session("save")
        await persist_if_new(session, owner, self.definition.primary_key)
        await persist(session, instance)
        await self._pivot_manager("save").attach([instance], pivot_callback)
        return instance

    async def _save_many(
        self, owner: Any, instances: list[T], pivot_callback: Constraint | None
    ) -> list[T]:
        session = self._session("save_many")
        await persist_if_new(session, owner, self.definition.primary_key)
        await persist(session, *instances)
        await self._pivot_manager("save_many").attach(instances, pivot_callback)
        return instances

    def _pivot_manager(self, operation: str) -> PivotManager:
        from .pivot import PivotManager

        ensure_supported(self.definition.kind, operation)
        owner = single_owner(self.owners, operation, self.definition.kind)
        return PivotManager(self, owner, self._session(operation))

    def _with_pivot_spec(self, spec: Any) -> Self:
        from .pivot import pivot_table_clause

        self.definition = self.definition.replace(pivot=spec, foreign_key=spec.foreign_key)
        self.pivot_clause = pivot_table_clause(self.definition)
        return self


class ManyThroughQuery(RelationQuery[T]):
    """Relation reached through a relation of an intermediary model.

    The intermediary's relation supplies the joins to the final rows; this
    query adds ``intermediary.<foreign_key> IN (owner keys)`` so the rows of
    one batched select are partitioned straight back to the original owners.
    """

    __slots__ = ("through",)

    def __init__(
        self,
        definition: RelationDefinition,
        owners: Iterable[Any] = (),
        session: AsyncSession | None = None,
        *,
        source: Any = None,
        target: Any = None,
    ) -> None:
        super().__init__(definition, owners, session, source=source, target=target)
        assert definition.through is not None and definition.through_method is not None
        through = get_relation(definition.through, definition.through_method).definition(definition.through)
        self.through: RelationQuery[T] = make_relation_query(through, target=self.target)

    def _intermediary_key(self) -> sa.ColumnElement[Any]:
        assert self.definition.through is not None
        return model_attribute(self.definition.through, self.definition.foreign_key)

    def link(self, owner: Any) -> sa.ColumnElement[bool]:
        return sa.and_(
            self.through.link(self.definition.through),
            self._intermediary_key() == model_attribute(owner, self.definition.primary_key),
        )

    def partition_column(self) -> sa.ColumnElement[Any]:
        return self._intermediary_key()

    def join(self, statement: sa.Select[Any]) -> sa.Select[Any]:
        return self.through.join(statement)

    def scope(self, keys: Sequence[Any]) -> sa.ColumnElement[bool]:
        return sa.and_(
            self.through.link(self.definition.through),
            self._intermediary_key().in_(keys),
        )


_QUERY_CLASSES: Final[Mapping[RelationKind, Callable[..., RelationQuery[Any]]]] = frozendict({
    RelationKind.HAS_ONE: HasOneQuery,
    RelationKind.HAS_MANY: HasManyQuery,
    RelationKind.BELONGS_TO: BelongsToQuery,
    RelationKind.BELONGS_TO_MANY: BelongsToManyQuery,
    RelationKind.MANY_THROUGH: ManyThroughQuery,
})


def make_relation_query(
    definition: RelationDefinition,
    owners: Iterable[Any] = (),
    session: AsyncSession | None = None,
    *,
    source: Any = None,
    target: Any = None,
) -> RelationQuery[Any]:
    return _QUERY_CLASSES[definition.kind](definition, owners, session, source=source, target=target)


def bind_relation(
    model: type[Any],
    name: str,
    owners: Iterable[Any] = (),
    session: AsyncSession | None = None,
    *,
    correlate_to: Any = None,
) -> RelationQuery[Any]:
    """Build the relation query of *model*.*name* for *owners*.

    Without owners the query is class-level: it can build correlated
    subqueries but has nothing to fetch.  *correlate_to* is the entity those
    subqueries correlate with (*model* itself or an alias of it); a relation
    of a model to itself then selects from an alias of the related model.

    Raises:
        UndefinedRelation: If *model* declares no relation *name*.
        UnresolvedRelatedModel: If the related model cannot be resolved.
    """
    definition = get_relation(model, name).definition(model)
    target = None
    if correlate_to is not None and definition.related is definition.owner:
        target = orm.aliased(definition.related)
    return make_relation_query(definition, owners, session, source=correlate_to, target=target)
