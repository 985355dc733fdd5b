from __future__ import annotations

import sys
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any, Generic, Literal, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

import sqlalchemy as sa

from . import state
from .datastructures import Constraint, LoadTree
from .exceptions import DuplicateAggregateAlias, UnsupportedConstraint, UnsupportedOperation
from .naming import model_attribute


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")
_Boolean = Literal["and", "or"]


class QueryBuilder(Generic[T]):
    """Select builder for one model with relation-aware filters and eager loads.

    Wraps a ``sa.Select`` of *model*.  Plain filters (``where``, ``where_in``,
    ...) accumulate into one criteria expression so that ``or_*`` variants
    combine with everything added before them.  Relation features are layered
    on top:

    * ``with_`` records eager loads executed after the primary fetch;
    * ``with_count`` adds a correlated ``count(*)`` column per alias;
    * ``has`` / ``where_has`` / ``doesnt_have`` and friends add ``EXISTS``
      predicates.

    Example::

        users = await (
            User.query(session)
            .where(active=True)
            .where_has("posts", lambda q: q.where(is_published=True))
            .with_("posts.comments")
            .with_count("posts as total_posts")
            .fetch()
        )
    """

    __slots__ = ("_aggregates", "_criteria", "_eager", "_statement", "model", "session")

    def __init__(
        self,
        model: type[T],
        session: AsyncSession | None = None,
        *,
        statement: sa.Select[Any] | None = None,
    ) -> None:
        self.model = model
        self.session = session
        self._statement: sa.Select[Any] = statement if statement is not None else sa.select(model)
        self._criteria: sa.ColumnElement[bool] | None = None
        self._aggregates: dict[str, sa.ScalarSelect[Any]] = {}
        self._eager = LoadTree()

    # statements

    @property
    def filtered(self) -> sa.Select[Any]:
        """The select with accumulated criteria but without aggregate columns."""
        if self._criteria is None:
            return self._statement
        return self._statement.where(self._criteria)

    @property
    def statement(self) -> sa.Select[Any]:
        """The full select: criteria plus one labelled column per ``with_count``."""
        statement = self.filtered
        if self._aggregates:
            statement = statement.add_columns(
                *(subquery.label(alias) for alias, subquery in self._aggregates.items())
            )
        return statement

    @property
    def criteria(self) -> sa.ColumnElement[bool] | None:
        return self._criteria

    @property
    def eager(self) -> LoadTree:
        """Eager-load requests recorded with :meth:`with_`."""
        return self._eager

    @property
    def aggregates(self) -> Sequence[str]:
        return tuple(self._aggregates)

    @property
    def limit_value(self) -> int | None:
        return self._statement._limit  # noqa: SLF001

    @property
    def offset_value(self) -> int | None:
        return self._statement._offset  # noqa: SLF001

    @property
    def ordering(self) -> tuple[sa.ColumnElement[Any], ...]:
        return tuple(self._statement._order_by_clauses)  # noqa: SLF001

    # filters

    def where(self, *clauses: sa.ColumnExpressionArgument[bool], **values: Any) -> Self:
        """AND the given clauses; keyword arguments compare columns for equality."""
        return self._add(self._collect(clauses, values), "and")

    def or_where(self, *clauses: sa.ColumnExpressionArgument[bool], **values: Any) -> Self:
        """OR the given clauses (AND-ed together) with the criteria so far."""
        return self._add(self._collect(clauses, values), "or")

    def where_in(self, column: str | sa.ColumnElement[Any], values: Iterable[Any]) -> Self:
        return self._add(self.column(column).in_(list(values)), "and")

    def where_not_in(self, column: str | sa.ColumnElement[Any], values: Iterable[Any]) -> Self:
        return self._add(self.column(column).not_in(list(values)), "and")

    def order_by(self, *columns: str | sa.ColumnElement[Any]) -> Self:
        """Order by columns; a ``-`` prefix on a name sorts descending."""
        clauses = []
        for column in columns:
            if isinstance(column, str) and column.startswith("-"):
                clauses.append(self.column(column[1:]).desc())
            else:
                clauses.append(self.column(column))
        self._statement = self._statement.order_by(*clauses)
        return self

    def limit(self, limit: int | None) -> Self:
        self._statement = self._statement.limit(limit)
        return self

    def offset(self, offset: int | None) -> Self:
        self._statement = self._statement.offset(offset)
        return self

    def column(self, column: str | sa.ColumnElement[Any]) -> Any:
        """Resolve a column name of the model to its mapped attribute."""
        if isinstance(column, str):
            return model_attribute(self.model, column)
        return column

    # eager loading and aggregates

    def with_(self, path: str, constraint: Constraint | None = None) -> Self:
        """Eager-load the dotted relation *path* after the primary fetch.

        *constraint* receives the relation query of the last segment only.
        """
        self._eager.add(path, constraint)
        return self

    def with_count(self, expression: str, constraint: Constraint | None = None) -> Self:
        """Add a correlated count of *expression* (``"name"`` or ``"name as alias"``).

        The value is exposed as ``instance.meta[alias]``; the alias defaults to
        ``<name>_count``.

        Raises:
            DuplicateAggregateAlias: If the alias is already used on this query.
        """
        from .aggregates import count_subquery, parse_count_expression

        name, alias = parse_count_expression(expression)
        if alias in self._aggregates:
            raise DuplicateAggregateAlias(alias)

        self._aggregates[alias] = count_subquery(self.model, name, constraint)
        return self

    # existence filters

    def has(self, relation: str, operator: str | None = None, value: Any = None) -> Self:
        """Keep rows with at least one *relation* row, or whose count satisfies ``operator value``."""
        return self._existence(relation, None, operator, value, negate=False, boolean="and")

    def or_has(self, relation: str, operator: str | None = None, value: Any = None) -> Self:
        return self._existence(relation, None, operator, value, negate=False, boolean="or")

    def where_has(
        self,
        relation: str,
        constraint: Constraint | None = None,
        operator: str | None = None,
        value: Any = None,
    ) -> Self:
        """Like :meth:`has`, counting only related rows matching *constraint*."""
        return self._existence(relation, constraint, operator, value, negate=False, boolean="and")

    def or_where_has(
        self,
        relation: str,
        constraint: Constraint | None = None,
        operator: str | None = None,
        value: Any = None,
    ) -> Self:
        return self._existence(relation, constraint, operator, value, negate=False, boolean="or")

    def doesnt_have(self, relation: str, *count: Any) -> Self:
        """Keep rows without any *relation* row; a count comparison is rejected."""
        return self._existence(relation, None, *_no_count(count), negate=True, boolean="and")

    def or_doesnt_have(self, relation: str, *count: Any) -> Self:
        return self._existence(relation, None, *_no_count(count), negate=True, boolean="or")

    def where_doesnt_have(
        self, relation: str, constraint: Constraint | None = None, *count: Any
    ) -> Self:
        return self._existence(relation, constraint, *_no_count(count), negate=True, boolean="and")

    def or_where_doesnt_have(
        self, relation: str, constraint: Constraint | None = None, *count: Any
    ) -> Self:
        return self._existence(relation, constraint, *_no_count(count), negate=True, boolean="or")

    # execution

    async def fetch(self) -> list[T]:
        """Execute the query, hydrate the rows and run the eager loads."""
        result = await self._session("fetch").execute(self.statement)
        instances = self.hydrate(result)
        await self.load_eager(instances)
        return instances

    async def first(self) -> T | None:
        result = await self._session("first").execute(self.statement.limit(1))
        instances = self.hydrate(result)
        await self.load_eager(instances)
        return instances[0] if instances else None

    async def count(self) -> int:
        subquery = self.filtered.order_by(None).subquery()
        statement = sa.select(sa.func.count()).select_from(subquery)
        return int((await self._session("count").execute(statement)).scalar_one())

    def hydrate(self, result: sa.Result[Any]) -> list[T]:
        """Turn a result of :attr:`statement` into instances, filling aggregates."""
        if not self._aggregates:
            return list(result.scalars().all())

        instances = []
        for row in result:
            instance = row[0]
            self.read_aggregates(instance, row)
            instances.append(instance)
        return instances

    def read_aggregates(self, instance: Any, row: sa.Row[Any]) -> None:
        values = row._mapping
        meta = state.meta(instance)
        for alias in self._aggregates:
            meta[alias] = values[alias]

    async def load_eager(self, instances: Sequence[Any]) -> None:
        if not self._eager or not instances:
            return

        from .loader import EagerLoader

        await EagerLoader(self._session("with_"), self._eager).run(instances)

    # internals

    def _session(self, operation: str) -> AsyncSession:
        if self.session is None:
            raise UnsupportedOperation(
                operation,
                self.model.__name__,
                f"`{operation}` needs a session; build the query with {self.model.__name__}.query(session)",
            )
        return self.session

    def _collect(
        self, clauses: Iterable[sa.ColumnExpressionArgument[bool]], values: dict[str, Any]
    ) -> sa.ColumnElement[bool]:
        collected = [*clauses, *(self.column(key) == value for key, value in values.items())]
        if not collected:
            raise TypeError("where() needs at least one clause")
        return collected[0] if len(collected) == 1 else sa.and_(*collected)

    def _add(self, clause: sa.ColumnElement[bool], boolean: _Boolean) -> Self:
        if self._criteria is None:
            self._criteria = clause
        elif boolean == "or":
            self._criteria = sa.or_(self._criteria, clause)
        else:
            self._criteria = sa.and_(self._criteria, clause)
        return self

    def _existence(
        self,
        relation: str,
        constraint: Constraint | None,
        operator: str | None,
        value: Any,
        *,
        negate: bool,
        boolean: _Boolean,
    ) -> Self:
        from .filters import existence_clause

        clause = existence_clause(
            self.model, relation, constraint, operator, value, negate=negate
        )
        return self._add(clause, boolean)


def _no_count(count: tuple[Any, ...]) -> tuple[Any, Any]:
    if count:
        raise UnsupportedConstraint(
            "doesnt_have() does not accept a count comparison; use has(name, '<', n) instead"
        )
    return None, None
