"""Pivot table access for belongs-to-many relations.

Without a pivot model, rows are written with Core ``insert``/``delete``
statements against the pivot table.  With one, they go through the session as
model instances so the model's mapper events fire.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

import sqlalchemy as sa

from .datastructures import Constraint
from .definitions import PIVOT_TIMESTAMPS, RelationDefinition
from .exceptions import UnsupportedConstraint


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from .relations import BelongsToManyQuery

logger = logging.getLogger(__name__)


def pivot_table_clause(definition: RelationDefinition) -> sa.TableClause:
    """Return the table the pivot of *definition* is stored in.

    The pivot model's table wins, then a table of that name in the owner's
    metadata.  Otherwise a lightweight ``sa.table()`` with the known pivot
    columns stands in for it.
    """
    pivot = definition.pivot
    assert pivot is not None
    if pivot.model is not None:
        return pivot.model.__table__

    metadata = getattr(definition.owner, "metadata", None)
    if metadata is not None and pivot.table_name in metadata.tables:
        return metadata.tables[pivot.table_name]

    return sa.table(pivot.table_name, *(sa.column(name) for name in pivot.columns))


def pivot_column(table: sa.TableClause, name: str) -> sa.ColumnElement[Any]:
    """Return column *name* of a pivot table.

    Raises:
        UnsupportedConstraint: If *table* is a declared ``Table`` without *name*.
    """
    if name in table.c:
        return table.c[name]

    if isinstance(table, sa.Table):
        raise UnsupportedConstraint(f"pivot table {table.name!r} has no column {name!r}")

    table.append_column(sa.column(name))
    return table.c[name]


class PivotManager:
    """Writes and reads the pivot rows of one owner.

    Args:
        relation: The belongs-to-many relation query the rows belong to.
        owner: The owner instance.
        session: Session used for every statement.
    """

    __slots__ = ("owner", "relation", "session")

    def __init__(self, relation: BelongsToManyQuery[Any], owner: Any, session: AsyncSession) -> None:
        self.relation = relation
        self.owner = owner
        self.session = session

    @property
    def spec(self) -> Any:
        return self.relation.pivot

    @property
    def table(self) -> sa.TableClause:
        return self.relation.pivot_clause

    @property
    def owner_key(self) -> Any:
        return getattr(self.owner, self.relation.definition.primary_key)

    def related_ids(self, ids: Any) -> list[Any]:
        """Normalize ids, instances or a mix of both into distinct key values."""
        if ids is None:
            return []
        if isinstance(ids, (str, bytes)) or not isinstance(ids, Iterable):
            ids = [ids]

        related = self.relation.related
        key = self.relation.definition.related_primary_key
        values = (getattr(item, key) if isinstance(item, related) else item for item in ids)
        return list(dict.fromkeys(values))

    def _owner_clause(self) -> sa.ColumnElement[bool]:
        return pivot_column(self.table, self.spec.foreign_key) == self.owner_key

    async def attach(self, ids: Any, callback: Constraint | None = None) -> list[Any]:
        """Insert pivot rows for the related *ids* not linked to the owner yet.

        *callback* receives each new record (a dict, or a pivot model
        instance) before it is written.  Returns the written records.
        """
        ids = self.related_ids(ids)
        if not ids:
            return []

        related_column = pivot_column(self.table, self.spec.related_foreign_key)
        existing = set(
            (
                await self.session.execute(
                    sa.select(related_column).where(self._owner_clause(), related_column.in_(ids))
                )
            ).scalars()
        )

        records = [self._record(related_id) for related_id in ids if related_id not in existing]
        if callback is not None:
            for record in records:
                callback(record)

        if not records:
            return []

        if self.spec.model is not None:
            self.session.add_all(records)
            await self.session.flush()
        else:
            await self._insert(records)

        logger.debug(
            "Attached %d row(s) to pivot %s for %s=%r",
            len(records),
            self.spec.table_name,
            self.spec.foreign_key,
            self.owner_key,
        )
        return records

    async def detach(self, ids: Any = None) -> int:
        """Delete pivot rows of the owner, all of them when *ids* is ``None``."""
        criteria = [self._owner_clause()]
        if ids is not None:
            ids = self.related_ids(ids)
            if not ids:
                return 0
            criteria.append(pivot_column(self.table, self.spec.related_foreign_key).in_(ids))

        if self.spec.model is not None:
            result = await self.session.execute(sa.select(self.spec.model).where(*criteria))
            rows = result.scalars().all()
            for row in rows:
                await self.session.delete(row)
            await self.session.flush()
            deleted = len(rows)
        else:
            deleted = (await self.session.execute(sa.delete(self.table).where(*criteria))).rowcount

        logger.debug(
            "Detached %d row(s) from pivot %s for %s=%r",
            deleted,
            self.spec.table_name,
            self.spec.foreign_key,
            self.owner_key,
        )
        return deleted

    async def sync(self, ids: Any, callback: Constraint | None = None) -> list[Any]:
        """Make *ids* the complete set of related rows: detach all, then attach *ids*."""
        await self.detach()
        return await self.attach(ids, callback)

    def query(self) -> PivotQuery:
        return PivotQuery(
            self.table,
            self.session,
            [self._owner_clause()],
            model=self.spec.model,
        )

    def _record(self, related_id: Any) -> Any:
        values: dict[str, Any] = {
            self.spec.foreign_key: self.owner_key,
            self.spec.related_foreign_key: related_id,
        }
        if self.spec.with_timestamps:
            now = datetime.now(timezone.utc)
            values.update(dict.fromkeys(PIVOT_TIMESTAMPS, now))

        if self.spec.model is not None:
            return self.spec.model(**values)
        return values

    async def _insert(self, records: list[dict[str, Any]]) -> None:
        # rows with different keys cannot share one executemany
        batches: dict[tuple[str, ...], list[dict[str, Any]]] = {}
        for record in records:
            batches.setdefault(tuple(record), []).append(record)

        for keys, rows in batches.items():
            target = self.table
            if not isinstance(target, sa.Table):
                target = sa.table(self.spec.table_name, *(sa.column(key) for key in keys))
            await self.session.execute(sa.insert(target), rows)


class PivotQuery:
    """Filterable view of the pivot rows of one owner."""

    __slots__ = ("_criteria", "model", "session", "table")

    def __init__(
        self,
        table: sa.TableClause,
        session: AsyncSession,
        criteria: list[sa.ColumnElement[bool]],
        *,
        model: type[Any] | None = None,
    ) -> None:
        self.table = table
        self.session = session
        self.model = model
        self._criteria = list(criteria)

    def column(self, name: str) -> sa.ColumnElement[Any]:
        return pivot_column(self.table, name)

    def where(self, *clauses: sa.ColumnElement[bool], **values: Any) -> Self:
        self._criteria.extend(clauses)
        self._criteria.extend(self.column(key) == value for key, value in values.items())
        return self

    def where_in(self, column: str, values: Iterable[Any]) -> Self:
        self._criteria.append(self.column(column).in_(list(values)))
        return self

    @property
    def statement(self) -> sa.Select[Any]:
        return sa.select(self.table).where(*self._criteria)

    async def fetch(self) -> list[Any]:
        """Pivot rows as dicts, or pivot model instances when a model is bound."""
        if self.model is not None:
            result = await self.session.execute(sa.select(self.model).where(*self._criteria))
            return list(result.scalars().all())

        result = await self.session.execute(self.statement)
        return [dict(row) for row in result.mappings()]

    async def first(self) -> Any:
        rows = await self._limited(1)
        return rows[0] if rows else None

    async def update(self, **values: Any) -> int:
        statement = sa.update(self.table).where(*self._criteria).values(**values)
        return (await self.session.execute(statement)).rowcount

    async def delete(self) -> int:
        return (await self.session.execute(sa.delete(self.table).where(*self._criteria))).rowcount

    async def _limited(self, limit: int) -> list[Any]:
        if self.model is not None:
            statement: sa.Select[Any] = sa.select(self.model).where(*self._criteria).limit(limit)
            return list((await self.session.execute(statement)).scalars().all())

        result = await self.session.execute(self.statement.limit(limit))
        return [dict(row) for row in result.mappings()]

