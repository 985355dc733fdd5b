"""Relation existence predicates: ``has``, ``where_has`` and ``doesnt_have``."""

from __future__ import annotations

import operator as op
from collections.abc import Callable
from typing import Any, Final

import sqlalchemy as sa

from .aggregates import count_of
from .datastructures import Constraint, frozendict
from .exceptions import UnsupportedConstraint
from .naming import entity_class, validate_identifier


Comparison = Callable[[Any, Any], Any]

OPERATORS: Final[frozendict[str, Comparison]] = frozendict({
    "=": op.eq,
    "==": op.eq,
    "!=": op.ne,
    "<>": op.ne,
    ">": op.gt,
    ">=": op.ge,
    "<": op.lt,
    "<=": op.le,
})


def comparison(operator: str) -> Comparison:
    """Return the comparison function of a SQL-style *operator*.

    Raises:
        UnsupportedConstraint: If *operator* is not one of ``OPERATORS``.
    """
    try:
        return OPERATORS[operator]
    except (KeyError, TypeError):
        raise UnsupportedConstraint(
            f"Unsupported count operator {operator!r}; expected one of {', '.join(OPERATORS)}"
        ) from None


def existence_clause(
    model: type[Any],
    path: str,
    constraint: Constraint | None = None,
    operator: str | None = None,
    value: Any = None,
    *,
    negate: bool = False,
) -> sa.ColumnElement[bool]:
    """Build an ``EXISTS`` (or count comparison) predicate on *model*.

    A dotted *path* nests one ``EXISTS`` per hop; *constraint* and the count
    comparison apply to the last hop only.

    Raises:
        UnsupportedConstraint: On an unknown operator, or an operator without
            a value (and the reverse).
        UndefinedRelation: If a segment of *path* names no relation.
    """
    if (operator is None) != (value is None):
        raise UnsupportedConstraint("a count comparison needs both an operator and a value")

    compare = comparison(operator) if operator is not None else None
    segments = [validate_identifier(part, "relation path") for part in path.split(".")]
    clause = _relation_clause(model, segments, constraint, compare, value)
    return ~clause if negate else clause


def _relation_clause(
    model: type[Any],
    segments: list[str],
    constraint: Constraint | None,
    compare: Comparison | None,
    value: Any,
) -> sa.ColumnElement[bool]:
    from .relations import bind_relation

    relation = bind_relation(entity_class(model), segments[0], correlate_to=model)
    if len(segments) > 1:
        relation.query.where(
            _relation_clause(relation.target, segments[1:], constraint, compare, value)
        )
        return relation.correlated().exists()

    if constraint is not None:
        constraint(relation)

    statement = relation.correlated()
    if compare is None:
        return statement.exists()

    return compare(count_of(statement), value)
