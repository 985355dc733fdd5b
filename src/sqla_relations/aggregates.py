from __future__ import annotations

import re
from typing import Any, Final

import sqlalchemy as sa

from .datastructures import Constraint
from .exceptions import InvalidIdentifier
from .naming import entity_class, validate_identifier


COUNT_SUFFIX: Final[str] = "_count"

_ALIAS_SEPARATOR: Final[re.Pattern[str]] = re.compile(r"\s+as\s+", re.IGNORECASE)


def parse_count_expression(expression: str) -> tuple[str, str]:
    """Split ``"posts"`` or ``"posts as total"`` into ``(relation, alias)``.

    Raises:
        InvalidIdentifier: If either part is not a plain identifier.

    Example:
        >>> parse_count_expression("posts")
        ('posts', 'posts_count')
        >>> parse_count_expression("posts AS total")
        ('posts', 'total')
    """
    if not isinstance(expression, str):
        raise InvalidIdentifier(expression, "count expression")

    parts = _ALIAS_SEPARATOR.split(expression.strip())
    if len(parts) > 2:
        raise InvalidIdentifier(expression, "count expression")

    name = validate_identifier(parts[0], "relation name")
    if len(parts) == 1:
        return name, f"{name}{COUNT_SUFFIX}"

    return name, validate_identifier(parts[1], "count alias")


def count_of(statement: sa.Select[Any]) -> sa.ScalarSelect[Any]:
    """Turn a correlated select of related rows into a scalar ``count(*)``."""
    return (
        statement.with_only_columns(sa.func.count(), maintain_column_froms=True)
        .order_by(None)
        .scalar_subquery()
    )


def count_subquery(
    model: type[Any], name: str, constraint: Constraint | None = None
) -> sa.ScalarSelect[Any]:
    """Correlated count of the *name* relation rows of each *model* row."""
    from .relations import bind_relation

    relation = bind_relation(entity_class(model), name, correlate_to=model)
    if constraint is not None:
        constraint(relation)

    return count_of(relation.correlated())
