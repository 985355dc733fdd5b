"""Errors raised by sqla_relations.

Every validation error derives from :class:`RelationError` and is raised
synchronously, before any statement is executed.  Failures coming from the
database are never wrapped: they surface as the original SQLAlchemy
exception, aliased here as :data:`ExecutionFailure` for ``except`` clauses.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.exc import SQLAlchemyError


ExecutionFailure = SQLAlchemyError


class RelationError(Exception):
    """Base class for relation configuration and usage errors."""


class UnresolvedRelatedModel(RelationError, LookupError):
    def __init__(self, reference: Any) -> None:
        self.reference = reference
        super().__init__(f"Cannot resolve related model {reference!r}")


class MissingThroughMethod(RelationError):
    pass


class InvalidIdentifier(RelationError, ValueError):
    def __init__(self, name: Any, what: str = "identifier") -> None:
        self.name = name
        super().__init__(f"Invalid {what}: {name!r}")


class UnsupportedConstraint(RelationError, ValueError):
    pass


class DuplicateAggregateAlias(RelationError, ValueError):
    def __init__(self, alias: str) -> None:
        self.alias = alias
        super().__init__(f"Aggregate alias {alias!r} is already registered on this query")


class PivotModelConflict(RelationError):
    pass


class UnsupportedOperation(RelationError, TypeError):
    def __init__(self, operation: str, kind: Any, reason: str | None = None) -> None:
        self.operation = operation
        self.kind = kind
        super().__init__(reason or f"`{operation}` is not supported by {kind} relations")


class UndefinedRelation(RelationError, LookupError):
    def __init__(self, model: type, name: str) -> None:
        self.model = model
        self.name = name
        super().__init__(f"{model.__name__} has no relation named {name!r}")
