"""Key naming conventions.

Pure helpers deriving default primary keys, foreign keys and pivot table
names from model classes.  Nothing here touches a database.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, Final

import sqlalchemy as sa
from sqlalchemy import orm

from .exceptions import InvalidIdentifier


DEFAULT_PRIMARY_KEY: Final[str] = "id"

_IDENTIFIER: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_CAMEL_BOUNDARY: Final[re.Pattern[str]] = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def validate_identifier(name: Any, what: str = "identifier") -> str:
    """Return *name* unchanged if it is a plain SQL/Python identifier.

    Raises:
        InvalidIdentifier: If *name* is not a string matching ``[A-Za-z_][A-Za-z0-9_]*``.
    """
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise InvalidIdentifier(name, what)

    return name


def snake_case(name: str) -> str:
    """``CarOwner`` -> ``car_owner``."""
    return _CAMEL_BOUNDARY.sub("_", validate_identifier(name)).lower()


def singularize(word: str) -> str:
    """Best-effort English singular of a lower-case table or model name."""
    if word.endswith("ies") and len(word) > 3:
        return word[:-3] + "y"
    if word.endswith(("sses", "xes", "zes", "ches", "shes")):
        return word[:-2]
    if word.endswith("s") and not word.endswith(("ss", "us", "is")):
        return word[:-1]

    return word


@lru_cache
def _get_table_name(model: type[Any]) -> str:
    result = getattr(model, "__tablename__", None) or model.__table__.description
    if not result:
        raise InvalidIdentifier(model, "table name")

    return result


@lru_cache
def _primary_key_name(model: type[Any]) -> str:
    mapper = sa.inspect(model)
    if not mapper.primary_key:
        return DEFAULT_PRIMARY_KEY

    return mapper.get_property_by_column(mapper.primary_key[0]).key


def get_table_name(model: type[Any]) -> str:
    """Return the table name of a mapped *model* (cached)."""
    return _get_table_name(model)


def get_primary_key(model: type[Any]) -> sa.ColumnElement[Any]:
    """Return the first primary-key column of a mapped *model*."""
    return next(iter(model.__table__.primary_key))


def primary_key_name(model: type[Any]) -> str:
    """Attribute name of the first primary-key column, ``"id"`` when none is mapped."""
    return _primary_key_name(model)


def foreign_key_name(model: type[Any]) -> str:
    """Default foreign key pointing at *model*: ``users`` + ``id`` -> ``user_id``."""
    return validate_identifier(
        f"{singularize(get_table_name(model).lower())}_{primary_key_name(model)}",
        "foreign key",
    )


def pivot_table_name(model: type[Any], other: type[Any]) -> str:
    """Default pivot table joining two models: ``User`` + ``Car`` -> ``car_user``."""
    return "_".join(sorted(singularize(snake_case(m.__name__)) for m in (model, other)))


def entity_class(entity: type[Any] | orm.util.AliasedClass[Any]) -> type[Any]:
    """The mapped class behind *entity*, which may be an ``orm.aliased()`` class."""
    return sa.inspect(entity).mapper.class_


def model_attribute(model: type[Any] | orm.util.AliasedClass[Any], key: str) -> Any:
    """Return the mapped attribute *key* of *model*.

    Raises:
        InvalidIdentifier: If *key* is malformed or not an attribute of *model*.
    """
    try:
        return getattr(model, validate_identifier(key, "column"))
    except AttributeError:
        raise InvalidIdentifier(key, f"column of {model!r}") from None


def naming_cache_info() -> dict[str, Any]:
    return {fn.__name__: fn.cache_info() for fn in (_get_table_name, _primary_key_name)}


def naming_cache_clear() -> None:
    for fn in (_get_table_name, _primary_key_name):
        fn.cache_clear()
