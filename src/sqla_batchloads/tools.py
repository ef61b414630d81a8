from __future__ import annotations

from functools import lru_cache
from typing import Any, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm

from .errors import UnsupportedQueryError


T = TypeVar("T", bound=orm.DeclarativeBase)


@lru_cache
def _get_primary_key(model: type[T]) -> sa.ColumnElement[Any]:
    """Return the single primary-key attribute of *model* (cached)."""
    mapper = sa.inspect(model)
    if len(mapper.primary_key) != 1:
        raise UnsupportedQueryError(
            f"{model.__name__} has a composite primary key; only single-column keys are supported"
        )

    return getattr(model, mapper.get_property_by_column(mapper.primary_key[0]).key)


@lru_cache
def _get_table_name(model: type[T]) -> str:
    """Return the table name for *model*, preferring ``__tablename__`` (cached)."""
    result = getattr(
        model,
        "__tablename__",
        model.__table__.description,
    )
    if not result:
        raise ValueError(f"Cannot determine tablename for {model}")

    return result


def get_table_name(model: type[T]) -> str:
    """Get the table name for a SQLAlchemy model.

    Raises:
        ValueError: If the table name cannot be determined.
    """
    return _get_table_name(model)


def get_primary_key(model: type[T]) -> sa.ColumnElement[Any]:
    """Get the primary key attribute of a SQLAlchemy model.

    Raises:
        UnsupportedQueryError: If the model has a composite primary key.
    """
    return _get_primary_key(model)


def column_keys(model: type[T]) -> tuple[str, ...]:
    """Attribute names of all mapped columns of *model*, in mapper order."""
    return tuple(attr.key for attr in sa.inspect(model).column_attrs)
