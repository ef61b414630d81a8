"""Exception hierarchy for the loading pipeline.

Store failures are wrapped into ``QueryError``; raw driver exceptions are
chained, never returned to the caller on their own.
"""

from __future__ import annotations


class QueryError(Exception):
    """Base exception, raised directly when the underlying store fails."""

    def __init__(self, message: str, *, statement: str | None = None) -> None:
        self.statement = statement
        super().__init__(message)


class ValidationError(QueryError):
    """Raised for malformed criteria or load plans."""


class UnsupportedQueryError(QueryError):
    """Raised for query shapes that cannot be answered correctly.

    Typical case: two one-to-many relations requested in one joined
    statement, where the row count becomes a cross product.
    """

    def __init__(self, message: str, *, keys: tuple[str, ...] = ()) -> None:
        self.keys = keys
        super().__init__(message)
