from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Final

from .datastructures import frozendict
from .errors import ValidationError


MAX_ROWS: Final[int] = 1000
"""Hard cap on the number of roots a single query may return."""


@dataclass(slots=True, frozen=True)
class QueryCriteria:
    """Immutable filter and pagination request for a root query.

    Absent filters are left out of the WHERE clause entirely. A blank
    ``name_contains`` counts as absent. ``limit`` above :data:`MAX_ROWS` is
    truncated silently; negative offsets and limits below one are rejected.

    Raises:
        ValidationError: On construction, for malformed pagination values.
    """

    status: enum.Enum | None = None
    name_contains: str | None = None
    offset: int = 0
    limit: int | None = None
    extra: frozendict[str, Any] = field(default_factory=frozendict)

    def __post_init__(self) -> None:
        if isinstance(self.offset, bool) or not isinstance(self.offset, int):
            raise ValidationError(f"offset must be an integer, got {self.offset!r}")
        if self.offset < 0:
            raise ValidationError(f"offset must be >= 0, got {self.offset}")

        if self.limit is not None:
            if isinstance(self.limit, bool) or not isinstance(self.limit, int):
                raise ValidationError(f"limit must be an integer, got {self.limit!r}")
            if self.limit < 1:
                raise ValidationError(f"limit must be >= 1, got {self.limit}")

        if self.name_contains is not None and not isinstance(self.name_contains, str):
            raise ValidationError(f"name_contains must be a string, got {self.name_contains!r}")

        if not isinstance(self.extra, frozendict):
            object.__setattr__(self, "extra", frozendict(self.extra))

    @property
    def effective_limit(self) -> int:
        """Requested limit capped at :data:`MAX_ROWS`."""
        return MAX_ROWS if self.limit is None else min(self.limit, MAX_ROWS)

    @property
    def paginated(self) -> bool:
        """Whether the caller asked for a page rather than the capped full result."""
        return self.offset > 0 or self.limit is not None

    def filters(self) -> dict[str, Any]:
        """Present filters keyed by criteria field name, in a stable order."""
        present: dict[str, Any] = {}
        if self.status is not None:
            present["status"] = self.status
        if self.name_contains is not None and self.name_contains.strip():
            present["name_contains"] = self.name_contains
        present.update((key, value) for key, value in self.extra.items() if value is not None)

        return present

    def page(self, offset: int, limit: int | None) -> QueryCriteria:
        """Same filters, different page."""
        return QueryCriteria(
            status=self.status,
            name_contains=self.name_contains,
            offset=offset,
            limit=limit,
            extra=self.extra,
        )
