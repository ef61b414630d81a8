from __future__ import annotations

from typing import Any, TypeVar

import sqlalchemy as sa

from .criteria import QueryCriteria


_S = TypeVar("_S", bound=sa.Select[Any])


def can_pushdown_pagination(has_to_many_join: bool) -> bool:
    """Whether OFFSET/LIMIT may be applied in the same statement.

    A joined one-to-many relation repeats each root once per child, so a
    LIMIT on that statement counts rows, not roots. In that case the roots
    must be paginated on their own and the children loaded for that page.
    """
    return not has_to_many_join


def paginate(query: _S, criteria: QueryCriteria) -> _S:
    """Apply the criteria's offset and capped limit to *query*."""
    if criteria.offset:
        query = query.offset(criteria.offset)

    return query.limit(criteria.effective_limit)
