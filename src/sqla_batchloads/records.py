"""Request-scoped value records produced by the loaders.

Records hold plain column values only. A child keeps the id of its parent,
never the parent record itself, so the nested output shape is assembled in
one direction by the projector.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .datastructures import AssociationGroup, frozendict


Fields = frozendict[str, Any]


@dataclass(slots=True, frozen=True)
class RootRecord:
    """A root row with its to-one references already resolved.

    ``refs`` maps each to-one path (``"member"``, ``"member.team"``) to that
    entity's fields, or to ``None`` when the outer join found no row.
    """

    id: Any
    fields: Fields
    refs: frozendict[str, Fields | None] = field(default_factory=frozendict)

    def ref(self, path: str) -> Fields | None:
        return self.refs.get(path)


@dataclass(slots=True, frozen=True)
class ChildRecord:
    """A row of a to-many association, keyed to its parent by id."""

    parent_id: Any
    fields: Fields
    refs: frozendict[str, Fields | None] = field(default_factory=frozendict)

    def ref(self, path: str) -> Fields | None:
        return self.refs.get(path)


@dataclass(slots=True, frozen=True)
class LoadResult:
    """Roots of one pipeline run and their association groups by relation key."""

    roots: tuple[RootRecord, ...]
    associations: Mapping[str, AssociationGroup[Any, ChildRecord]] = field(
        default_factory=frozendict
    )

    def __len__(self) -> int:
        return len(self.roots)

    def children(self, key: str, root_id: Any) -> tuple[ChildRecord, ...]:
        return self.associations[key][root_id]
