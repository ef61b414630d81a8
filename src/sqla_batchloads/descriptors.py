from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Generic, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm

from .datastructures import frozendict
from .errors import UnsupportedQueryError, ValidationError
from .node import Node


T = TypeVar("T", bound=orm.DeclarativeBase)

Predicate = Callable[[Any], sa.ColumnElement[bool]]


@dataclass(slots=True, frozen=True)
class AssociationDescriptor:
    """One association of a load plan, resolved to relationship hops.

    ``path`` is the dotted key as written in the plan. The first hop is the
    association itself (to-one or to-many); any further hops must be to-one
    and are joined in the same statement, because a to-one join never
    multiplies rows.
    """

    path: str
    hops: tuple[orm.RelationshipProperty[orm.DeclarativeBase], ...]

    @property
    def key(self) -> str:
        return self.hops[0].key

    @property
    def relationship(self) -> orm.RelationshipProperty[orm.DeclarativeBase]:
        return self.hops[0]

    @property
    def leaves(self) -> tuple[orm.RelationshipProperty[orm.DeclarativeBase], ...]:
        return self.hops[1:]

    @property
    def to_many(self) -> bool:
        return bool(self.hops[0].uselist)

    @property
    def parent(self) -> type[orm.DeclarativeBase]:
        return self.hops[0].parent.class_

    @property
    def target(self) -> type[orm.DeclarativeBase]:
        return self.hops[0].mapper.class_

    @classmethod
    def resolve(
        cls, model: type[orm.DeclarativeBase], path: str, node: Node
    ) -> AssociationDescriptor:
        """Resolve *path* starting at *model*; see :func:`resolve_path`."""
        return resolve_path(model, path, node)


@lru_cache(maxsize=1028)
def resolve_path(
    model: type[orm.DeclarativeBase],
    path: str,
    node: Node,
) -> AssociationDescriptor:
    """Resolve a dotted path like ``"order_items.item"`` into a descriptor.

    Each segment must be a direct relationship key on the current model.

    Raises:
        ValidationError: If a segment does not name a relationship.
        UnsupportedQueryError: If a to-many relationship appears after the
            first segment.
    """
    if not path or any(not part for part in path.split(".")):
        raise ValidationError(f"Invalid association path {path!r}")

    hops: list[orm.RelationshipProperty[orm.DeclarativeBase]] = []
    current: type[orm.DeclarativeBase] = model
    for depth, segment in enumerate(path.split(".")):
        try:
            rel = node.relationship(current, segment)
        except KeyError:
            raise ValidationError(
                f"No relationship {segment!r} on {current.__name__} "
                f"(resolving {path!r} from {model.__name__})"
            ) from None

        if depth and rel.uselist:
            raise UnsupportedQueryError(
                f"{path!r}: to-many relationship {segment!r} below the first segment "
                "would fan out the statement",
                keys=(path,),
            )
        hops.append(rel)
        current = rel.mapper.class_

    return AssociationDescriptor(path=path, hops=tuple(hops))


def merge_by_key(
    descriptors: Sequence[AssociationDescriptor],
) -> tuple[AssociationDescriptor, ...]:
    """Collapse descriptors of the same relationship into one, keeping order.

    ``"order_items"`` next to ``"order_items.item"`` is one association with
    one leaf join.

    Raises:
        UnsupportedQueryError: If two paths of the same relationship diverge
            below it (``"a.b"`` and ``"a.c"``).
    """
    merged: dict[str, AssociationDescriptor] = {}
    for descriptor in descriptors:
        current = merged.get(descriptor.key)
        if current is None:
            merged[descriptor.key] = descriptor
            continue

        shorter, longer = sorted((current, descriptor), key=lambda d: len(d.hops))
        if longer.hops[: len(shorter.hops)] != shorter.hops:
            raise UnsupportedQueryError(
                f"Diverging leaf joins under {descriptor.key!r}: "
                f"{shorter.path!r} and {longer.path!r}",
                keys=(descriptor.key,),
            )
        merged[descriptor.key] = longer

    return tuple(merged.values())


@dataclass(slots=True, frozen=True)
class AggregatePlan(Generic[T]):
    """What to load for one kind of root record.

    Args:
        model: Root model class.
        loads: Association paths, e.g. ``("member", "order_items.item")``.
        filters: Criteria field name to predicate factory; a factory receives
            the filter value and returns a boolean column expression. It may
            reference any model joined by a to-one load.
        order_by: Root attribute names, ``"-name"`` for descending. The
            primary key is always appended as a tiebreaker.
        node: Relationship graph used to resolve ``loads``.

    Plans are hashable: they are the cache keys of the statement builders,
    so predicate factories should be module-level functions.
    """
    model: type[T]
    loads: tuple[str, ...] = ()
    filters: Mapping[str, Predicate] = field(default_factory=frozendict)
    order_by: tuple[str, ...] = ()
    node: Node = field(default_factory=Node)

    def __post_init__(self) -> None:
        if isinstance(self.loads, str):
            raise ValidationError("loads must be a tuple of paths, not a string")
        object.__setattr__(self, "loads", tuple(self.loads))
        object.__setattr__(self, "order_by", tuple(self.order_by))
        if not isinstance(self.filters, frozendict):
            object.__setattr__(self, "filters", frozendict(self.filters))

    def descriptors(self, paths: Sequence[str] | None = None) -> tuple[AssociationDescriptor, ...]:
        """Resolve *paths* (default: ``loads``), dropping duplicates in order."""
        out: dict[str, AssociationDescriptor] = {}
        for path in self.loads if paths is None else paths:
            if path not in out:
                out[path] = resolve_path(self.model, path, self.node)

        return tuple(out.values())

    def to_one(self) -> tuple[AssociationDescriptor, ...]:
        return tuple(d for d in self.descriptors() if not d.to_many)

    def to_many(self) -> tuple[AssociationDescriptor, ...]:
        """To-many loads, one descriptor per relationship."""
        return merge_by_key([d for d in self.descriptors() if d.to_many])

    def replace(self, **changes: Any) -> AggregatePlan[T]:
        """Copy of the plan with *changes* applied."""
        params = {
            "model": self.model,
            "loads": self.loads,
            "filters": self.filters,
            "order_by": self.order_by,
            "node": self.node,
        }
        params.update(changes)

        return type(self)(**params)
