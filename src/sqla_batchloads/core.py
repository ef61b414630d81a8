from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Final, TypeAlias, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm

from .datastructures import frozendict
from .descriptors import AggregatePlan, AssociationDescriptor, merge_by_key, resolve_path
from .errors import QueryError, UnsupportedQueryError, ValidationError
from .records import ChildRecord, Fields, RootRecord
from .tools import column_keys, get_primary_key, get_table_name


T = TypeVar("T", bound=orm.DeclarativeBase)

PARENT_ID: Final[str] = "_parent_id"
PARENT_IDS: Final[str] = "parent_ids"

_Entity: TypeAlias = "type[orm.DeclarativeBase] | orm.util.AliasedClass[Any]"
_Joined: TypeAlias = "dict[str, tuple[_Entity, EntityLayout]]"


@dataclass(slots=True, frozen=True)
class EntityLayout:
    """Where one entity's columns sit in a result row.

    Every column is selected under the label ``prefix + attribute``. The root
    entity uses an empty prefix; a joined entity uses the ``__``-joined keys
    of the relationships that reached it (``order_items__item__``).
    """

    path: str
    prefix: str
    keys: tuple[str, ...]
    pk: str

    def extract(self, row: Mapping[str, Any]) -> Fields | None:
        """Copy this entity's values out of *row*; ``None`` if the join found nothing."""
        if row[self.prefix + self.pk] is None:
            return None

        return frozendict({key: row[self.prefix + key] for key in self.keys})

    def relative_to(self, base: str) -> EntityLayout:
        """Same layout with the *base* path stripped from the front."""
        return EntityLayout(
            path=self.path[len(base) + 1 :],
            prefix=self.prefix,
            keys=self.keys,
            pk=self.pk,
        )


@dataclass(slots=True, frozen=True)
class SelectLayout:
    """Row layout of a built statement.

    ``refs`` are to-one entities reached from ``main``, with paths relative
    to it. ``collection`` describes the to-many entity of a joined
    statement as ``(relationship key, layout)``.
    """

    main: EntityLayout
    refs: tuple[EntityLayout, ...] = ()
    collection: tuple[str, SelectLayout] | None = None

    def root_record(self, row: Mapping[str, Any]) -> RootRecord:
        fields = self.main.extract(row)
        if fields is None:
            raise QueryError(f"Root row without a {self.main.pk!r} value")

        return RootRecord(
            id=fields[self.main.pk],
            fields=fields,
            refs=frozendict({ref.path: ref.extract(row) for ref in self.refs}),
        )

    def child_record(self, row: Mapping[str, Any], parent_id: Any) -> ChildRecord | None:
        fields = self.main.extract(row)
        if fields is None:
            return None

        return ChildRecord(
            parent_id=parent_id,
            fields=fields,
            refs=frozendict({ref.path: ref.extract(row) for ref in self.refs}),
        )


def _layout(model: type[orm.DeclarativeBase], keys: Sequence[str]) -> EntityLayout:
    return EntityLayout(
        path=".".join(keys),
        prefix="__".join(keys) + "__" if keys else "",
        keys=column_keys(model),
        pk=get_primary_key(model).key,
    )


def _entity_columns(entity: _Entity, layout: EntityLayout) -> list[sa.Label[Any]]:
    return [getattr(entity, key).label(layout.prefix + key) for key in layout.keys]


def _join_chain(
    query: sa.Select[Any],
    start: _Entity,
    hops: Sequence[orm.RelationshipProperty[orm.DeclarativeBase]],
    seen: set[type[orm.DeclarativeBase]],
    joined: _Joined,
    *,
    first_isouter: bool = True,
) -> tuple[sa.Select[Any], list[tuple[_Entity, EntityLayout]]]:
    """Join *hops* one after another from *start*, selecting each target's columns.

    Paths already present in *joined* are reused rather than joined twice.
    A target class that is already part of the statement is joined through
    an alias, so self-referential and repeated relations stay unambiguous
    and predicates written against the plain model keep pointing at its
    first occurrence.
    """
    chain: list[tuple[_Entity, EntityLayout]] = []
    current = start
    keys: list[str] = []
    for depth, hop in enumerate(hops):
        keys.append(hop.key)
        path = ".".join(keys)
        if path in joined:
            chain.append(joined[path])
            current = joined[path][0]
            continue

        target_cls: type[orm.DeclarativeBase] = hop.mapper.class_
        attr = getattr(current, hop.key)
        target: _Entity = target_cls
        if target_cls in seen:
            target = orm.aliased(target_cls, name=f"{get_table_name(target_cls)}_{'_'.join(keys)}")
            attr = attr.of_type(target)
        seen.add(target_cls)

        query = query.join(attr, isouter=first_isouter if depth == 0 else True)
        layout = _layout(target_cls, keys)
        query = query.add_columns(*_entity_columns(target, layout))
        joined[path] = (target, layout)
        chain.append((target, layout))
        current = target

    return query, chain


def _order_by(plan: AggregatePlan[Any]) -> list[sa.ColumnElement[Any]]:
    pk = get_primary_key(plan.model)
    known = column_keys(plan.model)
    clauses: list[sa.ColumnElement[Any]] = []
    for name in plan.order_by:
        attr_name = name.lstrip("-")
        if attr_name not in known:
            raise ValidationError(f"Cannot order {plan.model.__name__} by {name!r}")
        attr = getattr(plan.model, attr_name)
        clauses.append(attr.desc() if name.startswith("-") else attr.asc())

    if pk.key not in {name.lstrip("-") for name in plan.order_by}:
        clauses.append(pk.asc())

    return clauses


def _select_with_refs(
    plan: AggregatePlan[Any],
    to_one: Sequence[AssociationDescriptor],
) -> tuple[sa.Select[Any], EntityLayout, _Joined, set[type[orm.DeclarativeBase]]]:
    model = plan.model
    main = _layout(model, ())
    query: sa.Select[Any] = sa.select(*_entity_columns(model, main)).select_from(model)
    seen: set[type[orm.DeclarativeBase]] = {model}
    joined: _Joined = {}

    for descriptor in to_one:
        query, _ = _join_chain(query, model, descriptor.hops, seen, joined)

    return query, main, joined, seen


@lru_cache(maxsize=256)
def build_root_select(plan: AggregatePlan[T]) -> tuple[sa.Select[Any], SelectLayout]:
    """Base statement of the root query: root columns plus every to-one load.

    To-one references are outer joined and selected under their path
    prefix. Filters and pagination are added per request by the executor.
    """
    query, main, joined, _ = _select_with_refs(plan, plan.to_one())

    return query.order_by(*_order_by(plan)), SelectLayout(
        main=main, refs=tuple(layout for _, layout in joined.values())
    )


@lru_cache(maxsize=256)
def build_children_select(
    descriptor: AssociationDescriptor,
) -> tuple[sa.Select[Any], SelectLayout]:
    """Statement loading the rows of *descriptor* for a set of parent ids.

    Parent ids are bound at execution time through the expanding
    ``parent_ids`` parameter, so one cached statement serves every page.
    The parent's primary key comes back as ``_parent_id``. Leaf to-one
    joins are part of the same statement: they never repeat a child row.
    """
    parent = descriptor.parent
    parent_pk = get_primary_key(parent)
    query: sa.Select[Any] = sa.select(parent_pk.label(PARENT_ID)).select_from(parent)
    query, chain = _join_chain(query, parent, descriptor.hops, {parent}, {}, first_isouter=False)

    (target, main), *leaves = chain
    query = query.where(parent_pk.in_(sa.bindparam(PARENT_IDS, expanding=True))).order_by(
        getattr(target, main.pk).asc()
    )

    return query, SelectLayout(
        main=main,
        refs=tuple(layout.relative_to(main.path) for _, layout in leaves),
    )


def check_joins(descriptors: Sequence[AssociationDescriptor]) -> AssociationDescriptor | None:
    """Return the single to-many descriptor of a joined statement, if any.

    Raises:
        UnsupportedQueryError: If more than one distinct to-many relation is
            requested; the rows would become their cross product and the
            per-root counts could not be recovered.
    """
    to_many = [d for d in descriptors if d.to_many]
    keys = tuple(dict.fromkeys(d.key for d in to_many))
    if len(keys) > 1:
        raise UnsupportedQueryError(
            f"Cannot join more than one to-many association in one statement: {', '.join(keys)}",
            keys=keys,
        )

    return next(iter(merge_by_key(to_many)), None)


@lru_cache(maxsize=256)
def build_join_select(
    plan: AggregatePlan[T],
    paths: tuple[str, ...],
) -> tuple[sa.Select[Any], SelectLayout]:
    """Single statement joining the root, its to-one loads and at most one to-many load.

    Rows repeat once per child of the to-many relation. They are ordered by
    root first, so every root's rows are contiguous, then by child key.
    The plan's own to-one loads are always joined, whatever *paths* holds,
    because its filters may reference them.

    Raises:
        UnsupportedQueryError: See :func:`check_joins`.
    """
    descriptors = plan.descriptors(paths)
    collection = check_joins(descriptors)
    to_one = {d.path: d for d in plan.to_one()}
    to_one.update((d.path, d) for d in descriptors if not d.to_many)
    query, main, joined, seen = _select_with_refs(plan, list(to_one.values()))
    order_by = _order_by(plan)
    layout_collection: tuple[str, SelectLayout] | None = None

    if collection is not None:
        query, chain = _join_chain(query, plan.model, collection.hops, seen, {})
        (target, child_main), *leaves = chain
        order_by.append(getattr(target, child_main.pk).asc())
        layout_collection = (
            collection.key,
            SelectLayout(
                main=child_main,
                refs=tuple(layout.relative_to(child_main.path) for _, layout in leaves),
            ),
        )

    return query.order_by(*order_by), SelectLayout(
        main=main,
        refs=tuple(layout for _, layout in joined.values()),
        collection=layout_collection,
    )


def cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    from .tools import _get_primary_key, _get_table_name

    return {
        fn.__name__: fn.cache_info()
        for fn in (
            resolve_path,
            build_root_select,
            build_children_select,
            build_join_select,
            _get_primary_key,
            _get_table_name,
        )
    }


def cache_clear() -> None:
    """Clear all internal LRU caches."""
    from .tools import _get_primary_key, _get_table_name

    for fn in (
        resolve_path,
        build_root_select,
        build_children_select,
        build_join_select,
        _get_primary_key,
        _get_table_name,
    ):
        fn.cache_clear()
