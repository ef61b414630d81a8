"""Executors for the three loading strategies and the pipeline that runs them.

``"batch"`` (default): one root query, then one ``IN (...)`` query per
to-many relation, for any number of roots.

``"join"``: a single statement joining at most one to-many relation, with
root rows deduplicated in first-seen order. Only safe to paginate when no
to-many relation is joined.

``"naive"``: one lookup per root and association. Kept as the reference
baseline that shows the N+1 query shape; never chosen by default.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Final, Generic, Literal, Protocol, TypeVar

import anyio
import sqlalchemy as sa
from sqlalchemy import orm

from .core import PARENT_ID, PARENT_IDS, build_children_select, build_join_select, build_root_select
from .criteria import QueryCriteria
from .datastructures import AssociationGroup, frozendict, unique_by
from .descriptors import AggregatePlan, AssociationDescriptor
from .errors import QueryError, UnsupportedQueryError, ValidationError
from .pagination import can_pushdown_pagination, paginate
from .records import ChildRecord, LoadResult, RootRecord
from .tools import get_primary_key


logger = logging.getLogger(__name__)

T = TypeVar("T", bound=orm.DeclarativeBase)

Strategy = Literal["batch", "join", "naive"]
DEFAULT_STRATEGY: Final[Strategy] = "batch"


class QueryContext(Protocol):
    """Anything that executes a statement: ``AsyncSession`` or ``AsyncConnection``."""

    async def execute(self, statement: Any, params: Any = None, /) -> sa.Result[Any]: ...


async def _fetch(
    context: QueryContext,
    statement: sa.Select[Any],
    params: dict[str, Any] | None = None,
) -> Sequence[sa.RowMapping]:
    """Execute *statement* and buffer its rows; store failures become ``QueryError``."""
    try:
        result = await (
            context.execute(statement, params) if params is not None else context.execute(statement)
        )
        return result.mappings().all()
    except sa.exc.SQLAlchemyError as exc:
        logger.error("Query failed: %s", exc)
        raise QueryError(f"Query execution failed: {exc}", statement=str(statement)) from exc


def _where(plan: AggregatePlan[Any], criteria: QueryCriteria) -> sa.ColumnElement[bool] | None:
    """AND of one predicate per present filter; ``None`` when no filter is present.

    Raises:
        ValidationError: If *criteria* carries a filter the plan cannot express.
    """
    predicates: list[sa.ColumnElement[bool]] = []
    for name, value in criteria.filters().items():
        factory = plan.filters.get(name)
        if factory is None:
            raise ValidationError(f"{plan.model.__name__} cannot be filtered by {name!r}")
        predicates.append(factory(value))

    return sa.and_(*predicates) if predicates else None


def _capped_roots(
    plan: AggregatePlan[Any], where: sa.ColumnElement[bool] | None, limit: int
) -> sa.ColumnElement[bool]:
    """``root_pk IN (first *limit* matching root ids)``, evaluated before any fan-out."""
    pk = get_primary_key(plan.model)
    query, _ = build_root_select(plan)
    query = query.with_only_columns(pk)
    if where is not None:
        query = query.where(where)

    return pk.in_(query.limit(limit).correlate(None))


class RootQueryExecutor(Generic[T]):
    """Runs the filtered, paginated root query of a plan.

    The statement joins the plan's to-one loads only, so OFFSET/LIMIT are
    pushed down and count roots.
    """

    __slots__ = ("plan",)

    def __init__(self, plan: AggregatePlan[T]) -> None:
        self.plan = plan

    def statement(self, criteria: QueryCriteria) -> sa.Select[Any]:
        """Root statement for *criteria*: present filters AND-combined, then paginated.

        Raises:
            ValidationError: If *criteria* carries a filter the plan cannot express.
        """
        query, _ = build_root_select(self.plan)
        if (where := _where(self.plan, criteria)) is not None:
            query = query.where(where)

        return paginate(query, criteria)

    async def execute(self, context: QueryContext, criteria: QueryCriteria) -> list[RootRecord]:
        statement = self.statement(criteria)
        _, layout = build_root_select(self.plan)
        rows = await _fetch(context, statement)
        logger.debug(
            "Root query on %s returned %d rows", self.plan.model.__name__, len(rows)
        )

        return [layout.root_record(row) for row in rows]


class AssociationBatchLoader:
    """Loads one association for a whole page of roots with a single statement.

    One instance lives for one pipeline run; it keeps no state between calls.
    """

    __slots__ = ("descriptor",)

    def __init__(self, descriptor: AssociationDescriptor) -> None:
        self.descriptor = descriptor

    async def load(
        self, context: QueryContext, root_ids: Iterable[Any]
    ) -> AssociationGroup[Any, ChildRecord]:
        """Fetch the children of every id in *root_ids* at once.

        Exactly one statement is executed, also for an empty id set. Every
        requested id is a key of the returned group, in request order.

        Raises:
            ValidationError: If an id does not have the primary key's type.
        """
        ids = unique_by(root_ids, lambda value: value)
        statement, layout = build_children_select(self.descriptor)
        rows = await _fetch(context, statement, {PARENT_IDS: ids})
        children = [
            child
            for row in rows
            if (child := layout.child_record(row, row[PARENT_ID])) is not None
        ]
        logger.debug(
            "Batch load of %r: %d children for %d parents",
            self.descriptor.path,
            len(children),
            len(ids),
        )

        try:
            return AssociationGroup.group(ids, children, key=lambda child: child.parent_id)
        except ValueError as exc:
            # the store matched an id that differs from the requested one only by type
            raise ValidationError(
                f"Parent ids for {self.descriptor.path!r} must match the type of "
                f"{self.descriptor.parent.__name__}'s primary key: {exc}"
            ) from exc


@dataclass(slots=True, frozen=True)
class JoinFetchResult:
    """Deduplicated roots of a joined statement plus the collected children."""

    roots: tuple[RootRecord, ...]
    associations: frozendict[str, AssociationGroup[Any, ChildRecord]] = field(
        default_factory=frozendict
    )

    def as_load_result(self) -> LoadResult:
        return LoadResult(roots=self.roots, associations=self.associations)


class JoinFetchExecutor(Generic[T]):
    """Loads roots and their associations with one joined statement.

    Args:
        plan: Root plan; its filters and ordering apply.
        joins: Paths to join, defaulting to the plan's ``loads``. At most one
            distinct to-many relation is accepted.
    """

    __slots__ = ("joins", "plan")

    def __init__(self, plan: AggregatePlan[T], joins: Sequence[str] | None = None) -> None:
        self.plan = plan
        self.joins = tuple(plan.loads if joins is None else joins)

    def statement(
        self, criteria: QueryCriteria, *, allow_row_pagination: bool = False
    ) -> sa.Select[Any]:
        """Joined statement for *criteria*.

        Without a to-many join OFFSET/LIMIT apply directly. An unpaginated
        to-many join is capped on roots through a ``root_pk IN (...)``
        subquery, so the store never returns more than the capped roots'
        rows.

        Raises:
            UnsupportedQueryError: For more than one to-many join, or for a
                paginated request over a to-many join unless
                *allow_row_pagination* is set.
        """
        query, layout = build_join_select(self.plan, self.joins)
        if (where := _where(self.plan, criteria)) is not None:
            query = query.where(where)

        if can_pushdown_pagination(has_to_many_join=layout.collection is not None):
            return paginate(query, criteria)

        if criteria.paginated:
            if not allow_row_pagination:
                raise UnsupportedQueryError(
                    "Pagination over a to-many join counts rows, not roots; "
                    "use the batch strategy to paginate",
                    keys=(layout.collection[0],),  # type: ignore[index]
                )
            warnings.warn(
                "Paginating a to-many join applies OFFSET/LIMIT to the fanned-out rows; "
                "fewer roots than requested may be returned",
                RuntimeWarning,
                stacklevel=3,
            )
            return paginate(query, criteria)

        return query.where(_capped_roots(self.plan, where, criteria.effective_limit))

    async def execute(
        self,
        context: QueryContext,
        criteria: QueryCriteria,
        *,
        allow_row_pagination: bool = False,
    ) -> JoinFetchResult:
        statement = self.statement(criteria, allow_row_pagination=allow_row_pagination)
        _, layout = build_join_select(self.plan, self.joins)
        rows = await _fetch(context, statement)

        roots: dict[Any, RootRecord] = {}
        buckets: dict[Any, list[ChildRecord]] = {}
        for row in rows:
            root_id = row[layout.main.prefix + layout.main.pk]
            if root_id not in roots:
                roots[root_id] = layout.root_record(row)
                buckets[root_id] = []

            if layout.collection is not None:
                child = layout.collection[1].child_record(row, root_id)
                if child is not None:
                    buckets[root_id].append(child)

        logger.debug(
            "Join fetch on %s: %d rows deduplicated to %d roots",
            self.plan.model.__name__,
            len(rows),
            len(roots),
        )
        associations: frozendict[str, AssociationGroup[Any, ChildRecord]] = frozendict()
        if layout.collection is not None:
            associations = frozendict({
                layout.collection[0]: AssociationGroup(
                    {root_id: tuple(children) for root_id, children in buckets.items()}
                )
            })

        return JoinFetchResult(roots=tuple(roots.values()), associations=associations)


class NaiveLoader(Generic[T]):
    """Reference N+1 strategy: one lookup per root and association.

    Issues ``1 + N * K`` statements for N roots and K associations. Exists
    to measure the other strategies against; do not use it to serve data.
    """

    __slots__ = ("plan",)

    def __init__(self, plan: AggregatePlan[T]) -> None:
        self.plan = plan

    async def load(self, context: QueryContext, criteria: QueryCriteria) -> LoadResult:
        roots = await RootQueryExecutor(self.plan).execute(context, criteria)
        to_one = self.plan.to_one()
        to_many = self.plan.to_many()
        buckets: dict[str, dict[Any, tuple[ChildRecord, ...]]] = {d.key: {} for d in to_many}
        out: list[RootRecord] = []

        for root in roots:
            refs: dict[str, Any] = {}
            for descriptor in to_one:
                group = await AssociationBatchLoader(descriptor).load(context, [root.id])
                found = group[root.id]
                refs[descriptor.key] = found[0].fields if found else None
                for leaf_path in _leaf_paths(descriptor):
                    refs[f"{descriptor.key}.{leaf_path}"] = found[0].ref(leaf_path) if found else None
            for descriptor in to_many:
                group = await AssociationBatchLoader(descriptor).load(context, [root.id])
                buckets[descriptor.key][root.id] = group[root.id]
            out.append(RootRecord(id=root.id, fields=root.fields, refs=frozendict(refs)))

        return LoadResult(
            roots=tuple(out),
            associations=frozendict(
                {key: AssociationGroup(groups) for key, groups in buckets.items()}
            ),
        )


def _leaf_paths(descriptor: AssociationDescriptor) -> list[str]:
    keys = [hop.key for hop in descriptor.leaves]
    return [".".join(keys[: i + 1]) for i in range(len(keys))]


async def _load_batch(
    context: QueryContext, plan: AggregatePlan[Any], criteria: QueryCriteria
) -> LoadResult:
    roots = await RootQueryExecutor(plan).execute(context, criteria)
    ids = [root.id for root in roots]
    associations: dict[str, AssociationGroup[Any, ChildRecord]] = {}
    for descriptor in plan.to_many():
        associations[descriptor.key] = await AssociationBatchLoader(descriptor).load(context, ids)

    return LoadResult(roots=tuple(roots), associations=frozendict(associations))


async def _load(
    context: QueryContext,
    plan: AggregatePlan[Any],
    criteria: QueryCriteria,
    strategy: Strategy,
) -> LoadResult:
    match strategy:
        case "batch":
            return await _load_batch(context, plan, criteria)
        case "join":
            return (await JoinFetchExecutor(plan).execute(context, criteria)).as_load_result()
        case "naive":
            return await NaiveLoader(plan).load(context, criteria)
        case _:
            raise ValidationError(f"Unknown loading strategy: {strategy!r}")


async def load_aggregates(
    context: QueryContext,
    plan: AggregatePlan[T],
    criteria: QueryCriteria | None = None,
    *,
    strategy: Strategy = DEFAULT_STRATEGY,
    timeout: float | None = None,
) -> LoadResult:
    """Run one loading pipeline and return roots with all their associations.

    Phases run strictly one after another inside *context*. Any failure,
    including *timeout* expiring between phases, aborts the whole run:
    nothing partial is returned.

    Args:
        context: ``AsyncSession`` or ``AsyncConnection`` for this request.
        plan: What to load.
        criteria: Filters and pagination; defaults to the capped full result.
        strategy: ``"batch"``, ``"join"`` or ``"naive"``.
        timeout: Seconds for the whole run.

    Raises:
        QueryError: On store failure or timeout.
        ValidationError: On criteria the plan cannot express.
        UnsupportedQueryError: On join shapes the chosen strategy cannot answer.

    Example::

        result = await load_aggregates(session, plan, QueryCriteria(limit=20))
        items = result.children("order_items", result.roots[0].id)
    """
    criteria = criteria or QueryCriteria()
    if timeout is None:
        return await _load(context, plan, criteria, strategy)

    try:
        with anyio.fail_after(timeout):
            return await _load(context, plan, criteria, strategy)
    except TimeoutError as exc:
        logger.error("Aggregate load of %s timed out after %ss", plan.model.__name__, timeout)
        raise QueryError(f"Aggregate load timed out after {timeout}s") from exc
