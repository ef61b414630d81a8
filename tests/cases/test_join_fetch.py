from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from sqla_batchloads import (
    AggregatePlan,
    JoinFetchExecutor,
    QueryCriteria,
    UnsupportedQueryError,
    criteria,
    load_aggregates,
)
from sqla_batchloads.orders import order_plan

from ..conftest import QueryCounter
from ..models import Base, Post, User

pytestmark = pytest.mark.anyio


class TestJoinFetch:
    async def test_single_query_with_dedup(
        self, session: AsyncSession, seed_data: dict[str, list[Base]], query_counter: QueryCounter
    ) -> None:
        result = await JoinFetchExecutor(AggregatePlan(model=User, loads=("posts",))).execute(
            session, QueryCriteria()
        )

        assert [root.id for root in result.roots] == [1, 2, 3]
        assert [len(result.associations["posts"][i]) for i in (1, 2, 3)] == [3, 3, 0]
        assert query_counter.count == 1

    async def test_same_result_as_batch(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        plan = AggregatePlan(model=User, loads=("posts", "profile"))
        batch = await load_aggregates(session, plan)
        joined = await load_aggregates(session, plan, strategy="join")

        assert joined == batch

    async def test_to_one_only_join_paginates(
        self, session: AsyncSession, seed_data: dict[str, list[Base]], query_counter: QueryCounter
    ) -> None:
        executor = JoinFetchExecutor(AggregatePlan(model=Post, loads=("author",)))
        result = await executor.execute(session, QueryCriteria(offset=2, limit=2))

        assert [root.id for root in result.roots] == [3, 4]
        assert [root.ref("author")["name"] for root in result.roots] == ["alice", "bob"]  # type: ignore[index]
        assert dict(result.associations) == {}
        assert query_counter.count == 1

    async def test_repeated_class_through_alias(
        self, session: AsyncSession, seed_data: dict[str, list[Base]]
    ) -> None:
        executor = JoinFetchExecutor(AggregatePlan(model=Post, loads=("author", "comments.author")))
        result = await executor.execute(session, QueryCriteria())
        post = result.roots[0]
        commenters = [c.ref("author")["name"] for c in result.associations["comments"][post.id]]  # type: ignore[index]

        assert post.ref("author")["name"] == "alice"  # type: ignore[index]
        assert commenters == ["bob", "charlie"]

    async def test_filter_on_plan_reference_with_explicit_paths(
        self, session: AsyncSession, order_data: dict[str, list[Base]]
    ) -> None:
        executor = JoinFetchExecutor(order_plan(), ("order_items.item",))
        result = await executor.execute(session, QueryCriteria(name_contains="userA"))
        lines = result.associations["order_items"][1]

        assert [root.id for root in result.roots] == [1]
        assert result.roots[0].ref("member")["name"] == "userA"  # type: ignore[index]
        assert [line.ref("item")["name"] for line in lines] == ["JPA1 BOOK", "JPA2 BOOK"]  # type: ignore[index]

    async def test_root_cap_keeps_whole_aggregates(
        self,
        session: AsyncSession,
        seed_data: dict[str, list[Base]],
        monkeypatch: pytest.MonkeyPatch,
        query_counter: QueryCounter,
    ) -> None:
        monkeypatch.setattr(criteria, "MAX_ROWS", 1)
        result = await JoinFetchExecutor(AggregatePlan(model=User, loads=("posts",))).execute(
            session, QueryCriteria()
        )

        assert [root.id for root in result.roots] == [1]
        assert len(result.associations["posts"][1]) == 3
        assert query_counter.count == 1


class TestUnsafeJoins:
    async def test_two_to_many_rejected_without_query(
        self, session: AsyncSession, seed_data: dict[str, list[Base]], query_counter: QueryCounter
    ) -> None:
        executor = JoinFetchExecutor(AggregatePlan(model=User), ("posts", "roles"))
        with pytest.raises(UnsupportedQueryError):
            await executor.execute(session, QueryCriteria())

        assert query_counter.count == 0

    async def test_paginated_to_many_rejected_without_query(
        self, session: AsyncSession, seed_data: dict[str, list[Base]], query_counter: QueryCounter
    ) -> None:
        executor = JoinFetchExecutor(AggregatePlan(model=User, loads=("posts",)))
        with pytest.raises(UnsupportedQueryError, match="batch strategy"):
            await executor.execute(session, QueryCriteria(limit=1))

        assert query_counter.count == 0

    async def test_join_strategy_rejects_pagination(
        self, session: AsyncSession, seed_data: dict[str, list[Base]]
    ) -> None:
        plan = AggregatePlan(model=User, loads=("posts",))
        with pytest.raises(UnsupportedQueryError):
            await load_aggregates(session, plan, QueryCriteria(limit=1), strategy="join")


class TestRowPagination:
    """Two roots with three children each, paginated per root and per row."""

    async def test_limit_one(self, session: AsyncSession, seed_data: dict[str, list[Base]]) -> None:
        plan = AggregatePlan(model=User, loads=("posts",))
        criteria = QueryCriteria(limit=1)

        batch = await load_aggregates(session, plan, criteria)
        with pytest.warns(RuntimeWarning):
            joined = await JoinFetchExecutor(plan).execute(
                session, criteria, allow_row_pagination=True
            )

        assert len(batch.roots) == 1
        assert len(batch.children("posts", 1)) == 3
        assert len(joined.roots) == 1
        assert len(joined.associations["posts"][1]) == 1

    async def test_limit_two_returns_fewer_roots(
        self, session: AsyncSession, seed_data: dict[str, list[Base]]
    ) -> None:
        plan = AggregatePlan(model=User, loads=("posts",))
        criteria = QueryCriteria(limit=2)

        batch = await load_aggregates(session, plan, criteria)
        with pytest.warns(RuntimeWarning):
            joined = await JoinFetchExecutor(plan).execute(
                session, criteria, allow_row_pagination=True
            )

        assert [root.id for root in batch.roots] == [1, 2]
        assert [root.id for root in joined.roots] == [1]
        assert len(joined.associations["posts"][1]) == 2
