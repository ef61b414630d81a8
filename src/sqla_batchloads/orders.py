"""Order aggregate: orders with their member, delivery and order lines.

The entry points here are what a request handler calls. Each takes the
request's ``AsyncSession`` (or ``AsyncConnection``) and returns plain value
objects with no tie to the session.
"""

from __future__ import annotations

import datetime
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Final

import sqlalchemy as sa

from .criteria import QueryCriteria
from .datastructures import AssociationGroup, frozendict
from .descriptors import AggregatePlan
from .errors import ValidationError
from .loaders import (
    DEFAULT_STRATEGY,
    AssociationBatchLoader,
    JoinFetchExecutor,
    JoinFetchResult,
    QueryContext,
    RootQueryExecutor,
    Strategy,
    load_aggregates,
)
from .models import Member, Order, OrderStatus
from .node import Node
from .projection import Children, Projector
from .records import ChildRecord, Fields, RootRecord


ORDER_LOADS: Final[tuple[str, ...]] = ("member", "delivery", "order_items.item")
SIMPLE_ORDER_LOADS: Final[tuple[str, ...]] = ("member", "delivery")


def _status_is(value: Any) -> sa.ColumnElement[bool]:
    try:
        status = value if isinstance(value, OrderStatus) else OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown order status: {value!r}") from None

    return Order.status == status


def _member_name_contains(value: str) -> sa.ColumnElement[bool]:
    return Member.name.contains(value, autoescape=True)


ORDER_FILTERS: Final[frozendict[str, Any]] = frozendict(
    status=_status_is,
    name_contains=_member_name_contains,
)


def order_plan(loads: Sequence[str] = ORDER_LOADS, node: Node | None = None) -> AggregatePlan[Order]:
    """Plan for order roots; the member is always joined, the name filter needs it."""
    return AggregatePlan(
        model=Order,
        loads=tuple(loads) if "member" in loads else ("member", *loads),
        filters=ORDER_FILTERS,
        node=node or Node(),
    )


@dataclass(slots=True, frozen=True)
class Address:
    city: str | None
    street: str | None
    zipcode: str | None

    @classmethod
    def from_fields(cls, fields: Fields | None) -> Address | None:
        if fields is None:
            return None

        return cls(city=fields["city"], street=fields["street"], zipcode=fields["zipcode"])


@dataclass(slots=True, frozen=True)
class OrderItemView:
    item_name: str | None
    price: int
    quantity: int

    def as_dict(self) -> dict[str, Any]:
        return {"item_name": self.item_name, "price": self.price, "quantity": self.quantity}


@dataclass(slots=True, frozen=True)
class OrderView:
    """Response shape of one order."""

    id: int
    name: str | None
    date: datetime.datetime
    status: OrderStatus
    address: Address | None
    items: tuple[OrderItemView, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "date": self.date,
            "status": self.status,
            "address": (
                None
                if self.address is None
                else {
                    "city": self.address.city,
                    "street": self.address.street,
                    "zipcode": self.address.zipcode,
                }
            ),
            "items": [item.as_dict() for item in self.items],
        }


def project_order_item(child: ChildRecord) -> OrderItemView:
    item = child.ref("item")
    return OrderItemView(
        item_name=None if item is None else item["name"],
        price=child.fields["order_price"],
        quantity=child.fields["count"],
    )


def project_order(root: RootRecord, children: Children) -> OrderView:
    member = root.ref("member")
    return OrderView(
        id=root.id,
        name=None if member is None else member["name"],
        date=root.fields["order_date"],
        status=root.fields["status"],
        address=Address.from_fields(root.ref("delivery")),
        items=tuple(project_order_item(child) for child in children.get("order_items", ())),
    )


order_projector: Final[Projector[OrderView]] = Projector(project_order)


async def find_orders(
    context: QueryContext,
    criteria: QueryCriteria | None = None,
) -> list[RootRecord]:
    """Orders matching *criteria*, member and delivery already joined."""
    return await RootQueryExecutor(order_plan(SIMPLE_ORDER_LOADS)).execute(
        context, criteria or QueryCriteria()
    )


async def load_order_items(
    context: QueryContext,
    order_ids: Iterable[int],
) -> AssociationGroup[Any, ChildRecord]:
    """Order lines with their item for every id in *order_ids*, in one query."""
    descriptor = order_plan(("order_items.item",)).to_many()[0]
    return await AssociationBatchLoader(descriptor).load(context, order_ids)


async def find_orders_with_join(
    context: QueryContext,
    criteria: QueryCriteria | None = None,
    joins: Sequence[str] = ORDER_LOADS,
    *,
    allow_row_pagination: bool = False,
) -> JoinFetchResult:
    """Orders and the requested *joins* in a single statement.

    Raises:
        UnsupportedQueryError: For two to-many joins, or for pagination with
            a to-many join unless *allow_row_pagination* is set.
    """
    return await JoinFetchExecutor(order_plan(), joins).execute(
        context, criteria or QueryCriteria(), allow_row_pagination=allow_row_pagination
    )


async def find_order_views(
    context: QueryContext,
    criteria: QueryCriteria | None = None,
    *,
    strategy: Strategy = DEFAULT_STRATEGY,
    timeout: float | None = None,
) -> list[OrderView]:
    """Orders with their lines, projected; two queries with the default strategy."""
    result = await load_aggregates(
        context, order_plan(), criteria, strategy=strategy, timeout=timeout
    )
    return order_projector.project_result(result)


async def find_simple_order_views(
    context: QueryContext,
    criteria: QueryCriteria | None = None,
) -> list[OrderView]:
    """Orders with member name and address only, in a single query."""
    roots = await find_orders(context, criteria)
    return order_projector.project(roots)
