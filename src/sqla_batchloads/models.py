from __future__ import annotations

import datetime
import enum

import sqlalchemy as sa
from sqlalchemy import orm


class Base(orm.DeclarativeBase):
    pass


class OrderStatus(str, enum.Enum):
    ORDER = "ORDER"
    CANCEL = "CANCEL"


class DeliveryStatus(str, enum.Enum):
    READY = "READY"
    COMP = "COMP"


# Relationships are declared with lazy="raise": the loaders read them only as
# join paths, and touching one on an instance must not issue a query.


class Member(Base):
    __tablename__ = "members"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))
    city: orm.Mapped[str | None] = orm.mapped_column(sa.String(100))
    street: orm.Mapped[str | None] = orm.mapped_column(sa.String(200))
    zipcode: orm.Mapped[str | None] = orm.mapped_column(sa.String(20))

    # relationships
    orders: orm.Mapped[list[Order]] = orm.relationship(back_populates="member", lazy="raise")


class Delivery(Base):
    __tablename__ = "deliveries"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    city: orm.Mapped[str | None] = orm.mapped_column(sa.String(100))
    street: orm.Mapped[str | None] = orm.mapped_column(sa.String(200))
    zipcode: orm.Mapped[str | None] = orm.mapped_column(sa.String(20))
    status: orm.Mapped[DeliveryStatus] = orm.mapped_column(
        sa.Enum(DeliveryStatus, native_enum=False, length=16), default=DeliveryStatus.READY
    )

    # relationships
    order: orm.Mapped[Order | None] = orm.relationship(
        back_populates="delivery", uselist=False, lazy="raise"
    )


class Item(Base):
    __tablename__ = "items"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(200))
    price: orm.Mapped[int] = orm.mapped_column(default=0)
    stock_quantity: orm.Mapped[int] = orm.mapped_column(default=0)


class Order(Base):
    __tablename__ = "orders"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    member_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("members.id"))
    delivery_id: orm.Mapped[int | None] = orm.mapped_column(
        sa.ForeignKey("deliveries.id"), unique=True
    )
    order_date: orm.Mapped[datetime.datetime] = orm.mapped_column(sa.DateTime)
    status: orm.Mapped[OrderStatus] = orm.mapped_column(
        sa.Enum(OrderStatus, native_enum=False, length=16)
    )

    # relationships
    member: orm.Mapped[Member] = orm.relationship(back_populates="orders", lazy="raise")
    delivery: orm.Mapped[Delivery | None] = orm.relationship(back_populates="order", lazy="raise")
    order_items: orm.Mapped[list[OrderItem]] = orm.relationship(
        back_populates="order", lazy="raise"
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    order_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("orders.id"))
    item_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("items.id"))
    order_price: orm.Mapped[int] = orm.mapped_column()
    count: orm.Mapped[int] = orm.mapped_column()

    # relationships
    order: orm.Mapped[Order] = orm.relationship(back_populates="order_items", lazy="raise")
    item: orm.Mapped[Item] = orm.relationship(lazy="raise")
