# hotelpos/models.py
from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, UniqueConstraint
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    # naive UTC: SQLite non conserva il tzinfo
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UTCDateTime(TypeDecorator):
    """DateTime salvato naive in UTC; un valore aware viene prima portato in UTC."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value


class KitchenType(str, Enum):
    restaurant = "restaurant"
    bar = "bar"


class OrderType(str, Enum):
    dine_in = "dine_in"
    takeaway = "takeaway"
    room_service = "room_service"
    bar = "bar"


class OrderStatus(str, Enum):
    pending = "pending"
    preparing = "preparing"
    ready = "ready"
    served = "served"
    paid = "paid"
    cancelled = "cancelled"


class ItemStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    preparing = "preparing"
    ready = "ready"
    served = "served"
    cancelled = "cancelled"
    rejected = "rejected"


class TicketStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    first_name: str
    last_name: str = ""
    role: str = Field(index=True)
    is_active: bool = True


class Restaurant(SQLModel, table=True):
    """Ristorante o bar; è una cucina quando has_kitchen=True."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    prefix: str                       # es. "C" -> ritiro "C-12"
    restaurant_type: str = KitchenType.restaurant.value
    has_kitchen: bool = True
    is_active: bool = True
    next_seq: int = 1


class RestaurantStaff(SQLModel, table=True):
    __tablename__ = "restaurant_staff"
    __table_args__ = (UniqueConstraint("restaurant_id", "user_id", "role"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    restaurant_id: int = Field(foreign_key="restaurant.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    role: str                         # chef | bartender | manager | waiter
    is_active: bool = True


class KitchenBinding(SQLModel, table=True):
    __tablename__ = "kitchen_binding"
    __table_args__ = (UniqueConstraint("restaurant_id", "kitchen_type"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    restaurant_id: int = Field(foreign_key="restaurant.id", index=True)
    kitchen_type: str
    kitchen_id: int = Field(foreign_key="restaurant.id")


class RestaurantTable(SQLModel, table=True):
    __tablename__ = "restaurant_table"
    __table_args__ = (UniqueConstraint("restaurant_id", "table_number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    restaurant_id: int = Field(foreign_key="restaurant.id", index=True)
    table_number: str
    is_active: bool = True


class TableReservation(SQLModel, table=True):
    __tablename__ = "table_reservation"
    id: Optional[int] = Field(default=None, primary_key=True)
    table_id: int = Field(foreign_key="restaurant_table.id", index=True)
    reservation_date: date
    status: str = "confirmed"         # confirmed | seated | completed | cancelled


class MenuCategory(SQLModel, table=True):
    __tablename__ = "menu_category"
    id: Optional[int] = Field(default=None, primary_key=True)
    restaurant_id: int = Field(foreign_key="restaurant.id")
    name: str
    kitchen_type: str = KitchenType.restaurant.value


class MenuItem(SQLModel, table=True):
    __tablename__ = "menu_item"
    id: Optional[int] = Field(default=None, primary_key=True)
    category_id: Optional[int] = Field(default=None, foreign_key="menu_category.id")
    name: str
    price_cents: int = 0
    is_available: bool = True


class Order(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    order_number: str = Field(default="", index=True)
    restaurant_id: int = Field(foreign_key="restaurant.id")
    table_id: Optional[int] = Field(default=None, foreign_key="restaurant_table.id", index=True)
    user_id: int = Field(foreign_key="user.id")
    waiter_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    customer_info: Optional[dict] = Field(default=None, sa_type=JSON)
    order_type: str = OrderType.dine_in.value
    status: str = Field(default=OrderStatus.pending.value, index=True)
    total_cents: int = Field(default=0, nullable=False)
    tax_cents: int = Field(default=0, nullable=False)
    special_instructions: Optional[str] = None
    placed_at: datetime = Field(default_factory=utcnow, nullable=False, sa_type=UTCDateTime)
    ready_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    served_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    paid_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False, sa_type=UTCDateTime)


class OrderItem(SQLModel, table=True):
    __tablename__ = "order_item"
    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    menu_item_id: int = Field(foreign_key="menu_item.id")
    round_no: int = 1
    quantity: int = 1
    unit_price_cents: int = 0
    total_price_cents: int = 0
    status: str = Field(default=ItemStatus.pending.value, index=True)
    # derivato una volta sola dalla categoria; cambia solo con un transfer esplicito
    target_kitchen_id: int = Field(foreign_key="restaurant.id", index=True)
    special_instructions: Optional[str] = None
    chef_notes: Optional[str] = None
    started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    served_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    cancelled_by: Optional[int] = Field(default=None, foreign_key="user.id")
    cancellation_reason: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow, nullable=False, sa_type=UTCDateTime)


class KitchenTicket(SQLModel, table=True):
    """Presa in carico di un ordine da parte di una cucina (una per coppia ordine/cucina)."""
    __tablename__ = "kitchen_ticket"
    __table_args__ = (UniqueConstraint("order_id", "kitchen_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    kitchen_id: int = Field(foreign_key="restaurant.id", index=True)
    pickup_seq: int
    status: str = TicketStatus.pending.value
    estimated_minutes: Optional[int] = None
    notes: Optional[str] = None
    accepted_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    rejected_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class OrderKitchenLog(SQLModel, table=True):
    __tablename__ = "order_kitchen_log"
    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    kitchen_id: int = Field(foreign_key="restaurant.id", index=True)
    action: str                       # assigned | accepted | rejected | transferred
    performed_by: int = Field(foreign_key="user.id")
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, nullable=False, sa_type=UTCDateTime)
