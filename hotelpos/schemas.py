# hotelpos/schemas.py
"""Body delle richieste. Accettano sia snake_case sia camelCase (restaurantId, tableId, ...)."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _In(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderLineIn(_In):
    menu_item_id: int
    quantity: int = 1
    special_instructions: Optional[str] = None
    kitchen_type: Optional[str] = None


class CreateOrderIn(_In):
    restaurant_id: int
    table_id: Optional[int] = None
    order_type: str = "dine_in"
    customer_info: Optional[Dict[str, Any]] = None
    items: List[OrderLineIn] = []
    special_instructions: Optional[str] = None
    waiter_id: Optional[int] = None


class RoundIn(_In):
    items: List[OrderLineIn] = []


class ItemStatusIn(_In):
    status: str
    chef_notes: Optional[str] = None


class ReasonIn(_In):
    reason: str = ""


class TransferItemIn(_In):
    to_kitchen_id: int
    reason: Optional[str] = None


class OrderStatusIn(_In):
    status: str
    reason: Optional[str] = None


class AcceptIn(_In):
    estimated_minutes: Optional[int] = None
    notes: Optional[str] = None


class StaffIn(_In):
    user_id: int
    role: str


class BindingIn(_In):
    kitchen_type: str
    kitchen_id: int


class NotificationIn(_In):
    user_ids: List[int]
    title: str
    message: str
    priority: str = "low"
    data: Optional[Dict[str, Any]] = None
    expires_at: Optional[datetime] = None
