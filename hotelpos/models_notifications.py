# hotelpos/models_notifications.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON
from sqlmodel import SQLModel, Field

from .models import UTCDateTime, utcnow


class NotificationType(str, Enum):
    new_order = "new-order"
    items_added = "items-added"
    order_update = "order-update"
    order_accepted = "order-accepted"
    order_rejected = "order-rejected"
    order_transfer = "order-transfer"
    system = "system"


class Priority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    type: str = Field(max_length=50, index=True)
    title: str = Field(max_length=255)
    message: str
    data: Optional[dict] = Field(default=None, sa_type=JSON)   # usato dal client per la navigazione
    read: bool = Field(default=False, index=True)
    priority: str = Priority.medium.value
    created_at: datetime = Field(default_factory=utcnow, nullable=False, sa_type=UTCDateTime, index=True)
    read_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    expires_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    # ⚠️ NESSUNA relationship qui: si lavora per user_id
