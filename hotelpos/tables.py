# hotelpos/tables.py
"""
Stato derivato del tavolo (available / occupied / reserved).

Un'unica derivazione canonica, usata sia dall'endpoint di stato sia dal
servizio ordini per decidere quando emettere table_status_updated.
"""
from __future__ import annotations

from datetime import date
from typing import Optional

from sqlmodel import Session, select

from .errors import NotFoundError
from .models import Order, RestaurantTable, TableReservation, utcnow
from .orders.state import OPEN_ORDER

AVAILABLE = "available"
OCCUPIED = "occupied"
RESERVED = "reserved"


def get_table(session: Session, table_id: int, for_update: bool = False) -> RestaurantTable:
    if for_update:
        # riga tavolo FOR UPDATE: serializza "tavolo libero? -> nuovo ordine" tra processi
        t = session.exec(
            select(RestaurantTable)
            .where(RestaurantTable.id == table_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
    else:
        t = session.get(RestaurantTable, table_id)
    if not t or not t.is_active:
        raise NotFoundError(f"Table {table_id} not found", code="TABLE_NOT_FOUND")
    return t


def open_order_for_table(session: Session, table_id: int) -> Optional[Order]:
    stmt = select(Order).where(Order.table_id == table_id, Order.status.in_(OPEN_ORDER))
    return session.exec(stmt.order_by(Order.id)).first()


def table_status(session: Session, table_id: int, today: Optional[date] = None) -> str:
    today = today or utcnow().date()
    statuses = set(session.exec(
        select(TableReservation.status).where(
            TableReservation.table_id == table_id,
            TableReservation.reservation_date == today,
        )
    ).all())
    if "seated" in statuses or open_order_for_table(session, table_id):
        return OCCUPIED
    if "confirmed" in statuses:
        return RESERVED
    return AVAILABLE


def table_payload(session: Session, table: RestaurantTable, status: Optional[str] = None) -> dict:
    return {
        "table_id": table.id,
        "restaurant_id": table.restaurant_id,
        "table_number": table.table_number,
        "status": status or table_status(session, table.id),
    }
