# hotelpos/staff.py
"""Assegnazioni staff <-> cucina (RestaurantStaff): chi riceve le notifiche di una cucina."""
from __future__ import annotations

import logging
from typing import List

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .errors import NotFoundError, ValidationError
from .models import Restaurant, RestaurantStaff, User
from .roles import Role

log = logging.getLogger(__name__)

STAFF_ROLES = {Role.chef.value, Role.bartender.value, Role.manager.value, Role.waiter.value}


def _staff_row(session: Session, kitchen_id: int, user_id: int, role: str):
    return session.exec(
        select(RestaurantStaff).where(
            RestaurantStaff.restaurant_id == kitchen_id,
            RestaurantStaff.user_id == user_id,
            RestaurantStaff.role == role,
        )
    ).first()


def assign_staff(session: Session, kitchen_id: int, user_id: int, role: str) -> RestaurantStaff:
    role = (role or "").strip().lower()
    if role not in STAFF_ROLES:
        raise ValidationError(f"Staff role must be one of {sorted(STAFF_ROLES)}")
    if not session.get(Restaurant, kitchen_id):
        raise NotFoundError(f"Restaurant {kitchen_id} not found", code="RESTAURANT_NOT_FOUND")
    if not session.get(User, user_id):
        raise NotFoundError(f"User {user_id} not found", code="USER_NOT_FOUND")

    row = RestaurantStaff(restaurant_id=kitchen_id, user_id=user_id, role=role)
    session.add(row)
    try:
        session.commit()
        log.info("Staff %s assigned to %s as %s", user_id, kitchen_id, role)
        return row
    except IntegrityError:
        # già presente (anche in parallelo): riattiva
        session.rollback()
    row = _staff_row(session, kitchen_id, user_id, role)
    if not row.is_active:
        row.is_active = True
        session.add(row)
        session.commit()
    return row


def remove_staff(session: Session, kitchen_id: int, user_id: int, role: str) -> RestaurantStaff:
    row = _staff_row(session, kitchen_id, user_id, (role or "").strip().lower())
    if not row:
        raise NotFoundError(f"User {user_id} is not assigned to {kitchen_id} as {role}", code="STAFF_NOT_FOUND")
    # disattivazione, non delete: resta lo storico
    row.is_active = False
    session.add(row)
    session.commit()
    return row


def list_staff(session: Session, kitchen_id: int, include_inactive: bool = False) -> List[dict]:
    stmt = (
        select(RestaurantStaff, User)
        .join(User, User.id == RestaurantStaff.user_id)
        .where(RestaurantStaff.restaurant_id == kitchen_id)
    )
    if not include_inactive:
        stmt = stmt.where(RestaurantStaff.is_active == True)  # noqa: E712
    return [
        {
            "user_id": u.id,
            "name": f"{u.first_name} {u.last_name}".strip(),
            "role": s.role,
            "is_active": s.is_active,
        }
        for s, u in session.exec(stmt.order_by(RestaurantStaff.role, User.first_name)).all()
    ]
