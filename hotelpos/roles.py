# hotelpos/roles.py
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet


class Role(str, Enum):
    admin = "admin"
    manager = "manager"
    waiter = "waiter"
    chef = "chef"
    bartender = "bartender"
    customer = "customer"


class Capability(str, Enum):
    submit_order = "submit_order"
    update_item_status = "update_item_status"
    kitchen_ack = "kitchen_ack"             # accept / reject / transfer
    cancel_item = "cancel_item"
    close_order = "close_order"             # served / paid / cancel ordine
    manage_staff = "manage_staff"
    send_notification = "send_notification"
    view_all_orders = "view_all_orders"
    join_all_rooms = "join_all_rooms"
    purge_notifications = "purge_notifications"


_SUPERVISORS = frozenset({Role.manager, Role.admin})
_KITCHEN = frozenset({Role.chef, Role.bartender})

CAPABILITIES: Dict[Capability, FrozenSet[Role]] = {
    Capability.submit_order: _SUPERVISORS | {Role.waiter, Role.customer},
    Capability.update_item_status: _SUPERVISORS | _KITCHEN,
    Capability.kitchen_ack: _SUPERVISORS | _KITCHEN,
    Capability.cancel_item: _SUPERVISORS | {Role.waiter},
    Capability.close_order: _SUPERVISORS | {Role.waiter},
    Capability.manage_staff: _SUPERVISORS,
    Capability.send_notification: _SUPERVISORS,
    Capability.view_all_orders: _SUPERVISORS,
    Capability.join_all_rooms: _SUPERVISORS,
    Capability.purge_notifications: frozenset({Role.admin}),
}

# ruolo cucina -> tipo di cucina servita
KITCHEN_ROLE_FOR_TYPE = {"restaurant": Role.chef, "bar": Role.bartender}


def parse_role(value: str) -> Role:
    """Ruolo sconosciuto -> ValueError (il chiamante decide come tradurlo)."""
    return Role((value or "").strip().lower())


def can(role: Role, capability: Capability) -> bool:
    return role in CAPABILITIES[capability]


def is_supervisor(role: Role) -> bool:
    return role in _SUPERVISORS


def kitchen_role_for(kitchen_type: str) -> Role:
    return KITCHEN_ROLE_FOR_TYPE[kitchen_type]
