# hotelpos/events.py
"""
Event bus: decide *chi* riceve ogni evento del ciclo di vita ordine e lo
consegna alle room del ConnectionManager.

Consegna best-effort ai socket connessi, nessuna coda di replay: chi era
offline recupera dalle Notification persistite (sync del client).
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fastapi import WebSocket

from .roles import Capability, Role, can, kitchen_role_for
from .security import Identity
from .ws import (
    ConnectionManager, MANAGER_ROOM, WAITER_ROOM, accessible_rooms, kitchen_room, user_room,
)

log = logging.getLogger(__name__)

# ---- nomi evento (contratto col client) ------------------------------------

NEW_KITCHEN_ORDER = "new-kitchen-order"
ORDER_ITEMS_ADDED = "order-items-added"
ORDER_ITEM_STATUS_UPDATED = "order-item-status-updated"
ORDER_STATUS_UPDATED = "order-status-updated"
KITCHEN_ORDER_ACCEPTED = "kitchen-order-accepted"
KITCHEN_ORDER_REJECTED = "kitchen-order-rejected"
ORDER_TRANSFERRED = "order-transferred"
TABLE_STATUS_UPDATED = "table_status_updated"
NOTIFICATION = "notification"

ROOMS_JOINED = "rooms-joined"


@dataclass
class Event:
    name: str
    data: Dict[str, Any]
    rooms: Tuple[str, ...] = ()
    broadcast: bool = False
    order_id: Optional[int] = None


@dataclass
class Outcome:
    """Risultato di un'operazione: payload per la risposta + eventi da emettere dopo il commit."""
    data: Any = None
    events: List[Event] = field(default_factory=list)


# ---- targeting -------------------------------------------------------------

def kitchen_event(name: str, kitchen_type: str, data: dict, order_id: int) -> Event:
    # solo la room della cucina destinataria, mai broadcast a tutte le cucine
    return Event(name, data, rooms=(kitchen_room(kitchen_role_for(kitchen_type).value),), order_id=order_id)


def waiter_and_managers_event(
    name: str, waiter_id: Optional[int], data: dict, order_id: int, kitchen_types: Sequence[str] = (),
) -> Event:
    rooms = [MANAGER_ROOM]
    if waiter_id is not None:
        rooms.insert(0, user_room(waiter_id))
    # cancellazioni: anche la cucina coinvolta deve togliere l'item dalla coda
    for kt in kitchen_types:
        room = kitchen_room(kitchen_role_for(kt).value)
        if room not in rooms:
            rooms.append(room)
    return Event(name, data, rooms=tuple(rooms), order_id=order_id)


def waiter_only_event(name: str, waiter_id: Optional[int], data: dict, order_id: int) -> Event:
    rooms = (user_room(waiter_id),) if waiter_id is not None else ()
    return Event(name, data, rooms=rooms, order_id=order_id)


def transfer_event(from_type: str, to_type: str, waiter_id: Optional[int], data: dict, order_id: int) -> Event:
    rooms = [kitchen_room(kitchen_role_for(from_type).value)]
    to_room = kitchen_room(kitchen_role_for(to_type).value)
    if to_room not in rooms:
        rooms.append(to_room)
    if waiter_id is not None:
        rooms.append(user_room(waiter_id))
    return Event(ORDER_TRANSFERRED, data, rooms=tuple(rooms), order_id=order_id)


def table_event(data: dict) -> Event:
    # lo stato tavolo è visibile a tutti, a differenza del dettaglio ordine
    return Event(TABLE_STATUS_UPDATED, data, broadcast=True)


class EventBus:
    def __init__(self, manager: ConnectionManager):
        self.manager = manager

    async def publish(self, events: Sequence[Event]):
        # ordine di emissione = ordine di commit (il chiamante tiene il lock per ordine)
        for ev in events:
            if ev.broadcast:
                await self.manager.broadcast_json(ev.name, ev.data)
            elif ev.rooms:
                await self.manager.emit(ev.rooms, ev.name, ev.data)
            else:
                log.debug("Event %s has no target, skipped", ev.name)


# ---- messaggi dal client ---------------------------------------------------

def rooms_for_join(identity: Optional[Identity], event: str, payload: Any) -> List[str]:
    """Room concesse per una richiesta di join; lista vuota = richiesta rifiutata."""
    if identity is None:
        return []
    if event == "join-user-room":
        try:
            requested = int(payload)
        except (TypeError, ValueError):
            return []
        return [user_room(identity.user_id)] if requested == identity.user_id else []
    if event == "join-kitchen-room":
        role = str(payload or "").strip().lower()
        if role not in (Role.chef.value, Role.bartender.value):
            return []
        if identity.role.value == role or can(identity.role, Capability.join_all_rooms):
            return [kitchen_room(role)]
        return []
    if event == "join-waiter-room":
        if identity.role == Role.waiter or can(identity.role, Capability.join_all_rooms):
            return [WAITER_ROOM]
        return []
    if event == "join-manager-room":
        return [MANAGER_ROOM] if can(identity.role, Capability.join_all_rooms) else []
    if event == "join-all-accessible-rooms":
        return accessible_rooms(identity)
    return []


async def handle_client_message(manager: ConnectionManager, websocket: WebSocket, raw: str):
    """Messaggi malformati o non autorizzati: log e drop (nessun canale di errore)."""
    try:
        msg = json.loads(raw)
        event = msg["event"]
        payload = msg.get("data")
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        log.warning("Malformed socket message dropped: %r (%s)", raw[:200], e)
        return

    identity = manager.identities.get(websocket)
    granted = rooms_for_join(identity, event, payload)
    if not granted:
        log.warning("Socket event %r from %s dropped", event, identity or "anonymous")
        return
    for room in granted:
        manager.join(websocket, room)
    await manager.send_to(websocket, ROOMS_JOINED, {"rooms": manager.rooms_of(websocket)})
