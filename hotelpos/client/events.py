# hotelpos/client/events.py
"""
Eventi in arrivo dal socket, tipizzati.

Ogni messaggio `{"event": name, "data": {...}}` diventa una variante di
IncomingEvent; nomi sconosciuti o payload malformati -> None (log e drop).
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union

from .. import events as names

log = logging.getLogger(__name__)

ORDER_EVENTS = frozenset({
    names.NEW_KITCHEN_ORDER,
    names.ORDER_ITEMS_ADDED,
    names.ORDER_ITEM_STATUS_UPDATED,
    names.ORDER_STATUS_UPDATED,
    names.KITCHEN_ORDER_ACCEPTED,
    names.KITCHEN_ORDER_REJECTED,
    names.ORDER_TRANSFERRED,
})


def parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    # confronti sempre in UTC naive, come lato server
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


@dataclass(frozen=True)
class Notice:
    """Testo della notifica che accompagna un evento live (gemello della riga persistita)."""
    type: str
    title: str
    message: str
    priority: str = "medium"


@dataclass(frozen=True)
class OrderEvent:
    name: str
    order_id: int
    data: Dict[str, Any] = field(default_factory=dict)
    notice: Optional[Notice] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class NotificationPushed:
    """Riga completa spinta dal server (notifiche di sistema)."""
    row: Dict[str, Any]


@dataclass(frozen=True)
class TableStatusChanged:
    table_id: int
    status: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RoomsJoined:
    rooms: Tuple[str, ...]


IncomingEvent = Union[OrderEvent, NotificationPushed, TableStatusChanged, RoomsJoined]


def _notice(data: Dict[str, Any]) -> Optional[Notice]:
    raw = data.get("notification")
    if not isinstance(raw, dict):
        return None
    return Notice(
        type=str(raw["type"]),
        title=str(raw.get("title", "")),
        message=str(raw["message"]),
        priority=str(raw.get("priority", "medium")),
    )


def parse_event(message: Union[str, bytes, Dict[str, Any]]) -> Optional[IncomingEvent]:
    try:
        msg = json.loads(message) if isinstance(message, (str, bytes)) else message
        name = msg["event"]
        data = msg.get("data") or {}
        if not isinstance(data, dict):
            raise TypeError("data must be an object")

        if name in ORDER_EVENTS:
            return OrderEvent(
                name=name,
                order_id=int(data["order_id"]),
                data=data,
                notice=_notice(data),
                timestamp=parse_ts(data.get("timestamp")),
            )
        if name == names.NOTIFICATION:
            if "id" not in data or "message" not in data:
                raise KeyError("id")
            return NotificationPushed(row=data)
        if name == names.TABLE_STATUS_UPDATED:
            return TableStatusChanged(table_id=int(data["table_id"]), status=str(data["status"]), data=data)
        if name == names.ROOMS_JOINED:
            return RoomsJoined(rooms=tuple(data.get("rooms") or ()))
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        log.warning("Dropping malformed socket message: %s", e)
        return None

    log.info("Dropping unknown socket event %r", name)
    return None
