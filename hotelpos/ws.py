# hotelpos/ws.py
import json
import logging
from typing import Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

from .roles import Role, is_supervisor
from .security import Identity

log = logging.getLogger(__name__)

# ---- nomi delle room -------------------------------------------------------

WAITER_ROOM = "waiter"
MANAGER_ROOM = "manager"


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def kitchen_room(role: str) -> str:
    return f"kitchen:{role}"


ROLE_ROOMS = (kitchen_room(Role.chef.value), kitchen_room(Role.bartender.value), WAITER_ROOM, MANAGER_ROOM)


def accessible_rooms(identity: Identity) -> List[str]:
    """Room in cui un'identità può entrare (oltre a user:{id})."""
    rooms = [user_room(identity.user_id)]
    if is_supervisor(identity.role):
        rooms.extend(ROLE_ROOMS)
    elif identity.role in (Role.chef, Role.bartender):
        rooms.append(kitchen_room(identity.role.value))
    elif identity.role == Role.waiter:
        rooms.append(WAITER_ROOM)
    return rooms


class ConnectionManager:
    def __init__(self) -> None:
        self.active_connections: Set[WebSocket] = set()
        self.rooms: Dict[str, Set[WebSocket]] = {}
        self.identities: Dict[WebSocket, Optional[Identity]] = {}

    async def connect(self, websocket: WebSocket, identity: Optional[Identity] = None):
        await websocket.accept()
        self.active_connections.add(websocket)
        self.identities[websocket] = identity

    def disconnect(self, websocket: WebSocket):
        # le room non sopravvivono alla riconnessione: il client deve rientrare
        self.active_connections.discard(websocket)
        self.identities.pop(websocket, None)
        for name in list(self.rooms):
            members = self.rooms[name]
            members.discard(websocket)
            if not members:
                del self.rooms[name]

    def join(self, websocket: WebSocket, room: str):
        self.rooms.setdefault(room, set()).add(websocket)

    def rooms_of(self, websocket: WebSocket) -> List[str]:
        return sorted(name for name, members in self.rooms.items() if websocket in members)

    async def _send(self, sockets: Iterable[WebSocket], message: str):
        """Invia testo ai socket indicati; rimuove quelli morti."""
        dead = []
        for ws in list(sockets):
            try:
                await ws.send_text(message)
            except Exception as e:
                log.debug("Dropping dead socket: %r", e)
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)

    async def emit(self, rooms: Iterable[str], event: str, data: dict):
        """Un socket presente in più room riceve una sola copia."""
        targets: Set[WebSocket] = set()
        for room in rooms:
            targets |= self.rooms.get(room, set())
        if targets:
            await self._send(targets, json.dumps({"event": event, "data": data}))

    async def send_to(self, websocket: WebSocket, event: str, data: dict):
        await self._send([websocket], json.dumps({"event": event, "data": data}))

    async def broadcast_text(self, message: str):
        """Invia testo a tutti i client connessi; rimuove quelli morti."""
        await self._send(self.active_connections, message)

    async def broadcast_json(self, event: str, data: dict):
        """Invia JSON a tutti i client connessi."""
        await self.broadcast_text(json.dumps({"event": event, "data": data}))
