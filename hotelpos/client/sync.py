# hotelpos/client/sync.py
"""
Client di sincronizzazione notifiche (lato dashboard).

- connect(): rientra nelle room (non sopravvivono alla riconnessione) e fa un sync pass;
- switch_view(): cambio vista/ruolo (es. manager da /waiter a /kitchen) = join + sync;
- mark_read / delete / clear_all: ottimistici, rollback se il server fallisce;
- un sync fallito si logga e basta: ci riprova il pass successivo.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from ..config import NotificationsConfig
from ..models import utcnow
from .events import parse_event
from .state import (
    Action, ClearAll, ClearAllFailed, Delete, DeleteFailed, LiveEvent, MarkRead, MarkReadFailed,
    NotificationState, ReducerConfig, SyncResult, Tick, reduce,
)

log = logging.getLogger(__name__)

API = "/api/v1/notifications"

# vista -> messaggi di join
VIEW_JOINS: Dict[str, List[Dict[str, Any]]] = {
    "waiter": [{"event": "join-waiter-room"}],
    "kitchen:chef": [{"event": "join-kitchen-room", "data": "chef"}],
    "kitchen:bartender": [{"event": "join-kitchen-room", "data": "bartender"}],
    "kitchen": [
        {"event": "join-kitchen-room", "data": "chef"},
        {"event": "join-kitchen-room", "data": "bartender"},
    ],
    "manager": [{"event": "join-manager-room"}],
}


class SyncError(Exception):
    pass


class NotificationSyncClient:
    def __init__(
        self,
        http: httpx.Client,
        token: str,
        user_id: int,
        send: Optional[Callable[[Dict[str, Any]], None]] = None,
        cfg: Optional[ReducerConfig] = None,
        page_size: int = 50,
        clock: Callable = utcnow,
        settings: Optional[NotificationsConfig] = None,
    ):
        self.http = http
        self.headers = {"Authorization": f"Bearer {token}"}
        self.user_id = user_id
        self.send = send or (lambda msg: None)
        if cfg is None:
            cfg = ReducerConfig.from_config(settings) if settings else ReducerConfig()
        self.cfg = cfg
        # la pagina non supera il clamp del server
        self.page_size = min(page_size, settings.max_page_size) if settings else page_size
        self.clock = clock
        self.state = NotificationState()
        self.view: Optional[str] = None

    # --- stato ------------------------------------------------------------------

    def dispatch(self, action: Action) -> NotificationState:
        self.state = reduce(self.state, action, self.cfg)
        return self.state

    def on_message(self, raw) -> None:
        ev = parse_event(raw)
        if ev is not None:
            self.dispatch(LiveEvent(ev, received_at=self.clock()))

    def tick(self) -> None:
        self.dispatch(Tick(self.clock()))

    # --- room + sync --------------------------------------------------------------

    def join_messages(self, view: Optional[str]) -> List[Dict[str, Any]]:
        msgs = [{"event": "join-user-room", "data": self.user_id}]
        if view is None:
            msgs.append({"event": "join-all-accessible-rooms"})
        else:
            msgs.extend(VIEW_JOINS.get(view, []))
        return msgs

    def connect(self, view: Optional[str] = None) -> bool:
        self.view = view
        for msg in self.join_messages(view):
            self.send(msg)
        return self.sync()

    def switch_view(self, view: str) -> bool:
        if view not in VIEW_JOINS:
            raise ValueError(f"Unknown view '{view}'")
        self.view = view
        for msg in VIEW_JOINS[view]:
            self.send(msg)
        return self.sync()

    def _call(self, method: str, url: str, **kwargs) -> Any:
        try:
            resp = self.http.request(method, url, headers=self.headers, **kwargs)
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SyncError(f"{method} {url}: {e}") from e
        if not isinstance(body, dict):
            raise SyncError(f"{method} {url}: unexpected response body")
        if resp.status_code >= 400 or not body.get("success"):
            err = body.get("error") or {}
            raise SyncError(f"{method} {url}: {resp.status_code} {err.get('code')} {err.get('message')}")
        return body.get("data")

    def sync(self) -> bool:
        fetched_at = self.clock()
        try:
            data = self._call("GET", API, params={"limit": self.page_size})
            rows = tuple(data["notifications"])
        except (SyncError, KeyError, TypeError) as e:
            log.warning("Notification sync failed, retrying on next pass: %s", e)
            return False
        self.dispatch(SyncResult(
            rows=rows,
            fetched_at=fetched_at,
            unread_count=data.get("unread_count"),
            complete=len(rows) < self.page_size,
        ))
        return True

    # --- mutazioni ottimistiche -------------------------------------------------

    def mark_read(self, key: str) -> bool:
        previous = self.state.get(key)
        if previous is None or previous.read:
            return True
        self.dispatch(MarkRead(key, at=self.clock()))
        if previous.transient:
            return True
        try:
            self._call("PATCH", f"{API}/{previous.id}/read")
        except SyncError as e:
            log.warning("mark_read %s failed, rolling back: %s", key, e)
            self.dispatch(MarkReadFailed(previous))
            return False
        return True

    def delete(self, key: str) -> bool:
        previous = self.state.get(key)
        if previous is None:
            return True
        self.dispatch(Delete(key))
        if previous.transient:
            return True
        try:
            self._call("DELETE", f"{API}/{previous.id}")
        except SyncError as e:
            log.warning("delete %s failed, rolling back: %s", key, e)
            self.dispatch(DeleteFailed(previous))
            return False
        return True

    def clear_all(self) -> bool:
        previous = self.state
        self.dispatch(ClearAll())
        try:
            self._call("DELETE", API)
        except SyncError as e:
            log.warning("clear_all failed, rolling back: %s", e)
            self.dispatch(ClearAllFailed(previous))
            return False
        return True
