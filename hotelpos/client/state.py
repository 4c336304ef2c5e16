# hotelpos/client/state.py
"""
Stato client delle notifiche + reducer puro.

Il server è la fonte di verità: lo stato locale è uno specchio riconciliato
a ogni sync. Regole:
  - duplicato = stesso id, oppure stesso type+message con timestamp entro la
    finestra di dedupe (evento live + gemello persistito arrivati separatamente);
  - sul flag `read` vince sempre il server;
  - le voci transitorie (senza id) vengono sostituite dalla riga server gemella;
  - ordine: più recenti prima, si tengono le ultime `keep_last`;
  - toast: unseen -> displayed -> read | dismissed; auto-dismiss dopo toast_ms;
    chiudere un toast NON marca come letto.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..config import NotificationsConfig
from .events import IncomingEvent, NotificationPushed, OrderEvent, parse_ts


class ToastPhase(str, Enum):
    unseen = "unseen"
    displayed = "displayed"
    read = "read"
    dismissed = "dismissed"


@dataclass(frozen=True)
class ReducerConfig:
    dedupe_window_ms: int = 1000
    toast_ms: int = 5000
    keep_last: int = 50

    @classmethod
    def from_config(cls, cfg: NotificationsConfig) -> "ReducerConfig":
        return cls(dedupe_window_ms=cfg.dedupe_window_ms, toast_ms=cfg.toast_ms, keep_last=cfg.keep_last)


@dataclass(frozen=True)
class ClientNotification:
    key: str                           # "srv-<id>" oppure "local-<n>"
    type: str
    title: str
    message: str
    created_at: datetime
    id: Optional[int] = None           # id server, None per le voci solo-live
    priority: str = "medium"
    data: Dict[str, Any] = field(default_factory=dict)
    read: bool = False
    read_at: Optional[datetime] = None
    toast: Optional[ToastPhase] = None  # None = nessun toast (es. arretrati da sync)
    toast_shown_at: Optional[datetime] = None

    @property
    def transient(self) -> bool:
        return self.id is None


@dataclass(frozen=True)
class NotificationState:
    items: Tuple[ClientNotification, ...] = ()
    unread_count: int = 0
    next_local: int = 1
    last_sync_at: Optional[datetime] = None

    def get(self, key: str) -> Optional[ClientNotification]:
        for n in self.items:
            if n.key == key:
                return n
        return None

    @property
    def toasts(self) -> List[ClientNotification]:
        return [n for n in self.items if n.toast in (ToastPhase.unseen, ToastPhase.displayed)]


# ---- azioni ----------------------------------------------------------------

@dataclass(frozen=True)
class LiveEvent:
    event: IncomingEvent
    received_at: datetime


@dataclass(frozen=True)
class SyncResult:
    rows: Tuple[Dict[str, Any], ...]
    fetched_at: datetime
    unread_count: Optional[int] = None
    complete: bool = True              # False se la pagina è stata troncata dal limit


@dataclass(frozen=True)
class MarkRead:
    key: str
    at: datetime


@dataclass(frozen=True)
class MarkReadFailed:
    previous: ClientNotification


@dataclass(frozen=True)
class Delete:
    key: str


@dataclass(frozen=True)
class DeleteFailed:
    previous: ClientNotification


@dataclass(frozen=True)
class DismissToast:
    key: str


@dataclass(frozen=True)
class Tick:
    now: datetime


@dataclass(frozen=True)
class ClearAll:
    pass


@dataclass(frozen=True)
class ClearAllFailed:
    previous: NotificationState


Action = Union[
    LiveEvent, SyncResult, MarkRead, MarkReadFailed, Delete, DeleteFailed, DismissToast, Tick, ClearAll, ClearAllFailed,
]


# ---- helpers puri ----------------------------------------------------------

def server_key(notification_id: int) -> str:
    return f"srv-{notification_id}"


def from_row(row: Dict[str, Any], toast: Optional[ToastPhase] = None) -> ClientNotification:
    nid = int(row["id"])
    return ClientNotification(
        key=server_key(nid),
        id=nid,
        type=str(row["type"]),
        title=str(row.get("title", "")),
        message=str(row["message"]),
        priority=str(row.get("priority", "medium")),
        data=dict(row.get("data") or {}),
        read=bool(row.get("read", False)),
        read_at=parse_ts(row.get("read_at")),
        created_at=parse_ts(row.get("created_at")) or datetime.min,
        toast=toast,
    )


def is_same(a: ClientNotification, b: ClientNotification, window: timedelta) -> bool:
    if a.id is not None and a.id == b.id:
        return True
    return a.type == b.type and a.message == b.message and abs(a.created_at - b.created_at) <= window


def _window(cfg: ReducerConfig) -> timedelta:
    return timedelta(milliseconds=cfg.dedupe_window_ms)


def _sorted(items: Iterable[ClientNotification], keep_last: int) -> Tuple[ClientNotification, ...]:
    ordered = sorted(items, key=lambda n: (n.created_at, n.id or 0), reverse=True)
    return tuple(ordered[:keep_last])


def _unread(items: Iterable[ClientNotification]) -> int:
    return sum(1 for n in items if not n.read)


def _replace_item(state: NotificationState, key: str, new: ClientNotification) -> Tuple[ClientNotification, ...]:
    return tuple(new if n.key == key else n for n in state.items)


# ---- reducer ---------------------------------------------------------------

def _on_live(state: NotificationState, action: LiveEvent, cfg: ReducerConfig) -> NotificationState:
    ev = action.event
    window = _window(cfg)

    if isinstance(ev, NotificationPushed):
        incoming = from_row(ev.row, toast=ToastPhase.unseen)
        key = incoming.key
    elif isinstance(ev, OrderEvent) and ev.notice is not None:
        key = f"local-{state.next_local}"
        incoming = ClientNotification(
            key=key,
            type=ev.notice.type,
            title=ev.notice.title,
            message=ev.notice.message,
            priority=ev.notice.priority,
            data={"order_id": ev.order_id, "event": ev.name},
            created_at=ev.timestamp or action.received_at,
            toast=ToastPhase.unseen,
        )
    else:
        # tabelle, rooms-joined, eventi senza testo: nessuna notifica
        return state

    for n in state.items:
        if is_same(n, incoming, window):
            if n.transient and not incoming.transient:
                # la riga server prende il posto del gemello live
                merged = replace(incoming, toast=n.toast, toast_shown_at=n.toast_shown_at)
                items = _sorted(_replace_item(state, n.key, merged), cfg.keep_last)
                return replace(state, items=items)
            return state

    items = _sorted((incoming,) + state.items, cfg.keep_last)
    return replace(
        state,
        items=items,
        unread_count=state.unread_count + (0 if incoming.read else 1),
        next_local=state.next_local + (1 if incoming.transient else 0),
    )


def _on_sync(state: NotificationState, action: SyncResult, cfg: ReducerConfig) -> NotificationState:
    window = _window(cfg)
    fresh_after = action.fetched_at - timedelta(milliseconds=cfg.toast_ms)
    server = [from_row(r) for r in action.rows]
    server_ids = {n.id for n in server}
    oldest = min((n.created_at for n in server), default=None)

    local = list(state.items)
    out: List[ClientNotification] = []
    consumed = set()

    for srv in server:
        if any(is_same(o, srv, window) for o in out):
            # doppione lato server (stesso testo entro la finestra): una sola voce
            continue
        match = None
        for n in local:
            if n.key in consumed:
                continue
            if n.id == srv.id:
                match = n
                break
        if match is None:
            match = next((n for n in local if n.key not in consumed and is_same(n, srv, window)), None)
        if match is not None:
            consumed.add(match.key)
            # read dal server, stato del toast dal locale
            toast = match.toast
            if srv.read and toast in (ToastPhase.unseen, ToastPhase.displayed):
                toast = ToastPhase.read
            out.append(replace(srv, toast=toast, toast_shown_at=match.toast_shown_at))
        else:
            toast = ToastPhase.unseen if (not srv.read and srv.created_at >= fresh_after) else None
            out.append(replace(srv, toast=toast))

    for n in local:
        if n.key in consumed:
            continue
        if n.transient:
            # ancora senza gemello server: resta finché non arriva
            out.append(n)
        elif n.id not in server_ids and not action.complete and oldest is not None and n.created_at < oldest:
            # fuori dalla pagina scaricata: non sappiamo, la teniamo
            out.append(n)
        # altrimenti cancellata o scaduta lato server: sparisce

    items = _sorted(out, cfg.keep_last)
    unread = action.unread_count if action.unread_count is not None else _unread(items)
    return replace(state, items=items, unread_count=unread, last_sync_at=action.fetched_at)


def reduce(state: NotificationState, action: Action, cfg: ReducerConfig = ReducerConfig()) -> NotificationState:
    if isinstance(action, LiveEvent):
        return _on_live(state, action, cfg)

    if isinstance(action, SyncResult):
        return _on_sync(state, action, cfg)

    if isinstance(action, MarkRead):
        n = state.get(action.key)
        if n is None or n.read:
            return state
        toast = ToastPhase.read if n.toast in (ToastPhase.unseen, ToastPhase.displayed) else n.toast
        updated = replace(n, read=True, read_at=action.at, toast=toast)
        return replace(state, items=_replace_item(state, n.key, updated), unread_count=max(0, state.unread_count - 1))

    if isinstance(action, MarkReadFailed):
        n = state.get(action.previous.key)
        if n is None:
            return state
        # ripristina solo il flag read; il toast resta com'è
        restored = replace(n, read=action.previous.read, read_at=action.previous.read_at)
        delta = int(n.read and not restored.read) - int(restored.read and not n.read)
        return replace(state, items=_replace_item(state, n.key, restored), unread_count=state.unread_count + delta)

    if isinstance(action, Delete):
        n = state.get(action.key)
        if n is None:
            return state
        items = tuple(x for x in state.items if x.key != action.key)
        return replace(state, items=items, unread_count=max(0, state.unread_count - (0 if n.read else 1)))

    if isinstance(action, DeleteFailed):
        if state.get(action.previous.key) is not None:
            return state
        items = _sorted(state.items + (action.previous,), cfg.keep_last)
        return replace(state, items=items, unread_count=state.unread_count + (0 if action.previous.read else 1))

    if isinstance(action, DismissToast):
        n = state.get(action.key)
        if n is None or n.toast not in (ToastPhase.unseen, ToastPhase.displayed):
            return state
        return replace(state, items=_replace_item(state, n.key, replace(n, toast=ToastPhase.dismissed)))

    if isinstance(action, Tick):
        changed = False
        items = []
        for n in state.items:
            if n.toast == ToastPhase.unseen:
                n = replace(n, toast=ToastPhase.displayed, toast_shown_at=action.now)
                changed = True
            elif n.toast == ToastPhase.displayed and n.toast_shown_at is not None \
                    and action.now - n.toast_shown_at >= timedelta(milliseconds=cfg.toast_ms):
                n = replace(n, toast=ToastPhase.dismissed)
                changed = True
            items.append(n)
        return replace(state, items=tuple(items)) if changed else state

    if isinstance(action, ClearAll):
        return replace(state, items=(), unread_count=0)

    if isinstance(action, ClearAllFailed):
        # rimette il precedente, più quello che è arrivato nel frattempo
        keys = {n.key for n in action.previous.items}
        items = _sorted(action.previous.items + tuple(n for n in state.items if n.key not in keys), cfg.keep_last)
        return replace(state, items=items, unread_count=action.previous.unread_count + _unread(
            n for n in state.items if n.key not in keys
        ))

    raise TypeError(f"Unknown action {action!r}")


def reduce_all(state: NotificationState, actions: Sequence[Action], cfg: ReducerConfig = ReducerConfig()) -> NotificationState:
    for a in actions:
        state = reduce(state, a, cfg)
    return state
