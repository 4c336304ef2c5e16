# hotelpos/client/__init__.py
from .events import IncomingEvent, parse_event
from .state import (
    ClearAll, ClearAllFailed, ClientNotification, Delete, DeleteFailed, DismissToast, LiveEvent,
    MarkRead, MarkReadFailed, NotificationState, ReducerConfig, SyncResult, Tick, ToastPhase, reduce,
)
from .sync import NotificationSyncClient

__all__ = [
    "IncomingEvent", "parse_event",
    "ClearAll", "ClearAllFailed", "ClientNotification", "Delete", "DeleteFailed", "DismissToast",
    "LiveEvent", "MarkRead", "MarkReadFailed", "NotificationState", "ReducerConfig", "SyncResult",
    "Tick", "ToastPhase", "reduce",
    "NotificationSyncClient",
]
