# hotelpos/routes_notifications.py
from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlmodel import Session

from .db import get_session_dep
from .errors import ValidationError, ok
from .events import Event, NOTIFICATION
from .models import User
from .models_notifications import NotificationType
from .notifications.store import to_dict
from .roles import Capability
from .schemas import NotificationIn
from .security import IdentityDep
from .ws import user_room

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])

# Dipendenza tipizzata
SessionDep = Annotated[Session, Depends(get_session_dep)]


@router.get("")
def list_notifications(
    request: Request,
    session: SessionDep,
    identity: IdentityDep,
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    unread_only: bool = False,
    type: Optional[str] = None,
    include_expired: bool = False,
):
    store = request.app.state.notifications
    rows = store.list_for_user(
        session, identity.user_id, limit=limit, offset=offset,
        unread_only=unread_only, ntype=type, include_expired=include_expired,
    )
    return ok({
        "notifications": [to_dict(n) for n in rows],
        "unread_count": store.unread_count(session, identity.user_id),
        "limit": min(limit, store.cfg.max_page_size),
        "offset": offset,
    })


@router.get("/unread-count")
def unread_count(request: Request, session: SessionDep, identity: IdentityDep):
    return ok({"count": request.app.state.notifications.unread_count(session, identity.user_id)})


@router.patch("/read-all")
def mark_all_read(request: Request, session: SessionDep, identity: IdentityDep):
    return ok({"updated": request.app.state.notifications.mark_all_read(session, identity.user_id)})


@router.api_route("/{notification_id}/read", methods=["PATCH", "PUT"])
def mark_read(notification_id: int, request: Request, session: SessionDep, identity: IdentityDep):
    n = request.app.state.notifications.mark_read(session, identity.user_id, notification_id)
    return ok(to_dict(n))


@router.delete("/{notification_id}")
def delete_notification(notification_id: int, request: Request, session: SessionDep, identity: IdentityDep):
    request.app.state.notifications.delete(session, identity.user_id, notification_id)
    return ok({"id": notification_id, "deleted": True})


@router.delete("")
def clear_all(request: Request, session: SessionDep, identity: IdentityDep):
    return ok({"deleted": request.app.state.notifications.clear_all(session, identity.user_id)})


# --- amministrazione ----------------------------------------------------------

@router.post("", status_code=201)
async def send_notification(body: NotificationIn, request: Request, session: SessionDep, identity: IdentityDep):
    """Notifica di sistema (manager/admin) a una lista di utenti."""
    identity.require(Capability.send_notification)
    if not body.user_ids:
        raise ValidationError("user_ids must not be empty")
    if not body.title.strip() or not body.message.strip():
        raise ValidationError("title and message are required")
    missing = [uid for uid in body.user_ids if not session.get(User, uid)]
    if missing:
        raise ValidationError(f"Unknown user id(s): {missing}")

    store = request.app.state.notifications
    try:
        rows = [
            store.create(
                session, uid, NotificationType.system.value, body.title.strip(), body.message.strip(),
                data=body.data, priority=body.priority, expires_at=body.expires_at,
            )
            for uid in dict.fromkeys(body.user_ids)
        ]
        session.commit()
    except Exception:
        session.rollback()
        raise

    out = [to_dict(n) for n in rows]
    await request.app.state.bus.publish([
        Event(NOTIFICATION, row, rooms=(user_room(row["user_id"]),)) for row in out
    ])
    return ok(out, 201)


@router.post("/purge-expired")
def purge_expired(request: Request, session: SessionDep, identity: IdentityDep):
    identity.require(Capability.purge_notifications)
    return ok({"purged": request.app.state.notifications.purge_expired(session)})
