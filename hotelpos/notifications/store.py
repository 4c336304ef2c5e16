# hotelpos/notifications/store.py
"""
Store durevole delle notifiche: una riga per utente destinatario (non per room),
scritta nella stessa transazione della transizione di stato che la genera.
Ogni scrittura è limitata a un solo user_id: nessuna contesa tra utenti.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete as sa_delete, or_, update
from sqlmodel import Session, func, select

from ..config import NotificationsConfig
from ..errors import NotFoundError, ValidationError
from ..models import utcnow
from ..models_notifications import Notification, NotificationType, Priority
from . import templates

log = logging.getLogger(__name__)

_TYPES = {t.value for t in NotificationType}
_PRIORITIES = {p.value for p in Priority}


def _not_expired(now: datetime):
    return or_(Notification.expires_at.is_(None), Notification.expires_at > now)


def to_dict(n: Notification) -> Dict[str, Any]:
    return {
        "id": n.id,
        "user_id": n.user_id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "data": n.data,
        "read": bool(n.read),
        "priority": n.priority,
        "created_at": n.created_at.isoformat() if n.created_at else None,
        "read_at": n.read_at.isoformat() if n.read_at else None,
        "expires_at": n.expires_at.isoformat() if n.expires_at else None,
    }


class NotificationStore:
    def __init__(self, cfg: NotificationsConfig):
        self.cfg = cfg

    def _default_expiry(self, now: datetime) -> Optional[datetime]:
        if self.cfg.ttl_hours <= 0:
            return None
        return now + timedelta(hours=self.cfg.ttl_hours)

    # --- scrittura ------------------------------------------------------------

    def create(
        self,
        session: Session,
        user_id: int,
        ntype: str,
        title: str,
        message: str,
        data: Optional[dict] = None,
        priority: str = Priority.medium.value,
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Notification:
        """Non fa commit: la riga segue la transazione del chiamante."""
        if ntype not in _TYPES:
            raise ValidationError(f"Unknown notification type '{ntype}'")
        if priority not in _PRIORITIES:
            raise ValidationError(f"Priority must be one of {sorted(_PRIORITIES)}")
        now = now or utcnow()
        if expires_at is not None and expires_at.tzinfo is not None:
            expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)
        n = Notification(
            user_id=user_id,
            type=ntype,
            title=title,
            message=message,
            data=data,
            priority=priority,
            created_at=now,
            expires_at=expires_at if expires_at is not None else self._default_expiry(now),
        )
        session.add(n)
        return n

    def create_for_users(
        self,
        session: Session,
        user_ids: Iterable[int],
        rendered: Dict[str, str],
        data: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> List[Notification]:
        now = now or utcnow()
        out = []
        for uid in dict.fromkeys(user_ids):   # dedup mantenendo l'ordine
            out.append(self.create(
                session, uid, rendered["type"], rendered["title"], rendered["message"],
                data=data, priority=rendered["priority"], now=now,
            ))
        if out:
            log.info("Notification %s -> users %s", rendered["type"], [n.user_id for n in out])
        return out

    def render(self, ntype: str, ctx: Dict[str, Any]) -> Dict[str, str]:
        return templates.render(ntype, ctx)

    # --- lettura --------------------------------------------------------------

    def list_for_user(
        self,
        session: Session,
        user_id: int,
        limit: int = 50,
        offset: int = 0,
        unread_only: bool = False,
        ntype: Optional[str] = None,
        include_expired: bool = False,
        now: Optional[datetime] = None,
    ) -> List[Notification]:
        now = now or utcnow()
        limit = max(1, min(limit, self.cfg.max_page_size))
        stmt = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(Notification.read == False)  # noqa: E712
        if ntype:
            stmt = stmt.where(Notification.type == ntype)
        if not include_expired:
            stmt = stmt.where(_not_expired(now))
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
        return list(session.exec(stmt.offset(max(0, offset)).limit(limit)).all())

    def unread_count(self, session: Session, user_id: int, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        stmt = (
            select(func.count(Notification.id))
            .where(Notification.user_id == user_id, Notification.read == False)  # noqa: E712
            .where(_not_expired(now))
        )
        return int(session.exec(stmt).one() or 0)

    def get_owned(self, session: Session, user_id: int, notification_id: int) -> Notification:
        n = session.get(Notification, notification_id)
        # la notifica di un altro utente è "non trovata": nessun leak
        if not n or n.user_id != user_id:
            raise NotFoundError("Notification not found", code="NOTIFICATION_NOT_FOUND")
        return n

    # --- mutazioni del destinatario ---------------------------------------------

    def mark_read(self, session: Session, user_id: int, notification_id: int) -> Notification:
        """Idempotente: una notifica già letta conserva il primo read_at."""
        n = self.get_owned(session, user_id, notification_id)
        if not n.read:
            n.read = True
            n.read_at = utcnow()
            session.add(n)
            session.commit()
        return n

    def mark_all_read(self, session: Session, user_id: int) -> int:
        res = session.exec(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.read == False)  # noqa: E712
            .values(read=True, read_at=utcnow())
        )
        session.commit()
        return int(res.rowcount or 0)

    def delete(self, session: Session, user_id: int, notification_id: int) -> None:
        n = self.get_owned(session, user_id, notification_id)
        session.delete(n)
        session.commit()

    def clear_all(self, session: Session, user_id: int) -> int:
        res = session.exec(sa_delete(Notification).where(Notification.user_id == user_id))
        session.commit()
        return int(res.rowcount or 0)

    def purge_expired(self, session: Session, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        res = session.exec(
            sa_delete(Notification).where(
                Notification.expires_at.is_not(None), Notification.expires_at < now
            )
        )
        session.commit()
        purged = int(res.rowcount or 0)
        if purged:
            log.info("Purged %d expired notifications", purged)
        return purged
