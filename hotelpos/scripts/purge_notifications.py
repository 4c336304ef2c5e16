# hotelpos/scripts/purge_notifications.py
"""
Cancella le notifiche scadute (expires_at passato).

Uso:
    python -m hotelpos.scripts.purge_notifications [--dry-run]
DB da config/env (HOTELPOS_DB_URL), come l'app.
"""
import argparse
import logging
import sys

from sqlmodel import func, select

from ..config import load_config
from ..db import Database
from ..models import utcnow
from ..models_notifications import Notification
from ..notifications.store import NotificationStore

log = logging.getLogger("hotelpos.purge")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Purge expired notifications")
    parser.add_argument("--dry-run", action="store_true", help="conta soltanto, non cancella")
    args = parser.parse_args(argv)

    config = load_config()
    logging.basicConfig(level=config.logging.level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    db = Database(config.database.url, echo=config.database.echo)
    try:
        db.create_db_and_tables()
        now = utcnow()
        with db.session() as session:
            if args.dry_run:
                n = session.exec(
                    select(func.count(Notification.id)).where(
                        Notification.expires_at.is_not(None), Notification.expires_at < now
                    )
                ).one()
                print(f"[DRY-RUN] {n} notifiche scadute")
                return 0
            purged = NotificationStore(config.notifications).purge_expired(session, now=now)
            print(f"[OK] {purged} notifiche scadute cancellate")
    except Exception as e:
        log.exception("Purge failed")
        print("[ERR] Purge fallito:", e)
        return 2
    finally:
        db.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(main())
