from datetime import timedelta

import pytest
from sqlmodel import select

from hotelpos.db import Database
from hotelpos.models import User, utcnow
from hotelpos.models_notifications import Notification
from hotelpos.scripts import purge_notifications


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'purge.db'}"
    monkeypatch.setenv("HOTELPOS_DB_URL", url)
    monkeypatch.setenv("HOTELPOS_CONFIG", str(tmp_path / "none.json"))

    db = Database(url)
    db.create_db_and_tables()
    now = utcnow()
    with db.session() as s:
        u = User(first_name="Wanda", role="waiter")
        s.add(u)
        s.flush()
        s.add_all([
            Notification(user_id=u.id, type="system", title="old", message="m", expires_at=now - timedelta(days=1)),
            Notification(user_id=u.id, type="system", title="new", message="m", expires_at=now + timedelta(days=1)),
            Notification(user_id=u.id, type="system", title="forever", message="m"),
        ])
        s.commit()
    db.dispose()
    return url


def remaining(url):
    db = Database(url)
    try:
        with db.session() as s:
            return sorted(n.title for n in s.exec(select(Notification)).all())
    finally:
        db.dispose()


def test_dry_run_counts_only(db_url, capsys):
    assert purge_notifications.main(["--dry-run"]) == 0
    assert "[DRY-RUN] 1" in capsys.readouterr().out
    assert remaining(db_url) == ["forever", "new", "old"]


def test_purge_deletes_expired(db_url, capsys):
    assert purge_notifications.main([]) == 0
    assert "[OK] 1" in capsys.readouterr().out
    assert remaining(db_url) == ["forever", "new"]
