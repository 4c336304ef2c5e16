from contextlib import contextmanager
import logging

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session, select

# Modelli (solo import: registrano le tabelle nel metadata)
from .models import (
    User, Restaurant, RestaurantStaff, RestaurantTable, MenuCategory, MenuItem,
    KitchenType,
)
from .models_notifications import Notification  # noqa: F401
from .roles import Role

log = logging.getLogger(__name__)


class Database:
    """Possiede l'engine; creato dalla app factory e chiuso allo shutdown."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.is_sqlite = url.startswith("sqlite")
        self.is_memory = self.is_sqlite and (url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url)

        if self.is_memory:
            # una sola connessione condivisa, altrimenti ogni connessione vede un DB vuoto
            self.engine = create_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            connect_args = {"check_same_thread": False, "timeout": 30} if self.is_sqlite else {}
            # Nota: alzare il pool non "cura" i leak, ma rende il sistema meno fragile.
            self.engine = create_engine(
                url,
                echo=echo,
                connect_args=connect_args,
                pool_pre_ping=True,
                pool_size=10,       # default 5 -> un po' più ampio
                max_overflow=20,    # default 10
                pool_timeout=10,    # attesa per prendere una connessione
                pool_recycle=1800,  # ricicla connessioni stantie
            )

        # Migliorie per SQLite
        if self.is_sqlite:
            event.listen(self.engine, "connect", self._set_sqlite_pragmas)

    def _set_sqlite_pragmas(self, dbapi_connection, connection_record):
        cur = dbapi_connection.cursor()
        if not self.is_memory:
            # WAL migliora i read paralleli con write
            cur.execute("PRAGMA journal_mode=WAL;")
        # Timeout quando il DB è lockato da un writer
        cur.execute("PRAGMA busy_timeout=30000;")
        cur.execute("PRAGMA foreign_keys=ON;")
        cur.close()

    # ---- Schema ----
    def create_db_and_tables(self):
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def session(self):
        with Session(self.engine, expire_on_commit=False) as session:
            yield session

    def dispose(self):
        self.engine.dispose()


# ---- Sessioni: dipendenza FastAPI ----
def get_session_dep(request: Request):
    """Dipendenza per FastAPI: garantisce sempre la chiusura della sessione."""
    db: Database = request.app.state.db
    with db.session() as session:
        yield session


# ---- Seed helpers ----
def seed_if_empty(db: Database):
    """Seed minimale: cucina, bar, staff, menu e tavoli demo."""
    with db.session() as session:
        if session.exec(select(Restaurant)).first():
            return

        cucina = Restaurant(name="Main Kitchen", prefix="K", restaurant_type=KitchenType.restaurant.value)
        bar = Restaurant(name="Lobby Bar", prefix="B", restaurant_type=KitchenType.bar.value)
        session.add_all([cucina, bar])
        session.flush()

        admin = User(first_name="Ada", last_name="Admin", role=Role.admin.value)
        manager = User(first_name="Marco", last_name="Manager", role=Role.manager.value)
        waiter = User(first_name="Wanda", last_name="Waiter", role=Role.waiter.value)
        chef = User(first_name="Carlo", last_name="Chef", role=Role.chef.value)
        bartender = User(first_name="Bea", last_name="Bartender", role=Role.bartender.value)
        session.add_all([admin, manager, waiter, chef, bartender])
        session.flush()

        session.add_all([
            RestaurantStaff(restaurant_id=cucina.id, user_id=chef.id, role=Role.chef.value),
            RestaurantStaff(restaurant_id=bar.id, user_id=bartender.id, role=Role.bartender.value),
            RestaurantStaff(restaurant_id=cucina.id, user_id=waiter.id, role=Role.waiter.value),
            RestaurantStaff(restaurant_id=cucina.id, user_id=manager.id, role=Role.manager.value),
        ])

        mains = MenuCategory(restaurant_id=cucina.id, name="Mains", kitchen_type=KitchenType.restaurant.value)
        drinks = MenuCategory(restaurant_id=cucina.id, name="Drinks", kitchen_type=KitchenType.bar.value)
        session.add_all([mains, drinks])
        session.flush()

        session.add_all([
            MenuItem(category_id=mains.id, name="Margherita", price_cents=900),
            MenuItem(category_id=mains.id, name="Carbonara", price_cents=1200),
            MenuItem(category_id=mains.id, name="Tiramisu", price_cents=650),
            MenuItem(category_id=drinks.id, name="Negroni", price_cents=800),
            MenuItem(category_id=drinks.id, name="Still water 0.5L", price_cents=200),
        ])

        session.add_all([
            RestaurantTable(restaurant_id=cucina.id, table_number=f"T{n}") for n in range(1, 11)
        ])
        session.commit()
        log.info("Demo data seeded")
