import pytest
from fastapi.testclient import TestClient

from hotelpos.config import load_config
from hotelpos.db import Database, seed_if_empty
from hotelpos.events import EventBus
from hotelpos.kitchen_router import KitchenRouter
from hotelpos.main import create_app
from hotelpos.notifications.store import NotificationStore
from hotelpos.orders.service import OrderService
from hotelpos.roles import Role
from hotelpos.security import Identity, create_access_token

# id dei dati demo (seed_if_empty)
KITCHEN_ID = 1
BAR_ID = 2
ADMIN, MANAGER, WAITER, CHEF, BARTENDER = 1, 2, 3, 4, 5
MARGHERITA, CARBONARA, TIRAMISU, NEGRONI, WATER = 1, 2, 3, 4, 5
T5 = 5


class RecordingBus(EventBus):
    """EventBus che ricorda ogni evento pubblicato (e lo consegna comunque)."""

    def __init__(self, manager):
        super().__init__(manager)
        self.published = []

    async def publish(self, events):
        self.published.extend(events)
        await super().publish(events)

    def named(self, name):
        return [e for e in self.published if e.name == name]


@pytest.fixture
def config():
    return load_config(overrides={
        "database": {"url": "sqlite://", "seed_demo_data": True},
        "auth": {"jwt_secret": "test-secret"},
        "logging": {"level": "WARNING"},
    })


@pytest.fixture
def app(config):
    app = create_app(config)
    app.state.bus = RecordingBus(app.state.manager)
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def bus(app):
    return app.state.bus


@pytest.fixture
def tokens(config):
    return {
        role: create_access_token(config.auth, uid, role)
        for role, uid in (
            ("admin", ADMIN), ("manager", MANAGER), ("waiter", WAITER), ("chef", CHEF), ("bartender", BARTENDER),
        )
    }


@pytest.fixture
def auth(tokens):
    def _auth(role):
        return {"Authorization": f"Bearer {tokens[role]}"}
    return _auth


# --- livello servizio (senza HTTP) ----------------------------------------------

@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_db_and_tables()
    seed_if_empty(database)
    yield database
    database.dispose()


@pytest.fixture
def session(db):
    with db.session() as s:
        yield s


@pytest.fixture
def store(config):
    return NotificationStore(config.notifications)


@pytest.fixture
def service(config, store):
    return OrderService(config.orders, KitchenRouter(), store)


@pytest.fixture
def who():
    def _who(role, user_id):
        return Identity(user_id=user_id, role=Role(role))
    return _who


def order_body(items, table_id=T5, **extra):
    body = {
        "restaurantId": KITCHEN_ID,
        "tableId": table_id,
        "items": [{"menuItemId": mid, "quantity": qty} for mid, qty in items],
    }
    body.update(extra)
    return body
