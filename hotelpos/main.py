# hotelpos/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket
from fastapi.responses import PlainTextResponse
from fastapi.websockets import WebSocketDisconnect

from .config import AppConfig, load_config
from .db import Database, seed_if_empty
from .errors import install_error_handlers
from .events import EventBus, handle_client_message
from .kitchen_router import KitchenRouter
from .notifications.store import NotificationStore
from .orders.locks import OrderLocks
from .orders.service import OrderService
from .security import identity_from_token
from .ws import ConnectionManager
from . import routes_kitchens, routes_notifications, routes_orders, routes_tables

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    config = config or load_config()
    logging.basicConfig(level=config.logging.level, format=LOG_FORMAT)

    # ✅ niente handle globale: il Database vive e muore con l'app
    db = Database(config.database.url, echo=config.database.echo)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db.create_db_and_tables()
        if config.database.seed_demo_data:
            seed_if_empty(db)
        log.info("hotelpos started (db=%s)", config.database.url)
        yield
        db.dispose()

    app = FastAPI(title="Hotel POS - order routing & notifications", lifespan=lifespan)

    manager = ConnectionManager()
    kitchen_router = KitchenRouter()
    notifications = NotificationStore(config.notifications)

    app.state.config = config
    app.state.db = db
    app.state.manager = manager
    app.state.bus = EventBus(manager)
    app.state.locks = OrderLocks()
    app.state.kitchen_router = kitchen_router
    app.state.notifications = notifications
    app.state.orders = OrderService(config.orders, kitchen_router, notifications)

    install_error_handlers(app)

    @app.get("/health", response_class=PlainTextResponse)
    def health():
        return "OK"

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
        # token assente/invalido: socket anonimo, riceve solo i broadcast globali
        identity = identity_from_token(config.auth, token)
        await manager.connect(websocket, identity)
        try:
            while True:
                raw = await websocket.receive_text()
                await handle_client_message(manager, websocket, raw)
        except WebSocketDisconnect:
            manager.disconnect(websocket)

    # ✅ include di tutti i router DOPO la creazione dell'app
    app.include_router(routes_orders.router)
    app.include_router(routes_kitchens.router)
    app.include_router(routes_notifications.router)
    app.include_router(routes_tables.router)
    return app


def run(host: str = "0.0.0.0", port: int = 8000):
    import uvicorn

    uvicorn.run("hotelpos.main:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":
    run()
