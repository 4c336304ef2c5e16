# hotelpos/routes_orders.py
from __future__ import annotations

from typing import Annotated, Callable, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlmodel import Session

from .db import get_session_dep
from .errors import ok
from .events import Outcome
from .schemas import CreateOrderIn, ItemStatusIn, OrderStatusIn, ReasonIn, RoundIn, TransferItemIn
from .security import IdentityDep

router = APIRouter(prefix="/api/v1/restaurant", tags=["orders"])

# Dipendenza tipizzata
SessionDep = Annotated[Session, Depends(get_session_dep)]


async def commit_and_publish(request: Request, order_id: int, call: Callable[[], Outcome]) -> Outcome:
    """
    Esegue l'operazione e pubblica gli eventi tenendo il lock dell'ordine:
    due richieste sullo stesso ordine emettono nell'ordine in cui hanno fatto commit.
    """
    state = request.app.state
    async with state.locks.hold(order_id):
        outcome = call()
        await state.bus.publish(outcome.events)
    return outcome


# --- scrittura ----------------------------------------------------------------

@router.post("/orders", status_code=201)
async def create_order(body: CreateOrderIn, request: Request, session: SessionDep, identity: IdentityDep):
    state = request.app.state
    outcome = state.orders.create_order(
        session,
        identity,
        restaurant_id=body.restaurant_id,
        items=[ln.model_dump() for ln in body.items],
        table_id=body.table_id,
        order_type=body.order_type,
        customer_info=body.customer_info,
        special_instructions=body.special_instructions,
        waiter_id=body.waiter_id,
    )
    # ordine nuovo: nessun altro può averlo in mano, basta pubblicare sotto il suo lock
    async with state.locks.hold(outcome.data["id"]):
        await state.bus.publish(outcome.events)
    return ok(outcome.data, 201)


@router.post("/orders/{order_id}/items")
async def add_round(order_id: int, body: RoundIn, request: Request, session: SessionDep, identity: IdentityDep):
    items = [ln.model_dump() for ln in body.items]
    outcome = await commit_and_publish(
        request, order_id,
        lambda: request.app.state.orders.submit_round(session, order_id, identity, items),
    )
    return ok(outcome.data)


@router.patch("/orders/{order_id}/items/{item_id}")
async def update_item_status(
    order_id: int, item_id: int, body: ItemStatusIn, request: Request, session: SessionDep, identity: IdentityDep,
):
    outcome = await commit_and_publish(
        request, order_id,
        lambda: request.app.state.orders.update_item_status(
            session, order_id, item_id, body.status, identity, chef_notes=body.chef_notes,
        ),
    )
    return ok(outcome.data)


@router.post("/orders/{order_id}/items/{item_id}/cancel")
async def cancel_item(
    order_id: int, item_id: int, body: ReasonIn, request: Request, session: SessionDep, identity: IdentityDep,
):
    outcome = await commit_and_publish(
        request, order_id,
        lambda: request.app.state.orders.cancel_item(session, order_id, item_id, identity, body.reason),
    )
    return ok(outcome.data)


@router.post("/orders/{order_id}/items/{item_id}/transfer")
async def transfer_item(
    order_id: int, item_id: int, body: TransferItemIn, request: Request, session: SessionDep, identity: IdentityDep,
):
    outcome = await commit_and_publish(
        request, order_id,
        lambda: request.app.state.orders.transfer_item(
            session, order_id, item_id, body.to_kitchen_id, identity, reason=body.reason,
        ),
    )
    return ok(outcome.data)


@router.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: int, body: OrderStatusIn, request: Request, session: SessionDep, identity: IdentityDep,
):
    outcome = await commit_and_publish(
        request, order_id,
        lambda: request.app.state.orders.close_order(session, order_id, body.status, identity, reason=body.reason),
    )
    return ok(outcome.data)


# --- lettura ------------------------------------------------------------------

@router.get("/orders")
def list_orders(
    request: Request,
    session: SessionDep,
    identity: IdentityDep,
    status: Optional[str] = Query(None, description="Stati (CSV)"),
    restaurant_id: Optional[int] = None,
    table_id: Optional[int] = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    rows = request.app.state.orders.list_orders(
        session, identity, status=status, restaurant_id=restaurant_id, table_id=table_id, limit=limit, offset=offset,
    )
    return ok(rows)


@router.get("/orders/{order_id}")
def get_order(order_id: int, request: Request, session: SessionDep, identity: IdentityDep):
    return ok(request.app.state.orders.get_order(session, order_id, identity))
