# hotelpos/routes_kitchens.py
from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlmodel import Session, select

from .db import get_session_dep
from .errors import NotFoundError, ok
from .models import KitchenBinding, Restaurant
from .roles import Capability
from .routes_orders import commit_and_publish
from .schemas import AcceptIn, BindingIn, ReasonIn, StaffIn
from .security import IdentityDep
from . import staff

router = APIRouter(prefix="/api/v1", tags=["kitchens"])

# Dipendenza tipizzata
SessionDep = Annotated[Session, Depends(get_session_dep)]


def _kitchen_dict(k: Restaurant) -> dict:
    return {
        "id": k.id,
        "name": k.name,
        "prefix": k.prefix,
        "kitchen_type": k.restaurant_type,
        "is_active": k.is_active,
        "next_seq": k.next_seq,
    }


# --- cucine -------------------------------------------------------------------

@router.get("/kitchens")
def list_kitchens(session: SessionDep, identity: IdentityDep, kitchen_type: Optional[str] = Query(None, alias="type")):
    stmt = select(Restaurant).where(Restaurant.has_kitchen == True)  # noqa: E712
    if kitchen_type:
        stmt = stmt.where(Restaurant.restaurant_type == kitchen_type)
    kitchens = session.exec(stmt.order_by(Restaurant.prefix.asc())).all()
    return ok([_kitchen_dict(k) for k in kitchens])


@router.get("/kitchens/{kitchen_id}/orders")
def kitchen_orders(
    kitchen_id: int, request: Request, session: SessionDep, identity: IdentityDep, include_ready: bool = True,
):
    """Coda della cucina (quello che il KDS mostra)."""
    return ok(request.app.state.orders.kitchen_queue(session, kitchen_id, identity, include_ready=include_ready))


@router.get("/kitchens/{kitchen_id}/summary")
def kitchen_summary(kitchen_id: int, request: Request, session: SessionDep, identity: IdentityDep):
    """Riepilogo per piatto delle quantità ancora da preparare."""
    return ok(request.app.state.orders.kitchen_summary(session, kitchen_id, identity))


# --- staff --------------------------------------------------------------------

@router.get("/kitchens/{kitchen_id}/staff")
def kitchen_staff(kitchen_id: int, session: SessionDep, identity: IdentityDep, include_inactive: bool = False):
    identity.require(Capability.manage_staff)
    return ok(staff.list_staff(session, kitchen_id, include_inactive=include_inactive))


@router.post("/kitchens/{kitchen_id}/staff", status_code=201)
def assign_staff(kitchen_id: int, body: StaffIn, session: SessionDep, identity: IdentityDep):
    identity.require(Capability.manage_staff)
    row = staff.assign_staff(session, kitchen_id, body.user_id, body.role)
    return ok({"kitchen_id": row.restaurant_id, "user_id": row.user_id, "role": row.role, "is_active": row.is_active}, 201)


@router.delete("/kitchens/{kitchen_id}/staff/{user_id}")
def remove_staff(kitchen_id: int, user_id: int, session: SessionDep, identity: IdentityDep, role: str = Query(...)):
    identity.require(Capability.manage_staff)
    row = staff.remove_staff(session, kitchen_id, user_id, role)
    return ok({"kitchen_id": row.restaurant_id, "user_id": row.user_id, "role": row.role, "is_active": row.is_active})


# --- binding ristorante -> cucina ---------------------------------------------

@router.get("/restaurants/{restaurant_id}/kitchen-bindings")
def list_bindings(restaurant_id: int, session: SessionDep, identity: IdentityDep):
    rows = session.exec(select(KitchenBinding).where(KitchenBinding.restaurant_id == restaurant_id)).all()
    return ok([{"kitchen_type": b.kitchen_type, "kitchen_id": b.kitchen_id} for b in rows])


@router.put("/restaurants/{restaurant_id}/kitchen-bindings")
def bind_kitchen(restaurant_id: int, body: BindingIn, request: Request, session: SessionDep, identity: IdentityDep):
    identity.require(Capability.manage_staff)
    b = request.app.state.kitchen_router.bind_kitchen(session, restaurant_id, body.kitchen_type, body.kitchen_id)
    return ok({"restaurant_id": b.restaurant_id, "kitchen_type": b.kitchen_type, "kitchen_id": b.kitchen_id})


@router.delete("/restaurants/{restaurant_id}/kitchen-bindings/{kitchen_type}")
def unbind_kitchen(restaurant_id: int, kitchen_type: str, request: Request, session: SessionDep, identity: IdentityDep):
    identity.require(Capability.manage_staff)
    if not request.app.state.kitchen_router.unbind_kitchen(session, restaurant_id, kitchen_type):
        raise NotFoundError(f"No '{kitchen_type}' binding for restaurant {restaurant_id}", code="BINDING_NOT_FOUND")
    return ok({"restaurant_id": restaurant_id, "kitchen_type": kitchen_type})


# --- presa in carico ----------------------------------------------------------

@router.post("/restaurants/{kitchen_id}/orders/{order_id}/accept")
async def accept_order(
    kitchen_id: int, order_id: int, request: Request, session: SessionDep, identity: IdentityDep,
    body: Optional[AcceptIn] = None,
):
    body = body or AcceptIn()
    outcome = await commit_and_publish(
        request, order_id,
        lambda: request.app.state.orders.accept_order(
            session, kitchen_id, order_id, identity, estimated_minutes=body.estimated_minutes, notes=body.notes,
        ),
    )
    return ok(outcome.data)


@router.post("/restaurants/{kitchen_id}/orders/{order_id}/reject")
async def reject_order(
    kitchen_id: int, order_id: int, body: ReasonIn, request: Request, session: SessionDep, identity: IdentityDep,
):
    outcome = await commit_and_publish(
        request, order_id,
        lambda: request.app.state.orders.reject_order(session, kitchen_id, order_id, identity, body.reason),
    )
    return ok(outcome.data)
