# hotelpos/orders/service.py
"""
Order Aggregate: ordine + righe, con le transizioni di stato e le notifiche.

Ogni operazione:
  - gira in UNA transazione (commit unico, rollback su qualsiasi errore);
  - legge la riga ordine FOR UPDATE prima del read-modify-write
    (in create_order la riga tavolo, per il controllo TABLE_UNAVAILABLE);
  - scrive le Notification nella stessa transazione;
  - ritorna Outcome(data, events): gli eventi si pubblicano DOPO il commit.
I metodi sono sincroni; la serializzazione per ordine "commit + emit" la fanno
le route con OrderLocks.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import func, update
from sqlmodel import Session, select

from ..config import OrdersConfig
from ..errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from ..events import (
    KITCHEN_ORDER_ACCEPTED, KITCHEN_ORDER_REJECTED, NEW_KITCHEN_ORDER, ORDER_ITEM_STATUS_UPDATED,
    ORDER_ITEMS_ADDED, ORDER_STATUS_UPDATED, Event, Outcome, kitchen_event, table_event,
    transfer_event, waiter_and_managers_event, waiter_only_event,
)
from ..kitchen_router import KitchenGroup, KitchenRouter, is_active_kitchen, is_assigned, kitchen_staff_ids
from ..models import (
    ItemStatus, MenuItem, Order, OrderItem, OrderKitchenLog, OrderStatus, OrderType, KitchenTicket,
    Restaurant, RestaurantStaff, RestaurantTable, TicketStatus, utcnow,
)
from ..models_notifications import NotificationType
from ..notifications.store import NotificationStore
from ..roles import Capability, Role, can, is_supervisor, kitchen_role_for
from ..security import Identity
from .. import tables
from . import state

log = logging.getLogger(__name__)

ORDER_TYPES = {t.value for t in OrderType}
# item ancora "da fare" per la cucina
OUTSTANDING_ITEM = (ItemStatus.pending.value, ItemStatus.accepted.value, ItemStatus.preparing.value)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


@contextmanager
def _transaction(session: Session):
    try:
        yield
        session.commit()
    except Exception:
        session.rollback()
        raise


def _with_notice(data: dict, rendered: Optional[Dict[str, str]], now: datetime) -> dict:
    """Il payload live porta lo stesso testo e timestamp della riga persistita (dedupe lato client)."""
    data["timestamp"] = _iso(now)
    if rendered:
        data["notification"] = dict(rendered)
    return data


class OrderService:
    def __init__(self, cfg: OrdersConfig, router: KitchenRouter, notifications: NotificationStore):
        self.cfg = cfg
        self.router = router
        self.notifications = notifications

    # --- lookup -----------------------------------------------------------------

    def _lock_order(self, session: Session, order_id: int) -> Order:
        order = session.exec(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if not order:
            raise NotFoundError(f"Order {order_id} not found", code="ORDER_NOT_FOUND")
        return order

    @staticmethod
    def _items(session: Session, order_id: int) -> List[OrderItem]:
        return list(session.exec(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        ).all())

    @staticmethod
    def _item(session: Session, order: Order, item_id: int) -> OrderItem:
        it = session.get(OrderItem, item_id)
        if not it or it.order_id != order.id:
            raise NotFoundError(f"Item {item_id} not found in order {order.id}", code="ITEM_NOT_FOUND")
        return it

    @staticmethod
    def _kitchen(session: Session, kitchen_id: int) -> Restaurant:
        k = session.get(Restaurant, kitchen_id)
        if not is_active_kitchen(k):
            raise NotFoundError(f"Kitchen {kitchen_id} not found", code="KITCHEN_NOT_FOUND")
        return k

    @staticmethod
    def waiter_of(order: Order) -> Optional[int]:
        return order.waiter_id or order.user_id

    @staticmethod
    def _require_kitchen_member(session: Session, identity: Identity, kitchen_id: int) -> None:
        # manager/admin passano sempre; chef/bartender solo sulle cucine assegnate
        if is_supervisor(identity.role):
            return
        if not is_assigned(session, kitchen_id, identity.user_id, [identity.role.value]):
            raise ForbiddenError(f"User {identity.user_id} is not assigned to kitchen {kitchen_id}")

    # --- helpers di scrittura ---------------------------------------------------

    def _recompute(self, session: Session, order: Order, items: Sequence[OrderItem], now: datetime) -> str:
        """Ricalcola totali e stato derivato; ritorna lo stato precedente."""
        previous = order.status
        order.total_cents, order.tax_cents = state.compute_totals(
            ((it.status, it.total_price_cents) for it in items), self.cfg.tax_rate
        )
        order.status = state.derive_order_status(order.status, (it.status for it in items))
        if order.status == OrderStatus.ready.value and previous != order.status:
            order.ready_at = now
        order.updated_at = now
        session.add(order)
        return previous

    @staticmethod
    def _next_pickup_seq(session: Session, kitchen_id: int) -> int:
        # incremento atomico lato DB: niente read-modify-write sul contatore
        session.exec(
            update(Restaurant).where(Restaurant.id == kitchen_id).values(next_seq=Restaurant.next_seq + 1)
        )
        return int(session.exec(select(Restaurant.next_seq).where(Restaurant.id == kitchen_id)).one()) - 1

    def _open_ticket(self, session: Session, order: Order, kitchen_id: int) -> KitchenTicket:
        tk = session.exec(
            select(KitchenTicket).where(KitchenTicket.order_id == order.id, KitchenTicket.kitchen_id == kitchen_id)
        ).first()
        if tk is None:
            tk = KitchenTicket(order_id=order.id, kitchen_id=kitchen_id, pickup_seq=self._next_pickup_seq(session, kitchen_id))
        elif tk.status != TicketStatus.pending.value:
            # nuovo giro: la cucina deve ri-accettare
            tk.status = TicketStatus.pending.value
        session.add(tk)
        return tk

    @staticmethod
    def _log(session: Session, order_id: int, kitchen_id: int, action: str, actor: int, notes: Optional[str] = None):
        session.add(OrderKitchenLog(order_id=order_id, kitchen_id=kitchen_id, action=action, performed_by=actor, notes=notes))

    def _add_round(
        self, session: Session, order: Order, groups: Sequence[KitchenGroup], round_no: int, actor: int, now: datetime,
    ) -> Dict[int, List[OrderItem]]:
        created: Dict[int, List[OrderItem]] = {}
        for g in groups:
            tk = self._open_ticket(session, order, g.kitchen_id)
            for ln in g.lines:
                it = OrderItem(
                    order_id=order.id,
                    menu_item_id=ln.menu_item_id,
                    round_no=round_no,
                    quantity=ln.quantity,
                    unit_price_cents=ln.unit_price_cents,
                    total_price_cents=ln.total_price_cents,
                    target_kitchen_id=g.kitchen_id,
                    special_instructions=ln.special_instructions,
                    updated_at=now,
                )
                session.add(it)
                created.setdefault(g.kitchen_id, []).append(it)
            self._log(session, order.id, g.kitchen_id, "assigned", actor, f"round {round_no}, pickup {g.prefix}-{tk.pickup_seq}")
        session.flush()
        return created

    def _notify(
        self,
        session: Session,
        user_ids: Iterable[int],
        ntype: NotificationType,
        ctx: Dict[str, Any],
        data: Dict[str, Any],
        now: datetime,
        exclude: Optional[int] = None,
    ) -> Optional[Dict[str, str]]:
        recipients = [u for u in user_ids if u is not None and u != exclude]
        rendered = self.notifications.render(ntype.value, ctx)
        if recipients:
            self.notifications.create_for_users(session, recipients, rendered, data=data, now=now)
        return rendered

    def _kitchen_recipients(self, session: Session, kitchen: Restaurant) -> List[int]:
        return kitchen_staff_ids(session, kitchen.id, [kitchen_role_for(kitchen.restaurant_type).value])

    # --- payload ----------------------------------------------------------------

    def order_payload(self, session: Session, order: Order, items: Optional[Sequence[OrderItem]] = None) -> dict:
        items = list(items) if items is not None else self._items(session, order.id)
        names = self._menu_names(session, [it.menu_item_id for it in items])
        tickets = session.exec(select(KitchenTicket).where(KitchenTicket.order_id == order.id)).all()
        kitchens = self._kitchens(session, {it.target_kitchen_id for it in items} | {t.kitchen_id for t in tickets})
        table = session.get(RestaurantTable, order.table_id) if order.table_id else None
        return {
            "id": order.id,
            "order_number": order.order_number,
            "restaurant_id": order.restaurant_id,
            "table_id": order.table_id,
            "table_number": table.table_number if table else None,
            "user_id": order.user_id,
            "waiter_id": order.waiter_id,
            "customer_info": order.customer_info,
            "order_type": order.order_type,
            "status": order.status,
            "total_cents": order.total_cents,
            "tax_cents": order.tax_cents,
            "special_instructions": order.special_instructions,
            "placed_at": _iso(order.placed_at),
            "ready_at": _iso(order.ready_at),
            "served_at": _iso(order.served_at),
            "paid_at": _iso(order.paid_at),
            "cancelled_at": _iso(order.cancelled_at),
            "updated_at": _iso(order.updated_at),
            "items": [self._item_payload(it, names, kitchens) for it in items],
            "tickets": [
                {
                    "kitchen_id": t.kitchen_id,
                    "kitchen_name": kitchens[t.kitchen_id].name if t.kitchen_id in kitchens else None,
                    "pickup_number": self._pickup_number(kitchens.get(t.kitchen_id), t.pickup_seq),
                    "status": t.status,
                    "estimated_minutes": t.estimated_minutes,
                    "notes": t.notes,
                }
                for t in tickets
            ],
        }

    @staticmethod
    def _pickup_number(kitchen: Optional[Restaurant], seq: int) -> str:
        return f"{kitchen.prefix.upper()}-{seq}" if kitchen else str(seq)

    @staticmethod
    def _menu_names(session: Session, ids: Iterable[int]) -> Dict[int, str]:
        ids = list(set(ids))
        if not ids:
            return {}
        return {m.id: m.name for m in session.exec(select(MenuItem).where(MenuItem.id.in_(ids))).all()}

    @staticmethod
    def _kitchens(session: Session, ids: Iterable[int]) -> Dict[int, Restaurant]:
        ids = list(set(ids))
        if not ids:
            return {}
        return {k.id: k for k in session.exec(select(Restaurant).where(Restaurant.id.in_(ids))).all()}

    @staticmethod
    def _item_payload(it: OrderItem, names: Mapping[int, str], kitchens: Mapping[int, Restaurant]) -> dict:
        k = kitchens.get(it.target_kitchen_id)
        return {
            "id": it.id,
            "menu_item_id": it.menu_item_id,
            "name": names.get(it.menu_item_id, f"Item {it.menu_item_id}"),
            "round_no": it.round_no,
            "quantity": it.quantity,
            "unit_price_cents": it.unit_price_cents,
            "total_price_cents": it.total_price_cents,
            "status": it.status,
            "target_kitchen_id": it.target_kitchen_id,
            "kitchen_type": k.restaurant_type if k else None,
            "special_instructions": it.special_instructions,
            "chef_notes": it.chef_notes,
            "started_at": _iso(it.started_at),
            "completed_at": _iso(it.completed_at),
            "served_at": _iso(it.served_at),
            "cancelled_at": _iso(it.cancelled_at),
            "cancelled_by": it.cancelled_by,
            "cancellation_reason": it.cancellation_reason,
        }

    def _kitchen_batch(
        self, session: Session, order: Order, kitchen: Restaurant, items: Sequence[OrderItem], round_no: int,
    ) -> dict:
        tk = session.exec(
            select(KitchenTicket).where(KitchenTicket.order_id == order.id, KitchenTicket.kitchen_id == kitchen.id)
        ).first()
        names = self._menu_names(session, [it.menu_item_id for it in items])
        table = session.get(RestaurantTable, order.table_id) if order.table_id else None
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "order_type": order.order_type,
            "table_id": order.table_id,
            "table_number": table.table_number if table else None,
            "kitchen_id": kitchen.id,
            "kitchen_name": kitchen.name,
            "kitchen_type": kitchen.restaurant_type,
            "pickup_number": self._pickup_number(kitchen, tk.pickup_seq) if tk else None,
            "round_no": round_no,
            "items": [self._item_payload(it, names, {kitchen.id: kitchen}) for it in items],
        }

    def _table_change(self, session: Session, order: Order, before: Optional[str]) -> List[Event]:
        if not order.table_id:
            return []
        after = tables.table_status(session, order.table_id)
        if after == before:
            return []
        table = session.get(RestaurantTable, order.table_id)
        return [table_event(tables.table_payload(session, table, after))]

    def _status_event(self, order: Order, previous: str, now: datetime, rendered=None, kitchen_types=()) -> Event:
        data = _with_notice({
            "order_id": order.id,
            "order_number": order.order_number,
            "status": order.status,
            "previous_status": previous,
            "total_cents": order.total_cents,
            "tax_cents": order.tax_cents,
        }, rendered, now)
        return waiter_and_managers_event(ORDER_STATUS_UPDATED, self.waiter_of(order), data, order.id, kitchen_types)

    def _ready_notice(self, session: Session, order: Order, actor: int, now: datetime) -> Dict[str, str]:
        return self._notify(
            session, [self.waiter_of(order)], NotificationType.order_update,
            {"title": "Order ready", "order_number": order.order_number, "detail": "all items are ready to serve"},
            {"order_id": order.id, "status": order.status, "route": f"/waiter/orders/{order.id}"},
            now, exclude=actor,
        )

    def _submission_events(
        self,
        session: Session,
        order: Order,
        created: Mapping[int, List[OrderItem]],
        round_no: int,
        first: bool,
        now: datetime,
    ) -> List[Event]:
        """Un evento (e le notifiche per lo staff assegnato) per ogni cucina coinvolta."""
        name = NEW_KITCHEN_ORDER if first else ORDER_ITEMS_ADDED
        ntype = NotificationType.new_order if first else NotificationType.items_added
        events = []
        for kitchen_id, items in created.items():
            kitchen = session.get(Restaurant, kitchen_id)
            data = self._kitchen_batch(session, order, kitchen, items, round_no)
            rendered = self._notify(
                session, self._kitchen_recipients(session, kitchen), ntype,
                {
                    "kitchen_type": kitchen.restaurant_type,
                    "kitchen_name": kitchen.name,
                    "order_number": order.order_number,
                    "table_number": data["table_number"],
                    "item_count": sum(it.quantity for it in items),
                },
                {
                    "order_id": order.id,
                    "kitchen_id": kitchen.id,
                    "round_no": round_no,
                    "route": f"/kitchen/orders/{order.id}",
                },
                now,
            )
            events.append(kitchen_event(name, kitchen.restaurant_type, _with_notice(data, rendered, now), order.id))
        return events

    # --- operazioni -------------------------------------------------------------

    def create_order(
        self,
        session: Session,
        identity: Identity,
        restaurant_id: int,
        items: Sequence[Mapping[str, Any]],
        table_id: Optional[int] = None,
        order_type: str = OrderType.dine_in.value,
        customer_info: Optional[dict] = None,
        special_instructions: Optional[str] = None,
        waiter_id: Optional[int] = None,
    ) -> Outcome:
        identity.require(Capability.submit_order)
        if order_type not in ORDER_TYPES:
            raise ValidationError(f"order_type must be one of {sorted(ORDER_TYPES)}")
        if order_type == OrderType.dine_in.value and not table_id:
            raise ValidationError("table_id is required for dine_in orders")

        with _transaction(session):
            if not session.get(Restaurant, restaurant_id):
                raise NotFoundError(f"Restaurant {restaurant_id} not found", code="RESTAURANT_NOT_FOUND")

            before = None
            if table_id:
                table = tables.get_table(session, table_id, for_update=True)
                if table.restaurant_id != restaurant_id:
                    raise NotFoundError(f"Table {table_id} not found in restaurant {restaurant_id}", code="TABLE_NOT_FOUND")
                busy = tables.open_order_for_table(session, table_id)
                if busy:
                    raise ConflictError(
                        f"Table {table.table_number} already has open order {busy.order_number}",
                        code="TABLE_UNAVAILABLE",
                    )
                before = tables.table_status(session, table_id)

            # routing prima di qualsiasi scrittura: se fallisce non resta nulla
            groups = self.router.route(session, restaurant_id, items)

            now = utcnow()
            if identity.role == Role.waiter:
                waiter_id = identity.user_id
            order = Order(
                restaurant_id=restaurant_id,
                table_id=table_id,
                user_id=identity.user_id,
                waiter_id=waiter_id,
                customer_info=customer_info,
                order_type=order_type,
                special_instructions=special_instructions,
                placed_at=now,
                updated_at=now,
            )
            session.add(order)
            session.flush()
            order.order_number = f"{self.cfg.order_number_prefix}{order.id:06d}"

            created = self._add_round(session, order, groups, 1, identity.user_id, now)
            items_now = self._items(session, order.id)
            self._recompute(session, order, items_now, now)

            events = self._submission_events(session, order, created, 1, True, now)
            events += self._table_change(session, order, before)
            payload = self.order_payload(session, order, items_now)

        log.info("Order %s created: %d item(s) for kitchens %s", order.order_number, len(items_now), list(created))
        return Outcome(payload, events)

    def submit_round(self, session: Session, order_id: int, identity: Identity, items: Sequence[Mapping[str, Any]]) -> Outcome:
        identity.require(Capability.submit_order)
        with _transaction(session):
            order = self._lock_order(session, order_id)
            if identity.role == Role.customer and order.user_id != identity.user_id:
                raise ForbiddenError("Customers can only add items to their own orders")
            if order.status in state.CLOSED_ORDER:
                raise ConflictError(f"Order {order.order_number} is already {order.status}", code="TABLE_CONFLICT")

            existing = self._items(session, order.id)
            groups = self.router.route(session, order.restaurant_id, items)

            now = utcnow()
            round_no = max((it.round_no for it in existing), default=0) + 1
            previous = order.status
            if order.status == OrderStatus.served.value:
                # unica riapertura ammessa: un nuovo giro sullo stesso tavolo
                order.status = OrderStatus.preparing.value
                order.served_at = None

            created = self._add_round(session, order, groups, round_no, identity.user_id, now)
            items_now = self._items(session, order.id)
            self._recompute(session, order, items_now, now)

            events = self._submission_events(session, order, created, round_no, not existing, now)
            if order.status != previous:
                events.append(self._status_event(order, previous, now))
            payload = self.order_payload(session, order, items_now)

        log.info("Order %s round %d: %d new item(s)", order.order_number, round_no, sum(len(v) for v in created.values()))
        return Outcome(payload, events)

    def update_item_status(
        self,
        session: Session,
        order_id: int,
        item_id: int,
        status: str,
        identity: Identity,
        chef_notes: Optional[str] = None,
    ) -> Outcome:
        identity.require(Capability.update_item_status)
        new = state.normalize_item_status(status)

        with _transaction(session):
            order = self._lock_order(session, order_id)
            it = self._item(session, order, item_id)
            self._require_kitchen_member(session, identity, it.target_kitchen_id)
            state.check_item_transition(it.status, new)

            now = utcnow()
            old = it.status
            # solo i campi di competenza della cucina
            it.status = new
            if new in (ItemStatus.preparing.value, ItemStatus.ready.value, ItemStatus.served.value) and not it.started_at:
                it.started_at = now
            if new in (ItemStatus.ready.value, ItemStatus.served.value) and not it.completed_at:
                it.completed_at = now
            if new == ItemStatus.served.value:
                it.served_at = now
            if chef_notes is not None:
                it.chef_notes = chef_notes
            it.updated_at = now
            session.add(it)

            items_now = self._items(session, order.id)
            previous = self._recompute(session, order, items_now, now)

            names = self._menu_names(session, [it.menu_item_id])
            item_name = names.get(it.menu_item_id, f"Item {it.menu_item_id}")
            waiter = self.waiter_of(order)
            rendered = self._notify(
                session, [waiter], NotificationType.order_update,
                {"title": f"Item {new}", "order_number": order.order_number, "detail": f"{it.quantity}x {item_name} is {new}"},
                {"order_id": order.id, "item_id": it.id, "status": new, "route": f"/waiter/orders/{order.id}"},
                now, exclude=identity.user_id,
            )
            data = _with_notice({
                "order_id": order.id,
                "order_number": order.order_number,
                "item_id": it.id,
                "menu_item_id": it.menu_item_id,
                "item_name": item_name,
                "status": new,
                "previous_status": old,
                "kitchen_id": it.target_kitchen_id,
                "chef_notes": it.chef_notes,
                "order_status": order.status,
            }, rendered, now)
            events = [waiter_and_managers_event(ORDER_ITEM_STATUS_UPDATED, waiter, data, order.id)]

            if order.status != previous:
                ready = self._ready_notice(session, order, identity.user_id, now) if order.status == OrderStatus.ready.value else None
                events.append(self._status_event(order, previous, now, ready))
            payload = self.order_payload(session, order, items_now)

        log.info("Order %s item %s: %s -> %s", order.order_number, it.id, old, new)
        return Outcome(payload, events)

    def accept_order(
        self,
        session: Session,
        kitchen_id: int,
        order_id: int,
        identity: Identity,
        estimated_minutes: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Outcome:
        identity.require(Capability.kitchen_ack)
        if estimated_minutes is not None and estimated_minutes < 0:
            raise ValidationError("estimated_minutes must be positive")

        with _transaction(session):
            kitchen = self._kitchen(session, kitchen_id)
            self._require_kitchen_member(session, identity, kitchen.id)
            order = self._lock_order(session, order_id)
            tk = session.exec(
                select(KitchenTicket).where(KitchenTicket.order_id == order.id, KitchenTicket.kitchen_id == kitchen.id)
            ).first()
            if not tk:
                raise NotFoundError(f"Order {order_id} has no items for kitchen {kitchen_id}", code="ORDER_NOT_FOUND")

            items_now = self._items(session, order.id)
            pending = [it for it in items_now if it.target_kitchen_id == kitchen.id and it.status == ItemStatus.pending.value]
            if not pending:
                raise ConflictError(f"Nothing to accept for kitchen {kitchen.name}", code="INVALID_TRANSITION")

            now = utcnow()
            for it in pending:
                it.status = ItemStatus.accepted.value
                it.updated_at = now
                session.add(it)
            tk.status = TicketStatus.accepted.value
            tk.accepted_at = now
            tk.estimated_minutes = estimated_minutes
            tk.notes = notes
            session.add(tk)
            self._log(session, order.id, kitchen.id, "accepted", identity.user_id, notes)
            previous = self._recompute(session, order, items_now, now)

            waiter = self.waiter_of(order)
            rendered = self._notify(
                session, [waiter], NotificationType.order_accepted,
                {"kitchen_name": kitchen.name, "order_number": order.order_number, "estimated_minutes": estimated_minutes},
                {"order_id": order.id, "kitchen_id": kitchen.id, "estimated_minutes": estimated_minutes,
                 "route": f"/waiter/orders/{order.id}"},
                now, exclude=identity.user_id,
            )
            data = _with_notice({
                "order_id": order.id,
                "order_number": order.order_number,
                "kitchen_id": kitchen.id,
                "kitchen_name": kitchen.name,
                "kitchen_type": kitchen.restaurant_type,
                "pickup_number": self._pickup_number(kitchen, tk.pickup_seq),
                "estimated_minutes": estimated_minutes,
                "notes": notes,
                "item_ids": [it.id for it in pending],
                "order_status": order.status,
            }, rendered, now)
            events = [waiter_only_event(KITCHEN_ORDER_ACCEPTED, waiter, data, order.id)]
            if order.status != previous:
                events.append(self._status_event(order, previous, now))
            payload = self.order_payload(session, order, items_now)

        log.info("Order %s accepted by %s (%d item(s))", order.order_number, kitchen.name, len(pending))
        return Outcome(payload, events)

    def reject_order(self, session: Session, kitchen_id: int, order_id: int, identity: Identity, reason: str) -> Outcome:
        identity.require(Capability.kitchen_ack)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required")

        with _transaction(session):
            kitchen = self._kitchen(session, kitchen_id)
            self._require_kitchen_member(session, identity, kitchen.id)
            order = self._lock_order(session, order_id)
            tk = session.exec(
                select(KitchenTicket).where(KitchenTicket.order_id == order.id, KitchenTicket.kitchen_id == kitchen.id)
            ).first()
            if not tk:
                raise NotFoundError(f"Order {order_id} has no items for kitchen {kitchen_id}", code="ORDER_NOT_FOUND")

            items_now = self._items(session, order.id)
            # quello che è già pronto o servito non si può più rifiutare
            rejectable = [it for it in items_now if it.target_kitchen_id == kitchen.id and it.status in OUTSTANDING_ITEM]
            if not rejectable:
                raise ConflictError(f"Nothing to reject for kitchen {kitchen.name}", code="INVALID_TRANSITION")

            now = utcnow()
            for it in rejectable:
                it.status = ItemStatus.rejected.value
                it.cancelled_at = now
                it.cancelled_by = identity.user_id
                it.cancellation_reason = reason
                it.updated_at = now
                session.add(it)
            tk.status = TicketStatus.rejected.value
            tk.rejected_at = now
            tk.notes = reason
            session.add(tk)
            self._log(session, order.id, kitchen.id, "rejected", identity.user_id, reason)
            previous = self._recompute(session, order, items_now, now)

            waiter = self.waiter_of(order)
            rendered = self._notify(
                session, [waiter], NotificationType.order_rejected,
                {"kitchen_name": kitchen.name, "order_number": order.order_number, "reason": reason},
                {"order_id": order.id, "kitchen_id": kitchen.id, "reason": reason,
                 "item_ids": [it.id for it in rejectable], "route": f"/waiter/orders/{order.id}"},
                now, exclude=identity.user_id,
            )
            data = _with_notice({
                "order_id": order.id,
                "order_number": order.order_number,
                "kitchen_id": kitchen.id,
                "kitchen_name": kitchen.name,
                "kitchen_type": kitchen.restaurant_type,
                "reason": reason,
                "item_ids": [it.id for it in rejectable],
                "order_status": order.status,
                "total_cents": order.total_cents,
            }, rendered, now)
            events = [waiter_only_event(KITCHEN_ORDER_REJECTED, waiter, data, order.id)]
            if order.status != previous:
                ready = self._ready_notice(session, order, identity.user_id, now) if order.status == OrderStatus.ready.value else None
                events.append(self._status_event(order, previous, now, ready))
            payload = self.order_payload(session, order, items_now)

        log.info("Order %s rejected by %s: %s", order.order_number, kitchen.name, reason)
        return Outcome(payload, events)

    def cancel_item(self, session: Session, order_id: int, item_id: int, identity: Identity, reason: str) -> Outcome:
        identity.require(Capability.cancel_item)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A cancellation reason is required")

        with _transaction(session):
            order = self._lock_order(session, order_id)
            it = self._item(session, order, item_id)
            if it.status in state.TERMINAL_ITEM:
                raise ConflictError(f"Item is already {it.status}", code="INVALID_TRANSITION")

            now = utcnow()
            old = it.status
            it.status = ItemStatus.cancelled.value
            it.cancelled_at = now
            it.cancelled_by = identity.user_id
            it.cancellation_reason = reason
            it.updated_at = now
            session.add(it)

            items_now = self._items(session, order.id)
            previous = self._recompute(session, order, items_now, now)

            kitchen = session.get(Restaurant, it.target_kitchen_id)
            item_name = self._menu_names(session, [it.menu_item_id]).get(it.menu_item_id, f"Item {it.menu_item_id}")
            rendered = self._notify(
                session, self._kitchen_recipients(session, kitchen), NotificationType.order_update,
                {"title": "Item cancelled", "order_number": order.order_number,
                 "detail": f"{it.quantity}x {item_name} cancelled: {reason}"},
                {"order_id": order.id, "item_id": it.id, "kitchen_id": kitchen.id, "reason": reason,
                 "route": f"/kitchen/orders/{order.id}"},
                now, exclude=identity.user_id,
            )
            data = _with_notice({
                "order_id": order.id,
                "order_number": order.order_number,
                "item_id": it.id,
                "menu_item_id": it.menu_item_id,
                "item_name": item_name,
                "status": it.status,
                "previous_status": old,
                "kitchen_id": kitchen.id,
                "reason": reason,
                "order_status": order.status,
                "total_cents": order.total_cents,
            }, rendered, now)
            events = [waiter_and_managers_event(
                ORDER_ITEM_STATUS_UPDATED, self.waiter_of(order), data, order.id, (kitchen.restaurant_type,),
            )]
            if order.status != previous:
                ready = self._ready_notice(session, order, identity.user_id, now) if order.status == OrderStatus.ready.value else None
                events.append(self._status_event(order, previous, now, ready))
            payload = self.order_payload(session, order, items_now)

        log.info("Order %s item %s cancelled by %s: %s", order.order_number, it.id, identity.user_id, reason)
        return Outcome(payload, events)

    def transfer_item(
        self,
        session: Session,
        order_id: int,
        item_id: int,
        to_kitchen_id: int,
        identity: Identity,
        reason: Optional[str] = None,
    ) -> Outcome:
        identity.require(Capability.kitchen_ack)

        with _transaction(session):
            order = self._lock_order(session, order_id)
            it = self._item(session, order, item_id)
            self._require_kitchen_member(session, identity, it.target_kitchen_id)
            if it.status != ItemStatus.pending.value:
                raise ConflictError(f"Only pending items can be transferred (item is {it.status})", code="INVALID_TRANSITION")
            target = self._kitchen(session, to_kitchen_id)
            if target.id == it.target_kitchen_id:
                raise ValidationError("Item is already routed to that kitchen")
            source = session.get(Restaurant, it.target_kitchen_id)

            now = utcnow()
            # unica operazione che cambia target_kitchen_id
            it.target_kitchen_id = target.id
            it.updated_at = now
            session.add(it)
            tk = self._open_ticket(session, order, target.id)
            note = f"from {source.name}" + (f": {reason}" if reason else "")
            self._log(session, order.id, target.id, "transferred", identity.user_id, note)
            session.flush()

            items_now = self._items(session, order.id)
            previous = self._recompute(session, order, items_now, now)

            item_name = self._menu_names(session, [it.menu_item_id]).get(it.menu_item_id, f"Item {it.menu_item_id}")
            ctx = {"order_number": order.order_number, "item_name": item_name,
                   "from_kitchen": source.name, "to_kitchen": target.name}
            ndata = {"order_id": order.id, "item_id": it.id, "from_kitchen_id": source.id,
                     "to_kitchen_id": target.id, "reason": reason, "route": f"/kitchen/orders/{order.id}"}
            rendered = self._notify(
                session, self._kitchen_recipients(session, target) + [self.waiter_of(order)],
                NotificationType.order_transfer, ctx, ndata, now, exclude=identity.user_id,
            )
            data = _with_notice({
                "order_id": order.id,
                "order_number": order.order_number,
                "item_id": it.id,
                "item_name": item_name,
                "from_kitchen_id": source.id,
                "from_kitchen_type": source.restaurant_type,
                "to_kitchen_id": target.id,
                "to_kitchen_type": target.restaurant_type,
                "pickup_number": self._pickup_number(target, tk.pickup_seq),
                "reason": reason,
            }, rendered, now)
            events = [transfer_event(source.restaurant_type, target.restaurant_type, self.waiter_of(order), data, order.id)]
            if order.status != previous:
                events.append(self._status_event(order, previous, now))
            payload = self.order_payload(session, order, items_now)

        log.info("Order %s item %s transferred %s -> %s", order.order_number, it.id, source.name, target.name)
        return Outcome(payload, events)

    def close_order(self, session: Session, order_id: int, status: str, identity: Identity, reason: Optional[str] = None) -> Outcome:
        identity.require(Capability.close_order)
        target = str(status or "").strip().lower()

        with _transaction(session):
            order = self._lock_order(session, order_id)
            state.check_close(order.status, target, reason)
            before = tables.table_status(session, order.table_id) if order.table_id else None

            now = utcnow()
            previous = order.status
            items_now = self._items(session, order.id)
            touched_kitchens = set()
            if target == OrderStatus.served.value:
                for it in items_now:
                    if it.status == ItemStatus.ready.value:
                        it.status = ItemStatus.served.value
                        it.served_at = now
                        it.updated_at = now
                        session.add(it)
                order.served_at = now
            elif target == OrderStatus.paid.value:
                order.paid_at = now
            else:
                for it in items_now:
                    if it.status not in state.TERMINAL_ITEM:
                        it.status = ItemStatus.cancelled.value
                        it.cancelled_at = now
                        it.cancelled_by = identity.user_id
                        it.cancellation_reason = reason.strip()
                        it.updated_at = now
                        session.add(it)
                        touched_kitchens.add(it.target_kitchen_id)
                order.cancelled_at = now

            order.status = target
            self._recompute(session, order, items_now, now)
            session.flush()

            rendered = self._notify(
                session, [self.waiter_of(order)], NotificationType.order_update,
                {"title": f"Order {target}", "order_number": order.order_number,
                 "detail": f"marked {target}" + (f" ({reason.strip()})" if target == OrderStatus.cancelled.value else "")},
                {"order_id": order.id, "status": target, "route": f"/waiter/orders/{order.id}"},
                now, exclude=identity.user_id,
            )
            kitchen_types = sorted({k.restaurant_type for k in self._kitchens(session, touched_kitchens).values()})
            events = [self._status_event(order, previous, now, rendered, kitchen_types)]
            events += self._table_change(session, order, before)
            payload = self.order_payload(session, order, items_now)

        log.info("Order %s %s -> %s by %s", order.order_number, previous, target, identity.user_id)
        return Outcome(payload, events)

    # --- lettura ----------------------------------------------------------------

    def _assigned_kitchens(self, session: Session, identity: Identity) -> List[int]:
        return list(session.exec(
            select(RestaurantStaff.restaurant_id).where(
                RestaurantStaff.user_id == identity.user_id,
                RestaurantStaff.role == identity.role.value,
                RestaurantStaff.is_active == True,  # noqa: E712
            )
        ).all())

    def _can_view(self, session: Session, identity: Identity, order: Order) -> bool:
        if can(identity.role, Capability.view_all_orders):
            return True
        if identity.role in (Role.chef, Role.bartender):
            kitchens = self._assigned_kitchens(session, identity)
            return bool(kitchens) and session.exec(
                select(OrderItem.id).where(OrderItem.order_id == order.id, OrderItem.target_kitchen_id.in_(kitchens))
            ).first() is not None
        return identity.user_id in (order.user_id, order.waiter_id)

    def get_order(self, session: Session, order_id: int, identity: Identity) -> dict:
        order = session.get(Order, order_id)
        if not order:
            raise NotFoundError(f"Order {order_id} not found", code="ORDER_NOT_FOUND")
        if not self._can_view(session, identity, order):
            raise ForbiddenError("You cannot view this order")
        return self.order_payload(session, order)

    def list_orders(
        self,
        session: Session,
        identity: Identity,
        status: Optional[str] = None,
        restaurant_id: Optional[int] = None,
        table_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[dict]:
        stmt = select(Order)
        if can(identity.role, Capability.view_all_orders):
            pass
        elif identity.role in (Role.chef, Role.bartender):
            kitchens = self._assigned_kitchens(session, identity)
            if not kitchens:
                return []
            stmt = stmt.where(Order.id.in_(
                select(OrderItem.order_id).where(OrderItem.target_kitchen_id.in_(kitchens))
            ))
        elif identity.role == Role.waiter:
            stmt = stmt.where((Order.waiter_id == identity.user_id) | (Order.user_id == identity.user_id))
        else:
            stmt = stmt.where(Order.user_id == identity.user_id)

        if status:
            stmt = stmt.where(Order.status.in_([s.strip() for s in status.split(",") if s.strip()]))
        if restaurant_id is not None:
            stmt = stmt.where(Order.restaurant_id == restaurant_id)
        if table_id is not None:
            stmt = stmt.where(Order.table_id == table_id)
        stmt = stmt.order_by(Order.placed_at.desc(), Order.id.desc()).offset(max(0, offset)).limit(max(1, min(limit, 100)))
        return [self.order_payload(session, o) for o in session.exec(stmt).all()]

    def kitchen_queue(self, session: Session, kitchen_id: int, identity: Identity, include_ready: bool = True) -> List[dict]:
        """Ordini con item ancora aperti per questa cucina, in ordine di numero ritiro."""
        kitchen = self._kitchen(session, kitchen_id)
        self._require_kitchen_member(session, identity, kitchen.id)
        wanted = OUTSTANDING_ITEM + ((ItemStatus.ready.value,) if include_ready else ())

        rows = session.exec(
            select(OrderItem, Order, KitchenTicket)
            .join(Order, Order.id == OrderItem.order_id)
            .join(KitchenTicket, (KitchenTicket.order_id == Order.id) & (KitchenTicket.kitchen_id == kitchen.id))
            .where(
                OrderItem.target_kitchen_id == kitchen.id,
                OrderItem.status.in_(wanted),
                Order.status.not_in(list(state.CLOSED_ORDER)),
            )
            .order_by(KitchenTicket.pickup_seq, OrderItem.id)
        ).all()

        names = self._menu_names(session, [it.menu_item_id for it, _, _ in rows])
        view: Dict[int, dict] = {}
        for it, order, tk in rows:
            entry = view.get(order.id)
            if entry is None:
                entry = view[order.id] = {
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "order_type": order.order_type,
                    "table_id": order.table_id,
                    "pickup_number": self._pickup_number(kitchen, tk.pickup_seq),
                    "ticket_status": tk.status,
                    "estimated_minutes": tk.estimated_minutes,
                    "placed_at": _iso(order.placed_at),
                    "items": [],
                }
            entry["items"].append(self._item_payload(it, names, {kitchen.id: kitchen}))
        return list(view.values())

    def kitchen_summary(self, session: Session, kitchen_id: int, identity: Identity) -> List[dict]:
        """Quantità ancora da preparare per piatto (pending/accepted/preparing)."""
        kitchen = self._kitchen(session, kitchen_id)
        self._require_kitchen_member(session, identity, kitchen.id)
        rows = session.exec(
            select(MenuItem.id, MenuItem.name, func.sum(OrderItem.quantity).label("total_qty"))
            .select_from(OrderItem)
            .join(Order, Order.id == OrderItem.order_id)
            .join(MenuItem, MenuItem.id == OrderItem.menu_item_id)
            .where(
                OrderItem.target_kitchen_id == kitchen.id,
                OrderItem.status.in_(OUTSTANDING_ITEM),
                Order.status.not_in(list(state.CLOSED_ORDER)),
            )
            .group_by(MenuItem.id, MenuItem.name)
            .order_by(func.sum(OrderItem.quantity).desc(), MenuItem.name.asc())
        ).all()
        return [{"menu_item_id": mid, "name": n, "total_qty": int(q or 0)} for (mid, n, q) in rows]
