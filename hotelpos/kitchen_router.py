# hotelpos/kitchen_router.py
"""
Kitchen Router: partiziona le righe di un carrello per cucina di destinazione.

Il tipo cucina viene dalla categoria del menu; la cucina concreta si risolve
così, in ordine:
  1. il ristorante di contesto, se è esso stesso una cucina attiva di quel tipo;
  2. un KitchenBinding esplicito (restaurant_id, kitchen_type);
  3. l'unica cucina attiva di quel tipo, se ce n'è esattamente una.
Più cucine senza binding = errore (AMBIGUOUS_KITCHEN), mai "la prima che capita".
Nessun side effect: la persistenza la fa l'Order Aggregate.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .errors import ConflictError, NotFoundError, ValidationError
from .models import KitchenBinding, KitchenType, MenuCategory, MenuItem, Restaurant, RestaurantStaff

log = logging.getLogger(__name__)

KITCHEN_TYPES = {k.value for k in KitchenType}


@dataclass
class RoutedLine:
    menu_item_id: int
    name: str
    quantity: int
    unit_price_cents: int
    kitchen_type: str
    special_instructions: Optional[str] = None

    @property
    def total_price_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass
class KitchenGroup:
    kitchen_id: int
    kitchen_type: str
    kitchen_name: str
    prefix: str
    lines: List[RoutedLine] = field(default_factory=list)

    @property
    def item_count(self) -> int:
        return sum(ln.quantity for ln in self.lines)


def _check_kitchen_type(value: Any) -> str:
    kt = str(value or "").strip().lower()
    if kt not in KITCHEN_TYPES:
        raise ValidationError(f"Unknown kitchen type '{value}'", code="INVALID_KITCHEN_TYPE")
    return kt


def _active_kitchens(session: Session, kitchen_type: str) -> List[Restaurant]:
    return list(session.exec(
        select(Restaurant).where(
            Restaurant.has_kitchen == True,  # noqa: E712
            Restaurant.is_active == True,  # noqa: E712
            Restaurant.restaurant_type == kitchen_type,
        ).order_by(Restaurant.id)
    ).all())


def is_active_kitchen(k: Optional[Restaurant], kitchen_type: Optional[str] = None) -> bool:
    if not k or not k.has_kitchen or not k.is_active:
        return False
    return kitchen_type is None or k.restaurant_type == kitchen_type


class KitchenRouter:
    def resolve_kitchen(self, session: Session, restaurant_id: int, kitchen_type: str) -> Restaurant:
        kitchen_type = _check_kitchen_type(kitchen_type)

        ctx = session.get(Restaurant, restaurant_id)
        if is_active_kitchen(ctx, kitchen_type):
            return ctx

        binding = session.exec(
            select(KitchenBinding).where(
                KitchenBinding.restaurant_id == restaurant_id,
                KitchenBinding.kitchen_type == kitchen_type,
            )
        ).first()
        if binding:
            bound = session.get(Restaurant, binding.kitchen_id)
            if is_active_kitchen(bound, kitchen_type):
                return bound
            # binding verso una cucina disattivata: errore di dati, niente fallback
            raise NotFoundError(
                f"Kitchen bound to restaurant {restaurant_id} for '{kitchen_type}' is not active",
                code="KITCHEN_NOT_FOUND",
            )

        candidates = _active_kitchens(session, kitchen_type)
        if not candidates:
            raise NotFoundError(f"No active '{kitchen_type}' kitchen", code="KITCHEN_NOT_FOUND")
        if len(candidates) > 1:
            raise ConflictError(
                f"{len(candidates)} active '{kitchen_type}' kitchens and no binding for restaurant {restaurant_id}",
                code="AMBIGUOUS_KITCHEN",
            )
        return candidates[0]

    def route(self, session: Session, restaurant_id: int, lines: Iterable[Mapping[str, Any]]) -> List[KitchenGroup]:
        lines = list(lines or [])
        if not lines:
            raise ValidationError("At least one item is required", code="EMPTY_SUBMISSION")

        groups: Dict[int, KitchenGroup] = {}
        resolved: Dict[str, Restaurant] = {}   # kitchen_type -> cucina (una query per tipo)

        for ln in lines:
            try:
                qty = int(ln.get("quantity", 1))
            except (TypeError, ValueError):
                raise ValidationError("quantity must be an integer")
            if qty < 1:
                raise ValidationError("quantity must be at least 1")

            mi = session.get(MenuItem, ln.get("menu_item_id"))
            if not mi or not mi.is_available:
                raise NotFoundError(f"Menu item {ln.get('menu_item_id')} not found", code="MENU_ITEM_NOT_FOUND")
            cat = session.get(MenuCategory, mi.category_id) if mi.category_id else None
            if not cat:
                raise NotFoundError(f"Category of menu item {mi.id} not found", code="CATEGORY_NOT_FOUND")

            kt = _check_kitchen_type(cat.kitchen_type)
            declared = ln.get("kitchen_type")
            if declared is not None:
                declared = _check_kitchen_type(declared)
                if declared != kt:
                    log.warning("Menu item %s declared as %s but category says %s; using category", mi.id, declared, kt)

            if kt not in resolved:
                resolved[kt] = self.resolve_kitchen(session, restaurant_id, kt)
            k = resolved[kt]

            g = groups.get(k.id)
            if g is None:
                g = groups[k.id] = KitchenGroup(
                    kitchen_id=k.id, kitchen_type=kt, kitchen_name=k.name, prefix=k.prefix,
                )
            g.lines.append(RoutedLine(
                menu_item_id=mi.id,
                name=mi.name,
                quantity=qty,
                unit_price_cents=int(mi.price_cents or 0),
                kitchen_type=kt,
                special_instructions=ln.get("special_instructions"),
            ))

        return list(groups.values())

    # --- binding esplicito ------------------------------------------------------

    def bind_kitchen(self, session: Session, restaurant_id: int, kitchen_type: str, kitchen_id: int) -> KitchenBinding:
        """Crea o sostituisce il binding; l'unicità è garantita dal vincolo, non da un check preventivo."""
        kitchen_type = _check_kitchen_type(kitchen_type)
        if not session.get(Restaurant, restaurant_id):
            raise NotFoundError(f"Restaurant {restaurant_id} not found", code="RESTAURANT_NOT_FOUND")
        k = session.get(Restaurant, kitchen_id)
        if not is_active_kitchen(k, kitchen_type):
            raise NotFoundError(f"No active '{kitchen_type}' kitchen with id {kitchen_id}", code="KITCHEN_NOT_FOUND")

        b = KitchenBinding(restaurant_id=restaurant_id, kitchen_type=kitchen_type, kitchen_id=kitchen_id)
        session.add(b)
        try:
            session.commit()
            return b
        except IntegrityError:
            # esiste già (anche se creato in parallelo): aggiorna quello
            session.rollback()
        existing = session.exec(
            select(KitchenBinding).where(
                KitchenBinding.restaurant_id == restaurant_id,
                KitchenBinding.kitchen_type == kitchen_type,
            )
        ).one()
        existing.kitchen_id = kitchen_id
        session.add(existing)
        session.commit()
        log.info("Kitchen binding %s/%s -> %s replaced", restaurant_id, kitchen_type, kitchen_id)
        return existing

    def unbind_kitchen(self, session: Session, restaurant_id: int, kitchen_type: str) -> bool:
        kitchen_type = _check_kitchen_type(kitchen_type)
        b = session.exec(
            select(KitchenBinding).where(
                KitchenBinding.restaurant_id == restaurant_id,
                KitchenBinding.kitchen_type == kitchen_type,
            )
        ).first()
        if not b:
            return False
        session.delete(b)
        session.commit()
        return True


# --- staff ------------------------------------------------------------------

def kitchen_staff_ids(session: Session, kitchen_id: int, roles: Iterable[str]) -> List[int]:
    """User id dello staff attivo assegnato alla cucina con uno dei ruoli indicati."""
    rows = session.exec(
        select(RestaurantStaff.user_id).where(
            RestaurantStaff.restaurant_id == kitchen_id,
            RestaurantStaff.is_active == True,  # noqa: E712
            RestaurantStaff.role.in_(list(roles)),
        ).order_by(RestaurantStaff.user_id)
    ).all()
    return list(dict.fromkeys(int(r) for r in rows))


def is_assigned(session: Session, kitchen_id: int, user_id: int, roles: Optional[Iterable[str]] = None) -> bool:
    stmt = select(RestaurantStaff.id).where(
        RestaurantStaff.restaurant_id == kitchen_id,
        RestaurantStaff.user_id == user_id,
        RestaurantStaff.is_active == True,  # noqa: E712
    )
    if roles is not None:
        stmt = stmt.where(RestaurantStaff.role.in_(list(roles)))
    return session.exec(stmt).first() is not None
