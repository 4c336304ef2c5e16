# hotelpos/orders/state.py
"""Regole pure del ciclo di vita: nessun accesso al DB, testabili in isolamento."""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Tuple

from ..errors import ConflictError, ValidationError
from ..models import ItemStatus, OrderStatus

# percorso in avanti degli item; salti in avanti ammessi
ITEM_FLOW = (
    ItemStatus.pending.value,
    ItemStatus.accepted.value,
    ItemStatus.preparing.value,
    ItemStatus.ready.value,
    ItemStatus.served.value,
)
ITEM_RANK = {s: i for i, s in enumerate(ITEM_FLOW)}

INACTIVE_ITEM = {ItemStatus.cancelled.value, ItemStatus.rejected.value}
TERMINAL_ITEM = INACTIVE_ITEM | {ItemStatus.served.value}

ITEM_ALIASES = {"ready_to_serve": ItemStatus.ready.value}

# stati impostati solo da un'azione esplicita dello staff
EXPLICIT_ORDER = {OrderStatus.served.value, OrderStatus.paid.value, OrderStatus.cancelled.value}
CLOSED_ORDER = {OrderStatus.paid.value, OrderStatus.cancelled.value}
OPEN_ORDER = (
    OrderStatus.pending.value,
    OrderStatus.preparing.value,
    OrderStatus.ready.value,
    OrderStatus.served.value,
)


def normalize_item_status(value: str) -> str:
    """Stato richiesto dall'endpoint di update; cancel/reject hanno endpoint propri."""
    s = str(value or "").strip().lower()
    s = ITEM_ALIASES.get(s, s)
    if s in INACTIVE_ITEM:
        raise ValidationError(f"Status '{s}' cannot be set here; use the dedicated action")
    if s not in ITEM_RANK:
        raise ValidationError(f"Unknown item status '{value}'")
    return s


def check_item_transition(current: str, new: str) -> None:
    if current in INACTIVE_ITEM:
        raise ConflictError(f"Item is {current}", code="INVALID_TRANSITION")
    if ITEM_RANK[new] <= ITEM_RANK[current]:
        raise ConflictError(f"Cannot move item from {current} to {new}", code="INVALID_TRANSITION")


def derive_order_status(current: str, item_statuses: Iterable[str]) -> str:
    """
    Stato ordine dagli item attivi (non cancellati/rifiutati):
    almeno un pending -> pending; tutti ready/served -> ready; altrimenti preparing.
    served/paid/cancelled non vengono mai sovrascritti; senza item attivi resta com'è.
    """
    if current in EXPLICIT_ORDER:
        return current
    active = [s for s in item_statuses if s not in INACTIVE_ITEM]
    if not active:
        return current
    if any(s == ItemStatus.pending.value for s in active):
        return OrderStatus.pending.value
    if all(s in (ItemStatus.ready.value, ItemStatus.served.value) for s in active):
        return OrderStatus.ready.value
    return OrderStatus.preparing.value


def compute_totals(lines: Iterable[Tuple[str, int]], tax_rate: float) -> Tuple[int, int]:
    """(status, total_price_cents) -> (total_cents, tax_cents) sui soli item attivi."""
    total = sum(int(cents or 0) for status, cents in lines if status not in INACTIVE_ITEM)
    tax = (Decimal(total) * Decimal(str(tax_rate))).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return total, int(tax)


def check_close(current: str, target: str, reason: Optional[str] = None) -> None:
    """Chiusure esplicite: served richiede ready, paid richiede served, cancel prima di served."""
    if target == OrderStatus.served.value:
        if current != OrderStatus.ready.value:
            raise ConflictError(f"Order must be ready to be served (is {current})", code="INVALID_TRANSITION")
    elif target == OrderStatus.paid.value:
        if current != OrderStatus.served.value:
            raise ConflictError(f"Order must be served to be paid (is {current})", code="INVALID_TRANSITION")
    elif target == OrderStatus.cancelled.value:
        if not (reason or "").strip():
            raise ValidationError("A cancellation reason is required")
        if current in EXPLICIT_ORDER:
            raise ConflictError(f"Cannot cancel an order that is {current}", code="INVALID_TRANSITION")
    else:
        raise ValidationError(f"Order status must be one of served, paid, cancelled (got '{target}')")
