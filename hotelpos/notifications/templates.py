# hotelpos/notifications/templates.py
"""Testi delle notifiche: lo stesso render va nell'evento live e nella riga persistita."""
from __future__ import annotations

from typing import Any, Dict, Tuple

from jinja2 import BaseLoader, Environment

from ..models_notifications import NotificationType, Priority

_env = Environment(loader=BaseLoader(), autoescape=False, trim_blocks=True, lstrip_blocks=True)

# tipo -> (titolo, messaggio, priorità)
TEMPLATES: Dict[str, Tuple[str, str, str]] = {
    NotificationType.new_order.value: (
        "New {{ kitchen_type }} order",
        "Order #{{ order_number }}{% if table_number %} (table {{ table_number }}){% endif %}: "
        "{{ item_count }} item{{ 's' if item_count != 1 else '' }} for {{ kitchen_name }}",
        Priority.high.value,
    ),
    NotificationType.items_added.value: (
        "Items added to order",
        "Order #{{ order_number }}{% if table_number %} (table {{ table_number }}){% endif %}: "
        "{{ item_count }} new item{{ 's' if item_count != 1 else '' }} for {{ kitchen_name }}",
        Priority.high.value,
    ),
    NotificationType.order_update.value: (
        "{{ title }}",
        "Order #{{ order_number }}: {{ detail }}",
        Priority.medium.value,
    ),
    NotificationType.order_accepted.value: (
        "Order accepted",
        "{{ kitchen_name }} accepted order #{{ order_number }}"
        "{% if estimated_minutes %} (ready in ~{{ estimated_minutes }} min){% endif %}",
        Priority.medium.value,
    ),
    NotificationType.order_rejected.value: (
        "Order rejected",
        "{{ kitchen_name }} rejected order #{{ order_number }}: {{ reason }}",
        Priority.high.value,
    ),
    NotificationType.order_transfer.value: (
        "Order transferred",
        "Order #{{ order_number }}: {{ item_name }} moved from {{ from_kitchen }} to {{ to_kitchen }}",
        Priority.medium.value,
    ),
    NotificationType.system.value: (
        "{{ title }}",
        "{{ message }}",
        Priority.low.value,
    ),
}


def render_jinja(body: str, ctx: Dict[str, Any]) -> str:
    return _env.from_string(body).render(**ctx)


def render(ntype: str, ctx: Dict[str, Any]) -> Dict[str, str]:
    """Ritorna {type, title, message, priority} pronto per evento e riga DB."""
    title_tpl, msg_tpl, priority = TEMPLATES[ntype]
    return {
        "type": ntype,
        "title": render_jinja(title_tpl, ctx),
        "message": render_jinja(msg_tpl, ctx),
        "priority": priority,
    }
