import asyncio

import httpx
import pytest
from sqlmodel import select

from hotelpos import tables
from hotelpos.models import KitchenTicket, OrderKitchenLog, TableReservation, utcnow
from hotelpos.models_notifications import Notification

from conftest import (
    BAR_ID, BARTENDER, CARBONARA, CHEF, KITCHEN_ID, MARGHERITA, NEGRONI, T5, TIRAMISU, WAITER, WATER, order_body,
)

API = "/api/v1/restaurant"


def place(client, auth, items, role="waiter", **kw):
    r = client.post(f"{API}/orders", json=order_body(items, **kw), headers=auth(role))
    assert r.status_code == 201, r.text
    return r.json()["data"]


def item_of(order, menu_item_id):
    return next(it for it in order["items"] if it["menu_item_id"] == menu_item_id)


def notifications_of(client, auth, role):
    r = client.get("/api/v1/notifications", headers=auth(role))
    assert r.status_code == 200
    return r.json()["data"]["notifications"]


def error_code(r):
    body = r.json()
    assert body["success"] is False
    return body["error"]["code"]


# --- invio e instradamento -----------------------------------------------------

def test_mixed_round_fans_out_once_per_kitchen(client, auth, bus, app):
    order = place(client, auth, [(MARGHERITA, 1), (CARBONARA, 1), (NEGRONI, 1)])

    new = bus.named("new-kitchen-order")
    assert len(new) == 2
    by_room = {e.rooms: e for e in new}
    chef_batch = by_room[("kitchen:chef",)].data
    bar_batch = by_room[("kitchen:bartender",)].data
    assert sorted(it["menu_item_id"] for it in chef_batch["items"]) == [MARGHERITA, CARBONARA]
    assert [it["menu_item_id"] for it in bar_batch["items"]] == [NEGRONI]
    assert chef_batch["pickup_number"] == "K-1"
    assert bar_batch["pickup_number"] == "B-1"

    with app.state.db.session() as s:
        rows = s.exec(select(Notification)).all()
    assert sorted(n.user_id for n in rows) == [CHEF, BARTENDER]
    assert {n.type for n in rows} == {"new-order"}

    assert order["status"] == "pending"
    assert order["order_number"] == "ORD000001"
    assert order["total_cents"] == 2900
    assert order["tax_cents"] == 348
    assert order["waiter_id"] == WAITER


def test_live_event_carries_the_persisted_notification_text(client, auth, bus):
    place(client, auth, [(MARGHERITA, 2)])
    live = bus.named("new-kitchen-order")[0].data

    stored = notifications_of(client, auth, "chef")
    assert len(stored) == 1
    assert live["notification"]["message"] == stored[0]["message"]
    assert live["notification"]["type"] == stored[0]["type"]
    assert live["timestamp"] == stored[0]["created_at"]
    assert "table T5" in stored[0]["message"]
    assert "2 items" in stored[0]["message"]


def test_new_order_marks_table_occupied(client, auth, bus):
    place(client, auth, [(WATER, 1)])
    table_events = bus.named("table_status_updated")
    assert [e.data["status"] for e in table_events] == ["occupied"]
    assert table_events[0].broadcast is True

    r = client.get(f"{API}/tables/{T5}/status", headers=auth("waiter"))
    assert r.json()["data"]["status"] == "occupied"


def test_pickup_numbers_increase_per_kitchen(client, auth):
    first = place(client, auth, [(MARGHERITA, 1)], table_id=1)
    second = place(client, auth, [(MARGHERITA, 1), (NEGRONI, 1)], table_id=2)
    assert [t["pickup_number"] for t in first["tickets"]] == ["K-1"]
    assert sorted(t["pickup_number"] for t in second["tickets"]) == ["B-1", "K-2"]


def test_failed_routing_persists_nothing(client, auth, bus, app):
    r = client.post(f"{API}/orders", json=order_body([(MARGHERITA, 1), (999, 1)]), headers=auth("waiter"))
    assert r.status_code == 404
    assert error_code(r) == "MENU_ITEM_NOT_FOUND"
    assert bus.published == []

    r = client.get(f"{API}/orders", headers=auth("manager"))
    assert r.json()["data"] == []
    with app.state.db.session() as s:
        assert s.exec(select(KitchenTicket)).all() == []
        assert s.exec(select(Notification)).all() == []


def test_empty_submission_is_rejected(client, auth):
    r = client.post(f"{API}/orders", json=order_body([]), headers=auth("waiter"))
    assert r.status_code == 400
    assert error_code(r) == "EMPTY_SUBMISSION"


def test_dine_in_requires_a_table(client, auth):
    r = client.post(f"{API}/orders", json=order_body([(MARGHERITA, 1)], table_id=None), headers=auth("waiter"))
    assert r.status_code == 400
    assert error_code(r) == "VALIDATION_ERROR"


def test_takeaway_without_table(client, auth, bus):
    order = place(client, auth, [(MARGHERITA, 1)], table_id=None, orderType="takeaway")
    assert order["table_id"] is None
    assert bus.named("table_status_updated") == []


def test_table_with_open_order_is_unavailable(client, auth):
    place(client, auth, [(MARGHERITA, 1)])
    r = client.post(f"{API}/orders", json=order_body([(WATER, 1)]), headers=auth("waiter"))
    assert r.status_code == 409
    assert error_code(r) == "TABLE_UNAVAILABLE"


def test_table_row_is_locked_before_the_open_order_check(client, auth, monkeypatch):
    seen = []
    real = tables.get_table

    def spy(session, table_id, for_update=False):
        seen.append((table_id, for_update))
        return real(session, table_id, for_update=for_update)

    monkeypatch.setattr(tables, "get_table", spy)
    place(client, auth, [(MARGHERITA, 1)])
    assert seen == [(T5, True)]


def test_unknown_table(client, auth):
    r = client.post(f"{API}/orders", json=order_body([(MARGHERITA, 1)], table_id=999), headers=auth("waiter"))
    assert r.status_code == 404
    assert error_code(r) == "TABLE_NOT_FOUND"


def test_new_round_goes_to_kitchen_as_items_added(client, auth, bus):
    order = place(client, auth, [(MARGHERITA, 1)])
    r = client.post(
        f"{API}/orders/{order['id']}/items",
        json={"items": [{"menuItemId": WATER, "quantity": 2}]},
        headers=auth("waiter"),
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert item_of(data, WATER)["round_no"] == 2
    assert data["total_cents"] == 1300

    added = bus.named("order-items-added")
    assert len(added) == 1
    assert added[0].rooms == ("kitchen:bartender",)
    assert [n["type"] for n in notifications_of(client, auth, "bartender")] == ["items-added"]


def test_new_round_reopens_a_served_order(client, auth, bus):
    order = place(client, auth, [(MARGHERITA, 1)])
    it = item_of(order, MARGHERITA)
    client.patch(f"{API}/orders/{order['id']}/items/{it['id']}", json={"status": "ready"}, headers=auth("chef"))
    client.patch(f"{API}/orders/{order['id']}/status", json={"status": "served"}, headers=auth("waiter"))

    r = client.post(
        f"{API}/orders/{order['id']}/items",
        json={"items": [{"menuItemId": TIRAMISU}]},
        headers=auth("waiter"),
    )
    data = r.json()["data"]
    assert data["status"] == "pending"
    assert data["served_at"] is None
    statuses = [e.data["status"] for e in bus.named("order-status-updated")]
    assert statuses[-1] == "pending"


def test_round_on_paid_order_conflicts(client, auth):
    order = place(client, auth, [(WATER, 1)])
    it = item_of(order, WATER)
    client.patch(f"{API}/orders/{order['id']}/items/{it['id']}", json={"status": "ready"}, headers=auth("bartender"))
    client.patch(f"{API}/orders/{order['id']}/status", json={"status": "served"}, headers=auth("waiter"))
    client.patch(f"{API}/orders/{order['id']}/status", json={"status": "paid"}, headers=auth("waiter"))

    r = client.post(f"{API}/orders/{order['id']}/items", json={"items": [{"menuItemId": WATER}]}, headers=auth("waiter"))
    assert r.status_code == 409
    assert error_code(r) == "TABLE_CONFLICT"


# --- presa in carico / rifiuto --------------------------------------------------

def test_kitchen_rejects_whole_batch(client, auth, bus):
    order = place(client, auth, [(MARGHERITA, 1), (CARBONARA, 1)])
    r = client.post(
        f"/api/v1/restaurants/{KITCHEN_ID}/orders/{order['id']}/reject",
        json={"reason": "out of stock"},
        headers=auth("chef"),
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert {it["status"] for it in data["items"]} == {"rejected"}
    assert {it["cancellation_reason"] for it in data["items"]} == {"out of stock"}
    assert data["status"] != "ready"
    assert data["total_cents"] == 0

    waiter_rows = notifications_of(client, auth, "waiter")
    assert len(waiter_rows) == 1
    assert waiter_rows[0]["type"] == "order-rejected"
    assert waiter_rows[0]["data"]["reason"] == "out of stock"

    rejected = bus.named("kitchen-order-rejected")
    assert len(rejected) == 1
    assert rejected[0].rooms == (f"user:{WAITER}",)


def test_reject_requires_reason(client, auth):
    order = place(client, auth, [(MARGHERITA, 1)])
    r = client.post(
        f"/api/v1/restaurants/{KITCHEN_ID}/orders/{order['id']}/reject", json={"reason": " "}, headers=auth("chef"),
    )
    assert r.status_code == 400
    assert error_code(r) == "VALIDATION_ERROR"


def test_reject_one_kitchen_leaves_the_other(client, auth):
    order = place(client, auth, [(MARGHERITA, 1), (NEGRONI, 1)])
    r = client.post(
        f"/api/v1/restaurants/{BAR_ID}/orders/{order['id']}/reject",
        json={"reason": "no gin"},
        headers=auth("bartender"),
    )
    data = r.json()["data"]
    assert item_of(data, NEGRONI)["status"] == "rejected"
    assert item_of(data, MARGHERITA)["status"] == "pending"
    assert data["total_cents"] == 900


def test_accept_marks_kitchen_items_and_notifies_waiter(client, auth, bus):
    order = place(client, auth, [(MARGHERITA, 1), (NEGRONI, 1)])
    r = client.post(
        f"/api/v1/restaurants/{KITCHEN_ID}/orders/{order['id']}/accept",
        json={"estimatedMinutes": 15},
        headers=auth("chef"),
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert item_of(data, MARGHERITA)["status"] == "accepted"
    assert item_of(data, NEGRONI)["status"] == "pending"
    assert data["status"] == "pending"
    chef_ticket = next(t for t in data["tickets"] if t["kitchen_id"] == KITCHEN_ID)
    assert chef_ticket["status"] == "accepted"
    assert chef_ticket["estimated_minutes"] == 15

    rows = notifications_of(client, auth, "waiter")
    assert [n["type"] for n in rows] == ["order-accepted"]
    assert "ready in ~15 min" in rows[0]["message"]
    assert bus.named("kitchen-order-accepted")[0].rooms == (f"user:{WAITER}",)


def test_accept_without_body(client, auth):
    order = place(client, auth, [(NEGRONI, 1)])
    r = client.post(f"/api/v1/restaurants/{BAR_ID}/orders/{order['id']}/accept", headers=auth("bartender"))
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "preparing"


def test_accept_twice_is_invalid(client, auth):
    order = place(client, auth, [(MARGHERITA, 1)])
    url = f"/api/v1/restaurants/{KITCHEN_ID}/orders/{order['id']}/accept"
    assert client.post(url, headers=auth("chef")).status_code == 200
    r = client.post(url, headers=auth("chef"))
    assert r.status_code == 409
    assert error_code(r) == "INVALID_TRANSITION"


def test_unassigned_kitchen_staff_cannot_accept(client, auth):
    order = place(client, auth, [(NEGRONI, 1)])
    r = client.post(f"/api/v1/restaurants/{BAR_ID}/orders/{order['id']}/accept", headers=auth("chef"))
    assert r.status_code == 403
    assert error_code(r) == "FORBIDDEN"


def test_accept_logs_kitchen_action(client, auth, app):
    order = place(client, auth, [(MARGHERITA, 1)])
    client.post(f"/api/v1/restaurants/{KITCHEN_ID}/orders/{order['id']}/accept", headers=auth("chef"))
    with app.state.db.session() as s:
        actions = [row.action for row in s.exec(select(OrderKitchenLog).order_by(OrderKitchenLog.id)).all()]
    assert actions == ["assigned", "accepted"]


# --- stato degli item -----------------------------------------------------------

def test_sequential_item_updates_move_forward_only(client, auth, bus):
    order = place(client, auth, [(MARGHERITA, 1), (CARBONARA, 1)])
    url = f"{API}/orders/{order['id']}/items/{item_of(order, MARGHERITA)['id']}"

    assert client.patch(url, json={"status": "accepted"}, headers=auth("chef")).status_code == 200
    assert client.patch(url, json={"status": "preparing"}, headers=auth("chef")).status_code == 200
    r = client.patch(url, json={"status": "pending"}, headers=auth("chef"))
    assert r.status_code == 409
    assert error_code(r) == "INVALID_TRANSITION"

    current = client.get(f"{API}/orders/{order['id']}", headers=auth("waiter")).json()["data"]
    assert item_of(current, MARGHERITA)["status"] == "preparing"
    assert [e.data["status"] for e in bus.named("order-item-status-updated")] == ["accepted", "preparing"]


@pytest.mark.asyncio
async def test_racing_item_updates_never_end_pending(app):
    from hotelpos.db import seed_if_empty
    from hotelpos.security import create_access_token

    app.state.db.create_db_and_tables()
    seed_if_empty(app.state.db)
    cfg = app.state.config.auth
    waiter = {"Authorization": f"Bearer {create_access_token(cfg, WAITER, 'waiter')}"}
    chef = {"Authorization": f"Bearer {create_access_token(cfg, CHEF, 'chef')}"}

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        r = await ac.post(f"{API}/orders", json=order_body([(MARGHERITA, 1)]), headers=waiter)
        order = r.json()["data"]
        url = f"{API}/orders/{order['id']}/items/{order['items'][0]['id']}"

        first, second = await asyncio.gather(
            ac.patch(url, json={"status": "accepted"}, headers=chef),
            ac.patch(url, json={"status": "preparing"}, headers=chef),
        )
        final = (await ac.get(f"{API}/orders/{order['id']}", headers=waiter)).json()["data"]

    codes = sorted([first.status_code, second.status_code])
    assert codes in ([200, 200], [200, 409])
    assert final["items"][0]["status"] == "preparing"
    assert len(app.state.locks) == 0


def test_ready_to_serve_alias_and_ready_notice(client, auth, bus):
    order = place(client, auth, [(MARGHERITA, 1)])
    url = f"{API}/orders/{order['id']}/items/{item_of(order, MARGHERITA)['id']}"
    r = client.patch(url, json={"status": "ready_to_serve", "chefNotes": "extra basil"}, headers=auth("chef"))
    data = r.json()["data"]
    assert data["status"] == "ready"
    assert data["ready_at"] is not None
    assert item_of(data, MARGHERITA)["chef_notes"] == "extra basil"

    titles = [n["title"] for n in notifications_of(client, auth, "waiter")]
    assert "Order ready" in titles
    assert "Item ready" in titles
    assert bus.named("order-status-updated")[-1].data["status"] == "ready"


def test_status_endpoint_refuses_cancelled(client, auth):
    order = place(client, auth, [(MARGHERITA, 1)])
    url = f"{API}/orders/{order['id']}/items/{item_of(order, MARGHERITA)['id']}"
    r = client.patch(url, json={"status": "cancelled"}, headers=auth("chef"))
    assert r.status_code == 400
    assert error_code(r) == "VALIDATION_ERROR"


def test_waiter_cannot_update_item_status(client, auth):
    order = place(client, auth, [(MARGHERITA, 1)])
    url = f"{API}/orders/{order['id']}/items/{item_of(order, MARGHERITA)['id']}"
    r = client.patch(url, json={"status": "ready"}, headers=auth("waiter"))
    assert r.status_code == 403


def test_unknown_item(client, auth):
    order = place(client, auth, [(MARGHERITA, 1)])
    r = client.patch(f"{API}/orders/{order['id']}/items/999", json={"status": "ready"}, headers=auth("chef"))
    assert r.status_code == 404
    assert error_code(r) == "ITEM_NOT_FOUND"


# --- cancellazione e trasferimento ---------------------------------------------

def test_cancel_item_recomputes_totals_and_tells_kitchen(client, auth, bus):
    order = place(client, auth, [(MARGHERITA, 1), (CARBONARA, 1)])
    it = item_of(order, CARBONARA)
    r = client.post(
        f"{API}/orders/{order['id']}/items/{it['id']}/cancel",
        json={"reason": "guest changed mind"},
        headers=auth("waiter"),
    )
    data = r.json()["data"]
    assert item_of(data, CARBONARA)["status"] == "cancelled"
    assert item_of(data, CARBONARA)["cancelled_by"] == WAITER
    assert data["total_cents"] == 900
    assert data["tax_cents"] == 108

    ev = bus.named("order-item-status-updated")[-1]
    assert "kitchen:chef" in ev.rooms
    titles = [n["title"] for n in notifications_of(client, auth, "chef")]
    assert "Item cancelled" in titles


def test_cancel_requires_reason(client, auth):
    order = place(client, auth, [(MARGHERITA, 1)])
    it = item_of(order, MARGHERITA)
    r = client.post(f"{API}/orders/{order['id']}/items/{it['id']}/cancel", json={}, headers=auth("waiter"))
    assert r.status_code == 400


def test_cancelled_item_cannot_be_cancelled_again(client, auth):
    order = place(client, auth, [(MARGHERITA, 1), (CARBONARA, 1)])
    url = f"{API}/orders/{order['id']}/items/{item_of(order, MARGHERITA)['id']}/cancel"
    client.post(url, json={"reason": "x"}, headers=auth("waiter"))
    r = client.post(url, json={"reason": "x"}, headers=auth("waiter"))
    assert r.status_code == 409
    assert error_code(r) == "INVALID_TRANSITION"


def test_transfer_pending_item_to_other_kitchen(client, auth, bus):
    order = place(client, auth, [(MARGHERITA, 1), (TIRAMISU, 1)])
    it = item_of(order, TIRAMISU)
    r = client.post(
        f"{API}/orders/{order['id']}/items/{it['id']}/transfer",
        json={"toKitchenId": BAR_ID, "reason": "pastry at the bar"},
        headers=auth("chef"),
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert item_of(data, TIRAMISU)["target_kitchen_id"] == BAR_ID
    assert sorted(t["pickup_number"] for t in data["tickets"]) == ["B-1", "K-1"]

    ev = bus.named("order-transferred")[0]
    assert ev.rooms == ("kitchen:chef", "kitchen:bartender", f"user:{WAITER}")
    assert [n["type"] for n in notifications_of(client, auth, "bartender")] == ["order-transfer"]


def test_transfer_requires_pending(client, auth):
    order = place(client, auth, [(MARGHERITA, 1)])
    it = item_of(order, MARGHERITA)
    client.patch(f"{API}/orders/{order['id']}/items/{it['id']}", json={"status": "accepted"}, headers=auth("chef"))
    r = client.post(
        f"{API}/orders/{order['id']}/items/{it['id']}/transfer", json={"toKitchenId": BAR_ID}, headers=auth("chef"),
    )
    assert r.status_code == 409


def test_transfer_to_unknown_kitchen(client, auth):
    order = place(client, auth, [(MARGHERITA, 1)])
    it = item_of(order, MARGHERITA)
    r = client.post(
        f"{API}/orders/{order['id']}/items/{it['id']}/transfer", json={"toKitchenId": 99}, headers=auth("chef"),
    )
    assert r.status_code == 404
    assert error_code(r) == "KITCHEN_NOT_FOUND"


# --- chiusura -------------------------------------------------------------------

def test_full_lifecycle_frees_the_table(client, auth, bus):
    order = place(client, auth, [(WATER, 1)])
    url = f"{API}/orders/{order['id']}"
    client.patch(f"{url}/items/{order['items'][0]['id']}", json={"status": "ready"}, headers=auth("bartender"))

    served = client.patch(f"{url}/status", json={"status": "served"}, headers=auth("waiter")).json()["data"]
    assert served["status"] == "served"
    assert served["items"][0]["status"] == "served"

    paid = client.patch(f"{url}/status", json={"status": "paid"}, headers=auth("waiter")).json()["data"]
    assert paid["status"] == "paid"
    assert paid["paid_at"] is not None

    assert [e.data["status"] for e in bus.named("table_status_updated")] == ["occupied", "available"]
    names = [e.name for e in bus.published if e.order_id == order["id"]]
    assert names == [
        "new-kitchen-order",
        "order-item-status-updated",
        "order-status-updated",
        "order-status-updated",
        "order-status-updated",
    ]


def test_served_requires_ready(client, auth):
    order = place(client, auth, [(MARGHERITA, 1)])
    r = client.patch(f"{API}/orders/{order['id']}/status", json={"status": "served"}, headers=auth("waiter"))
    assert r.status_code == 409


def test_cancel_order_cancels_open_items(client, auth, bus):
    order = place(client, auth, [(MARGHERITA, 1), (NEGRONI, 1)])
    r = client.patch(
        f"{API}/orders/{order['id']}/status", json={"status": "cancelled", "reason": "guest left"}, headers=auth("waiter"),
    )
    data = r.json()["data"]
    assert data["status"] == "cancelled"
    assert {it["status"] for it in data["items"]} == {"cancelled"}
    assert data["total_cents"] == 0

    ev = bus.named("order-status-updated")[-1]
    assert "kitchen:chef" in ev.rooms and "kitchen:bartender" in ev.rooms
    assert bus.named("table_status_updated")[-1].data["status"] == "available"


def test_chef_cannot_close_orders(client, auth):
    order = place(client, auth, [(MARGHERITA, 1)])
    r = client.patch(
        f"{API}/orders/{order['id']}/status", json={"status": "cancelled", "reason": "x"}, headers=auth("chef"),
    )
    assert r.status_code == 403


# --- lettura e visibilità -------------------------------------------------------

def test_list_orders_filters_by_status(client, auth):
    place(client, auth, [(MARGHERITA, 1)], table_id=1)
    second = place(client, auth, [(WATER, 1)], table_id=2)
    client.patch(
        f"{API}/orders/{second['id']}/status", json={"status": "cancelled", "reason": "x"}, headers=auth("waiter"),
    )

    rows = client.get(f"{API}/orders", params={"status": "pending,preparing"}, headers=auth("waiter")).json()["data"]
    assert [o["table_id"] for o in rows] == [1]
    rows = client.get(f"{API}/orders", params={"status": "cancelled"}, headers=auth("manager")).json()["data"]
    assert [o["id"] for o in rows] == [second["id"]]


def test_kitchen_staff_sees_only_orders_for_their_kitchen(client, auth):
    bar_only = place(client, auth, [(NEGRONI, 1)], table_id=1)
    place(client, auth, [(MARGHERITA, 1)], table_id=2)

    rows = client.get(f"{API}/orders", headers=auth("bartender")).json()["data"]
    assert [o["id"] for o in rows] == [bar_only["id"]]

    other = client.get(f"{API}/orders/{bar_only['id'] + 1}", headers=auth("bartender"))
    assert other.status_code == 403
    assert error_code(other) == "FORBIDDEN"


def test_unknown_order(client, auth):
    r = client.get(f"{API}/orders/999", headers=auth("manager"))
    assert r.status_code == 404
    assert error_code(r) == "ORDER_NOT_FOUND"


def test_kitchen_queue_and_summary(client, auth):
    place(client, auth, [(MARGHERITA, 2), (CARBONARA, 1), (NEGRONI, 1)], table_id=1)
    place(client, auth, [(MARGHERITA, 1)], table_id=2)

    queue = client.get(f"/api/v1/kitchens/{KITCHEN_ID}/orders", headers=auth("chef")).json()["data"]
    assert [q["pickup_number"] for q in queue] == ["K-1", "K-2"]
    assert len(queue[0]["items"]) == 2

    summary = client.get(f"/api/v1/kitchens/{KITCHEN_ID}/summary", headers=auth("chef")).json()["data"]
    assert summary[0] == {"menu_item_id": MARGHERITA, "name": "Margherita", "total_qty": 3}
    assert summary[1]["total_qty"] == 1

    r = client.get(f"/api/v1/kitchens/{KITCHEN_ID}/orders", headers=auth("bartender"))
    assert r.status_code == 403


def test_list_kitchens_by_type(client, auth):
    rows = client.get("/api/v1/kitchens", params={"type": "bar"}, headers=auth("waiter")).json()["data"]
    assert [(k["id"], k["prefix"]) for k in rows] == [(BAR_ID, "B")]


# --- staff e binding ------------------------------------------------------------

def test_removed_chef_gets_no_new_order_notifications(client, auth, app):
    r = client.delete(f"/api/v1/kitchens/{KITCHEN_ID}/staff/{CHEF}", params={"role": "chef"}, headers=auth("manager"))
    assert r.json()["data"]["is_active"] is False

    place(client, auth, [(MARGHERITA, 1), (NEGRONI, 1)])
    with app.state.db.session() as s:
        assert [n.user_id for n in s.exec(select(Notification)).all()] == [BARTENDER]

    r = client.post(
        f"/api/v1/kitchens/{KITCHEN_ID}/staff", json={"userId": CHEF, "role": "chef"}, headers=auth("manager"),
    )
    assert r.status_code == 201
    assert r.json()["data"]["is_active"] is True


def test_only_supervisors_manage_staff(client, auth):
    r = client.post(
        f"/api/v1/kitchens/{KITCHEN_ID}/staff", json={"userId": CHEF, "role": "chef"}, headers=auth("waiter"),
    )
    assert r.status_code == 403


def test_kitchen_binding_round_trip(client, auth):
    url = f"/api/v1/restaurants/{KITCHEN_ID}/kitchen-bindings"
    r = client.put(url, json={"kitchenType": "bar", "kitchenId": BAR_ID}, headers=auth("manager"))
    assert r.status_code == 200
    assert client.get(url, headers=auth("waiter")).json()["data"] == [{"kitchen_type": "bar", "kitchen_id": BAR_ID}]

    assert client.delete(f"{url}/bar", headers=auth("manager")).status_code == 200
    r = client.delete(f"{url}/bar", headers=auth("manager"))
    assert r.status_code == 404
    assert error_code(r) == "BINDING_NOT_FOUND"


# --- tavoli ---------------------------------------------------------------------

def test_confirmed_reservation_marks_table_reserved(client, auth, app):
    with app.state.db.session() as s:
        s.add(TableReservation(table_id=6, reservation_date=utcnow().date(), status="confirmed"))
        s.commit()
    r = client.get(f"{API}/tables/6/status", headers=auth("waiter"))
    assert r.json()["data"] == {"table_id": 6, "restaurant_id": KITCHEN_ID, "table_number": "T6", "status": "reserved"}
    assert client.get(f"{API}/tables/7/status", headers=auth("waiter")).json()["data"]["status"] == "available"


# --- autenticazione ed envelope di errore ----------------------------------------

def test_missing_token(client):
    r = client.get(f"{API}/orders")
    assert r.status_code == 401
    assert error_code(r) == "UNAUTHORIZED"


def test_forged_token(client):
    r = client.get(f"{API}/orders", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


def test_chef_cannot_submit_orders(client, auth):
    r = client.post(f"{API}/orders", json=order_body([(MARGHERITA, 1)]), headers=auth("chef"))
    assert r.status_code == 403
    assert error_code(r) == "FORBIDDEN"


def test_malformed_body(client, auth):
    r = client.post(f"{API}/orders", json={"restaurantId": "abc", "items": []}, headers=auth("waiter"))
    assert r.status_code == 400
    assert error_code(r) == "VALIDATION_ERROR"


def test_unexpected_errors_are_hidden(app, auth):
    from fastapi.testclient import TestClient

    def boom(*args, **kwargs):
        raise RuntimeError("db exploded with secret details")

    app.state.orders.get_order = boom
    with TestClient(app, raise_server_exceptions=False) as c:
        r = c.get(f"{API}/orders/1", headers=auth("manager"))
    assert r.status_code == 500
    assert r.json() == {"success": False, "error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}}


def test_health(client):
    assert client.get("/health").text == "OK"
