from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from bson import ObjectId

from storefront.app.models import OrderDB, load_document

M = {"variantIndex": 0, "size": "M"}

async def add(client, headers, product_id, qty=1, option=None):
    body = {"productId": product_id, "qty": qty}
    if option:
        body["option"] = option
    resp = await client.post("/cart/items", json=body, headers=headers)
    assert resp.status_code == 201
    return resp.json()["data"]

async def buy(client, headers, product_id, qty=1, option=None, **extra):
    body = {"productId": product_id, "qty": qty, **extra}
    if option:
        body["option"] = option
    return await client.post("/orders/single", json=body, headers=headers)

async def load(db, order_id) -> OrderDB:
    return load_document(OrderDB, await db.orders.find_one({"_id": ObjectId(order_id)}))

# --- Single buy ---
async def test_single_order_freezes_price_and_option(client, db, user_headers, jacket):
    resp = await buy(client, user_headers, jacket, 2, M, paymentMethod="VBANK")
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert Decimal(data["totalPrice"]) == Decimal(2000)

    order = await load(db, data["id"])
    assert order.status.value == "PENDING"
    assert order.payment.status == "PENDING"
    assert order.payment.method == "VBANK"
    assert order.shipping.status == "READY"
    assert order.items[0].price == Decimal(1000)
    assert order.items[0].option.sku == "JKT-BLK-M"

async def test_single_order_error_codes(client, user_headers, jacket):
    resp = await client.post("/orders/single", json={"qty": 1}, headers=user_headers)
    assert (resp.status_code, resp.json()["error"]) == (400, "BAD_REQUEST")

    for bad in ("zzz", str(ObjectId())):
        resp = await buy(client, user_headers, bad)
        assert (resp.status_code, resp.json()["error"]) == (404, "NOT_FOUND")

    resp = await buy(client, user_headers, jacket)
    assert (resp.status_code, resp.json()["error"]) == (400, "OPTION_REQUIRED")

async def test_single_order_quantity_floor(client, db, user_headers, tee):
    resp = await buy(client, user_headers, tee, 0)
    data = resp.json()["data"]
    assert Decimal(data["totalPrice"]) == Decimal(13000)
    assert (await load(db, data["id"])).items[0].qty == 1

async def test_order_total_survives_price_change(client, db, user_headers, tee):
    resp = await buy(client, user_headers, tee, 3)
    order_id = resp.json()["data"]["id"]
    await db.products.update_one({"_id": ObjectId(tee)}, {"$set": {"price": 26000.0}})

    resp = await client.get("/orders/my", headers=user_headers)
    order = resp.json()["data"][0]
    assert order["id"] == order_id
    assert Decimal(order["totalPrice"]) == Decimal(39000)
    assert Decimal(order["items"][0]["price"]) == Decimal(13000)

# --- From cart ---
async def test_order_from_cart_takes_selected_lines(client, db, user_headers, tee, scarf, jacket):
    await add(client, user_headers, tee)
    await add(client, user_headers, scarf)
    await add(client, user_headers, jacket, 2, M)

    resp = await client.post("/orders/from-cart", json={"lines": [0, 2]}, headers=user_headers)
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert Decimal(data["totalPrice"]) == Decimal(15000)

    order = await load(db, data["id"])
    assert [(i.product_id, i.qty) for i in order.items] == [(tee, 1), (jacket, 2)]
    assert order.items[1].option.size == "M"

    resp = await client.get("/cart", headers=user_headers)
    items = resp.json()["data"]["items"]
    assert [i["productId"] for i in items] == [scarf]

async def test_order_from_cart_by_line_id(client, db, user_headers, tee, scarf):
    await add(client, user_headers, tee)
    cart = await add(client, user_headers, scarf, 4)
    scarf_line = cart["items"][1]["lineId"]

    resp = await client.post("/orders/from-cart", json={"lines": [scarf_line]}, headers=user_headers)
    order = await load(db, resp.json()["data"]["id"])
    assert [(i.product_id, i.qty) for i in order.items] == [(scarf, 4)]
    assert order.total_price == Decimal(2000)

async def test_order_from_cart_error_codes(client, db, user_headers, tee):
    resp = await client.post("/orders/from-cart", json={"lines": [0]}, headers=user_headers)
    assert (resp.status_code, resp.json()["error"]) == (404, "CART_EMPTY")

    await add(client, user_headers, tee)
    for body in ({}, {"lines": "0"}):
        resp = await client.post("/orders/from-cart", json=body, headers=user_headers)
        assert (resp.status_code, resp.json()["error"]) == (400, "BAD_REQUEST")

    for lines in ([], [7], ["x", -1]):
        resp = await client.post("/orders/from-cart", json={"lines": lines}, headers=user_headers)
        assert (resp.status_code, resp.json()["error"]) == (400, "NO_ITEMS")

    await db.products.delete_one({"_id": ObjectId(tee)})
    resp = await client.post("/orders/from-cart", json={"lines": [0]}, headers=user_headers)
    assert (resp.status_code, resp.json()["error"]) == (404, "NOT_FOUND")
    assert await db.orders.count_documents({}) == 0

# --- Listing ---
async def test_my_orders_newest_first_and_own_only(client, db, user_headers, other_headers, tee, scarf):
    first = (await buy(client, user_headers, tee)).json()["data"]["id"]
    second = (await buy(client, user_headers, scarf)).json()["data"]["id"]
    await buy(client, other_headers, tee)
    await db.orders.update_one(
        {"_id": ObjectId(first)},
        {"$set": {"created_at": datetime.utcnow() - timedelta(days=1)}}
    )

    resp = await client.get("/orders/my", headers=user_headers)
    orders = resp.json()["data"]
    assert [o["id"] for o in orders] == [second, first]
    assert orders[1]["items"][0]["name"] == "Plain Tee"
    assert orders[1]["items"][0]["image"] == "tee.png"
    assert orders[0]["items"][0]["image"] is None
    assert orders[0]["shipping"]["status"] == "READY"

async def test_my_orders_show_deleted_products(client, db, user_headers, tee):
    await buy(client, user_headers, tee)
    await db.products.delete_one({"_id": ObjectId(tee)})
    resp = await client.get("/orders/my", headers=user_headers)
    assert resp.json()["data"][0]["items"][0]["name"] == "(deleted product)"

async def test_admin_endpoints_reject_users(client, user_headers, tee):
    order_id = (await buy(client, user_headers, tee)).json()["data"]["id"]
    calls = [
        client.get("/orders/admin", headers=user_headers),
        client.get(f"/orders/admin/{order_id}", headers=user_headers),
        client.patch(f"/orders/{order_id}/status", json={"status": "PAID"}, headers=user_headers),
        client.patch(f"/orders/{order_id}/shipping", json={"courierCode": "CJ", "trackingNumber": "1"}, headers=user_headers),
    ]
    for call in calls:
        resp = await call
        assert (resp.status_code, resp.json()["error"]) == (403, "FORBIDDEN")

async def test_admin_list_filters_by_projected_status(client, user_headers, admin_headers, tee, scarf):
    paid = (await buy(client, user_headers, tee)).json()["data"]["id"]
    await buy(client, user_headers, scarf)
    await buy(client, user_headers, scarf)
    await client.patch(f"/orders/{paid}/status", json={"status": "PAID"}, headers=admin_headers)

    resp = await client.get("/orders/admin", params={"status": "PAID"}, headers=admin_headers)
    data = resp.json()["data"]
    assert data["total"] == 1
    assert data["items"][0]["id"] == paid
    assert data["items"][0]["status"] == "PAID"

    resp = await client.get("/orders/admin", params={"page": 2, "limit": 2}, headers=admin_headers)
    data = resp.json()["data"]
    assert (data["page"], data["limit"], data["total"], data["pages"]) == (2, 2, 3, 2)
    assert len(data["items"]) == 1

    resp = await client.get("/orders/admin", params={"status": "LOST"}, headers=admin_headers)
    assert (resp.status_code, resp.json()["error"]) == (400, "BAD_REQUEST")

async def test_admin_order_detail(client, user_headers, admin_headers, jacket):
    order_id = (await buy(client, user_headers, jacket, 1, M)).json()["data"]["id"]
    resp = await client.get(f"/orders/admin/{order_id}", headers=admin_headers)
    data = resp.json()["data"]
    assert data["userId"] == "user-1"
    assert data["items"][0]["option"]["colorHex"] == "#000000"

    resp = await client.get(f"/orders/admin/{ObjectId()}", headers=admin_headers)
    assert (resp.status_code, resp.json()["error"]) == (404, "NOT_FOUND")

# --- Shipping and status ---
async def test_register_shipping(client, db, user_headers, admin_headers, tee):
    order_id = (await buy(client, user_headers, tee)).json()["data"]["id"]
    body = {"courierCode": "CJ", "courierName": "CJ Logistics", "trackingNumber": "612345678901"}
    resp = await client.patch(f"/orders/{order_id}/shipping", json=body, headers=admin_headers)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "SHIPPING"
    assert data["shipping"]["courierCode"] == "CJ"
    assert data["shipping"]["trackingNumber"] == "612345678901"
    assert data["shipping"]["shippedAt"] is not None

    order = await load(db, order_id)
    assert order.shipping.status == "SHIPPING"
    assert order.version == 1

async def test_register_shipping_error_codes(client, user_headers, admin_headers, tee):
    order_id = (await buy(client, user_headers, tee)).json()["data"]["id"]
    resp = await client.patch(f"/orders/{order_id}/shipping", json={"courierCode": "CJ"}, headers=admin_headers)
    assert (resp.status_code, resp.json()["error"]) == (400, "BAD_REQUEST")

    body = {"courierCode": "CJ", "trackingNumber": "1"}
    resp = await client.patch(f"/orders/{ObjectId()}/shipping", json=body, headers=admin_headers)
    assert (resp.status_code, resp.json()["error"]) == (404, "NOT_FOUND")

async def test_admin_status_moves_forward_only(client, user_headers, admin_headers, tee):
    order_id = (await buy(client, user_headers, tee)).json()["data"]["id"]

    async def set_status(value):
        return await client.patch(f"/orders/{order_id}/status", json={"status": value}, headers=admin_headers)

    resp = await set_status("PAID")
    assert resp.json()["data"]["status"] == "PAID"

    for value, code in (("PENDING", "INVALID_TRANSITION"), ("DELIVERED", "INVALID_TRANSITION")):
        resp = await set_status(value)
        assert (resp.status_code, resp.json()["error"]) == (409, code)

    resp = await set_status("PAID")
    assert resp.status_code == 200

    resp = await set_status("SHIPPING")
    assert resp.json()["data"]["shipping"]["status"] == "SHIPPING"

    resp = await set_status("CANCELLED")
    assert (resp.status_code, resp.json()["error"]) == (409, "INVALID_TRANSITION")

    resp = await set_status("DELIVERED")
    assert resp.json()["data"]["status"] == "DELIVERED"

    resp = await set_status("SHIPPING")
    assert (resp.status_code, resp.json()["error"]) == (409, "INVALID_TRANSITION")

@pytest.mark.parametrize("body", [{}, {"status": "SHIPPED"}])
async def test_admin_status_rejects_unknown(client, user_headers, admin_headers, tee, body):
    order_id = (await buy(client, user_headers, tee)).json()["data"]["id"]
    resp = await client.patch(f"/orders/{order_id}/status", json=body, headers=admin_headers)
    assert (resp.status_code, resp.json()["error"]) == (400, "BAD_REQUEST")

async def test_cancelled_order_cannot_ship(client, user_headers, admin_headers, tee):
    order_id = (await buy(client, user_headers, tee)).json()["data"]["id"]
    resp = await client.patch(f"/orders/{order_id}/status", json={"status": "CANCELLED"}, headers=admin_headers)
    assert resp.json()["data"]["status"] == "CANCELLED"

    body = {"courierCode": "CJ", "trackingNumber": "1"}
    resp = await client.patch(f"/orders/{order_id}/shipping", json=body, headers=admin_headers)
    assert (resp.status_code, resp.json()["error"]) == (409, "INVALID_TRANSITION")

async def test_from_cart_skips_unusable_selection_entries(client, db, user_headers, tee, scarf):
    await add(client, user_headers, tee)
    await add(client, user_headers, scarf)
    resp = await client.post("/orders/from-cart", json={"lines": [None, 1.5, {"x": 1}, 1]}, headers=user_headers)
    assert resp.status_code == 201
    order = await load(db, resp.json()["data"]["id"])
    assert [i.product_id for i in order.items] == [scarf]

async def test_admin_list_filters_by_created_day(client, db, user_headers, admin_headers, tee, scarf):
    old = (await buy(client, user_headers, tee)).json()["data"]["id"]
    new = (await buy(client, user_headers, scarf)).json()["data"]["id"]
    await db.orders.update_one({"_id": ObjectId(old)}, {"$set": {"created_at": datetime(2026, 1, 15, 23, 59, 59)}})
    await db.orders.update_one({"_id": ObjectId(new)}, {"$set": {"created_at": datetime(2026, 1, 16, 0, 0, 0)}})

    resp = await client.get("/orders/admin", params={"from": "2026-01-15", "to": "2026-01-15"}, headers=admin_headers)
    data = resp.json()["data"]
    assert data["total"] == 1
    assert data["items"][0]["id"] == old

    resp = await client.get("/orders/admin", params={"to": "2026-01-14"}, headers=admin_headers)
    assert resp.json()["data"]["total"] == 0

    resp = await client.get("/orders/admin", params={"from": "2099-01-01"}, headers=admin_headers)
    assert resp.json()["data"]["total"] == 0

    resp = await client.get("/orders/admin", params={"from": "2026-01-16"}, headers=admin_headers)
    assert resp.json()["data"]["total"] == 1

    resp = await client.get("/orders/admin", params={"from": "15/01/2026"}, headers=admin_headers)
    assert (resp.status_code, resp.json()["error"]) == (400, "BAD_REQUEST")

async def test_admin_list_searches_by_order_id(client, user_headers, admin_headers, tee):
    wanted = (await buy(client, user_headers, tee)).json()["data"]["id"]
    await buy(client, user_headers, tee)

    resp = await client.get("/orders/admin", params={"q": wanted}, headers=admin_headers)
    data = resp.json()["data"]
    assert data["total"] == 1
    assert data["items"][0]["id"] == wanted

    for q in ("not-an-id", str(ObjectId())):
        resp = await client.get("/orders/admin", params={"q": q}, headers=admin_headers)
        assert resp.json()["data"]["total"] == 0

async def test_shipping_identifiers_are_stored_verbatim(client, db, user_headers, admin_headers, tee):
    order_id = (await buy(client, user_headers, tee)).json()["data"]["id"]
    body = {"courierCode": "CJ", "courierName": " CJ & Sons <Express> ", "trackingNumber": "A&B-1"}
    resp = await client.patch(f"/orders/{order_id}/shipping", json=body, headers=admin_headers)
    shipping = resp.json()["data"]["shipping"]
    assert (shipping["courierName"], shipping["trackingNumber"]) == ("CJ & Sons <Express>", "A&B-1")

    order = await load(db, order_id)
    assert order.shipping.courier_name == "CJ & Sons <Express>"
    assert order.shipping.tracking_number == "A&B-1"
