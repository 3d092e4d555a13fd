import re

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from conftest import auth_header, fill_cart, make_user
from database import now_utc
from errors import BusinessRuleError
import orders
from orders import OrderService


def checkout(client, headers, shipping_address, payment_method="cash_on_delivery"):
    return client.post("/api/orders", headers=headers, json={
        "shippingAddress": shipping_address,
        "paymentMethod": payment_method,
    })


def stock(db, product):
    return db["products"].find_one({"_id": product["_id"]})["quantity"]


def test_order_snapshots_line_items_and_takes_stock(client, db, customer, customer_headers,
                                                    make_product, shipping_address):
    product = make_product(price=500, quantity=10)
    fill_cart(db, customer, (product["_id"], 2))

    res = checkout(client, customer_headers, shipping_address)
    assert res.status_code == 201, res.json()
    body = res.json()
    assert body["message"] == "Order created successfully"
    order = body["data"]["order"]
    assert body["data"]["clientSecret"] is None

    line = order["items"][0]
    assert line["subtotal"] == 1000
    assert line["price"] == 500
    assert line["name"] == product["name"]
    assert line["image"].endswith("-2.jpg")
    assert order["subtotal"] == 1000
    assert order["total"] == 1000
    assert order["tax"] == 0 and order["shippingCost"] == 0
    assert stock(db, product) == 8


def test_insufficient_stock_leaves_stock_untouched(client, db, customer, customer_headers,
                                                   make_product, shipping_address):
    product = make_product(name="Strawberries", quantity=1)
    fill_cart(db, customer, (product["_id"], 3))

    res = checkout(client, customer_headers, shipping_address)
    assert res.status_code == 400
    assert res.json()["message"] == "Insufficient stock for Strawberries"
    assert stock(db, product) == 1
    assert db["orders"].count_documents({}) == 0


def test_later_failure_releases_earlier_reservations(client, db, customer, customer_headers,
                                                     make_product, shipping_address):
    apples = make_product(name="Apples", quantity=10)
    pears = make_product(name="Pears", quantity=1)
    fill_cart(db, customer, (apples["_id"], 4), (pears["_id"], 2))

    res = checkout(client, customer_headers, shipping_address)
    assert res.status_code == 400
    assert res.json()["message"] == "Insufficient stock for Pears"
    assert stock(db, apples) == 10
    assert stock(db, pears) == 1


def test_payment_gateway_failure_releases_stock(client, db, customer, customer_headers,
                                                make_product, shipping_address, payments):
    product = make_product(quantity=5)
    fill_cart(db, customer, (product["_id"], 2))
    payments.fail = True

    res = checkout(client, customer_headers, shipping_address, payment_method="stripe")
    assert res.status_code == 500
    assert res.json() == {"success": False, "message": "Your card was declined."}
    assert stock(db, product) == 5
    assert db["carts"].find_one({"user": customer["_id"]})["items"]


def test_inactive_product_is_rejected(client, db, customer, customer_headers, make_product, shipping_address):
    product = make_product(name="Kale", status="inactive")
    fill_cart(db, customer, (product["_id"], 1))
    res = checkout(client, customer_headers, shipping_address)
    assert res.status_code == 400
    assert res.json()["message"] == "Product Kale is not available"


def test_stripe_order_carries_intent(client, db, customer, customer_headers,
                                     make_product, shipping_address, payments):
    product = make_product(price=125.5, quantity=5)
    fill_cart(db, customer, (product["_id"], 2))

    res = checkout(client, customer_headers, shipping_address, payment_method="stripe")
    assert res.status_code == 201
    data = res.json()["data"]
    intent, amount = payments.intents[0]
    assert data["clientSecret"] == intent.client_secret
    assert data["order"]["paymentInfo"]["stripePaymentIntentId"] == intent.id
    assert data["order"]["paymentInfo"]["status"] == "pending"
    assert amount == 251


def test_validation_order(client, db, customer, customer_headers, shipping_address):
    res = client.post("/api/orders", headers=customer_headers, json={"paymentMethod": "stripe"})
    assert res.json()["message"] == "Please provide shipping address"

    partial = {k: v for k, v in shipping_address.items() if k not in ("city", "zipCode")}
    res = checkout(client, customer_headers, partial)
    assert res.status_code == 400
    assert res.json()["message"] == "Missing required fields: city, zipCode"

    res = checkout(client, customer_headers, shipping_address, payment_method="paypal")
    assert res.json()["message"] == "Please provide a valid payment method"

    res = checkout(client, customer_headers, shipping_address)
    assert res.json()["message"] == "Cart is empty"


def test_order_numbers_are_sequential(client, db, customer, customer_headers, make_product, shipping_address):
    product = make_product(quantity=10)
    numbers = []
    for _ in range(2):
        db["carts"].delete_many({"user": customer["_id"]})
        fill_cart(db, customer, (product["_id"], 1))
        numbers.append(checkout(client, customer_headers, shipping_address).json()["data"]["order"]["orderNumber"])

    year = now_utc().year
    assert all(re.fullmatch(rf"ORD-{year}-\d{{6}}", n) for n in numbers)
    assert int(numbers[1][-6:]) == int(numbers[0][-6:]) + 1


def test_deleted_products_are_dropped_from_checkout(client, db, customer, customer_headers,
                                                    make_product, shipping_address):
    kept = make_product(name="Apples", quantity=10)
    ghost = ObjectId()
    fill_cart(db, customer, (kept["_id"], 1), (ghost, 2))

    res = checkout(client, customer_headers, shipping_address)
    assert res.status_code == 201
    items = res.json()["data"]["order"]["items"]
    assert [i["name"] for i in items] == ["Apples"]


def test_cart_of_only_deleted_products_is_rejected(client, db, customer, customer_headers,
                                                                shipping_address):
    fill_cart(db, customer, (ObjectId(), 1))
    res = checkout(client, customer_headers, shipping_address)
    assert res.status_code == 400
    assert res.json()["message"] == "No valid items in cart. Some products may have been removed."


def test_partial_filter_is_persisted_even_when_checkout_fails(client, db, customer, customer_headers,
                                                              make_product, shipping_address):
    short = make_product(name="Pears", quantity=0, status="out_of_stock")
    fill_cart(db, customer, (short["_id"], 1), (ObjectId(), 1))
    checkout(client, customer_headers, shipping_address)
    items = db["carts"].find_one({"user": customer["_id"]})["items"]
    assert [i["product"] for i in items] == [short["_id"]]


def test_register_to_cash_on_delivery_order(client, db, make_product, shipping_address):
    product = make_product(name="Apples", quantity=10)
    res = client.post("/api/auth/register", json={
        "email": "buyer@example.com", "password": "secret123",
        "firstName": "Kasun", "lastName": "Fernando", "phone": "+94775556666",
    })
    headers = {"Authorization": f"Bearer {res.json()['data']['accessToken']}"}

    client.post("/api/cart/items", headers=headers, json={"productId": str(product["_id"]), "quantity": 3})
    res = checkout(client, headers, shipping_address)
    assert res.status_code == 201
    order = res.json()["data"]["order"]
    assert order["status"] == "pending"
    assert order["paymentInfo"]["status"] == "pending"
    assert order["paymentInfo"]["method"] == "cash_on_delivery"
    assert stock(db, product) == 7

    cart = client.get("/api/cart", headers=headers).json()["data"]
    assert cart["cart"]["items"] == []

    mine = client.get("/api/orders", headers=headers).json()
    assert mine["count"] == 1


@pytest.fixture
def placed_order(client, db, customer, customer_headers, make_product, shipping_address):
    product = make_product(quantity=10)
    fill_cart(db, customer, (product["_id"], 3))
    order = checkout(client, customer_headers, shipping_address).json()["data"]["order"]
    return order, product


def set_status(db, order, status):
    db["orders"].update_one({"_id": ObjectId(order["_id"])}, {"$set": {"status": status}})


def test_cancel_confirmed_order_restores_stock(client, db, customer_headers, placed_order):
    order, product = placed_order
    set_status(db, order, "confirmed")
    assert stock(db, product) == 7

    res = client.patch(f"/api/orders/{order['_id']}/cancel", headers=customer_headers)
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "cancelled"
    assert stock(db, product) == 10


@pytest.mark.parametrize("status", ["delivered", "cancelled"])
def test_cancel_terminal_order_rejected(client, db, customer_headers, placed_order, status):
    order, product = placed_order
    set_status(db, order, status)
    res = client.patch(f"/api/orders/{order['_id']}/cancel", headers=customer_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Cannot cancel this order"
    assert stock(db, product) == 7


def test_cancel_with_deleted_product_still_succeeds(client, db, customer_headers, placed_order):
    order, product = placed_order
    db["products"].delete_one({"_id": product["_id"]})
    res = client.patch(f"/api/orders/{order['_id']}/cancel", headers=customer_headers)
    assert res.status_code == 200


def test_only_owner_can_cancel_or_view(client, db, admin_headers, placed_order):
    order, _ = placed_order
    stranger = auth_header(make_user(db, email="other@example.com"))

    res = client.patch(f"/api/orders/{order['_id']}/cancel", headers=stranger)
    assert res.status_code == 403
    assert res.json()["message"] == "Not authorized to cancel this order"

    res = client.get(f"/api/orders/{order['_id']}", headers=stranger)
    assert res.status_code == 403
    assert client.get(f"/api/orders/{order['_id']}", headers=admin_headers).status_code == 200


def test_admin_status_update_is_unguarded_by_default(client, admin_headers, placed_order):
    order, _ = placed_order
    url = f"/api/orders/{order['_id']}/status"
    assert client.patch(url, headers=admin_headers, json={"status": "delivered"}).status_code == 200

    res = client.patch(url, headers=admin_headers, json={"status": "pending"})
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "pending"


def test_admin_status_update_validation(client, customer_headers, admin_headers, placed_order):
    order, _ = placed_order
    url = f"/api/orders/{order['_id']}/status"
    assert client.patch(url, headers=admin_headers, json={}).json()["message"] == "Please provide status"
    assert client.patch(url, headers=admin_headers, json={"status": "shipped"}).status_code == 400
    assert client.patch(url, headers=customer_headers, json={"status": "confirmed"}).status_code == 403


def test_strict_transitions(db, payments, placed_order):
    order, _ = placed_order
    service = OrderService(db, payments, strict_transitions=True)

    assert service.update_status(order["_id"], "confirmed")["status"] == "confirmed"
    assert service.update_status(order["_id"], "processing")["status"] == "processing"
    with pytest.raises(BusinessRuleError, match="Cannot change order status from processing to pending"):
        service.update_status(order["_id"], "pending")
    assert service.update_status(order["_id"], "delivered")["status"] == "delivered"
    with pytest.raises(BusinessRuleError, match="from delivered to cancelled"):
        service.update_status(order["_id"], "cancelled")


def test_admin_list_is_paginated_and_capped(client, db, admin_headers, placed_order, customer):
    res = client.get("/api/orders/all/list", headers=admin_headers, params={"limit": 500})
    body = res.json()
    assert res.status_code == 200
    assert body["total"] == 1 and body["pages"] == 1
    assert body["data"][0]["user"]["email"] == customer["email"]

    stamp = now_utc()
    db["orders"].insert_many([
        {"orderNumber": f"ORD-1999-{i:06d}", "user": customer["_id"], "items": [], "status": "pending",
         "createdAt": stamp, "updatedAt": stamp}
        for i in range(120)
    ])
    body = client.get("/api/orders/all/list", headers=admin_headers, params={"limit": 500}).json()
    assert body["count"] == 100
    assert body["total"] == 121
    assert body["pages"] == 2


def test_failed_insert_cancels_payment_intent(db, customer, make_product, shipping_address, payments, monkeypatch):
    product = make_product(quantity=5)
    fill_cart(db, customer, (product["_id"], 2))

    def broken_insert(*args, **kwargs):
        raise PyMongoError("insert failed")

    monkeypatch.setattr(orders, "create_document", broken_insert)
    with pytest.raises(PyMongoError):
        OrderService(db, payments).create_order(customer, shipping_address, "stripe")

    intent, _ = payments.intents[0]
    assert payments.cancelled == [intent.id]
    assert stock(db, product) == 5
    assert db["orders"].count_documents({}) == 0


def test_cash_order_insert_failure_opens_no_intent(db, customer, make_product, shipping_address,
                                                   payments, monkeypatch):
    product = make_product(quantity=5)
    fill_cart(db, customer, (product["_id"], 1))

    def broken_insert(*args, **kwargs):
        raise PyMongoError("insert failed")

    monkeypatch.setattr(orders, "create_document", broken_insert)
    with pytest.raises(PyMongoError):
        OrderService(db, payments).create_order(customer, shipping_address, "cash_on_delivery")
    assert payments.intents == [] and payments.cancelled == []
