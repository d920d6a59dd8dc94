import logging
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from pymongo.errors import OperationFailure

from errors import CheckoutFailed, ValidationError
from stores import OrderStore, SavedItemStore


def test_checkout_records_order_clears_cart_and_decrements_stock(user_client, db, product_id):
    user_client.post("/cart", json={"productId": product_id, "quantity": 2})

    response = user_client.post(
        "/order",
        json={
            "products": [{"productId": product_id, "quantity": 2}],
            "totalAmount": 100,
            "status": "delivered",
            "email": "someone-else@ztech.io",
        },
    )

    assert response.status_code == 201
    orders = list(db.orders.find({"email": "shopper@ztech.io"}))
    assert len(orders) == 1
    assert orders[0]["status"] == "pending"
    assert str(orders[0]["_id"]) == response.get_json()["insertedId"]
    assert db.orders.count_documents({"email": "someone-else@ztech.io"}) == 0
    assert db.carts.count_documents({"email": "shopper@ztech.io"}) == 0
    assert db.products.find_one({"_id": ObjectId(product_id)})["stock"] == 8


def test_checkout_is_logged_through_the_app_logger(app, user_client, product_id, caplog):
    caplog.set_level(logging.INFO, logger=app.logger.name)

    user_client.post(
        "/order",
        json={"products": [{"productId": product_id, "quantity": 1}], "totalAmount": 120},
    )

    records = [record for record in caplog.records if record.name == app.logger.name]
    assert any("placed by shopper@ztech.io" in record.getMessage() for record in records)


def test_checkout_lets_stock_go_negative(user_client, db, product_id):
    user_client.post(
        "/order",
        json={"products": [{"productId": product_id, "quantity": 12}], "totalAmount": 1440},
    )

    assert db.products.find_one({"_id": ObjectId(product_id)})["stock"] == -2


def test_checkout_leaves_untracked_stock_alone(user_client, db):
    untracked = db.products.insert_one({"name": "Gift card"}).inserted_id

    response = user_client.post(
        "/order",
        json={"products": [{"productId": str(untracked)}], "totalAmount": 50},
    )

    assert response.status_code == 201
    assert response.get_json()["order"]["products"][0]["quantity"] == 1
    assert "stock" not in db.products.find_one({"_id": untracked})


@pytest.mark.parametrize(
    "payload",
    [
        {"products": [], "totalAmount": 10},
        {"products": [{"productId": "bogus", "quantity": 1}], "totalAmount": 10},
        {"products": [{"productId": str(ObjectId()), "quantity": -1}], "totalAmount": 10},
        {"products": [{"productId": str(ObjectId()), "quantity": "\u00b2"}], "totalAmount": 10},
        {"products": [{"productId": str(ObjectId()), "quantity": 1}], "totalAmount": "ten"},
    ],
)
def test_invalid_orders_change_nothing(user_client, db, payload):
    response = user_client.post("/order", json=payload)

    assert response.status_code == 400
    assert db.orders.count_documents({}) == 0


def test_own_orders_are_newest_first(user_client, db):
    db.orders.insert_many(
        [
            {"email": "shopper@ztech.io", "totalAmount": 1, "createdAt": datetime(2024, 3, 1)},
            {"email": "shopper@ztech.io", "totalAmount": 2, "createdAt": datetime(2024, 3, 2)},
            {"email": "other@ztech.io", "totalAmount": 3, "createdAt": datetime(2024, 3, 3)},
        ]
    )

    orders = user_client.get("/orders").get_json()

    assert [order["totalAmount"] for order in orders] == [2, 1]


def test_admin_inspects_and_updates_orders(admin_client, db):
    order_id = db.orders.insert_one(
        {"email": "shopper@ztech.io", "status": "delivered", "totalAmount": 5}
    ).inserted_id

    assert len(admin_client.get("/admin/orders").get_json()) == 1
    assert admin_client.get(f"/admin/orders/{order_id}").get_json()["status"] == "delivered"
    assert admin_client.get(f"/admin/orders/{ObjectId()}").status_code == 404

    response = admin_client.patch(f"/admin/orders/{order_id}", json={"status": "pending"})
    assert response.get_json()["modifiedCount"] == 1
    admin_client.patch(f"/orders/{order_id}/status", json={"status": "shipped"})
    assert db.orders.find_one({"_id": order_id})["status"] == "shipped"
    assert admin_client.patch(f"/admin/orders/{order_id}", json={}).status_code == 400


def test_stats_sum_revenue_over_every_status(admin_client, db, product_id):
    db.orders.insert_many(
        [
            {"status": "pending", "totalAmount": 100},
            {"status": "cancelled", "totalAmount": 40.5},
            {"status": "delivered", "totalAmount": 9.5},
        ]
    )

    stats = admin_client.get("/admin/stats").get_json()

    assert stats == {
        "totalUsers": 1,
        "totalProducts": 1,
        "totalOrders": 3,
        "revenue": 150.0,
    }


def test_stats_on_empty_store(admin_client):
    assert admin_client.get("/admin/stats").get_json()["revenue"] == 0


@pytest.fixture
def stocked(db):
    keyboard = db.products.insert_one({"name": "Keyboard", "stock": 5}).inserted_id
    mouse = db.products.insert_one({"name": "Mouse", "stock": 5}).inserted_id
    carts = SavedItemStore(db["carts"], "Already added to cart", track_quantity=True)
    carts.add("a@x.com", {"productId": str(keyboard)})
    carts.add("a@x.com", {"productId": str(mouse)})
    order = {
        "products": [
            {"productId": str(keyboard), "quantity": 1},
            {"productId": str(mouse), "quantity": 2},
        ],
        "totalAmount": 60,
    }
    return OrderStore(db, carts), carts, order, (keyboard, mouse)


def test_failed_cart_clear_rolls_back_the_order(db, stocked, monkeypatch):
    orders, carts, payload, (keyboard, mouse) = stocked

    def broken_delete_many(*args, **kwargs):
        raise OperationFailure("not primary")

    monkeypatch.setattr(carts._items, "delete_many", broken_delete_many)

    with pytest.raises(CheckoutFailed):
        orders.checkout("a@x.com", payload)

    assert db.orders.count_documents({}) == 0
    assert len(carts.list("a@x.com")) == 2
    assert db.products.find_one({"_id": keyboard})["stock"] == 5


def test_failed_stock_update_restores_everything(db, stocked, monkeypatch):
    orders, carts, payload, (keyboard, mouse) = stocked
    real_update_one = orders._products.update_one
    decrements = []

    def flaky_update_one(query, update, *args, **kwargs):
        if update.get("$inc", {}).get("stock", 0) < 0:
            decrements.append(query["_id"])
            if len(decrements) == 2:
                raise OperationFailure("write conflict")
        return real_update_one(query, update, *args, **kwargs)

    monkeypatch.setattr(orders._products, "update_one", flaky_update_one)

    with pytest.raises(CheckoutFailed):
        orders.checkout("a@x.com", payload)

    assert db.orders.count_documents({}) == 0
    assert sorted(item["productId"] for item in carts.list("a@x.com")) == sorted(
        [str(keyboard), str(mouse)]
    )
    assert db.products.find_one({"_id": keyboard})["stock"] == 5
    assert db.products.find_one({"_id": mouse})["stock"] == 5


class FakeTransaction:
    def __init__(self, events):
        self.events = events

    def __enter__(self):
        self.events.append("start")
        return self

    def __exit__(self, exc_type, exc, traceback):
        self.events.append("abort" if exc_type else "commit")
        return False


class FakeSession:
    def __init__(self, events):
        self.events = events

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, traceback):
        self.events.append("end")
        return False

    def start_transaction(self):
        return FakeTransaction(self.events)


class FakeClient:
    def __init__(self):
        self.events = []

    def start_session(self):
        return FakeSession(self.events)


def transactional_store():
    collections = {"orders": MagicMock(), "products": MagicMock()}
    collections["orders"].insert_one.side_effect = lambda document, **kwargs: document.setdefault(
        "_id", ObjectId()
    )
    carts = MagicMock(spec=SavedItemStore)
    client = FakeClient()
    store = OrderStore(collections, carts, client=client, use_transactions=True)
    return store, collections, carts, client


def test_transactional_checkout_shares_one_session():
    store, collections, carts, client = transactional_store()
    product_id = ObjectId()

    order = store.checkout(
        "a@x.com",
        {"products": [{"productId": str(product_id), "quantity": 2}], "totalAmount": 10},
    )

    assert client.events == ["start", "commit", "end"]
    session = collections["orders"].insert_one.call_args.kwargs["session"]
    carts.clear.assert_called_once_with("a@x.com", session=session)
    query, update = collections["products"].update_one.call_args.args
    assert query["_id"] == product_id
    assert update == {"$inc": {"stock": -2}}
    assert collections["products"].update_one.call_args.kwargs["session"] is session
    assert order["status"] == "pending"


def test_transactional_checkout_aborts_on_failure():
    store, collections, carts, client = transactional_store()
    carts.clear.side_effect = OperationFailure("transaction too large")

    with pytest.raises(CheckoutFailed):
        store.checkout(
            "a@x.com",
            {"products": [{"productId": str(ObjectId())}], "totalAmount": 10},
        )

    assert client.events == ["start", "abort", "end"]
    collections["products"].update_one.assert_not_called()


def test_set_status_requires_text(db):
    orders = OrderStore(db, SavedItemStore(db["carts"], "dup"))

    with pytest.raises(ValidationError):
        orders.set_status(str(ObjectId()), "")
    assert orders.set_status(str(ObjectId()), "delivered").matched_count == 0
