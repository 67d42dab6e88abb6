"""Tests for the FastAPI API."""

import pytest
from fastapi.testclient import TestClient

from .conftest import seed_products

USER = {"X-User-Id": "u1"}
OTHER = {"X-User-Id": "u2"}


@pytest.fixture
def api_client(temp_dir, monkeypatch):
    """Create a test client over a seeded data directory."""
    monkeypatch.setenv("STOCKCART_DATA_DIR", str(temp_dir / "data"))

    from stockcart.config import get_settings
    from stockcart.services import get_services, reset_services

    get_settings.cache_clear()
    reset_services()
    get_services().stores.catalog.upsert_products(seed_products())

    from stockcart.api import app

    yield TestClient(app)

    reset_services()
    get_settings.cache_clear()


def place_order(client, items=None, headers=USER):
    response = client.post(
        "/api/orders",
        json={"items": items or [{"product_id": "whey", "quantity": 2}]},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()


class TestHealthCheck:
    def test_health(self, api_client):
        response = api_client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["product_count"] == 4
        assert data["watcher_running"] is False


class TestStock:
    def test_product_stock(self, api_client):
        data = api_client.get("/api/products/whey/stock").json()
        assert data == {"product_id": "whey", "variant_id": None, "available": 5, "in_stock": True}

    def test_variant_stock(self, api_client):
        data = api_client.get("/api/products/gainer/stock", params={"variant_id": "van"}).json()
        assert data["available"] == 0
        assert data["in_stock"] is False

    def test_unknown_product(self, api_client):
        response = api_client.get("/api/products/nope/stock")
        assert response.status_code == 404
        assert response.json()["error_type"] == "ProductNotFoundError"


class TestCart:
    def test_add_and_get(self, api_client):
        response = api_client.post(
            "/api/cart/items", json={"product_id": "whey", "quantity": 2}, headers=USER
        )
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

        cart = api_client.get("/api/cart", headers=USER).json()
        assert cart["lines"][0]["quantity"] == 2
        assert cart["lines"][0]["unit_price"] == "10.00"
        assert cart["stats"]["total_value"] == "20.00"

    def test_clamped_add(self, api_client):
        response = api_client.post(
            "/api/cart/items", json={"product_id": "bcaa", "quantity": 7}, headers=USER
        )
        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "clamped"
        assert data["reason"] == "insufficient_stock"
        assert data["applied_quantity"] == 3

    def test_out_of_stock_add(self, api_client):
        response = api_client.post(
            "/api/cart/items", json={"product_id": "creatine"}, headers=USER
        )
        assert response.status_code == 409
        assert response.json()["error_type"] == "OutOfStockError"

    def test_guest_cart_is_rejected(self, api_client):
        response = api_client.get("/api/cart")
        assert response.status_code == 401
        assert response.json()["error_type"] == "GuestCartError"

    def test_update_remove_and_clear(self, api_client):
        api_client.post("/api/cart/items", json={"product_id": "whey"}, headers=USER)
        api_client.post("/api/cart/items", json={"product_id": "bcaa"}, headers=USER)

        updated = api_client.put(
            "/api/cart/items", json={"product_id": "whey", "quantity": 4}, headers=USER
        )
        assert updated.json()["cart"]["stats"]["total_items"] == 5

        removed = api_client.delete(
            "/api/cart/items", params={"product_id": "bcaa"}, headers=USER
        )
        assert [l["product_id"] for l in removed.json()["lines"]] == ["whey"]

        cleared = api_client.delete("/api/cart", headers=USER)
        assert cleared.json()["lines"] == []

    def test_invalid_quantity(self, api_client):
        response = api_client.post(
            "/api/cart/items", json={"product_id": "whey", "quantity": 0}, headers=USER
        )
        assert response.status_code == 400

    def test_sync(self, api_client):
        response = api_client.post(
            "/api/cart/sync",
            json={"items": [{"product_id": "whey", "quantity": 2}, {"product_id": "creatine"}]},
            headers=USER,
        )
        data = response.json()
        assert response.status_code == 200
        assert [s["product_id"] for s in data["succeeded"]] == ["whey"]
        assert data["failed"][0]["error_type"] == "OutOfStockError"


class TestOrders:
    def test_create_order(self, api_client):
        order = place_order(
            api_client, [{"product_id": "whey", "quantity": 2}, {"product_id": "bcaa"}]
        )

        assert order["status"] == "pending"
        assert order["total"] == "49.19"
        stock = api_client.get("/api/products/whey/stock").json()
        assert stock["available"] == 3

    def test_rolled_back_order(self, api_client):
        response = api_client.post(
            "/api/orders",
            json={"items": [{"product_id": "whey", "quantity": 2}, {"product_id": "creatine"}]},
            headers=USER,
        )
        assert response.status_code == 409
        assert api_client.get("/api/products/whey/stock").json()["available"] == 5

    def test_guest_order(self, api_client):
        response = api_client.post("/api/orders", json={"items": [{"product_id": "whey"}]})
        assert response.status_code == 201
        assert response.json()["user_id"] is None

    def test_checkout(self, api_client):
        api_client.post("/api/cart/items", json={"product_id": "whey"}, headers=USER)

        response = api_client.post(
            "/api/orders/checkout", json={"shipping_address": {"city": "Pune"}}, headers=USER
        )

        assert response.status_code == 201
        assert response.json()["billing_address"] == {"city": "Pune"}
        assert api_client.get("/api/cart", headers=USER).json()["lines"] == []

    def test_checkout_empty_cart(self, api_client):
        response = api_client.post("/api/orders/checkout", json={}, headers=USER)
        assert response.status_code == 400
        assert response.json()["error_type"] == "EmptyOrderError"

    def test_list_and_get(self, api_client):
        order = place_order(api_client)
        place_order(api_client, headers=OTHER)

        listing = api_client.get("/api/orders", headers=USER).json()
        assert [o["id"] for o in listing["orders"]] == [order["id"]]
        assert listing["pagination"]["total"] == 1

        assert api_client.get(f"/api/orders/{order['id']}", headers=USER).status_code == 200
        assert api_client.get(f"/api/orders/{order['id']}", headers=OTHER).status_code == 404

    def test_list_requires_user(self, api_client):
        assert api_client.get("/api/orders").status_code == 401

    def test_cancel(self, api_client):
        order = place_order(api_client)

        response = api_client.post(f"/api/orders/{order['id']}/cancel", headers=USER)

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert api_client.get("/api/products/whey/stock").json()["available"] == 5

    def test_cancel_shipped(self, api_client):
        order = place_order(api_client)
        for status in ("confirmed", "processing", "shipped"):
            api_client.put(f"/api/admin/orders/{order['id']}/status", json={"status": status})

        response = api_client.post(f"/api/orders/{order['id']}/cancel", headers=USER)

        assert response.status_code == 409
        assert response.json()["error_type"] == "InvalidTransitionError"

    def test_return_and_tracking(self, api_client):
        order = place_order(api_client)
        for status in ("confirmed", "processing", "shipped", "delivered"):
            response = api_client.put(
                f"/api/admin/orders/{order['id']}/status",
                json={"status": status, "tracking_number": "TRK1"},
            )
            assert response.status_code == 200

        tracking = api_client.get(f"/api/orders/{order['id']}/tracking", headers=USER).json()
        assert tracking["status"] == "delivered"
        assert tracking["tracking_number"] == "TRK1"

        response = api_client.post(
            f"/api/orders/{order['id']}/return", json={"reason": "Damaged"}, headers=USER
        )
        assert response.status_code == 200
        assert response.json()["status"] == "returned"

    def test_invalid_status_jump(self, api_client):
        order = place_order(api_client)
        response = api_client.put(
            f"/api/admin/orders/{order['id']}/status", json={"status": "delivered"}
        )
        assert response.status_code == 409


class TestPaymentWebhook:
    def test_success(self, api_client):
        order = place_order(api_client)

        response = api_client.post(
            "/api/payments/webhook",
            json={"order_id": order["id"], "outcome": "success", "gateway": "stripe"},
        )

        assert response.status_code == 200
        assert response.json()["payment_status"] == "paid"
        assert response.json()["status"] == "confirmed"

    def test_unknown_order(self, api_client):
        response = api_client.post(
            "/api/payments/webhook", json={"order_id": "missing", "outcome": "failure"}
        )
        assert response.status_code == 404

    def test_invalid_outcome(self, api_client):
        response = api_client.post(
            "/api/payments/webhook", json={"order_id": "x", "outcome": "maybe"}
        )
        assert response.status_code == 422


class TestWishlist:
    def test_add_update_list_remove(self, api_client):
        response = api_client.post(
            "/api/wishlist", json={"product_id": "creatine", "auto_add_to_cart": True}, headers=USER
        )
        assert response.status_code == 201
        assert response.json()["was_out_of_stock"] is True

        updated = api_client.put(
            "/api/wishlist", json={"product_id": "creatine", "notify_on_restock": True}, headers=USER
        )
        assert updated.json()["auto_add_to_cart"] is True
        assert updated.json()["notify_on_restock"] is True

        listing = api_client.get("/api/wishlist", headers=USER).json()
        assert listing["count"] == 1
        assert listing["wishlist"][0]["available"] == 0

        removed = api_client.delete(
            "/api/wishlist", params={"product_id": "creatine"}, headers=USER
        )
        assert removed.json() == {"wishlist": [], "count": 0}

    def test_remove_missing(self, api_client):
        response = api_client.delete(
            "/api/wishlist", params={"product_id": "whey"}, headers=USER
        )
        assert response.status_code == 404


class TestWatcher:
    def test_sweep_auto_adds_restocked_item(self, api_client):
        from stockcart.services import get_services

        api_client.post(
            "/api/wishlist", json={"product_id": "creatine", "auto_add_to_cart": True}, headers=USER
        )
        get_services().stores.catalog.adjust_stock("creatine", None, 2)

        report = api_client.post("/api/watcher/sweep").json()

        assert report["users_processed"] == 1
        assert report["auto_added"][0]["product_id"] == "creatine"
        cart = api_client.get("/api/cart", headers=USER).json()
        assert cart["lines"][0]["product_id"] == "creatine"
        assert api_client.get("/api/wishlist", headers=USER).json()["count"] == 0

        status = api_client.get("/api/watcher/status").json()
        assert status["last_report"]["users_processed"] == 1
