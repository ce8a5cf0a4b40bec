"""
HTTP API tests.

Verifies:
- Missing/unknown actor returns 401, wrong role returns 403
- Checkout quote and order placement status codes
- Shopper, back-office and delivery flows over HTTP
- Health and CORS
"""

import pytest

from kirana.extensions import db
from kirana.models import Order
from kirana.services import coupon_service, wallet_service

from conftest import auth_headers


ITEMS = [{"product_id": 1, "unit_price_cents": 50000, "quantity": 1, "name": "Basmati 5kg"}]


def _place(client, user, address, **extra):
    body = {"address_id": address.id, "items": ITEMS, "payment_method": "cod"}
    body.update(extra)
    return client.post("/api/checkout/orders", json=body, headers=auth_headers(user))


# =============================================================================
# AUTHENTICATION / AUTHORIZATION
# =============================================================================

class TestAccess:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/orders"),
            ("POST", "/api/checkout/quote"),
            ("POST", "/api/checkout/orders"),
            ("GET", "/api/wallet"),
            ("GET", "/api/loyalty"),
            ("GET", "/api/admin/orders"),
            ("GET", "/api/admin/coupons"),
            ("GET", "/api/delivery/orders"),
        ],
    )
    def test_requires_actor(self, client, db_session, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401

    def test_unknown_user_rejected(self, client, db_session):
        resp = client.get("/api/orders", headers={"X-User-Id": "99999"})
        assert resp.status_code == 401

    def test_malformed_header_rejected(self, client, db_session):
        resp = client.get("/api/orders", headers={"X-User-Id": "abc"})
        assert resp.status_code == 401

    def test_inactive_user_rejected(self, client, db_session, customer):
        customer.is_active = False
        db.session.commit()
        resp = client.get("/api/orders", headers=auth_headers(customer))
        assert resp.status_code == 401

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/admin/orders"),
            ("GET", "/api/admin/coupons"),
            ("PUT", "/api/admin/loyalty/settings"),
            ("GET", "/api/delivery/orders"),
        ],
    )
    def test_customer_denied_back_office(self, client, customer, method, path):
        resp = getattr(client, method.lower())(path, json={}, headers=auth_headers(customer))
        assert resp.status_code == 403
        assert "required_roles" in resp.get_json()

    def test_staff_denied_admin_only(self, client, staff):
        resp = client.get("/api/admin/coupons", headers=auth_headers(staff))
        assert resp.status_code == 403


# =============================================================================
# CHECKOUT
# =============================================================================

class TestCheckoutApi:
    def test_quote(self, client, customer):
        resp = client.post(
            "/api/checkout/quote",
            json={"items": [{"unit_price_cents": 45000, "quantity": 1}], "coupon_code": "nope"},
            headers=auth_headers(customer),
        )
        assert resp.status_code == 200
        quote = resp.get_json()["quote"]
        assert quote["delivery_fee_cents"] == 4000
        assert quote["final_total_cents"] == 49000
        assert quote["coupon_rejection"]["code"] == "COUPON_NOT_FOUND"

    def test_quote_bad_cart(self, client, customer):
        resp = client.post("/api/checkout/quote", json={"items": []}, headers=auth_headers(customer))
        assert resp.status_code == 400

    def test_place_order(self, client, customer, address):
        resp = _place(client, customer, address, note="Call on arrival")
        assert resp.status_code == 201
        order = resp.get_json()["order"]
        assert order["status"] == "pending"
        assert order["total_price_cents"] == 50000
        assert order["items"][0]["name"] == "Basmati 5kg"
        assert order["note"]["user_note"] == "Call on arrival"

    def test_missing_address(self, client, customer):
        resp = client.post("/api/checkout/orders", json={"items": ITEMS}, headers=auth_headers(customer))
        assert resp.status_code == 400

    def test_rejected_coupon_returns_reason(self, client, customer, address):
        coupon_service.create_coupon({"code": "BIG", "discount_type": "fixed",
                                      "discount_value": 1000, "min_order_cents": 100000})
        resp = _place(client, customer, address, coupon_code="big")
        assert resp.status_code == 400
        assert resp.get_json()["reason"] == "COUPON_MIN_ORDER_NOT_MET"
        assert db.session.query(Order).count() == 0

    def test_total_changed_conflict(self, client, customer, address):
        resp = _place(client, customer, address, expected_total_cents=1)
        assert resp.status_code == 409

    def test_wallet_amount_over_balance_conflict(self, client, customer, address):
        wallet_service.top_up(customer.id, 2000)
        resp = _place(client, customer, address, wallet_amount_cents=5000)
        assert resp.status_code == 409

    def test_decimal_money_rejected(self, client, customer, address):
        resp = _place(client, customer, address, expected_total_cents="499.00")
        assert resp.status_code == 400


# =============================================================================
# SHOPPER ORDERS
# =============================================================================

class TestShopperOrders:
    def test_list_and_detail(self, client, customer, other_customer, address):
        order_id = _place(client, customer, address).get_json()["order"]["id"]

        listed = client.get("/api/orders", headers=auth_headers(customer)).get_json()["orders"]
        assert [o["id"] for o in listed] == [order_id]

        assert client.get(f"/api/orders/{order_id}", headers=auth_headers(customer)).status_code == 200
        assert client.get(f"/api/orders/{order_id}", headers=auth_headers(other_customer)).status_code == 403
        assert client.get("/api/orders/424242", headers=auth_headers(customer)).status_code == 404

    def test_history(self, client, customer, address):
        order_id = _place(client, customer, address).get_json()["order"]["id"]
        resp = client.get(f"/api/orders/{order_id}/history", headers=auth_headers(customer))
        assert [h["status"] for h in resp.get_json()["history"]] == ["pending"]

    def test_cancel(self, client, customer, address):
        order_id = _place(client, customer, address).get_json()["order"]["id"]
        resp = client.post(f"/api/orders/{order_id}/cancel", json={"reason": "Duplicate"},
                           headers=auth_headers(customer))
        assert resp.status_code == 200
        assert resp.get_json()["order"]["status"] == "cancelled"

        again = client.post(f"/api/orders/{order_id}/cancel", headers=auth_headers(customer))
        assert again.status_code == 403

    def test_bad_status_filter(self, client, customer):
        resp = client.get("/api/orders?status=lost", headers=auth_headers(customer))
        assert resp.status_code == 400


# =============================================================================
# BACK-OFFICE AND DELIVERY
# =============================================================================

class TestBackOfficeAndDelivery:
    def test_full_flow(self, client, customer, address, admin, staff, agent):
        order_id = _place(client, customer, address).get_json()["order"]["id"]

        for status in ("confirmed", "processing"):
            resp = client.patch(f"/api/admin/orders/{order_id}/status", json={"status": status},
                                headers=auth_headers(staff))
            assert resp.status_code == 200

        agents = client.get("/api/admin/delivery-agents", headers=auth_headers(staff)).get_json()["agents"]
        assert [a["id"] for a in agents] == [agent.id]

        resp = client.post(f"/api/admin/orders/{order_id}/assign", json={"delivery_boy_id": agent.id},
                           headers=auth_headers(staff))
        assert resp.status_code == 200

        assigned = client.get("/api/delivery/orders?active_only=true", headers=auth_headers(agent))
        assert [o["id"] for o in assigned.get_json()["orders"]] == [order_id]

        for action in ("accept", "start", "deliver"):
            resp = client.post(f"/api/delivery/orders/{order_id}/{action}", headers=auth_headers(agent))
            assert resp.status_code == 200, action
        assert resp.get_json()["order"]["status"] == "delivered"

        resp = client.patch(f"/api/admin/orders/{order_id}/payment-status", json={"payment_status": "paid"},
                            headers=auth_headers(admin))
        assert resp.status_code == 200
        assert resp.get_json()["order"]["payment_status"] == "paid"

    def test_invalid_transition_is_403(self, client, customer, address, staff):
        order_id = _place(client, customer, address).get_json()["order"]["id"]
        resp = client.patch(f"/api/admin/orders/{order_id}/status", json={"status": "delivered"},
                            headers=auth_headers(staff))
        assert resp.status_code == 403

    def test_unknown_status_is_400(self, client, customer, address, staff):
        order_id = _place(client, customer, address).get_json()["order"]["id"]
        resp = client.patch(f"/api/admin/orders/{order_id}/status", json={"status": "teleported"},
                            headers=auth_headers(staff))
        assert resp.status_code == 400

    def test_staff_cannot_set_payment_status(self, client, customer, address, staff):
        order_id = _place(client, customer, address).get_json()["order"]["id"]
        resp = client.patch(f"/api/admin/orders/{order_id}/payment-status", json={"payment_status": "paid"},
                            headers=auth_headers(staff))
        assert resp.status_code == 403

    def test_unassigned_agent_accept_is_403(self, client, customer, address, agent):
        order_id = _place(client, customer, address).get_json()["order"]["id"]
        resp = client.post(f"/api/delivery/orders/{order_id}/accept", headers=auth_headers(agent))
        assert resp.status_code == 403

    def test_admin_order_detail_includes_customer(self, client, customer, address, admin):
        order_id = _place(client, customer, address).get_json()["order"]["id"]
        resp = client.get(f"/api/admin/orders/{order_id}", headers=auth_headers(admin))
        assert resp.get_json()["order"]["customer"]["username"] == customer.username


# =============================================================================
# WALLET, LOYALTY AND COUPON ADMIN
# =============================================================================

class TestLedgerApi:
    def test_top_up_and_summary(self, client, customer):
        resp = client.post("/api/wallet/topup", json={"amount_cents": 50000}, headers=auth_headers(customer))
        assert resp.status_code == 201
        assert resp.get_json()["wallet"]["balance_cents"] == 50000

        summary = client.get("/api/wallet", headers=auth_headers(customer)).get_json()["wallet"]
        assert summary["balance_cents"] == 50000
        assert len(summary["transactions"]) == 1

    def test_top_up_below_minimum(self, client, customer):
        resp = client.post("/api/wallet/topup", json={"amount_cents": 500}, headers=auth_headers(customer))
        assert resp.status_code == 400

    def test_convert_points(self, client, customer, admin, loyalty_settings):
        resp = client.post(f"/api/admin/loyalty/{customer.id}/adjust", json={"points": 500, "reason": "Promo"},
                           headers=auth_headers(admin))
        assert resp.status_code == 200

        resp = client.post("/api/loyalty/convert", json={"points": 200}, headers=auth_headers(customer))
        assert resp.status_code == 200
        conversion = resp.get_json()["conversion"]
        assert conversion["amount_cents"] == 2000
        assert conversion["total_points"] == 300

        too_many = client.post("/api/loyalty/convert", json={"points": 1000}, headers=auth_headers(customer))
        assert too_many.status_code == 400

    def test_wallet_adjust_overdraw(self, client, customer, admin):
        resp = client.post(f"/api/admin/wallets/{customer.id}/adjust",
                           json={"amount_cents": -100, "reason": "Correction"}, headers=auth_headers(admin))
        assert resp.status_code == 400

    def test_coupon_admin(self, client, admin):
        resp = client.post("/api/admin/coupons", json={"code": "diwali", "discount_type": "percentage",
                                                       "discount_value": 1500}, headers=auth_headers(admin))
        assert resp.status_code == 201
        coupon_id = resp.get_json()["coupon"]["id"]
        assert resp.get_json()["coupon"]["code"] == "DIWALI"

        dup = client.post("/api/admin/coupons", json={"code": "DIWALI", "discount_type": "fixed",
                                                      "discount_value": 100}, headers=auth_headers(admin))
        assert dup.status_code == 409

        patched = client.patch(f"/api/admin/coupons/{coupon_id}", json={"is_active": False},
                               headers=auth_headers(admin))
        assert patched.get_json()["coupon"]["is_active"] is False

        detail = client.get(f"/api/admin/coupons/{coupon_id}", headers=auth_headers(admin)).get_json()
        assert detail["coupon"]["usage"] == []

    def test_loyalty_settings(self, client, admin):
        resp = client.put("/api/admin/loyalty/settings", json={"max_redeem_bps": 2500}, headers=auth_headers(admin))
        assert resp.status_code == 200
        assert resp.get_json()["settings"]["max_redeem_bps"] == 2500
        bad = client.put("/api/admin/loyalty/settings", json={"max_redeem_bps": 20000}, headers=auth_headers(admin))
        assert bad.status_code == 400


# =============================================================================
# SYSTEM
# =============================================================================

class TestSystem:
    def test_health(self, client, setup_roles):
        resp = client.get("/api/system/health")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["status"] == "healthy"
        assert set(body["checks"]) == {"database", "roles", "order_events"}

    def test_health_degraded_without_roles(self, client, db_session):
        body = client.get("/api/system/health").get_json()
        assert body["status"] == "degraded"

    def test_cors_for_allowed_origin(self, client, db_session):
        resp = client.get("/api/system/health", headers={"Origin": "http://localhost:5173"})
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:5173"
        assert "X-User-Id" in resp.headers["Access-Control-Allow-Headers"]

        other = client.get("/api/system/health", headers={"Origin": "http://evil.example"})
        assert "Access-Control-Allow-Origin" not in other.headers

    def test_event_stream_scoped_to_visible_order(self, client, customer, other_customer, address):
        order_id = _place(client, customer, address).get_json()["order"]["id"]

        denied = client.get(f"/api/orders/events?order_id={order_id}", headers=auth_headers(other_customer))
        assert denied.status_code == 403

        missing = client.get("/api/orders/events?order_id=424242", headers=auth_headers(customer))
        assert missing.status_code == 404
