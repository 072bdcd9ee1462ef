from decimal import Decimal

import pytest

from conftest import auth_headers
from storefront.ledger import CreditLedger

ADMIN = auth_headers("admin-1", role="admin")
CUSTOMER = auth_headers("user-yyyyyy")


def order_body(**overrides):
    body = {
        "items": [{"product_id": "svc-raid", "quantity": 3, "product_type": "service"}],
        "customer": {"email": "buyer@example.com", "name": "Buyer"},
    }
    body.update(overrides)
    return body


def legacy_body(**overrides):
    order_data = {
        "customerEmail": "legacy@example.com",
        "customerName": "Legacy Buyer",
        "services": [{"id": "svc-level", "name": "Level Boost", "price": 0.01, "quantity": 1}],
        "customOrderData": {
            "items": [
                {
                    "product_id": "custom-medals",
                    "item_name": "Medals",
                    "category": "farming",
                    "quantity": 20,
                    "price_per_unit": 0.01,
                    "total_price": 0.2,
                }
            ],
            "special_instructions": "EU servers",
            "customer_discord": "buyer#0001",
        },
        "notes": "Thanks!",
    }
    order_data.update(overrides)
    return {"paymentIntentId": "pi_legacy_1", "orderData": order_data}


class TestPublicEndpoints:
    def test_health(self, client):
        assert client.get("/healthz").json() == {"status": "healthy"}

    def test_pricing_validate(self, client):
        response = client.post(
            "/pricing/validate",
            json={"items": [
                {"product_id": "svc-raid", "quantity": 3, "product_type": "service"},
                {"product_id": "svc-retired", "quantity": 1, "product_type": "service"},
            ]},
        )

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["validated_items"][0]["total_price"]) == Decimal("24.00")
        assert data["invalid_items"] == [{"product_id": "svc-retired", "reason": "Product not found or inactive"}]
        assert data["summary"]["invalid"] == 1


class TestCreateOrder:
    def test_guest_checkout(self, client):
        response = client.post("/orders", json=order_body())

        assert response.status_code == 201
        created = response.json()
        assert Decimal(created["total_amount"]) == Decimal("25.92")

        order = client.get(f"/orders/{created['order_id']}", headers=ADMIN).json()
        assert order["status"] == "pending"
        assert order["user_id"] is None
        assert order["metadata"]["ip_address"] == "testclient"
        assert [entry["status"] for entry in order["status_history"]] == ["pending"]

    def test_signed_in_customer_orders_for_themselves(self, client):
        body = order_body(customer={"user_id": "someone-else", "email": "buyer@example.com", "name": "Buyer"})
        created = client.post("/orders", json=body, headers=CUSTOMER).json()

        order = client.get(f"/orders/{created['order_id']}", headers=CUSTOMER)
        assert order.status_code == 200
        assert order.json()["user_id"] == "user-yyyyyy"

    def test_legacy_payload(self, client):
        response = client.post("/orders", json=legacy_body())

        assert response.status_code == 201
        order = client.get(f"/orders/{response.json()['order_id']}", headers=ADMIN).json()
        assert order["order_type"] == "custom"
        assert order["payment_reference"] == "pi_legacy_1"
        assert order["customer_discord"] == "buyer#0001"
        assert order["special_instructions"] == "EU servers"
        assert Decimal(order["subtotal_amount"]) == Decimal("35.00")
        assert {item["product_id"] for item in order["items"]} == {"svc-level", "custom-medals"}

    def test_legacy_payload_is_idempotent(self, client):
        first = client.post("/orders", json=legacy_body()).json()
        second = client.post("/orders", json=legacy_body()).json()
        assert first["order_id"] == second["order_id"]

    def test_malformed_payload(self, client):
        assert client.post("/orders", json={"items": []}).status_code == 422
        assert client.post("/orders", json=legacy_body(customerEmail="not-an-email")).status_code == 422

    def test_no_valid_items(self, client):
        body = order_body(items=[{"product_id": "svc-retired", "quantity": 1, "product_type": "service"}])
        response = client.post("/orders", json=body)

        assert response.status_code == 400
        assert response.json()["detail"] == "No valid items in order"

    def test_insufficient_credits(self, client):
        response = client.post("/orders", json=order_body(credits_to_use="5.00"), headers=CUSTOMER)

        assert response.status_code == 402
        assert response.json()["available"] == "0.00"

    def test_invalid_token(self, client):
        response = client.post("/orders", json=order_body(), headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    @pytest.mark.parametrize("headers", [{}, CUSTOMER])
    def test_client_payment_status_and_discount_are_ignored(self, client, headers):
        body = order_body(payment_status="paid", discount="1000")
        created = client.post("/orders", json=body, headers=headers).json()

        assert Decimal(created["total_amount"]) == Decimal("25.92")
        order = client.get(f"/orders/{created['order_id']}", headers=ADMIN).json()
        assert order["payment_status"] == "pending"
        assert Decimal(order["discount_amount"]) == Decimal("0.00")

        response = client.put(f"/orders/{created['order_id']}/status", json={"status": "completed"}, headers=ADMIN)
        assert response.status_code == 400
        assert client.get(f"/orders/{created['order_id']}", headers=ADMIN).json()["status"] == "pending"

    def test_legacy_referral_discount_is_ignored_for_guests(self, client):
        created = client.post("/orders", json=legacy_body(referralDiscount=30)).json()
        assert Decimal(created["total_amount"]) == Decimal("37.80")

    def test_admin_may_set_payment_status_and_discount(self, client):
        body = order_body(payment_status="paid", discount="4.00")
        created = client.post("/orders", json=body, headers=ADMIN).json()

        order = client.get(f"/orders/{created['order_id']}", headers=ADMIN).json()
        assert order["payment_status"] == "paid"
        assert Decimal(order["discount_amount"]) == Decimal("4.00")
        assert Decimal(order["total_amount"]) == Decimal("21.60")

    def test_payment_reference_of_deleted_order_is_rejected(self, client):
        first = client.post("/orders", json=legacy_body()).json()
        assert client.delete(f"/orders/{first['order_id']}", headers=ADMIN).status_code == 204

        response = client.post("/orders", json=legacy_body())

        assert response.status_code == 400
        assert "deleted order" in response.json()["detail"]


class TestOrderAdministration:
    @pytest.fixture
    def order_id(self, client):
        body = order_body(
            customer={"user_id": "user-yyyyyy", "email": "buyer@example.com", "name": "Buyer"},
            payment_status="paid",
        )
        return client.post("/orders", json=body, headers=ADMIN).json()["order_id"]

    def test_status_update_requires_admin(self, client, order_id):
        response = client.put(f"/orders/{order_id}/status", json={"status": "confirmed"}, headers=CUSTOMER)
        assert response.status_code == 403

    def test_status_workflow(self, client, order_id):
        response = client.put(f"/orders/{order_id}/status", json={"status": "completed", "note": "Done"}, headers=ADMIN)

        assert response.status_code == 200
        order = response.json()
        assert order["status"] == "completed"
        assert order["fulfillment_status"] == "fulfilled"
        assert order["progress"] == 100
        assert order["status_history"][-1] == {
            "status": "completed", "timestamp": order["status_history"][-1]["timestamp"], "note": "Done",
        }

    def test_invalid_transition(self, client, order_id):
        client.put(f"/orders/{order_id}/status", json={"status": "cancelled"}, headers=ADMIN)
        response = client.put(f"/orders/{order_id}/status", json={"status": "processing"}, headers=ADMIN)

        assert response.status_code == 400
        assert "cancelled -> processing" in response.json()["detail"]

    def test_payment_and_progress(self, client, order_id):
        assert client.put(f"/orders/{order_id}/payment", json={"payment_status": "partial"}, headers=ADMIN).status_code == 200
        response = client.put(f"/orders/{order_id}/progress", json={"progress": 60}, headers=ADMIN)

        assert response.json()["progress"] == 60
        assert response.json()["payment_status"] == "partial"
        assert client.put(f"/orders/{order_id}/progress", json={"progress": 120}, headers=ADMIN).status_code == 422

    def test_notes_and_timeline(self, client, order_id):
        client.post(f"/orders/{order_id}/notes", json={"note": "Evenings please"}, headers=CUSTOMER)
        client.post(f"/orders/{order_id}/notes", json={"note": "Assigned"}, headers=ADMIN)

        order = client.get(f"/orders/{order_id}", headers=ADMIN).json()
        assert order["notes"] == "Evenings please"
        assert order["admin_notes"] == "Assigned"

        timeline = client.get(f"/orders/{order_id}/timeline", headers=CUSTOMER).json()
        assert [event["event_type"] for event in timeline] == ["created", "note_added", "note_added"]

    def test_other_customers_are_forbidden(self, client, order_id):
        stranger = auth_headers("user-stranger")
        assert client.get(f"/orders/{order_id}", headers=stranger).status_code == 403
        assert client.get("/orders", headers=stranger).json() == []

    def test_soft_delete(self, client, order_id):
        assert client.delete(f"/orders/{order_id}", headers=ADMIN).status_code == 204
        assert client.get(f"/orders/{order_id}", headers=ADMIN).status_code == 404
        assert client.get("/orders", headers=ADMIN).json() == []

    def test_list_and_stats(self, client, order_id):
        client.post("/orders", json=order_body())

        assert len(client.get("/orders", headers=ADMIN).json()) == 2
        assert [order["id"] for order in client.get("/orders", headers=CUSTOMER).json()] == [order_id]
        assert client.get("/orders", params={"status": "completed"}, headers=ADMIN).json() == []

        stats = client.get("/orders/stats", headers=ADMIN).json()
        assert stats["total_orders"] == 2
        assert stats["pending_orders"] == 2


class TestCreditsAndReferrals:
    def test_grant_and_balance(self, client):
        response = client.post("/credits/user-yyyyyy/grant", json={"amount": "15.00"}, headers=ADMIN)

        assert response.status_code == 200
        assert Decimal(response.json()["balance"]) == Decimal("15.00")
        balance = client.get("/credits/me", headers=CUSTOMER).json()
        assert Decimal(balance["total_earned"]) == Decimal("15.00")

    def test_grant_requires_admin(self, client):
        response = client.post("/credits/user-yyyyyy/grant", json={"amount": "15.00"}, headers=CUSTOMER)
        assert response.status_code == 403

    def test_checkout_with_credits(self, client, session_factory):
        session = session_factory()
        CreditLedger(session).credit("user-yyyyyy", Decimal("10"))
        session.close()

        created = client.post("/orders", json=order_body(credits_to_use="10"), headers=CUSTOMER).json()

        assert Decimal(created["total_amount"]) == Decimal("15.92")
        assert Decimal(client.get("/credits/me", headers=CUSTOMER).json()["balance"]) == Decimal("0.00")

    def test_reading_referral_stats_creates_no_code(self, client):
        referrer = auth_headers("user-xxxxxx")

        stats = client.get("/referrals/me", headers=referrer).json()

        assert stats["referral_code"] is None
        assert stats["total_referred"] == 0
        assert client.get("/referrals/me", headers=referrer).json()["referral_code"] is None

    def test_referral_code_is_created_explicitly(self, client):
        referrer = auth_headers("user-xxxxxx")

        first = client.post("/referrals/me/code", headers=referrer).json()["referral_code"]
        second = client.post("/referrals/me/code", headers=referrer).json()["referral_code"]

        assert first == second == "HD2BOOST-XXXXXX"
        assert client.get("/referrals/me", headers=referrer).json()["referral_code"] == first

    def test_referral_commission_follows_the_order(self, client):
        referrer = auth_headers("user-xxxxxx")
        code = client.post("/referrals/me/code", headers=referrer).json()["referral_code"]

        order_id = client.post(
            "/orders", json=order_body(referral_code=code.lower()), headers=CUSTOMER,
        ).json()["order_id"]
        client.put(f"/orders/{order_id}/status", json={"status": "processing"}, headers=ADMIN)
        completed = client.put(
            f"/orders/{order_id}/status", json={"status": "completed", "payment_status": "paid"}, headers=ADMIN,
        )
        assert completed.status_code == 200

        stats = client.get("/referrals/me", headers=referrer).json()
        assert stats["total_referred"] == 1
        assert Decimal(stats["total_earned"]) == Decimal("1.30")
        assert Decimal(stats["credit_balance"]) == Decimal("1.30")
        assert stats["referrals"][0]["order_id"] == order_id

        client.put(f"/orders/{order_id}/status", json={"status": "refunded"}, headers=ADMIN)

        stats = client.get("/referrals/me", headers=referrer).json()
        assert Decimal(stats["total_earned"]) == Decimal("0.00")
        assert Decimal(stats["credit_balance"]) == Decimal("0.00")
        assert stats["referrals"][0]["status"] == "cancelled"
