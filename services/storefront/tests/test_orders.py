from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from conftest import checkout
from storefront import models
from storefront.exceptions import (
    ConcurrencyConflictError,
    InsufficientCreditsError,
    InvalidTransitionError,
    OrderNotFoundError,
    PaymentRequiredError,
    PersistenceError,
    ValidationError,
)
from storefront.orders import OrderLifecycleManager


def reload(db, order_id):
    db.expire_all()
    return db.get(models.Order, order_id)


class TestCreateOrder:
    def test_creates_pending_order_with_history(self, manager, db):
        order_id = manager.create_order(checkout([("svc-raid", 3, "service")]))
        order = reload(db, order_id)

        assert order.status == "pending"
        assert order.order_type == "standard"
        assert order.subtotal_amount == Decimal("24.00")
        assert order.tax_amount == Decimal("1.92")
        assert order.total_amount == Decimal("25.92")
        assert order.fulfillment_status == "unfulfilled"
        assert order.order_number.startswith("HD-")
        assert order.ip_address == "203.0.113.7"
        assert order.order_metadata["ip_address"] == "203.0.113.7"
        assert [entry["status"] for entry in order.status_history] == ["pending"]
        assert order.status_history[0]["note"] == "Order created"

        timeline = manager.get_timeline(order_id)
        assert [event.event_type for event in timeline] == ["created"]

    def test_invalid_lines_are_dropped(self, manager, db):
        order_id = manager.create_order(
            checkout([("svc-raid", 1, "service"), ("svc-retired", 1, "service"), ("svc-raid-x", 1, "service")])
        )
        order = reload(db, order_id)

        assert [item["product_id"] for item in order.items] == ["svc-raid"]
        assert {item["product_id"] for item in order.order_metadata["dropped_items"]} == {"svc-retired", "svc-raid-x"}

    def test_no_valid_line_is_rejected(self, manager, db):
        with pytest.raises(ValidationError):
            manager.create_order(checkout([("svc-retired", 1, "service")]))
        assert db.query(models.Order).count() == 0

    def test_order_type_follows_items(self, manager, db):
        bundle_id = manager.create_order(checkout([("bundle-starter", 1, "bundle")]))
        custom_id = manager.create_order(checkout([("custom-medals", 10, "custom_item"), ("svc-raid", 1, "service")]))

        assert reload(db, bundle_id).order_type == "bundle"
        assert reload(db, custom_id).order_type == "custom"

    def test_credits_are_debited_with_the_order(self, manager, ledger, db):
        ledger.credit("user-yyyyyy", Decimal("10"))
        order_id = manager.create_order(checkout([("svc-level", 1, "service")], credits_to_use=Decimal("10")))
        order = reload(db, order_id)

        assert order.credits_used == Decimal("10.00")
        assert order.total_amount == Decimal("17.00")
        assert ledger.get_balance("user-yyyyyy") == Decimal("0.00")

    def test_insufficient_credits_abort_checkout(self, manager, ledger, db):
        ledger.credit("user-yyyyyy", Decimal("5"))

        with pytest.raises(InsufficientCreditsError):
            manager.create_order(checkout([("svc-level", 1, "service")], credits_to_use=Decimal("10")))

        assert db.query(models.Order).count() == 0
        assert ledger.get_balance("user-yyyyyy") == Decimal("5.00")

    def test_fully_credit_paid_order(self, manager, ledger, db):
        ledger.credit("user-yyyyyy", Decimal("100"))
        order_id = manager.create_order(checkout([("svc-raid", 1, "service")], credits_to_use=Decimal("100")))
        order = reload(db, order_id)

        assert order.total_amount == Decimal("0.00")
        assert order.credits_used == Decimal("8.64")
        assert order.payment_status == "paid"
        assert order.payment_method == "credits"
        assert ledger.get_balance("user-yyyyyy") == Decimal("91.36")

    def test_total_is_never_negative(self, manager, db):
        order_id = manager.create_order(checkout([("svc-raid", 2, "service")], discount=Decimal("500")))
        order = reload(db, order_id)

        assert order.discount_amount == Decimal("16.00")
        assert order.total_amount == Decimal("0.00")

    def test_guests_cannot_spend_credits(self, manager):
        with pytest.raises(ValidationError):
            manager.create_order(checkout([("svc-raid", 1, "service")], user_id=None, credits_to_use=Decimal("1")))

    def test_payment_reference_is_idempotent(self, manager, ledger, db):
        ledger.credit("user-yyyyyy", Decimal("20"))
        order = checkout([("svc-raid", 1, "service")], payment_reference="pi_123", credits_to_use=Decimal("5"))

        first = manager.create_order(order)
        second = manager.create_order(order)

        assert first == second
        assert db.query(models.Order).count() == 1
        assert ledger.get_balance("user-yyyyyy") == Decimal("15.00")

    def test_payment_reference_of_deleted_order_is_rejected(self, manager, ledger, db):
        ledger.credit("user-yyyyyy", Decimal("20"))
        order = checkout([("svc-raid", 1, "service")], payment_reference="pi_456", credits_to_use=Decimal("5"))
        manager.soft_delete(manager.create_order(order))

        with pytest.raises(ValidationError, match="deleted order"):
            manager.create_order(order)

        assert db.query(models.Order).count() == 1
        assert ledger.get_balance("user-yyyyyy") == Decimal("15.00")

    def test_referral_code_is_normalized(self, manager, db):
        order_id = manager.create_order(checkout([("svc-raid", 1, "service")], referral_code=" hd2boost-abc123 "))
        assert reload(db, order_id).referral_code == "HD2BOOST-ABC123"

    def test_client_ip_failure_is_not_fatal(self, db, validator):
        def broken_ip():
            raise RuntimeError("no request context")

        manager = OrderLifecycleManager(db, validator, get_client_ip=broken_ip)
        order_id = manager.create_order(checkout([("svc-raid", 1, "service")]))
        assert reload(db, order_id).ip_address is None

    def test_subscribers_are_notified(self, manager):
        events = []
        manager.subscribe(lambda event, data: events.append((event, data["status"])))

        manager.create_order(checkout([("svc-raid", 1, "service")]))
        assert events == [("order.created", "pending")]


class TestUpdateStatus:
    @pytest.fixture
    def order_id(self, manager):
        return manager.create_order(checkout([("svc-raid", 2, "service")], payment_status="paid"))

    def test_history_grows_by_one_per_transition(self, manager, db, order_id):
        for status in ("confirmed", "processing", "in_progress", "completed"):
            before = len(reload(db, order_id).status_history)
            manager.update_status(order_id, status, note=f"to {status}")
            order = reload(db, order_id)

            assert len(order.status_history) == before + 1
            assert order.status_history[-1]["status"] == order.status == status

    def test_completion_sets_fulfillment_fields_together(self, manager, db, order_id):
        manager.update_status(order_id, "completed")
        order = reload(db, order_id)

        assert order.completed_at is not None
        assert order.fulfillment_status == "fulfilled"
        assert order.progress == 100

    def test_confirmation_timestamp(self, manager, db, order_id):
        manager.update_status(order_id, "confirmed")
        assert reload(db, order_id).confirmed_at is not None

    def test_backwards_transition_is_rejected(self, manager, db, order_id):
        manager.update_status(order_id, "processing")
        with pytest.raises(InvalidTransitionError):
            manager.update_status(order_id, "confirmed")
        assert len(reload(db, order_id).status_history) == 2

    def test_terminal_status_is_final(self, manager, order_id):
        manager.update_status(order_id, "cancelled")
        with pytest.raises(InvalidTransitionError):
            manager.update_status(order_id, "processing")

    def test_completed_order_can_be_refunded(self, manager, db, order_id):
        manager.update_status(order_id, "completed")
        manager.update_status(order_id, "refunded")
        order = reload(db, order_id)

        assert order.status == "refunded"
        assert order.payment_status == "refunded"

    def test_completion_requires_payment(self, manager, db):
        order_id = manager.create_order(checkout([("svc-raid", 1, "service")]))

        with pytest.raises(PaymentRequiredError):
            manager.update_status(order_id, "completed")
        assert reload(db, order_id).status == "pending"

    def test_payment_can_be_captured_with_completion(self, manager, db):
        order_id = manager.create_order(checkout([("svc-raid", 1, "service")]))
        manager.update_status(order_id, "completed", payment_status="paid")
        order = reload(db, order_id)

        assert (order.status, order.payment_status) == ("completed", "paid")
        assert [event.event_type for event in manager.get_timeline(order_id)] == [
            "created", "payment_changed", "status_changed",
        ]

    def test_override_completes_unpaid_order(self, manager, db):
        order_id = manager.create_order(checkout([("svc-raid", 1, "service")]))
        manager.update_status(order_id, "completed", note="Comped", override=True)
        order = reload(db, order_id)

        assert order.status == "completed"
        assert order.payment_status == "pending"
        assert "override" in order.status_history[-1]["note"]

    def test_cancellation_restores_credits(self, manager, ledger, db):
        ledger.credit("user-yyyyyy", Decimal("10"))
        order_id = manager.create_order(checkout([("svc-level", 1, "service")], credits_to_use=Decimal("10")))
        assert ledger.get_balance("user-yyyyyy") == Decimal("0.00")

        manager.update_status(order_id, "cancelled", note="Customer request")
        assert ledger.get_balance("user-yyyyyy") == Decimal("10.00")

    def test_unknown_order(self, manager):
        with pytest.raises(OrderNotFoundError):
            manager.update_status("missing", "confirmed")

    def test_storage_failure_is_retried_once(self, manager, db, order_id, monkeypatch):
        real_commit = db.commit
        calls = {"count": 0}

        def flaky_commit():
            calls["count"] += 1
            if calls["count"] == 1:
                raise OperationalError("UPDATE orders", {}, Exception("database is locked"))
            return real_commit()

        monkeypatch.setattr(db, "commit", flaky_commit)
        manager.update_status(order_id, "confirmed")
        monkeypatch.undo()

        order = reload(db, order_id)
        assert order.status == "confirmed"
        assert len(order.status_history) == 2

    def test_persistent_failure_is_surfaced(self, manager, db, order_id, monkeypatch):
        def failing_commit():
            raise OperationalError("UPDATE orders", {}, Exception("disk I/O error"))

        monkeypatch.setattr(db, "commit", failing_commit)
        with pytest.raises(PersistenceError):
            manager.update_status(order_id, "confirmed")
        monkeypatch.undo()

        assert reload(db, order_id).status == "pending"

    def test_concurrent_writer_is_detected(self, session_factory, manager, validator, order_id, monkeypatch):
        other_session = session_factory()
        other = OrderLifecycleManager(other_session, validator, max_retries=0)
        stale = other_session.get(models.Order, order_id)

        manager.update_status(order_id, "confirmed")

        monkeypatch.setattr(other, "_load", lambda oid: stale)
        with pytest.raises(ConcurrencyConflictError):
            other.update_status(order_id, "processing")
        other_session.close()

    def test_conflict_is_retried_against_fresh_state(self, session_factory, manager, validator, order_id, monkeypatch):
        other_session = session_factory()
        other = OrderLifecycleManager(other_session, validator, max_retries=1)
        stale = other_session.get(models.Order, order_id)
        real_load = other._load
        loads = []

        def load(oid):
            loads.append(oid)
            return stale if len(loads) == 1 else real_load(oid)

        manager.update_status(order_id, "confirmed")
        monkeypatch.setattr(other, "_load", load)
        other.update_status(order_id, "processing")

        order = reload(other_session, order_id)
        assert [entry["status"] for entry in order.status_history] == ["pending", "confirmed", "processing"]
        other_session.close()


class TestOtherUpdates:
    @pytest.fixture
    def order_id(self, manager):
        return manager.create_order(checkout([("svc-raid", 2, "service")]))

    def test_payment_status(self, manager, db, order_id):
        manager.update_payment_status(order_id, "paid")
        assert reload(db, order_id).payment_status == "paid"

    def test_progress(self, manager, db, order_id):
        manager.update_progress(order_id, 40)
        order = reload(db, order_id)

        assert order.progress == 40
        assert order.fulfillment_status == "partial"

    def test_progress_bounds(self, manager, order_id):
        with pytest.raises(ValidationError):
            manager.update_progress(order_id, 101)

    def test_progress_on_closed_order(self, manager, order_id):
        manager.update_status(order_id, "cancelled")
        with pytest.raises(ValidationError):
            manager.update_progress(order_id, 10)

    def test_notes(self, manager, db, order_id):
        manager.add_note(order_id, "Please play on EU servers")
        manager.add_note(order_id, "Booster assigned", is_admin=True)
        manager.add_note(order_id, "Evenings only")
        order = reload(db, order_id)

        assert order.notes == "Please play on EU servers\nEvenings only"
        assert order.admin_notes == "Booster assigned"

    def test_soft_deleted_order_is_hidden(self, manager, db, order_id):
        manager.soft_delete(order_id)

        with pytest.raises(OrderNotFoundError):
            manager.get_order(order_id)
        assert manager.list_orders() == []
        assert db.get(models.Order, order_id).deleted_at is not None


class TestReads:
    def test_list_and_stats(self, manager):
        first = manager.create_order(checkout([("svc-raid", 1, "service")], payment_status="paid"))
        manager.create_order(checkout([("svc-level", 1, "service")], user_id="user-other"))
        manager.update_status(first, "completed")

        assert len(manager.list_orders()) == 2
        assert [order.id for order in manager.get_orders_by_user("user-yyyyyy")] == [first]
        assert [order.id for order in manager.list_orders(status="completed")] == [first]

        stats = manager.get_stats()
        assert stats.total_orders == 2
        assert stats.pending_orders == 1
        assert stats.completed_orders == 1
        assert stats.total_revenue == Decimal("8.64")
        assert stats.avg_order_value == Decimal("8.64")
        assert stats.fulfillment_rate == 50.0
