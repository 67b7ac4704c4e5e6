"""
Webhook ingestion tests: topic handlers against the ledger, and the HTTP receiver end to end
"""

import pytest

from app.exceptions import WebhookValidationError
from app.models import (
    Integration,
    IntegrationStatus,
    SyncStatus,
    Transaction,
    TransactionStatus,
    WebhookEvent,
)
from app.services.shopify_webhook_handler import (
    get_transaction_status,
    parse_order_payload,
    process_shopify_webhook,
    reconcile_order,
)
from tests.fakes import TEST_SHOP

ORDER_555 = {"id": 555, "order_number": 1, "total_price": "10.00", "total_tax": "0.83", "subtotal_price": "9.17"}


def _order(**overrides):
    order = {
        "id": 1001,
        "order_number": 1001,
        "currency": "CAD",
        "total_price": "112.00",
        "subtotal_price": "100.00",
        "total_tax": "12.00",
        "total_discounts": "5.00",
        "financial_status": "paid",
        "fulfillment_status": None,
        "created_at": "2024-01-02T10:00:00-05:00",
        "updated_at": "2024-01-02T10:00:00-05:00",
        "customer": {"email": "buyer@example.com", "first_name": "Ada", "last_name": "Lovelace"},
        "billing_address": {"country_code": "CA", "province_code": "BC", "city": "Vancouver", "zip": "V5K 0A1"},
        "tax_lines": [
            {"title": "GST", "price": "5.00", "rate": 0.05},
            {"title": "PST", "price": "7.00", "rate": 0.07},
        ],
        "line_items": [{"id": 1, "product_id": 2, "variant_id": 3, "title": "Mug", "quantity": 2, "price": "50.00"}],
        "shipping_lines": [{"price": "0.00"}],
    }
    order.update(overrides)
    return order


def _transactions(db_session, external_id):
    db_session.expire_all()
    return db_session.query(Transaction).filter(Transaction.external_id == external_id).all()


class TestTransactionStatus:

    @pytest.mark.parametrize("fulfillment,financial,expected", [
        ("fulfilled", "refunded", TransactionStatus.REFUNDED),
        (None, "partially_refunded", TransactionStatus.REFUNDED),
        (None, "voided", TransactionStatus.CANCELLED),
        ("fulfilled", "paid", TransactionStatus.COMPLETED),
        (None, "pending", TransactionStatus.PENDING),
        (None, "authorized", TransactionStatus.PENDING),
        (None, None, TransactionStatus.PENDING),
        (None, "PAID", TransactionStatus.COMPLETED),
    ])
    def test_status_derivation(self, fulfillment, financial, expected):
        assert get_transaction_status(fulfillment, financial) == expected


class TestOrderCreate:

    def test_insert_in_cents(self, db_session, integration):
        ack = process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order())
        db_session.commit()

        assert ack["action"] == "created"
        [txn] = _transactions(db_session, "1001")
        assert txn.integration_id == integration.id
        assert txn.organization_id == integration.organization_id
        assert txn.total_amount == 11200
        assert txn.tax_amount == 1200
        assert txn.subtotal == 10000
        assert txn.discount_amount == 500
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.currency == "CAD"
        assert txn.customer_name == "Ada Lovelace"
        assert txn.customer_email == "buyer@example.com"
        assert [line["type"] for line in txn.tax_details] == ["gst", "pst"]
        assert txn.extra["taxJurisdiction"]["province"] == "BC"
        assert txn.items[0]["title"] == "Mug"

    def test_redelivery_updates_same_row(self, db_session, integration):
        first = process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order())
        db_session.commit()
        second = process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order())
        db_session.commit()

        assert second["action"] == "updated"
        assert first["transactionId"] == second["transactionId"]
        [txn] = _transactions(db_session, "1001")
        assert txn.tax_amount == 1200
        assert txn.total_amount == 11200

    def test_redelivery_leaves_row_untouched(self, db_session, integration):
        process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order())
        db_session.commit()
        [txn] = _transactions(db_session, "1001")
        before = (txn.extra, txn.tax_details, txn.items, txn.updated_at)
        assert "lastUpdated" not in txn.extra

        ack = process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order())
        db_session.commit()

        assert ack["action"] == "updated"
        [txn] = _transactions(db_session, "1001")
        assert (txn.extra, txn.tax_details, txn.items, txn.updated_at) == before

    def test_tax_total_without_lines(self, db_session, integration):
        process_shopify_webhook(db_session, TEST_SHOP, "orders/create", ORDER_555)
        db_session.commit()
        [txn] = _transactions(db_session, "555")
        assert txn.tax_details == [{"type": "other", "title": None, "amount": 83, "rate": 0}]

    def test_mismatched_tax_lines_flagged(self, db_session, integration):
        process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order(total_tax="13.00"))
        db_session.commit()
        [txn] = _transactions(db_session, "1001")
        assert txn.extra["taxValidation"]["isValid"] is False

    def test_invalid_payload(self, db_session, integration):
        with pytest.raises(WebhookValidationError):
            process_shopify_webhook(db_session, TEST_SHOP, "orders/create", {"total_price": "1.00"})
        with pytest.raises(WebhookValidationError):
            process_shopify_webhook(db_session, TEST_SHOP, "orders/create", ["not", "an", "object"])
        with pytest.raises(WebhookValidationError):
            process_shopify_webhook(db_session, TEST_SHOP, "orders/create", {"id": 1, "total_price": "abc"})

    def test_unknown_shop_acknowledged(self, db_session, integration):
        ack = process_shopify_webhook(db_session, "nobody.myshopify.com", "orders/create", _order())
        assert ack == {"success": True, "action": "integration_not_found", "topic": "orders/create"}
        assert _transactions(db_session, "1001") == []

    def test_disconnected_integration_ignored(self, db_session, integration):
        integration.status = IntegrationStatus.DISCONNECTED
        db_session.commit()
        ack = process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order())
        assert ack["action"] == "integration_not_found"
        assert _transactions(db_session, "1001") == []

    def test_reconcile_order_shared_entry_point(self, db_session, integration):
        result = reconcile_order(db_session, integration, parse_order_payload(_order(id=7)))
        db_session.commit()
        assert result["action"] == "created"
        assert len(_transactions(db_session, "7")) == 1

    def test_touches_integration_sync_time(self, db_session, integration):
        process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order())
        db_session.commit()
        db_session.refresh(integration)
        assert integration.last_sync_at is not None


class TestOrderUpdated:

    def test_unknown_order_not_synthesised(self, db_session, integration):
        ack = process_shopify_webhook(db_session, TEST_SHOP, "orders/updated", _order())
        db_session.commit()
        assert ack["action"] == "transaction_not_found"
        assert _transactions(db_session, "1001") == []

    def test_last_write_wins(self, db_session, integration):
        process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order(financial_status="pending"))
        db_session.commit()

        ack = process_shopify_webhook(db_session, TEST_SHOP, "orders/updated", _order(
            financial_status="paid",
            total_price="120.00",
            updated_at="2024-01-02T11:00:00-05:00",
        ))
        db_session.commit()

        assert ack["action"] == "updated"
        [txn] = _transactions(db_session, "1001")
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.total_amount == 12000

    def test_older_update_ignored(self, db_session, integration):
        process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order(
            financial_status="paid", updated_at="2024-01-02T12:00:00-05:00",
        ))
        db_session.commit()

        ack = process_shopify_webhook(db_session, TEST_SHOP, "orders/updated", _order(
            financial_status="pending", total_price="1.00", updated_at="2024-01-02T11:00:00-05:00",
        ))
        db_session.commit()

        assert ack["action"] == "stale_ignored"
        [txn] = _transactions(db_session, "1001")
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.total_amount == 11200

    def test_offsets_normalised_before_comparison(self, db_session, integration):
        process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order(updated_at="2024-01-02T15:00:00Z"))
        db_session.commit()
        # 10:30-05:00 is 15:30Z, newer than the stored 15:00Z
        ack = process_shopify_webhook(db_session, TEST_SHOP, "orders/updated", _order(
            total_price="99.00", updated_at="2024-01-02T10:30:00-05:00",
        ))
        db_session.commit()
        assert ack["action"] == "updated"
        assert _transactions(db_session, "1001")[0].total_amount == 9900


class TestOrderCancelled:

    def test_cancel_sets_status_and_notes(self, db_session, integration):
        process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order())
        db_session.commit()

        ack = process_shopify_webhook(db_session, TEST_SHOP, "orders/cancelled", _order(
            cancel_reason="customer", cancelled_at="2024-01-03T09:00:00-05:00", updated_at="2024-01-03T09:00:00-05:00",
        ))
        db_session.commit()

        assert ack["action"] == "cancelled"
        assert ack["updatedCount"] == 1
        [txn] = _transactions(db_session, "1001")
        assert txn.status == TransactionStatus.CANCELLED
        assert txn.notes == "Order cancelled: customer"

    def test_redelivered_create_does_not_undo_cancel(self, db_session, integration):
        process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order())
        process_shopify_webhook(db_session, TEST_SHOP, "orders/cancelled", _order(
            updated_at="2024-01-03T09:00:00-05:00",
        ))
        db_session.commit()

        ack = process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order())
        db_session.commit()
        assert ack["action"] == "stale_ignored"
        assert _transactions(db_session, "1001")[0].status == TransactionStatus.CANCELLED

    def test_redelivered_create_after_untimed_cancel(self, db_session, integration):
        process_shopify_webhook(db_session, TEST_SHOP, "orders/create", ORDER_555)
        process_shopify_webhook(db_session, TEST_SHOP, "orders/cancelled", {**ORDER_555, "cancel_reason": "fraud"})
        db_session.commit()
        [txn] = _transactions(db_session, "555")
        assert txn.source_updated_at is None
        before = (txn.status, txn.notes, txn.extra, txn.tax_details, txn.updated_at)

        process_shopify_webhook(db_session, TEST_SHOP, "orders/create", ORDER_555)
        db_session.commit()

        [txn] = _transactions(db_session, "555")
        assert txn.status == TransactionStatus.CANCELLED
        assert txn.notes == "Order cancelled: fraud"
        assert (txn.status, txn.notes, txn.extra, txn.tax_details, txn.updated_at) == before

    def test_cancel_unknown_order(self, db_session, integration):
        ack = process_shopify_webhook(db_session, TEST_SHOP, "orders/cancelled", _order(id=404))
        assert ack["action"] == "transaction_not_found"
        assert ack["updatedCount"] == 0


class TestRefundCreate:

    REFUND = {
        "id": 9001,
        "order_id": 1001,
        "created_at": "2024-01-04T09:00:00-05:00",
        "note": "Damaged",
        "refund_line_items": [{"subtotal": "50.00", "total_tax": "6.00"}],
        "transactions": [{"kind": "refund", "status": "success", "amount": "56.00"}],
    }

    def test_refund_recorded(self, db_session, integration):
        process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order())
        db_session.commit()

        ack = process_shopify_webhook(db_session, TEST_SHOP, "refunds/create", self.REFUND)
        db_session.commit()

        assert ack["action"] == "refunded"
        [txn] = _transactions(db_session, "1001")
        assert txn.status == TransactionStatus.REFUNDED
        assert txn.extra["refunds"]["9001"]["amount"] == 5600
        assert txn.extra["totalRefunded"] == 5600
        refund_lines = [line for line in txn.tax_details if line["type"] == "refund"]
        assert refund_lines == [{"type": "refund", "title": "Refund 9001", "amount": -600, "rate": 0, "refundId": "9001"}]

    def test_refund_redelivery_counted_once(self, db_session, integration):
        process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order())
        for _ in range(3):
            process_shopify_webhook(db_session, TEST_SHOP, "refunds/create", self.REFUND)
        db_session.commit()

        [txn] = _transactions(db_session, "1001")
        assert txn.extra["totalRefunded"] == 5600
        assert len([line for line in txn.tax_details if line["type"] == "refund"]) == 1

    def test_order_update_keeps_refund_record(self, db_session, integration):
        process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order())
        process_shopify_webhook(db_session, TEST_SHOP, "refunds/create", self.REFUND)
        process_shopify_webhook(db_session, TEST_SHOP, "orders/updated", _order(
            financial_status="partially_refunded", updated_at="2024-01-05T09:00:00-05:00",
        ))
        db_session.commit()

        [txn] = _transactions(db_session, "1001")
        assert txn.status == TransactionStatus.REFUNDED
        assert txn.extra["refunds"]["9001"]["amount"] == 5600
        assert [line["type"] for line in txn.tax_details] == ["gst", "pst", "refund"]

    def test_refund_for_unknown_order(self, db_session, integration):
        ack = process_shopify_webhook(db_session, TEST_SHOP, "refunds/create", {**self.REFUND, "order_id": 1})
        assert ack["action"] == "transaction_not_found"


class TestAppUninstalled:

    def test_disconnects_integration_only(self, db_session, integration):
        process_shopify_webhook(db_session, TEST_SHOP, "orders/create", _order())
        db_session.commit()

        ack = process_shopify_webhook(db_session, TEST_SHOP, "app/uninstalled", {"id": 1, "domain": TEST_SHOP})
        db_session.commit()

        assert ack["action"] == "disconnected"
        db_session.refresh(integration)
        assert integration.status == IntegrationStatus.DISCONNECTED
        assert integration.access_token is None
        assert integration.sync_status == SyncStatus.IDLE
        assert integration.last_sync_at is None
        assert "uninstalledAt" in integration.extra
        assert len(_transactions(db_session, "1001")) == 1

    def test_unknown_topic_acknowledged(self, db_session, integration):
        ack = process_shopify_webhook(db_session, TEST_SHOP, "products/update", {"id": 1})
        assert ack["action"] == "ignored_topic"


class TestShopifyWebhookEndpoint:
    """POST /api/webhooks/shopify"""

    def test_end_to_end_create_is_idempotent(self, client, db_session, integration, signed_request):
        body, headers = signed_request(ORDER_555)

        first = client.post("/api/webhooks/shopify", content=body, headers=headers)
        assert first.status_code == 200
        assert first.json()["success"] is True

        [txn] = _transactions(db_session, "555")
        assert txn.integration_id == "int_1"
        assert txn.tax_amount == 83
        assert txn.total_amount == 1000
        assert txn.subtotal == 917
        assert txn.status == TransactionStatus.PENDING
        snapshot = (txn.id, txn.tax_amount, txn.total_amount, txn.subtotal, txn.status, txn.tax_details, txn.extra, txn.updated_at)

        second = client.post("/api/webhooks/shopify", content=body, headers=headers)
        assert second.status_code == 200

        [again] = _transactions(db_session, "555")
        assert (
            again.id, again.tax_amount, again.total_amount, again.subtotal,
            again.status, again.tax_details, again.extra, again.updated_at,
        ) == snapshot

    def test_bad_signature_rejected_without_side_effects(self, client, db_session, integration, signed_request):
        body, headers = signed_request(ORDER_555, secret="wrong")
        response = client.post("/api/webhooks/shopify", content=body, headers=headers)
        assert response.status_code == 401
        assert _transactions(db_session, "555") == []
        assert db_session.query(WebhookEvent).count() == 0

    def test_missing_hmac_header(self, client, integration, signed_request):
        body, headers = signed_request(ORDER_555)
        del headers["X-Shopify-Hmac-Sha256"]
        assert client.post("/api/webhooks/shopify", content=body, headers=headers).status_code == 400

    def test_missing_shop_header(self, client, integration, signed_request):
        body, headers = signed_request(ORDER_555)
        del headers["X-Shopify-Shop-Domain"]
        assert client.post("/api/webhooks/shopify", content=body, headers=headers).status_code == 400

    def test_unconfigured_secret_fails_closed(self, client, integration, signed_request, app_settings, monkeypatch):
        monkeypatch.setattr(app_settings, "SHOPIFY_WEBHOOK_SECRET", "")
        body, headers = signed_request(ORDER_555, secret="")
        assert client.post("/api/webhooks/shopify", content=body, headers=headers).status_code == 401

    def test_invalid_json(self, client, integration, signed_request):
        body, headers = signed_request(b"{not json")
        assert client.post("/api/webhooks/shopify", content=body, headers=headers).status_code == 400

    def test_invalid_payload_is_400(self, client, db_session, integration, signed_request):
        body, headers = signed_request({"total_price": "1.00"})
        response = client.post("/api/webhooks/shopify", content=body, headers=headers)
        assert response.status_code == 400
        event = db_session.query(WebhookEvent).one()
        assert event.error is not None

    def test_processing_failure_is_500(self, client, db_session, integration, signed_request, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr("app.http.controllers.webhooks.process_shopify_webhook", explode)
        body, headers = signed_request(ORDER_555, webhook_id="wh-1")
        response = client.post("/api/webhooks/shopify", content=body, headers=headers)

        assert response.status_code == 500
        db_session.expire_all()
        event = db_session.query(WebhookEvent).one()
        assert event.webhook_id == "wh-1"
        assert event.error == "database went away"
        assert event.processed_at is None

    def test_delivery_audited(self, client, db_session, integration, signed_request):
        body, headers = signed_request(ORDER_555, webhook_id="wh-2")
        client.post("/api/webhooks/shopify", content=body, headers=headers)
        db_session.expire_all()
        event = db_session.query(WebhookEvent).one()
        assert event.shop_domain == TEST_SHOP
        assert event.topic == "orders/create"
        assert event.payload_summary == "id=555"
        assert event.processed_at is not None
        assert event.error is None

    def test_legacy_per_topic_path(self, client, db_session, integration, signed_request):
        body, headers = signed_request(ORDER_555)
        del headers["X-Shopify-Topic"]
        response = client.post("/api/webhooks/shopify/orders-create", content=body, headers=headers)
        assert response.status_code == 200
        assert response.json()["topic"] == "orders/create"
        assert len(_transactions(db_session, "555")) == 1

    def test_uninstall_over_http(self, client, db_session, integration, signed_request):
        body, headers = signed_request({"id": 1, "domain": TEST_SHOP}, topic="app/uninstalled")
        response = client.post("/api/webhooks/shopify", content=body, headers=headers)
        assert response.status_code == 200
        db_session.expire_all()
        assert db_session.get(Integration, "int_1").status == IntegrationStatus.DISCONNECTED
