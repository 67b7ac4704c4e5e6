"""
Shopify webhook processing: map verified order/refund/uninstall events onto the transaction ledger.

Delivery is at-least-once and unordered, so every topic handler is idempotent:
- orders/create inserts-or-updates by (integration, external_id) in one atomic statement.
- orders/updated only touches an existing row; unknown orders are acknowledged, never synthesised.
- orders/cancelled bulk-sets CANCELLED; refunds/create records each refund once by refund id.
- Each row keeps the newest platform timestamp seen (source_updated_at); older payloads are ignored.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, ValidationError
from sqlalchemy import or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.exceptions import WebhookValidationError
from app.models import (
    Integration,
    IntegrationStatus,
    SyncStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from app.services.integration_service import find_integration_by_shop
from app.services.tax_processor import process_tax_lines, to_cents, validate_tax_breakdown

logger = logging.getLogger(__name__)


Money = Optional[Union[str, int, float]]


class ShopifyOrderPayload(BaseModel):
    id: Union[int, str]
    order_number: Optional[Union[int, str]] = None
    name: Optional[str] = None
    currency: Optional[str] = None
    total_price: Money = None
    total_tax: Money = None
    subtotal_price: Money = None
    total_discounts: Money = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancel_reason: Optional[str] = None
    email: Optional[str] = None
    gateway: Optional[str] = None
    source_name: Optional[str] = None
    customer: Optional[dict] = None
    billing_address: Optional[dict] = None
    shipping_address: Optional[dict] = None
    tax_lines: list[dict] = []
    line_items: list[dict] = []
    shipping_lines: list[dict] = []


class ShopifyRefundPayload(BaseModel):
    id: Union[int, str]
    order_id: Union[int, str]
    created_at: Optional[str] = None
    processed_at: Optional[str] = None
    note: Optional[str] = None
    refund_line_items: list[dict] = []
    transactions: list[dict] = []


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_shopify_timestamp(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 with offset -> naive UTC. None/'' -> None."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise WebhookValidationError(f"Invalid timestamp: {value!r}") from e
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_order_payload(payload: Any) -> ShopifyOrderPayload:
    try:
        return ShopifyOrderPayload.model_validate(payload)
    except ValidationError as e:
        raise WebhookValidationError(f"Invalid order payload: {e.error_count()} error(s)") from e


def parse_refund_payload(payload: Any) -> ShopifyRefundPayload:
    try:
        return ShopifyRefundPayload.model_validate(payload)
    except ValidationError as e:
        raise WebhookValidationError(f"Invalid refund payload: {e.error_count()} error(s)") from e


def get_transaction_status(fulfillment_status: Optional[str], financial_status: Optional[str]) -> TransactionStatus:
    """Shopify financial_status decides the ledger status; fulfillment_status does not change it."""
    financial = (financial_status or "").lower()
    if financial in ("refunded", "partially_refunded"):
        return TransactionStatus.REFUNDED
    if financial == "voided":
        return TransactionStatus.CANCELLED
    if financial == "paid":
        return TransactionStatus.COMPLETED
    return TransactionStatus.PENDING


def _customer_name(order: ShopifyOrderPayload) -> Optional[str]:
    c = order.customer or {}
    name = f"{c.get('first_name') or ''} {c.get('last_name') or ''}".strip()
    return name or None


def _order_items(order: ShopifyOrderPayload) -> list[dict]:
    return [
        {
            "id": item.get("id"),
            "productId": item.get("product_id"),
            "variantId": item.get("variant_id"),
            "title": item.get("title"),
            "quantity": item.get("quantity"),
            "price": item.get("price"),
            "totalDiscount": item.get("total_discount"),
        }
        for item in order.line_items
    ]


def build_transaction_values(order: ShopifyOrderPayload) -> dict:
    """Column values for a transaction row, computed only from this payload."""
    tax_amount = to_cents(order.total_tax)
    breakdown = process_tax_lines(order.tax_lines, order.billing_address, order.shipping_address)
    tax_details = breakdown["lines"]
    if not tax_details and tax_amount:
        tax_details = [{"type": "other", "title": None, "amount": tax_amount, "rate": 0}]
    metadata = {
        "shopifyOrderId": str(order.id),
        "fulfillmentStatus": order.fulfillment_status,
        "financialStatus": order.financial_status,
        "gateway": order.gateway,
        "sourceName": order.source_name,
        "taxJurisdiction": breakdown["jurisdiction"],
    }
    if breakdown["lines"]:
        validation = validate_tax_breakdown(breakdown, tax_amount)
        if not validation["isValid"]:
            logger.warning(
                "Tax lines for order %s sum to %s, total_tax is %s",
                order.id, validation["calculatedTotal"], tax_amount,
            )
            metadata["taxValidation"] = validation

    customer = order.customer or {}
    return {
        "order_number": str(order.order_number) if order.order_number is not None else None,
        "type": TransactionType.SALE,
        "status": get_transaction_status(order.fulfillment_status, order.financial_status),
        "currency": (order.currency or "USD")[:3],
        "total_amount": to_cents(order.total_price),
        "tax_amount": tax_amount,
        "subtotal": to_cents(order.subtotal_price),
        "discount_amount": to_cents(order.total_discounts),
        "shipping_amount": sum(to_cents(line.get("price")) for line in order.shipping_lines),
        "tax_details": tax_details,
        "items": _order_items(order),
        "extra": metadata,
        "customer_email": customer.get("email") or order.email,
        "customer_name": _customer_name(order),
        "transaction_date": parse_shopify_timestamp(order.created_at),
        "source_updated_at": parse_shopify_timestamp(order.updated_at),
    }


def _dialect_insert(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")


def _load_transaction(db: Session, integration_id: str, external_id: str) -> Optional[Transaction]:
    return (
        db.query(Transaction)
        .filter(Transaction.integration_id == integration_id, Transaction.external_id == external_id)
        .execution_options(populate_existing=True)
        .first()
    )


def _refund_lines(transaction: Transaction) -> list[dict]:
    return [line for line in (transaction.tax_details or []) if line.get("type") == "refund"]


def _newer_or_equal(query, incoming: Optional[datetime]):
    """Restrict an UPDATE to rows whose stored platform timestamp is not newer than incoming."""
    if incoming is None:
        return query
    return query.filter(
        or_(Transaction.source_updated_at.is_(None), Transaction.source_updated_at <= incoming)
    )


def _advance_source_clock(db: Session, integration_id: str, external_id: str, seen_at: Optional[datetime]) -> None:
    if seen_at is None:
        return
    (
        db.query(Transaction)
        .filter(
            Transaction.integration_id == integration_id,
            Transaction.external_id == external_id,
            or_(Transaction.source_updated_at.is_(None), Transaction.source_updated_at < seen_at),
        )
        .update({Transaction.source_updated_at: seen_at}, synchronize_session=False)
    )


def _is_stale(transaction: Transaction, incoming: Optional[datetime]) -> bool:
    stored = transaction.source_updated_at
    return incoming is not None and stored is not None and stored > incoming


def apply_order_update(db: Session, transaction: Transaction, values: dict) -> bool:
    """
    Last-write-wins update of an existing row from a full order payload.
    Refund records survive (metadata.refunds and refund tax lines) and a cancellation is final.
    Only payload-derived values are written, and nothing is written when they already match
    the stored row, so a redelivered payload leaves the row untouched. Returns False for a stale payload.
    """
    if _is_stale(transaction, values["source_updated_at"]):
        return False

    updates = dict(values)
    previous = transaction.extra or {}
    metadata = dict(values["extra"])
    if previous.get("refunds"):
        metadata["refunds"] = previous["refunds"]
        metadata["totalRefunded"] = previous.get("totalRefunded", 0)
        if updates["status"] in (TransactionStatus.PENDING, TransactionStatus.COMPLETED):
            updates["status"] = TransactionStatus.REFUNDED
    if transaction.status == TransactionStatus.CANCELLED:
        updates["status"] = TransactionStatus.CANCELLED
    updates["extra"] = metadata
    updates["tax_details"] = list(values["tax_details"]) + _refund_lines(transaction)

    if all(getattr(transaction, key) == value for key, value in updates.items()):
        return True

    updates["updated_at"] = _utcnow()
    query = db.query(Transaction).filter(Transaction.id == transaction.id)
    count = _newer_or_equal(query, values["source_updated_at"]).update(updates, synchronize_session=False)
    return count > 0


def reconcile_order(db: Session, integration: Integration, order: ShopifyOrderPayload) -> dict:
    """
    Create-or-update the transaction for one order. Shared by orders/create and the historical import.
    Returns {"action": "created"|"updated"|"stale_ignored", "transactionId": ...}.
    """
    external_id = str(order.id)
    values = build_transaction_values(order)
    insert = _dialect_insert(db)
    stmt = (
        insert(Transaction.__table__)
        .values(
            id=str(uuid.uuid4()),
            organization_id=integration.organization_id,
            integration_id=integration.id,
            external_id=external_id,
            **values,
        )
        .on_conflict_do_nothing(index_elements=["integration_id", "external_id"])
    )
    result = db.execute(stmt)
    transaction = _load_transaction(db, integration.id, external_id)
    if result.rowcount == 1:
        return {"action": "created", "transactionId": transaction.id}

    # At-least-once redelivery or an import overlapping webhooks: same row, updated in place
    applied = apply_order_update(db, transaction, values)
    return {"action": "updated" if applied else "stale_ignored", "transactionId": transaction.id}


def _touch_integration(db: Session, integration: Integration) -> None:
    integration.last_sync_at = _utcnow()
    db.flush()


def _resolve_active_integration(db: Session, shop_domain: str, topic: str) -> Optional[Integration]:
    integration = find_integration_by_shop(db, shop_domain)
    if not integration:
        logger.warning("Shopify webhook %s: no integration for shop %s", topic, shop_domain)
        return None
    if integration.status == IntegrationStatus.DISCONNECTED:
        logger.warning("Shopify webhook %s: integration %s for %s is disconnected", topic, integration.id, shop_domain)
        return None
    return integration


def handle_order_create(db: Session, shop_domain: str, payload: Any) -> dict:
    order = parse_order_payload(payload)
    integration = _resolve_active_integration(db, shop_domain, "orders/create")
    if not integration:
        return {"success": True, "action": "integration_not_found"}
    result = reconcile_order(db, integration, order)
    _touch_integration(db, integration)
    logger.info("orders/create %s for %s: %s", order.id, shop_domain, result["action"])
    return {"success": True, **result}


def handle_order_updated(db: Session, shop_domain: str, payload: Any) -> dict:
    order = parse_order_payload(payload)
    integration = _resolve_active_integration(db, shop_domain, "orders/updated")
    if not integration:
        return {"success": True, "action": "integration_not_found"}
    transaction = _load_transaction(db, integration.id, str(order.id))
    if not transaction:
        # Update arrived before (or without) the create; a partial payload must not create a row
        logger.warning("orders/updated for unknown order %s on %s; acknowledged without changes", order.id, shop_domain)
        return {"success": True, "action": "transaction_not_found"}
    applied = apply_order_update(db, transaction, build_transaction_values(order))
    if not applied:
        logger.info("orders/updated %s on %s is older than stored state; ignored", order.id, shop_domain)
    _touch_integration(db, integration)
    return {"success": True, "action": "updated" if applied else "stale_ignored", "transactionId": transaction.id}


def handle_order_cancelled(db: Session, shop_domain: str, payload: Any) -> dict:
    order = parse_order_payload(payload)
    integration = _resolve_active_integration(db, shop_domain, "orders/cancelled")
    if not integration:
        return {"success": True, "action": "integration_not_found"}
    external_id = str(order.id)
    count = (
        db.query(Transaction)
        .filter(Transaction.integration_id == integration.id, Transaction.external_id == external_id)
        .update(
            {
                Transaction.status: TransactionStatus.CANCELLED,
                Transaction.notes: f"Order cancelled: {order.cancel_reason or 'No reason provided'}",
                Transaction.updated_at: _utcnow(),
            },
            synchronize_session=False,
        )
    )
    if not count:
        logger.warning("orders/cancelled for unknown order %s on %s; acknowledged without changes", order.id, shop_domain)
        return {"success": True, "action": "transaction_not_found", "updatedCount": 0}
    _advance_source_clock(
        db, integration.id, external_id,
        parse_shopify_timestamp(order.updated_at) or parse_shopify_timestamp(order.cancelled_at),
    )
    _touch_integration(db, integration)
    logger.info("orders/cancelled %s on %s: %s transaction(s)", order.id, shop_domain, count)
    return {"success": True, "action": "cancelled", "updatedCount": count}


def _refund_detail(refund: ShopifyRefundPayload) -> dict:
    amount = sum(
        to_cents(t.get("amount"))
        for t in refund.transactions
        if (t.get("kind") or "refund") == "refund" and (t.get("status") or "success") == "success"
    )
    return {
        "refundId": str(refund.id),
        "amount": amount,
        "taxAmount": sum(to_cents(item.get("total_tax")) for item in refund.refund_line_items),
        "subtotal": sum(to_cents(item.get("subtotal")) for item in refund.refund_line_items),
        "note": refund.note,
        "createdAt": refund.created_at,
    }


def handle_refund_create(db: Session, shop_domain: str, payload: Any) -> dict:
    refund = parse_refund_payload(payload)
    integration = _resolve_active_integration(db, shop_domain, "refunds/create")
    if not integration:
        return {"success": True, "action": "integration_not_found"}
    external_id = str(refund.order_id)
    transaction = (
        db.query(Transaction)
        .filter(Transaction.integration_id == integration.id, Transaction.external_id == external_id)
        .with_for_update()
        .execution_options(populate_existing=True)
        .first()
    )
    if not transaction:
        logger.warning("refunds/create %s for unknown order %s on %s; acknowledged", refund.id, external_id, shop_domain)
        return {"success": True, "action": "transaction_not_found"}

    detail = _refund_detail(refund)
    metadata = dict(transaction.extra or {})
    refunds = dict(metadata.get("refunds") or {})
    refunds[detail["refundId"]] = detail
    metadata["refunds"] = refunds
    metadata["totalRefunded"] = sum(r["amount"] for r in refunds.values())

    tax_details = [
        line for line in (transaction.tax_details or [])
        if not (line.get("type") == "refund" and line.get("refundId") == detail["refundId"])
    ]
    tax_details.append({
        "type": "refund",
        "title": f"Refund {detail['refundId']}",
        "amount": -detail["taxAmount"],
        "rate": 0,
        "refundId": detail["refundId"],
    })

    transaction.status = TransactionStatus.REFUNDED
    transaction.extra = metadata
    transaction.tax_details = tax_details
    transaction.updated_at = _utcnow()
    db.flush()
    _advance_source_clock(
        db, integration.id, external_id,
        parse_shopify_timestamp(refund.processed_at) or parse_shopify_timestamp(refund.created_at),
    )
    _touch_integration(db, integration)
    logger.info("refunds/create %s on order %s (%s): %s cents", refund.id, external_id, shop_domain, detail["amount"])
    return {"success": True, "action": "refunded", "transactionId": transaction.id, "refundId": detail["refundId"]}


def handle_app_uninstalled(db: Session, shop_domain: str, payload: Any) -> dict:
    integration = find_integration_by_shop(db, shop_domain)
    if not integration:
        logger.warning("app/uninstalled: no integration for shop %s", shop_domain)
        return {"success": True, "action": "integration_not_found"}
    now = _utcnow()
    integration.status = IntegrationStatus.DISCONNECTED
    integration.access_token = None
    integration.sync_status = SyncStatus.IDLE
    integration.sync_error = None
    integration.last_sync_at = None
    integration.webhook_consecutive_failures = 0
    integration.extra = {
        **(integration.extra or {}),
        "uninstalledAt": now.isoformat(),
        "uninstallReason": "user_initiated",
    }
    db.flush()
    logger.info("app/uninstalled: integration %s for %s disconnected", integration.id, shop_domain)
    return {"success": True, "action": "disconnected", "integrationId": integration.id}


_TOPIC_HANDLERS = {
    "orders/create": handle_order_create,
    "orders/updated": handle_order_updated,
    "orders/cancelled": handle_order_cancelled,
    "refunds/create": handle_refund_create,
    "app/uninstalled": handle_app_uninstalled,
}


def process_shopify_webhook(db: Session, shop_domain: str, topic: str, payload: Any) -> dict:
    """
    Dispatch by topic. Does not commit; the caller owns the transaction.
    WebhookValidationError for malformed payloads; anything else propagates as a processing failure.
    """
    handler = _TOPIC_HANDLERS.get(topic)
    if handler is None:
        logger.info("Shopify webhook topic %s acknowledged but not processed", topic)
        return {"success": True, "action": "ignored_topic", "topic": topic}
    if not isinstance(payload, dict):
        raise WebhookValidationError("Webhook payload must be a JSON object")
    return {**handler(db, shop_domain, payload), "topic": topic}
