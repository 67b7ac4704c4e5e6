"""
Tax line processing: money to integer cents and categorisation of platform tax lines
(GST/PST/HST/QST, US state/local, other) for set-aside reporting.
"""
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from app.exceptions import WebhookValidationError

logger = logging.getLogger(__name__)

TAX_TYPES = ("gst", "pst", "hst", "qst", "state", "local", "other")

# Exact titles seen on Shopify orders
TAX_TYPE_MAPPING = {
    "GST": "gst",
    "HST": "hst",
    "PST": "pst",
    "QST": "qst",
    "Quebec Sales Tax": "qst",
    "Goods and Services Tax": "gst",
    "Harmonized Sales Tax": "hst",
    "Provincial Sales Tax": "pst",
    "Sales Tax": "state",
    "State Tax": "state",
    "Local Tax": "local",
    "City Tax": "local",
    "County Tax": "local",
    "VAT": "other",
    "Value Added Tax": "other",
}


def to_cents(value: Any) -> int:
    """'10.005' -> 1001. None/'' -> 0. Half-up rounding on the decimal value, never float math."""
    if value is None or value == "":
        return 0
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise WebhookValidationError(f"Invalid money amount: {value!r}") from e
    if not amount.is_finite():
        raise WebhookValidationError(f"Invalid money amount: {value!r}")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def determine_tax_type(title: Optional[str]) -> str:
    title = (title or "").strip()
    if title in TAX_TYPE_MAPPING:
        return TAX_TYPE_MAPPING[title]
    upper = title.upper()
    if "GST" in upper or ("GOODS" in upper and "SERVICE" in upper):
        return "gst"
    if "PST" in upper or "PROVINCIAL" in upper:
        return "pst"
    if "HST" in upper or "HARMONIZED" in upper:
        return "hst"
    if "QST" in upper or "QUEBEC" in upper:
        return "qst"
    if "STATE" in upper or "SALES TAX" in upper:
        return "state"
    if "LOCAL" in upper or "CITY" in upper or "COUNTY" in upper:
        return "local"
    return "other"


def extract_tax_jurisdiction(billing_address: Optional[dict], shipping_address: Optional[dict]) -> dict:
    """Billing address wins over shipping for tax jurisdiction."""
    address = billing_address or shipping_address or {}
    return {
        "country": address.get("country_code") or address.get("country"),
        "province": address.get("province_code") or address.get("province"),
        "city": address.get("city"),
        "postalCode": address.get("zip") or address.get("postal_code"),
    }


def process_tax_lines(
    tax_lines: list[dict],
    billing_address: Optional[dict] = None,
    shipping_address: Optional[dict] = None,
) -> dict:
    """
    Returns {"totals": {type: cents}, "jurisdiction": {...}, "lines": [{type, title, amount, rate}]}.
    Lines keep the platform's order.
    """
    totals = {t: 0 for t in TAX_TYPES}
    lines = []
    for tax_line in tax_lines or []:
        amount = to_cents(tax_line.get("price"))
        tax_type = determine_tax_type(tax_line.get("title"))
        totals[tax_type] += amount
        lines.append({
            "type": tax_type,
            "title": tax_line.get("title"),
            "amount": amount,
            "rate": tax_line.get("rate") or 0,
        })
    return {
        "totals": totals,
        "jurisdiction": extract_tax_jurisdiction(billing_address, shipping_address),
        "lines": lines,
    }


def validate_tax_breakdown(breakdown: dict, expected_total: int) -> dict:
    """Category sum vs the order's total_tax, allowing one cent of rounding drift."""
    calculated = sum(breakdown["totals"].values())
    difference = abs(calculated - expected_total)
    return {
        "isValid": difference <= 1,
        "calculatedTotal": calculated,
        "difference": difference,
    }
