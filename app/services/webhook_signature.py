"""
Shopify webhook HMAC verification.
X-Shopify-Hmac-Sha256 is base64(HMAC-SHA256(raw_body, secret)) over the exact bytes received.
"""
import base64
import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def compute_webhook_hmac(body: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw body, as Shopify sends it."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_webhook_hmac(body: bytes, hmac_header: Optional[str], secret: Optional[str]) -> bool:
    """
    True only when hmac_header matches the body signed with secret.
    A missing header or missing/empty secret fails closed. An empty body is valid input.
    """
    if not secret or not hmac_header:
        return False
    if body is None:
        return False
    computed = compute_webhook_hmac(body, secret).encode("utf-8")
    received = hmac_header.strip().encode("utf-8")
    if len(computed) != len(received):
        return False
    return hmac.compare_digest(computed, received)
