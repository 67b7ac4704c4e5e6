"""
Typed errors for webhook ingestion, Shopify API calls and integration lookups.
Each error carries a machine-readable code; controllers map them to HTTP statuses.
"""
from typing import Optional


class TaxFlowError(Exception):
    code = "TAXFLOW_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


# Inbound webhooks

class WebhookValidationError(TaxFlowError):
    """Malformed payload or missing required header. Maps to 400."""
    code = "WEBHOOK_VALIDATION_FAILED"


# Shopify Admin API

class ShopifyAPIError(TaxFlowError):
    code = "SHOPIFY_API_ERROR"

    def __init__(self, message: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ShopifyAuthError(ShopifyAPIError):
    """401/403: token revoked or missing scope."""
    code = "SHOPIFY_AUTH_ERROR"


class ShopifyNotFoundError(ShopifyAPIError):
    code = "SHOPIFY_NOT_FOUND"


class ShopifyRateLimitedError(ShopifyAPIError):
    code = "SHOPIFY_RATE_LIMITED"

    def __init__(self, message: str = "", status_code: Optional[int] = 429, retry_after: Optional[float] = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class ShopifyPlatformError(ShopifyAPIError):
    """5xx, timeouts and transport failures. Transient: retried by the next health check."""
    code = "SHOPIFY_PLATFORM_ERROR"


# Integrations

class IntegrationNotFoundError(TaxFlowError):
    code = "INTEGRATION_NOT_FOUND"


class InvalidCredentialsError(TaxFlowError):
    """Integration has no usable shop domain or access token."""
    code = "INVALID_CREDENTIALS"
