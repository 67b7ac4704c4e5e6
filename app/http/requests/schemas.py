"""
Pydantic schemas for operator request bodies (Http/Requests).
Inbound Shopify webhook bodies are validated in app/services/shopify_webhook_handler.py.
"""
from pydantic import BaseModel, Field, validator
from typing import Optional

from app.services.shopify_service import normalize_shop_domain


# Webhook health
class WebhookHealthRequest(BaseModel):
    integrationId: str


# Integrations
class ShopifyConnectRequest(BaseModel):
    """OAuth completion hand-off: the OAuth flow itself happens elsewhere."""
    organizationId: str
    shop: str
    accessToken: str
    name: Optional[str] = None
    scopes: Optional[str] = None
    startImport: bool = True
    daysBack: Optional[int] = Field(None, ge=1, le=365)

    @validator('shop')
    def validate_shop(cls, v):
        try:
            return normalize_shop_domain(v)
        except ValueError as e:
            raise ValueError('Invalid shop domain') from e

    @validator('accessToken')
    def validate_token(cls, v):
        if not v or not v.strip():
            raise ValueError('Access token is required')
        return v.strip()


class DisconnectRequest(BaseModel):
    purgeTransactions: bool = False


class ImportRequest(BaseModel):
    daysBack: Optional[int] = Field(None, ge=1, le=365)
