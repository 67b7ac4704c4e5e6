"""
Access-token encryption and the validated credential shape for a Shopify integration.
"""
import base64
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel

from app.config import settings
from app.exceptions import InvalidCredentialsError
from app.models import Integration, IntegrationStatus


def get_encryption_key() -> bytes:
    """Derive the Fernet key from ENCRYPTION_KEY (padded/truncated to 32 bytes)."""
    key_bytes = settings.ENCRYPTION_KEY.encode()[:32].ljust(32, b'0')
    return base64.urlsafe_b64encode(key_bytes)

def encrypt_token(token: str) -> str:
    f = Fernet(get_encryption_key())
    return f.encrypt(token.encode()).decode()

def decrypt_token(encrypted: str) -> str:
    f = Fernet(get_encryption_key())
    return f.decrypt(encrypted.encode()).decode()


class ShopInfo(BaseModel):
    domain: Optional[str] = None
    email: Optional[str] = None
    customer_email: Optional[str] = None
    shop_owner: Optional[str] = None
    currency: Optional[str] = None

    @classmethod
    def from_shopify(cls, shop: dict) -> "ShopInfo":
        return cls(
            domain=shop.get("myshopify_domain") or shop.get("domain"),
            email=shop.get("email"),
            customer_email=shop.get("customer_email"),
            shop_owner=shop.get("shop_owner"),
            currency=shop.get("currency"),
        )


class ShopifyCredentials(BaseModel):
    shop: str
    access_token: str
    shop_info: Optional[ShopInfo] = None


def get_integration_credentials(integration: Integration) -> ShopifyCredentials:
    """
    Decrypted credentials for a live integration.
    Disconnected integrations and missing/undecryptable tokens raise InvalidCredentialsError.
    """
    if integration.status == IntegrationStatus.DISCONNECTED:
        raise InvalidCredentialsError(f"Integration {integration.id} is disconnected")
    if not integration.shop_domain or not integration.access_token:
        raise InvalidCredentialsError(f"Invalid credentials for integration {integration.id}")
    try:
        token = decrypt_token(integration.access_token)
    except InvalidToken as e:
        raise InvalidCredentialsError(f"Access token for integration {integration.id} cannot be decrypted") from e
    shop_info = ShopInfo(**integration.shop_info) if integration.shop_info else None
    return ShopifyCredentials(shop=integration.shop_domain, access_token=token, shop_info=shop_info)
