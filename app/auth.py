"""
Operator authentication for dashboard and scheduler endpoints.
Accepts the shared CRON_SECRET (external scheduler) or a JWT signed with JWT_SECRET.
"""
import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from app.config import settings

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class Operator(BaseModel):
    sub: str
    org_id: Optional[str] = None
    is_scheduler: bool = False


def create_operator_token(sub: str, org_id: Optional[str] = None) -> str:
    payload = {"sub": sub}
    if org_id:
        payload["org_id"] = org_id
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.AUTH_ALGORITHM)


async def get_current_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Operator:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None or not credentials.credentials:
        raise credentials_exception
    token = credentials.credentials

    if settings.CRON_SECRET and hmac.compare_digest(token.encode(), settings.CRON_SECRET.encode()):
        return Operator(sub="cron", is_scheduler=True)

    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.AUTH_ALGORITHM])
    except JWTError as e:
        logger.warning("Operator JWT rejected: %s", e)
        raise credentials_exception
    sub = payload.get("sub")
    if not sub:
        raise credentials_exception
    return Operator(sub=str(sub), org_id=payload.get("org_id"))
