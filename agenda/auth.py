import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from jose import jwt as jose_jwt
from sqlalchemy.orm import Session

from .config import SECRET_KEY
from .database import get_db
from .models import Tenant

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 12

security = HTTPBearer(auto_error=False)


def create_access_token(tenant_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT for an establishment

    Args:
        tenant_id: Establishment id carried in the ``tenant_id`` claim
        expires_delta: Token expiration time (default 12 hours)
    """
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"tenant_id": tenant_id, "exp": expire}
    return jose_jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_access_token(token: str) -> Optional[dict[str, Any]]:
    """Decoded payload if valid, None if invalid or expired"""
    try:
        return jose_jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        return None


async def get_current_tenant(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> Tenant:
    """Resolve the establishment from the Bearer token"""
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    payload = verify_access_token(credentials.credentials)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    try:
        tenant_id = int(payload.get("tenant_id"))
    except (TypeError, ValueError):
        logger.warning("⚠️ Token without a valid tenant_id claim")
        raise HTTPException(status_code=401, detail="Invalid token claims") from None

    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    if not tenant:
        logger.warning(f"⚠️ Token for unknown establishment {tenant_id}")
        raise HTTPException(status_code=401, detail="Establishment not found")
    return tenant
