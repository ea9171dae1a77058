"""
Authentication utilities
"""
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from datetime import datetime, timezone, timedelta
import os

from database import get_store

security = HTTPBearer()
JWT_ALGORITHM = "HS256"


def get_jwt_secret() -> str:
    return os.environ.get('JWT_SECRET', 'agenda-billing-secret-key-change-in-production')


def create_token(user_id: str, tenant_id: str, email: str = None) -> str:
    payload = {
        "sub": user_id,
        "tenant_id": tenant_id,
        "email": email,
        "exp": datetime.now(timezone.utc) + timedelta(days=7)
    }
    return jwt.encode(payload, get_jwt_secret(), algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    if not payload.get("sub") or not payload.get("tenant_id"):
        raise HTTPException(status_code=401, detail="Invalid token")
    return payload


async def get_current_tenant(credentials: HTTPAuthorizationCredentials = Depends(security),
                             store=Depends(get_store)):
    """Verify JWT token and return the caller's tenant"""
    payload = decode_token(credentials.credentials)
    tenant = await store.tenants.get(payload["tenant_id"])
    if not tenant:
        raise HTTPException(status_code=401, detail="Tenant not found")

    return {**tenant, "user_id": payload["sub"], "email": payload.get("email")}
