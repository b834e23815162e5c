# /autoreply/utils/dependencies.py

import secrets
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from autoreply.config.settings import settings
from autoreply.models.config import OwnerType
from autoreply.services.jwt_service import jwt_service
from autoreply.utils.metrics import auth_attempts_counter

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"/api/{settings.api_version}/auth/login")


async def verify_jwt_token(token: str = Depends(oauth2_scheme)) -> dict:
    """Decode the bearer token into {"sub": ownerId, "role": "admin"|"coach", ...}."""
    payload = jwt_service.verify_token(token)
    if payload.get("type") != "access" or not payload.get("sub"):
        auth_attempts_counter.labels(status="rejected", method="jwt").inc()
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
    if payload.get("role") not in (OwnerType.ADMIN.value, OwnerType.COACH.value):
        auth_attempts_counter.labels(status="rejected", method="jwt").inc()
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown role")
    auth_attempts_counter.labels(status="accepted", method="jwt").inc()
    return payload


async def require_admin(user: dict = Depends(verify_jwt_token)) -> dict:
    if user.get("role") != OwnerType.ADMIN.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


def ensure_owner_access(user: dict, owner_id: str):
    """Coaches may only touch their own configuration; admins may touch any."""
    if user.get("role") == OwnerType.ADMIN.value:
        return
    if user.get("sub") != owner_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to access this configuration")


async def verify_api_key(request: Request):
    """Protects machine-to-machine endpoints (ingestion, metrics) when API_KEY is configured."""
    if settings.api_key:
        provided_key = request.headers.get("X-API-KEY")
        if not (provided_key and secrets.compare_digest(provided_key, settings.api_key)):
            auth_attempts_counter.labels(status="rejected", method="api_key").inc()
            raise HTTPException(status_code=403, detail="Invalid or missing API key")
