"""
Shared route dependencies: store access and the acting identity.

Bearer tokens are HS256 JWTs issued upstream with claims:
    sub          user id
    facility_id  facility the user acts for
    role         staff | admin
"""

import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.identity import ROLE_ADMIN, ROLE_STAFF, Actor

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

# system is reserved for in-process sweepers
TOKEN_ROLES = {ROLE_STAFF, ROLE_ADMIN}


def get_store(request: Request):
    return request.app.state.store


def decode_token(token: str, secret: str) -> Optional[dict]:
    """Decode and verify an HS256 token; None when invalid or expired."""
    try:
        return jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired token")
        return None
    except jwt.InvalidTokenError:
        return None


def sign_token(payload: dict, secret: str) -> str:
    return jwt.encode(payload, secret, algorithm="HS256")


def get_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Token required")

    payload = decode_token(credentials.credentials, request.app.state.config.JWT_SECRET)
    if payload is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    role = payload.get("role") or ROLE_STAFF
    if role not in TOKEN_ROLES:
        logger.warning(f"Rejected token with role {role!r} for user {payload.get('sub')}")
        raise HTTPException(status_code=403, detail=f"Role not allowed: {role}")

    return Actor(
        facility_id=payload.get("facility_id"),
        user_id=payload.get("sub"),
        role=role,
    )


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role != ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="Admin role required")
    return actor
