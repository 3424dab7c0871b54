"""
Seller identity for the subscription API.

The auth system issues HS256 session JWTs; we verify them with AUTH_JWT_SECRET
and use the 'sub' claim as user_id. Outside production a bare X-User-Id header
is trusted too, so tests and local tools can act as any seller.
"""
import logging
from typing import Optional

import jwt
from fastapi import Header, HTTPException, Request

from marketbill.core.config import settings

logger = logging.getLogger("marketbill.auth")

JWT_ALGORITHMS = ["HS256"]


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def _bearer_token(request: Request) -> Optional[str]:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def verify_jwt(token: str) -> Optional[str]:
    """
    Return the token's subject, or None when JWT verification is not configured.

    Raises HTTPException(401) for bad signatures, expiry or a missing 'sub'.
    """
    secret = settings.AUTH_JWT_SECRET
    if not secret:
        return None

    try:
        claims = jwt.decode(token, secret, algorithms=JWT_ALGORITHMS, options={"require": ["sub"]})
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except jwt.MissingRequiredClaimError:
        raise _unauthorized("Token has no subject")
    except jwt.InvalidTokenError as e:
        logger.info("[auth] rejected token", extra={"error": type(e).__name__})
        raise _unauthorized("Invalid token")

    return str(claims["sub"])


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Non-production only: act as this seller"),
) -> str:
    token = _bearer_token(request)
    if token:
        user_id = verify_jwt(token)
        if user_id:
            return user_id

    if x_user_id and settings.ENV != "production":
        return x_user_id

    raise _unauthorized("Missing Authorization (Bearer JWT) or X-User-Id header")
