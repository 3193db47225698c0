"""
Auth utilities for the ProviderHub API.

Validates bearer JWTs issued by the auth provider and extracts user_id.
Falls back to the X-User-Id header when AUTH_ALLOW_HEADER_FALLBACK is on
(local development and tests).
"""
from fastapi import Header, Request
from typing import Mapping, Optional
import jwt
import logging

from providerhub.core.config import settings
from providerhub.core.errors import AuthenticationError

logger = logging.getLogger(__name__)


def verify_jwt(token: str) -> Optional[str]:
    """
    Verify a JWT and extract user_id.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        user_id from the 'sub' claim, or None when no secret is configured

    Raises:
        AuthenticationError: Invalid or expired token
    """
    if not settings.AUTH_JWT_SECRET:
        logger.debug("No AUTH_JWT_SECRET configured, skipping JWT validation")
        return None

    options = {"verify_signature": True, "verify_exp": True}
    if not settings.AUTH_JWT_AUDIENCE:
        options["verify_aud"] = False
    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.AUTH_JWT_AUDIENCE,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthenticationError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("No 'sub' claim in token")
    return user_id


def authenticate_headers(headers: Mapping[str, str]) -> Optional[str]:
    """
    Resolve user_id from request or websocket headers.

    Tries in order:
    1. Bearer JWT from Authorization header
    2. X-User-Id header (only when fallback is enabled)

    Returns:
        user_id if authenticated, None otherwise

    Raises:
        AuthenticationError: A bearer token was supplied but is invalid
    """
    auth_header = headers.get("authorization") or headers.get("Authorization") or ""
    if auth_header.startswith("Bearer "):
        user_id = verify_jwt(auth_header[7:])
        if user_id:
            return user_id

    if settings.AUTH_ALLOW_HEADER_FALLBACK:
        user_id = headers.get("x-user-id") or headers.get("X-User-Id")
        if user_id:
            return user_id

    return None


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test user ID"),
) -> str:
    """
    FastAPI dependency returning the authenticated user id.

    Raises:
        AuthenticationError: Missing or invalid authentication
    """
    user_id = authenticate_headers(request.headers)
    if not user_id:
        raise AuthenticationError("Missing Authorization (Bearer JWT) or X-User-Id header")
    request.state.user_id = user_id
    return user_id
