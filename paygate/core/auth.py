"""
Auth utilities for the paygate API.

Validates HS256 bearer JWTs and extracts the caller identity (user id + email).
Falls back to X-User-Id / X-User-Email headers when ALLOW_HEADER_AUTH is set
(local development and tests).

Anonymous callers are allowed on read paths: they get an identity of None and
are evaluated as free-tier users.
"""
from dataclasses import dataclass
from fastapi import Header, Request
from typing import Optional
from paygate.core.config import settings
from paygate.core.errors import AuthenticationRequired
import jwt
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Authenticated caller. Supplied by the auth layer, never by request bodies."""
    user_id: str
    email: Optional[str] = None


def verify_jwt(token: str) -> Identity:
    """
    Verify a bearer JWT and extract the identity.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        Identity built from the 'sub' and 'email' claims

    Raises:
        AuthenticationRequired: Missing secret, invalid or expired token
    """
    if not settings.AUTH_JWT_SECRET:
        logger.debug("No AUTH_JWT_SECRET configured, bearer tokens cannot be verified")
        raise AuthenticationRequired("Bearer authentication is not configured")

    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=[settings.AUTH_JWT_ALGORITHM],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationRequired("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthenticationRequired("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationRequired("Token has no subject")

    return Identity(user_id=str(user_id), email=payload.get("email"))


async def get_optional_identity(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test user ID"),
    x_user_email: Optional[str] = Header(None, description="Dev/test user email"),
) -> Optional[Identity]:
    """
    Extract the caller identity, or None for anonymous callers.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id / X-User-Email headers (only when ALLOW_HEADER_AUTH)
    3. None

    A present but invalid bearer token is rejected rather than treated as anonymous.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return verify_jwt(auth_header[7:])

    if x_user_id and settings.ALLOW_HEADER_AUTH:
        return Identity(user_id=x_user_id, email=x_user_email)

    return None


async def require_identity(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test user ID"),
    x_user_email: Optional[str] = Header(None, description="Dev/test user email"),
) -> Identity:
    """Same as get_optional_identity, but anonymous callers get 401 auth_required."""
    identity = await get_optional_identity(request, x_user_id, x_user_email)
    if identity is None:
        raise AuthenticationRequired("Sign in to continue")
    return identity
