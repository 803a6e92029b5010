"""
JWT Authentication Module for CampCAD

Dispatchers log in through the camp's auth service, which issues short-lived
HS256 access tokens. This module only validates them and turns the claims
into the Actor recorded on calls and audit rows.

Token validation is signature + expiry only (CPU, no DB hit).

Delivery:
- API clients: Authorization: Bearer <token>
- Browser: "campcad_jwt" cookie
- WebSocket: ?token=<jwt> query parameter during handshake

DEPENDENCIES: PyJWT
"""

import os
import secrets
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

import jwt  # PyJWT
from fastapi import HTTPException, Request

from services.dispatch.audit import Actor

logger = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

# JWT signing key. MUST be set in production via environment variable.
# If not set, generates a random key (tokens invalidated on restart, fine for dev).
_default_secret = secrets.token_urlsafe(64)
JWT_SECRET = os.environ.get("CAMPCAD_JWT_SECRET", _default_secret)
if JWT_SECRET == _default_secret:
    logger.warning(
        "CAMPCAD_JWT_SECRET not set in environment, using random key. "
        "Tokens will be invalidated on restart. "
        "Set CAMPCAD_JWT_SECRET for persistent tokens."
    )

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_LIFETIME = timedelta(minutes=15)

ACCESS_COOKIE = "campcad_jwt"

# =============================================================================
# TOKEN CREATION
# =============================================================================


def create_access_token(
    user_id: int,
    name: Optional[str] = None,
    role: Optional[str] = "DISPATCHER",
    lifetime: timedelta = ACCESS_TOKEN_LIFETIME,
) -> str:
    """
    Create a signed JWT access token.

    Used by the auth service and by operators/tests; CampCAD itself never
    logs anyone in.
    """
    now = datetime.now(timezone.utc)

    payload = {
        "user_id": user_id,
        "name": name,
        "role": role,
        "iat": now,
        "exp": now + lifetime,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


# =============================================================================
# TOKEN VALIDATION
# =============================================================================


class TokenClaims:
    """Parsed and validated JWT claims."""

    __slots__ = ("user_id", "name", "role", "exp")

    def __init__(self, payload: dict):
        self.user_id = payload["user_id"]
        self.name = payload.get("name")
        self.role = payload.get("role")
        self.exp = payload.get("exp")

    def to_actor(self) -> Actor:
        return Actor(user_id=self.user_id, name=self.name, role=self.role)


def validate_access_token(token: str) -> Optional[TokenClaims]:
    """
    Validate a JWT access token by checking its signature and expiration.

    Returns:
        TokenClaims if valid, None if invalid/expired.
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return TokenClaims(payload)
    except jwt.ExpiredSignatureError:
        return None
    except (jwt.InvalidTokenError, KeyError) as e:
        logger.warning(f"Invalid JWT: {e}")
        return None


# =============================================================================
# TOKEN EXTRACTION (multi-transport)
# =============================================================================


def extract_token_from_request(request) -> Optional[str]:
    """
    Extract JWT access token from request.

    Priority order:
    1. Authorization: Bearer <token> header
    2. campcad_jwt cookie (browser)
    """
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]

    token = request.cookies.get(ACCESS_COOKIE)
    if token:
        return token

    return None


def extract_token_from_websocket_params(websocket) -> Optional[str]:
    """
    Extract JWT from WebSocket query parameters (?token=<jwt>), falling back
    to the cookie when the browser sends it on upgrade.
    """
    token = websocket.query_params.get("token")
    if token:
        return token

    token = websocket.cookies.get(ACCESS_COOKIE)
    if token:
        return token

    return None


# =============================================================================
# FASTAPI DEPENDENCY
# =============================================================================


def get_current_actor(request: Request) -> Actor:
    """Authenticated dispatcher for the request, or 401"""
    token = extract_token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    claims = validate_access_token(token)
    if not claims:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return claims.to_actor()
