"""
Session Token Management Module
===============================

Creation and verification of the session tokens handed to the mobile app.

A session token is an HS256 JWT carrying userId, email and isStudent plus
iat/exp/iss/aud. Nothing is stored server-side: the token is valid until it
expires or the signing secret changes. There is no revocation hook; rotating
APP_SESSION_SECRET invalidates every outstanding session.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

import jwt
from fastapi import Header, Request
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from pydantic import BaseModel

from healthu_auth.auth.users import User
from healthu_auth.exceptions import SessionInvalid

logger = logging.getLogger(__name__)


SESSION_ALGORITHM = "HS256"

DEFAULT_SESSION_TTL_SECONDS = 60 * 60 * 8


class IssuedSession(BaseModel):
    token: str
    expires_in: int


class SessionIdentity(BaseModel):
    """Caller identity recovered from a verified session token."""

    user_id: str
    email: str
    is_student: bool


# =============================================================================
# Issuer / Verifier
# =============================================================================

class SessionIssuer:
    """
    Mints and verifies session tokens.

    Args:
        secret: HMAC signing secret, loaded once at startup
        issuer: iss claim
        audience: aud claim
        ttl_seconds: Token lifetime
        clock: Returns current Unix time, used for iat/exp when issuing
    """

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("Session signing secret must not be empty")
        self._secret = secret
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, user: User) -> IssuedSession:
        """
        Create a session token for a user.

        Args:
            user: User returned by the directory

        Returns:
            Token and its lifetime in seconds
        """
        now = int(self._clock())
        payload: Dict[str, Any] = {
            "userId": user.id,
            "email": user.email,
            "isStudent": user.is_student,
            "iat": now,
            "exp": now + self.ttl_seconds,
            "iss": self.issuer,
            "aud": self.audience,
        }

        token = jwt.encode(
            payload,
            self._secret,
            algorithm=SESSION_ALGORITHM,
            headers={"typ": "JWT"},
        )

        logger.debug(
            "Issued session token",
            extra={"user_id": user.id, "expires_in": self.ttl_seconds},
        )

        return IssuedSession(token=token, expires_in=self.ttl_seconds)

    def verify(self, token: str) -> SessionIdentity:
        """
        Verify and decode a session token.

        Args:
            token: Bearer token presented by the client

        Returns:
            Caller identity

        Raises:
            SessionInvalid: For every failure (missing, forged, wrong
                issuer/audience, expired, malformed claims)
        """
        if not token:
            raise SessionInvalid("No session token provided")

        try:
            decoded = jwt.decode(
                token,
                self._secret,
                algorithms=[SESSION_ALGORITHM],
                issuer=self.issuer,
                audience=self.audience,
                options={"require": ["exp", "iat", "iss", "aud"]},
            )
        except ExpiredSignatureError as e:
            logger.info("Session token expired")
            raise SessionInvalid("Session token expired") from e
        except InvalidTokenError as e:
            logger.warning(f"Invalid session token: {e}")
            raise SessionInvalid(f"Invalid session token: {e}") from e

        user_id = decoded.get("userId")
        email = decoded.get("email")
        is_student = decoded.get("isStudent")

        if not isinstance(user_id, str) or not isinstance(email, str) or not isinstance(is_student, bool):
            logger.warning("Session token is missing identity claims")
            raise SessionInvalid("Session token is missing identity claims")

        return SessionIdentity(user_id=user_id, email=email, is_student=is_student)


# =============================================================================
# Helper Functions
# =============================================================================

def extract_token_from_header(authorization: Optional[str]) -> str:
    """
    Extract Bearer token from Authorization header.

    Args:
        authorization: Authorization header value

    Returns:
        Extracted token string

    Raises:
        SessionInvalid: If header is missing or not "Bearer <token>"
    """
    if not authorization:
        raise SessionInvalid("Missing bearer token")

    parts = authorization.split()

    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise SessionInvalid("Invalid Authorization header format. Expected: 'Bearer <token>'")

    return parts[1]


# =============================================================================
# FastAPI Dependencies
# =============================================================================

async def get_current_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> SessionIdentity:
    """
    FastAPI dependency to extract and verify the session token.

    Usage in routes:
        @app.get("/protected")
        async def protected_route(identity: SessionIdentity = Depends(get_current_identity)):
            return {"email": identity.email}

    Raises:
        SessionInvalid: Turned into a 401 by the application error handler
    """
    token = extract_token_from_header(authorization)
    issuer: SessionIssuer = request.app.state.session_issuer
    return issuer.verify(token)


__all__ = [
    "IssuedSession",
    "SessionIdentity",
    "SessionIssuer",
    "extract_token_from_header",
    "get_current_identity",
]
