"""
PKCE / state vault for pending login flows.

A login attempt is identified by an unguessable `state`. The vault remembers,
per state, the nonce and PKCE code verifier generated at start so the
callback can prove it belongs to the same attempt. Entries are single-use:
consume() removes the entry before anything else happens, so a state can be
redeemed at most once whatever the outcome of the callback.
"""

import base64
import hashlib
import logging
import secrets
import time
from typing import Callable, Optional

from pydantic import BaseModel, Field

from healthu_auth.auth.storage import InMemoryStore, KeyValueStore
from healthu_auth.exceptions import FlowExpired, FlowNotFound

logger = logging.getLogger(__name__)


DEFAULT_FLOW_TTL_SECONDS = 10 * 60


# =============================================================================
# PKCE Helper Functions
# =============================================================================

def _random_urlsafe(num_bytes: int) -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(num_bytes)).decode("utf-8").rstrip("=")


def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (86 characters, within RFC 7636's
        43-128 range)
    """
    return _random_urlsafe(64)


def generate_code_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Args:
        verifier: Code verifier string

    Returns:
        Base64-URL-encoded SHA256 hash of verifier, without padding
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


# =============================================================================
# Models
# =============================================================================

class PendingAuthFlow(BaseModel):
    """Server-side context of one login attempt, keyed by state."""

    state: str
    nonce: str
    code_verifier: str
    created_at: float = Field(..., description="Unix timestamp when the flow started")


class FlowStart(BaseModel):
    """Values produced when a login begins."""

    state: str
    nonce: str
    code_verifier: str
    code_challenge: str


# =============================================================================
# Vault
# =============================================================================

class FlowVault:
    """
    Single-use store of pending login flows.

    Args:
        store: Backing key-value store (in-memory by default)
        ttl_seconds: How long after begin() a flow may still be consumed
        clock: Returns the current Unix time; injectable for tests
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        ttl_seconds: int = DEFAULT_FLOW_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store if store is not None else InMemoryStore()
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def begin(self) -> FlowStart:
        """
        Start a login flow.

        Generates state, nonce and a PKCE verifier/challenge pair, records the
        flow under its state and returns all four values.
        """
        state = _random_urlsafe(32)
        nonce = _random_urlsafe(32)
        code_verifier = generate_code_verifier()
        code_challenge = generate_code_challenge(code_verifier)

        self._store.set(
            state,
            PendingAuthFlow(
                state=state,
                nonce=nonce,
                code_verifier=code_verifier,
                created_at=self._clock(),
            ),
        )

        logger.debug("Started login flow", extra={"pending_flows": len(self._store)})

        return FlowStart(
            state=state,
            nonce=nonce,
            code_verifier=code_verifier,
            code_challenge=code_challenge,
        )

    def consume(self, state: str) -> PendingAuthFlow:
        """
        Redeem a flow exactly once.

        The entry is removed before the age check, so an expired flow cannot
        be retried either.

        Args:
            state: State returned by the IdP redirect

        Returns:
            The pending flow

        Raises:
            FlowNotFound: State unknown or already consumed
            FlowExpired: Flow older than the TTL
        """
        flow = self._store.pop(state)

        if flow is None:
            raise FlowNotFound("No pending login for the supplied state")

        age = self._clock() - flow.created_at
        if age > self.ttl_seconds:
            raise FlowExpired(f"Login flow expired after {age:.0f}s (ttl {self.ttl_seconds}s)")

        return flow

    def reap_expired(self, max_age_seconds: float) -> int:
        """
        Drop abandoned flows older than max_age_seconds.

        Keep max_age_seconds above the TTL so that a late callback still
        reports FlowExpired rather than FlowNotFound.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        removed = 0

        for state, flow in self._store.items():
            if now - flow.created_at > max_age_seconds:
                self._store.delete(state)
                removed += 1

        if removed:
            logger.info(f"Reaped {removed} abandoned login flows")

        return removed

    def __len__(self) -> int:
        return len(self._store)
