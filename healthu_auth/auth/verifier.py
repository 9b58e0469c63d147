"""
ID token verification against the IdP's published signing keys.

This module handles:
- Fetching and caching the IdP JWKS (JSON Web Key Set) by key id
- Refreshing once when a token names an unknown key id (key rotation)
- Verifying ID token signature, expiry, issuer, audience and flow nonce
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
from jose import ExpiredSignatureError, JOSEError, JWTError, jwk, jwt

from healthu_auth.auth.claims import VerifiedClaims, normalize_claims
from healthu_auth.exceptions import (
    AssertionExpired,
    AssertionInvalid,
    AudienceMismatch,
    IssuerMismatch,
    KeySetUnavailable,
    NonceMismatch,
    SignatureInvalid,
)

logger = logging.getLogger(__name__)


CLOCK_SKEW_LEEWAY_SECONDS = 10


# =============================================================================
# JWKS Cache
# =============================================================================

class JWKSCache:
    """
    Process-wide cache of IdP signing keys, indexed by kid.

    Lookups of cached keys never wait: only a refresh takes the lock, and a
    refresh that finds another refresh already completed while it waited
    reuses that result instead of fetching again.

    Args:
        http_client: Shared httpx.AsyncClient
        jwks_uri: IdP key set endpoint
        cache_seconds: How long a fetched key set is trusted
        clock: Returns current Unix time; injectable for tests
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        jwks_uri: str,
        cache_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self._http = http_client
        self.jwks_uri = jwks_uri
        self.cache_seconds = cache_seconds
        self._clock = clock
        self._keys: Dict[str, Dict[str, Any]] = {}
        self._fetched_at: Optional[float] = None
        self._generation = 0
        self._refresh_lock = asyncio.Lock()

    @property
    def is_fresh(self) -> bool:
        return (
            self._fetched_at is not None
            and (self._clock() - self._fetched_at) < self.cache_seconds
        )

    async def get_key(self, kid: str) -> Optional[Dict[str, Any]]:
        """
        Return the JWK for kid, fetching or refreshing the key set as needed.

        An unknown kid triggers exactly one refresh. A kid held in a stale
        cache is still served when the refresh fails.

        Returns:
            Matching JWK dict, or None if the IdP does not publish it

        Raises:
            KeySetUnavailable: If the key set cannot be fetched and kid is
                not cached
        """
        cached = self._keys.get(kid)
        if cached is not None and self.is_fresh:
            return cached

        try:
            await self.refresh(seen_generation=self._generation)
        except KeySetUnavailable:
            if cached is None:
                raise
            logger.warning(
                "Key set refresh failed, using cached signing key",
                extra={"kid": kid, "jwks_uri": self.jwks_uri},
            )
            return cached

        return self._keys.get(kid)

    async def refresh(self, seen_generation: Optional[int] = None) -> None:
        """
        Fetch the key set from the IdP and replace the cache.

        Args:
            seen_generation: Cache generation the caller observed; if another
                task refreshed since then, this call returns without fetching.
        """
        async with self._refresh_lock:
            if seen_generation is not None and self._generation != seen_generation:
                return

            try:
                response = await self._http.get(self.jwks_uri)
                response.raise_for_status()
                jwks_data = response.json()
            except httpx.HTTPError as e:
                logger.error(f"Failed to fetch JWKS from {self.jwks_uri}: {e}")
                raise KeySetUnavailable(f"JWKS fetch failed: {e}") from e
            except ValueError as e:
                raise KeySetUnavailable(f"JWKS response is not JSON: {e}") from e

            if not isinstance(jwks_data, dict) or not isinstance(jwks_data.get("keys"), list):
                raise KeySetUnavailable("Invalid JWKS response: missing 'keys' field")

            self._keys = {
                key["kid"]: key
                for key in jwks_data["keys"]
                if isinstance(key, dict) and key.get("kid")
            }
            self._fetched_at = self._clock()
            self._generation += 1

            logger.info(
                "Refreshed IdP signing keys",
                extra={"key_count": len(self._keys), "jwks_uri": self.jwks_uri},
            )

    def clear(self) -> None:
        self._keys = {}
        self._fetched_at = None


# =============================================================================
# ID Token Verifier
# =============================================================================

class IDTokenVerifier:
    """
    Validates ID tokens issued by the university IdP.

    Args:
        jwks_cache: Signing key cache
        issuer: Expected iss claim
        audience: Expected aud (the OAuth client id)
        algorithms: Accepted signing algorithms
    """

    def __init__(
        self,
        jwks_cache: JWKSCache,
        issuer: str,
        audience: str,
        algorithms: Optional[List[str]] = None,
    ):
        self.jwks_cache = jwks_cache
        self.issuer = issuer
        self.audience = audience
        self.algorithms = algorithms or ["RS256"]

    async def verify(self, id_token: str, expected_nonce: str) -> VerifiedClaims:
        """
        Verify and decode an ID token.

        This function performs comprehensive validation:
        1. Reads kid/alg from the header and finds the public key
        2. Verifies the token signature and expiry
        3. Validates issuer and audience as separate failure kinds
        4. Compares the nonce to the one recorded for this login flow

        Args:
            id_token: JWT ID token string from the IdP
            expected_nonce: Nonce generated when the flow began

        Returns:
            Normalized verified claims

        Raises:
            SignatureInvalid: Malformed token, unknown key or bad signature
            AssertionExpired: Token past its exp
            IssuerMismatch: iss differs from the configured issuer
            AudienceMismatch: aud does not contain the client id
            NonceMismatch: nonce differs from the flow's nonce
            KeySetUnavailable: Key set could not be fetched
        """
        try:
            header = jwt.get_unverified_header(id_token)
        except JWTError as e:
            raise SignatureInvalid(f"Failed to decode token header: {e}") from e

        alg = header.get("alg")
        if alg not in self.algorithms:
            raise SignatureInvalid(f"Token algorithm {alg!r} is not accepted")

        kid = header.get("kid")
        if not kid:
            raise SignatureInvalid("Token header missing 'kid' (Key ID)")

        signing_key = await self.jwks_cache.get_key(kid)
        if not signing_key:
            raise SignatureInvalid(
                f"Unable to find signing key {kid!r} in JWKS, even after refresh"
            )

        try:
            public_key = jwk.construct(signing_key, algorithm=alg)
        except JOSEError as e:
            raise SignatureInvalid(f"Failed to construct public key from JWK: {e}") from e

        try:
            claims = jwt.decode(
                id_token,
                public_key.to_pem().decode("utf-8"),
                algorithms=[alg],
                options={
                    "verify_signature": True,
                    "verify_aud": False,
                    "verify_iss": False,
                    "verify_iat": True,
                    "verify_exp": True,
                    "verify_nbf": True,
                    "verify_sub": True,
                    "verify_jti": False,
                    "verify_at_hash": False,
                    "require_exp": True,
                    "leeway": CLOCK_SKEW_LEEWAY_SECONDS,
                },
            )
        except ExpiredSignatureError as e:
            raise AssertionExpired("ID token has expired") from e
        except JWTError as e:
            raise SignatureInvalid(f"Token verification failed: {e}") from e

        issuer = claims.get("iss")
        if issuer != self.issuer:
            raise IssuerMismatch(f"Invalid issuer: {issuer!r}, expected {self.issuer!r}")

        if not _audience_matches(claims.get("aud"), self.audience):
            raise AudienceMismatch(f"Invalid audience: {claims.get('aud')!r}")

        if not claims.get("sub"):
            raise AssertionInvalid("ID token missing 'sub' claim")

        if claims.get("nonce") != expected_nonce:
            raise NonceMismatch("Nonce mismatch")

        return normalize_claims(claims)


def _audience_matches(aud: Union[str, List[str], None], expected: str) -> bool:
    if isinstance(aud, str):
        return aud == expected
    if isinstance(aud, list):
        return expected in aud
    return False
