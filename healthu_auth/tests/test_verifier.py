"""
Tests for JWKS caching and ID token verification.
"""

import asyncio
import time

import httpx
import pytest

from healthu_auth.auth.verifier import IDTokenVerifier, JWKSCache
from healthu_auth.exceptions import (
    AssertionExpired,
    AssertionInvalid,
    AudienceMismatch,
    IssuerMismatch,
    KeySetUnavailable,
    NonceMismatch,
    SignatureInvalid,
)
from healthu_auth.tests.support import (
    CLIENT_ID,
    ISSUER,
    JWKS_URI,
    OTHER_PRIVATE_KEY,
    OTHER_PUBLIC_KEY,
    TEST_KID,
    TEST_PUBLIC_KEY,
    create_mock_id_token,
    create_mock_jwks,
)


NONCE = "flow-nonce-abc"


class JWKSEndpoint:
    """Serves a mutable JWKS document and counts fetches."""

    def __init__(self, jwks=None, status_code=200):
        self.jwks = jwks or create_mock_jwks()
        self.status_code = status_code
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        return httpx.Response(self.status_code, json=self.jwks)


class GatedJWKSEndpoint(JWKSEndpoint):
    """JWKSEndpoint whose responses wait until release() once gated."""

    def __init__(self, jwks=None):
        super().__init__(jwks)
        self.gate = None

    def hold(self):
        self.gate = asyncio.Event()

    def release(self):
        self.gate.set()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return httpx.Response(self.status_code, json=self.jwks)


def make_cache(endpoint, cache_seconds=3600, clock=time.time) -> JWKSCache:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    return JWKSCache(http_client, JWKS_URI, cache_seconds=cache_seconds, clock=clock)


def make_verifier(endpoint: JWKSEndpoint) -> IDTokenVerifier:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    cache = JWKSCache(http_client, JWKS_URI, cache_seconds=3600)
    return IDTokenVerifier(cache, issuer=ISSUER, audience=CLIENT_ID)


@pytest.fixture
def endpoint():
    return JWKSEndpoint()


@pytest.fixture
def verifier(endpoint):
    return make_verifier(endpoint)


class TestVerify:
    @pytest.mark.asyncio
    async def test_valid_token_returns_normalized_claims(self, verifier):
        token = create_mock_id_token(nonce=NONCE)

        claims = await verifier.verify(token, NONCE)

        assert claims.sub == "uci-subject-123"
        assert claims.email == "jdoe@uci.edu"
        assert claims.email_verified is True
        assert claims.affiliations == ["student"]
        assert claims.amr == ["otp"]
        assert claims.nonce == NONCE

    @pytest.mark.asyncio
    async def test_audience_may_be_a_list(self, verifier):
        token = create_mock_id_token(nonce=NONCE, audience=["other-app", CLIENT_ID])

        claims = await verifier.verify(token, NONCE)

        assert claims.sub == "uci-subject-123"

    @pytest.mark.asyncio
    async def test_nonce_mismatch_rejected_even_when_otherwise_valid(self, verifier):
        token = create_mock_id_token(nonce="nonce-from-another-flow")

        with pytest.raises(NonceMismatch):
            await verifier.verify(token, NONCE)

    @pytest.mark.asyncio
    async def test_missing_nonce_rejected(self, verifier):
        token = create_mock_id_token(nonce=None)

        with pytest.raises(NonceMismatch):
            await verifier.verify(token, NONCE)

    @pytest.mark.asyncio
    async def test_wrong_issuer(self, verifier):
        token = create_mock_id_token(nonce=NONCE, issuer="https://evil.example/oidc")

        with pytest.raises(IssuerMismatch):
            await verifier.verify(token, NONCE)

    @pytest.mark.asyncio
    async def test_wrong_audience(self, verifier):
        token = create_mock_id_token(nonce=NONCE, audience="someone-else")

        with pytest.raises(AudienceMismatch):
            await verifier.verify(token, NONCE)

    @pytest.mark.asyncio
    async def test_expired_token(self, verifier):
        token = create_mock_id_token(nonce=NONCE, exp_delta_seconds=-600)

        with pytest.raises(AssertionExpired):
            await verifier.verify(token, NONCE)

    @pytest.mark.asyncio
    async def test_signature_from_wrong_key(self, verifier):
        # Claims to be TEST_KID but signed with a different private key
        token = create_mock_id_token(nonce=NONCE, private_key=OTHER_PRIVATE_KEY)

        with pytest.raises(SignatureInvalid):
            await verifier.verify(token, NONCE)

    @pytest.mark.asyncio
    async def test_garbage_token(self, verifier):
        with pytest.raises(SignatureInvalid):
            await verifier.verify("not-a-jwt", NONCE)

    @pytest.mark.asyncio
    async def test_failure_kinds_share_public_message(self, verifier):
        token = create_mock_id_token(nonce=NONCE, audience="someone-else")

        with pytest.raises(AssertionInvalid) as exc_info:
            await verifier.verify(token, NONCE)

        assert exc_info.value.public_message == "Authentication failed"
        assert exc_info.value.status_code == 500
        assert exc_info.value.code == "authentication_failed"


class TestKeyRotation:
    @pytest.mark.asyncio
    async def test_keys_are_cached_across_verifications(self, verifier, endpoint):
        for _ in range(3):
            await verifier.verify(create_mock_id_token(nonce=NONCE), NONCE)

        assert endpoint.calls == 1

    @pytest.mark.asyncio
    async def test_unknown_kid_triggers_one_refresh(self, verifier, endpoint):
        await verifier.verify(create_mock_id_token(nonce=NONCE), NONCE)

        # IdP rotates to a new key
        endpoint.jwks = create_mock_jwks((TEST_KID, TEST_PUBLIC_KEY), ("rotated-key", OTHER_PUBLIC_KEY))
        token = create_mock_id_token(nonce=NONCE, kid="rotated-key", private_key=OTHER_PRIVATE_KEY)

        claims = await verifier.verify(token, NONCE)

        assert claims.sub == "uci-subject-123"
        assert endpoint.calls == 2

    @pytest.mark.asyncio
    async def test_unknown_kid_after_refresh_fails(self, verifier, endpoint):
        await verifier.verify(create_mock_id_token(nonce=NONCE), NONCE)

        token = create_mock_id_token(nonce=NONCE, kid="never-published")

        with pytest.raises(SignatureInvalid):
            await verifier.verify(token, NONCE)

        assert endpoint.calls == 2

    @pytest.mark.asyncio
    async def test_jwks_endpoint_failure(self):
        verifier = make_verifier(JWKSEndpoint(status_code=503))

        with pytest.raises(KeySetUnavailable):
            await verifier.verify(create_mock_id_token(nonce=NONCE), NONCE)

    @pytest.mark.asyncio
    async def test_jwks_without_keys_field(self):
        verifier = make_verifier(JWKSEndpoint(jwks={"not_keys": []}))

        with pytest.raises(KeySetUnavailable):
            await verifier.verify(create_mock_id_token(nonce=NONCE), NONCE)

    @pytest.mark.asyncio
    async def test_stale_cache_is_refetched(self, endpoint):
        now = [1_000.0]
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
        cache = JWKSCache(http_client, JWKS_URI, cache_seconds=60, clock=lambda: now[0])

        assert await cache.get_key(TEST_KID) is not None
        now[0] += 61
        assert await cache.get_key(TEST_KID) is not None

        assert endpoint.calls == 2

    @pytest.mark.asyncio
    async def test_stale_cache_keeps_serving_known_key_when_refresh_fails(self):
        now = [1_000.0]
        endpoint = JWKSEndpoint()
        cache = make_cache(endpoint, cache_seconds=60, clock=lambda: now[0])
        verifier = IDTokenVerifier(cache, issuer=ISSUER, audience=CLIENT_ID)

        await verifier.verify(create_mock_id_token(nonce=NONCE), NONCE)
        now[0] += 61
        endpoint.status_code = 503

        claims = await verifier.verify(create_mock_id_token(nonce=NONCE), NONCE)

        assert claims.sub == "uci-subject-123"
        assert endpoint.calls == 2

    @pytest.mark.asyncio
    async def test_stale_cache_refresh_failure_still_rejects_unknown_kid(self):
        now = [1_000.0]
        endpoint = JWKSEndpoint()
        cache = make_cache(endpoint, cache_seconds=60, clock=lambda: now[0])

        await cache.get_key(TEST_KID)
        now[0] += 61
        endpoint.status_code = 503

        with pytest.raises(KeySetUnavailable):
            await cache.get_key("never-published")


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_cached_key_lookup_does_not_wait_for_refresh(self):
        endpoint = GatedJWKSEndpoint()
        cache = make_cache(endpoint)
        await cache.get_key(TEST_KID)

        endpoint.hold()
        refreshing = asyncio.create_task(cache.get_key("rotated-key"))
        while endpoint.calls < 2:
            await asyncio.sleep(0)
        assert cache._refresh_lock.locked()

        key = await asyncio.wait_for(cache.get_key(TEST_KID), timeout=1)

        assert key["kid"] == TEST_KID
        assert not refreshing.done()

        endpoint.release()
        assert await refreshing is None

    @pytest.mark.asyncio
    async def test_concurrent_unknown_kid_lookups_share_one_fetch(self):
        endpoint = GatedJWKSEndpoint(
            create_mock_jwks((TEST_KID, TEST_PUBLIC_KEY), ("rotated-key", OTHER_PUBLIC_KEY))
        )
        cache = make_cache(endpoint)
        endpoint.hold()

        lookups = asyncio.gather(*(cache.get_key("rotated-key") for _ in range(5)))
        while endpoint.calls < 1:
            await asyncio.sleep(0)
        for _ in range(10):
            await asyncio.sleep(0)
        endpoint.release()

        keys = await lookups

        assert [key["kid"] for key in keys] == ["rotated-key"] * 5
        assert endpoint.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_verifications_during_rotation(self):
        endpoint = GatedJWKSEndpoint()
        cache = make_cache(endpoint)
        verifier = IDTokenVerifier(cache, issuer=ISSUER, audience=CLIENT_ID)
        await verifier.verify(create_mock_id_token(nonce=NONCE), NONCE)

        endpoint.jwks = create_mock_jwks((TEST_KID, TEST_PUBLIC_KEY), ("rotated-key", OTHER_PUBLIC_KEY))
        endpoint.hold()
        rotated = asyncio.create_task(
            verifier.verify(
                create_mock_id_token(nonce=NONCE, kid="rotated-key", private_key=OTHER_PRIVATE_KEY),
                NONCE,
            )
        )
        while endpoint.calls < 2:
            await asyncio.sleep(0)

        results = await asyncio.wait_for(
            asyncio.gather(*(verifier.verify(create_mock_id_token(nonce=NONCE), NONCE) for _ in range(3))),
            timeout=1,
        )
        endpoint.release()

        assert [claims.sub for claims in results] == ["uci-subject-123"] * 3
        assert (await rotated).sub == "uci-subject-123"
        assert endpoint.calls == 2
