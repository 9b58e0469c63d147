"""
Test support: RSA keys, ID token factory and a fake IdP served through
httpx.MockTransport.
"""

import base64
import hashlib
import time
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlsplit

import httpx
import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from healthu_auth.config import Settings


ISSUER = "https://login.uci.test/oidc"
CLIENT_ID = "healthu-mobile-client"
AUTHORIZATION_ENDPOINT = "https://login.uci.test/oidc/authorize"
TOKEN_ENDPOINT = "https://login.uci.test/oidc/token"
JWKS_URI = "https://login.uci.test/oidc/jwks"
REDIRECT_URI = "healthu://auth/callback"
SESSION_SECRET = "test-session-secret-0123456789abcdef"


# Test RSA key pair generation for mocking JWKS
def generate_test_keys():
    """Generate RSA key pair for testing"""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )

    return private_pem.decode(), private_key.public_key()


# Generate test keys once for reuse
TEST_PRIVATE_KEY, TEST_PUBLIC_KEY = generate_test_keys()
OTHER_PRIVATE_KEY, OTHER_PUBLIC_KEY = generate_test_keys()
TEST_KID = "test-key-id-2024"


def create_mock_jwks(*keys) -> Dict[str, Any]:
    """
    Create a JWKS document.

    Args:
        keys: (kid, public_key) pairs; defaults to the main test key
    """
    keys = keys or ((TEST_KID, TEST_PUBLIC_KEY),)
    documents = []
    for kid, public_key in keys:
        key = RSAAlgorithm.to_jwk(public_key, as_dict=True)
        key["kid"] = kid
        key["use"] = "sig"
        documents.append(key)
    return {"keys": documents}


def student_claims(**overrides) -> Dict[str, Any]:
    """Claims that pass every policy gate."""
    claims = {
        "sub": "uci-subject-123",
        "email": "jdoe@uci.edu",
        "email_verified": True,
        "affiliation": ["student"],
        "amr": ["otp"],
    }
    claims.update(overrides)
    return claims


def create_mock_id_token(
    claims: Optional[Dict[str, Any]] = None,
    nonce: Optional[str] = "test-nonce",
    kid: str = TEST_KID,
    private_key: str = TEST_PRIVATE_KEY,
    issuer: str = ISSUER,
    audience: Any = CLIENT_ID,
    exp_delta_seconds: int = 3600,
) -> str:
    """
    Create an ID token signed with a test private key.

    Claims explicitly set to None are dropped from the payload.
    """
    now = int(time.time())
    payload: Dict[str, Any] = {
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + exp_delta_seconds,
        "nonce": nonce,
    }
    payload.update(claims if claims is not None else student_claims())
    payload = {key: value for key, value in payload.items() if value is not None}

    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


def challenge_for(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class FakeIdP:
    """
    In-process identity provider for httpx.MockTransport.

    Serves the token endpoint and the JWKS endpoint. The token endpoint
    checks the PKCE verifier against the challenge seen in the last
    authorization URL and signs an ID token carrying that URL's nonce.
    """

    def __init__(self):
        self.claims: Dict[str, Any] = student_claims()
        self.jwks: Dict[str, Any] = create_mock_jwks()
        self.token_status = 200
        self.token_body: Optional[Dict[str, Any]] = None
        self.nonce: Optional[str] = None
        self.code_challenge: Optional[str] = None
        self.token_requests: List[Dict[str, List[str]]] = []
        self.jwks_requests = 0

    def authorize(self, authorization_url: str) -> Dict[str, str]:
        """Read the authorization URL as the IdP would; returns its query."""
        query = {k: v[0] for k, v in parse_qs(urlsplit(authorization_url).query).items()}
        self.nonce = query["nonce"]
        self.code_challenge = query["code_challenge"]
        return query

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)

        if url == JWKS_URI:
            self.jwks_requests += 1
            return httpx.Response(200, json=self.jwks)

        if url == TOKEN_ENDPOINT and request.method == "POST":
            form = parse_qs(request.content.decode())
            self.token_requests.append(form)

            if self.token_status != 200:
                return httpx.Response(
                    self.token_status,
                    json={"error": "invalid_grant", "error_description": "Authorization code expired"},
                )

            if self.token_body is not None:
                return httpx.Response(200, json=self.token_body)

            verifier = form.get("code_verifier", [""])[0]
            if self.code_challenge and challenge_for(verifier) != self.code_challenge:
                return httpx.Response(400, json={"error": "invalid_grant", "error_description": "PKCE failed"})

            return httpx.Response(
                200,
                json={
                    "access_token": "mock-access-token",
                    "id_token": create_mock_id_token(self.claims, nonce=self.nonce),
                    "token_type": "Bearer",
                    "expires_in": 3600,
                },
            )

        return httpx.Response(404)


def make_settings(**overrides) -> Settings:
    values = dict(
        APP_SESSION_SECRET=SESSION_SECRET,
        UCI_ISSUER=ISSUER,
        UCI_AUTHORIZATION_ENDPOINT=AUTHORIZATION_ENDPOINT,
        UCI_TOKEN_ENDPOINT=TOKEN_ENDPOINT,
        UCI_JWKS_URI=JWKS_URI,
        UCI_CLIENT_ID=CLIENT_ID,
        UCI_REDIRECT_URI=REDIRECT_URI,
        CALLBACK_SCHEME="healthu",
        REQUIRE_STUDENT_CLAIM=True,
        REQUIRE_MFA=True,
        LOG_LEVEL="INFO",
    )
    values.update(overrides)
    return Settings(**values)
