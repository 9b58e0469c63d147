"""
Error taxonomy for the authentication backend.

Every failure the login flow can produce is an AuthError carrying:
- code: stable machine-readable identifier returned to clients
- public_message: text safe to show a user (no upstream bodies, no claims)
- status_code: HTTP status used when the error reaches the API boundary

Internal detail (IdP response bodies, key ids, claim values) goes into the
exception's str() and the server log only.
"""

from typing import Optional

from fastapi import status


class AuthError(Exception):
    """Base exception for authentication failures"""

    code = "authentication_failed"
    public_message = "Authentication failed"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.public_message
        super().__init__(self.detail)


class ConfigurationError(AuthError):
    """Required configuration missing or invalid. Fatal at startup."""

    code = "configuration_error"


# =============================================================================
# Login Flow State
# =============================================================================

class MissingCallbackParameters(AuthError):
    code = "missing_parameters"
    public_message = "Missing code/state"
    status_code = status.HTTP_400_BAD_REQUEST


class FlowNotFound(AuthError):
    """The state was never issued or has already been redeemed."""

    code = "invalid_state"
    public_message = "Invalid state"
    status_code = status.HTTP_400_BAD_REQUEST


class FlowExpired(AuthError):
    """The state existed but the login took longer than the flow TTL."""

    code = "flow_expired"
    public_message = "Authentication request expired"
    status_code = status.HTTP_400_BAD_REQUEST


# =============================================================================
# Upstream (IdP) Failures
# =============================================================================

class UpstreamExchangeFailed(AuthError):
    """The IdP was unreachable or refused to complete the flow."""

    code = "upstream_failure"


class TokenExchangeFailed(UpstreamExchangeFailed):
    """Non-2xx response from the token endpoint."""

    def __init__(self, status_code: int, body: str):
        self.upstream_status = status_code
        self.body = body
        super().__init__(f"Token exchange failed: {status_code} {body}")


class IdPUnavailable(UpstreamExchangeFailed):
    """Network error or timeout talking to the IdP."""


class KeySetUnavailable(UpstreamExchangeFailed):
    """The IdP signing key set could not be fetched or parsed."""


class MissingIdentityAssertion(UpstreamExchangeFailed):
    code = "missing_id_token"
    public_message = "Missing id_token from provider"
    status_code = status.HTTP_400_BAD_REQUEST


# =============================================================================
# Identity Assertion (ID Token) Failures
# =============================================================================

class AssertionInvalid(AuthError):
    """
    The ID token failed verification.

    Subclasses keep the reason distinct for logs; clients always see the
    generic 500 "Authentication failed".
    """


class SignatureInvalid(AssertionInvalid):
    pass


class AssertionExpired(AssertionInvalid):
    pass


class IssuerMismatch(AssertionInvalid):
    pass


class AudienceMismatch(AssertionInvalid):
    pass


class NonceMismatch(AssertionInvalid):
    pass


# =============================================================================
# Policy Rejections
# =============================================================================

class PolicyRejected(AuthError):
    """An institutional policy gate refused the login."""

    code = "policy_rejected"
    reason = "policy"
    public_message = "Access denied"
    status_code = status.HTTP_403_FORBIDDEN


class DomainRejected(PolicyRejected):
    reason = "domain"
    public_message = "Only institutional accounts are allowed"

    def __init__(self, allowed_domain: Optional[str] = None):
        if allowed_domain:
            self.public_message = f"Only @{allowed_domain} accounts are allowed"
        super().__init__()


class EmailUnverified(PolicyRejected):
    reason = "email_unverified"
    public_message = "Email must be verified"


class AffiliationRequired(PolicyRejected):
    reason = "affiliation"
    public_message = "Student affiliation required"


class MFARequired(PolicyRejected):
    reason = "mfa"
    public_message = "MFA/Duo confirmation missing in token claims"


# =============================================================================
# Session Failures
# =============================================================================

class SessionInvalid(AuthError):
    """Bearer session token missing, malformed, forged or expired."""

    code = "invalid_session"
    public_message = "Invalid session token"
    status_code = status.HTTP_401_UNAUTHORIZED
