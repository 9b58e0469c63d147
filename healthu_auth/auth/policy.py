"""
Institutional access policy applied to verified ID token claims.

Gates run in a fixed order and stop at the first failure so the client gets
one clear message:

1. Email domain       -> DomainRejected
2. Verified email     -> EmailUnverified
3. Student affiliation (toggle REQUIRE_STUDENT_CLAIM) -> AffiliationRequired
4. MFA indicator in amr (toggle REQUIRE_MFA)          -> MFARequired

A missing email_verified claim passes gate 2. Some IdPs omit the flag for
accounts they already trust; this is permissive and should be revisited per
deployment.
"""

import logging
from typing import Sequence

from pydantic import BaseModel, EmailStr, TypeAdapter, ValidationError

from healthu_auth.auth.claims import VerifiedClaims
from healthu_auth.exceptions import (
    AffiliationRequired,
    DomainRejected,
    EmailUnverified,
    MFARequired,
)

logger = logging.getLogger(__name__)


STUDENT_INDICATOR = "student"

MFA_INDICATORS = ("mfa", "duo", "otp", "pwd+otp", "sms", "authenticator")

_EMAIL_ADAPTER = TypeAdapter(EmailStr)


class PolicyDecision(BaseModel):
    """Outcome of a login that passed every enforced gate."""

    email: str
    is_student: bool
    has_mfa: bool


def is_valid_email(email: str) -> bool:
    try:
        _EMAIL_ADAPTER.validate_python(email)
    except ValidationError:
        return False
    return True


def has_student_affiliation(affiliations: Sequence[str]) -> bool:
    return any(STUDENT_INDICATOR in value for value in affiliations)


def has_mfa(amr: Sequence[str]) -> bool:
    return any(
        indicator in value
        for value in amr
        for indicator in MFA_INDICATORS
    )


class PolicyEngine:
    """
    Evaluates the institutional gates on verified claims.

    Args:
        allowed_domain: Domain every email must belong to (e.g. "uci.edu")
        require_student: Enforce student affiliation; advisory when False
        require_mfa: Enforce an MFA amr indicator; advisory when False
    """

    def __init__(self, allowed_domain: str, require_student: bool = True, require_mfa: bool = True):
        self.allowed_domain = allowed_domain.strip().lower().lstrip("@")
        self.require_student = require_student
        self.require_mfa = require_mfa

    def email_domain_allowed(self, email: str) -> bool:
        """
        True for a well-formed address whose domain is exactly the allowed one.

        "@uci.edu" and "jdoe smith@uci.edu" fail here rather than after the
        user has been stored.
        """
        local_part, _, domain = email.rpartition("@")
        if not local_part or domain != self.allowed_domain:
            return False
        return is_valid_email(email)

    def evaluate(self, claims: VerifiedClaims) -> PolicyDecision:
        """
        Run all gates in order.

        Args:
            claims: Normalized claims from a verified ID token

        Returns:
            PolicyDecision with the facts the session needs

        Raises:
            DomainRejected, EmailUnverified, AffiliationRequired, MFARequired
        """
        email = claims.email

        if not self.email_domain_allowed(email):
            raise DomainRejected(self.allowed_domain)

        if claims.email_verified is False:
            raise EmailUnverified(f"email_verified is false for subject {claims.sub}")

        is_student = has_student_affiliation(claims.affiliations)
        if not is_student:
            if self.require_student:
                raise AffiliationRequired(f"No student affiliation in {claims.affiliations}")
            logger.info("Login without student affiliation allowed (advisory mode)")

        mfa = has_mfa(claims.amr)
        if not mfa:
            if self.require_mfa:
                raise MFARequired(f"No MFA indicator in amr {claims.amr}")
            logger.info("Login without MFA indicator allowed (advisory mode)")

        return PolicyDecision(email=email, is_student=is_student, has_mfa=mfa)
