"""
Normalization of verified ID token claims.

IdPs disagree on claim shapes: affiliation may arrive as eduPersonAffiliation,
affiliation, roles or role, each either a string or a list, and amr may be a
string or a list. normalize_claims() turns all of that into canonical
lower-cased lists once, so policy gates never inspect raw claim types.
"""

from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field


AFFILIATION_CLAIMS = ("eduPersonAffiliation", "affiliation", "roles", "role")


class VerifiedClaims(BaseModel):
    """Claims from a verified ID token, in canonical form. Never persisted."""

    sub: str
    email: str = Field(..., description="Trimmed, lower-cased email ('' if absent)")
    email_verified: Optional[bool] = Field(
        None, description="None when the IdP omitted the claim"
    )
    affiliations: List[str] = Field(default_factory=list)
    amr: List[str] = Field(default_factory=list)
    nonce: Optional[str] = None


def normalize_email(email: Any) -> str:
    if email is None:
        return ""
    return str(email).strip().lower()


def as_string_list(*values: Any) -> List[str]:
    """
    Flatten claim values (scalars or lists) into lower-cased strings.

    Falsy entries are dropped.

    Example:
        >>> as_string_list("Student", ["member", None], "")
        ['student', 'member']
    """
    result: List[str] = []
    for value in values:
        items: Iterable[Any] = value if isinstance(value, (list, tuple)) else [value]
        for item in items:
            if item:
                result.append(str(item).lower())
    return result


def normalize_claims(claims: Dict[str, Any]) -> VerifiedClaims:
    """
    Build VerifiedClaims from a decoded ID token payload.

    email_verified is kept tri-state: only a literal boolean true counts as
    verified; any other present value (including the string "true") is
    unverified.
    """
    if "email_verified" in claims:
        email_verified: Optional[bool] = claims["email_verified"] is True
    else:
        email_verified = None

    return VerifiedClaims(
        sub=str(claims.get("sub", "")),
        email=normalize_email(claims.get("email")),
        email_verified=email_verified,
        affiliations=as_string_list(*(claims.get(name) for name in AFFILIATION_CLAIMS)),
        amr=as_string_list(claims.get("amr")),
        nonce=claims.get("nonce"),
    )
