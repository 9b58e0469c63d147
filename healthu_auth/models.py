"""
Data Models Module

Pydantic models for the JSON request/response bodies of the HTTP API.

Fields are snake_case in Python and camelCase on the wire (authorizationUrl,
sessionToken, isStudent, ...), matching what the mobile app decodes.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Authentication Models
# ============================================================================

class AuthStartResponse(ApiModel):
    """Response of GET /auth/{provider}/start."""
    authorization_url: str = Field(..., description="IdP URL to open in the system browser")
    state: str = Field(..., description="Opaque identifier of this login attempt")
    callback_scheme: str = Field(..., description="URL scheme the browser session returns through")


class CallbackRequest(ApiModel):
    """Body of POST /auth/{provider}/callback."""
    code: Optional[str] = Field(None, description="Authorization code from the IdP redirect")
    state: Optional[str] = Field(None, description="State from the IdP redirect")
    redirect_uri: Optional[str] = Field(None, description="Redirect URI used, if not the configured one")


class SessionResponse(ApiModel):
    """Successful login: the session token and who it belongs to."""
    session_token: str = Field(..., description="Signed session token (Bearer)")
    expires_in: int = Field(..., description="Token lifetime in seconds")
    email: EmailStr = Field(..., description="Institutional email address")
    is_student: bool = Field(..., description="Student affiliation from the IdP")


class MeResponse(ApiModel):
    """Caller identity from GET /me."""
    user_id: str = Field(..., description="Local user identifier")
    email: EmailStr = Field(..., description="Institutional email address")
    is_student: bool = Field(..., description="Student affiliation")


# ============================================================================
# Health Check Models
# ============================================================================

class HealthResponse(BaseModel):
    ok: bool = True


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
