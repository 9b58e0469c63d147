"""
Authentication routes for the mobile OIDC login flow.

The mobile app calls /auth/{provider}/start, opens the returned
authorizationUrl in a system browser session, then posts the code and state
from the redirect to /auth/{provider}/callback to receive a session token.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from healthu_auth.auth.service import LoginService
from healthu_auth.models import AuthStartResponse, CallbackRequest, ErrorResponse, SessionResponse


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)


def get_login_service(request: Request, provider: str) -> LoginService:
    """Resolve the login service, rejecting providers this deployment does not serve."""
    if provider != request.app.state.settings.IDP_PROVIDER_NAME:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown identity provider: {provider}",
        )
    return request.app.state.login_service


# =============================================================================
# Login Start Endpoint
# =============================================================================

@auth_router.get("/{provider}/start", response_model=AuthStartResponse)
async def start(
    email_hint: Optional[str] = Query(None, description="Pre-fills the IdP login form"),
    service: LoginService = Depends(get_login_service),
):
    """
    Begin a login.

    Records a single-use flow (state, nonce, PKCE verifier) and returns the
    IdP authorization URL for the system browser.
    """
    return service.start(email_hint)


# =============================================================================
# Callback Endpoint
# =============================================================================

@auth_router.post(
    "/{provider}/callback",
    response_model=SessionResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing, unknown or expired state"},
        403: {"model": ErrorResponse, "description": "Rejected by institutional policy"},
        500: {"model": ErrorResponse, "description": "Identity provider or ID token failure"},
    },
)
async def callback(
    payload: Optional[CallbackRequest] = None,
    service: LoginService = Depends(get_login_service),
):
    """
    Complete a login with the code and state from the IdP redirect.

    Errors raised by the login service are AuthError subclasses and are
    mapped to status codes by the application error handler.
    """
    payload = payload or CallbackRequest()
    return await service.complete(
        code=payload.code,
        state=payload.state,
        redirect_uri=payload.redirect_uri,
    )
