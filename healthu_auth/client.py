"""
Mobile-side driver of the login flow.

LoginClient performs what the HealthU app does around the browser step:

1. GET /auth/{provider}/start (with an optional email hint)
2. Hand authorizationUrl and callbackScheme to a browser authorizer, which
   runs the interactive IdP login once and reports how it ended
3. Pull code and state out of the callback URL
4. POST them to /auth/{provider}/callback and return the session

The browser step is a single awaited call returning one of BrowserCompleted,
BrowserCancelled or BrowserFailed. A user closing the login sheet is an
expected outcome: sign_in() returns SignInCancelled instead of raising.
"""

import logging
from typing import Awaitable, Callable, Optional, Tuple, Union
from urllib.parse import parse_qs, urlsplit

import httpx
from pydantic import BaseModel, ConfigDict

from healthu_auth.models import AuthStartResponse, MeResponse, SessionResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Browser Step Outcomes
# =============================================================================

class BrowserCompleted(BaseModel):
    """The browser session returned through the callback scheme."""
    callback_url: str


class BrowserCancelled(BaseModel):
    """The user dismissed the login screen."""


class BrowserFailed(BaseModel):
    """The browser session could not be run or ended with an error."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    error: Exception


BrowserOutcome = Union[BrowserCompleted, BrowserCancelled, BrowserFailed]

# (authorization_url, callback_scheme) -> outcome
BrowserAuthorizer = Callable[[str, str], Awaitable[BrowserOutcome]]


class SignInCancelled(BaseModel):
    """sign_in() result when the user canceled; show a neutral state, not an error."""


# =============================================================================
# Errors
# =============================================================================

class SignInError(Exception):
    """Base exception for sign-in failures on the client side"""


class MalformedCallback(SignInError):
    def __init__(self, message: str = "Login callback was malformed."):
        super().__init__(message)


class SignInFailed(SignInError):
    """The backend answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"{status_code}: {message}")


class BrowserSessionError(SignInError):
    pass


# =============================================================================
# Client
# =============================================================================

def parse_callback_url(callback_url: str) -> Tuple[str, str]:
    """
    Extract (code, state) from the URL the browser returned through.

    Raises:
        MalformedCallback: If either parameter is missing
    """
    query = parse_qs(urlsplit(callback_url).query)
    code = (query.get("code") or [None])[0]
    state = (query.get("state") or [None])[0]

    if not code or not state:
        raise MalformedCallback()

    return code, state


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or fallback
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return fallback


class LoginClient:
    """
    Args:
        http_client: httpx.AsyncClient whose base_url points at the auth backend
        provider: Provider segment of the auth routes
    """

    def __init__(self, http_client: httpx.AsyncClient, provider: str = "uci"):
        self._http = http_client
        self.provider = provider

    async def start(self, email_hint: Optional[str] = None) -> AuthStartResponse:
        params = {}
        hint = (email_hint or "").strip()
        if hint:
            params["email_hint"] = hint

        response = await self._http.get(f"/auth/{self.provider}/start", params=params)
        if not response.is_success:
            raise SignInFailed(response.status_code, _error_message(response, "Unable to start sign in."))

        return AuthStartResponse.model_validate(response.json())

    async def complete(self, code: str, state: str) -> SessionResponse:
        response = await self._http.post(
            f"/auth/{self.provider}/callback",
            json={"code": code, "state": state},
        )
        if not response.is_success:
            raise SignInFailed(response.status_code, _error_message(response, "Unable to complete sign in."))

        return SessionResponse.model_validate(response.json())

    async def sign_in(
        self,
        authorize: BrowserAuthorizer,
        email_hint: Optional[str] = None,
    ) -> Union[SessionResponse, SignInCancelled]:
        """
        Run the whole login.

        Args:
            authorize: Opens the authorization URL in a browser session
                restricted to the callback scheme and reports the outcome
            email_hint: Optional address to pre-fill at the IdP

        Returns:
            SessionResponse on success, SignInCancelled if the user canceled

        Raises:
            SignInFailed: Backend rejected start or callback
            MalformedCallback: Callback URL lacks code or state
            BrowserSessionError: The browser step failed
        """
        started = await self.start(email_hint)

        outcome = await authorize(started.authorization_url, started.callback_scheme)

        if isinstance(outcome, BrowserCancelled):
            logger.info("Sign in canceled by user")
            return SignInCancelled()

        if isinstance(outcome, BrowserFailed):
            raise BrowserSessionError(str(outcome.error)) from outcome.error

        code, state = parse_callback_url(outcome.callback_url)
        return await self.complete(code, state)

    async def fetch_profile(self, session_token: str) -> MeResponse:
        response = await self._http.get(
            "/me",
            headers={"Authorization": f"Bearer {session_token}"},
        )
        if not response.is_success:
            raise SignInFailed(response.status_code, _error_message(response, "Invalid session token"))

        return MeResponse.model_validate(response.json())
