"""
Authorization code exchange against the IdP token endpoint.
"""

import logging
from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict

from healthu_auth.exceptions import (
    IdPUnavailable,
    MissingIdentityAssertion,
    TokenExchangeFailed,
)

logger = logging.getLogger(__name__)


class TokenResponse(BaseModel):
    """Token endpoint response. Unknown fields are kept but unused."""

    model_config = ConfigDict(extra="allow")

    id_token: Optional[str] = None
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None


class TokenExchangeClient:
    """
    Trades an authorization code (plus PKCE verifier) for tokens.

    Args:
        http_client: Shared httpx.AsyncClient; its timeout bounds every call
        token_endpoint: IdP token endpoint URL
        client_id: OAuth client id
        client_secret: Sent only when configured (confidential clients)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_endpoint: str,
        client_id: str,
        client_secret: Optional[str] = None,
    ):
        self._http = http_client
        self.token_endpoint = token_endpoint
        self.client_id = client_id
        self._client_secret = client_secret

    async def exchange(self, code: str, code_verifier: str, redirect_uri: str) -> TokenResponse:
        """
        Exchange authorization code for an ID token.

        Args:
            code: Authorization code from the callback
            code_verifier: PKCE verifier recorded when the flow began
            redirect_uri: Redirect URI used in the authorization request

        Returns:
            Parsed token response containing id_token

        Raises:
            TokenExchangeFailed: Non-2xx response (status and body kept for logs)
            IdPUnavailable: Network error or timeout
            MissingIdentityAssertion: Response has no id_token
        """
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.client_id,
            "code_verifier": code_verifier,
        }

        # Add client secret if available (confidential client)
        if self._client_secret:
            payload["client_secret"] = self._client_secret

        try:
            response = await self._http.post(
                self.token_endpoint,
                data=payload,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"Token endpoint unreachable: {type(e).__name__}: {e}")
            raise IdPUnavailable(f"Token endpoint unreachable: {e}") from e

        if not response.is_success:
            logger.warning(
                "Token exchange rejected by IdP",
                extra={"status": response.status_code, "body": response.text[:500]},
            )
            raise TokenExchangeFailed(response.status_code, response.text)

        try:
            token_response = TokenResponse.model_validate(response.json())
        except ValueError as e:
            raise IdPUnavailable(f"Token endpoint returned an unreadable body: {e}") from e

        if not token_response.id_token:
            raise MissingIdentityAssertion("Token response missing id_token")

        return token_response
