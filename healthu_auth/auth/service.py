"""
Login service: the OIDC authorization code + PKCE flow end to end.

start():    vault.begin -> authorization URL
complete(): vault.consume -> token exchange -> ID token verification
            -> policy -> user upsert -> session token
"""

import logging
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from healthu_auth.auth.exchange import TokenExchangeClient
from healthu_auth.auth.policy import PolicyEngine
from healthu_auth.auth.session import SessionIssuer
from healthu_auth.auth.users import UserDirectory
from healthu_auth.auth.vault import FlowVault
from healthu_auth.auth.verifier import IDTokenVerifier
from healthu_auth.exceptions import (
    AssertionInvalid,
    FlowExpired,
    FlowNotFound,
    MissingCallbackParameters,
    PolicyRejected,
)
from healthu_auth.models import AuthStartResponse, SessionResponse

logger = logging.getLogger(__name__)


def build_authorization_url(endpoint: str, params: dict) -> str:
    """
    Append query parameters to the authorization endpoint.

    Query parameters already present on the endpoint are preserved.
    """
    parts = urlsplit(endpoint)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


class LoginService:
    """
    Orchestrates one login from start to session issuance.

    Args:
        vault: Pending flow store
        exchange_client: Token endpoint client
        verifier: ID token verifier
        policy: Institutional policy gates
        users: User directory
        sessions: Session token issuer
        authorization_endpoint: IdP authorization endpoint
        client_id: OAuth client id
        redirect_uri: Registered redirect URI
        scopes: Requested scopes
        callback_scheme: Scheme the mobile browser session returns through
    """

    def __init__(
        self,
        vault: FlowVault,
        exchange_client: TokenExchangeClient,
        verifier: IDTokenVerifier,
        policy: PolicyEngine,
        users: UserDirectory,
        sessions: SessionIssuer,
        authorization_endpoint: str,
        client_id: str,
        redirect_uri: str,
        scopes: str,
        callback_scheme: str,
    ):
        self.vault = vault
        self.exchange_client = exchange_client
        self.verifier = verifier
        self.policy = policy
        self.users = users
        self.sessions = sessions
        self.authorization_endpoint = authorization_endpoint
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.callback_scheme = callback_scheme

    def start(self, email_hint: Optional[str] = None) -> AuthStartResponse:
        """
        Begin a login and build the IdP authorization URL.

        Args:
            email_hint: Optional address passed to the IdP as login_hint

        Returns:
            Authorization URL, state and the mobile callback scheme
        """
        flow = self.vault.begin()

        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": self.scopes,
            "state": flow.state,
            "nonce": flow.nonce,
            "code_challenge": flow.code_challenge,
            "code_challenge_method": "S256",
        }

        hint = (email_hint or "").strip()
        if hint:
            params["login_hint"] = hint

        logger.info("Login flow started", extra={"login_hint": bool(hint)})

        return AuthStartResponse(
            authorization_url=build_authorization_url(self.authorization_endpoint, params),
            state=flow.state,
            callback_scheme=self.callback_scheme,
        )

    async def complete(
        self,
        code: Optional[str],
        state: Optional[str],
        redirect_uri: Optional[str] = None,
    ) -> SessionResponse:
        """
        Finish a login from the IdP callback parameters.

        The flow is consumed before any network call, so the state cannot be
        reused even if a later step fails.

        Args:
            code: Authorization code
            state: State issued by start()
            redirect_uri: Redirect URI used by the client, if different

        Returns:
            Session token and identity summary

        Raises:
            MissingCallbackParameters, FlowNotFound, FlowExpired,
            UpstreamExchangeFailed, AssertionInvalid, PolicyRejected
        """
        if not code or not state:
            raise MissingCallbackParameters()

        try:
            flow = self.vault.consume(state)
        except (FlowNotFound, FlowExpired) as e:
            logger.warning(f"Callback rejected: {e}")
            raise

        token_response = await self.exchange_client.exchange(
            code=code,
            code_verifier=flow.code_verifier,
            redirect_uri=redirect_uri or self.redirect_uri,
        )

        try:
            claims = await self.verifier.verify(token_response.id_token, flow.nonce)
        except AssertionInvalid as e:
            logger.warning(
                f"ID token rejected: {e}",
                extra={"reason": type(e).__name__},
            )
            raise

        try:
            decision = self.policy.evaluate(claims)
        except PolicyRejected as e:
            logger.warning(
                "Login rejected by policy",
                extra={"reason": e.reason, "detail": e.detail},
            )
            raise

        user = self.users.upsert(claims.sub, decision.email, decision.is_student)
        session = self.sessions.issue(user)

        logger.info(
            "Login completed",
            extra={"user_id": user.id, "is_student": user.is_student, "has_mfa": decision.has_mfa},
        )

        return SessionResponse(
            session_token=session.token,
            expires_in=session.expires_in,
            email=user.email,
            is_student=user.is_student,
        )
