"""
FastAPI Application Factory
===========================

Entry point for the HealthU authentication backend, which sits between the
mobile app and the university identity provider.

Architecture:
    Mobile App -> this service -> University IdP (OIDC, PKCE)

Routes:
    - /auth/{provider}/start     : Begin login, returns IdP authorization URL
    - /auth/{provider}/callback  : Finish login, returns session token
    - /me                        : Caller identity from the session token
    - /health                    : Health check endpoint

State:
    Pending logins and user records live in process memory (InMemoryStore).
    Restarting the process drops them, and multiple workers do not share
    them. Pass durable KeyValueStore implementations to create_app() to
    change that.

Running the Service:
    Development:
        uvicorn healthu_auth.main:create_app --factory --reload --port 4000

    Production (single worker, see State above):
        uvicorn healthu_auth.main:create_app --factory --host 0.0.0.0 --port 4000
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from healthu_auth.auth.exchange import TokenExchangeClient
from healthu_auth.auth.policy import PolicyEngine
from healthu_auth.auth.routes import auth_router
from healthu_auth.auth.service import LoginService
from healthu_auth.auth.session import SessionIdentity, SessionIssuer, get_current_identity
from healthu_auth.auth.storage import KeyValueStore
from healthu_auth.auth.users import UserDirectory
from healthu_auth.auth.vault import FlowVault
from healthu_auth.auth.verifier import IDTokenVerifier, JWKSCache
from healthu_auth.config import Settings, get_settings
from healthu_auth.exceptions import AuthError, MissingCallbackParameters, SessionInvalid
from healthu_auth.models import HealthResponse, MeResponse

logger = logging.getLogger("healthu_auth.main")


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)],
    )


# =============================================================================
# Background Tasks
# =============================================================================

async def reap_flows_periodically(vault: FlowVault, interval_seconds: float, max_age_seconds: float) -> None:
    """Drop abandoned login flows until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            vault.reap_expired(max_age_seconds)
        except Exception as e:
            logger.error(f"Flow reaper failed: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
        - Start the abandoned-flow reaper
    Shutdown:
        - Stop the reaper
        - Close the shared IdP HTTP client
        - Clear the signing key cache
    """
    settings: Settings = app.state.settings

    reaper = asyncio.create_task(
        reap_flows_periodically(
            app.state.vault,
            settings.FLOW_REAPER_INTERVAL_SECONDS,
            settings.AUTH_FLOW_RETENTION_SECONDS,
        )
    )

    logger.info(
        "Auth service started",
        extra={
            "issuer": settings.UCI_ISSUER,
            "allowed_domain": settings.ALLOWED_EMAIL_DOMAIN,
            "require_student": settings.REQUIRE_STUDENT_CLAIM,
            "require_mfa": settings.REQUIRE_MFA,
        },
    )

    yield

    logger.info("Shutting down auth service")

    reaper.cancel()
    try:
        await reaper
    except asyncio.CancelledError:
        pass

    await app.state.http_client.aclose()
    app.state.jwks_cache.clear()

    logger.info("Auth service shutdown complete")


# =============================================================================
# Application Factory
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    flow_store: Optional[KeyValueStore] = None,
    user_store: Optional[KeyValueStore] = None,
) -> FastAPI:
    """
    Application factory function.

    Settings are loaded here, so a missing required variable stops the
    process before it serves anything.

    Args:
        settings: Explicit settings (loaded from the environment when None)
        http_client: Client for IdP calls (tests pass one with a mock transport)
        flow_store: Storage for pending login flows (in-memory when None)
        user_store: Storage for user records (in-memory when None)

    Returns:
        FastAPI: Configured application instance

    Raises:
        ConfigurationError: If required configuration is missing or invalid
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    if http_client is None:
        http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.IDP_HTTP_TIMEOUT_SECONDS))

    vault = FlowVault(store=flow_store, ttl_seconds=settings.AUTH_FLOW_TTL_SECONDS)
    jwks_cache = JWKSCache(
        http_client,
        settings.UCI_JWKS_URI,
        cache_seconds=settings.JWKS_CACHE_SECONDS,
    )
    session_issuer = SessionIssuer(
        secret=settings.APP_SESSION_SECRET,
        issuer=settings.session_issuer,
        audience=settings.SESSION_AUDIENCE,
        ttl_seconds=settings.SESSION_TTL_SECONDS,
    )

    login_service = LoginService(
        vault=vault,
        exchange_client=TokenExchangeClient(
            http_client,
            settings.UCI_TOKEN_ENDPOINT,
            settings.UCI_CLIENT_ID,
            settings.UCI_CLIENT_SECRET,
        ),
        verifier=IDTokenVerifier(
            jwks_cache,
            issuer=settings.UCI_ISSUER,
            audience=settings.UCI_CLIENT_ID,
            algorithms=settings.id_token_algorithms_list,
        ),
        policy=PolicyEngine(
            settings.ALLOWED_EMAIL_DOMAIN,
            require_student=settings.REQUIRE_STUDENT_CLAIM,
            require_mfa=settings.REQUIRE_MFA,
        ),
        users=UserDirectory(store=user_store),
        sessions=session_issuer,
        authorization_endpoint=settings.UCI_AUTHORIZATION_ENDPOINT,
        client_id=settings.UCI_CLIENT_ID,
        redirect_uri=settings.UCI_REDIRECT_URI,
        scopes=settings.UCI_SCOPES,
        callback_scheme=settings.CALLBACK_SCHEME,
    )

    app = FastAPI(
        title="HealthU Auth Service",
        description="University SSO login and session issuance for the HealthU mobile app",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.http_client = http_client
    app.state.vault = vault
    app.state.jwks_cache = jwks_cache
    app.state.session_issuer = session_issuer
    app.state.login_service = login_service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(auth_router)

    # Health check endpoint
    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        return HealthResponse(ok=True)

    @app.get("/me", response_model=MeResponse, tags=["Session"])
    async def me(identity: SessionIdentity = Depends(get_current_identity)):
        """Return the caller identity carried by the bearer session token."""
        return MeResponse(
            user_id=identity.user_id,
            email=identity.email,
            is_student=identity.is_student,
        )

    # Mapped auth failures
    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                f"Authentication failed: {exc}",
                extra={"path": request.url.path, "exception_type": type(exc).__name__},
            )

        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, SessionInvalid) else None

        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "message": exc.public_message},
            headers=headers,
        )

    # Malformed callback bodies are a client error like missing code/state
    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        if not request.url.path.endswith("/callback"):
            return await request_validation_exception_handler(request, exc)

        logger.warning(
            "Malformed callback body",
            extra={"path": request.url.path, "errors": [error.get("type") for error in exc.errors()]},
        )

        return JSONResponse(
            status_code=MissingCallbackParameters.status_code,
            content={
                "error": MissingCallbackParameters.code,
                "message": MissingCallbackParameters.public_message,
            },
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Log unhandled errors with full detail and return a generic 500.
        """
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__,
            },
            exc_info=True,
        )

        return JSONResponse(
            status_code=500,
            content={"error": "internal_server_error", "message": "Authentication failed"},
        )

    return app


if __name__ == "__main__":
    """
    Direct execution entry point: python -m healthu_auth.main
    """
    settings = get_settings()

    uvicorn.run(
        "healthu_auth.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
