"""
HealthU authentication backend.

Bridges the university identity provider (OIDC authorization code flow with
PKCE) to the HealthU mobile app: verifies ID tokens, enforces institutional
policy and issues signed session tokens.

Modules:
- config: Environment configuration (pydantic-settings)
- exceptions: Error taxonomy mapped to HTTP statuses
- auth: Login flow components and routes
- client: Mobile-side login flow driver
- main: FastAPI application factory
"""

__version__ = "1.0.0"
