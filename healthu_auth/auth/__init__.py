"""
Authentication Package

Login flow components for the university IdP using OpenID Connect.

Modules:
- storage: Injectable key-value storage (in-memory by default)
- vault: Single-use pending flow store (state, nonce, PKCE verifier)
- exchange: Authorization code exchange with the IdP token endpoint
- verifier: JWKS caching and ID token verification
- claims: Canonical form of verified claims
- policy: Domain, verified-email, affiliation and MFA gates
- users: User directory keyed by IdP subject
- session: Session token issuance and verification
- service: The end-to-end login flow
- routes: /auth/{provider}/start and /auth/{provider}/callback

The authentication flow:
1. Client calls /auth/{provider}/start and opens the authorization URL
2. User authenticates with the IdP in a system browser session
3. Client posts code and state to /auth/{provider}/callback
4. Service verifies the ID token, applies policy, issues a session token
5. Client sends the session token as a Bearer token on later requests
"""
