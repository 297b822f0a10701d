"""
Authentication Package

This package implements the browser sign-in flow of the Backend-for-Frontend
against Microsoft Entra ID using the OpenID Connect authorization code flow
with PKCE. All tokens stay on the server.

Key responsibilities:
- Flow artifact generation (PKCE verifier/challenge, state, nonce, CSRF token)
- Provider discovery, authorization URLs, code exchange and ID token validation
- Server-side sessions with a signed, HttpOnly session-id cookie
- Silent SSO, interactive login, callback handling, status and logout

Modules:
- pkce: Flow artifact generation
- provider: OIDC discovery, token exchange and ID token verification
- session: Session phases, session handle, cookie signing
- flow: The authentication state machine
- exceptions: Error taxonomy mapped to HTTP responses
- routes: Public authentication endpoints (/auth/sso, /auth/login, ...)

The authentication flow:
1. SPA navigates to /auth/sso (silent) or /auth/login (interactive)
2. BFF stores verifier/state/nonce in the session and redirects to Entra ID
3. Entra ID redirects back to /auth/callback with code and state
4. BFF checks state, redeems the code with the verifier, validates the ID token
5. Session becomes authenticated; SPA calls /auth/me for profile and CSRF token
6. SPA posts the CSRF token to /auth/logout to end the session
"""

from .routes import auth_router

__all__ = [
    "auth_router",
]
