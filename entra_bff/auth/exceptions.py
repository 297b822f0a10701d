"""
Authentication error taxonomy.

Every failure the login state machine can produce is an AuthError subclass
carrying the HTTP status, a stable error code and a browser-safe message.
The application factory turns these into JSON responses; internal detail
(exception text, provider responses) is logged, never sent to the browser.
"""

from typing import Any, Dict, Optional


class AuthError(Exception):
    """Base exception for authentication flow errors"""

    status_code: int = 400
    error_code: str = "authentication_failed"
    message: str = "Authentication failed"

    def __init__(self, message: Optional[str] = None, *, error_code: Optional[str] = None):
        if message is not None:
            self.message = message
        if error_code is not None:
            self.error_code = error_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_code, "message": self.message}


class ProviderUnavailable(AuthError):
    """Discovery, JWKS or token endpoint could not be reached (retryable)."""

    status_code = 500
    error_code = "provider_unavailable"
    message = "The identity provider is currently unavailable"


class StateMismatch(AuthError):
    """Callback state does not match the in-flight flow (possible CSRF or lost session)."""

    status_code = 400
    error_code = "state_mismatch"
    message = "State mismatch - possible CSRF attack or expired session"


class NonceOrSignatureInvalid(AuthError):
    """The ID token failed signature, issuer, audience, expiry or nonce checks."""

    status_code = 400
    error_code = "invalid_id_token"
    message = "The identity token could not be validated"


class AuthenticationFailed(AuthError):
    """
    The provider reported a failure for an interactive login.

    Carries the provider's OAuth error code (e.g. access_denied,
    invalid_grant) and its description.
    """

    status_code = 400
    error_code = "authentication_failed"
    message = "Authentication failed"

    def __init__(self, error_code: str, description: Optional[str] = None):
        super().__init__(error_code=error_code)
        self.description = description

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.description:
            body["error_description"] = self.description
        return body


class SilentSsoDeclined(AuthError):
    """
    A prompt=none attempt did not produce a session.

    Expected whenever the user has no provider session; surfaced as a
    redirect flag, never as an error page.
    """

    status_code = 302
    error_code = "silent_sso_declined"
    message = "Silent sign-in was not possible"

    def __init__(self, reason: str):
        super().__init__()
        self.reason = reason


class CsrfTokenInvalid(AuthError):
    status_code = 403
    error_code = "csrf_token_invalid"
    message = "Invalid or missing CSRF token"


__all__ = [
    "AuthError",
    "ProviderUnavailable",
    "StateMismatch",
    "NonceOrSignatureInvalid",
    "AuthenticationFailed",
    "SilentSsoDeclined",
    "CsrfTokenInvalid",
]
