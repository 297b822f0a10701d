"""
Authentication state machine.

Each HTTP request is one transition of a login flow whose context lives in
the session store between browser round-trips:

    Anonymous --initiate--> FlowInProgress --callback--> Authenticated
        ^                         |                           |
        +------ callback failure -+                           |
        +-------------------------- logout -------------------+

A second initiation overwrites the in-flight attempt (last write wins). Every
callback, successful or not, removes the transient flow fields before
returning.
"""

import hmac
import logging
from enum import Enum
from typing import Optional
from urllib.parse import parse_qsl, urlsplit

from entra_bff.auth.exceptions import (
    AuthError,
    AuthenticationFailed,
    CsrfTokenInvalid,
    SilentSsoDeclined,
    StateMismatch,
)
from entra_bff.auth.pkce import generate_csrf_token, new_flow_artifacts
from entra_bff.auth.provider import OIDCProviderClient
from entra_bff.auth.session import (
    AnonymousSession,
    AuthenticatedSession,
    FlowInProgressSession,
    ServerSession,
    TokenBundle,
)
from entra_bff.config import Settings
from entra_bff.models import AuthStatus, UserProfile

logger = logging.getLogger(__name__)


class FlowMode(str, Enum):
    SILENT = "silent"
    INTERACTIVE = "interactive"


def secure_equals(presented: Optional[str], expected: Optional[str]) -> bool:
    """Exact, constant-time string equality; None on either side never matches."""
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


class AuthFlow:
    """
    Orchestrates silent SSO, interactive login, callback handling, status
    checks and logout on top of the provider client and the session store.
    """

    def __init__(self, settings: Settings, provider: OIDCProviderClient):
        self.settings = settings
        self.provider = provider

    # =========================================================================
    # Initiation
    # =========================================================================

    async def initiate(self, session: ServerSession, mode: FlowMode) -> str:
        """
        Start a login attempt and return the provider authorization URL.

        Fresh PKCE, state and nonce values are persisted before the URL is
        returned; a store failure propagates and fails the request.

        Args:
            session: The requesting browser's session
            mode: FlowMode.SILENT adds prompt=none

        Returns:
            Authorization URL to redirect the browser to

        Raises:
            ProviderUnavailable: If discovery fails
        """
        metadata = await self.provider.discover()

        artifacts = new_flow_artifacts()
        silent = mode is FlowMode.SILENT

        await session.replace(
            FlowInProgressSession(
                pkce_verifier=artifacts.code_verifier,
                state=artifacts.state,
                nonce=artifacts.nonce,
                silent=silent,
            )
        )

        params = {
            "redirect_uri": self.settings.redirect_uri,
            "scope": " ".join(self.settings.scopes_list),
            "code_challenge": artifacts.code_challenge,
            "code_challenge_method": "S256",
            "state": artifacts.state,
            "nonce": artifacts.nonce,
        }
        if silent:
            params["prompt"] = "none"

        logger.info("Redirecting to login", extra={"mode": mode.value})
        return self.provider.build_authorization_url(metadata, params)

    # =========================================================================
    # Callback
    # =========================================================================

    async def handle_callback(self, session: ServerSession, callback_url: str) -> None:
        """
        Complete the in-flight login attempt from the provider's redirect.

        On return the session is authenticated. Every failure path first
        replaces the flow record with an anonymous one, then raises.

        Args:
            session: The requesting browser's session
            callback_url: Full callback URL as seen by the browser

        Raises:
            SilentSsoDeclined: Any failure of a prompt=none attempt other than a state mismatch
            AuthenticationFailed: The provider reported an error for an interactive attempt
            StateMismatch: No in-flight flow, or the state differs from the stored one
            NonceOrSignatureInvalid: The ID token failed validation (interactive)
            ProviderUnavailable: The provider could not be reached (interactive)

        Any other exception raised while redeeming the code also clears the
        flow first; it is re-raised as is, or as SilentSsoDeclined when silent.
        """
        params = dict(parse_qsl(urlsplit(callback_url).query))
        flow = session.data if isinstance(session.data, FlowInProgressSession) else None
        silent = flow is not None and flow.silent

        error = params.get("error")
        if error:
            await self._abandon(session, flow)
            if silent:
                logger.info("Silent SSO declined by provider", extra={"error": error})
                raise SilentSsoDeclined(error)
            logger.warning("Provider returned an authentication error", extra={"error": error})
            raise AuthenticationFailed(error, params.get("error_description"))

        if flow is None or not secure_equals(params.get("state"), flow.state):
            await self._abandon(session, flow)
            logger.warning(
                "State mismatch on callback",
                extra={"flow_in_progress": flow is not None},
            )
            raise StateMismatch()

        try:
            metadata = await self.provider.discover()
            token_set = await self.provider.exchange_code(
                metadata,
                callback_url,
                verifier=flow.pkce_verifier,
                expected_nonce=flow.nonce,
                expected_state=flow.state,
            )
            user = UserProfile.from_claims(token_set.claims)
        except Exception as e:
            await self._abandon(session, flow)
            reason = e.error_code if isinstance(e, AuthError) else type(e).__name__
            if silent:
                logger.info("Silent SSO failed during code exchange", extra={"error": reason})
                raise SilentSsoDeclined(reason) from e
            raise

        # Sign-in always moves the record to a new session id.
        await session.regenerate(
            AuthenticatedSession(
                user=user,
                tokens=TokenBundle(
                    access_token=token_set.access_token,
                    refresh_token=token_set.refresh_token,
                    id_token=token_set.id_token,
                    expires_at=token_set.expires_at,
                ),
            )
        )
        logger.info("User authenticated", extra={"subject": user.sub, "silent": silent})

    async def _abandon(self, session: ServerSession, flow: Optional[FlowInProgressSession]) -> None:
        if flow is not None:
            await session.replace(AnonymousSession())

    # =========================================================================
    # Status
    # =========================================================================

    async def check_status(self, session: ServerSession) -> AuthStatus:
        """
        Report whether the session is signed in.

        Mints the session's CSRF token on the first authenticated check; the
        token then stays stable for the session's lifetime. Two first checks
        racing each other can still both mint, and the last write wins.
        """
        data = session.data
        if not isinstance(data, AuthenticatedSession):
            return AuthStatus(authenticated=False)

        if not data.csrf_token:
            # A concurrent request may have minted one since this session was loaded.
            data = await session.reload()
            if not isinstance(data, AuthenticatedSession):
                return AuthStatus(authenticated=False)
        if not data.csrf_token:
            data = data.with_csrf_token(generate_csrf_token())
            await session.replace(data)

        return AuthStatus(authenticated=True, user=data.user, csrf_token=data.csrf_token)

    # =========================================================================
    # Logout
    # =========================================================================

    async def logout(self, session: ServerSession, presented_csrf_token: Optional[str]) -> str:
        """
        Destroy the session and return the provider logout URL.

        Args:
            session: The requesting browser's session
            presented_csrf_token: Token sent by the UI in the body or header

        Returns:
            End-session URL with post_logout_redirect_uri and id_token_hint

        Raises:
            CsrfTokenInvalid: If the token is missing or does not match exactly
        """
        data = session.data
        stored = data.csrf_token if isinstance(data, AuthenticatedSession) else None
        if not secure_equals(presented_csrf_token, stored):
            logger.warning("Logout rejected: CSRF token mismatch")
            raise CsrfTokenInvalid()

        id_token = data.tokens.id_token
        await session.destroy()

        logger.info("User logged out", extra={"subject": data.user.sub})
        return self.provider.build_logout_url(
            post_logout_redirect_uri=self.settings.BASE_URL,
            id_token_hint=id_token,
        )


__all__ = ["AuthFlow", "FlowMode", "secure_equals"]
