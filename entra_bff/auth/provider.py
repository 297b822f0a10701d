"""
OpenID Connect client for Microsoft Entra ID.

This module handles:
- Discovery of provider metadata and signing keys (cached process-wide)
- Building authorization request URLs (PKCE S256, state, nonce, prompt)
- Exchanging authorization codes for tokens at the token endpoint
- Verifying the returned ID token (signature, issuer, audience, expiry, nonce)
- Building the provider logout URL

Network failures and timeouts are reported as ProviderUnavailable; anything
wrong with the provider's answer is a validation failure.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit

import httpx
from jose import JWTError, jwk, jwt
from jose.exceptions import JOSEError
from pydantic import BaseModel, ConfigDict, Field

from entra_bff.auth.exceptions import (
    AuthenticationFailed,
    NonceOrSignatureInvalid,
    ProviderUnavailable,
    StateMismatch,
)
from entra_bff.config import Settings

logger = logging.getLogger(__name__)


# =============================================================================
# Models
# =============================================================================

class ProviderMetadata(BaseModel):
    """Immutable snapshot of the discovered provider configuration."""

    model_config = ConfigDict(frozen=True)

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    end_session_endpoint: Optional[str] = None
    jwks: Dict[str, Any] = Field(default_factory=dict)

    def with_jwks(self, jwks: Dict[str, Any]) -> "ProviderMetadata":
        return self.model_copy(update={"jwks": jwks})

    def key_for(self, kid: str) -> Optional[Dict[str, Any]]:
        """Return the published JWK with this key id, if any."""
        keys: List[Dict[str, Any]] = self.jwks.get("keys", [])
        return next((key for key in keys if key.get("kid") == kid), None)


class TokenSet(BaseModel):
    """Tokens returned by the token endpoint plus the validated ID token claims."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: str
    expires_at: Optional[int] = None
    claims: Dict[str, Any]


# =============================================================================
# Client
# =============================================================================

class OIDCProviderClient:
    """
    Capability wrapper around one OIDC issuer.

    Provider metadata lives in a single-slot cache guarded by an asyncio
    lock. It is populated by the first successful discovery and replaced
    only by a key-rotation refresh; a failed discovery leaves the slot empty
    so the next call retries.

    Args:
        settings: Application settings (issuer, client credentials, timeouts)
        transport: Optional httpx transport, used to stub the provider in tests
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport
        self._metadata: Optional[ProviderMetadata] = None
        self._lock = asyncio.Lock()

    @property
    def cached_metadata(self) -> Optional[ProviderMetadata]:
        return self._metadata

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self.transport,
            timeout=self.settings.PROVIDER_TIMEOUT_SECONDS,
        )

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    async def discover(self) -> ProviderMetadata:
        """
        Return provider metadata, fetching it on first use.

        Returns:
            Cached or freshly discovered ProviderMetadata

        Raises:
            ProviderUnavailable: If the discovery document or JWKS cannot be fetched
        """
        metadata = self._metadata
        if metadata is not None:
            return metadata

        async with self._lock:
            if self._metadata is not None:
                return self._metadata
            metadata = await self._fetch_metadata()
            self._metadata = metadata
            logger.info(
                "OIDC configuration initialized successfully",
                extra={"issuer": metadata.issuer},
            )
            return metadata

    async def _fetch_metadata(self) -> ProviderMetadata:
        discovery_url = self.settings.discovery_url
        try:
            async with self._http_client() as client:
                response = await client.get(discovery_url)
                response.raise_for_status()
                document = response.json()

                jwks_uri = document["jwks_uri"]
                jwks = await self._get_jwks(client, jwks_uri)

            return ProviderMetadata(
                issuer=document["issuer"],
                authorization_endpoint=document["authorization_endpoint"],
                token_endpoint=document["token_endpoint"],
                jwks_uri=jwks_uri,
                end_session_endpoint=document.get("end_session_endpoint"),
                jwks=jwks,
            )
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.error(
                f"Failed to initialize OIDC configuration: {e}",
                extra={"discovery_url": discovery_url, "exception_type": type(e).__name__},
            )
            raise ProviderUnavailable() from e

    async def _get_jwks(self, client: httpx.AsyncClient, jwks_uri: str) -> Dict[str, Any]:
        response = await client.get(jwks_uri)
        response.raise_for_status()
        jwks_data = response.json()
        if "keys" not in jwks_data:
            raise ValueError("Invalid JWKS response: missing 'keys' field")
        return jwks_data

    async def refresh_signing_keys(self, metadata: ProviderMetadata) -> ProviderMetadata:
        """
        Re-fetch the JWKS and swap in a new metadata snapshot.

        Used when an ID token names a key id the cached set does not know,
        which happens after provider key rotation.
        """
        try:
            async with self._http_client() as client:
                jwks = await self._get_jwks(client, metadata.jwks_uri)
        except (httpx.HTTPError, TypeError, ValueError) as e:
            logger.error(f"Failed to refresh provider signing keys: {e}")
            raise ProviderUnavailable() from e

        refreshed = metadata.with_jwks(jwks)
        async with self._lock:
            self._metadata = refreshed
        return refreshed

    # -------------------------------------------------------------------------
    # Authorization request
    # -------------------------------------------------------------------------

    def build_authorization_url(self, metadata: ProviderMetadata, params: Mapping[str, str]) -> str:
        """
        Build the authorization endpoint URL for a login attempt.

        client_id and response_type are always set from configuration; the
        caller supplies redirect_uri, scope, state, nonce, the PKCE challenge
        and optionally prompt.

        Args:
            metadata: Discovered provider metadata
            params: Authorization request parameters

        Returns:
            Fully encoded authorization URL
        """
        query = {
            "client_id": self.settings.CLIENT_ID,
            "response_type": "code",
            "response_mode": "query",
        }
        query.update(params)
        separator = "&" if "?" in metadata.authorization_endpoint else "?"
        return f"{metadata.authorization_endpoint}{separator}{urlencode(query)}"

    # -------------------------------------------------------------------------
    # Code exchange
    # -------------------------------------------------------------------------

    async def exchange_code(
        self,
        metadata: ProviderMetadata,
        callback_url: str,
        verifier: str,
        expected_nonce: str,
        expected_state: str,
    ) -> TokenSet:
        """
        Redeem the authorization code carried by the callback URL.

        Args:
            metadata: Discovered provider metadata
            callback_url: Full callback URL including the query string
            verifier: PKCE code verifier stored when the flow started
            expected_nonce: Nonce stored when the flow started
            expected_state: State stored when the flow started

        Returns:
            TokenSet with validated ID token claims

        Raises:
            StateMismatch: If the callback state differs from expected_state
            AuthenticationFailed: If the callback has no code or the token endpoint rejects it
            NonceOrSignatureInvalid: If the ID token fails validation
            ProviderUnavailable: If the token endpoint cannot be reached
        """
        params = dict(parse_qsl(urlsplit(callback_url).query))
        if params.get("state") != expected_state:
            raise StateMismatch()

        code = params.get("code")
        if not code:
            raise AuthenticationFailed("invalid_request", "Callback is missing the authorization code")

        token_data = await self._redeem_code(metadata, code, verifier)

        id_token = token_data.get("id_token")
        if not id_token or not isinstance(id_token, str):
            raise NonceOrSignatureInvalid("Token response missing id_token")

        claims = await self.verify_id_token(metadata, id_token, expected_nonce)

        try:
            expires_in = token_data.get("expires_in")
            return TokenSet(
                access_token=token_data.get("access_token"),
                refresh_token=token_data.get("refresh_token"),
                id_token=id_token,
                expires_at=int(time.time()) + int(expires_in) if expires_in is not None else None,
                claims=claims,
            )
        except (TypeError, ValueError) as e:
            logger.warning("Token response has malformed fields", extra={"exception_type": type(e).__name__})
            raise AuthenticationFailed(
                "invalid_token_response", "Token endpoint returned malformed token fields"
            ) from e

    async def _redeem_code(self, metadata: ProviderMetadata, code: str, verifier: str) -> Dict[str, Any]:
        payload = {
            "client_id": self.settings.CLIENT_ID,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.redirect_uri,
            "code_verifier": verifier,
            "scope": " ".join(self.settings.scopes_list),
        }
        if self.settings.CLIENT_SECRET:
            payload["client_secret"] = self.settings.CLIENT_SECRET

        try:
            async with self._http_client() as client:
                response = await client.post(
                    metadata.token_endpoint,
                    data=payload,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Token endpoint request failed: {e}", extra={"exception_type": type(e).__name__})
            raise ProviderUnavailable() from e

        if response.status_code >= 500:
            logger.error("Token endpoint returned a server error", extra={"status_code": response.status_code})
            raise ProviderUnavailable()

        try:
            token_data = response.json()
        except ValueError:
            token_data = {}
        if not isinstance(token_data, dict):
            token_data = {}

        if not response.is_success:
            error = token_data.get("error") or "token_exchange_failed"
            logger.warning(
                "Token exchange rejected by provider",
                extra={"status_code": response.status_code, "error": error},
            )
            raise AuthenticationFailed(error, token_data.get("error_description"))

        if not token_data:
            raise AuthenticationFailed("invalid_token_response", "Token endpoint returned an unreadable response")

        return token_data

    # -------------------------------------------------------------------------
    # ID token validation
    # -------------------------------------------------------------------------

    async def verify_id_token(
        self,
        metadata: ProviderMetadata,
        id_token: str,
        expected_nonce: str,
    ) -> Dict[str, Any]:
        """
        Verify and decode an ID token.

        Checks, in order: signing key lookup (with one JWKS refresh on an
        unknown kid), RS256 signature, audience, issuer, exp/nbf/iat with a
        small clock-skew leeway, and finally exact nonce equality.

        Args:
            metadata: Provider metadata holding the issuer and JWKS
            id_token: Compact-serialized JWT
            expected_nonce: Nonce stored in the session for this flow

        Returns:
            Dictionary of verified token claims

        Raises:
            NonceOrSignatureInvalid: If any check fails
        """
        try:
            kid = token_key_id(id_token)
        except JWTError as e:
            logger.warning(f"ID token header rejected: {e}")
            raise NonceOrSignatureInvalid() from e

        signing_key = metadata.key_for(kid)
        if signing_key is None:
            metadata = await self.refresh_signing_keys(metadata)
            signing_key = metadata.key_for(kid)
            if signing_key is None:
                logger.warning("Unable to find matching signing key in JWKS")
                raise NonceOrSignatureInvalid()

        try:
            public_key = jwk.construct(signing_key, algorithm=signing_key.get("alg", "RS256"))
            claims = jwt.decode(
                id_token,
                public_key.to_pem().decode('utf-8'),
                algorithms=["RS256"],
                audience=self.settings.CLIENT_ID,
                issuer=metadata.issuer,
                options={
                    "verify_signature": True,
                    "verify_aud": True,
                    "verify_iat": True,
                    "verify_exp": True,
                    "verify_nbf": True,
                    "verify_iss": True,
                    "verify_sub": True,
                    "verify_jti": False,
                    "verify_at_hash": False,
                    "require_sub": True,
                    "require_exp": True,
                    "leeway": 10,
                },
            )
        except JOSEError as e:
            logger.warning(f"ID token verification failed: {e}")
            raise NonceOrSignatureInvalid() from e

        token_nonce = claims.get("nonce")
        if not isinstance(token_nonce, str) or token_nonce != expected_nonce:
            logger.warning("ID token nonce mismatch")
            raise NonceOrSignatureInvalid()

        return claims

    # -------------------------------------------------------------------------
    # Logout
    # -------------------------------------------------------------------------

    def build_logout_url(self, post_logout_redirect_uri: str, id_token_hint: Optional[str] = None) -> str:
        """
        Build the provider's end-session URL.

        Uses the discovered end_session_endpoint when metadata is cached and
        the tenant's Entra logout endpoint otherwise, so logout never waits
        on the network.
        """
        endpoint = self.settings.logout_endpoint
        if self._metadata is not None and self._metadata.end_session_endpoint:
            endpoint = self._metadata.end_session_endpoint

        params = {"post_logout_redirect_uri": post_logout_redirect_uri}
        if id_token_hint:
            params["id_token_hint"] = id_token_hint
        return f"{endpoint}?{urlencode(params)}"


# =============================================================================
# Helpers
# =============================================================================

def token_key_id(token: str) -> str:
    """
    Read the key id from a JWT header without verifying anything.

    Raises:
        JWTError: If the header cannot be decoded or names no key id
    """
    kid = jwt.get_unverified_header(token).get("kid")
    if not kid or not isinstance(kid, str):
        raise JWTError("ID token header has no key id")
    return kid


__all__ = [
    "OIDCProviderClient",
    "ProviderMetadata",
    "TokenSet",
    "token_key_id",
]
