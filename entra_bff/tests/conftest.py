"""
Shared fixtures: settings, a stub Entra ID tenant served through
httpx.MockTransport, and an application wired to both.
"""

import base64
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlsplit

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm

from entra_bff.auth.provider import OIDCProviderClient
from entra_bff.config import Settings
from entra_bff.main import create_app
from entra_bff.store import MemorySessionStore


TEST_TENANT_ID = "test-tenant"
TEST_CLIENT_ID = "test-client-id"
TEST_CLIENT_SECRET = "test-client-secret"
TEST_BASE_URL = "http://testserver"
TEST_SESSION_SECRET = "test-session-secret-that-is-long-enough-0123456789"

AUTHORITY = f"https://login.microsoftonline.com/{TEST_TENANT_ID}"
ISSUER = f"{AUTHORITY}/v2.0"
DISCOVERY_URL = f"{ISSUER}/.well-known/openid-configuration"
AUTHORIZATION_ENDPOINT = f"{AUTHORITY}/oauth2/v2.0/authorize"
TOKEN_ENDPOINT = f"{AUTHORITY}/oauth2/v2.0/token"
JWKS_URI = f"{AUTHORITY}/discovery/v2.0/keys"
END_SESSION_ENDPOINT = f"{AUTHORITY}/oauth2/v2.0/logout"


def generate_signing_key(kid: str) -> Dict[str, Any]:
    """Generate an RSA key pair and its public JWK."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode()

    public_jwk = RSAAlgorithm.to_jwk(private_key.public_key(), as_dict=True)
    public_jwk["kid"] = kid
    public_jwk["use"] = "sig"
    public_jwk["alg"] = "RS256"

    return {"kid": kid, "private_pem": private_pem, "jwk": public_jwk}


# Generating RSA keys is slow; share them across the session
SIGNING_KEY = generate_signing_key("test-key-id-2024")
ROTATED_SIGNING_KEY = generate_signing_key("test-key-id-2025")


def pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def query_params(url: str) -> Dict[str, str]:
    return dict(parse_qsl(urlsplit(url).query))


class StubIdentityProvider:
    """
    Minimal Entra ID tenant.

    Serves discovery and JWKS, and redeems authorization codes issued by
    issue_code() only when the presented code_verifier hashes to the
    challenge carried by the authorization URL that requested it.
    """

    def __init__(self):
        self.published_keys = [SIGNING_KEY]
        self.signing_key = SIGNING_KEY
        self.discovery_available = True
        self.token_endpoint_down = False
        self.token_response_overrides: Dict[str, Any] = {}
        self.discovery_calls = 0
        self.jwks_calls = 0
        self.token_requests = []
        self._codes: Dict[str, Dict[str, Any]] = {}

    def mint_id_token(
        self,
        nonce: Optional[str],
        claims: Optional[Dict[str, Any]] = None,
        key: Optional[Dict[str, Any]] = None,
        exp_delta_minutes: int = 60,
    ) -> str:
        key = key or self.signing_key
        now = datetime.now(timezone.utc)
        payload = {
            "iss": ISSUER,
            "aud": TEST_CLIENT_ID,
            "sub": "test-user-sub-123",
            "oid": "00000000-0000-0000-0000-000000000123",
            "name": "Test User",
            "preferred_username": "test.user@example.com",
            "iat": now,
            "nbf": now,
            "exp": now + timedelta(minutes=exp_delta_minutes),
        }
        if nonce is not None:
            payload["nonce"] = nonce
        payload.update(claims or {})

        return jwt.encode(
            payload,
            key["private_pem"],
            algorithm="RS256",
            headers={"kid": key["kid"]},
        )

    def issue_code(
        self,
        authorization_url: str,
        claims: Optional[Dict[str, Any]] = None,
        nonce: Optional[str] = None,
        exp_delta_minutes: int = 60,
    ) -> str:
        """
        Simulate the user signing in for the given authorization request.

        Args:
            authorization_url: URL the BFF redirected the browser to
            claims: Extra or overriding ID token claims
            nonce: Nonce to embed instead of the one from the request

        Returns:
            Authorization code to present on the callback
        """
        params = query_params(authorization_url)
        code = f"code-{secrets.token_hex(8)}"
        self._codes[code] = {
            "code_challenge": params["code_challenge"],
            "redirect_uri": params["redirect_uri"],
            "nonce": nonce if nonce is not None else params["nonce"],
            "claims": claims or {},
            "exp_delta_minutes": exp_delta_minutes,
        }
        return code

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)

        if request.method == "GET" and url == DISCOVERY_URL:
            self.discovery_calls += 1
            if not self.discovery_available:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={
                "issuer": ISSUER,
                "authorization_endpoint": AUTHORIZATION_ENDPOINT,
                "token_endpoint": TOKEN_ENDPOINT,
                "jwks_uri": JWKS_URI,
                "end_session_endpoint": END_SESSION_ENDPOINT,
            })

        if request.method == "GET" and url == JWKS_URI:
            self.jwks_calls += 1
            return httpx.Response(200, json={"keys": [key["jwk"] for key in self.published_keys]})

        if request.method == "POST" and url == TOKEN_ENDPOINT:
            return self._token(request)

        return httpx.Response(404, json={"error": "not_found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.token_endpoint_down:
            return httpx.Response(503, text="Service Unavailable")

        form = dict(parse_qsl(request.content.decode()))
        self.token_requests.append(form)

        grant = self._codes.pop(form.get("code"), None)
        if (
            grant is None
            or form.get("grant_type") != "authorization_code"
            or form.get("client_id") != TEST_CLIENT_ID
            or form.get("redirect_uri") != grant["redirect_uri"]
        ):
            return httpx.Response(400, json={
                "error": "invalid_grant",
                "error_description": "AADSTS70008: The provided authorization code is invalid or has expired.",
            })

        if pkce_challenge(form.get("code_verifier", "")) != grant["code_challenge"]:
            return httpx.Response(400, json={
                "error": "invalid_grant",
                "error_description": "AADSTS501481: The Code_Verifier does not match the code_challenge.",
            })

        body = {
            "token_type": "Bearer",
            "scope": form.get("scope", ""),
            "expires_in": 3600,
            "access_token": f"access-{secrets.token_hex(8)}",
            "refresh_token": f"refresh-{secrets.token_hex(8)}",
            "id_token": self.mint_id_token(
                grant["nonce"],
                grant["claims"],
                exp_delta_minutes=grant["exp_delta_minutes"],
            ),
        }
        body.update(self.token_response_overrides)
        return httpx.Response(200, json=body)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings():
    """Settings for a confidential client served at http://testserver"""
    return Settings(
        _env_file=None,
        TENANT_ID=TEST_TENANT_ID,
        CLIENT_ID=TEST_CLIENT_ID,
        CLIENT_SECRET=TEST_CLIENT_SECRET,
        BASE_URL=TEST_BASE_URL,
        SESSION_SECRET=TEST_SESSION_SECRET,
        REDIS_URL=None,
        ALLOWED_ORIGINS=None,
    )


@pytest.fixture
def identity_provider():
    return StubIdentityProvider()


@pytest.fixture
def provider_client(settings, identity_provider):
    return OIDCProviderClient(settings, transport=httpx.MockTransport(identity_provider.handler))


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def app(settings, session_store, provider_client):
    return create_app(settings=settings, session_store=session_store, provider=provider_client)


@pytest.fixture
def client(app):
    return TestClient(app)
