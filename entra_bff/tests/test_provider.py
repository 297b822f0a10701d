"""
Identity Provider Client Tests

Tests discovery caching, authorization URL construction, code exchange
and ID token validation against a stub Entra ID tenant.
"""

import asyncio
from urllib.parse import urlencode

import httpx
import pytest
from jose import JWTError

from conftest import (
    AUTHORIZATION_ENDPOINT,
    END_SESSION_ENDPOINT,
    ISSUER,
    ROTATED_SIGNING_KEY,
    SIGNING_KEY,
    TEST_CLIENT_SECRET,
    pkce_challenge,
    query_params,
)
from entra_bff.auth.exceptions import (
    AuthenticationFailed,
    NonceOrSignatureInvalid,
    ProviderUnavailable,
    StateMismatch,
)
from entra_bff.auth.pkce import new_flow_artifacts
from entra_bff.auth.provider import OIDCProviderClient, ProviderMetadata, token_key_id


def authorization_url_for(provider_client, metadata, artifacts):
    return provider_client.build_authorization_url(metadata, {
        "redirect_uri": provider_client.settings.redirect_uri,
        "scope": "openid profile email",
        "code_challenge": artifacts.code_challenge,
        "code_challenge_method": "S256",
        "state": artifacts.state,
        "nonce": artifacts.nonce,
    })


def callback_url_for(provider_client, **params):
    return f"{provider_client.settings.redirect_uri}?{urlencode(params)}"


class TestDiscovery:
    """Test suite for metadata discovery"""

    @pytest.mark.asyncio
    async def test_discovers_endpoints_and_keys(self, provider_client):
        metadata = await provider_client.discover()

        assert metadata.issuer == ISSUER
        assert metadata.authorization_endpoint == AUTHORIZATION_ENDPOINT
        assert metadata.end_session_endpoint == END_SESSION_ENDPOINT
        assert metadata.jwks["keys"][0]["kid"] == SIGNING_KEY["kid"]

    @pytest.mark.asyncio
    async def test_metadata_is_cached_after_success(self, provider_client, identity_provider):
        first = await provider_client.discover()
        second = await provider_client.discover()

        assert first is second
        assert identity_provider.discovery_calls == 1
        assert identity_provider.jwks_calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_discovery_fetches_once(self, provider_client, identity_provider):
        results = await asyncio.gather(*(provider_client.discover() for _ in range(5)))

        assert all(result is results[0] for result in results)
        assert identity_provider.discovery_calls == 1

    @pytest.mark.asyncio
    async def test_failure_is_not_cached(self, provider_client, identity_provider):
        identity_provider.discovery_available = False

        with pytest.raises(ProviderUnavailable):
            await provider_client.discover()
        assert provider_client.cached_metadata is None

        identity_provider.discovery_available = True
        metadata = await provider_client.discover()

        assert metadata.issuer == ISSUER
        assert identity_provider.discovery_calls == 2

    @pytest.mark.asyncio
    async def test_malformed_document_is_provider_unavailable(self, settings):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"issuer": ISSUER}))
        client = OIDCProviderClient(settings, transport=transport)

        with pytest.raises(ProviderUnavailable):
            await client.discover()


    @pytest.mark.asyncio
    async def test_non_object_document_is_provider_unavailable(self, settings):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=["not", "an", "object"]))
        client = OIDCProviderClient(settings, transport=transport)

        with pytest.raises(ProviderUnavailable):
            await client.discover()


class TestAuthorizationUrl:
    """Test suite for authorization request construction"""

    @pytest.mark.asyncio
    async def test_contains_client_and_pkce_parameters(self, provider_client):
        metadata = await provider_client.discover()
        artifacts = new_flow_artifacts()

        url = authorization_url_for(provider_client, metadata, artifacts)
        params = query_params(url)

        assert url.startswith(AUTHORIZATION_ENDPOINT + "?")
        assert params["client_id"] == "test-client-id"
        assert params["response_type"] == "code"
        assert params["redirect_uri"] == "http://testserver/auth/callback"
        assert params["code_challenge_method"] == "S256"
        assert params["code_challenge"] == pkce_challenge(artifacts.code_verifier)
        assert "prompt" not in params


class TestCodeExchange:
    """Test suite for authorization code redemption"""

    @pytest.mark.asyncio
    async def test_successful_exchange(self, provider_client, identity_provider):
        metadata = await provider_client.discover()
        artifacts = new_flow_artifacts()
        code = identity_provider.issue_code(
            authorization_url_for(provider_client, metadata, artifacts),
            claims={"sub": "abc", "email": "a@b.com", "name": "A B"},
        )

        token_set = await provider_client.exchange_code(
            metadata,
            callback_url_for(provider_client, code=code, state=artifacts.state),
            verifier=artifacts.code_verifier,
            expected_nonce=artifacts.nonce,
            expected_state=artifacts.state,
        )

        assert token_set.claims["sub"] == "abc"
        assert token_set.claims["nonce"] == artifacts.nonce
        assert token_set.access_token.startswith("access-")
        assert token_set.refresh_token.startswith("refresh-")
        assert token_set.expires_at is not None

        form = identity_provider.token_requests[0]
        assert form["code_verifier"] == artifacts.code_verifier
        assert form["client_secret"] == TEST_CLIENT_SECRET

    @pytest.mark.asyncio
    async def test_wrong_verifier_is_rejected_by_provider(self, provider_client, identity_provider):
        metadata = await provider_client.discover()
        artifacts = new_flow_artifacts()
        code = identity_provider.issue_code(authorization_url_for(provider_client, metadata, artifacts))

        with pytest.raises(AuthenticationFailed) as exc_info:
            await provider_client.exchange_code(
                metadata,
                callback_url_for(provider_client, code=code, state=artifacts.state),
                verifier=new_flow_artifacts().code_verifier,
                expected_nonce=artifacts.nonce,
                expected_state=artifacts.state,
            )

        assert exc_info.value.error_code == "invalid_grant"
        assert "Code_Verifier" in exc_info.value.to_dict()["error_description"]

    @pytest.mark.asyncio
    async def test_state_is_rechecked(self, provider_client, identity_provider):
        metadata = await provider_client.discover()
        artifacts = new_flow_artifacts()

        with pytest.raises(StateMismatch):
            await provider_client.exchange_code(
                metadata,
                callback_url_for(provider_client, code="anything", state="forged"),
                verifier=artifacts.code_verifier,
                expected_nonce=artifacts.nonce,
                expected_state=artifacts.state,
            )
        assert identity_provider.token_requests == []

    @pytest.mark.asyncio
    async def test_missing_code(self, provider_client):
        metadata = await provider_client.discover()
        artifacts = new_flow_artifacts()

        with pytest.raises(AuthenticationFailed) as exc_info:
            await provider_client.exchange_code(
                metadata,
                callback_url_for(provider_client, state=artifacts.state),
                verifier=artifacts.code_verifier,
                expected_nonce=artifacts.nonce,
                expected_state=artifacts.state,
            )

        assert exc_info.value.error_code == "invalid_request"

    @pytest.mark.asyncio
    async def test_token_endpoint_outage_is_provider_unavailable(self, provider_client, identity_provider):
        metadata = await provider_client.discover()
        artifacts = new_flow_artifacts()
        code = identity_provider.issue_code(authorization_url_for(provider_client, metadata, artifacts))
        identity_provider.token_endpoint_down = True

        with pytest.raises(ProviderUnavailable):
            await provider_client.exchange_code(
                metadata,
                callback_url_for(provider_client, code=code, state=artifacts.state),
                verifier=artifacts.code_verifier,
                expected_nonce=artifacts.nonce,
                expected_state=artifacts.state,
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"expires_in": "soon"},
        {"access_token": {"not": "a string"}},
        {"id_token": 12345},
    ])
    async def test_malformed_token_fields_are_validation_failures(self, provider_client, identity_provider, overrides):
        metadata = await provider_client.discover()
        artifacts = new_flow_artifacts()
        code = identity_provider.issue_code(authorization_url_for(provider_client, metadata, artifacts))
        identity_provider.token_response_overrides = overrides

        with pytest.raises((AuthenticationFailed, NonceOrSignatureInvalid)):
            await provider_client.exchange_code(
                metadata,
                callback_url_for(provider_client, code=code, state=artifacts.state),
                verifier=artifacts.code_verifier,
                expected_nonce=artifacts.nonce,
                expected_state=artifacts.state,
            )

    @pytest.mark.asyncio
    async def test_nonce_mismatch_is_rejected(self, provider_client, identity_provider):
        metadata = await provider_client.discover()
        artifacts = new_flow_artifacts()
        code = identity_provider.issue_code(
            authorization_url_for(provider_client, metadata, artifacts),
            nonce="replayed-nonce",
        )

        with pytest.raises(NonceOrSignatureInvalid):
            await provider_client.exchange_code(
                metadata,
                callback_url_for(provider_client, code=code, state=artifacts.state),
                verifier=artifacts.code_verifier,
                expected_nonce=artifacts.nonce,
                expected_state=artifacts.state,
            )


class TestIdTokenValidation:
    """Test suite for ID token signature and claim checks"""

    @pytest.mark.asyncio
    async def test_valid_token(self, provider_client, identity_provider):
        metadata = await provider_client.discover()
        token = identity_provider.mint_id_token("n-1")

        claims = await provider_client.verify_id_token(metadata, token, "n-1")

        assert claims["sub"] == "test-user-sub-123"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("claims", [
        {"aud": "another-client"},
        {"iss": "https://login.microsoftonline.com/other-tenant/v2.0"},
    ])
    async def test_wrong_audience_or_issuer(self, provider_client, identity_provider, claims):
        metadata = await provider_client.discover()
        token = identity_provider.mint_id_token("n-1", claims)

        with pytest.raises(NonceOrSignatureInvalid):
            await provider_client.verify_id_token(metadata, token, "n-1")

    @pytest.mark.asyncio
    async def test_expired_token(self, provider_client, identity_provider):
        metadata = await provider_client.discover()
        token = identity_provider.mint_id_token("n-1", exp_delta_minutes=-5)

        with pytest.raises(NonceOrSignatureInvalid):
            await provider_client.verify_id_token(metadata, token, "n-1")

    @pytest.mark.asyncio
    async def test_missing_nonce(self, provider_client, identity_provider):
        metadata = await provider_client.discover()
        token = identity_provider.mint_id_token(None)

        with pytest.raises(NonceOrSignatureInvalid):
            await provider_client.verify_id_token(metadata, token, "n-1")

    @pytest.mark.asyncio
    async def test_nonce_comparison_is_exact(self, provider_client, identity_provider):
        metadata = await provider_client.discover()
        token = identity_provider.mint_id_token("Nonce-ABC")

        with pytest.raises(NonceOrSignatureInvalid):
            await provider_client.verify_id_token(metadata, token, "nonce-abc")

    @pytest.mark.asyncio
    async def test_unknown_key_triggers_one_refresh(self, provider_client, identity_provider):
        metadata = await provider_client.discover()
        identity_provider.published_keys = [SIGNING_KEY, ROTATED_SIGNING_KEY]
        identity_provider.signing_key = ROTATED_SIGNING_KEY
        token = identity_provider.mint_id_token("n-1")

        claims = await provider_client.verify_id_token(metadata, token, "n-1")

        assert claims["nonce"] == "n-1"
        assert identity_provider.jwks_calls == 2
        assert len(provider_client.cached_metadata.jwks["keys"]) == 2

    @pytest.mark.asyncio
    async def test_key_missing_after_refresh(self, provider_client, identity_provider):
        metadata = await provider_client.discover()
        token = identity_provider.mint_id_token("n-1", key=ROTATED_SIGNING_KEY)

        with pytest.raises(NonceOrSignatureInvalid):
            await provider_client.verify_id_token(metadata, token, "n-1")
        assert identity_provider.jwks_calls == 2

    @pytest.mark.asyncio
    async def test_garbage_token(self, provider_client):
        metadata = await provider_client.discover()

        with pytest.raises(NonceOrSignatureInvalid):
            await provider_client.verify_id_token(metadata, "not-a-jwt", "n-1")


class TestSigningKeyLookup:
    def test_key_id_from_header(self, identity_provider):
        token = identity_provider.mint_id_token("n-1")

        assert token_key_id(token) == SIGNING_KEY["kid"]

    def test_missing_kid_raises(self):
        token = "eyJhbGciOiJSUzI1NiJ9.eyJzdWIiOiJhYmMifQ.c2ln"

        with pytest.raises(JWTError):
            token_key_id(token)

    def test_metadata_key_lookup(self):
        metadata = ProviderMetadata(
            issuer=ISSUER,
            authorization_endpoint=AUTHORIZATION_ENDPOINT,
            token_endpoint="https://example.invalid/token",
            jwks_uri="https://example.invalid/keys",
            jwks={"keys": [ROTATED_SIGNING_KEY["jwk"], SIGNING_KEY["jwk"]]},
        )

        assert metadata.key_for(SIGNING_KEY["kid"])["kid"] == SIGNING_KEY["kid"]
        assert metadata.key_for("unknown-kid") is None


class TestLogoutUrl:
    """Test suite for the provider end-session URL"""

    def test_uses_tenant_logout_endpoint_before_discovery(self, provider_client):
        url = provider_client.build_logout_url("http://testserver", id_token_hint="id-token")
        params = query_params(url)

        assert url.startswith("https://login.microsoftonline.com/test-tenant/oauth2/v2.0/logout?")
        assert params["post_logout_redirect_uri"] == "http://testserver"
        assert params["id_token_hint"] == "id-token"

    @pytest.mark.asyncio
    async def test_uses_discovered_endpoint(self, provider_client):
        await provider_client.discover()

        url = provider_client.build_logout_url("http://testserver")

        assert url.startswith(END_SESSION_ENDPOINT + "?")
        assert "id_token_hint" not in query_params(url)
