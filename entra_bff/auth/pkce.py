"""
Flow artifact generation: PKCE verifier/challenge, state, nonce, CSRF token.

All values come from the operating system CSPRNG (secrets module) and carry
256 bits of entropy, encoded base64url without padding.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass


ARTIFACT_BYTES = 32


# =============================================================================
# PKCE Helper Functions
# =============================================================================

def generate_code_verifier() -> str:
    """
    Generate a cryptographically random code verifier for PKCE.

    Returns:
        Base64-URL-encoded random string (43 characters, RFC 7636 range 43-128)
    """
    verifier_bytes = secrets.token_bytes(ARTIFACT_BYTES)
    return base64.urlsafe_b64encode(verifier_bytes).decode('utf-8').rstrip('=')


def generate_code_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Args:
        verifier: Code verifier string

    Returns:
        Base64-URL-encoded SHA256 hash of verifier
    """
    digest = hashlib.sha256(verifier.encode('ascii')).digest()
    return base64.urlsafe_b64encode(digest).decode('utf-8').rstrip('=')


def generate_state() -> str:
    """Opaque anti-CSRF value echoed back by the provider on the callback."""
    return secrets.token_urlsafe(ARTIFACT_BYTES)


def generate_nonce() -> str:
    """Replay-protection value bound into the ID token."""
    return secrets.token_urlsafe(ARTIFACT_BYTES)


def generate_csrf_token() -> str:
    return secrets.token_urlsafe(ARTIFACT_BYTES)


@dataclass(frozen=True)
class FlowArtifacts:
    code_verifier: str
    code_challenge: str
    state: str
    nonce: str


def new_flow_artifacts() -> FlowArtifacts:
    """Generate a complete, fresh set of artifacts for one login attempt."""
    verifier = generate_code_verifier()
    return FlowArtifacts(
        code_verifier=verifier,
        code_challenge=generate_code_challenge(verifier),
        state=generate_state(),
        nonce=generate_nonce(),
    )


__all__ = [
    "FlowArtifacts",
    "new_flow_artifacts",
    "generate_code_verifier",
    "generate_code_challenge",
    "generate_state",
    "generate_nonce",
    "generate_csrf_token",
]
