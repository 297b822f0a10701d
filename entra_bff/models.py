"""
Data Models Module

This module defines Pydantic models for the JSON bodies exchanged with the
single-page application. Field names on the wire use the camelCase the UI
expects (csrfToken, logoutUrl); tokens never appear in any response model.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Authentication Models
# ============================================================================

class UserProfile(BaseModel):
    """
    Identity claims exposed to the browser.

    name is the display name, sub the subject id and oid the directory
    object id. email falls back to preferred_username when the provider
    does not release an email claim.
    """

    name: Optional[str] = Field(None, description="User display name")
    email: Optional[str] = Field(None, description="Email address or UPN")
    sub: str = Field(..., description="Subject identifier")
    oid: Optional[str] = Field(None, description="Directory object identifier")

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "UserProfile":
        return cls(
            name=claims.get("name"),
            email=claims.get("email") or claims.get("preferred_username"),
            sub=claims["sub"],
            oid=claims.get("oid"),
        )


class AuthStatus(BaseModel):
    """Response of GET /auth/me."""

    model_config = ConfigDict(populate_by_name=True)

    authenticated: bool = Field(..., description="Whether the session holds a signed-in user")
    user: Optional[UserProfile] = Field(None, description="Identity claims when authenticated")
    csrf_token: Optional[str] = Field(
        None,
        alias="csrfToken",
        description="Token the UI must present to POST /auth/logout",
    )


class LogoutRequest(BaseModel):
    """Optional JSON body of POST /auth/logout."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    csrf_token: Optional[str] = Field(None, alias="csrfToken")


class LogoutResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    logout_url: str = Field(..., alias="logoutUrl", description="Provider end-session URL to navigate to")


# ============================================================================
# Error / System Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: str = Field(..., description="Error code")
    message: Optional[str] = Field(None, description="Human-readable error message")
    error_description: Optional[str] = Field(None, description="Provider-reported description")


class HealthResponse(BaseModel):
    status: str = Field(default="ok")
    service: str
    version: str
    session_store: str = Field(..., description="Active session store backend")
