"""
Authentication routes for the Backend-for-Frontend.

This module exposes the login state machine to the single-page application:

    GET  /auth/sso       silent SSO attempt (prompt=none)
    GET  /auth/login     interactive login
    GET  /auth/callback  provider redirect target
    GET  /auth/me        session status (+ CSRF token)
    POST /auth/logout    destroy session, return provider logout URL

Tokens never leave the server; the browser only sees redirects, the user's
profile and the CSRF token.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import RedirectResponse
from pydantic import ValidationError

from entra_bff.auth.flow import AuthFlow, FlowMode
from entra_bff.auth.session import ServerSession, get_server_session
from entra_bff.models import AuthStatus, ErrorResponse, LogoutRequest, LogoutResponse


SSO_FAILED_REDIRECT = "/?sso_failed=true"
CSRF_HEADER = "X-CSRF-Token"


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)


def get_auth_flow(request: Request) -> AuthFlow:
    return request.app.state.auth_flow


def _callback_url(request: Request, flow: AuthFlow) -> str:
    # Rebuilt from BASE_URL so it matches the registered redirect URI behind proxies.
    url = f"{flow.settings.BASE_URL}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


# =============================================================================
# Login Endpoints
# =============================================================================

@auth_router.get(
    "/sso",
    response_class=RedirectResponse,
    status_code=status.HTTP_302_FOUND,
    responses={500: {"model": ErrorResponse}},
)
async def silent_sso(
    session: ServerSession = Depends(get_server_session),
    flow: AuthFlow = Depends(get_auth_flow),
):
    """
    Attempt silent single sign-on against the provider's existing session.

    Redirects to the authorization endpoint with prompt=none. If the
    provider cannot sign the user in without interaction, the callback sends
    the browser to /?sso_failed=true.
    """
    authorization_url = await flow.initiate(session, FlowMode.SILENT)
    return RedirectResponse(url=authorization_url, status_code=status.HTTP_302_FOUND)


@auth_router.get(
    "/login",
    response_class=RedirectResponse,
    status_code=status.HTTP_302_FOUND,
    responses={500: {"model": ErrorResponse}},
)
async def login(
    session: ServerSession = Depends(get_server_session),
    flow: AuthFlow = Depends(get_auth_flow),
):
    """Initiate interactive OIDC login by redirecting to Microsoft Entra ID."""
    authorization_url = await flow.initiate(session, FlowMode.INTERACTIVE)
    return RedirectResponse(url=authorization_url, status_code=status.HTTP_302_FOUND)


# =============================================================================
# Callback Endpoint
# =============================================================================

@auth_router.get(
    "/callback",
    response_class=RedirectResponse,
    status_code=status.HTTP_302_FOUND,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def callback(
    request: Request,
    session: ServerSession = Depends(get_server_session),
    flow: AuthFlow = Depends(get_auth_flow),
):
    """
    Handle the provider redirect.

    Success redirects to the application root. Failures of a silent attempt
    are turned into a redirect to /?sso_failed=true by the application's
    SilentSsoDeclined handler; all other failures become JSON errors.
    """
    await flow.handle_callback(session, _callback_url(request, flow))
    return RedirectResponse(url="/", status_code=status.HTTP_302_FOUND)


# =============================================================================
# Session Endpoints
# =============================================================================

@auth_router.get("/me", response_model=AuthStatus, response_model_exclude_none=True)
async def me(
    session: ServerSession = Depends(get_server_session),
    flow: AuthFlow = Depends(get_auth_flow),
):
    """Return the session's authentication status, user profile and CSRF token."""
    return await flow.check_status(session)


@auth_router.post(
    "/logout",
    response_model=LogoutResponse,
    responses={403: {"model": ErrorResponse}},
)
async def logout(
    request: Request,
    x_csrf_token: Optional[str] = Header(None, alias=CSRF_HEADER),
    session: ServerSession = Depends(get_server_session),
    flow: AuthFlow = Depends(get_auth_flow),
):
    """
    Destroy the session after verifying the CSRF token.

    The token is read from the X-CSRF-Token header, or from a JSON body
    {"csrfToken": "..."} when the header is absent.
    """
    presented = x_csrf_token or await _csrf_token_from_body(request)
    logout_url = await flow.logout(session, presented)
    return LogoutResponse(logout_url=logout_url)


async def _csrf_token_from_body(request: Request) -> Optional[str]:
    body = await request.body()
    if not body:
        return None
    try:
        return LogoutRequest.model_validate_json(body).csrf_token
    except ValidationError:
        return None


__all__ = ["auth_router", "get_auth_flow", "SSO_FAILED_REDIRECT", "CSRF_HEADER"]
