"""
Server-Side Session Management
==============================

The browser only ever holds an opaque, signed session id in an HttpOnly
cookie. Everything else (flow artifacts, identity, tokens, CSRF token) lives
in the session store.

A session record is one of three phases, modelled as a tagged union so the
transient login fields and the authenticated identity can never coexist:

- AnonymousSession: nothing known about the browser
- FlowInProgressSession: a login attempt is in flight (verifier, state, nonce, mode)
- AuthenticatedSession: user, tokens and (lazily) a CSRF token

Each phase change replaces the whole record; fields are never patched one
by one.
"""

import logging
import secrets
from typing import Annotated, Any, Dict, Literal, Optional, Union

from fastapi import Request
from jose import jwt
from jose.exceptions import JOSEError
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from entra_bff.config import Settings
from entra_bff.models import UserProfile
from entra_bff.store import SessionStore

logger = logging.getLogger(__name__)


# =============================================================================
# Session Record
# =============================================================================

class TokenBundle(BaseModel):
    """Raw provider tokens. Never leaves the backend."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: str
    expires_at: Optional[int] = None


class AnonymousSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: Literal["anonymous"] = "anonymous"


class FlowInProgressSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: Literal["flow"] = "flow"
    pkce_verifier: str
    state: str
    nonce: str
    silent: bool = False


class AuthenticatedSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: Literal["authenticated"] = "authenticated"
    user: UserProfile
    tokens: TokenBundle
    csrf_token: Optional[str] = None

    def with_csrf_token(self, csrf_token: str) -> "AuthenticatedSession":
        return self.model_copy(update={"csrf_token": csrf_token})


SessionData = Annotated[
    Union[AnonymousSession, FlowInProgressSession, AuthenticatedSession],
    Field(discriminator="phase"),
]

_session_data_adapter = TypeAdapter(SessionData)


def parse_session_data(fields: Optional[Dict[str, Any]]) -> Union[AnonymousSession, FlowInProgressSession, AuthenticatedSession]:
    """Parse a stored record; unknown or corrupt records read as anonymous."""
    if not fields:
        return AnonymousSession()
    try:
        return _session_data_adapter.validate_python(fields)
    except ValidationError:
        logger.warning("Discarding session record that does not match any session phase")
        return AnonymousSession()


# =============================================================================
# Session Handle
# =============================================================================

class ServerSession:
    """
    One browser session for the duration of a request.

    Attributes:
        session_id: Opaque identifier carried by the cookie; replaced on sign-in
        data: Current session phase
        persisted: True once the record exists in the store
        destroyed: True after destroy(); the cookie must be cleared
    """

    def __init__(
        self,
        session_id: str,
        data: Union[AnonymousSession, FlowInProgressSession, AuthenticatedSession],
        store: SessionStore,
        ttl_seconds: int,
        persisted: bool = False,
    ):
        self.session_id = session_id
        self.data = data
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.persisted = persisted
        self.destroyed = False

    async def replace(self, data: Union[AnonymousSession, FlowInProgressSession, AuthenticatedSession]) -> None:
        """Swap in a new phase and wait for the store to acknowledge it."""
        await self.store.set(self.session_id, data.model_dump(mode="json"), self.ttl_seconds)
        self.data = data
        self.persisted = True

    async def regenerate(self, data: Union[AnonymousSession, FlowInProgressSession, AuthenticatedSession]) -> None:
        """Move the record to a new session id, dropping the old one."""
        previous_id = self.session_id
        self.session_id = new_session_id()
        await self.replace(data)
        await self.store.delete(previous_id)

    async def reload(self) -> Union[AnonymousSession, FlowInProgressSession, AuthenticatedSession]:
        """Re-read the record from the store, picking up concurrent writes."""
        fields = await self.store.get(self.session_id)
        self.data = parse_session_data(fields)
        self.persisted = fields is not None
        return self.data

    async def destroy(self) -> None:
        await self.store.delete(self.session_id)
        self.data = AnonymousSession()
        self.persisted = False
        self.destroyed = True


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


# =============================================================================
# Cookie Signing
# =============================================================================

COOKIE_ALGORITHM = "HS256"


def sign_session_id(session_id: str, secret: str) -> str:
    """Wrap the session id in a compact HS256 JWT keyed by SESSION_SECRET."""
    return jwt.encode({"sid": session_id}, secret, algorithm=COOKIE_ALGORITHM)


def unsign_session_id(cookie_value: Optional[str], secret: str) -> Optional[str]:
    """
    Return the session id from a signed cookie value.

    Returns None for a missing, malformed or tampered value.
    """
    if not cookie_value:
        return None
    try:
        claims = jwt.decode(cookie_value, secret, algorithms=[COOKIE_ALGORITHM])
    except JOSEError:
        return None

    session_id = claims.get("sid")
    if not isinstance(session_id, str) or not session_id:
        return None
    return session_id


# =============================================================================
# FastAPI Integration
# =============================================================================

async def load_session(request: Request, store: SessionStore, settings: Settings) -> ServerSession:
    """
    Resolve the session for this request from its cookie.

    A missing, tampered or expired cookie yields a fresh anonymous session
    with a new id; it is only written to the store on its first transition.
    """
    cookie_value = request.cookies.get(settings.SESSION_COOKIE_NAME)
    session_id = unsign_session_id(cookie_value, settings.SESSION_SECRET)

    if session_id is not None:
        fields = await store.get(session_id)
        if fields is not None:
            return ServerSession(
                session_id,
                parse_session_data(fields),
                store,
                settings.SESSION_MAX_AGE_SECONDS,
                persisted=True,
            )

    return ServerSession(
        new_session_id(),
        AnonymousSession(),
        store,
        settings.SESSION_MAX_AGE_SECONDS,
    )


async def get_server_session(request: Request) -> ServerSession:
    """
    FastAPI dependency returning the request's ServerSession.

    The session is remembered on request.state so SessionCookieMiddleware
    can set or clear the cookie once the response is built.
    """
    existing = getattr(request.state, "server_session", None)
    if existing is not None:
        return existing

    app_state = request.app.state
    session = await load_session(request, app_state.session_store, app_state.settings)
    request.state.server_session = session
    return session


def apply_session_cookie(response: Response, session: ServerSession, settings: Settings) -> None:
    if session.destroyed:
        response.delete_cookie(
            settings.SESSION_COOKIE_NAME,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite="lax",
        )
    elif session.persisted:
        response.set_cookie(
            settings.SESSION_COOKIE_NAME,
            sign_session_id(session.session_id, settings.SESSION_SECRET),
            max_age=settings.SESSION_MAX_AGE_SECONDS,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite="lax",
        )


class SessionCookieMiddleware(BaseHTTPMiddleware):
    """Writes or clears the session cookie for requests that touched a session."""

    async def dispatch(self, request, call_next):
        response: Response = await call_next(request)
        session = getattr(request.state, "server_session", None)
        if session is not None:
            apply_session_cookie(response, session, request.app.state.settings)
        return response


__all__ = [
    "TokenBundle",
    "AnonymousSession",
    "FlowInProgressSession",
    "AuthenticatedSession",
    "SessionData",
    "parse_session_data",
    "ServerSession",
    "new_session_id",
    "sign_session_id",
    "unsign_session_id",
    "load_session",
    "get_server_session",
    "apply_session_cookie",
    "SessionCookieMiddleware",
]
