"""
Authentication and session management.

Sessions live entirely in a sealed client-held cookie. A second, short-lived
sealed cookie carries the CSRF token and PKCE verifier for a single login
attempt and is consumed when the provider redirects back.
"""

import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from starlette.requests import Request
from starlette.responses import Response

from config import config
from crypto import Sealer

logger = logging.getLogger(__name__)

# Re-export for callers that set or inspect the cookies directly
SESSION_COOKIE_NAME = config.SESSION_COOKIE_NAME
HANDSHAKE_COOKIE_NAME = config.HANDSHAKE_COOKIE_NAME

# The handshake cookie is only needed by the provider callback
HANDSHAKE_COOKIE_PATH = "/oauth_redirect"

TOKEN_ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
TOKEN_LENGTH = 64


@dataclass(frozen=True)
class User:
    """Identity returned by the OAuth provider."""
    subject_id: str
    display_name: str


@dataclass(frozen=True)
class Session:
    """Authenticated caller, as carried in the session cookie."""
    subject_id: str
    display_name: str


@dataclass(frozen=True)
class HandshakeState:
    """CSRF token and optional PKCE verifier for one in-flight login."""
    csrf_token: str
    pkce_verifier: Optional[str] = None


class Role(Enum):
    """Role of an authenticated caller."""
    REGISTRANT = "registrant"
    ADMINISTRATOR = "administrator"


def random_token(length: int = TOKEN_LENGTH) -> str:
    """Generate an unguessable alphanumeric token (about 6 bits per character)."""
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def mint_handshake(pkce: bool = True) -> HandshakeState:
    """Create fresh handshake state for a login attempt."""
    return HandshakeState(
        csrf_token=random_token(),
        pkce_verifier=random_token() if pkce else None,
    )


def resolve_role(session: Optional[Session], director_id: str) -> Optional[Role]:
    """Resolve the caller's role. No session means no role at all."""
    if session is None:
        return None
    if director_id and session.subject_id == director_id:
        return Role.ADMINISTRATOR
    return Role.REGISTRANT


class SessionManager:
    """Issues, reads and clears the session and handshake cookies."""

    def __init__(
        self,
        sealer: Sealer,
        secure: bool = True,
        session_max_age: int = 30 * 24 * 60 * 60,
        handshake_max_age: int = 600,
    ):
        self.sealer = sealer
        self.secure = secure
        self.session_max_age = session_max_age
        self.handshake_max_age = handshake_max_age

    @classmethod
    def from_config(cls, cfg=config) -> "SessionManager":
        return cls(
            Sealer.from_secret(cfg.SESSION_SECRET, cfg.SESSION_SALT),
            secure=cfg.SECURE_COOKIES,
            session_max_age=cfg.SESSION_DURATION_DAYS * 24 * 60 * 60,
            handshake_max_age=cfg.HANDSHAKE_MAX_AGE_SECONDS,
        )

    # Login handshake

    def store_handshake(self, response: Response, handshake: HandshakeState) -> None:
        """Write the handshake into its sealed cookie on the response."""
        payload = {"csrf": handshake.csrf_token}
        if handshake.pkce_verifier is not None:
            payload["verifier"] = handshake.pkce_verifier
        response.set_cookie(
            key=HANDSHAKE_COOKIE_NAME,
            value=self.sealer.seal(payload),
            max_age=self.handshake_max_age,
            path=HANDSHAKE_COOKIE_PATH,
            httponly=True,
            samesite="lax",
            secure=self.secure,
        )

    def take_handshake(self, request: Request, response: Response) -> Optional[HandshakeState]:
        """
        Read and remove the handshake for this request.

        The cookie is cleared on the response whether or not it was valid.
        Only the first call for a request can return a handshake.
        """
        response.delete_cookie(
            HANDSHAKE_COOKIE_NAME,
            path=HANDSHAKE_COOKIE_PATH,
            httponly=True,
            samesite="lax",
            secure=self.secure,
        )
        if getattr(request.state, "handshake_taken", False):
            return None
        request.state.handshake_taken = True

        payload = self.sealer.unseal(
            request.cookies.get(HANDSHAKE_COOKIE_NAME),
            max_age=self.handshake_max_age,
        )
        if payload is None:
            return None
        csrf_token = payload.get("csrf")
        verifier = payload.get("verifier")
        if not isinstance(csrf_token, str) or not csrf_token:
            return None
        if verifier is not None and not isinstance(verifier, str):
            return None
        return HandshakeState(csrf_token=csrf_token, pkce_verifier=verifier)

    # Session

    def establish_session(self, response: Response, user: User) -> Session:
        """Write a sealed session for a verified user."""
        session = Session(subject_id=user.subject_id, display_name=user.display_name)
        response.set_cookie(
            key=SESSION_COOKIE_NAME,
            value=self.sealer.seal({"id": session.subject_id, "name": session.display_name}),
            max_age=self.session_max_age,
            httponly=True,
            samesite="lax",
            secure=self.secure,
        )
        return session

    def read_session(self, request: Request) -> Optional[Session]:
        """Get the session for a request, or None if absent or invalid."""
        payload = self.sealer.unseal(
            request.cookies.get(SESSION_COOKIE_NAME),
            max_age=self.session_max_age,
        )
        if payload is None:
            return None
        subject_id = payload.get("id")
        display_name = payload.get("name")
        if not isinstance(subject_id, str) or not subject_id or not isinstance(display_name, str):
            return None
        return Session(subject_id=subject_id, display_name=display_name)

    def destroy_session(self, response: Response) -> None:
        """Clear the session cookie (logout)."""
        response.delete_cookie(
            SESSION_COOKIE_NAME,
            httponly=True,
            samesite="lax",
            secure=self.secure,
        )
