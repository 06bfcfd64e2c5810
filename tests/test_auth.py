"""
Tests for session and login handshake management.
"""

import time
from http.cookies import SimpleCookie

import pytest
from cryptography.fernet import Fernet
from starlette.requests import Request
from starlette.responses import Response

from auth import (
    HANDSHAKE_COOKIE_NAME, SESSION_COOKIE_NAME, TOKEN_ALPHABET,
    HandshakeState, Role, Session, SessionManager, User,
    mint_handshake, random_token, resolve_role,
)
from crypto import Sealer, derive_key


@pytest.fixture(scope="module")
def key():
    return derive_key("test-secret", "test-salt")


@pytest.fixture
def manager(key):
    return SessionManager(Sealer(key), secure=True, session_max_age=3600, handshake_max_age=600)


def make_request(cookies=None) -> Request:
    """Build a bare request carrying the given cookies."""
    headers = []
    if cookies:
        value = "; ".join(f"{name}={val}" for name, val in cookies.items())
        headers.append((b"cookie", value.encode()))
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": headers,
        "query_string": b"",
    })


def set_cookies(response: Response) -> SimpleCookie:
    """Parse every Set-Cookie header on a response."""
    jar = SimpleCookie()
    for header in response.headers.getlist("set-cookie"):
        jar.load(header)
    return jar


class TestTokens:
    """Test random token generation."""

    def test_length_and_alphabet(self):
        token = random_token()
        assert len(token) == 64
        assert set(token) <= set(TOKEN_ALPHABET)

    def test_tokens_are_distinct(self):
        tokens = {random_token() for _ in range(50)}
        assert len(tokens) == 50

    def test_mint_with_pkce(self):
        handshake = mint_handshake(pkce=True)
        assert len(handshake.csrf_token) == 64
        assert handshake.pkce_verifier is not None
        assert handshake.pkce_verifier != handshake.csrf_token

    def test_mint_without_pkce(self):
        handshake = mint_handshake(pkce=False)
        assert handshake.pkce_verifier is None


class TestResolveRole:
    """Test role resolution from session and configured director."""

    def test_no_session_has_no_role(self):
        assert resolve_role(None, "director") is None

    def test_director_is_administrator(self):
        session = Session(subject_id="director", display_name="TD")
        assert resolve_role(session, "director") is Role.ADMINISTRATOR

    def test_everyone_else_is_registrant(self):
        session = Session(subject_id="u1", display_name="Alice")
        assert resolve_role(session, "director") is Role.REGISTRANT

    def test_unset_director_grants_nobody(self):
        session = Session(subject_id="", display_name="")
        assert resolve_role(session, "") is Role.REGISTRANT


class TestHandshake:
    """Test the single-use login handshake cookie."""

    def test_store_sets_restricted_cookie(self, manager):
        response = Response()
        manager.store_handshake(response, HandshakeState("csrf123", "verifier456"))

        morsel = set_cookies(response)[HANDSHAKE_COOKIE_NAME]
        assert morsel["httponly"]
        assert morsel["secure"]
        assert morsel["samesite"].lower() == "lax"
        assert morsel["path"] == "/oauth_redirect"
        assert morsel["max-age"] == "600"
        assert "csrf123" not in morsel.value
        assert "verifier456" not in morsel.value

    def test_take_returns_stored_state(self, manager):
        stored = Response()
        manager.store_handshake(stored, HandshakeState("csrf123", "verifier456"))
        cookie = set_cookies(stored)[HANDSHAKE_COOKIE_NAME].value

        request = make_request({HANDSHAKE_COOKIE_NAME: cookie})
        taken = manager.take_handshake(request, Response())

        assert taken == HandshakeState("csrf123", "verifier456")

    def test_take_is_single_use(self, manager):
        stored = Response()
        manager.store_handshake(stored, HandshakeState("csrf123", None))
        cookie = set_cookies(stored)[HANDSHAKE_COOKIE_NAME].value

        request = make_request({HANDSHAKE_COOKIE_NAME: cookie})
        first = manager.take_handshake(request, Response())
        second = manager.take_handshake(request, Response())

        assert first == HandshakeState("csrf123", None)
        assert second is None

    def test_take_clears_cookie(self, manager):
        stored = Response()
        manager.store_handshake(stored, HandshakeState("csrf123", "v"))
        cookie = set_cookies(stored)[HANDSHAKE_COOKIE_NAME].value

        response = Response()
        manager.take_handshake(make_request({HANDSHAKE_COOKIE_NAME: cookie}), response)

        morsel = set_cookies(response)[HANDSHAKE_COOKIE_NAME]
        assert morsel.value == ""
        assert morsel["max-age"] == "0"
        assert morsel["path"] == "/oauth_redirect"

    def test_take_clears_cookie_even_when_absent(self, manager):
        response = Response()
        assert manager.take_handshake(make_request(), response) is None
        assert HANDSHAKE_COOKIE_NAME in set_cookies(response)

    def test_take_rejects_tampered(self, manager):
        stored = Response()
        manager.store_handshake(stored, HandshakeState("csrf123", "v"))
        cookie = set_cookies(stored)[HANDSHAKE_COOKIE_NAME].value
        tampered = cookie[:-6] + ("A" if cookie[-6] != "A" else "B") + cookie[-5:]

        request = make_request({HANDSHAKE_COOKIE_NAME: tampered})
        assert manager.take_handshake(request, Response()) is None

    def test_take_rejects_expired(self, key, manager):
        old = Fernet(key).encrypt_at_time(b'{"csrf": "csrf123"}', int(time.time()) - 3600).decode()
        request = make_request({HANDSHAKE_COOKIE_NAME: old})
        assert manager.take_handshake(request, Response()) is None

    def test_take_rejects_payload_without_csrf(self, manager):
        cookie = manager.sealer.seal({"verifier": "v"})
        request = make_request({HANDSHAKE_COOKIE_NAME: cookie})
        assert manager.take_handshake(request, Response()) is None

    def test_session_cookie_is_not_a_handshake(self, manager):
        """A session cookie value replayed in the handshake slot is rejected."""
        cookie = manager.sealer.seal({"id": "u1", "name": "Alice"})
        request = make_request({HANDSHAKE_COOKIE_NAME: cookie})
        assert manager.take_handshake(request, Response()) is None


class TestSessions:
    """Test session cookie lifecycle."""

    def test_round_trip(self, manager):
        response = Response()
        manager.establish_session(response, User(subject_id="u1", display_name="Alice"))
        cookie = set_cookies(response)[SESSION_COOKIE_NAME].value

        session = manager.read_session(make_request({SESSION_COOKIE_NAME: cookie}))

        assert session == Session(subject_id="u1", display_name="Alice")

    def test_session_cookie_attributes(self, manager):
        response = Response()
        manager.establish_session(response, User(subject_id="u1", display_name="Alice"))

        morsel = set_cookies(response)[SESSION_COOKIE_NAME]
        assert morsel["httponly"]
        assert morsel["secure"]
        assert morsel["samesite"].lower() == "lax"
        assert morsel["max-age"] == "3600"
        assert "Alice" not in morsel.value

    def test_no_cookie_is_no_session(self, manager):
        assert manager.read_session(make_request()) is None

    def test_garbage_cookie_is_no_session(self, manager):
        assert manager.read_session(make_request({SESSION_COOKIE_NAME: "garbage"})) is None

    def test_forged_cookie_is_no_session(self, manager):
        forged = Sealer(Fernet.generate_key()).seal({"id": "director", "name": "TD"})
        assert manager.read_session(make_request({SESSION_COOKIE_NAME: forged})) is None

    def test_handshake_is_not_a_session(self, manager):
        cookie = manager.sealer.seal({"csrf": "abc", "verifier": "def"})
        assert manager.read_session(make_request({SESSION_COOKIE_NAME: cookie})) is None

    def test_destroy_is_idempotent(self, manager):
        response = Response()
        manager.destroy_session(response)
        manager.destroy_session(response)

        morsel = set_cookies(response)[SESSION_COOKIE_NAME]
        assert morsel.value == ""
        assert morsel["max-age"] == "0"

    def test_secure_flag_follows_config(self, key):
        manager = SessionManager(Sealer(key), secure=False)
        response = Response()
        manager.establish_session(response, User(subject_id="u1", display_name="Alice"))
        assert not set_cookies(response)[SESSION_COOKIE_NAME]["secure"]
