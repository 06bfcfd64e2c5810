"""
Lichess OAuth client: authorization redirect, code exchange and account lookup.
"""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

import httpx

from auth import HandshakeState, User, mint_handshake
from config import config

logger = logging.getLogger(__name__)

USER_AGENT = "TournamentRegistration/1.0"


class AuthError(Exception):
    """Base exception for login failures."""
    pass


class CsrfMismatch(AuthError):
    """Returned state does not match the stored handshake, or there is none."""
    pass


class ProviderError(AuthError):
    """The identity provider could not be reached or returned garbage."""
    pass


@dataclass
class CallbackOutcome:
    """What the provider sent back to the redirect URI."""
    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None

    @property
    def denied(self) -> bool:
        return self.error is not None


def pkce_challenge(verifier: str) -> str:
    """S256 code challenge: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def parse_callback(params: Mapping[str, str]) -> CallbackOutcome:
    """
    Classify the provider's redirect.

    A redirect carrying ``error`` is a denial (user refused consent, or the
    provider rejected the request). Anything else must carry both ``code``
    and ``state``.

    Raises:
        CsrfMismatch: If a non-error callback lacks code or state
    """
    if "error" in params:
        return CallbackOutcome(
            state=params.get("state"),
            error=params.get("error") or "unknown_error",
            error_description=params.get("error_description", ""),
        )

    code = params.get("code")
    state = params.get("state")
    if not code or not state:
        raise CsrfMismatch("Callback is missing code or state")
    return CallbackOutcome(code=code, state=state)


def _json_object(response: httpx.Response, what: str) -> Dict[str, Any]:
    """Decode a provider response body that must be a JSON object."""
    try:
        payload = response.json()
    except ValueError as e:
        raise ProviderError(f"{what}: response is not JSON") from e
    if not isinstance(payload, dict):
        raise ProviderError(f"{what}: expected a JSON object")
    return payload


class LichessClient:
    """
    OAuth client for the identity provider.

    Exactly one flow variant is used per client: with ``use_pkce`` the token
    exchange sends ``code_verifier``; without it, ``client_secret``. The two
    are never sent together.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        client_id: str,
        redirect_uri: str,
        client_secret: str = "",
        use_pkce: bool = True,
        scope: str = "",
        authorize_url: str = "https://lichess.org/oauth",
        token_url: str = "https://lichess.org/api/token",
        account_url: str = "https://lichess.org/api/account",
        timeout: float = 15.0,
    ):
        if not use_pkce and not client_secret:
            raise ValueError("The client secret flow needs a client secret")
        self.http = http
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.client_secret = client_secret
        self.use_pkce = use_pkce
        self.scope = scope
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.account_url = account_url
        self.timeout = timeout

    @classmethod
    def from_config(cls, http: httpx.AsyncClient, cfg=config) -> "LichessClient":
        return cls(
            http,
            client_id=cfg.OAUTH_CLIENT_ID,
            redirect_uri=cfg.redirect_uri,
            client_secret=cfg.OAUTH_CLIENT_SECRET,
            use_pkce=cfg.use_pkce,
            scope=cfg.OAUTH_SCOPE,
            authorize_url=cfg.OAUTH_AUTHORIZE_URL,
            token_url=cfg.OAUTH_TOKEN_URL,
            account_url=cfg.OAUTH_ACCOUNT_URL,
            timeout=cfg.PROVIDER_TIMEOUT_SECONDS,
        )

    def authorization_url(self, handshake: HandshakeState) -> str:
        """Build the provider redirect for a handshake. Never includes the verifier."""
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "state": handshake.csrf_token,
        }
        if self.scope:
            params["scope"] = self.scope
        if self.use_pkce:
            if not handshake.pkce_verifier:
                raise ValueError("PKCE flow requires a code verifier")
            params["code_challenge_method"] = "S256"
            params["code_challenge"] = pkce_challenge(handshake.pkce_verifier)
        return f"{self.authorize_url}?{urlencode(params)}"

    def begin_login(self) -> Tuple[str, HandshakeState]:
        """Start a login: fresh handshake state plus the URL to send the browser to."""
        handshake = mint_handshake(pkce=self.use_pkce)
        return self.authorization_url(handshake), handshake

    async def exchange_code(self, code: str, verifier: Optional[str] = None) -> str:
        """
        Exchange an authorization code for an access token.

        Raises:
            ProviderError: On network failure, non-2xx status or a malformed body
        """
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
        }
        if self.use_pkce:
            if not verifier:
                raise ProviderError("Token exchange: no code verifier for PKCE flow")
            form["code_verifier"] = verifier
        else:
            form["client_secret"] = self.client_secret

        try:
            response = await self.http.post(
                self.token_url,
                data=form,
                headers={"Accept": "application/json", "User-Agent": USER_AGENT},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError(f"Token exchange failed: {e}") from e

        payload = _json_object(response, "Token exchange")
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ProviderError("Token exchange: no access_token in response")
        return access_token

    async def fetch_user(self, access_token: str) -> User:
        """
        Look up the account that owns an access token.

        Raises:
            ProviderError: On network failure, non-2xx status or a malformed body
        """
        try:
            response = await self.http.get(
                self.account_url,
                headers={
                    "Accept": "application/json",
                    "Authorization": f"Bearer {access_token}",
                    "User-Agent": USER_AGENT,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError(f"Account lookup failed: {e}") from e

        payload = _json_object(response, "Account lookup")
        subject_id = payload.get("id")
        username = payload.get("username")
        if not isinstance(subject_id, str) or not subject_id or not isinstance(username, str):
            raise ProviderError("Account lookup: response lacks id or username")
        return User(subject_id=subject_id, display_name=username)

    async def complete_login(
        self,
        received_code: str,
        received_state: str,
        stored: Optional[HandshakeState],
    ) -> User:
        """
        Finish a login after the provider redirects back.

        Args:
            received_code: Authorization code from the callback
            received_state: ``state`` from the callback
            stored: Handshake taken from the caller's cookie, if any

        Returns:
            The authenticated provider identity

        Raises:
            CsrfMismatch: If there is no stored handshake or the state differs
            ProviderError: If the exchange or account lookup fails
        """
        if stored is None:
            raise CsrfMismatch("No login in progress for this callback")
        if not secrets.compare_digest(received_state.encode(), stored.csrf_token.encode()):
            raise CsrfMismatch("OAuth state does not match")

        access_token = await self.exchange_code(received_code, stored.pkce_verifier)
        user = await self.fetch_user(access_token)
        logger.info(f"Provider confirmed identity: {user.subject_id}")
        return user
