# =============================================================================
# OAuth2 Authorization Code + PKCE
# =============================================================================
# Implements the browser-based OAuth2 login used for XOAUTH2 accounts.
#
# Flow:
#   1. begin():    generate a PKCE verifier/challenge and a random state,
#                  build the authorization URL, and create a single-use
#                  AuthorizationHandoff for this attempt.
#   2. The UI opens the URL. After consent the provider redirects the browser
#      to the local listener, which calls handoff.deliver(state, code).
#   3. complete(): wait for the code, exchange it (with the verifier) for
#      tokens, and look up the signed-in user's email address.
#
# Each attempt owns its own handoff, so two concurrent logins can never
# receive each other's codes.
# =============================================================================

import asyncio
import base64
import hashlib
import hmac
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from kestrel.config import OAuthConfig
from kestrel.errors import AuthenticationError, TransportError


logger = logging.getLogger(__name__)

# Used when the token endpoint omits expires_in
DEFAULT_TOKEN_LIFETIME = 3600  # seconds

HTTP_TIMEOUT = 30.0  # seconds


# =============================================================================
# PKCE Helpers
# =============================================================================

def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    """32 random bytes, URL-safe base64 without padding (43 chars)."""
    return _b64url(secrets.token_bytes(32))


def generate_code_challenge(verifier: str) -> str:
    """S256 challenge: SHA-256 of the verifier, URL-safe base64 without padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    """Opaque value tying a redirect back to the attempt that started it."""
    return secrets.token_urlsafe(24)


# =============================================================================
# Tokens and Provider
# =============================================================================

@dataclass(slots=True)
class TokenBundle:
    """Container for OAuth2 tokens. expiry is a unix timestamp in seconds."""
    access_token: str
    refresh_token: str
    expiry: int


class OAuthProvider:
    """
    Talks to one OAuth2 provider's authorize, token and userinfo endpoints.

    Args:
        config: Endpoint URLs, client ID, redirect URI and scopes.
        client_secret: OAuth client secret.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
        clock: Returns the current unix time.
    """

    def __init__(
        self,
        config: OAuthConfig,
        client_secret: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.client_secret = client_secret
        self._transport = transport
        self._clock = clock

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=self._transport)

    def build_authorization_url(self, state: str, code_challenge: str) -> str:
        """Authorization URL requesting offline access with an S256 challenge."""
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.config.scopes),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.config.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, code_verifier: str) -> TokenBundle:
        """
        Exchange an authorization code for tokens.

        Raises:
            AuthenticationError: If the provider rejects the code.
            TransportError: If the token endpoint can't be reached.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": code_verifier,
            "client_id": self.config.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.config.redirect_uri,
        }
        payload = await self._post_token(data)
        if not payload.get("refresh_token"):
            logger.warning("Token endpoint returned no refresh token; refresh will not be possible")
        return self._bundle(payload, fallback_refresh="")

    async def refresh(self, refresh_token: str) -> TokenBundle:
        """
        Get a new access token with the refresh-token grant.

        Providers often omit refresh_token in the response; the old one is
        kept in that case.
        """
        if not refresh_token:
            raise AuthenticationError("No refresh token available")
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
            "client_secret": self.client_secret,
        }
        payload = await self._post_token(data)
        return self._bundle(payload, fallback_refresh=refresh_token)

    async def fetch_user_email(self, access_token: str) -> str:
        """Look up the signed-in user's email address."""
        try:
            async with self._client() as client:
                response = await client.get(
                    self.config.userinfo_url,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                response.raise_for_status()
                info = response.json()
        except httpx.HTTPStatusError as e:
            raise AuthenticationError(
                f"Userinfo request failed: {e.response.status_code} {e.response.text[:200]}"
            ) from e
        except httpx.RequestError as e:
            raise TransportError(f"Network error fetching user info: {e}") from e

        email = info.get("email", "")
        if not email:
            raise AuthenticationError("Userinfo response has no email address")
        return email

    async def _post_token(self, data: dict[str, str]) -> dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(self.config.token_url, data=data)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as e:
            error = ""
            try:
                error = e.response.json().get("error", "")
            except ValueError:
                pass
            logger.error(
                f"Token request ({data['grant_type']}) rejected: "
                f"{e.response.status_code} {error or e.response.text[:200]}"
            )
            raise AuthenticationError(
                f"Token request rejected ({e.response.status_code}): {error or 'unknown error'}"
            ) from e
        except httpx.RequestError as e:
            raise TransportError(f"Network error during token request: {e}") from e

        if not payload.get("access_token"):
            raise AuthenticationError("Token response has no access_token")
        return payload

    def _bundle(self, payload: dict[str, Any], fallback_refresh: str) -> TokenBundle:
        lifetime = int(payload.get("expires_in", DEFAULT_TOKEN_LIFETIME))
        return TokenBundle(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or fallback_refresh,
            expiry=int(self._clock()) + lifetime,
        )


# =============================================================================
# Code Handoff
# =============================================================================

class AuthorizationHandoff:
    """
    Single-use completion handle for one login attempt's authorization code.

    The redirect listener calls deliver() with the state and code from the
    callback URL. A state that doesn't match is rejected without consuming
    the handoff; a second delivery after success is rejected outright.

    Must be created and delivered to on the event loop thread. A listener
    running in another thread should use loop.call_soon_threadsafe.
    """

    def __init__(self, state: str) -> None:
        self.state = state
        self._future: asyncio.Future[str] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def deliver(self, state: str, code: str) -> None:
        """
        Hand over the authorization code.

        Raises:
            AuthenticationError: Wrong state, empty code, or already completed.
        """
        if self._future.done():
            raise AuthenticationError("Authorization already completed for this attempt")
        if not hmac.compare_digest(state.encode(), self.state.encode()):
            logger.warning("Rejected authorization callback with mismatched state")
            raise AuthenticationError("OAuth state mismatch")
        if not code:
            raise AuthenticationError("Authorization callback carried no code")
        self._future.set_result(code)

    def fail(self, reason: str) -> None:
        """Abort the attempt, e.g. when the provider redirects with ?error=."""
        if not self._future.done():
            self._future.set_exception(AuthenticationError(reason))

    async def wait(self, timeout: float | None = None) -> str:
        """
        Wait for the code.

        Raises:
            AuthenticationError: If the attempt failed or timed out.
        """
        try:
            return await asyncio.wait_for(self._future, timeout=timeout)
        except asyncio.TimeoutError:
            raise AuthenticationError("Timed out waiting for authorization") from None


# =============================================================================
# Login Flow
# =============================================================================

@dataclass
class OAuthAttempt:
    """Everything one in-progress login needs. Created by OAuthLoginFlow.begin()."""
    url: str
    handoff: AuthorizationHandoff
    code_verifier: str

    @property
    def state(self) -> str:
        return self.handoff.state


class OAuthLoginFlow:
    """
    Drives one provider's Authorization Code + PKCE login.

    Usage:
        >>> flow = OAuthLoginFlow(provider)
        >>> attempt = flow.begin()
        >>> open_browser(attempt.url)
        >>> tokens, email = await flow.complete(attempt)
    """

    def __init__(self, provider: OAuthProvider) -> None:
        self.provider = provider

    def begin(self) -> OAuthAttempt:
        verifier = generate_code_verifier()
        state = generate_state()
        url = self.provider.build_authorization_url(state, generate_code_challenge(verifier))
        return OAuthAttempt(url=url, handoff=AuthorizationHandoff(state), code_verifier=verifier)

    async def complete(
        self, attempt: OAuthAttempt, timeout: float | None = 300.0
    ) -> tuple[TokenBundle, str]:
        """
        Wait for the redirect, exchange the code and resolve the user's email.

        Returns:
            (tokens, email address)
        """
        code = await attempt.handoff.wait(timeout)
        tokens = await self.provider.exchange_code(code, attempt.code_verifier)
        email = await self.provider.fetch_user_email(tokens.access_token)
        logger.info(f"OAuth authorization completed for {email}")
        return tokens, email
