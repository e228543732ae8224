# =============================================================================
# Credential Provider
# =============================================================================
# Turns an Account's stored credential into something an IMAP session can
# log in with, refreshing OAuth access tokens on the way if needed.
#
# Refreshed tokens are written to the CacheStore before they are used, so
# a restart picks up the new token instead of forcing a new browser login.
# =============================================================================

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from kestrel.core import Account
from kestrel.errors import AuthenticationError

if TYPE_CHECKING:
    from kestrel.auth.oauth import OAuthProvider
    from kestrel.storage.repository import CacheStore


logger = logging.getLogger(__name__)

# Refresh when the access token has less than this long to live
REFRESH_MARGIN = 10  # seconds


@dataclass(frozen=True)
class AuthMaterial:
    """
    What an IMAP session needs to authenticate.

    Attributes:
        mechanism: "LOGIN" (password) or "XOAUTH2" (bearer token).
        username: The account's email address.
        secret: The password or the access token.
    """
    mechanism: str
    username: str
    secret: str

    def __repr__(self) -> str:
        return f"AuthMaterial(mechanism={self.mechanism!r}, username={self.username!r})"


class CredentialProvider:
    """
    Supplies login material for one account.

    Args:
        account: The account to authenticate. Updated in place on refresh.
        store: Where refreshed tokens are persisted.
        oauth: Provider used to refresh tokens. Only needed for OAuth accounts.
        clock: Returns the current unix time.
    """

    def __init__(
        self,
        account: Account,
        store: "CacheStore | None" = None,
        oauth: "OAuthProvider | None" = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.account = account
        self.store = store
        self.oauth = oauth
        self._clock = clock

    def needs_refresh(self) -> bool:
        """True if the access token is missing, expired, or about to expire."""
        account = self.account
        if not account.uses_oauth:
            return False
        return (
            not account.oauth_access_token
            or account.is_oauth_expired(self._clock())
            or account.oauth_expiry - self._clock() <= REFRESH_MARGIN
        )

    async def refresh_if_needed(self) -> Account:
        """
        Refresh the OAuth access token if needed and persist it.

        On failure the stale token is left in place and AuthenticationError
        propagates; the caller treats the account as logged out. The new
        tokens are dropped if the account was logged out meanwhile. A network
        failure propagates as TransportError so the next tick can retry.
        """
        if not self.needs_refresh():
            return self.account

        account = self.account
        if self.oauth is None:
            raise AuthenticationError(f"OAuth token for {account.email} expired and no provider to refresh it")

        logger.info(f"Refreshing OAuth access token for {account.email}")
        old_refresh_token = account.oauth_refresh_token
        try:
            tokens = await self.oauth.refresh(old_refresh_token)
        except AuthenticationError as e:
            logger.warning(f"Token refresh failed for {account.email}: {e}")
            raise

        if self.store is not None and account.id is not None:
            saved = await self.store.update_oauth_tokens(
                account.id, tokens.access_token, tokens.refresh_token, tokens.expiry,
                replacing=old_refresh_token,
            )
            if not saved:
                stored = await self.store.get_account(account.id)
                if stored is None or not stored.uses_oauth:
                    # Logged out while the refresh was in flight
                    raise AuthenticationError(f"{account.email} was logged out during token refresh")
                # A concurrent refresh rotated the token first; use its result
                logger.debug(f"Token for {account.email} was refreshed concurrently")
                account.set_oauth_tokens(
                    stored.oauth_access_token, stored.oauth_refresh_token, stored.oauth_expiry
                )
                return account
        account.set_oauth_tokens(tokens.access_token, tokens.refresh_token, tokens.expiry)
        return account

    async def authenticate(self) -> AuthMaterial:
        """
        Return login material, refreshing first for OAuth accounts.

        Raises:
            AuthenticationError: No credentials, or refresh rejected.
        """
        account = self.account
        if account.uses_oauth:
            await self.refresh_if_needed()
            return AuthMaterial("XOAUTH2", account.email, account.oauth_access_token)
        if account.app_specific_password:
            return AuthMaterial("LOGIN", account.email, account.app_specific_password)
        raise AuthenticationError(f"No credentials stored for {account.email}")
