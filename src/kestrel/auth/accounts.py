# =============================================================================
# Account Manager
# =============================================================================
# Tracks which accounts are logged in and handles login/logout.
#
# "Logged in" means the account is in the in-memory registry. On startup the
# registry is rebuilt from every stored account that still has credentials.
# Logout clears the stored credentials but keeps the row and its cache.
# =============================================================================

import logging
from typing import TYPE_CHECKING

from kestrel.auth.oauth import TokenBundle
from kestrel.core import Account
from kestrel.events import EventNotifier, UserLoggedOut

if TYPE_CHECKING:
    from kestrel.imap.client import SessionFactory
    from kestrel.storage.repository import CacheStore


logger = logging.getLogger(__name__)


class AccountManager:
    """
    Login state for all accounts.

    Args:
        store: Where accounts are persisted.
        sessions: Used to verify password logins before saving them.
        notifier: Receives UserLoggedOut events.
    """

    def __init__(
        self,
        store: "CacheStore",
        sessions: "SessionFactory",
        notifier: EventNotifier,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.notifier = notifier
        self._logged_in: dict[int, Account] = {}

    async def restore(self) -> list[int]:
        """
        Load every stored account that still has credentials.

        Returns:
            IDs of the accounts now considered logged in.
        """
        for account in await self.store.get_all_accounts():
            if account.id is not None and account.has_credentials:
                self._logged_in[account.id] = account
        logger.info(f"Restored {len(self._logged_in)} logged-in accounts")
        return self.account_ids()

    def is_logged_in(self, account_id: int) -> bool:
        return account_id in self._logged_in

    def account_ids(self) -> list[int]:
        return sorted(self._logged_in)

    def get(self, account_id: int) -> Account | None:
        return self._logged_in.get(account_id)

    async def login_password(self, imap_url: str, email: str, password: str) -> int:
        """
        Verify a password against the server, then save and register the account.

        Returns:
            The account ID.

        Raises:
            AuthenticationError: The server rejected the password.
            TransportError: The server couldn't be reached.
        """
        account = Account(email=email, imap_url=imap_url, app_specific_password=password)
        async with self.sessions.connect(account):
            pass

        account = await self.store.save_account(account)
        self._logged_in[account.id] = account
        logger.info(f"Logged in {email} with password")
        return account.id

    async def login_oauth(self, email: str, tokens: TokenBundle, imap_url: str) -> int:
        """
        Verify a completed OAuth flow's token over XOAUTH2, then save and
        register the account.

        Raises:
            AuthenticationError: The server rejected the token.
            TransportError: The server couldn't be reached.
        """
        account = Account(
            email=email,
            imap_url=imap_url,
            oauth_access_token=tokens.access_token,
            oauth_refresh_token=tokens.refresh_token,
            oauth_expiry=tokens.expiry,
        )
        async with self.sessions.connect(account):
            pass

        account = await self.store.save_account(account)
        self._logged_in[account.id] = account
        logger.info(f"Logged in {email} with OAuth")
        return account.id

    async def logout(self, account_id: int) -> None:
        """Clear an account's credentials and announce it."""
        await self.store.clear_credentials(account_id)
        account = self._logged_in.pop(account_id, None)
        if account is not None:
            account.clear_credentials()
        logger.info(f"Logged out account {account_id}")
        self.notifier.emit(UserLoggedOut(account_id=account_id))
