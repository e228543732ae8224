# =============================================================================
# Account Model
# =============================================================================
# Represents a logged-in (or previously logged-in) mail account.
#
# An account carries exactly one credential variant at a time:
#   - an app-specific password (IMAP LOGIN), or
#   - an OAuth token set (access token, refresh token, expiry) used with
#     SASL XOAUTH2.
#
# Logging out clears the credentials but keeps the row, so the cached
# mailboxes and messages survive a re-login.
# =============================================================================

import time
from dataclasses import dataclass


# Implicit TLS port, used when imap_url doesn't name one
DEFAULT_IMAP_PORT = 993


@dataclass
class Account:
    """
    An IMAP account and its credentials.

    Attributes:
        email: The account's email address (unique across accounts).
        imap_url: Server address as "host:port" (e.g., "imap.gmail.com:993").

        oauth_access_token: Bearer token for XOAUTH2. Empty for password accounts.
        oauth_refresh_token: Token used to obtain a new access token.
        oauth_expiry: Unix timestamp (seconds) when the access token expires.
                      0 means "no token". A negative value is treated as
                      already expired, never as "never expires".
        app_specific_password: Password for IMAP LOGIN. Empty for OAuth accounts.

        id: Database primary key. None until the account is saved.
        created_at: ISO timestamp of first login, set by storage.

    Example:
        >>> account = Account(
        ...     email="user@gmail.com",
        ...     imap_url="imap.gmail.com:993",
        ...     app_specific_password="abcd efgh ijkl mnop",
        ... )
        >>> account.imap_host
        'imap.gmail.com'
    """

    email: str
    imap_url: str

    # OAuth credential variant
    oauth_access_token: str = ""
    oauth_refresh_token: str = ""
    oauth_expiry: int = 0

    # Password credential variant
    app_specific_password: str = ""

    # Database fields
    id: int | None = None
    created_at: str = ""

    def __post_init__(self) -> None:
        if self.app_specific_password and (
            self.oauth_access_token or self.oauth_refresh_token
        ):
            raise ValueError(
                f"Account {self.email} has both a password and OAuth tokens"
            )

    # -------------------------------------------------------------------------
    # Server Address
    # -------------------------------------------------------------------------

    @property
    def imap_host(self) -> str:
        """Hostname part of imap_url."""
        host, sep, port = self.imap_url.rpartition(":")
        if sep and port.isdigit():
            return host
        return self.imap_url

    @property
    def imap_port(self) -> int:
        """Port part of imap_url, or 993 if none is given."""
        _, sep, port = self.imap_url.rpartition(":")
        if sep and port.isdigit():
            return int(port)
        return DEFAULT_IMAP_PORT

    # -------------------------------------------------------------------------
    # Credential State
    # -------------------------------------------------------------------------

    @property
    def uses_oauth(self) -> bool:
        """True if this account authenticates with XOAUTH2."""
        return bool(self.oauth_access_token or self.oauth_refresh_token)

    @property
    def has_credentials(self) -> bool:
        """True if there is anything we could log in with."""
        return self.uses_oauth or bool(self.app_specific_password)

    def is_oauth_expired(self, now: float | None = None) -> bool:
        """
        Check whether the access token has expired.

        A negative expiry is a sentinel for "already expired".
        """
        if now is None:
            now = time.time()
        return self.oauth_expiry < 0 or self.oauth_expiry < now

    def is_oauth_valid(self, now: float | None = None) -> bool:
        """True if there's an access token and it hasn't expired."""
        return bool(self.oauth_access_token) and not self.is_oauth_expired(now)

    def set_password(self, password: str) -> None:
        """Switch this account to password auth, dropping any OAuth tokens."""
        self.oauth_access_token = ""
        self.oauth_refresh_token = ""
        self.oauth_expiry = 0
        self.app_specific_password = password

    def set_oauth_tokens(
        self,
        access_token: str,
        refresh_token: str,
        expiry: int,
    ) -> None:
        """Switch this account to OAuth, dropping any stored password."""
        self.app_specific_password = ""
        self.oauth_access_token = access_token
        self.oauth_refresh_token = refresh_token
        self.oauth_expiry = expiry

    def clear_credentials(self) -> None:
        """Forget all credentials (used on logout)."""
        self.oauth_access_token = ""
        self.oauth_refresh_token = ""
        self.oauth_expiry = 0
        self.app_specific_password = ""

    def __str__(self) -> str:
        return f"{self.email} ({self.imap_url})"
