# =============================================================================
# IMAP Session
# =============================================================================
# A scoped, single-use IMAP connection:
#
#     async with sessions.open(account_id) as session:
#         await session.select("INBOX")
#         ...
#
# Entering the block dials TLS, waits for the server greeting and
# authenticates (LOGIN for passwords, XOAUTH2 for OAuth). Leaving it always
# sends LOGOUT, whether the block finished, raised, or was cancelled.
#
# The transport is aioimaplib. XOAUTH2 goes through IMAP4.xoauth2(), which
# sends "user=<email>\x01auth=Bearer <token>\x01\x01" as the initial
# response, so the exchange is a single round-trip ending in OK or NO.
#
# Error mapping:
#   - socket/TLS failures, timeouts, aioimaplib exceptions -> TransportError
#   - LOGIN / XOAUTH2 answered with anything but OK         -> AuthenticationError
#   - any other NO/BAD reply                                -> ProtocolError
# =============================================================================

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import aioimaplib

from kestrel.auth.credentials import AuthMaterial, CredentialProvider
from kestrel.core import Account
from kestrel.errors import AuthenticationError, ProtocolError, TransportError
from kestrel.imap.utf7 import encode_mailbox_name

if TYPE_CHECKING:
    from kestrel.auth.oauth import OAuthProvider
    from kestrel.storage.repository import CacheStore


logger = logging.getLogger(__name__)

# (host, port, timeout) -> aioimaplib-compatible client
ConnectionFactory = Callable[[str, int, float], Any]


def default_connection_factory(host: str, port: int, timeout: float) -> aioimaplib.IMAP4_SSL:
    """Start an implicit-TLS connection. The greeting is awaited separately."""
    return aioimaplib.IMAP4_SSL(host=host, port=port, timeout=timeout)


def _quote_mailbox_name(name: str) -> str:
    """
    Quote an IMAP mailbox name if it contains special characters.

    The name is first put into modified UTF-7. Names with spaces, quotes,
    backslashes or brackets must then be sent as a quoted string with
    internal quotes and backslashes escaped.
    """
    name = encode_mailbox_name(name)
    if not name or any(c in name for c in ' "\\(){}[]%*'):
        escaped = name.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return name


def _response_text(lines: list | None) -> str:
    """The tagged completion text, which aioimaplib puts last."""
    if not lines:
        return "no response text"
    line = lines[-1]
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


class IMAPSession:
    """
    An authenticated IMAP connection. Created by with_session(), not directly.

    Attributes:
        account: The account this session is logged in as.
        selected: Name of the currently selected mailbox, if any.
    """

    def __init__(self, client: Any, account: Account) -> None:
        self._client = client
        self.account = account
        self.selected: str | None = None
        self._logged_out = False

    async def _call(self, method: str, *args: Any) -> Any:
        """Run one aioimaplib command, mapping transport failures."""
        fn = getattr(self._client, method)
        try:
            return await fn(*args)
        except aioimaplib.AioImapException as e:
            raise TransportError(f"Connection to {self.account.imap_host} failed: {e}") from e
        except (asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"Network error talking to {self.account.imap_host}: {e!r}") from e

    async def command(self, name: str, *args: Any) -> list:
        """
        Issue a command and return its untagged lines.

        Args:
            name: aioimaplib method name ("list", "examine", "fetch", ...).
            *args: Command arguments, already IMAP-formatted.

        Raises:
            ProtocolError: If the server answers NO/BAD.
        """
        response = await self._call(name, *args)
        if response.result != "OK":
            raise ProtocolError(f"{name.upper()} returned {response.result}: {_response_text(response.lines)}")
        # The last line is the tagged completion text
        return list(response.lines[:-1])

    async def uid(self, command: str, *args: Any) -> list:
        """Issue a UID-prefixed command (UID FETCH)."""
        return await self.command("uid", command, *args)

    async def uid_search(self, *criteria: str) -> list:
        """UID SEARCH with the given criteria."""
        return await self.command("uid_search", *criteria)

    async def select(self, mailbox: str, readonly: bool = True) -> list:
        """SELECT (or EXAMINE, when readonly) a mailbox."""
        data = await self.command("examine" if readonly else "select", _quote_mailbox_name(mailbox))
        self.selected = mailbox
        return data

    async def authenticate(self, material: AuthMaterial) -> None:
        """
        Log in with LOGIN or XOAUTH2.

        Raises:
            AuthenticationError: If the server rejects the credentials.
            TransportError: If the connection fails mid-login.
        """
        if material.mechanism == "XOAUTH2":
            response = await self._call("xoauth2", material.username, material.secret)
        else:
            response = await self._call("login", material.username, material.secret)

        if response.result != "OK":
            raise AuthenticationError(
                f"{material.mechanism} rejected for {material.username}: {_response_text(response.lines)}"
            )
        logger.debug(f"Authenticated {material.username} via {material.mechanism}")

    async def logout(self) -> None:
        """Send LOGOUT. Failures are logged; the connection is dropped either way."""
        if self._logged_out:
            return
        self._logged_out = True
        try:
            await self._client.logout()
        except (aioimaplib.AioImapException, asyncio.TimeoutError, OSError) as e:
            logger.debug(f"LOGOUT from {self.account.imap_host} failed: {e!r}")


@asynccontextmanager
async def with_session(
    account: Account,
    credentials: CredentialProvider,
    connection_factory: ConnectionFactory | None = None,
    timeout: float = 30.0,
) -> AsyncIterator[IMAPSession]:
    """
    Dial, authenticate, yield a live session, and always log out.

    Credentials are resolved (and OAuth tokens refreshed) before dialing, so
    an expired refresh token fails fast without a network round-trip to IMAP.

    Raises:
        TransportError: Dial/TLS failure or no greeting in time.
        AuthenticationError: Credentials rejected or unavailable.
    """
    material = await credentials.authenticate()
    factory = connection_factory or default_connection_factory

    logger.debug(f"Connecting to {account.imap_host}:{account.imap_port}")
    try:
        client = factory(account.imap_host, account.imap_port, timeout)
        await asyncio.wait_for(client.wait_hello_from_server(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransportError(f"Connection timed out to {account.imap_url}") from e
    except (OSError, aioimaplib.AioImapException) as e:
        raise TransportError(f"Could not connect to {account.imap_url}: {e}") from e

    session = IMAPSession(client, account)
    try:
        await session.authenticate(material)
        yield session
    finally:
        await session.logout()


class SessionFactory:
    """
    Opens IMAP sessions for stored accounts.

    Holds everything a session needs besides the account: the store (for
    persisting refreshed tokens), the OAuth provider, and the transport.

    Args:
        store: CacheStore the accounts live in.
        oauth: OAuth provider for token refresh. None disables OAuth refresh.
        connection_factory: Builds the aioimaplib client. Tests pass a fake.
        timeout: Connect and per-command timeout in seconds.
    """

    def __init__(
        self,
        store: "CacheStore",
        oauth: "OAuthProvider | None" = None,
        connection_factory: ConnectionFactory | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.store = store
        self.oauth = oauth
        self.connection_factory = connection_factory or default_connection_factory
        self.timeout = timeout

    def connect(self, account: Account) -> Any:
        """Session context manager for an Account object (saved or not)."""
        credentials = CredentialProvider(account, self.store, self.oauth)
        return with_session(account, credentials, self.connection_factory, self.timeout)

    @asynccontextmanager
    async def open(self, account_id: int) -> AsyncIterator[IMAPSession]:
        """
        Session context manager for a stored account.

        Raises:
            AuthenticationError: Unknown account or no credentials stored.
        """
        account = await self.store.get_account(account_id)
        if account is None or not account.has_credentials:
            raise AuthenticationError(f"Account {account_id} is not logged in")
        async with self.connect(account) as session:
            yield session
