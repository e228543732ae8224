# =============================================================================
# Kestrel Mail Engine
# =============================================================================
# MailEngine wires the components together and is what a UI talks to:
#
#   reads:    get_mailboxes / get_emails / get_body
#             (cache first; network only on a miss, a stale mailbox list,
#             or an unfetched body)
#   login:    login (password), begin_oauth_login / complete_oauth_login
#   logout:   logout
#   sync:     sync_now, plus the background UpdateScheduler
#   events:   engine.notifier.subscribe(callback)
#
# Also provides the `kestrel` command, which runs background sync for every
# logged-in account until interrupted.
# =============================================================================

import argparse
import asyncio
import getpass
import logging
import sys
from datetime import timedelta
from pathlib import Path

import httpx

from kestrel import __app_name__, __version__
from kestrel.auth import AccountManager, OAuthAttempt, OAuthLoginFlow, OAuthProvider
from kestrel.config import Config, ConfigError, ensure_directories, print_paths
from kestrel.core import Message
from kestrel.errors import AuthenticationError, MailError
from kestrel.events import CallbackNotifier, EventNotifier, OAuthFailure, OAuthSuccess
from kestrel.imap import (
    BodyFetcher,
    MailboxSyncer,
    MessageSyncer,
    SessionFactory,
    SyncGuard,
    SyncResult,
    UpdateScheduler,
)
from kestrel.imap.client import ConnectionFactory
from kestrel.storage import CacheStore, Database
from kestrel.storage.repository import utc_now


logger = logging.getLogger(__name__)


class MailEngine:
    """
    The mail synchronization and cache engine.

    Usage:
        >>> engine = MailEngine(Config.load())
        >>> engine.notifier.subscribe(on_event)
        >>> await engine.start()
        >>> account_id = await engine.login("imap.gmail.com:993", email, password)
        >>> names = await engine.get_mailboxes(account_id)
        >>> messages = await engine.get_emails(account_id, "INBOX")
        >>> html_or_text = await engine.get_body(account_id, "INBOX", messages[0].uid)
        >>> await engine.close()

    Args:
        config: Loaded configuration. Defaults to built-in defaults.
        db_path: SQLite file. Defaults to the XDG data location.
        notifier: Event sink. Defaults to a CallbackNotifier.
        connection_factory: Builds raw IMAP connections (tests pass a fake).
        oauth_transport: httpx transport for the OAuth endpoints (tests pass
                         an httpx.MockTransport).
        clock: Returns the current UTC datetime, for cache freshness.
    """

    def __init__(
        self,
        config: Config | None = None,
        db_path: Path | None = None,
        notifier: EventNotifier | None = None,
        connection_factory: ConnectionFactory | None = None,
        oauth_transport: httpx.AsyncBaseTransport | None = None,
        clock=utc_now,
    ) -> None:
        self.config = config or Config()
        self.notifier = notifier or CallbackNotifier()
        sync = self.config.sync

        self.db = Database(db_path)
        self.store = CacheStore(
            self.db,
            mailbox_ttl=timedelta(minutes=sync.mailbox_cache_ttl_minutes),
            clock=clock,
        )

        self.oauth = OAuthProvider(
            self.config.oauth,
            self.config.oauth.resolve_client_secret(),
            transport=oauth_transport,
        )
        self.login_flow = OAuthLoginFlow(self.oauth)
        self.sessions = SessionFactory(
            self.store,
            self.oauth,
            connection_factory=connection_factory,
            timeout=self.config.imap.timeout_seconds,
        )
        self.accounts = AccountManager(self.store, self.sessions, self.notifier)

        guard = SyncGuard()
        self.mailbox_syncer = MailboxSyncer(
            self.store, self.sessions, self.notifier,
            is_logged_in=self.accounts.is_logged_in,
            on_auth_failure=self._on_auth_failure,
            guard=guard,
        )
        self.message_syncer = MessageSyncer(
            self.store, self.sessions, self.notifier,
            is_logged_in=self.accounts.is_logged_in,
            on_auth_failure=self._on_auth_failure,
            guard=guard,
            batch_size=sync.batch_size,
        )
        self.bodies = BodyFetcher(self.store, self.sessions)
        self.scheduler = UpdateScheduler(
            self.store,
            self.mailbox_syncer,
            self.message_syncer,
            mailbox_interval=sync.mailbox_interval_minutes * 60,
            message_interval=sync.message_interval_minutes * 60,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, schedule: bool = True) -> list[int]:
        """
        Open the cache and restore accounts that still have credentials.

        Args:
            schedule: Start background sync for each restored account.

        Returns:
            IDs of the logged-in accounts.
        """
        await self.db.connect()
        account_ids = await self.accounts.restore()
        if schedule:
            for account_id in account_ids:
                self.scheduler.start(account_id)
        return account_ids

    async def close(self) -> None:
        """Stop background sync and close the cache."""
        await self.scheduler.stop_all()
        await self.db.close()

    async def __aenter__(self) -> "MailEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Login State
    # -------------------------------------------------------------------------

    def is_logged_in(self, account_id: int) -> bool:
        return self.accounts.is_logged_in(account_id)

    def account_ids(self) -> list[int]:
        return self.accounts.account_ids()

    async def login(self, imap_url: str, email: str, password: str) -> int | None:
        """
        Log in with an app-specific password and start syncing.

        Returns:
            The account ID, or None if the login failed (the cause is logged).
        """
        try:
            account_id = await self.accounts.login_password(imap_url, email, password)
        except MailError as e:
            logger.warning(f"Login failed for {email}: {e}")
            return None
        self.scheduler.start(account_id)
        return account_id

    def begin_oauth_login(self) -> OAuthAttempt:
        """
        Start an OAuth login. Open attempt.url in a browser and route the
        redirect's state and code to attempt.handoff.deliver().
        """
        return self.login_flow.begin()

    async def complete_oauth_login(
        self, attempt: OAuthAttempt, timeout: float | None = 300.0
    ) -> int | None:
        """
        Finish an OAuth login and start syncing.

        Emits OAuthSuccess or OAuthFailure.

        Returns:
            The account ID, or None on failure.
        """
        try:
            tokens, email = await self.login_flow.complete(attempt, timeout)
            account_id = await self.accounts.login_oauth(email, tokens, self.config.oauth.imap_url)
        except MailError as e:
            logger.warning(f"OAuth login failed: {e}")
            self.notifier.emit(OAuthFailure(reason=str(e)))
            return None

        self.notifier.emit(OAuthSuccess(account_id=account_id))
        self.scheduler.start(account_id)
        return account_id

    async def logout(self, account_id: int) -> None:
        """Stop future syncs and clear the account's credentials."""
        self.scheduler.stop(account_id)
        await self.accounts.logout(account_id)

    async def _on_auth_failure(self, account_id: int) -> None:
        if self.accounts.is_logged_in(account_id):
            await self.logout(account_id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_mailboxes(self, account_id: int) -> list[str]:
        """
        Mailbox names for an account.

        Served from the cache while it's within its TTL. Past that (or when
        empty), the list is re-synced first; if that fails, the stale cache
        is returned.
        """
        if self.is_logged_in(account_id) and not await self.store.is_mailbox_cache_fresh(account_id):
            await self.mailbox_syncer.sync(account_id, touch=True)
        return await self.store.get_mailbox_names(account_id)

    async def get_emails(
        self,
        account_id: int,
        mailbox_name: str,
        start: int = 0,
        limit: int | None = None,
    ) -> list[Message]:
        """
        One page of messages, newest first.

        Served from the cache whenever it has any rows at this offset; a
        short last page is normal for a small mailbox. Only an empty page
        is fetched from the server and cached first. Network failures fall
        back to whatever the cache has.
        """
        limit = limit or self.config.sync.page_size
        cached = await self.store.get_messages(account_id, mailbox_name, limit=limit, offset=start)
        if cached or not self.is_logged_in(account_id):
            return cached

        try:
            await self.message_syncer.fetch_page(account_id, mailbox_name, start, limit)
        except AuthenticationError as e:
            logger.warning(f"Account {account_id} rejected while paging {mailbox_name}: {e}")
            await self._on_auth_failure(account_id)
            return cached
        except MailError as e:
            logger.error(f"Could not fetch {mailbox_name} from server: {e}")
            return cached

        return await self.store.get_messages(account_id, mailbox_name, limit=limit, offset=start)

    async def get_body(self, account_id: int, mailbox_name: str, uid: int) -> str:
        """
        Body for display: HTML, else plain text, else the error sentinel.

        Returns an empty string if the body couldn't be fetched (the cause
        is logged), which callers can tell apart from the sentinel.
        """
        try:
            return await self.bodies.get_body(account_id, mailbox_name, uid)
        except AuthenticationError as e:
            logger.warning(f"Account {account_id} rejected while fetching a body: {e}")
            await self._on_auth_failure(account_id)
        except MailError as e:
            logger.error(f"Could not fetch body for {mailbox_name}:{uid}: {e}")
        return ""

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    async def sync_now(self, account_id: int) -> list[SyncResult]:
        """Run a full sync pass for an account right away."""
        return await self.scheduler.sync_now(account_id)

    async def run_forever(self) -> None:
        """Start, keep syncing in the background until cancelled, then close."""
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.close()


# =============================================================================
# CLI Entry Point
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="Kestrel: IMAP sync and cache engine",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--login",
        metavar="EMAIL",
        help="Log in with an app-specific password (prompted) and exit",
    )

    parser.add_argument(
        "--imap-url",
        default="imap.gmail.com:993",
        help="IMAP server for --login, as host:port (default: %(default)s)",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one sync pass for every logged-in account and exit",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    return parser.parse_args(argv)


async def _login(engine: MailEngine, imap_url: str, email: str) -> int:
    password = getpass.getpass(f"App password for {email}: ")
    await engine.start(schedule=False)
    try:
        account_id = await engine.login(imap_url, email, password)
    finally:
        await engine.close()
    if account_id is None:
        print(f"Login failed for {email}", file=sys.stderr)
        return 1
    print(f"Logged in {email} (account {account_id})")
    return 0


async def _sync_once(engine: MailEngine) -> int:
    account_ids = await engine.start(schedule=False)
    try:
        failed = 0
        for account_id in account_ids:
            results = await engine.sync_now(account_id)
            failed += sum(1 for r in results if not r.success)
            new = sum(r.new_messages for r in results)
            print(f"Account {account_id}: {new} new messages")
    finally:
        await engine.close()
    return 1 if failed else 0


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for Kestrel.

    This function:
        1. Parses command-line arguments
        2. Handles special commands (--paths, --version)
        3. Loads configuration and sets up logging
        4. Runs the requested action (default: background sync forever)

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)

    if args.paths:
        print_paths()
        return 0

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1

    level = logging.DEBUG if args.debug else getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    ensure_directories()

    engine = MailEngine(config=config)

    if args.login:
        return asyncio.run(_login(engine, args.imap_url, args.login))
    if args.once:
        return asyncio.run(_sync_once(engine))

    try:
        asyncio.run(engine.run_forever())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
