# =============================================================================
# Database Connection and Schema Management
# =============================================================================
# Manages the SQLite connection, schema, and transaction discipline.
#
# Schema overview:
#   - accounts:  one row per email address, holding one credential variant
#   - mailboxes: cached mailbox names, unique per (account_id, name)
#   - messages:  cached envelopes + lazily fetched bodies,
#                unique per (account_id, mailbox_name, uid)
#
# Concurrency:
#   There is a single aiosqlite connection, opened in autocommit mode so that
#   transactions are explicit (BEGIN IMMEDIATE ... COMMIT). Every transaction
#   and every read goes through one asyncio.Lock, so a reader can never run
#   between the DELETE and the INSERT of a mailbox-list replace.
# =============================================================================

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

from kestrel.config import Config


logger = logging.getLogger(__name__)

# Bumped whenever the tables below change shape
SCHEMA_VERSION = 1


class Database:
    """
    Owns the SQLite cache file: one connection, its schema and its lock.

    Usage:
        >>> db = Database(path)
        >>> await db.connect()
        >>> async with db.transaction() as conn:
        ...     await conn.execute("INSERT ...")
        >>> async with db.read() as conn:
        ...     async with conn.execute("SELECT ...") as cursor:
        ...         rows = await cursor.fetchall()
        >>> await db.close()

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        """
        Set up the (not yet opened) cache database.

        Args:
            db_path: SQLite file. Defaults to Config.database_path().
        """
        self.db_path = db_path or Config.database_path()
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """
        Open the connection, switch on WAL and foreign keys, create tables.

        The file and its parent directory are created on first use.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # isolation_level=None: no implicit transactions, we BEGIN ourselves
        self._connection = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._connection.row_factory = aiosqlite.Row

        # Enable foreign keys (off by default in SQLite)
        await self._connection.execute("PRAGMA foreign_keys = ON")

        # WAL lets the file be read by other processes while we write
        await self._connection.execute("PRAGMA journal_mode = WAL")

        await self._init_schema()
        logger.debug(f"Database ready at {self.db_path}")

    async def close(self) -> None:
        """Close the connection. Safe to call twice."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        """
        The open aiosqlite connection.

        Raises:
            RuntimeError: connect() hasn't been called.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run a block of writes atomically.

        Commits if the block exits normally, rolls back on any exception
        (which is then re-raised).
        """
        async with self._lock:
            conn = self.conn
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException as e:
                await conn.execute("ROLLBACK")
                logger.warning(f"Transaction rolled back due to {type(e).__name__}: {e}")
                raise
            else:
                await conn.execute("COMMIT")

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block of reads that won't interleave with a transaction."""
        async with self._lock:
            yield self.conn

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    async def _init_schema(self) -> None:
        """Create tables if this is a fresh database."""
        try:
            async with self.conn.execute(
                "SELECT version FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
                current_version = row[0] if row else 0
        except aiosqlite.OperationalError:
            # No schema_version table yet
            current_version = 0

        if current_version < SCHEMA_VERSION:
            await self._create_schema()

    async def _create_schema(self) -> None:
        """Create every table and index, then record SCHEMA_VERSION."""
        schema = f"""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );

        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL UNIQUE,
            imap_url TEXT NOT NULL,
            oauth_access_token TEXT NOT NULL DEFAULT '',
            oauth_refresh_token TEXT NOT NULL DEFAULT '',
            oauth_expiry INTEGER NOT NULL DEFAULT 0,
            app_specific_password TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS mailboxes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            last_updated TEXT NOT NULL,
            UNIQUE(account_id, name)
        );

        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            mailbox_name TEXT NOT NULL,
            account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            uid INTEGER NOT NULL,
            envelope BLOB,
            body_plain TEXT NOT NULL DEFAULT '',
            body_html TEXT NOT NULL DEFAULT '',
            body_raw BLOB,
            received_at TEXT NOT NULL,
            last_updated TEXT NOT NULL,
            UNIQUE(account_id, mailbox_name, uid)
        );

        CREATE INDEX IF NOT EXISTS idx_messages_mailbox
            ON messages(account_id, mailbox_name, uid);

        INSERT OR REPLACE INTO schema_version (version) VALUES ({SCHEMA_VERSION});
        """
        async with self._lock:
            await self.conn.executescript(schema)
        logger.info(f"Created database schema version {SCHEMA_VERSION}")
