# =============================================================================
# CacheStore - Data Access Layer
# =============================================================================
# The single place where the engine reads and writes cached state.
#
# Each entity class has one named consistency policy, declared below rather
# than re-derived at every call site:
#
#   - Mailbox list:  TTL           (re-fetched when the newest last_updated
#                                   is older than the TTL)
#   - Envelopes:     DIFF_REFRESH  (refreshed on every sync by UID set
#                                   difference; cached envelopes are never
#                                   re-fetched or overwritten)
#   - Bodies:        FETCH_ONCE    (fetched on first open, then permanent)
#
# Multi-row writes go through Database.transaction(); reads go through
# Database.read(). Both share one lock, so readers only see committed state.
# =============================================================================

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum, auto
from typing import TYPE_CHECKING

from kestrel.core import Account, EmailBody, Envelope, Message

if TYPE_CHECKING:
    from kestrel.storage.database import Database


logger = logging.getLogger(__name__)


class Consistency(Enum):
    """How a cached entity class is kept in step with the server."""
    TTL = auto()            # Valid until it's older than a fixed age
    DIFF_REFRESH = auto()   # Refreshed by set difference on every sync
    FETCH_ONCE = auto()     # Fetched on first use, never invalidated


@dataclass(frozen=True)
class CachePolicy:
    """Consistency policy for one entity class."""
    consistency: Consistency
    ttl: timedelta | None = None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CacheStore:
    """
    Durable cache of accounts, mailboxes and messages.

    Usage:
        >>> store = CacheStore(database)
        >>> if not await store.is_mailbox_cache_fresh(account_id):
        ...     ...  # go to the server
        >>> names = await store.get_mailbox_names(account_id)

    Attributes:
        db: Connected Database instance.
        policies: Consistency policy per entity class
                  ("mailboxes", "envelopes", "bodies").
    """

    def __init__(
        self,
        db: "Database",
        mailbox_ttl: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Args:
            db: Connected Database instance.
            mailbox_ttl: Maximum age of the cached mailbox list.
            clock: Returns the current UTC time. Overridden in tests.
        """
        self.db = db
        self.clock = clock
        self.policies: dict[str, CachePolicy] = {
            "mailboxes": CachePolicy(Consistency.TTL, ttl=mailbox_ttl),
            "envelopes": CachePolicy(Consistency.DIFF_REFRESH),
            "bodies": CachePolicy(Consistency.FETCH_ONCE),
        }

    def _now(self) -> str:
        return self.clock().isoformat()

    # =========================================================================
    # Account Operations
    # =========================================================================

    async def get_all_accounts(self) -> list[Account]:
        """Get all accounts, including logged-out ones."""
        async with self.db.read() as conn:
            async with conn.execute("SELECT * FROM accounts ORDER BY id") as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_account(row) for row in rows]

    async def get_account(self, account_id: int) -> Account | None:
        """Get an account by ID, or None."""
        async with self.db.read() as conn:
            async with conn.execute(
                "SELECT * FROM accounts WHERE id = ?", (account_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_account(row) if row else None

    async def get_account_by_email(self, email: str) -> Account | None:
        """Get an account by its email address, or None."""
        async with self.db.read() as conn:
            async with conn.execute(
                "SELECT * FROM accounts WHERE email = ?", (email,)
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_account(row) if row else None

    async def save_account(self, account: Account) -> Account:
        """
        Insert or update an account, keyed by email.

        Logging in again with the same address updates the existing row in
        place, so its cached mailboxes and messages are kept.

        Returns:
            The account with id and created_at populated.
        """
        async with self.db.transaction() as conn:
            await conn.execute(
                """INSERT INTO accounts
                   (email, imap_url, oauth_access_token, oauth_refresh_token,
                    oauth_expiry, app_specific_password, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(email) DO UPDATE SET
                     imap_url = excluded.imap_url,
                     oauth_access_token = excluded.oauth_access_token,
                     oauth_refresh_token = excluded.oauth_refresh_token,
                     oauth_expiry = excluded.oauth_expiry,
                     app_specific_password = excluded.app_specific_password""",
                (account.email, account.imap_url, account.oauth_access_token,
                 account.oauth_refresh_token, account.oauth_expiry,
                 account.app_specific_password, self._now()),
            )
            async with conn.execute(
                "SELECT id, created_at FROM accounts WHERE email = ?",
                (account.email,),
            ) as cursor:
                row = await cursor.fetchone()

        account.id = row["id"]
        account.created_at = row["created_at"]
        return account

    async def update_oauth_tokens(
        self,
        account_id: int,
        access_token: str,
        refresh_token: str,
        expiry: int,
        replacing: str | None = None,
    ) -> bool:
        """
        Persist a refreshed OAuth token set.

        With `replacing`, the row is only updated while it still holds that
        refresh token, so a logout that lands mid-refresh isn't undone.

        Returns:
            True if the row was updated.
        """
        query = """UPDATE accounts SET oauth_access_token = ?,
                   oauth_refresh_token = ?, oauth_expiry = ?,
                   app_specific_password = ''
                   WHERE id = ?"""
        params: tuple = (access_token, refresh_token, expiry, account_id)
        if replacing is not None:
            query += " AND oauth_refresh_token = ?"
            params += (replacing,)

        async with self.db.transaction() as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount > 0

    async def update_password(self, account_id: int, password: str) -> None:
        """Switch an account to a new app-specific password, dropping any OAuth tokens."""
        async with self.db.transaction() as conn:
            await conn.execute(
                """UPDATE accounts SET app_specific_password = ?,
                   oauth_access_token = '', oauth_refresh_token = '',
                   oauth_expiry = 0
                   WHERE id = ?""",
                (password, account_id),
            )

    async def clear_credentials(self, account_id: int) -> None:
        """Logically log an account out. The row and its cache are kept."""
        async with self.db.transaction() as conn:
            await conn.execute(
                """UPDATE accounts SET oauth_access_token = '',
                   oauth_refresh_token = '', oauth_expiry = 0,
                   app_specific_password = ''
                   WHERE id = ?""",
                (account_id,),
            )

    def _row_to_account(self, row) -> Account:
        return Account(
            id=row["id"],
            email=row["email"],
            imap_url=row["imap_url"],
            oauth_access_token=row["oauth_access_token"],
            oauth_refresh_token=row["oauth_refresh_token"],
            oauth_expiry=row["oauth_expiry"],
            app_specific_password=row["app_specific_password"],
            created_at=row["created_at"],
        )

    # =========================================================================
    # Mailbox Operations
    # =========================================================================

    async def get_mailbox_names(self, account_id: int) -> list[str]:
        """Cached mailbox names for an account, alphabetically."""
        async with self.db.read() as conn:
            async with conn.execute(
                "SELECT name FROM mailboxes WHERE account_id = ? ORDER BY name",
                (account_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [row["name"] for row in rows]

    async def mailboxes_last_updated(self, account_id: int) -> datetime | None:
        """Newest last_updated across the account's mailboxes, or None."""
        async with self.db.read() as conn:
            async with conn.execute(
                "SELECT MAX(last_updated) FROM mailboxes WHERE account_id = ?",
                (account_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if not row or row[0] is None:
            return None
        return datetime.fromisoformat(row[0])

    async def is_mailbox_cache_fresh(self, account_id: int) -> bool:
        """
        Check the mailbox list against its TTL.

        An empty cache is never fresh.
        """
        last_updated = await self.mailboxes_last_updated(account_id)
        if last_updated is None:
            return False
        ttl = self.policies["mailboxes"].ttl
        return self.clock() - last_updated < ttl

    async def replace_mailboxes(self, account_id: int, names: Iterable[str]) -> None:
        """Replace the account's whole mailbox set in one transaction."""
        now = self._now()
        async with self.db.transaction() as conn:
            await conn.execute(
                "DELETE FROM mailboxes WHERE account_id = ?", (account_id,)
            )
            await conn.executemany(
                "INSERT INTO mailboxes (account_id, name, last_updated) VALUES (?, ?, ?)",
                [(account_id, name, now) for name in set(names)],
            )

    async def touch_mailboxes(self, account_id: int) -> None:
        """Mark the cached list as just verified against the server."""
        async with self.db.transaction() as conn:
            await conn.execute(
                "UPDATE mailboxes SET last_updated = ? WHERE account_id = ?",
                (self._now(), account_id),
            )

    # =========================================================================
    # Message Operations
    # =========================================================================

    async def get_cached_uids(self, account_id: int, mailbox_name: str) -> set[int]:
        """All UIDs cached for a mailbox."""
        async with self.db.read() as conn:
            async with conn.execute(
                "SELECT uid FROM messages WHERE account_id = ? AND mailbox_name = ?",
                (account_id, mailbox_name),
            ) as cursor:
                rows = await cursor.fetchall()
        return {row["uid"] for row in rows}

    async def insert_messages(
        self,
        account_id: int,
        mailbox_name: str,
        envelopes: dict[int, Envelope],
    ) -> int:
        """
        Insert newly seen messages in one transaction.

        A UID that is already cached is left untouched, so the first-seen
        envelope always wins.

        Returns:
            Number of rows actually inserted.
        """
        if not envelopes:
            return 0

        now = self._now()
        inserted = 0
        async with self.db.transaction() as conn:
            for uid, envelope in envelopes.items():
                cursor = await conn.execute(
                    """INSERT INTO messages
                       (mailbox_name, account_id, uid, envelope,
                        received_at, last_updated)
                       VALUES (?, ?, ?, ?, ?, ?)
                       ON CONFLICT(account_id, mailbox_name, uid) DO NOTHING""",
                    (mailbox_name, account_id, uid, envelope.to_json(), now, now),
                )
                inserted += cursor.rowcount
                await cursor.close()
        return inserted

    async def get_messages(
        self,
        account_id: int,
        mailbox_name: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Message]:
        """
        Cached messages for a mailbox, newest first.

        UIDs only grow within a mailbox, so UID order is arrival order on the
        server. received_at is when we cached the row, which for paged-in
        older mail can be later than for newer mail.
        """
        async with self.db.read() as conn:
            async with conn.execute(
                """SELECT * FROM messages
                   WHERE account_id = ? AND mailbox_name = ?
                   ORDER BY uid DESC
                   LIMIT ? OFFSET ?""",
                (account_id, mailbox_name, limit, offset),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    async def get_message(
        self, account_id: int, mailbox_name: str, uid: int
    ) -> Message | None:
        """A single cached message, or None."""
        async with self.db.read() as conn:
            async with conn.execute(
                """SELECT * FROM messages
                   WHERE account_id = ? AND mailbox_name = ? AND uid = ?""",
                (account_id, mailbox_name, uid),
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_message(row) if row else None

    async def get_body(
        self, account_id: int, mailbox_name: str, uid: int
    ) -> EmailBody | None:
        """
        Cached body for a message.

        Returns None if the message isn't cached at all; an empty EmailBody
        if it is cached but the body hasn't been fetched yet.
        """
        async with self.db.read() as conn:
            async with conn.execute(
                """SELECT body_plain, body_html FROM messages
                   WHERE account_id = ? AND mailbox_name = ? AND uid = ?""",
                (account_id, mailbox_name, uid),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return EmailBody(plain=row["body_plain"] or "", html=row["body_html"] or "")

    async def save_body(
        self,
        account_id: int,
        mailbox_name: str,
        uid: int,
        body: EmailBody,
    ) -> bool:
        """
        Store both body fields in one statement, even if one is empty.

        Returns:
            False if there was no cached row to update.
        """
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                """UPDATE messages SET body_plain = ?, body_html = ?, last_updated = ?
                   WHERE account_id = ? AND mailbox_name = ? AND uid = ?""",
                (body.plain, body.html, self._now(), account_id, mailbox_name, uid),
            )
            updated = cursor.rowcount
            await cursor.close()
        if not updated:
            logger.warning(f"No cached row for {mailbox_name}:{uid}, body not stored")
        return bool(updated)

    def _row_to_message(self, row) -> Message:
        return Message(
            id=row["id"],
            account_id=row["account_id"],
            mailbox_name=row["mailbox_name"],
            uid=row["uid"],
            envelope=Envelope.from_json(row["envelope"]),
            body_plain=row["body_plain"] or "",
            body_html=row["body_html"] or "",
            body_raw=row["body_raw"] or b"",
            received_at=row["received_at"],
            last_updated=row["last_updated"],
        )
