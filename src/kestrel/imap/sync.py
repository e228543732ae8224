# =============================================================================
# Mailbox and Message Synchronization
# =============================================================================
# Reconciles server state into the CacheStore.
#
# Mailbox list:
#   The remote name list is compared with the cached one as a set. If they
#   differ, the cached set is replaced wholesale in one transaction; if not,
#   nothing is written and nothing is announced.
#
# Messages (per mailbox):
#   1. SELECT, then fetch the complete remote UID set (UID item only)
#   2. new = remote - cached
#   3. Fetch ENVELOPE + BODYSTRUCTURE for the new UIDs only, in batches
#   4. Insert them in one transaction; existing rows are never touched
#   Messages deleted on the server are kept locally.
#
# Overlap suppression:
#   Each (operation, account[, mailbox]) has its own lock in a SyncGuard.
#   A sync that finds its lock held returns immediately; it doesn't queue.
#
# Every sync is strictly fetch -> commit -> notify.
# =============================================================================

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Hashable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from kestrel.errors import AuthenticationError, MailError
from kestrel.events import EventNotifier, MailboxesUpdated, MessagesUpdated
from kestrel.imap import protocol

if TYPE_CHECKING:
    from kestrel.imap.client import SessionFactory
    from kestrel.storage.repository import CacheStore


logger = logging.getLogger(__name__)

# Called with the account id when the server or OAuth provider rejects
# the account's credentials
AuthFailureHandler = Callable[[int], Awaitable[None]]


@dataclass
class SyncResult:
    """
    Outcome of one sync call.

    Attributes:
        account_id: Account that was synced.
        mailbox: Mailbox name for message syncs, None for mailbox-list syncs.
        skipped: True if another sync held the lock or the account is
                 logged out; nothing was done.
        changed: True if the cache was written.
        new_messages: Rows inserted (message syncs only).
        error: Error message if the sync was aborted.
    """
    account_id: int
    mailbox: str | None = None
    skipped: bool = False
    changed: bool = False
    new_messages: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


def compute_new_uids(remote: set[int], cached: set[int]) -> set[int]:
    """UIDs on the server that aren't cached yet."""
    return remote - cached


class SyncGuard:
    """
    Registry of non-blocking locks keyed by operation and account.

    Usage:
        >>> async with guard.try_acquire(("messages", 1, "INBOX")) as acquired:
        ...     if not acquired:
        ...         return  # someone else is already syncing it
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}

    def is_busy(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def try_acquire(self, key: Hashable) -> AsyncIterator[bool]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            yield False
            return
        # Uncontended, so this doesn't suspend
        await lock.acquire()
        try:
            yield True
        finally:
            lock.release()


class _Syncer:
    """Shared wiring for the two syncers."""

    def __init__(
        self,
        store: "CacheStore",
        sessions: "SessionFactory",
        notifier: EventNotifier,
        is_logged_in: Callable[[int], bool],
        on_auth_failure: AuthFailureHandler | None = None,
        guard: SyncGuard | None = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.notifier = notifier
        self.is_logged_in = is_logged_in
        self.on_auth_failure = on_auth_failure
        self.guard = guard or SyncGuard()

    async def _handle_error(self, result: SyncResult, error: MailError) -> SyncResult:
        result.error = str(error)
        if isinstance(error, AuthenticationError):
            logger.warning(f"Account {result.account_id} rejected, logging out: {error}")
            if self.on_auth_failure is not None:
                await self.on_auth_failure(result.account_id)
        else:
            logger.error(f"Sync aborted for account {result.account_id}: {error}")
        return result


class MailboxSyncer(_Syncer):
    """Keeps the cached mailbox list equal to the server's."""

    async def sync(self, account_id: int, touch: bool = False) -> SyncResult:
        """
        Reconcile the mailbox list for one account.

        Args:
            account_id: Account to sync.
            touch: Refresh the cache timestamp even if nothing changed. Used
                   by the TTL read path so a verified list counts as fresh.
        """
        result = SyncResult(account_id=account_id)

        async with self.guard.try_acquire(("mailboxes", account_id)) as acquired:
            if not acquired:
                logger.debug(f"Mailbox sync already running for account {account_id}")
                result.skipped = True
                return result
            if not self.is_logged_in(account_id):
                result.skipped = True
                return result

            try:
                async with self.sessions.open(account_id) as session:
                    remote = await protocol.list_mailboxes(session)
            except MailError as e:
                return await self._handle_error(result, e)

            # Logout may have happened while we were on the network
            if not self.is_logged_in(account_id):
                logger.info(f"Account {account_id} logged out during mailbox sync, discarding")
                result.skipped = True
                return result

            cached = await self.store.get_mailbox_names(account_id)
            if set(remote) == set(cached):
                if touch:
                    await self.store.touch_mailboxes(account_id)
                return result

            await self.store.replace_mailboxes(account_id, remote)
            result.changed = True

        logger.info(f"Mailbox list for account {account_id} updated ({len(set(remote))} mailboxes)")
        self.notifier.emit(MailboxesUpdated(account_id=account_id))
        return result


class MessageSyncer(_Syncer):
    """Caches envelopes for UIDs the cache hasn't seen yet."""

    def __init__(self, *args, batch_size: int = protocol.BATCH_SIZE, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.batch_size = batch_size

    async def sync(self, account_id: int, mailbox_name: str) -> SyncResult:
        """Fetch and cache envelopes for new messages in one mailbox."""
        result = SyncResult(account_id=account_id, mailbox=mailbox_name)

        async with self.guard.try_acquire(("messages", account_id, mailbox_name)) as acquired:
            if not acquired:
                logger.debug(f"Message sync already running for {mailbox_name} (account {account_id})")
                result.skipped = True
                return result
            if not self.is_logged_in(account_id):
                result.skipped = True
                return result

            try:
                async with self.sessions.open(account_id) as session:
                    exists = await protocol.select(session, mailbox_name)
                    remote = await protocol.fetch_uids(session, exists)
                    cached = await self.store.get_cached_uids(account_id, mailbox_name)
                    new_uids = compute_new_uids(remote, cached)
                    if not new_uids:
                        return result

                    logger.info(f"Fetching {len(new_uids)} new envelopes in {mailbox_name}")
                    envelopes = await protocol.fetch_envelopes(session, new_uids, self.batch_size)
            except MailError as e:
                return await self._handle_error(result, e)

            if not self.is_logged_in(account_id):
                logger.info(f"Account {account_id} logged out during message sync, discarding")
                result.skipped = True
                return result

            skipped = len(new_uids) - len(envelopes)
            if skipped:
                logger.warning(f"{skipped} of {len(new_uids)} envelopes in {mailbox_name} could not be fetched")

            result.new_messages = await self.store.insert_messages(
                account_id, mailbox_name, envelopes
            )
            result.changed = result.new_messages > 0

        if result.changed:
            self.notifier.emit(MessagesUpdated(mailbox_name=mailbox_name, account_id=account_id))
        return result

    async def fetch_page(
        self,
        account_id: int,
        mailbox_name: str,
        start: int = 0,
        limit: int = 10,
    ) -> list[int]:
        """
        Cache one page of a mailbox straight from the server, newest first.

        Used when a list read asks for more than the cache holds. UIDs come
        from UID SEARCH NOT DELETED, so \\Deleted messages are excluded.
        Relies on the unique constraint rather than the sync lock, so it can
        run alongside a sync of the same mailbox.

        Returns:
            The page's UIDs, newest first.

        Raises:
            MailError: If the server can't be reached or rejects us.
        """
        async with self.sessions.open(account_id) as session:
            await protocol.select(session, mailbox_name)
            uids = await protocol.search_uids(session)
            page = sorted(uids, reverse=True)[start:start + limit]
            if not page:
                return []

            cached = await self.store.get_cached_uids(account_id, mailbox_name)
            missing = compute_new_uids(set(page), cached)
            envelopes = {}
            if missing:
                envelopes = await protocol.fetch_envelopes(session, missing, self.batch_size)

        if envelopes and self.is_logged_in(account_id):
            inserted = await self.store.insert_messages(account_id, mailbox_name, envelopes)
            if inserted:
                self.notifier.emit(MessagesUpdated(mailbox_name=mailbox_name, account_id=account_id))
        return page
