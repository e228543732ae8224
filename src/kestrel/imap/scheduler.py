# =============================================================================
# Update Scheduler
# =============================================================================
# Drives background synchronization for logged-in accounts.
#
# On start(account_id):
#   - one immediate pass: mailbox sync, then a message sync for every cached
#     mailbox, one after another
#   - two periodic loops (mailbox list, messages), each on its own interval
#
# Each tick spawns one short-lived task for that tick's sync and tracks it
# until it finishes. Overlapping ticks are harmless: the syncers' try-locks
# make the late one return immediately.
#
# stop(account_id) cancels the loops only. A sync already in flight is left
# to finish; the syncers re-check login state before writing.
# =============================================================================

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from kestrel.imap.sync import MailboxSyncer, MessageSyncer, SyncResult
from kestrel.storage.repository import CacheStore


logger = logging.getLogger(__name__)


class UpdateScheduler:
    """
    Periodic sync driver.

    Usage:
        >>> scheduler = UpdateScheduler(store, mailbox_syncer, message_syncer)
        >>> scheduler.start(account_id)
        >>> # ... later ...
        >>> scheduler.stop(account_id)
        >>> await scheduler.stop_all()

    Args:
        store: CacheStore, used to list the cached mailboxes to sync.
        mailbox_syncer: Syncs the mailbox list.
        message_syncer: Syncs messages for one mailbox.
        mailbox_interval: Seconds between mailbox list syncs.
        message_interval: Seconds between message sync passes.
    """

    # How long stop_all() waits for in-flight syncs before cancelling them
    SHUTDOWN_TIMEOUT = 5.0  # seconds

    def __init__(
        self,
        store: CacheStore,
        mailbox_syncer: MailboxSyncer,
        message_syncer: MessageSyncer,
        mailbox_interval: float = 5 * 60,
        message_interval: float = 5 * 60,
    ) -> None:
        self.store = store
        self.mailbox_syncer = mailbox_syncer
        self.message_syncer = message_syncer
        self.mailbox_interval = mailbox_interval
        self.message_interval = message_interval

        self._loops: dict[int, list[asyncio.Task]] = {}   # account_id -> loop tasks
        self._inflight: set[asyncio.Task] = set()

    def is_running(self, account_id: int) -> bool:
        """True if periodic syncs are scheduled for the account."""
        return account_id in self._loops

    @property
    def inflight(self) -> int:
        """Number of sync tasks currently running."""
        return len(self._inflight)

    def start(self, account_id: int) -> None:
        """Run an immediate pass and schedule periodic syncs for an account."""
        if account_id in self._loops:
            logger.debug(f"Scheduler already running for account {account_id}")
            return

        logger.info(f"Starting scheduled sync for account {account_id}")
        self._spawn(self.sync_now(account_id), f"sync-initial-{account_id}")
        self._loops[account_id] = [
            asyncio.create_task(
                self._loop(self.mailbox_interval, lambda: self.mailbox_syncer.sync(account_id),
                           f"sync-mailboxes-{account_id}"),
                name=f"loop-mailboxes-{account_id}",
            ),
            asyncio.create_task(
                self._loop(self.message_interval, lambda: self.sync_messages(account_id),
                           f"sync-messages-{account_id}"),
                name=f"loop-messages-{account_id}",
            ),
        ]

    def stop(self, account_id: int) -> None:
        """Cancel future ticks for an account. In-flight syncs keep running."""
        loops = self._loops.pop(account_id, [])
        for task in loops:
            task.cancel()
        if loops:
            logger.info(f"Stopped scheduled sync for account {account_id}")

    async def stop_all(self) -> None:
        """Cancel every loop and wait briefly for in-flight syncs to finish."""
        for account_id in list(self._loops):
            self.stop(account_id)

        if self._inflight:
            pending = list(self._inflight)
            try:
                await asyncio.wait_for(
                    asyncio.gather(*pending, return_exceptions=True),
                    timeout=self.SHUTDOWN_TIMEOUT,
                )
            except asyncio.TimeoutError:
                logger.warning(f"{len(self._inflight)} sync tasks did not finish, cancelled")

    async def sync_now(self, account_id: int) -> list[SyncResult]:
        """
        One full pass: mailbox list, then messages in every cached mailbox.

        Returns:
            The mailbox result followed by one result per mailbox.
        """
        results = [await self.mailbox_syncer.sync(account_id)]
        results.extend(await self.sync_messages(account_id))
        return results

    async def sync_messages(self, account_id: int) -> list[SyncResult]:
        """Message sync for every cached mailbox, sequentially."""
        results = []
        for name in await self.store.get_mailbox_names(account_id):
            results.append(await self.message_syncer.sync(account_id, name))
        return results

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._inflight.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Sync task {task.get_name()} failed: {error!r}")

    async def _loop(
        self,
        interval: float,
        make_sync: Callable[[], Coroutine[Any, Any, Any]],
        task_name: str,
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            self._spawn(make_sync(), task_name)
