"""
Tests for mailbox and message synchronization

Tests cover:
- Mailbox list reconciliation and its events
- UID diffing: only unseen UIDs are fetched
- Overlap suppression
- Partial failures and auth failures
- Logout racing a sync
"""
import asyncio

import pytest

from kestrel.core import Envelope
from kestrel.events import MailboxesUpdated, MessagesUpdated
from kestrel.imap.sync import MailboxSyncer, MessageSyncer, SyncGuard, compute_new_uids


def logged_in(_account_id):
    return True


@pytest.fixture
def mailbox_syncer(store, sessions, notifier):
    return MailboxSyncer(store, sessions, notifier, is_logged_in=logged_in)


@pytest.fixture
def message_syncer(store, sessions, notifier):
    return MessageSyncer(store, sessions, notifier, is_logged_in=logged_in)


class TestMailboxSync:
    """Tests for mailbox list reconciliation"""

    async def test_first_sync_caches_list(self, mailbox_syncer, store, notifier, account_id):
        result = await mailbox_syncer.sync(account_id)

        assert result.changed
        assert await store.get_mailbox_names(account_id) == ["INBOX", "Sent"]
        assert notifier.of_type(MailboxesUpdated) == [MailboxesUpdated(account_id=account_id)]

    async def test_unchanged_list_writes_nothing(
        self, mailbox_syncer, store, notifier, account_id, clock
    ):
        await mailbox_syncer.sync(account_id)
        stamp = await store.mailboxes_last_updated(account_id)
        clock.advance(minutes=1)

        result = await mailbox_syncer.sync(account_id)

        assert not result.changed
        assert await store.mailboxes_last_updated(account_id) == stamp
        assert len(notifier.of_type(MailboxesUpdated)) == 1

    async def test_touch_refreshes_unchanged_list(self, mailbox_syncer, store, account_id, clock):
        await mailbox_syncer.sync(account_id)
        clock.advance(minutes=6)

        await mailbox_syncer.sync(account_id, touch=True)

        assert await store.mailboxes_last_updated(account_id) == clock()

    async def test_removed_mailbox_disappears(self, mailbox_syncer, store, server, account_id):
        await mailbox_syncer.sync(account_id)
        del server.mailboxes["Sent"]
        server.add_mailbox("Archive")

        await mailbox_syncer.sync(account_id)

        assert await store.get_mailbox_names(account_id) == ["Archive", "INBOX"]

    async def test_noselect_and_utf7(self, mailbox_syncer, store, server, account_id):
        server.noselect.append("[Gmail]")
        server.add_mailbox("Entw&APw-rfe")

        await mailbox_syncer.sync(account_id)

        assert await store.get_mailbox_names(account_id) == ["Entwürfe", "INBOX", "Sent"]

    async def test_transport_error_keeps_cache(
        self, mailbox_syncer, store, server, notifier, account_id
    ):
        await store.replace_mailboxes(account_id, ["Old"])
        server.refuse = True

        result = await mailbox_syncer.sync(account_id)

        assert not result.success
        assert await store.get_mailbox_names(account_id) == ["Old"]
        assert notifier.events == []

    async def test_logout_during_sync_discards_result(self, store, sessions, notifier, account_id):
        answers = iter([True, False])
        syncer = MailboxSyncer(store, sessions, notifier, is_logged_in=lambda _: next(answers))

        result = await syncer.sync(account_id)

        assert result.skipped
        assert await store.get_mailbox_names(account_id) == []
        assert notifier.events == []

    async def test_logged_out_account_is_skipped(self, store, sessions, server, notifier, account_id):
        syncer = MailboxSyncer(store, sessions, notifier, is_logged_in=lambda _: False)

        result = await syncer.sync(account_id)

        assert result.skipped
        assert server.connections == 0


class TestMessageSync:
    """Tests for UID-diff message sync"""

    async def test_fetches_only_new_uids(self, message_syncer, store, server, notifier, account_id):
        await store.insert_messages(account_id, "INBOX", {1: Envelope(), 2: Envelope()})

        result = await message_syncer.sync(account_id, "INBOX")

        assert server.envelope_fetches() == [{3}]
        assert result.new_messages == 1
        assert await store.get_cached_uids(account_id, "INBOX") == {1, 2, 3}
        assert notifier.of_type(MessagesUpdated) == [
            MessagesUpdated(mailbox_name="INBOX", account_id=account_id)
        ]

    async def test_second_sync_fetches_nothing(self, message_syncer, store, server, notifier, account_id):
        await message_syncer.sync(account_id, "INBOX")
        before = await store.get_messages(account_id, "INBOX")
        server.commands.clear()

        result = await message_syncer.sync(account_id, "INBOX")

        assert server.envelope_fetches() == []
        assert not result.changed
        assert await store.get_messages(account_id, "INBOX") == before
        assert len(notifier.of_type(MessagesUpdated)) == 1

    async def test_cached_envelope_never_overwritten(self, message_syncer, store, account_id):
        await store.insert_messages(account_id, "INBOX", {1: Envelope(subject="local")})

        await message_syncer.sync(account_id, "INBOX")

        message = await store.get_message(account_id, "INBOX", 1)
        assert message.subject == "local"

    async def test_envelope_contents(self, message_syncer, store, account_id):
        await message_syncer.sync(account_id, "INBOX")

        message = await store.get_message(account_id, "INBOX", 2)
        assert message.subject == "Message 2"
        assert message.envelope.from_[0].email == "alice@example.com"
        assert message.envelope.body_structure.media_type == "text/plain"

    async def test_empty_mailbox_skips_uid_fetch(self, message_syncer, server, account_id):
        result = await message_syncer.sync(account_id, "Sent")

        assert result.success
        assert server.count("fetch") == 0

    async def test_server_deletions_are_retained(self, message_syncer, store, server, account_id):
        await message_syncer.sync(account_id, "INBOX")
        del server.mailboxes["INBOX"][2]

        await message_syncer.sync(account_id, "INBOX")

        assert await store.get_cached_uids(account_id, "INBOX") == {1, 2, 3}

    async def test_concurrent_sync_is_skipped(self, message_syncer, server, account_id):
        first, second = await asyncio.gather(
            message_syncer.sync(account_id, "INBOX"),
            message_syncer.sync(account_id, "INBOX"),
        )

        assert [first.skipped, second.skipped].count(True) == 1
        assert server.connections == 1

    async def test_different_mailboxes_run_concurrently(self, message_syncer, server, account_id):
        results = await asyncio.gather(
            message_syncer.sync(account_id, "INBOX"),
            message_syncer.sync(account_id, "Sent"),
        )

        assert not any(r.skipped for r in results)

    async def test_malformed_item_skipped(self, message_syncer, store, server, account_id):
        server.malformed.add(2)

        result = await message_syncer.sync(account_id, "INBOX")

        assert result.success
        assert result.new_messages == 2
        assert await store.get_cached_uids(account_id, "INBOX") == {1, 3}

    async def test_rejected_batch_skipped(self, store, sessions, server, notifier, account_id):
        syncer = MessageSyncer(store, sessions, notifier, is_logged_in=logged_in, batch_size=1)
        server.reject_batches_with.add(2)

        result = await syncer.sync(account_id, "INBOX")

        assert server.envelope_fetches() == [{1}, {2}, {3}]
        assert result.new_messages == 2
        assert await store.get_cached_uids(account_id, "INBOX") == {1, 3}

    async def test_connection_lost_commits_nothing(self, message_syncer, store, server, account_id):
        server.abort_on = "uid"

        result = await message_syncer.sync(account_id, "INBOX")

        assert not result.success
        assert await store.get_cached_uids(account_id, "INBOX") == set()
        assert server.logouts == 1

    async def test_auth_failure_triggers_logout(self, store, sessions, server, notifier, account_id):
        rejected = []

        async def on_auth_failure(failed_id):
            rejected.append(failed_id)

        syncer = MessageSyncer(
            store, sessions, notifier, is_logged_in=logged_in, on_auth_failure=on_auth_failure
        )
        server.passwords["test@example.com"] = "changed"

        result = await syncer.sync(account_id, "INBOX")

        assert not result.success
        assert rejected == [account_id]


class TestFetchPage:
    """Tests for paging straight from the server"""

    async def test_page_newest_first(self, message_syncer, store, server, account_id):
        for uid in range(4, 11):
            server.add_message("INBOX", uid)

        page = await message_syncer.fetch_page(account_id, "INBOX", start=2, limit=3)

        assert page == [8, 7, 6]
        assert await store.get_cached_uids(account_id, "INBOX") == {6, 7, 8}

    async def test_deleted_messages_excluded(self, message_syncer, server, account_id):
        server.mailboxes["INBOX"][3].deleted = True

        page = await message_syncer.fetch_page(account_id, "INBOX", limit=10)

        assert page == [2, 1]

    async def test_only_missing_uids_fetched(self, message_syncer, store, server, account_id):
        await store.insert_messages(account_id, "INBOX", {3: Envelope()})

        await message_syncer.fetch_page(account_id, "INBOX", limit=10)

        assert server.envelope_fetches() == [{1, 2}]


class TestHelpers:
    """Tests for diffing and the try-lock registry"""

    def test_compute_new_uids(self):
        assert compute_new_uids({1, 2, 3}, {1, 2}) == {3}
        assert compute_new_uids({1, 2}, {1, 2, 5}) == set()

    async def test_guard_is_non_blocking(self):
        guard = SyncGuard()
        async with guard.try_acquire("k") as outer:
            assert outer
            assert guard.is_busy("k")
            async with guard.try_acquire("k") as inner:
                assert not inner
        assert not guard.is_busy("k")
