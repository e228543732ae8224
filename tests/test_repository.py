"""
Tests for the CacheStore

Tests cover:
- Account upsert and credential updates
- Mailbox list replace and TTL freshness
- Message insert (first-seen wins) and paging
- Body storage
"""
import asyncio
from datetime import timedelta

from kestrel.core import Account, EmailBody, Envelope
from kestrel.storage import CacheStore, Consistency


class TestAccounts:
    """Tests for account persistence"""

    async def test_save_assigns_id(self, store, sample_account):
        account = await store.save_account(sample_account)

        assert account.id is not None
        assert account.created_at
        loaded = await store.get_account(account.id)
        assert loaded.email == sample_account.email
        assert loaded.app_specific_password == "secret"

    async def test_login_again_updates_same_row(self, store, sample_account):
        first = await store.save_account(sample_account)
        again = await store.save_account(Account(
            email=sample_account.email,
            imap_url="imap.example.com:993",
            oauth_access_token="access",
            oauth_refresh_token="refresh",
            oauth_expiry=123,
        ))

        assert again.id == first.id
        assert len(await store.get_all_accounts()) == 1
        loaded = await store.get_account_by_email(sample_account.email)
        assert loaded.uses_oauth
        assert loaded.app_specific_password == ""

    async def test_clear_credentials_keeps_row_and_cache(self, store, account_id):
        await store.replace_mailboxes(account_id, ["INBOX"])
        await store.clear_credentials(account_id)

        account = await store.get_account(account_id)
        assert account is not None
        assert not account.has_credentials
        assert await store.get_mailbox_names(account_id) == ["INBOX"]

    async def test_update_oauth_tokens(self, store, account_id):
        await store.update_oauth_tokens(account_id, "new-access", "new-refresh", 999)

        account = await store.get_account(account_id)
        assert account.oauth_access_token == "new-access"
        assert account.oauth_expiry == 999
        assert account.app_specific_password == ""

    async def test_update_oauth_tokens_replacing(self, store, account_id):
        await store.update_oauth_tokens(account_id, "access", "refresh-1", 999)

        assert await store.update_oauth_tokens(account_id, "a2", "refresh-2", 1999, replacing="refresh-1")
        assert not await store.update_oauth_tokens(account_id, "a3", "refresh-3", 2999, replacing="refresh-1")

        account = await store.get_account(account_id)
        assert account.oauth_refresh_token == "refresh-2"

    async def test_replacing_skips_logged_out_account(self, store, account_id):
        await store.update_oauth_tokens(account_id, "access", "refresh-1", 999)
        await store.clear_credentials(account_id)

        assert not await store.update_oauth_tokens(account_id, "a2", "refresh-2", 1999, replacing="refresh-1")
        assert not (await store.get_account(account_id)).has_credentials

    async def test_update_password_drops_tokens(self, store, account_id):
        await store.update_oauth_tokens(account_id, "access", "refresh", 999)
        await store.update_password(account_id, "rotated")

        account = await store.get_account(account_id)
        assert account.app_specific_password == "rotated"
        assert not account.uses_oauth
        assert account.oauth_expiry == 0


class TestMailboxes:
    """Tests for the TTL-governed mailbox list"""

    async def test_policies_declared(self, store):
        assert store.policies["mailboxes"].consistency is Consistency.TTL
        assert store.policies["envelopes"].consistency is Consistency.DIFF_REFRESH
        assert store.policies["bodies"].consistency is Consistency.FETCH_ONCE

    async def test_replace_is_wholesale(self, store, account_id):
        await store.replace_mailboxes(account_id, ["INBOX", "Sent", "Old"])
        await store.replace_mailboxes(account_id, ["INBOX", "Archive", "INBOX"])

        assert await store.get_mailbox_names(account_id) == ["Archive", "INBOX"]

    async def test_readers_never_see_a_half_replaced_list(self, store, account_id):
        await store.replace_mailboxes(account_id, ["INBOX", "Sent"])

        _, seen = await asyncio.gather(
            store.replace_mailboxes(account_id, ["INBOX", "Drafts", "Trash"]),
            store.get_mailbox_names(account_id),
        )
        assert seen in (["INBOX", "Sent"], ["Drafts", "INBOX", "Trash"])

    async def test_empty_cache_is_stale(self, store, account_id):
        assert not await store.is_mailbox_cache_fresh(account_id)

    async def test_fresh_within_ttl(self, store, account_id, clock):
        await store.replace_mailboxes(account_id, ["INBOX"])
        clock.advance(minutes=2)
        assert await store.is_mailbox_cache_fresh(account_id)

    async def test_stale_after_ttl(self, store, account_id, clock):
        await store.replace_mailboxes(account_id, ["INBOX"])
        clock.advance(minutes=6)
        assert not await store.is_mailbox_cache_fresh(account_id)

    async def test_touch_refreshes_timestamp(self, store, account_id, clock):
        await store.replace_mailboxes(account_id, ["INBOX"])
        clock.advance(minutes=6)
        await store.touch_mailboxes(account_id)

        assert await store.mailboxes_last_updated(account_id) == clock()
        assert await store.is_mailbox_cache_fresh(account_id)

    async def test_custom_ttl(self, db, clock, account_id):
        short = CacheStore(db, mailbox_ttl=timedelta(seconds=30), clock=clock)
        await short.replace_mailboxes(account_id, ["INBOX"])
        clock.advance(minutes=1)
        assert not await short.is_mailbox_cache_fresh(account_id)


class TestMessages:
    """Tests for envelope caching"""

    async def test_duplicate_insert_keeps_first_envelope(self, store, account_id):
        first = await store.insert_messages(account_id, "INBOX", {7: Envelope(subject="first")})
        second = await store.insert_messages(account_id, "INBOX", {7: Envelope(subject="second")})

        assert (first, second) == (1, 0)
        messages = await store.get_messages(account_id, "INBOX")
        assert len(messages) == 1
        assert messages[0].envelope.subject == "first"

    async def test_same_uid_in_other_mailbox_is_distinct(self, store, account_id):
        await store.insert_messages(account_id, "INBOX", {1: Envelope()})
        await store.insert_messages(account_id, "Sent", {1: Envelope()})

        assert await store.get_cached_uids(account_id, "INBOX") == {1}
        assert await store.get_cached_uids(account_id, "Sent") == {1}

    async def test_paging_newest_first(self, store, account_id):
        await store.insert_messages(
            account_id, "INBOX", {uid: Envelope(subject=f"m{uid}") for uid in range(1, 8)}
        )

        first_page = await store.get_messages(account_id, "INBOX", limit=3)
        second_page = await store.get_messages(account_id, "INBOX", limit=3, offset=3)

        assert [m.uid for m in first_page] == [7, 6, 5]
        assert [m.uid for m in second_page] == [4, 3, 2]

    async def test_get_message(self, store, account_id):
        await store.insert_messages(account_id, "INBOX", {5: Envelope(subject="hi")})

        message = await store.get_message(account_id, "INBOX", 5)
        assert message.subject == "hi"
        assert not message.has_body
        assert await store.get_message(account_id, "INBOX", 6) is None


class TestBodies:
    """Tests for fetch-once body storage"""

    async def test_unfetched_body_is_empty(self, store, account_id):
        await store.insert_messages(account_id, "INBOX", {1: Envelope()})

        body = await store.get_body(account_id, "INBOX", 1)
        assert body is not None
        assert body.is_empty

    async def test_uncached_message_has_no_body(self, store, account_id):
        assert await store.get_body(account_id, "INBOX", 1) is None

    async def test_save_body_writes_both_halves(self, store, account_id):
        await store.insert_messages(account_id, "INBOX", {1: Envelope()})

        saved = await store.save_body(account_id, "INBOX", 1, EmailBody(plain="text", html=""))

        assert saved
        body = await store.get_body(account_id, "INBOX", 1)
        assert body == EmailBody(plain="text", html="")

    async def test_save_body_without_row(self, store, account_id):
        assert not await store.save_body(account_id, "INBOX", 1, EmailBody(plain="x"))
