# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the Kestrel test suite.
#
# Async fixtures and tests run under pytest-asyncio (asyncio_mode = "auto"
# in pyproject.toml). The IMAP server is the in-memory FakeServer from
# fakes.py; nothing here touches the network.
# =============================================================================

import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from fakes import PLAIN_MESSAGE, FakeClock, FakeServer, RecordingNotifier
from kestrel.core import Account
from kestrel.imap.client import SessionFactory
from kestrel.storage import CacheStore, Database


SAMPLE_EMAIL = "test@example.com"
SAMPLE_PASSWORD = "secret"


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    """Settable clock, starting at a fixed UTC instant."""
    return FakeClock(datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
async def db(temp_dir):
    """Connected Database in a temporary file."""
    database = Database(temp_dir / "test.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
async def store(db, clock):
    """CacheStore using the fake clock."""
    return CacheStore(db, clock=clock)


@pytest.fixture
def sample_account():
    """Create a sample password Account for testing."""
    return Account(
        email=SAMPLE_EMAIL,
        imap_url="imap.example.com:993",
        app_specific_password=SAMPLE_PASSWORD,
    )


@pytest.fixture
async def account_id(store, sample_account):
    """ID of sample_account after saving it."""
    account = await store.save_account(sample_account)
    return account.id


@pytest.fixture
def server():
    """FakeServer with an INBOX of three messages and an empty Sent folder."""
    fake = FakeServer()
    for uid in (1, 2, 3):
        fake.add_message("INBOX", uid, subject=f"Message {uid}", raw=PLAIN_MESSAGE)
    fake.add_mailbox("Sent")
    return fake


@pytest.fixture
def sessions(store, server):
    """SessionFactory dialing the FakeServer."""
    return SessionFactory(store, connection_factory=server.connect)


@pytest.fixture
def notifier():
    """Notifier that records every event."""
    return RecordingNotifier()
