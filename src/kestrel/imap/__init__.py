# =============================================================================
# IMAP Module
# =============================================================================
# Handles all IMAP operations:
#   - Scoped sessions over TLS (LOGIN or XOAUTH2)
#   - Protocol operations: LIST, SELECT, UID SEARCH, FETCH / UID FETCH
#   - Response parsing (ENVELOPE, BODYSTRUCTURE, literals)
#   - Diff-based mailbox and message sync with overlap suppression
#   - Lazy body download and MIME decoding
#   - Poll-driven update scheduling
#
# The transport is aioimaplib, so every command is a coroutine on the
# engine's event loop.
# =============================================================================

from kestrel.imap.body import BodyFetcher, extract_body
from kestrel.imap.client import IMAPSession, SessionFactory, with_session
from kestrel.imap.scheduler import UpdateScheduler
from kestrel.imap.sync import MailboxSyncer, MessageSyncer, SyncGuard, SyncResult

__all__ = [
    # Session
    "IMAPSession",
    "SessionFactory",
    "with_session",
    # Sync
    "MailboxSyncer",
    "MessageSyncer",
    "SyncGuard",
    "SyncResult",
    "UpdateScheduler",
    # Bodies
    "BodyFetcher",
    "extract_body",
]
