# =============================================================================
# Kestrel: IMAP Sync and Cache Engine
# =============================================================================
#
#   "Hovers over the inbox, swoops only on what's new."
#
# Kestrel is the backend of a desktop mail client. It logs into an IMAP
# account (app password or OAuth2 + PKCE), mirrors the mailbox list and
# message envelopes into a local SQLite cache, and serves that cache to a
# UI without making it wait on the network.
#
# Features:
#   - Password (LOGIN) and OAuth2 (SASL XOAUTH2) authentication
#   - Transparent OAuth token refresh, persisted immediately
#   - Diff-based message sync: only new UIDs are ever fetched
#   - Lazy, fetch-once body download with MIME decoding
#   - Poll-driven background sync with overlap suppression
#   - XDG Base Directory compliant
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "kestrel"

# Main entry point - this is what gets called by the 'kestrel' command
from kestrel.app import main

__all__ = ["main", "__version__", "__app_name__"]
