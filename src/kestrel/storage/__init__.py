# =============================================================================
# Storage Module
# =============================================================================
# Handles persistent storage using SQLite.
#
# Provides:
#   - Database connection, schema creation, explicit transactions
#   - CacheStore: account/mailbox/message access with a declared consistency
#     policy per entity class
#   - Async operations via aiosqlite
#
# The database is stored in the XDG data directory (~/.local/share/kestrel/).
# =============================================================================

from kestrel.storage.database import Database
from kestrel.storage.repository import CachePolicy, CacheStore, Consistency

__all__ = ["Database", "CacheStore", "CachePolicy", "Consistency"]
