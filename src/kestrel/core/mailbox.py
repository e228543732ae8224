# =============================================================================
# Mailbox Model
# =============================================================================
# A mailbox (IMAP folder) name belonging to one account.
#
# The cached mailbox list is always replaced as a whole set when the server's
# list differs. Rows are never renamed or patched one at a time, since IMAP
# gives us no reliable way to tell a rename from a delete + create.
# =============================================================================

from dataclasses import dataclass


@dataclass
class Mailbox:
    """
    A cached mailbox name.

    Attributes:
        account_id: Account this mailbox belongs to.
        name: Full mailbox name as the server reports it (e.g., "INBOX",
              "[Gmail]/Sent Mail").
        last_updated: ISO timestamp of the last time the list was refreshed.
        id: Database primary key. None until saved.
    """

    account_id: int
    name: str
    last_updated: str = ""
    id: int | None = None

    def __str__(self) -> str:
        return self.name
