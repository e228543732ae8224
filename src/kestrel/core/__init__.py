# =============================================================================
# Kestrel Core Module
# =============================================================================
# Core domain models. These are plain dataclasses with no dependencies on
# storage or networking, so they can be imported from anywhere.
#
#   - Account: IMAP server address plus one credential variant
#   - Mailbox: a cached mailbox name
#   - Message: a cached message (envelope + lazily fetched body)
# =============================================================================

from kestrel.core.account import Account
from kestrel.core.mailbox import Mailbox
from kestrel.core.message import (
    BODY_ERROR_SENTINEL,
    Address,
    BodyStructure,
    EmailBody,
    Envelope,
    Message,
)

__all__ = [
    "Account",
    "Mailbox",
    "Message",
    "Envelope",
    "Address",
    "BodyStructure",
    "EmailBody",
    "BODY_ERROR_SENTINEL",
]
