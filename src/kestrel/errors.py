# =============================================================================
# Error Taxonomy
# =============================================================================
# Every failure the engine surfaces is one of four kinds:
#
#   - TransportError:      dial/TLS/socket failure. The sync cycle is aborted
#                          and retried on the next scheduled tick.
#   - AuthenticationError: LOGIN, SASL or token refresh rejected. The account
#                          is treated as logged out.
#   - ProtocolError:       malformed or unexpected server response. The single
#                          item is skipped; the rest of a batch continues.
#   - DecodeError:         unknown transfer-encoding or charset. Never fatal,
#                          the decoder falls back to raw bytes or UTF-8.
#
# Nothing retries within the same call.
# =============================================================================


class MailError(Exception):
    """Base class for all engine errors."""
    pass


class TransportError(MailError):
    """Raised when the connection to the server cannot be made or is lost."""
    pass


class AuthenticationError(MailError):
    """Raised when the server or the OAuth provider rejects our credentials."""
    pass


class ProtocolError(MailError):
    """Raised when a server response is malformed or missing expected data."""
    pass


class DecodeError(MailError):
    """Raised when message content cannot be decoded as declared."""
    pass
