# =============================================================================
# Modified UTF-7 Mailbox Names (RFC 3501 section 5.1.3)
# =============================================================================
# IMAP sends non-ASCII mailbox names in a UTF-7 variant:
#   - printable ASCII passes through, except "&" which becomes "&-"
#   - any other run of characters is UTF-16BE, base64-encoded with ","
#     instead of "/", no padding, wrapped in "&" ... "-"
#
#   'Entw&APw-rfe'  <->  'Entwürfe'
#
# Names are cached decoded and re-encoded whenever they go back on the wire.
# =============================================================================

import base64
import binascii
import logging


logger = logging.getLogger(__name__)


def _is_direct(ch: str) -> bool:
    return 0x20 <= ord(ch) <= 0x7E


def encode_mailbox_name(name: str) -> str:
    """Encode a mailbox name for the wire."""
    out: list[str] = []
    pending: list[str] = []

    def flush() -> None:
        if pending:
            raw = "".join(pending).encode("utf-16-be")
            b64 = base64.b64encode(raw).rstrip(b"=").replace(b"/", b",")
            out.append("&" + b64.decode("ascii") + "-")
            pending.clear()

    for ch in name:
        if _is_direct(ch):
            flush()
            out.append("&-" if ch == "&" else ch)
        else:
            pending.append(ch)
    flush()
    return "".join(out)


def decode_mailbox_name(name: str) -> str:
    """
    Decode a mailbox name from the wire.

    A malformed shift sequence is left as-is rather than raising.
    """
    out: list[str] = []
    i = 0
    while i < len(name):
        ch = name[i]
        if ch != "&":
            out.append(ch)
            i += 1
            continue
        end = name.find("-", i + 1)
        if end == -1:
            out.append(name[i:])
            break
        chunk = name[i + 1:end]
        if not chunk:
            out.append("&")
        else:
            b64 = chunk.replace(",", "/")
            b64 += "=" * (-len(b64) % 4)
            try:
                out.append(base64.b64decode(b64).decode("utf-16-be"))
            except (binascii.Error, UnicodeDecodeError):
                logger.warning(f"Malformed modified UTF-7 in mailbox name {name!r}")
                out.append(name[i:end + 1])
        i = end + 1
    return "".join(out)
