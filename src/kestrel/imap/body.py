# =============================================================================
# Message Bodies
# =============================================================================
# Fetch-on-demand, cache-forever body resolution.
#
# A body is downloaded the first time a message is opened, decoded into a
# plain-text and an HTML half, and stored on the message row. After that it
# is always served from the cache; syncs never invalidate it.
#
# Decoding rules:
#   - Content-Transfer-Encoding: base64 and quoted-printable are decoded;
#     anything else (7bit, 8bit, binary, absent, or unknown) passes through.
#     A payload that fails to decode is passed through raw.
#   - Charset: taken from Content-Type; an unknown charset, or a codec
#     that doesn't decode bytes to text, falls back to UTF-8. Undecodable bytes become U+FFFD.
#   - Multipart: every leaf part is visited; the last text/html part wins
#     HTML and the last text/plain part wins Plain. Attachments are skipped.
#   - Single part: text/html goes to HTML; anything else (text/plain, a
#     missing Content-Type, or a non-text type) goes to Plain.
# =============================================================================

import base64
import binascii
import email
import logging
import quopri
from email.message import Message as MIMEMessage
from typing import TYPE_CHECKING

from kestrel.core import EmailBody
from kestrel.errors import DecodeError, ProtocolError
from kestrel.imap import protocol

if TYPE_CHECKING:
    from kestrel.imap.client import SessionFactory
    from kestrel.storage.repository import CacheStore


logger = logging.getLogger(__name__)


# =============================================================================
# Decoding
# =============================================================================

def _decode_base64(payload: bytes) -> bytes:
    # Lenient: ignore line breaks and junk characters, fix missing padding
    cleaned = b"".join(payload.split())
    cleaned += b"=" * (-len(cleaned) % 4)
    try:
        return base64.b64decode(cleaned)
    except binascii.Error as e:
        raise DecodeError(f"Invalid base64 payload: {e}") from e


def decode_transfer_encoding(payload: bytes, encoding: str | None) -> bytes:
    """
    Undo a Content-Transfer-Encoding.

    Never raises: unknown encodings and undecodable payloads come back as-is.
    """
    encoding = (encoding or "").strip().lower()
    try:
        if encoding == "base64":
            return _decode_base64(payload)
        if encoding == "quoted-printable":
            return quopri.decodestring(payload)
    except DecodeError as e:
        logger.warning(f"{e}; using raw bytes")
        return payload

    if encoding not in ("", "7bit", "8bit", "binary"):
        logger.warning(f"Unknown Content-Transfer-Encoding {encoding!r}; using raw bytes")
    return payload


def decode_charset(data: bytes, charset: str | None) -> str:
    """
    Decode bytes with the declared charset, falling back to UTF-8.

    Never raises.
    """
    charset = (charset or "utf-8").strip().strip('"') or "utf-8"
    try:
        return data.decode(charset, errors="replace")
    except (LookupError, UnicodeError):
        # Unknown, or not a bytes-to-text codec ("hex", "zip", "idna")
        logger.warning(f"Unusable charset {charset!r}; decoding as UTF-8")
        return data.decode("utf-8", errors="replace")


def _raw_payload(part: MIMEMessage) -> bytes:
    """Undecoded payload bytes of a leaf part."""
    payload = part.get_payload(decode=False)
    if isinstance(payload, bytes):
        return payload
    if not isinstance(payload, str):
        return b""
    # message_from_bytes smuggles 8-bit bytes through as surrogate escapes
    return payload.encode("utf-8", errors="surrogateescape")


def _decode_part(part: MIMEMessage) -> str:
    encoding = part.get("Content-Transfer-Encoding")
    data = decode_transfer_encoding(_raw_payload(part), encoding)
    return decode_charset(data, part.get_content_charset())


def _check_boundary(part: MIMEMessage) -> None:
    if part.get_content_maintype() == "multipart" and not part.get_boundary():
        raise ProtocolError(f"{part.get_content_type()} part has no boundary")


def extract_body(raw: bytes) -> EmailBody:
    """
    Parse a raw RFC 822 message into its plain and HTML text.

    Raises:
        ProtocolError: If a multipart entity has no boundary parameter.
    """
    msg = email.message_from_bytes(raw)
    body = EmailBody()

    _check_boundary(msg)
    if not msg.is_multipart():
        text = _decode_part(msg)
        content_type = msg.get_content_type()
        if content_type == "text/html":
            body.html = text
        else:
            if msg.get_content_maintype() != "text":
                logger.debug(f"Single-part message of type {content_type}; showing it as plain text")
            body.plain = text
        return body

    for part in msg.walk():
        _check_boundary(part)
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue

        content_type = part.get_content_type()
        if content_type == "text/html":
            body.html = _decode_part(part)
        elif content_type == "text/plain":
            body.plain = _decode_part(part)

    return body


# =============================================================================
# Body Fetcher
# =============================================================================

class BodyFetcher:
    """
    Resolves message bodies, from the cache when possible.

    Args:
        store: CacheStore holding the message rows.
        sessions: Opens IMAP sessions for cache misses.
    """

    def __init__(self, store: "CacheStore", sessions: "SessionFactory") -> None:
        self.store = store
        self.sessions = sessions

    async def fetch(self, account_id: int, mailbox_name: str, uid: int) -> EmailBody:
        """
        Return the body halves, downloading and caching them on a miss.

        Raises:
            MailError: Network, authentication or protocol failure on a miss.
        """
        cached = await self.store.get_body(account_id, mailbox_name, uid)
        if cached is not None and not cached.is_empty:
            return cached

        logger.debug(f"Body cache miss for {mailbox_name}:{uid}, fetching")
        async with self.sessions.open(account_id) as session:
            await protocol.select(session, mailbox_name)
            raw = await protocol.fetch_body(session, uid)

        body = extract_body(raw)
        await self.store.save_body(account_id, mailbox_name, uid, body)
        return body

    async def get_body(self, account_id: int, mailbox_name: str, uid: int) -> str:
        """
        HTML if there is any, else plain text, else the error sentinel.

        The sentinel means the fetch worked but the message had no text;
        failures raise instead.
        """
        body = await self.fetch(account_id, mailbox_name, uid)
        return body.preferred
