# =============================================================================
# IMAP Protocol Operations
# =============================================================================
# Stateless functions that issue IMAP commands over an open IMAPSession and
# return parsed results. Nothing here touches the cache.
#
# Commands used:
#   LIST "" "*"                              -> mailbox names
#   SELECT / EXAMINE                          -> message count
#   FETCH 1:* (UID)                           -> complete UID set
#   UID SEARCH NOT DELETED                    -> UIDs, excluding \Deleted
#   UID FETCH <set> (UID ENVELOPE BODYSTRUCTURE)
#   UID FETCH <uid> (BODY.PEEK[])             -> raw RFC 822 message
#
# BODY.PEEK[] is used so that opening a message doesn't set \Seen.
#
# Responses arrive as aioimaplib Response.lines: untagged lines with the
# leading "* " removed, literals as separate bytearray items.
# =============================================================================

import logging
import re
from collections.abc import Iterable

from kestrel.core import Envelope
from kestrel.errors import ProtocolError
from kestrel.imap.client import IMAPSession
from kestrel.imap.envelope import (
    parse_body_structure,
    parse_envelope,
    parse_fetch_response,
    parse_list_response,
    reassemble,
)
from kestrel.imap.utf7 import decode_mailbox_name


logger = logging.getLogger(__name__)

# UIDs per UID FETCH command
BATCH_SIZE = 50

_EXISTS_RE = re.compile(rb"^(\d+)\s+EXISTS", re.IGNORECASE)


def uid_set(uids: Iterable[int]) -> str:
    """Format UIDs as an IMAP sequence set, collapsing runs: 1:3,7,9:10."""
    ordered = sorted(set(uids))
    if not ordered:
        raise ValueError("Empty UID set")

    ranges = []
    start = prev = ordered[0]
    for uid in ordered[1:]:
        if uid == prev + 1:
            prev = uid
            continue
        ranges.append(f"{start}:{prev}" if start != prev else str(start))
        start = prev = uid
    ranges.append(f"{start}:{prev}" if start != prev else str(start))
    return ",".join(ranges)


async def list_mailboxes(session: IMAPSession) -> list[str]:
    """
    All selectable mailbox names on the server, decoded from modified UTF-7.

    Lines that can't be parsed are logged and skipped.
    """
    data = await session.command("list", '""', "*")

    names = []
    for parts in reassemble(data):
        try:
            flags, name = parse_list_response(parts)
        except ProtocolError as e:
            logger.warning(f"Skipping unparseable LIST line: {e}")
            continue
        if any(flag.lower() in ("\\noselect", "\\nonexistent") for flag in flags):
            continue
        names.append(decode_mailbox_name(name))

    logger.debug(f"Found {len(names)} mailboxes")
    return names


async def select(session: IMAPSession, mailbox: str) -> int:
    """
    Select a mailbox read-only.

    Returns:
        Number of messages in the mailbox (EXISTS).
    """
    data = await session.select(mailbox, readonly=True)
    for line in data:
        if isinstance(line, (bytes, bytearray)):
            match = _EXISTS_RE.match(bytes(line).strip())
            if match:
                return int(match.group(1))
    raise ProtocolError(f"SELECT {mailbox} returned no EXISTS count")


async def fetch_uids(session: IMAPSession, exists: int) -> set[int]:
    """
    The complete UID set of the selected mailbox.

    Args:
        exists: Message count from select(). 0 skips the round-trip, since
                "1:*" is an error on an empty mailbox for some servers.
    """
    if exists == 0:
        return set()

    data = await session.command("fetch", "1:*", "(UID)")
    uids: set[int] = set()
    for parts in reassemble(data):
        try:
            _, items = parse_fetch_response(parts)
            uids.add(int(items["UID"]))
        except (ProtocolError, KeyError, ValueError) as e:
            logger.warning(f"Skipping malformed UID response: {e!r}")
    return uids


async def search_uids(session: IMAPSession) -> list[int]:
    """UIDs of messages in the selected mailbox that aren't flagged \\Deleted."""
    data = await session.uid_search("NOT DELETED")
    uids = []
    for line in data:
        if not isinstance(line, (bytes, bytearray)):
            continue
        for token in bytes(line).split():
            if token.isdigit():
                uids.append(int(token))
    return sorted(uids)


async def fetch_envelopes(
    session: IMAPSession,
    uids: Iterable[int],
    batch_size: int = BATCH_SIZE,
) -> dict[int, Envelope]:
    """
    Fetch ENVELOPE and BODYSTRUCTURE for the given UIDs in batches.

    Partial success: a malformed item is logged and skipped, and a batch the
    server rejects is logged and skipped, without affecting the others.
    Transport errors propagate; the connection is gone at that point.

    Returns:
        {uid: Envelope} for every item that parsed.
    """
    ordered = sorted(set(uids))
    envelopes: dict[int, Envelope] = {}

    for i in range(0, len(ordered), batch_size):
        batch = ordered[i:i + batch_size]
        try:
            data = await session.uid("fetch", uid_set(batch), "(UID ENVELOPE BODYSTRUCTURE)")
        except ProtocolError as e:
            logger.warning(f"Envelope batch of {len(batch)} starting at UID {batch[0]} failed: {e}")
            continue

        for parts in reassemble(data):
            try:
                uid, envelope = _envelope_from_response(parts)
            except ProtocolError as e:
                logger.warning(f"Skipping malformed envelope: {e}")
                continue
            if uid is not None:
                envelopes[uid] = envelope

        logger.debug(f"Fetched envelopes {i + 1}-{i + len(batch)} of {len(ordered)}")

    return envelopes


def _envelope_from_response(parts: list[bytes]) -> tuple[int | None, Envelope]:
    _, items = parse_fetch_response(parts)
    if "UID" not in items:
        # Unsolicited FETCH (e.g. a flag change) mixed into our response
        return None, Envelope()
    try:
        uid = int(items["UID"])
    except (TypeError, ValueError):
        raise ProtocolError(f"Bad UID in FETCH response: {items['UID']!r}") from None
    if "ENVELOPE" not in items:
        raise ProtocolError(f"UID {uid}: no ENVELOPE in FETCH response")

    envelope = parse_envelope(items["ENVELOPE"])
    structure = items.get("BODYSTRUCTURE")
    if structure is not None:
        try:
            envelope.body_structure = parse_body_structure(structure)
        except ProtocolError as e:
            logger.debug(f"UID {uid}: ignoring unparseable BODYSTRUCTURE: {e}")
    return uid, envelope


async def fetch_body(session: IMAPSession, uid: int) -> bytes:
    """
    Fetch the full raw message for one UID without setting \\Seen.

    Raises:
        ProtocolError: If the response carries no body section.
    """
    data = await session.uid("fetch", str(uid), "(BODY.PEEK[])")

    for parts in reassemble(data):
        try:
            _, items = parse_fetch_response(parts)
        except ProtocolError as e:
            logger.debug(f"Ignoring unparseable FETCH line for UID {uid}: {e}")
            continue
        if str(items.get("UID", "")) != str(uid):
            continue
        body = items.get("BODY[]")
        if isinstance(body, bytes):
            return body

    raise ProtocolError(f"UID {uid}: server returned no body section")
