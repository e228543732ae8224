# =============================================================================
# IMAP Response Parsing
# =============================================================================
# Turns aioimaplib's response lines into Python values.
#
# aioimaplib returns Response.lines as a flat list with the "* " prefix
# stripped. A line that ends in a {N} literal marker is followed by the
# literal itself as a bytearray, then by the rest of the line as bytes
# (which can end in another marker). Every other line is one complete
# untagged response.
#
# reassemble() regroups those items into one list of parts per response.
# The parts are then tokenized as an S-expression (atoms, quoted strings,
# literals, NIL, parenthesized lists) and mapped onto ENVELOPE and
# BODYSTRUCTURE.
#
# Value types after parsing:
#   atom    -> str      (numbers, flags, item names like "BODY[]")
#   string  -> bytes    (quoted strings and literals)
#   NIL     -> None
#   list    -> list
# =============================================================================

import email.header
import logging
import re
from collections.abc import Iterable, Iterator
from email.errors import HeaderParseError
from typing import Any

from kestrel.core import Address, BodyStructure, Envelope
from kestrel.errors import ProtocolError


logger = logging.getLogger(__name__)

# Trailing literal marker on a line: {123} or {123+}
_LITERAL_MARKER = re.compile(rb"\{(\d+)\+?\}\s*$")

_OPEN = object()
_CLOSE = object()


class _Literal(bytes):
    """Literal payload (a bytearray item in Response.lines)."""


# =============================================================================
# Reassembly
# =============================================================================

def reassemble(lines: Iterable[Any]) -> list[list[bytes]]:
    """
    Group aioimaplib response lines into one list of parts per response.

    Literal payloads come back as _Literal parts; everything else is raw
    line text with the {N} markers stripped. Pass untagged lines only.
    """
    responses: list[list[bytes]] = []
    current: list[bytes] = []

    for item in lines:
        if item is None:
            continue
        if isinstance(item, bytearray):
            current.append(_Literal(bytes(item)))
            continue

        line = bytes(item)
        stripped = _LITERAL_MARKER.sub(b"", line)
        current.append(stripped)
        if stripped == line:
            # No literal follows, so the response is complete
            responses.append(current)
            current = []

    if current:
        # Literal with no closing line; keep what we have
        responses.append(current)
    return responses


# =============================================================================
# Tokenizer and S-expression Parser
# =============================================================================

def _tokenize(parts: list[bytes]) -> Iterator[Any]:
    """Yield _OPEN, _CLOSE, str atoms, bytes strings and None for NIL."""
    for part in parts:
        if isinstance(part, _Literal):
            yield bytes(part)
            continue

        i, n = 0, len(part)
        while i < n:
            c = part[i]
            if c in b" \r\n\t":
                i += 1
            elif c == ord("("):
                yield _OPEN
                i += 1
            elif c == ord(")"):
                yield _CLOSE
                i += 1
            elif c == ord('"'):
                i += 1
                buf = bytearray()
                while i < n and part[i] != ord('"'):
                    if part[i] == ord("\\") and i + 1 < n:
                        i += 1
                    buf.append(part[i])
                    i += 1
                if i >= n:
                    raise ProtocolError("Unterminated quoted string")
                i += 1
                yield bytes(buf)
            else:
                start = i
                depth = 0
                # Atoms may contain a bracketed section spec, e.g.
                # BODY[HEADER.FIELDS (SUBJECT)], whose parens are not lists
                while i < n:
                    c = part[i]
                    if c == ord("["):
                        depth += 1
                    elif c == ord("]"):
                        depth -= 1
                    elif depth <= 0 and c in b" ()\"\r\n\t":
                        break
                    i += 1
                atom = part[start:i].decode("ascii", errors="replace")
                yield None if atom.upper() == "NIL" else atom


def parse_sexp(parts: list[bytes]) -> list[Any]:
    """Parse a response's parts into a top-level list of values."""
    stack: list[list[Any]] = [[]]
    for token in _tokenize(parts):
        if token is _OPEN:
            stack.append([])
        elif token is _CLOSE:
            if len(stack) == 1:
                raise ProtocolError("Unbalanced ')' in server response")
            finished = stack.pop()
            stack[-1].append(finished)
        else:
            stack[-1].append(token)
    if len(stack) != 1:
        raise ProtocolError("Unbalanced '(' in server response")
    return stack[0]


def parse_fetch_response(parts: list[bytes]) -> tuple[int, dict[str, Any]]:
    """
    Parse one FETCH response: "<seq> FETCH (<ITEM> <value> ...)".

    Returns:
        (sequence number, {ITEM NAME: value}) with item names uppercased.

    Raises:
        ProtocolError: If the response doesn't have that shape.
    """
    values = parse_sexp(parts)
    if len(values) > 2 and isinstance(values[1], str) and values[1].upper() == "FETCH":
        del values[1]
    if len(values) < 2 or not isinstance(values[0], str) or not values[0].isdigit():
        raise ProtocolError(f"Not a FETCH response: {values[:2]!r}")
    items_list = values[1]
    if not isinstance(items_list, list) or len(items_list) % 2:
        raise ProtocolError("FETCH item list is malformed")

    items: dict[str, Any] = {}
    for key, value in zip(items_list[::2], items_list[1::2]):
        if not isinstance(key, str):
            raise ProtocolError(f"FETCH item name is not an atom: {key!r}")
        items[key.upper()] = value
    return int(values[0]), items


# =============================================================================
# Field Mapping
# =============================================================================

def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def decode_header(value: str) -> str:
    """Decode RFC 2047 encoded-words ("=?utf-8?B?...?=") in a header value."""
    if not value or "=?" not in value:
        return value
    try:
        decoded_parts = email.header.decode_header(value)
    except HeaderParseError:
        return value

    result = ""
    for part, charset in decoded_parts:
        if isinstance(part, bytes):
            try:
                result += part.decode(charset or "utf-8", errors="replace")
            except LookupError:
                logger.warning(f"Unknown header charset {charset!r}, using UTF-8")
                result += part.decode("utf-8", errors="replace")
        else:
            result += part
    return result


def _parse_address_list(value: Any) -> list[Address]:
    """
    Map an ENVELOPE address list: ((name adl mailbox host) ...).

    RFC 3501 group markers (host NIL) are dropped.
    """
    if not isinstance(value, list):
        return []

    addresses = []
    for entry in value:
        if not isinstance(entry, list) or len(entry) < 4:
            continue
        name, _, mailbox, host = entry[:4]
        if host is None:
            continue
        addresses.append(Address(
            name=decode_header(_text(name)),
            email=f"{_text(mailbox)}@{_text(host)}",
        ))
    return addresses


def parse_envelope(value: Any) -> Envelope:
    """
    Map an ENVELOPE structure.

    Format: (date subject from sender reply-to to cc bcc in-reply-to message-id)

    Raises:
        ProtocolError: If the value isn't a 10-field list.
    """
    if not isinstance(value, list) or len(value) < 10:
        raise ProtocolError(f"Malformed ENVELOPE: {value!r:.200}")

    return Envelope(
        date=_text(value[0]),
        subject=decode_header(_text(value[1])),
        from_=_parse_address_list(value[2]),
        sender=_parse_address_list(value[3]),
        reply_to=_parse_address_list(value[4]),
        to=_parse_address_list(value[5]),
        cc=_parse_address_list(value[6]),
        bcc=_parse_address_list(value[7]),
        in_reply_to=_text(value[8]),
        message_id=_text(value[9]),
    )


def parse_body_structure(value: Any) -> BodyStructure:
    """
    Map a BODYSTRUCTURE (or BODY) structure into a summary tree.

    Multipart: (part part ... "subtype" ...)
    Leaf:      ("type" "subtype" (params) id description encoding size ...)

    Raises:
        ProtocolError: If the value isn't a list.
    """
    if not isinstance(value, list) or not value:
        raise ProtocolError(f"Malformed BODYSTRUCTURE: {value!r:.200}")

    if isinstance(value[0], list):
        parts = []
        index = 0
        while index < len(value) and isinstance(value[index], list):
            parts.append(parse_body_structure(value[index]))
            index += 1
        subtype = _text(value[index]).lower() if index < len(value) else "mixed"
        return BodyStructure(media_type=f"multipart/{subtype}", parts=parts)

    fields = value + [None] * (7 - len(value))
    media_type = f"{_text(fields[0]).lower()}/{_text(fields[1]).lower()}"

    charset = ""
    params = fields[2]
    if isinstance(params, list):
        for key, val in zip(params[::2], params[1::2]):
            if _text(key).lower() == "charset":
                charset = _text(val)

    size = 0
    if isinstance(fields[6], str) and fields[6].isdigit():
        size = int(fields[6])

    return BodyStructure(
        media_type=media_type,
        charset=charset,
        encoding=_text(fields[5]).lower(),
        size=size,
    )


def parse_list_response(parts: list[bytes]) -> tuple[list[str], str]:
    """
    Extract the attribute flags and mailbox name from one LIST response.

    Format: (\\HasNoChildren) "/" "INBOX"

    Raises:
        ProtocolError: If the line doesn't have that shape.
    """
    values = parse_sexp(parts)
    if values and isinstance(values[0], str) and values[0].upper() in ("LIST", "LSUB"):
        values = values[1:]
    if len(values) < 3 or not isinstance(values[0], list):
        raise ProtocolError(f"Malformed LIST response: {values!r:.200}")
    flags = [flag for flag in values[0] if isinstance(flag, str)]
    return flags, _text(values[2])
