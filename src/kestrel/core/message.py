# =============================================================================
# Message Model
# =============================================================================
# Represents a cached message. A message is identified by the triple
# (account_id, mailbox_name, uid) and has two very different halves:
#
#   - The envelope (From, To, Subject, Date, ...) plus a body structure
#     summary. Fetched once when the UID is first seen and never rewritten;
#     stored as a JSON blob.
#   - The body (plain and/or HTML). Empty until the user opens the message,
#     then fetched once and kept for as long as the row exists.
# =============================================================================

import json
from dataclasses import dataclass, field
from typing import Any


# Returned in place of a body when a fetch succeeded but yielded no text.
# Callers compare against this to tell "empty message" from "network failure".
BODY_ERROR_SENTINEL = "Error retrieving email body"


@dataclass
class Address:
    """A single mailbox address from an envelope (name may be empty)."""
    name: str = ""
    email: str = ""

    def __str__(self) -> str:
        if self.name:
            return f"{self.name} <{self.email}>"
        return self.email


@dataclass
class BodyStructure:
    """
    Summary of a message's MIME structure, from the BODYSTRUCTURE item.

    Leaf parts have no children; multipart nodes have a subtype like
    "alternative" or "mixed" and one child per part.

    Attributes:
        media_type: Full type, e.g. "text/plain" or "multipart/alternative".
        charset: Declared charset for leaf text parts.
        encoding: Content-Transfer-Encoding for leaf parts (lowercased).
        size: Octet size for leaf parts.
        parts: Child structures for multipart nodes.
    """
    media_type: str = "text/plain"
    charset: str = ""
    encoding: str = ""
    size: int = 0
    parts: list["BodyStructure"] = field(default_factory=list)

    @property
    def is_multipart(self) -> bool:
        return self.media_type.startswith("multipart/")

    def to_dict(self) -> dict[str, Any]:
        return {
            "media_type": self.media_type,
            "charset": self.charset,
            "encoding": self.encoding,
            "size": self.size,
            "parts": [p.to_dict() for p in self.parts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BodyStructure":
        return cls(
            media_type=data.get("media_type", "text/plain"),
            charset=data.get("charset", ""),
            encoding=data.get("encoding", ""),
            size=data.get("size", 0),
            parts=[cls.from_dict(p) for p in data.get("parts", [])],
        )


@dataclass
class Envelope:
    """
    Structured header metadata for a message, as returned by IMAP ENVELOPE.

    Attributes:
        date: Date header, as the server sent it.
        subject: Subject with RFC 2047 encoded-words decoded.
        from_: From addresses (trailing underscore since "from" is reserved).
        sender, reply_to, to, cc, bcc: Remaining address lists.
        in_reply_to: In-Reply-To header.
        message_id: Message-ID header.
        body_structure: MIME structure summary, if the server sent one.
    """
    date: str = ""
    subject: str = ""
    from_: list[Address] = field(default_factory=list)
    sender: list[Address] = field(default_factory=list)
    reply_to: list[Address] = field(default_factory=list)
    to: list[Address] = field(default_factory=list)
    cc: list[Address] = field(default_factory=list)
    bcc: list[Address] = field(default_factory=list)
    in_reply_to: str = ""
    message_id: str = ""
    body_structure: BodyStructure | None = None

    # Address list fields, in ENVELOPE order
    ADDRESS_FIELDS = ("from_", "sender", "reply_to", "to", "cc", "bcc")

    def to_json(self) -> bytes:
        """Serialize for the envelope BLOB column."""
        data: dict[str, Any] = {
            "date": self.date,
            "subject": self.subject,
            "in_reply_to": self.in_reply_to,
            "message_id": self.message_id,
        }
        for name in self.ADDRESS_FIELDS:
            data[name.rstrip("_")] = [
                {"name": a.name, "email": a.email} for a in getattr(self, name)
            ]
        if self.body_structure is not None:
            data["body_structure"] = self.body_structure.to_dict()
        return json.dumps(data).encode("utf-8")

    @classmethod
    def from_json(cls, blob: bytes | str | None) -> "Envelope":
        """Deserialize from the envelope BLOB column."""
        if not blob:
            return cls()
        data = json.loads(blob)
        envelope = cls(
            date=data.get("date", ""),
            subject=data.get("subject", ""),
            in_reply_to=data.get("in_reply_to", ""),
            message_id=data.get("message_id", ""),
        )
        for name in cls.ADDRESS_FIELDS:
            setattr(envelope, name, [
                Address(name=a.get("name", ""), email=a.get("email", ""))
                for a in data.get(name.rstrip("_"), [])
            ])
        if data.get("body_structure"):
            envelope.body_structure = BodyStructure.from_dict(data["body_structure"])
        return envelope

    @property
    def display_sender(self) -> str:
        """First From address for display, or empty."""
        return str(self.from_[0]) if self.from_ else ""


@dataclass
class EmailBody:
    """
    Decoded text content of a message.

    Either half may be empty. HTML is preferred for display.
    """
    plain: str = ""
    html: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.plain and not self.html

    @property
    def preferred(self) -> str:
        """HTML if present, else plain text, else the error sentinel."""
        if self.html:
            return self.html
        if self.plain:
            return self.plain
        return BODY_ERROR_SENTINEL


@dataclass
class Message:
    """
    A cached message.

    Attributes:
        account_id: Owning account.
        mailbox_name: Mailbox the UID belongs to.
        uid: IMAP UID, stable within the mailbox.
        envelope: Header metadata, written once on first sync.

        body_plain: Decoded text/plain body, empty until fetched.
        body_html: Decoded text/html body, empty until fetched.
        body_raw: Reserved for the undecoded RFC 822 source.

        received_at: When we first cached this message (ISO timestamp).
        last_updated: When the row was last written.
        id: Database primary key. None until saved.
    """

    account_id: int
    mailbox_name: str
    uid: int
    envelope: Envelope = field(default_factory=Envelope)

    body_plain: str = ""
    body_html: str = ""
    body_raw: bytes = b""

    received_at: str = ""
    last_updated: str = ""
    id: int | None = None

    @property
    def has_body(self) -> bool:
        return bool(self.body_plain or self.body_html)

    @property
    def body(self) -> EmailBody:
        return EmailBody(plain=self.body_plain, html=self.body_html)

    @property
    def subject(self) -> str:
        return self.envelope.subject or "(No Subject)"

    def __str__(self) -> str:
        return f"[{self.mailbox_name}:{self.uid}] {self.subject}"
