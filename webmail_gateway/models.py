"""Data models for messages, threads and outgoing mail."""

import email.header
import email.message
import email.utils
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from webmail_gateway.identifiers import format_id_list, normalize, parse_id_list

# Sort key for messages without a usable Date header
EPOCH_FLOOR = datetime.min.replace(tzinfo=timezone.utc)


def _decode_header(value: Optional[str]) -> str:
    if not value:
        return ""
    parts = []
    for chunk, charset in email.header.decode_header(str(value)):
        if isinstance(chunk, bytes):
            parts.append(chunk.decode(charset or "utf-8", errors="replace"))
        else:
            parts.append(chunk)
    return "".join(parts).strip()


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _fallback_message_id(
    uid: Optional[int], folder: Optional[str], message: email.message.Message
) -> str:
    """Build a stable local identifier for a message without Message-ID."""
    seed = "|".join(
        str(part or "")
        for part in (message.get("Date"), message.get("From"), message.get("Subject"))
    )
    digest = hashlib.sha1(seed.encode("utf-8", errors="replace")).hexdigest()[:16]
    if uid is not None:
        return f"{uid}.{digest}@{folder or 'local'}"
    return f"{digest}@{folder or 'local'}"


@dataclass(frozen=True)
class Attachment:
    """Attachment descriptor (no content)."""

    filename: str
    content_type: str
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "content_type": self.content_type,
            "size": self.size,
        }


@dataclass(frozen=True)
class Message:
    """Immutable snapshot of a message read from the store.

    Identifier fields are normalized on construction so every comparison
    inside the gateway works on the canonical form.
    """

    message_id: str
    subject: str = ""
    sender: str = ""
    date: Optional[datetime] = None
    body: str = ""
    attachments: Tuple[Attachment, ...] = ()
    parent_id: Optional[str] = None
    references: Tuple[str, ...] = ()
    thread_id: Optional[str] = None
    uid: Optional[int] = None
    raw: Optional[bytes] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        message_id = normalize(self.message_id)
        if message_id is None:
            raise ValueError("Message requires a non-empty message_id")
        object.__setattr__(self, "message_id", message_id)
        object.__setattr__(self, "parent_id", normalize(self.parent_id))
        object.__setattr__(self, "references", tuple(parse_id_list(self.references)))
        object.__setattr__(self, "attachments", tuple(self.attachments))

        thread_id = self.thread_id
        if thread_id is not None:
            thread_id = str(thread_id).strip() or None
        object.__setattr__(self, "thread_id", thread_id)

        if self.date is not None and self.date.tzinfo is None:
            object.__setattr__(self, "date", self.date.replace(tzinfo=timezone.utc))

    @property
    def sort_date(self) -> datetime:
        return self.date or EPOCH_FLOOR

    @classmethod
    def from_message(
        cls,
        message: email.message.Message,
        uid: Optional[int] = None,
        folder: Optional[str] = None,
        thread_id: Optional[str] = None,
        raw: Optional[bytes] = None,
    ) -> "Message":
        """Create a Message from a parsed ``email.message.Message``.

        Works on header-only messages as well: body and attachments are
        simply empty then.

        Args:
            message: Parsed email message
            uid: IMAP UID of the message, if known
            folder: Folder the message was fetched from
            thread_id: Provider thread token (e.g. Gmail X-GM-THRID)
            raw: Raw RFC 822 source, kept for forwarding

        Returns:
            Message instance
        """
        message_id = normalize(message.get("Message-ID"))
        if message_id is None:
            message_id = _fallback_message_id(uid, folder, message)

        # In-Reply-To may legally carry several ids; the first is the parent
        in_reply_to = parse_id_list(message.get("In-Reply-To"))

        _, sender = email.utils.parseaddr(_decode_header(message.get("From")))

        body, attachments = _extract_content(message)

        return cls(
            message_id=message_id,
            subject=_decode_header(message.get("Subject")),
            sender=sender,
            date=_parse_date(message.get("Date")),
            body=body,
            attachments=tuple(attachments),
            parent_id=in_reply_to[0] if in_reply_to else None,
            references=tuple(parse_id_list(message.get("References"))),
            thread_id=thread_id,
            uid=uid,
            raw=raw,
        )

    @classmethod
    def from_bytes(
        cls,
        raw: bytes,
        uid: Optional[int] = None,
        folder: Optional[str] = None,
        thread_id: Optional[str] = None,
        keep_raw: bool = True,
    ) -> "Message":
        """Create a Message from raw RFC 822 bytes."""
        parsed = email.message_from_bytes(raw)
        return cls.from_message(
            parsed,
            uid=uid,
            folder=folder,
            thread_id=thread_id,
            raw=raw if keep_raw else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "subject": self.subject,
            "from": self.sender,
            "date": self.date.isoformat() if self.date else None,
            "body": self.body,
            "attachments": [a.to_dict() for a in self.attachments],
            "parent_message_id": self.parent_id,
            "references": list(self.references),
            "provider_thread_id": self.thread_id,
            "uid": self.uid,
        }


def _extract_content(message: email.message.Message) -> Tuple[str, List[Attachment]]:
    """Pull the display body and attachment descriptors out of a message."""
    text_body: Optional[str] = None
    html_body: Optional[str] = None
    attachments: List[Attachment] = []

    for part in message.walk():
        if part.is_multipart():
            continue

        filename = part.get_filename()
        disposition = (part.get_content_disposition() or "").lower()
        payload = part.get_payload(decode=True)

        if disposition == "attachment" or filename:
            attachments.append(
                Attachment(
                    filename=_decode_header(filename) or "unknown",
                    content_type=part.get_content_type(),
                    size=len(payload or b""),
                )
            )
            continue

        if payload is None:
            continue

        charset = part.get_content_charset() or "utf-8"
        try:
            text = payload.decode(charset, errors="replace")
        except LookupError:
            text = payload.decode("utf-8", errors="replace")

        content_type = part.get_content_type()
        if content_type == "text/plain" and text_body is None:
            text_body = text
        elif content_type == "text/html" and html_body is None:
            html_body = text

    return text_body or html_body or "", attachments


class MatchTier(Enum):
    """Precedence tier at which a correlation target was matched."""

    REFERENCES = "references"
    IN_REPLY_TO = "in_reply_to"
    SELF = "self"


@dataclass(frozen=True)
class ResolvedTarget:
    """Outcome of correlating a target identifier against candidates."""

    message: Optional[Message] = None
    tier: Optional[MatchTier] = None

    @property
    def matched(self) -> bool:
        return self.message is not None


@dataclass
class ThreadNode:
    """A message plus its ordered replies."""

    message: Message
    children: List["ThreadNode"] = field(default_factory=list)
    cycle_broken: bool = False

    def walk(self):
        """Yield this node and all descendants, depth first."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    @property
    def last_activity(self) -> datetime:
        return max(node.message.sort_date for node in self.walk())

    def to_dict(self) -> Dict[str, Any]:
        data = self.message.to_dict()
        data["replies"] = [child.to_dict() for child in self.children]
        return data


@dataclass
class Thread:
    """Roots of one conversation, grouped by thread key."""

    thread_key: str
    roots: List[ThreadNode] = field(default_factory=list)

    def walk(self):
        for root in self.roots:
            yield from root.walk()

    @property
    def message_count(self) -> int:
        return sum(1 for _ in self.walk())

    @property
    def last_activity(self) -> datetime:
        if not self.roots:
            return EPOCH_FLOOR
        return max(root.last_activity for root in self.roots)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread_id": self.thread_key,
            "message_count": self.message_count,
            "last_activity": (
                self.last_activity.isoformat()
                if self.last_activity != EPOCH_FLOOR
                else None
            ),
            "messages": [root.to_dict() for root in self.roots],
        }


@dataclass(frozen=True)
class HeaderSet:
    """Threading headers for an outgoing reply."""

    in_reply_to: str
    references: Tuple[str, ...]

    def as_headers(self) -> Dict[str, str]:
        """Render the headers in wire format."""
        return {
            "In-Reply-To": format_id_list([self.in_reply_to]),
            "References": format_id_list(self.references),
        }


@dataclass
class OutgoingAttachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass
class OutgoingMessage:
    """A message composed by the caller, ready for submission."""

    to: List[str]
    subject: str
    text: str = ""
    html: str = ""
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    attachments: List[OutgoingAttachment] = field(default_factory=list)


@dataclass(frozen=True)
class ForwardDraft:
    subject: str
    attachment: bytes
    filename: str = "forwarded.eml"


@dataclass(frozen=True)
class SubmitResult:
    success: bool
    remote_message_id: Optional[str] = None
    headers: Optional[HeaderSet] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message_id": self.remote_message_id,
            "in_reply_to": self.headers.in_reply_to if self.headers else None,
            "references": list(self.headers.references) if self.headers else [],
        }
