"""Reply and forward header composition."""

from typing import Iterable, List

from webmail_gateway.models import ForwardDraft, HeaderSet, Message

REPLY_PREFIX = "Re: "
FORWARD_PREFIX = "Fwd: "
FORWARD_FALLBACK_SUBJECT = "Email Message"


def dedupe(identifiers: Iterable[str]) -> List[str]:
    """Drop repeated identifiers, keeping the first occurrence."""
    seen = set()
    result = []
    for ident in identifiers:
        if ident and ident not in seen:
            seen.add(ident)
            result.append(ident)
    return result


def compose(parent: Message) -> HeaderSet:
    """Build In-Reply-To/References for a reply to ``parent``.

    References carry the parent's chain followed by the parent itself,
    oldest first, without duplicates. A parent that already appears in its
    own chain is moved to the end.
    """
    chain = [ident for ident in dedupe(parent.references) if ident != parent.message_id]
    chain.append(parent.message_id)
    return HeaderSet(in_reply_to=parent.message_id, references=tuple(chain))


def reply_subject(subject: str) -> str:
    """Prefix ``Re: `` unless the subject already starts with ``Re:``."""
    subject = subject or ""
    if subject.startswith(REPLY_PREFIX.strip()):
        return subject
    return f"{REPLY_PREFIX}{subject}"


def compose_forward(original: Message) -> ForwardDraft:
    """Compose a forward of ``original``; the raw source travels as an attachment.

    Raises:
        ValueError: If the original was fetched without its raw source
    """
    if original.raw is None:
        raise ValueError(f"Message {original.message_id} has no raw source to forward")
    subject = original.subject or FORWARD_FALLBACK_SUBJECT
    return ForwardDraft(subject=f"{FORWARD_PREFIX}{subject}", attachment=original.raw)
