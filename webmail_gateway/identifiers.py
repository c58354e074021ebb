"""Message identifier normalization.

Identifiers arrive from several places (IMAP envelopes, raw headers, URL
path segments) with or without their angle-bracket delimiters. Everything
in the gateway compares identifiers in their normalized form only.
"""

import re
from typing import Iterable, List, Optional, Union

_BRACKETED_ID = re.compile(r"<[^<>]*>")
_SEPARATOR = re.compile(r"[\s,]")


def normalize(raw: Optional[Union[str, bytes]]) -> Optional[str]:
    """Normalize a message identifier.

    Strips surrounding whitespace and exactly one outer ``<...>`` pair.
    A value with only one side of the outer pair is passed through as-is.

    Args:
        raw: Identifier as found in a header, envelope or URL

    Returns:
        Normalized identifier, or None if the identifier is absent/empty
    """
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    value = raw.strip()
    if len(value) >= 2 and value.startswith("<") and value.endswith(">"):
        value = value[1:-1].strip()

    return value or None


def denormalize(identifier: Optional[str]) -> str:
    """Wrap a normalized identifier in angle brackets for a protocol header."""
    if not identifier:
        return ""
    return f"<{identifier}>"


def same_identifier(
    a: Optional[Union[str, bytes]], b: Optional[Union[str, bytes]]
) -> bool:
    """Check two identifiers for equality of their normalized forms."""
    left = normalize(a)
    return left is not None and left == normalize(b)


def parse_id_list(raw: Union[None, str, bytes, Iterable]) -> List[str]:
    """Parse a References/In-Reply-To style value into normalized identifiers.

    Accepts a header string, raw bytes, or an already split list. Bracketed
    tokens are extracted from header values; a value without brackets is
    split on whitespace and commas. Items of a split list that hold a single
    token are normalized like any other identifier.
    """
    if raw is None:
        return []
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    if not isinstance(raw, str):
        identifiers: List[str] = []
        for item in raw:
            identifiers.extend(_parse_item(item))
        return identifiers

    tokens = _BRACKETED_ID.findall(raw)
    if not tokens:
        tokens = re.split(r"[\s,]+", raw)

    return [ident for ident in (normalize(token) for token in tokens) if ident]


def _parse_item(item: Union[str, bytes]) -> List[str]:
    if isinstance(item, bytes):
        item = item.decode("utf-8", errors="replace")
    if _SEPARATOR.search(item.strip()):
        return parse_id_list(item)
    ident = normalize(item)
    return [ident] if ident else []


def format_id_list(identifiers: Iterable[str]) -> str:
    """Render identifiers as a space separated header value: ``<a> <b>``."""
    return " ".join(denormalize(ident) for ident in identifiers if ident)
