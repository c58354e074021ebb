"""Reply/forward target correlation.

Given the identifier of the message a user acts on, pick the candidate to
anchor the new message to. Tiers are tried in order and the first tier with
any match wins:

1. references membership: a candidate lists the target in its References
2. in-reply-to equality: a candidate is a direct reply to the target
3. self match: the candidate is the target itself

Within a tier the most recent candidate wins, so a reply lands on the
latest branch of the conversation.
"""

from typing import Dict, Iterable, Optional, Union

from webmail_gateway.identifiers import normalize
from webmail_gateway.models import MatchTier, Message, ResolvedTarget

TIER_ORDER = (MatchTier.REFERENCES, MatchTier.IN_REPLY_TO, MatchTier.SELF)


def matching_tiers(target_id: str, candidate: Message):
    """Yield every tier at which ``candidate`` matches a normalized target."""
    if target_id in candidate.references:
        yield MatchTier.REFERENCES
    if candidate.parent_id == target_id:
        yield MatchTier.IN_REPLY_TO
    if candidate.message_id == target_id:
        yield MatchTier.SELF


def resolve(
    target_id: Optional[Union[str, bytes]], candidates: Iterable[Message]
) -> ResolvedTarget:
    """Resolve a target identifier against candidate messages.

    Args:
        target_id: Identifier of the message being replied to or forwarded
        candidates: Messages to search; not mutated or retained

    Returns:
        ResolvedTarget; ``matched`` is False when nothing corresponds
    """
    target = normalize(target_id)
    if target is None:
        return ResolvedTarget()

    best: Dict[MatchTier, Message] = {}
    for candidate in candidates:
        for tier in matching_tiers(target, candidate):
            current = best.get(tier)
            # Strictly newer replaces, so equal timestamps keep the first seen
            if current is None or candidate.sort_date > current.sort_date:
                best[tier] = candidate

    for tier in TIER_ORDER:
        if tier in best:
            return ResolvedTarget(message=best[tier], tier=tier)

    return ResolvedTarget()
