"""Tests for reply/forward target correlation."""

from webmail_gateway.correlation import resolve
from webmail_gateway.models import MatchTier


def test_reference_membership_beats_self_match(make_message):
    m1 = make_message("m1", ts=1)
    m2 = make_message("m2", parent="m1", refs=["m1"], ts=2)

    target = resolve("m1", [m1, m2])

    assert target.matched
    assert target.message == m2
    assert target.tier is MatchTier.REFERENCES


def test_bracketed_target_is_normalized(make_message):
    m1 = make_message("m1", ts=1)
    m2 = make_message("m2", parent="m1", refs=["m1"], ts=2)

    assert resolve("<m1>", [m1, m2]).message == m2


def test_in_reply_to_tier(make_message):
    m1 = make_message("m1", ts=1)
    m2 = make_message("m2", parent="<m1>", ts=2)

    target = resolve("m1", [m1, m2])

    assert target.message == m2
    assert target.tier is MatchTier.IN_REPLY_TO


def test_self_match_when_no_descendant(make_message):
    m1 = make_message("m1", ts=1)
    other = make_message("other", ts=5)

    target = resolve("m1", [other, m1])

    assert target.message == m1
    assert target.tier is MatchTier.SELF


def test_higher_tier_wins_over_newer_lower_tier(make_message):
    referencing = make_message("m2", refs=["m1"], ts=1)
    direct_reply = make_message("m3", parent="m1", ts=9)

    target = resolve("m1", [direct_reply, referencing])

    assert target.message == referencing
    assert target.tier is MatchTier.REFERENCES


def test_latest_within_tier_regardless_of_order(make_message):
    candidates = [
        make_message("m2", refs=["m1"], ts=1),
        make_message("m3", refs=["m1", "m2"], ts=5),
        make_message("m4", refs=["m1"], ts=3),
    ]

    assert resolve("m1", candidates).message.message_id == "m3"
    assert resolve("m1", list(reversed(candidates))).message.message_id == "m3"


def test_equal_timestamps_keep_first_seen(make_message):
    first = make_message("a", refs=["m1"], ts=4)
    second = make_message("b", refs=["m1"], ts=4)

    assert resolve("m1", [first, second]).message == first


def test_no_match_returns_empty_target(make_message):
    candidates = [
        make_message("m1", ts=1),
        make_message("m2", parent="m1", refs=["m1"], ts=2),
    ]

    target = resolve("unknown@example.com", candidates)

    assert not target.matched
    assert target.message is None
    assert target.tier is None


def test_absent_target_returns_empty_target(make_message):
    assert not resolve("", [make_message("m1")]).matched
    assert not resolve(None, [make_message("m1")]).matched


def test_accepts_any_iterable(make_message):
    candidates = (make_message(f"m{i}", parent="root", ts=i) for i in range(3))

    target = resolve("root", candidates)

    assert target.message.message_id == "m2"


def test_nested_brackets_match_reference_tier(make_message):
    candidate = make_message("m2", parent="<<a@x>>", refs=("<<a@x>>",), ts=1)

    assert candidate.references == (candidate.parent_id,)
    target = resolve("<<a@x>>", [candidate])
    assert target.tier is MatchTier.REFERENCES
