"""Tests for the cancellable envelope scan."""

import dataclasses
import time
from typing import Dict, List, Optional

import pytest

from webmail_gateway.exceptions import MessageNotFound, OperationCancelled
from webmail_gateway.scan import CancelToken, EnvelopeScan, ScanState, scan_for_message


class FakeSource:
    """In-memory envelope source keyed by UID."""

    def __init__(self, envelopes, on_envelope=None, fail_listing=None, full=None):
        self.envelopes = {m.uid: m for m in envelopes}
        self.on_envelope = on_envelope
        self.fail_listing = fail_listing
        self.full: Dict[int, Optional[object]] = full or {}
        self.yielded: List[int] = []
        self.full_fetches: List[int] = []

    def list_addresses(self, mailbox):
        if self.fail_listing:
            raise self.fail_listing
        return sorted(self.envelopes)

    def iter_envelopes(self, addresses, mailbox):
        for uid in addresses:
            self.yielded.append(uid)
            if self.on_envelope:
                self.on_envelope(uid)
            yield uid, self.envelopes[uid]

    def fetch_full(self, address, mailbox):
        self.full_fetches.append(address)
        if address in self.full:
            return self.full[address]
        return dataclasses.replace(self.envelopes[address], raw=b"full source")


@pytest.fixture
def envelopes(make_message):
    return [make_message(f"m{i}@example.com", uid=i, ts=i) for i in range(1, 6)]


def test_finds_message_and_stops(envelopes):
    source = FakeSource(envelopes)
    scan = EnvelopeScan(source, "[Gmail]/All Mail")

    message = scan.run("<m3@example.com>")

    assert message.message_id == "m3@example.com"
    assert message.raw == b"full source"
    assert source.yielded == [1, 2, 3]
    assert source.full_fetches == [3]
    assert scan.matched_address == 3
    assert scan.scanned == 3
    assert scan.history == [
        ScanState.SCANNING,
        ScanState.FOUND,
        ScanState.FETCHING_FULL,
        ScanState.DONE,
    ]


def test_not_found(envelopes):
    source = FakeSource(envelopes)
    scan = EnvelopeScan(source, "INBOX")

    with pytest.raises(MessageNotFound) as exc_info:
        scan.run("missing@example.com")

    assert exc_info.value.message_id == "missing@example.com"
    assert scan.scanned == 5
    assert scan.history[-2:] == [ScanState.EXHAUSTED, ScanState.FAILED]
    assert source.full_fetches == []


def test_empty_target_is_not_found(envelopes):
    source = FakeSource(envelopes)
    scan = EnvelopeScan(source, "INBOX")

    with pytest.raises(MessageNotFound):
        scan.run("<>")

    assert source.yielded == []
    assert scan.state is ScanState.FAILED


def test_cancelled_before_start(envelopes):
    token = CancelToken()
    token.cancel()
    source = FakeSource(envelopes)
    scan = EnvelopeScan(source, "INBOX", token=token)

    with pytest.raises(OperationCancelled) as exc_info:
        scan.run("m3@example.com")

    assert exc_info.value.scanned == 0
    assert scan.state is ScanState.CANCELLED
    assert source.yielded == []


def test_cancelled_mid_scan(envelopes):
    token = CancelToken()

    def cancel_at_two(uid):
        if uid == 2:
            token.cancel()

    source = FakeSource(envelopes, on_envelope=cancel_at_two)
    scan = EnvelopeScan(source, "INBOX", token=token)

    with pytest.raises(OperationCancelled) as exc_info:
        scan.run("m5@example.com")

    assert exc_info.value.scanned == 1
    assert scan.history == [ScanState.SCANNING, ScanState.CANCELLED]
    assert source.full_fetches == []


def test_deadline_expiry(envelopes):
    token = CancelToken(timeout=0)
    time.sleep(0.001)
    scan = EnvelopeScan(FakeSource(envelopes), "INBOX", token=token)

    assert token.expired
    with pytest.raises(OperationCancelled, match="deadline exceeded"):
        scan.run("m1@example.com")


def test_cancellation_is_a_timeout(envelopes):
    token = CancelToken()
    token.cancel()

    with pytest.raises(TimeoutError):
        scan_for_message(FakeSource(envelopes), "INBOX", "m1@example.com", token=token)


def test_adapter_error_propagates(envelopes):
    source = FakeSource(envelopes, fail_listing=ConnectionError("connection reset"))
    scan = EnvelopeScan(source, "INBOX")

    with pytest.raises(ConnectionError, match="connection reset"):
        scan.run("m1@example.com")

    assert scan.state is ScanState.FAILED


def test_full_fetch_missing(envelopes):
    source = FakeSource(envelopes, full={2: None})
    scan = EnvelopeScan(source, "INBOX")

    with pytest.raises(MessageNotFound):
        scan.run("m2@example.com")

    assert scan.history[-3:] == [
        ScanState.FOUND,
        ScanState.FETCHING_FULL,
        ScanState.FAILED,
    ]


def test_scan_is_single_use(envelopes):
    scan = EnvelopeScan(FakeSource(envelopes), "INBOX")
    scan.run("m1@example.com")

    with pytest.raises(RuntimeError):
        scan.run("m1@example.com")


def test_token_without_timeout_never_expires():
    token = CancelToken()

    assert not token.expired
    assert not token.cancelled
    token.cancel()
    assert token.cancelled
