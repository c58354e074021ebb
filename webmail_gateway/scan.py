"""Envelope scan for locating a message by identifier in a remote mailbox.

The store only addresses messages by UID, so finding one by Message-ID
means walking every envelope in the mailbox. The scan is O(mailbox size)
and therefore cancellable.
"""

import logging
import threading
import time
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Protocol, Tuple

from webmail_gateway.exceptions import MessageNotFound, OperationCancelled
from webmail_gateway.identifiers import normalize, same_identifier
from webmail_gateway.models import Message

logger = logging.getLogger(__name__)


class ScanState(Enum):
    SCANNING = "scanning"
    FOUND = "found"
    FETCHING_FULL = "fetching_full"
    DONE = "done"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EnvelopeSource(Protocol):
    """The slice of the store adapter a scan needs."""

    def list_addresses(self, mailbox: str) -> List[int]:
        ...

    def iter_envelopes(
        self, addresses: List[int], mailbox: str
    ) -> Iterator[Tuple[int, Message]]:
        ...

    def fetch_full(self, address: int, mailbox: str) -> Optional[Message]:
        ...


class CancelToken:
    """Cancellation flag with an optional deadline.

    Can be cancelled from another thread; the scan checks it between
    envelopes.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self.timeout = timeout
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.expired


class EnvelopeScan:
    """Single-use scan: SCANNING -> FOUND -> FETCHING_FULL -> DONE.

    Failure paths end in FAILED (after EXHAUSTED when nothing matched) or
    CANCELLED.
    """

    def __init__(
        self,
        source: EnvelopeSource,
        mailbox: str,
        token: Optional[CancelToken] = None,
    ):
        self.source = source
        self.mailbox = mailbox
        self.token = token or CancelToken()
        self.state = ScanState.SCANNING
        self.history: List[ScanState] = [ScanState.SCANNING]
        self.scanned = 0
        self.matched_address: Optional[int] = None

    def _transition(self, state: ScanState) -> None:
        self.state = state
        self.history.append(state)

    def _check_cancelled(self) -> None:
        if self.token.cancelled:
            self._transition(ScanState.CANCELLED)
            reason = "deadline exceeded" if self.token.expired else "cancelled"
            raise OperationCancelled(
                f"Scan of {self.mailbox} {reason} after {self.scanned} envelopes",
                scanned=self.scanned,
            )

    def _find(
        self, target: str, envelopes: Iterable[Tuple[int, Message]]
    ) -> Optional[int]:
        for address, envelope in envelopes:
            self._check_cancelled()
            self.scanned += 1
            if same_identifier(envelope.message_id, target):
                return address
        return None

    def _exhausted(self, target: Optional[str]) -> MessageNotFound:
        self._transition(ScanState.EXHAUSTED)
        self._transition(ScanState.FAILED)
        return MessageNotFound(target, f"Message {target} not found in {self.mailbox}")

    def run(self, target_id: Optional[str]) -> Message:
        """Locate ``target_id`` and return the full message.

        Raises:
            MessageNotFound: If no envelope carries the identifier
            OperationCancelled: If the token was cancelled or expired
        """
        if len(self.history) > 1:
            raise RuntimeError("EnvelopeScan instances are single use")

        target = normalize(target_id)
        if target is None:
            raise self._exhausted(target_id)

        try:
            self._check_cancelled()
            addresses = self.source.list_addresses(self.mailbox)
            logger.debug(f"Scanning {len(addresses)} envelopes in {self.mailbox}")

            address = self._find(
                target, self.source.iter_envelopes(addresses, self.mailbox)
            )
        except OperationCancelled:
            raise
        except Exception:
            self._transition(ScanState.FAILED)
            raise

        if address is None:
            raise self._exhausted(target)

        self.matched_address = address
        self._transition(ScanState.FOUND)
        self._check_cancelled()

        self._transition(ScanState.FETCHING_FULL)
        try:
            message = self.source.fetch_full(address, self.mailbox)
        except Exception:
            self._transition(ScanState.FAILED)
            raise

        if message is None or message.raw is None:
            self._transition(ScanState.FAILED)
            raise MessageNotFound(target, f"Failed to retrieve source of {target}")

        self._transition(ScanState.DONE)
        return message


def scan_for_message(
    source: EnvelopeSource,
    mailbox: str,
    target_id: str,
    token: Optional[CancelToken] = None,
) -> Message:
    """Convenience wrapper running one EnvelopeScan."""
    return EnvelopeScan(source, mailbox, token=token).run(target_id)
