"""IMAP client implementation (message store adapter, read side)."""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple, cast

import imapclient

from webmail_gateway.config import ImapConfig
from webmail_gateway.models import Message

logger = logging.getLogger(__name__)

ENVELOPE_ITEM = "BODY.PEEK[HEADER]"
FULL_ITEM = "BODY.PEEK[]"
GMAIL_THREAD_ITEM = "X-GM-THRID"

# imapclient reports PEEK fetches under the non-PEEK key
_RESPONSE_KEYS = {
    ENVELOPE_ITEM: (b"BODY[HEADER]", b"BODY.PEEK[HEADER]"),
    FULL_ITEM: (b"BODY[]", b"BODY.PEEK[]"),
}


def parse_selector(selector: str) -> Tuple[str, Optional[int]]:
    """Translate a selector into (search criteria, tail limit).

    Supported selectors: ``all``, ``unseen``, ``last:N`` and ``unseen:last:N``.

    Raises:
        ValueError: If the selector is not recognised
    """
    parts = selector.lower().split(":")
    criteria = "ALL"
    if parts and parts[0] in ("all", "unseen"):
        criteria = parts[0].upper()
        parts = parts[1:]

    if not parts:
        return criteria, None

    if len(parts) == 2 and parts[0] == "last":
        try:
            limit = int(parts[1])
        except ValueError:
            raise ValueError(f"Invalid selector: {selector}")
        if limit <= 0:
            raise ValueError(f"Selector limit must be positive: {selector}")
        return criteria, limit

    raise ValueError(f"Invalid selector: {selector}")


class ImapClient:
    """IMAP client for reading messages from the mail store."""

    def __init__(self, config: ImapConfig, batch_size: int = 50):
        """Initialize IMAP client.

        Args:
            config: IMAP configuration
            batch_size: Number of envelopes requested per FETCH while scanning
        """
        self.config = config
        self.batch_size = batch_size
        self.client: Optional[imapclient.IMAPClient] = None
        self.connected = False
        self.current_folder: Optional[str] = None
        self._capabilities: Optional[List[str]] = None

    def connect(self) -> None:
        """Connect to IMAP server.

        Raises:
            ConnectionError: If connection fails
        """
        try:
            self.client = imapclient.IMAPClient(
                self.config.host,
                port=self.config.port,
                ssl=self.config.use_ssl,
            )

            if not self.config.password:
                raise ValueError("Password is required for authentication")

            self.client.login(self.config.username, self.config.password)

            self.connected = True
            logger.info(f"Connected to IMAP server {self.config.host}")
        except Exception as e:
            self.connected = False
            logger.error(f"Failed to connect to IMAP server: {e}")
            raise ConnectionError(f"Failed to connect to IMAP server: {e}")

    def disconnect(self) -> None:
        """Disconnect from IMAP server."""
        if self.client:
            try:
                self.client.logout()
            except Exception as e:
                logger.warning(f"Error during IMAP logout: {e}")
            finally:
                self.client = None
                self.connected = False
                self.current_folder = None
                self._capabilities = None
                logger.info("Disconnected from IMAP server")

    def ensure_connected(self) -> None:
        """Ensure that we are connected to the IMAP server.

        Raises:
            ConnectionError: If connection fails
        """
        if not self.connected or not self.client:
            self.connect()

        if self.client is None:
            raise ConnectionError("Failed to initialize IMAP client")

    def _get_client(self) -> imapclient.IMAPClient:
        """Get the IMAP client, ensuring it is connected.

        Raises:
            ConnectionError: If not connected and connection fails.
        """
        self.ensure_connected()
        if self.client is None:
            raise ConnectionError("IMAP client not initialized")
        return self.client

    def get_capabilities(self) -> List[str]:
        """Get IMAP server capabilities, upper-cased."""
        if self._capabilities is None:
            client = self._get_client()
            capabilities = []
            for cap in client.capabilities():
                if isinstance(cap, bytes):
                    cap = cap.decode("utf-8")
                capabilities.append(cap.upper())
            self._capabilities = capabilities
        return self._capabilities

    @property
    def is_gmail(self) -> bool:
        return "X-GM-EXT-1" in self.get_capabilities()

    def select_folder(self, folder: str, readonly: bool = True) -> Dict[Any, Any]:
        """Select folder on IMAP server.

        Raises:
            ConnectionError: If the folder cannot be selected
        """
        client = self._get_client()
        if self.current_folder == folder:
            return {}
        try:
            result = client.select_folder(folder, readonly=readonly)
            self.current_folder = folder
            logger.debug(f"Selected folder '{folder}'")
            return cast(Dict[Any, Any], result)
        except imapclient.IMAPClient.Error as e:
            logger.error(f"Error selecting folder {folder}: {e}")
            raise ConnectionError(f"Failed to select folder {folder}: {e}")

    def list_addresses(self, mailbox: str, criteria: str = "ALL") -> List[int]:
        """Return the UIDs of a mailbox in ascending order."""
        client = self._get_client()
        self.select_folder(mailbox)
        uids = sorted(client.search(criteria))
        logger.debug(f"Search {criteria} in {mailbox} returned {len(uids)} UIDs")
        return uids

    def search_by_thread_id(self, thread_id: str, mailbox: str) -> List[int]:
        """Search for UIDs by Gmail thread ID (X-GM-THRID).

        Returns an empty list when the server has no Gmail extensions.
        """
        if not self.is_gmail:
            return []
        client = self._get_client()
        self.select_folder(mailbox)
        return sorted(client.search(["X-GM-THRID", thread_id]))  # type: ignore

    def _fetch(self, uids: List[int], mailbox: str, full: bool) -> Dict[int, Message]:
        """Fetch and parse messages for ``uids``."""
        if not uids:
            return {}

        client = self._get_client()
        self.select_folder(mailbox)

        body_item = FULL_ITEM if full else ENVELOPE_ITEM
        fetch_attributes = [body_item]
        is_gmail = self.is_gmail
        if is_gmail:
            fetch_attributes.append(GMAIL_THREAD_ITEM)

        result: Any = client.fetch(uids, fetch_attributes)

        messages: Dict[int, Message] = {}
        for uid, data in result.items():
            raw = None
            for key in _RESPONSE_KEYS[body_item]:
                raw = data.get(key)
                if raw:
                    break

            if not isinstance(raw, bytes):
                logger.warning(f"No {body_item} data for message {uid} in {mailbox}")
                continue

            thread_id = None
            if is_gmail:
                thread_raw = data.get(GMAIL_THREAD_ITEM.encode())
                if isinstance(thread_raw, bytes):
                    thread_id = thread_raw.decode("utf-8")
                elif thread_raw is not None:
                    thread_id = str(thread_raw)

            messages[uid] = Message.from_bytes(
                raw,
                uid=uid,
                folder=mailbox,
                thread_id=thread_id,
                keep_raw=full,
            )

        return messages

    def fetch_envelopes(
        self, mailbox: str, selector: str = "all", full: bool = False
    ) -> List[Message]:
        """Fetch messages of a mailbox matching ``selector``, oldest UID first.

        Args:
            mailbox: Mailbox to read
            selector: ``all``, ``unseen`` or ``last:N`` (see parse_selector)
            full: Also fetch body and attachments

        Returns:
            Messages with identifiers, references, date, subject and sender
        """
        criteria, limit = parse_selector(selector)
        uids = self.list_addresses(mailbox, criteria)
        if limit is not None:
            uids = uids[-limit:]

        fetched = self._fetch(uids, mailbox, full=full)
        return [fetched[uid] for uid in uids if uid in fetched]

    def fetch_messages(
        self, uids: List[int], mailbox: str, full: bool = True
    ) -> List[Message]:
        fetched = self._fetch(sorted(uids), mailbox, full=full)
        return [fetched[uid] for uid in sorted(uids) if uid in fetched]

    def iter_envelopes(
        self, addresses: List[int], mailbox: str
    ) -> Iterator[Tuple[int, Message]]:
        """Yield (uid, envelope) pairs, fetching ``batch_size`` at a time."""
        for start in range(0, len(addresses), self.batch_size):
            batch = addresses[start : start + self.batch_size]
            fetched = self._fetch(batch, mailbox, full=False)
            for uid in batch:
                if uid in fetched:
                    yield uid, fetched[uid]

    def fetch_full(self, address: int, mailbox: str) -> Optional[Message]:
        """Fetch body, attachments and raw source of one message."""
        return self._fetch([address], mailbox, full=True).get(address)


@contextmanager
def imap_session(config: ImapConfig, batch_size: int = 50) -> Iterator[ImapClient]:
    """Open an IMAP connection for the duration of one operation."""
    client = ImapClient(config, batch_size=batch_size)
    client.connect()
    try:
        yield client
    finally:
        client.disconnect()
