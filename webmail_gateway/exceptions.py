"""Gateway error types.

Adapter failures (IMAP/SMTP connection, fetch and submit errors) are not
wrapped here: they propagate to the caller unchanged.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for errors reported by the threading/correlation core."""


class MessageNotFound(GatewayError):
    """The target message is absent from the scanned candidates."""

    def __init__(self, message_id: Optional[str], detail: Optional[str] = None):
        self.message_id = message_id
        super().__init__(detail or f"Message {message_id} not found")


class OperationCancelled(GatewayError, TimeoutError):
    """A long running scan was cancelled or exceeded its deadline."""

    def __init__(self, detail: str = "Operation cancelled", scanned: int = 0):
        self.scanned = scanned
        super().__init__(detail)
