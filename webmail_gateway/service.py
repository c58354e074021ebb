"""Mail operations: inbox, thread view, send, reply and forward.

Each operation opens its own IMAP session and closes it before submitting
over SMTP; no connection outlives the call.
"""

import logging
from dataclasses import dataclass
from typing import Callable, ContextManager, List, Optional

from webmail_gateway.config import GatewayConfig, ImapConfig
from webmail_gateway.correlation import resolve
from webmail_gateway.exceptions import MessageNotFound
from webmail_gateway.headers import compose, compose_forward, reply_subject
from webmail_gateway.imap_client import ImapClient, imap_session
from webmail_gateway.models import (
    MatchTier,
    Message,
    OutgoingAttachment,
    OutgoingMessage,
    SubmitResult,
    Thread,
)
from webmail_gateway.scan import CancelToken, scan_for_message
from webmail_gateway.smtp_client import SMTPClient
from webmail_gateway.threads import assemble_thread

logger = logging.getLogger(__name__)

FORWARD_BODY = "Forwarded message is attached."

SessionFactory = Callable[..., ContextManager[ImapClient]]


@dataclass
class ReplyResult:
    result: SubmitResult
    sent_to: List[str]
    subject: str
    tier: Optional[MatchTier] = None

    @property
    def threaded(self) -> bool:
        return self.result.headers is not None

    def to_dict(self):
        data = self.result.to_dict()
        data.update(
            {
                "sent_to": self.sent_to,
                "subject": self.subject,
                "threaded": self.threaded,
                "match_tier": self.tier.value if self.tier else None,
            }
        )
        return data


class MailService:
    """Gateway operations over one configured account."""

    def __init__(
        self,
        config: GatewayConfig,
        session_factory: SessionFactory = imap_session,
        smtp_client: Optional[SMTPClient] = None,
    ):
        self.config = config
        self.session_factory = session_factory
        self.smtp_client = smtp_client or SMTPClient(config.smtp)

    def _session(self) -> ContextManager[ImapClient]:
        imap: ImapConfig = self.config.imap
        return self.session_factory(imap, batch_size=self.config.scan.batch_size)

    def cancel_token(self, timeout: Optional[float] = None) -> CancelToken:
        """Token bounded by ``timeout`` or the configured scan timeout."""
        return CancelToken(
            timeout if timeout is not None else self.config.scan.timeout_seconds
        )

    def get_inbox(self, limit: Optional[int] = None) -> List[Message]:
        """Latest inbox messages, newest first, with bodies."""
        window = limit or self.config.mailboxes.inbox_window
        with self._session() as client:
            messages = client.fetch_envelopes(
                self.config.mailboxes.inbox, f"last:{window}", full=True
            )
        messages.reverse()
        return messages

    def get_thread(self, thread_id: str) -> Thread:
        """Assemble the reply tree of one conversation in the inbox.

        Uses the Gmail thread search when the id is a provider token, and
        otherwise filters inbox envelopes by thread key.
        """
        mailbox = self.config.mailboxes.inbox
        with self._session() as client:
            uids: List[int] = []
            if thread_id.isdigit():
                uids = client.search_by_thread_id(thread_id, mailbox)

            if not uids:
                envelopes = client.fetch_envelopes(mailbox, "all")
                members = assemble_thread(envelopes, thread_id)
                uids = [node.message.uid for node in members.walk() if node.message.uid]

            messages = client.fetch_messages(uids, mailbox, full=True)

        thread = assemble_thread(messages, thread_id)
        logger.debug(f"Thread {thread_id}: {thread.message_count} messages")
        return thread

    def send_mail(self, outgoing: OutgoingMessage) -> SubmitResult:
        return self.smtp_client.submit(outgoing)

    def reply(
        self,
        message_id: str,
        text: str = "",
        html: str = "",
        fallback_to: Optional[List[str]] = None,
        fallback_subject: str = "",
    ) -> ReplyResult:
        """Reply to the conversation containing ``message_id``.

        The target is resolved against inbox envelopes. Without a match the
        reply degrades to an unthreaded message to ``fallback_to``.

        Raises:
            MessageNotFound: No match and no fallback recipient, or the matched
                message has no sender to reply to
        """
        with self._session() as client:
            candidates = client.fetch_envelopes(self.config.mailboxes.inbox, "all")

        target = resolve(message_id, candidates)
        if target.message is not None and not target.message.sender:
            raise MessageNotFound(
                message_id,
                f"Original sender not found for {target.message.message_id}",
            )

        if target.message is not None:
            parent = target.message
            headers = compose(parent)
            recipients = [parent.sender]
            subject = reply_subject(parent.subject)
        elif fallback_to:
            logger.info(f"No reply target for {message_id}; sending unthreaded")
            headers = None
            recipients = list(fallback_to)
            subject = fallback_subject
        else:
            raise MessageNotFound(message_id)

        outgoing = OutgoingMessage(to=recipients, subject=subject, text=text, html=html)
        result = self.smtp_client.submit(outgoing, headers=headers)
        return ReplyResult(
            result=result,
            sent_to=recipients,
            subject=subject,
            tier=target.tier if headers else None,
        )

    def forward(
        self, message_id: str, to: List[str], token: Optional[CancelToken] = None
    ) -> SubmitResult:
        """Forward a message located by envelope scan.

        Raises:
            MessageNotFound: The message is not in the scanned mailbox
            OperationCancelled: The scan was cancelled or timed out
        """
        token = token or self.cancel_token()
        with self._session() as client:
            original = scan_for_message(
                client, self.config.mailboxes.all_mail, message_id, token=token
            )

        draft = compose_forward(original)
        outgoing = OutgoingMessage(
            to=list(to),
            subject=draft.subject,
            text=FORWARD_BODY,
            attachments=[
                OutgoingAttachment(filename=draft.filename, content=draft.attachment)
            ],
        )
        return self.smtp_client.submit(outgoing)
