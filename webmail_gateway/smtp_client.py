"""SMTP client implementation (message store adapter, submission side)."""

import logging
import smtplib
from email import policy
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional

from webmail_gateway.config import SmtpConfig
from webmail_gateway.models import HeaderSet, OutgoingMessage, SubmitResult

logger = logging.getLogger(__name__)

# Keeps long In-Reply-To/References ids on one line, unencoded
SUBMIT_POLICY = policy.SMTP.clone(max_line_length=998)


def build_mime(
    outgoing: OutgoingMessage,
    sender: str,
    headers: Optional[HeaderSet] = None,
) -> EmailMessage:
    """Build the MIME message for an outgoing mail.

    Args:
        outgoing: Composed message
        sender: From address
        headers: Threading headers for a reply; omitted for new/forwarded mail

    Returns:
        EmailMessage ready to send (Bcc included, stripped on send)
    """
    message = EmailMessage(policy=SUBMIT_POLICY)
    domain = sender.rsplit("@", 1)[-1] if "@" in sender else None
    message["Message-ID"] = make_msgid(domain=domain)
    message["From"] = sender
    message["To"] = ", ".join(outgoing.to)
    if outgoing.cc:
        message["Cc"] = ", ".join(outgoing.cc)
    if outgoing.bcc:
        message["Bcc"] = ", ".join(outgoing.bcc)
    message["Subject"] = outgoing.subject

    if headers is not None:
        for name, value in headers.as_headers().items():
            message[name] = value

    message.set_content(outgoing.text or "", subtype="plain")
    if outgoing.html:
        message.add_alternative(outgoing.html, subtype="html")

    for attachment in outgoing.attachments:
        maintype, _, subtype = attachment.content_type.partition("/")
        message.add_attachment(
            attachment.content,
            maintype=maintype or "application",
            subtype=subtype or "octet-stream",
            filename=attachment.filename,
        )

    return message


class SMTPClient:
    """Submits composed messages over SMTP."""

    def __init__(self, config: SmtpConfig, timeout: float = 30.0):
        self.config = config
        self.timeout = timeout

    def _connect(self) -> smtplib.SMTP:
        if self.config.use_ssl:
            server: smtplib.SMTP = smtplib.SMTP_SSL(
                self.config.host, self.config.port, timeout=self.timeout
            )
        else:
            server = smtplib.SMTP(self.config.host, self.config.port, timeout=self.timeout)

        try:
            if not self.config.use_ssl and self.config.starttls:
                server.starttls()
            if self.config.password:
                server.login(self.config.username, self.config.password)
        except BaseException:
            server.close()
            raise
        return server

    def send_message(self, message: EmailMessage) -> None:
        """Send a MIME message.

        Raises:
            smtplib.SMTPException: If the server rejects the message
            OSError: If the connection fails
        """
        server = self._connect()
        try:
            server.send_message(message)
            logger.info(f"Sent message {message['Message-ID']} to {message['To']}")
        finally:
            try:
                server.quit()
            except smtplib.SMTPException as e:
                logger.warning(f"Error closing SMTP connection: {e}")

    def submit(
        self,
        outgoing: OutgoingMessage,
        headers: Optional[HeaderSet] = None,
        sender: Optional[str] = None,
    ) -> SubmitResult:
        """Compose and send ``outgoing``; failures propagate to the caller."""
        message = build_mime(outgoing, sender or self.config.username, headers)
        self.send_message(message)
        return SubmitResult(
            success=True,
            remote_message_id=message["Message-ID"],
            headers=headers,
        )
