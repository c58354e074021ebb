"""Configuration handling for the webmail gateway."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml  # type: ignore
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


# Load environment variables from .env file if it exists
load_dotenv()

GMAIL_ALL_MAIL = "[Gmail]/All Mail"


def _is_gmail_host(host: str) -> bool:
    return host.endswith("gmail.com") or host.endswith("googlemail.com")


@dataclass
class ImapConfig:
    """IMAP server configuration."""

    host: str
    port: int
    username: str
    password: Optional[str] = None
    use_ssl: bool = True

    @property
    def is_gmail(self) -> bool:
        """Check if this is a Gmail configuration."""
        return _is_gmail_host(self.host)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImapConfig":
        """Create configuration from dictionary."""
        # Password can be specified in environment variable
        password = data.get("password") or os.environ.get("IMAP_PASSWORD")
        if not password:
            logger.warning(
                "IMAP password not configured - mailbox access will fail until set"
            )

        return cls(
            host=data["host"],
            port=data.get("port", 993 if data.get("use_ssl", True) else 143),
            username=data["username"],
            password=password,
            use_ssl=data.get("use_ssl", True),
        )


@dataclass
class SmtpConfig:
    """SMTP submission configuration."""

    host: str
    port: int
    username: str
    password: Optional[str] = None
    use_ssl: bool = True
    starttls: bool = False

    @classmethod
    def from_dict(
        cls, data: Dict[str, Any], imap: Optional[ImapConfig] = None
    ) -> "SmtpConfig":
        """Create configuration from dictionary.

        Credentials default to the IMAP account's when not given.
        """
        use_ssl = data.get("use_ssl", True)
        default_host = ""
        if imap is not None:
            default_host = (
                "smtp.gmail.com" if imap.is_gmail else imap.host.replace("imap.", "smtp.", 1)
            )

        host = data.get("host") or os.environ.get("SMTP_HOST") or default_host
        if not host:
            raise ValueError("Missing required SMTP host")

        return cls(
            host=host,
            port=int(data.get("port") or (465 if use_ssl else 587)),
            username=data.get("username") or (imap.username if imap else ""),
            password=data.get("password")
            or os.environ.get("SMTP_PASSWORD")
            or (imap.password if imap else None),
            use_ssl=use_ssl,
            starttls=data.get("starttls", not use_ssl),
        )


@dataclass
class MailboxConfig:
    """Mailbox names used by the gateway."""

    inbox: str = "INBOX"
    all_mail: str = GMAIL_ALL_MAIL
    inbox_window: int = 5

    def __post_init__(self):
        if self.inbox_window <= 0:
            raise ValueError(
                f"inbox_window must be positive (got {self.inbox_window})"
            )

    @classmethod
    def from_dict(
        cls, data: Dict[str, Any], imap: Optional[ImapConfig] = None
    ) -> "MailboxConfig":
        inbox = data.get("inbox", "INBOX")
        # Only Gmail has an All Mail folder; elsewhere forwards scan the inbox
        default_all_mail = GMAIL_ALL_MAIL if imap is None or imap.is_gmail else inbox
        return cls(
            inbox=inbox,
            all_mail=data.get("all_mail", default_all_mail),
            inbox_window=int(data.get("inbox_window", 5)),
        )


@dataclass
class ScanConfig:
    """Envelope scan limits."""

    timeout_seconds: Optional[float] = 60.0
    batch_size: int = 50

    def __post_init__(self):
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive or null")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanConfig":
        timeout = data.get("timeout_seconds", 60.0)
        return cls(
            timeout_seconds=float(timeout) if timeout is not None else None,
            batch_size=int(data.get("batch_size", 50)),
        )


@dataclass
class GatewayConfig:
    """Gateway configuration."""

    imap: ImapConfig
    smtp: SmtpConfig
    mailboxes: MailboxConfig = field(default_factory=MailboxConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    bearer_token: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GatewayConfig":
        """Create configuration from dictionary."""
        imap = ImapConfig.from_dict(data.get("imap", {}))
        return cls(
            imap=imap,
            smtp=SmtpConfig.from_dict(data.get("smtp") or {}, imap=imap),
            mailboxes=MailboxConfig.from_dict(data.get("mailboxes") or {}, imap=imap),
            scan=ScanConfig.from_dict(data.get("scan") or {}),
            bearer_token=data.get("bearer_token") or os.environ.get("GATEWAY_TOKEN"),
        )


def load_config(config_path: Optional[str] = None) -> GatewayConfig:
    """Load configuration from file or environment variables.

    Args:
        config_path: Path to configuration file

    Returns:
        Gateway configuration

    Raises:
        ValueError: If configuration is invalid
    """
    default_locations = [
        Path("config/config.yaml"),
        Path("config/config.yml"),
        Path("config.yaml"),
        Path("config.yml"),
        Path("~/.config/webmail-gateway/config.yaml"),
        Path("/etc/webmail-gateway/config.yaml"),
    ]

    config_data: Dict[str, Any] = {}

    if config_path:
        try:
            with open(config_path, "r") as f:
                config_data = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {config_path}")
        except FileNotFoundError:
            logger.warning(f"Configuration file not found: {config_path}")
    else:
        for path in default_locations:
            expanded_path = path.expanduser()
            if expanded_path.exists():
                with open(expanded_path, "r") as f:
                    config_data = yaml.safe_load(f) or {}
                logger.info(f"Loaded configuration from {expanded_path}")
                break

    if not config_data:
        logger.info("No configuration file found, using environment variables")
        if not os.environ.get("IMAP_HOST"):
            raise ValueError(
                "No configuration file found and IMAP_HOST environment variable not set"
            )

        config_data = {
            "imap": {
                "host": os.environ.get("IMAP_HOST"),
                "port": int(os.environ.get("IMAP_PORT", "993")),
                "username": os.environ.get("IMAP_USERNAME"),
                "password": os.environ.get("IMAP_PASSWORD"),
                "use_ssl": os.environ.get("IMAP_USE_SSL", "true").lower() == "true",
            },
            "smtp": {
                "host": os.environ.get("SMTP_HOST"),
                "port": os.environ.get("SMTP_PORT"),
                "username": os.environ.get("SMTP_USERNAME"),
                "password": os.environ.get("SMTP_PASSWORD"),
                "use_ssl": os.environ.get("SMTP_USE_SSL", "true").lower() == "true",
            },
            "scan": {
                "timeout_seconds": float(os.environ.get("SCAN_TIMEOUT_SECONDS", "60")),
            },
        }

    try:
        return GatewayConfig.from_dict(config_data)
    except KeyError as e:
        raise ValueError(f"Missing required configuration: {e}")
