"""Webmail gateway: IMAP/SMTP relay with conversation threading."""

__version__ = "0.1.0"
