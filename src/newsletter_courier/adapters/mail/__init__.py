"""Inbox adapters."""

from newsletter_courier.adapters.mail.imap_inbox import ImapInbox

__all__ = ["ImapInbox"]
