"""IMAP inbox adapter."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from imap_tools import AND, MailBox, MailMessage, MailMessageFlags

from newsletter_courier.config import ImapConfig
from newsletter_courier.core.entities import EmailMessage
from newsletter_courier.core.errors import CourierError
from newsletter_courier.core.interfaces import InboxSource

logger = logging.getLogger(__name__)


class ImapInbox(InboxSource):
    """Read unseen newsletter emails from an IMAP mailbox.

    imap_tools is blocking, so every server round-trip runs in a worker
    thread to keep the event loop free.
    """

    def __init__(
        self,
        config: ImapConfig,
        mailbox_factory: Callable[..., Any] = MailBox,
    ) -> None:
        self.config = config
        self._mailbox_factory = mailbox_factory
        self._mailbox: Optional[Any] = None

    @property
    def is_connected(self) -> bool:
        return self._mailbox is not None

    async def connect(self) -> None:
        if self._mailbox is not None:
            return
        self._mailbox = await asyncio.to_thread(self._login)
        logger.info("IMAP connection established to %s", self.config.host)

    def _login(self) -> Any:
        mailbox = self._mailbox_factory(self.config.host, port=self.config.port)
        return mailbox.login(self.config.user, self.config.password, initial_folder=self.config.mailbox)

    async def disconnect(self) -> None:
        if self._mailbox is None:
            return
        mailbox, self._mailbox = self._mailbox, None
        await asyncio.to_thread(mailbox.logout)
        logger.info("IMAP connection closed")

    async def fetch_new_emails(self) -> list[EmailMessage]:
        mailbox = self._require_mailbox()
        messages = await asyncio.to_thread(
            lambda: list(
                mailbox.fetch(
                    AND(seen=False),
                    mark_seen=self.config.mark_seen_on_fetch,
                    bulk=True,
                )
            )
        )
        logger.info("Fetched %d unseen emails from %s", len(messages), self.config.mailbox)
        return [self._to_email(message) for message in messages]

    async def mark_as_processed(self, message_id: str) -> None:
        mailbox = self._require_mailbox()
        await asyncio.to_thread(mailbox.flag, [message_id], MailMessageFlags.SEEN, True)

    def _require_mailbox(self) -> Any:
        if self._mailbox is None:
            raise CourierError("IMAP inbox is not connected. Call connect() first")
        return self._mailbox

    @staticmethod
    def _to_email(message: MailMessage) -> EmailMessage:
        sender = message.from_values.full if message.from_values else message.from_
        received_at = message.date
        if received_at is None or received_at.year <= 1900:
            received_at = datetime.now(timezone.utc)
        return EmailMessage(
            sender=sender or "",
            subject=message.subject or "",
            received_at=received_at,
            text=message.text or "",
            html=message.html or None,
            message_id=message.uid,
        )
