"""Core interfaces for adapters."""

from abc import ABC, abstractmethod
from typing import Optional

from newsletter_courier.core.entities import (
    ChannelPost,
    EmailMessage,
    GuildSubscription,
    Issue,
    Newsletter,
)


class InboxSource(ABC):
    """Interface for the mailbox newsletters arrive in."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the mailbox session."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the mailbox session."""
        pass

    @abstractmethod
    async def fetch_new_emails(self) -> list[EmailMessage]:
        """Fetch emails that have not been processed yet, in server order."""
        pass

    @abstractmethod
    async def mark_as_processed(self, message_id: str) -> None:
        """Flag an email so it is not fetched again."""
        pass


class NewsletterRepository(ABC):
    """Interface for newsletter storage."""

    @abstractmethod
    async def get_all(self) -> list[Newsletter]:
        pass

    @abstractmethod
    async def get_by_id(self, newsletter_id: str) -> Optional[Newsletter]:
        pass

    @abstractmethod
    async def get_by_sender_email(self, email: str) -> Optional[Newsletter]:
        """Case-insensitive exact match on sender email."""
        pass

    @abstractmethod
    async def save(self, newsletter: Newsletter) -> None:
        """Create or update."""
        pass

    @abstractmethod
    async def delete(self, newsletter_id: str) -> None:
        pass

    @abstractmethod
    async def exists_by_sender_email(self, email: str) -> bool:
        pass


class IssueRepository(ABC):
    """Interface for issue storage."""

    @abstractmethod
    async def get_all(self) -> list[Issue]:
        pass

    @abstractmethod
    async def get_by_id(self, issue_id: str) -> Optional[Issue]:
        pass

    @abstractmethod
    async def get_by_newsletter_id(self, newsletter_id: str) -> list[Issue]:
        pass

    @abstractmethod
    async def get_by_message_id(self, message_id: str) -> Optional[Issue]:
        pass

    @abstractmethod
    async def get_unprocessed(self) -> list[Issue]:
        pass

    @abstractmethod
    async def save(self, issue: Issue) -> None:
        """Create or update."""
        pass

    @abstractmethod
    async def delete(self, issue_id: str) -> None:
        pass

    @abstractmethod
    async def mark_as_processed(self, issue_id: str) -> None:
        pass

    @abstractmethod
    async def exists_by_message_id(self, message_id: str) -> bool:
        pass


class GuildSubscriptionRepository(ABC):
    """Interface for guild subscription storage."""

    @abstractmethod
    async def get_all(self) -> list[GuildSubscription]:
        pass

    @abstractmethod
    async def get_by_id(self, subscription_id: str) -> Optional[GuildSubscription]:
        pass

    @abstractmethod
    async def get_by_guild_id(self, guild_id: str) -> list[GuildSubscription]:
        pass

    @abstractmethod
    async def get_by_newsletter_id(self, newsletter_id: str) -> list[GuildSubscription]:
        pass

    @abstractmethod
    async def get_active_by_newsletter_id(self, newsletter_id: str) -> list[GuildSubscription]:
        pass

    @abstractmethod
    async def get_by_guild_and_newsletter(
        self, guild_id: str, newsletter_id: str
    ) -> Optional[GuildSubscription]:
        pass

    @abstractmethod
    async def save(self, subscription: GuildSubscription) -> None:
        """Create or update."""
        pass

    @abstractmethod
    async def delete(self, subscription_id: str) -> None:
        pass

    @abstractmethod
    async def delete_by_guild_id(self, guild_id: str) -> None:
        pass

    @abstractmethod
    async def exists_by_guild_and_newsletter(self, guild_id: str, newsletter_id: str) -> bool:
        pass


class ChannelPoster(ABC):
    """Interface for posting issues to chat channels."""

    @abstractmethod
    async def post_to_channel(self, post: ChannelPost) -> None:
        """Post one message, waiting out rate limits. Raises on failure."""
        pass
