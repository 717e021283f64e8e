"""Core domain entities."""

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlparse

from newsletter_courier.core.errors import ValidationError

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
SNOWFLAKE_RE = re.compile(r"^\d{17,20}$")

# Default for update arguments that were not given
UNSET: Any = object()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _require(value: Optional[str], message: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(message)
    return str(value).strip()


def is_absolute_url(value: str) -> bool:
    """Check that value has both a scheme and a host."""
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return bool(parsed.scheme) and bool(parsed.netloc)


def is_snowflake(value: str) -> bool:
    return bool(SNOWFLAKE_RE.match(value or ""))


@dataclass(frozen=True)
class Newsletter:
    """A newsletter we know how to recognize in the inbox."""

    id: str
    name: str
    url: str
    sender_email: str
    created_at: datetime
    updated_at: datetime
    extraction_pattern: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValidationError("Newsletter name is required")
        if not self.url:
            raise ValidationError("Newsletter URL is required")
        if not self.sender_email:
            raise ValidationError("Sender email is required")
        if not EMAIL_RE.match(self.sender_email):
            raise ValidationError("Invalid sender email format")
        if not is_absolute_url(self.url):
            raise ValidationError("Invalid newsletter URL format")

    @classmethod
    def create(
        cls,
        name: str,
        url: str,
        sender_email: str,
        extraction_pattern: Optional[str] = None,
        id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ) -> "Newsletter":
        """Validate and normalize input into a Newsletter."""
        now = _utcnow()
        pattern = extraction_pattern if extraction_pattern and extraction_pattern.strip() else None
        return cls(
            id=id or _new_id(),
            name=_require(name, "Newsletter name is required"),
            url=_require(url, "Newsletter URL is required"),
            sender_email=_require(sender_email, "Sender email is required").lower(),
            created_at=created_at or now,
            updated_at=updated_at or now,
            extraction_pattern=pattern,
        )

    def is_from_sender(self, email: str) -> bool:
        return self.sender_email == (email or "").strip().lower()

    def update(
        self,
        name: str = UNSET,
        url: str = UNSET,
        sender_email: str = UNSET,
        extraction_pattern: Optional[str] = UNSET,
    ) -> "Newsletter":
        """Return a re-validated copy with the given fields changed.

        Passing `extraction_pattern=None` (or blank) clears the pattern.
        """
        changes = {
            "name": name,
            "url": url,
            "sender_email": sender_email,
            "extraction_pattern": extraction_pattern,
        }
        values = {
            "name": self.name,
            "url": self.url,
            "sender_email": self.sender_email,
            "extraction_pattern": self.extraction_pattern,
        }
        values.update({key: value for key, value in changes.items() if value is not UNSET})
        return Newsletter.create(
            id=self.id,
            created_at=self.created_at,
            updated_at=_utcnow(),
            **values,
        )


@dataclass(frozen=True)
class Issue:
    """One edition of a newsletter, extracted from an email."""

    id: str
    newsletter_id: str
    title: str
    web_url: str
    received_at: datetime
    content: Optional[str] = None
    message_id: Optional[str] = None
    processed: bool = False

    def __post_init__(self) -> None:
        if not self.newsletter_id:
            raise ValidationError("Newsletter ID is required")
        if not self.title:
            raise ValidationError("Issue title is required")
        if not self.web_url:
            raise ValidationError("Web URL is required")
        if not is_absolute_url(self.web_url):
            raise ValidationError("Invalid web URL format")

    @classmethod
    def create(
        cls,
        newsletter_id: str,
        title: str,
        web_url: str,
        received_at: Optional[datetime] = None,
        content: Optional[str] = None,
        message_id: Optional[str] = None,
        id: Optional[str] = None,
        processed: bool = False,
    ) -> "Issue":
        return cls(
            id=id or _new_id(),
            newsletter_id=_require(newsletter_id, "Newsletter ID is required"),
            title=_require(title, "Issue title is required"),
            web_url=_require(web_url, "Web URL is required"),
            received_at=received_at or _utcnow(),
            content=content,
            message_id=message_id,
            processed=processed,
        )

    def mark_as_processed(self) -> "Issue":
        return replace(self, processed=True)


@dataclass(frozen=True)
class GuildSubscription:
    """Binds a Discord guild channel to one newsletter."""

    id: str
    guild_id: str
    channel_id: str
    newsletter_id: str
    active: bool
    created_at: datetime
    updated_at: datetime

    def __post_init__(self) -> None:
        if not self.newsletter_id:
            raise ValidationError("Newsletter ID is required")
        if not is_snowflake(self.guild_id):
            raise ValidationError("Invalid Guild ID format")
        if not is_snowflake(self.channel_id):
            raise ValidationError("Invalid Channel ID format")

    @classmethod
    def create(
        cls,
        guild_id: str,
        channel_id: str,
        newsletter_id: str,
        active: bool = True,
        id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ) -> "GuildSubscription":
        now = _utcnow()
        return cls(
            id=id or _new_id(),
            guild_id=_require(guild_id, "Guild ID is required"),
            channel_id=_require(channel_id, "Channel ID is required"),
            newsletter_id=_require(newsletter_id, "Newsletter ID is required"),
            active=active,
            created_at=created_at or now,
            updated_at=updated_at or now,
        )

    def activate(self) -> "GuildSubscription":
        if self.active:
            return self
        return replace(self, active=True, updated_at=_utcnow())

    def deactivate(self) -> "GuildSubscription":
        if not self.active:
            return self
        return replace(self, active=False, updated_at=_utcnow())

    def update_channel(self, channel_id: str) -> "GuildSubscription":
        channel_id = _require(channel_id, "Channel ID is required")
        return replace(self, channel_id=channel_id, updated_at=_utcnow())


@dataclass(frozen=True)
class TrackedLink:
    """Click-tracking wrapper around an issue link. Not wired into any pipeline yet."""

    id: str
    original_url: str
    tracking_id: str
    issue_id: str
    newsletter_id: str
    created_at: datetime

    def __post_init__(self) -> None:
        if not self.issue_id:
            raise ValidationError("Issue ID is required")
        if not self.newsletter_id:
            raise ValidationError("Newsletter ID is required")
        if not is_absolute_url(self.original_url):
            raise ValidationError("Invalid original URL format")

    @classmethod
    def create(
        cls,
        original_url: str,
        issue_id: str,
        newsletter_id: str,
        tracking_id: Optional[str] = None,
        id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "TrackedLink":
        return cls(
            id=id or _new_id(),
            original_url=_require(original_url, "Original URL is required"),
            tracking_id=tracking_id or uuid.uuid4().hex[:8],
            issue_id=_require(issue_id, "Issue ID is required"),
            newsletter_id=_require(newsletter_id, "Newsletter ID is required"),
            created_at=created_at or _utcnow(),
        )

    def tracking_url(self, base_url: str) -> str:
        return f"{base_url.rstrip('/')}/t/{self.tracking_id}"


@dataclass(frozen=True)
class LinkClick:
    """A single click on a tracked link."""

    id: str
    tracked_link_id: str
    clicked_at: datetime
    user_agent: Optional[str] = None
    ip_hash: Optional[str] = None
    guild_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.tracked_link_id:
            raise ValidationError("Tracked Link ID is required")

    @classmethod
    def create(
        cls,
        tracked_link_id: str,
        clicked_at: Optional[datetime] = None,
        user_agent: Optional[str] = None,
        ip_hash: Optional[str] = None,
        guild_id: Optional[str] = None,
        id: Optional[str] = None,
    ) -> "LinkClick":
        return cls(
            id=id or _new_id(),
            tracked_link_id=_require(tracked_link_id, "Tracked Link ID is required"),
            clicked_at=clicked_at or _utcnow(),
            user_agent=user_agent,
            ip_hash=ip_hash,
            guild_id=guild_id,
        )


@dataclass(frozen=True)
class EmailMessage:
    """Inbound email as delivered by the inbox source. Never persisted."""

    sender: str
    subject: str
    received_at: datetime
    text: str = ""
    html: Optional[str] = None
    message_id: Optional[str] = None


@dataclass(frozen=True)
class ChannelPost:
    """Payload for posting an issue to a channel."""

    channel_id: str
    title: str
    url: str
    description: Optional[str] = None
    footer: Optional[str] = None
    timestamp: Optional[datetime] = None
    color: Optional[int] = None


@dataclass
class EmailError:
    """A failed email in an inbox run."""

    subject: str
    error: str


@dataclass
class PullInboxResult:
    """Summary of one inbox-check cycle."""

    total_emails: int = 0
    matched_newsletters: int = 0
    extracted_issues: int = 0
    skipped_duplicates: int = 0
    errors: list[EmailError] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)


@dataclass
class DispatchError:
    """A failed channel post (or a failed issue when guild/channel are unknown)."""

    guild_id: Optional[str]
    channel_id: Optional[str]
    error: str
    issue_id: Optional[str] = None


@dataclass
class DispatchResult:
    """Outcome of dispatching one issue."""

    success: bool = False
    channels_dispatched: int = 0
    errors: list[DispatchError] = field(default_factory=list)


@dataclass
class DispatchBatchResult:
    """Outcome of dispatching every unprocessed issue."""

    total_issues: int = 0
    successful_issues: int = 0
    failed_issues: int = 0
    total_channels: int = 0
    errors: list[DispatchError] = field(default_factory=list)
