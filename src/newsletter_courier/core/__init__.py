"""Core domain layer."""

from newsletter_courier.core.cache import TTLCache
from newsletter_courier.core.entities import (
    ChannelPost,
    DispatchBatchResult,
    DispatchError,
    DispatchResult,
    EmailError,
    EmailMessage,
    GuildSubscription,
    Issue,
    LinkClick,
    Newsletter,
    PullInboxResult,
    TrackedLink,
)
from newsletter_courier.core.errors import (
    ConfigurationError,
    CourierError,
    DuplicateError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from newsletter_courier.core.interfaces import (
    ChannelPoster,
    GuildSubscriptionRepository,
    InboxSource,
    IssueRepository,
    NewsletterRepository,
)
from newsletter_courier.core.link_extractor import (
    ExtractionRules,
    ExtractionTier,
    LinkExtractor,
    LinkMatch,
    ProviderRule,
    extract_web_url,
)
from newsletter_courier.core.senders import extract_sender_email, normalize_email

__all__ = [
    "TTLCache",
    "ChannelPost",
    "DispatchBatchResult",
    "DispatchError",
    "DispatchResult",
    "EmailError",
    "EmailMessage",
    "GuildSubscription",
    "Issue",
    "LinkClick",
    "Newsletter",
    "PullInboxResult",
    "TrackedLink",
    "ConfigurationError",
    "CourierError",
    "DuplicateError",
    "NotFoundError",
    "RateLimitedError",
    "ValidationError",
    "ChannelPoster",
    "GuildSubscriptionRepository",
    "InboxSource",
    "IssueRepository",
    "NewsletterRepository",
    "ExtractionRules",
    "ExtractionTier",
    "LinkExtractor",
    "LinkMatch",
    "ProviderRule",
    "extract_web_url",
    "extract_sender_email",
    "normalize_email",
]
