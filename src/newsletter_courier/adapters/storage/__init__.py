"""Storage adapters."""

from newsletter_courier.adapters.storage.yaml_store import (
    YamlGuildSubscriptionRepository,
    YamlIssueRepository,
    YamlNewsletterRepository,
)

__all__ = [
    "YamlGuildSubscriptionRepository",
    "YamlIssueRepository",
    "YamlNewsletterRepository",
]
