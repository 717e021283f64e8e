"""Dependency wiring."""

from typing import Any, Callable, TypeVar

from newsletter_courier.adapters.discord import DeliveryQueue, DiscordChannelPoster
from newsletter_courier.adapters.mail import ImapInbox
from newsletter_courier.adapters.storage import (
    YamlGuildSubscriptionRepository,
    YamlIssueRepository,
    YamlNewsletterRepository,
)
from newsletter_courier.config import ExtractionConfig, Settings
from newsletter_courier.core import (
    ChannelPoster,
    ExtractionRules,
    GuildSubscriptionRepository,
    InboxSource,
    IssueRepository,
    LinkExtractor,
    NewsletterRepository,
)
from newsletter_courier.use_cases import (
    DispatchService,
    GuildSubscriptionService,
    NewsletterService,
    PullInboxService,
)

T = TypeVar("T")


def build_extraction_rules(config: ExtractionConfig) -> ExtractionRules:
    return ExtractionRules(
        proximity_window=config.proximity_window,
        fallback_keywords=tuple(k.lower() for k in config.fallback_keywords),
        esp_keywords=tuple(k.lower() for k in config.esp_keywords),
        excluded_domains=tuple(d.lower() for d in config.excluded_domains),
    )


class Container:
    """Lazily builds and memoizes one instance per collaborator.

    Credentials are only checked when the collaborator that needs them is
    first requested, so storage-only commands work without them.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._instances: dict[str, Any] = {}

    def _get(self, name: str, factory: Callable[[], T]) -> T:
        if name not in self._instances:
            self._instances[name] = factory()
        return self._instances[name]

    def reset(self) -> None:
        """Drop every memoized instance."""
        self._instances.clear()

    def newsletter_repository(self) -> NewsletterRepository:
        return self._get(
            "newsletter_repository",
            lambda: YamlNewsletterRepository(self.settings.data_dir, self.settings.storage.cache_ttl),
        )

    def issue_repository(self) -> IssueRepository:
        return self._get(
            "issue_repository",
            lambda: YamlIssueRepository(self.settings.data_dir, self.settings.storage.cache_ttl),
        )

    def subscription_repository(self) -> GuildSubscriptionRepository:
        return self._get(
            "subscription_repository",
            lambda: YamlGuildSubscriptionRepository(
                self.settings.data_dir, self.settings.storage.cache_ttl
            ),
        )

    def inbox(self) -> InboxSource:
        return self._get("inbox", lambda: ImapInbox(self.settings.require_imap()))

    def channel_poster(self) -> ChannelPoster:
        def build() -> ChannelPoster:
            discord = self.settings.require_discord()
            queue = DeliveryQueue(
                min_interval=discord.min_interval,
                default_retry_after=discord.default_retry_after,
                max_retries=discord.max_retries,
            )
            return DiscordChannelPoster(
                bot_token=discord.bot_token,
                api_base=discord.api_base,
                queue=queue,
                embed_color=discord.embed_color,
                timeout=discord.timeout,
            )

        return self._get("channel_poster", build)

    def extractor(self) -> LinkExtractor:
        return self._get(
            "extractor",
            lambda: LinkExtractor(build_extraction_rules(self.settings.extraction)),
        )

    def pull_inbox_service(self) -> PullInboxService:
        return self._get(
            "pull_inbox_service",
            lambda: PullInboxService(
                inbox=self.inbox(),
                newsletter_repository=self.newsletter_repository(),
                issue_repository=self.issue_repository(),
                extractor=self.extractor(),
            ),
        )

    def dispatch_service(self) -> DispatchService:
        return self._get(
            "dispatch_service",
            lambda: DispatchService(
                issue_repository=self.issue_repository(),
                subscription_repository=self.subscription_repository(),
                poster=self.channel_poster(),
                newsletter_repository=self.newsletter_repository(),
            ),
        )

    def newsletter_service(self) -> NewsletterService:
        return self._get(
            "newsletter_service",
            lambda: NewsletterService(self.newsletter_repository()),
        )

    def subscription_service(self) -> GuildSubscriptionService:
        return self._get(
            "subscription_service",
            lambda: GuildSubscriptionService(
                self.subscription_repository(),
                self.newsletter_repository(),
            ),
        )
