"""Business logic use cases."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from newsletter_courier.core import (
    ChannelPost,
    ChannelPoster,
    DispatchBatchResult,
    DispatchError,
    DispatchResult,
    DuplicateError,
    EmailError,
    EmailMessage,
    GuildSubscription,
    GuildSubscriptionRepository,
    InboxSource,
    Issue,
    IssueRepository,
    LinkExtractor,
    Newsletter,
    NewsletterRepository,
    NotFoundError,
    PullInboxResult,
    extract_sender_email,
    normalize_email,
)
from newsletter_courier.core.entities import UNSET

logger = logging.getLogger(__name__)

EXTRACTION_FAILED = "Failed to extract web URL"


@asynccontextmanager
async def connected(inbox: InboxSource) -> AsyncIterator[InboxSource]:
    """Hold an inbox session for the duration of the block."""
    await inbox.connect()
    try:
        yield inbox
    finally:
        await inbox.disconnect()


class PullInboxService:
    """Turn newly arrived newsletter emails into stored issues."""

    def __init__(
        self,
        inbox: InboxSource,
        newsletter_repository: NewsletterRepository,
        issue_repository: IssueRepository,
        extractor: Optional[LinkExtractor] = None,
    ) -> None:
        self.inbox = inbox
        self.newsletter_repository = newsletter_repository
        self.issue_repository = issue_repository
        self.extractor = extractor or LinkExtractor()

    async def execute(self) -> PullInboxResult:
        """Run one inbox check.

        Per-email problems end up in `result.errors`; only connection-level
        failures (connect, fetch, disconnect) raise.
        """
        result = PullInboxResult()

        async with connected(self.inbox):
            emails = await self.inbox.fetch_new_emails()
            result.total_emails = len(emails)
            logger.info("Found %d new emails", len(emails))

            for email in emails:
                try:
                    await self._process_email(email, result)
                except Exception as e:
                    logger.exception("Error processing email %r", email.subject)
                    result.errors.append(EmailError(subject=email.subject, error=str(e)))

        return result

    async def _process_email(self, email: EmailMessage, result: PullInboxResult) -> None:
        sender = normalize_email(extract_sender_email(email.sender))
        logger.info("Processing email %r from %s", email.subject, sender)

        newsletter = await self.newsletter_repository.get_by_sender_email(sender)
        if not newsletter:
            logger.info("No matching newsletter for sender %s", sender)
            return

        result.matched_newsletters += 1
        logger.info("Matched newsletter: %s", newsletter.name)

        if email.message_id and await self.issue_repository.exists_by_message_id(email.message_id):
            logger.info("Email %s already produced an issue, skipping", email.message_id)
            result.skipped_duplicates += 1
            await self._mark_processed(email)
            return

        web_url = self.extractor.extract_from_email(email, newsletter)
        if not web_url:
            logger.warning("Failed to extract web URL from %r", email.subject)
            result.errors.append(EmailError(subject=email.subject, error=EXTRACTION_FAILED))
            return

        issue = Issue.create(
            newsletter_id=newsletter.id,
            title=email.subject,
            web_url=web_url,
            received_at=email.received_at,
            message_id=email.message_id,
        )
        await self.issue_repository.save(issue)
        result.extracted_issues += 1
        result.issues.append(issue)
        logger.info("Created issue %s: %s", issue.id, issue.web_url)

        await self._mark_processed(email)

    async def _mark_processed(self, email: EmailMessage) -> None:
        if not email.message_id:
            return
        try:
            await self.inbox.mark_as_processed(email.message_id)
        except Exception:
            logger.exception("Could not mark email %s as processed", email.message_id)


class DispatchService:
    """Fan issues out to every channel subscribed to their newsletter."""

    def __init__(
        self,
        issue_repository: IssueRepository,
        subscription_repository: GuildSubscriptionRepository,
        poster: ChannelPoster,
        newsletter_repository: Optional[NewsletterRepository] = None,
    ) -> None:
        self.issue_repository = issue_repository
        self.subscription_repository = subscription_repository
        self.poster = poster
        self.newsletter_repository = newsletter_repository

    async def dispatch_issue(self, issue_id: str) -> DispatchResult:
        """Dispatch a single issue and mark it processed."""
        issue = await self.issue_repository.get_by_id(issue_id)
        if not issue:
            raise NotFoundError(f"Issue with ID {issue_id} not found")

        result = await self._dispatch(issue)
        await self.issue_repository.mark_as_processed(issue.id)
        return result

    async def dispatch_unprocessed(self) -> DispatchBatchResult:
        """Dispatch every issue that has not been processed yet."""
        issues = await self.issue_repository.get_unprocessed()
        logger.info("Found %d unprocessed issues", len(issues))

        batch = DispatchBatchResult(total_issues=len(issues))

        for issue in issues:
            try:
                result = await self._dispatch(issue)
            except Exception as e:
                logger.exception("Error dispatching issue %s", issue.id)
                batch.failed_issues += 1
                batch.errors.append(
                    DispatchError(guild_id=None, channel_id=None, error=str(e), issue_id=issue.id)
                )
                continue

            if result.success:
                batch.successful_issues += 1
                batch.total_channels += result.channels_dispatched
            else:
                batch.failed_issues += 1
            batch.errors.extend(result.errors)

            # Processed means "dispatch was attempted", whatever the outcome
            try:
                await self.issue_repository.mark_as_processed(issue.id)
            except Exception as e:
                logger.exception("Could not mark issue %s as processed", issue.id)
                batch.errors.append(
                    DispatchError(guild_id=None, channel_id=None, error=str(e), issue_id=issue.id)
                )

        return batch

    async def _dispatch(self, issue: Issue) -> DispatchResult:
        subscriptions = await self.subscription_repository.get_active_by_newsletter_id(
            issue.newsletter_id
        )
        logger.info(
            "Found %d active subscriptions for newsletter %s",
            len(subscriptions),
            issue.newsletter_id,
        )

        result = DispatchResult()
        if not subscriptions:
            result.success = True
            return result

        description = await self._describe(issue)

        for subscription in subscriptions:
            try:
                await self.poster.post_to_channel(
                    ChannelPost(
                        channel_id=subscription.channel_id,
                        title=issue.title,
                        url=issue.web_url,
                        description=description,
                        footer=f"Sent at {issue.received_at:%Y-%m-%d %H:%M}",
                        timestamp=datetime.now(timezone.utc),
                    )
                )
                result.channels_dispatched += 1
                logger.info("Posted issue %s to channel %s", issue.id, subscription.channel_id)
            except Exception as e:
                logger.error(
                    "Error posting to channel %s (guild %s): %s",
                    subscription.channel_id,
                    subscription.guild_id,
                    e,
                )
                result.errors.append(
                    DispatchError(
                        guild_id=subscription.guild_id,
                        channel_id=subscription.channel_id,
                        error=str(e),
                        issue_id=issue.id,
                    )
                )

        result.success = result.channels_dispatched > 0
        return result

    async def _describe(self, issue: Issue) -> Optional[str]:
        if not self.newsletter_repository:
            return None
        newsletter = await self.newsletter_repository.get_by_id(issue.newsletter_id)
        return f"New issue from {newsletter.name}" if newsletter else None


class NewsletterService:
    """Manage the newsletters the courier recognizes."""

    def __init__(self, newsletter_repository: NewsletterRepository) -> None:
        self.newsletter_repository = newsletter_repository

    async def list_newsletters(self) -> list[Newsletter]:
        return await self.newsletter_repository.get_all()

    async def get_newsletter(self, newsletter_id: str) -> Optional[Newsletter]:
        return await self.newsletter_repository.get_by_id(newsletter_id)

    async def find_by_sender(self, email: str) -> Optional[Newsletter]:
        return await self.newsletter_repository.get_by_sender_email(email)

    async def add_newsletter(
        self,
        name: str,
        url: str,
        sender_email: str,
        extraction_pattern: Optional[str] = None,
    ) -> Newsletter:
        if await self.newsletter_repository.exists_by_sender_email(sender_email):
            raise DuplicateError(f"Newsletter with sender email {sender_email} already exists")

        newsletter = Newsletter.create(
            name=name,
            url=url,
            sender_email=sender_email,
            extraction_pattern=extraction_pattern,
        )
        await self.newsletter_repository.save(newsletter)
        return newsletter

    async def update_newsletter(
        self,
        newsletter_id: str,
        name: Optional[str] = None,
        url: Optional[str] = None,
        sender_email: Optional[str] = None,
        extraction_pattern: Optional[str] = UNSET,
    ) -> Newsletter:
        """Change the given fields.

        None leaves name, url and sender_email as they are, while
        `extraction_pattern=None` clears the pattern.
        """
        existing = await self.newsletter_repository.get_by_id(newsletter_id)
        if not existing:
            raise NotFoundError(f"Newsletter with ID {newsletter_id} not found")

        if sender_email and not existing.is_from_sender(sender_email):
            if await self.newsletter_repository.exists_by_sender_email(sender_email):
                raise DuplicateError(f"Newsletter with sender email {sender_email} already exists")

        changes = {
            key: value
            for key, value in (("name", name), ("url", url), ("sender_email", sender_email))
            if value is not None
        }
        updated = existing.update(extraction_pattern=extraction_pattern, **changes)
        await self.newsletter_repository.save(updated)
        return updated

    async def delete_newsletter(self, newsletter_id: str) -> None:
        if not await self.newsletter_repository.get_by_id(newsletter_id):
            raise NotFoundError(f"Newsletter with ID {newsletter_id} not found")
        await self.newsletter_repository.delete(newsletter_id)


class GuildSubscriptionService:
    """Manage which guild channels receive which newsletters."""

    def __init__(
        self,
        subscription_repository: GuildSubscriptionRepository,
        newsletter_repository: NewsletterRepository,
    ) -> None:
        self.subscription_repository = subscription_repository
        self.newsletter_repository = newsletter_repository

    async def list_guild_subscriptions(self, guild_id: str) -> list[GuildSubscription]:
        return await self.subscription_repository.get_by_guild_id(guild_id)

    async def list_guild_newsletters(self, guild_id: str) -> list[Newsletter]:
        subscriptions = await self.subscription_repository.get_by_guild_id(guild_id)
        ids = {subscription.newsletter_id for subscription in subscriptions}
        return [n for n in await self.newsletter_repository.get_all() if n.id in ids]

    async def subscribe(self, guild_id: str, channel_id: str, newsletter_id: str) -> GuildSubscription:
        """Subscribe a channel, reusing the guild's existing record for this newsletter."""
        if not await self.newsletter_repository.get_by_id(newsletter_id):
            raise NotFoundError(f"Newsletter with ID {newsletter_id} not found")

        existing = await self.subscription_repository.get_by_guild_and_newsletter(
            guild_id, newsletter_id
        )
        if existing:
            if existing.channel_id == channel_id and existing.active:
                return existing
            updated = existing
            if existing.channel_id != channel_id:
                updated = updated.update_channel(channel_id)
            updated = updated.activate()
            await self.subscription_repository.save(updated)
            return updated

        subscription = GuildSubscription.create(
            guild_id=guild_id,
            channel_id=channel_id,
            newsletter_id=newsletter_id,
        )
        await self.subscription_repository.save(subscription)
        return subscription

    async def unsubscribe(self, guild_id: str, newsletter_id: str) -> None:
        """Soft-unsubscribe; missing subscriptions are ignored."""
        existing = await self.subscription_repository.get_by_guild_and_newsletter(
            guild_id, newsletter_id
        )
        if not existing:
            return
        await self.subscription_repository.save(existing.deactivate())

    async def change_channel(
        self, guild_id: str, newsletter_id: str, channel_id: str
    ) -> GuildSubscription:
        existing = await self.subscription_repository.get_by_guild_and_newsletter(
            guild_id, newsletter_id
        )
        if not existing:
            raise NotFoundError(
                f"Guild {guild_id} is not subscribed to newsletter {newsletter_id}"
            )
        updated = existing.update_channel(channel_id)
        await self.subscription_repository.save(updated)
        return updated

    async def remove_guild(self, guild_id: str) -> None:
        await self.subscription_repository.delete_by_guild_id(guild_id)


def format_pull_result(result: PullInboxResult) -> str:
    """Render an inbox run summary for the console."""
    lines = [
        "=" * 70,
        "📬 EMAIL PROCESSING RESULTS",
        "=" * 70,
        f"Total emails checked: {result.total_emails}",
        f"Matched newsletters: {result.matched_newsletters}",
        f"Issues extracted: {result.extracted_issues}",
        f"Already processed: {result.skipped_duplicates}",
        f"Errors: {len(result.errors)}",
    ]

    if result.issues:
        lines.append("")
        lines.append("✓ Issues:")
        for i, issue in enumerate(result.issues, 1):
            lines.append(f"  {i}. {issue.title}")
            lines.append(f"     └─ {issue.web_url}")

    if result.errors:
        lines.append("")
        lines.append("✗ Errors:")
        for i, error in enumerate(result.errors, 1):
            lines.append(f"  {i}. {error.subject}: {error.error}")

    return "\n".join(lines)


def format_dispatch_result(result: DispatchBatchResult) -> str:
    """Render a dispatch run summary for the console."""
    lines = [
        "=" * 70,
        "📣 DISPATCH RESULTS",
        "=" * 70,
        f"Total issues processed: {result.total_issues}",
        f"Successfully dispatched: {result.successful_issues}",
        f"Failed to dispatch: {result.failed_issues}",
        f"Total channels posted to: {result.total_channels}",
    ]

    if result.errors:
        lines.append("")
        lines.append("✗ Errors:")
        for i, error in enumerate(result.errors, 1):
            target = f"channel {error.channel_id}" if error.channel_id else "subscriptions"
            lines.append(f"  {i}. Issue {error.issue_id} to {target}: {error.error}")

    return "\n".join(lines)
