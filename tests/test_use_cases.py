"""Tests for use cases."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from newsletter_courier.core import (
    ChannelPost,
    DispatchBatchResult,
    DispatchError,
    DuplicateError,
    EmailError,
    EmailMessage,
    GuildSubscription,
    Issue,
    Newsletter,
    NotFoundError,
    PullInboxResult,
)
from newsletter_courier.use_cases import (
    DispatchService,
    GuildSubscriptionService,
    NewsletterService,
    PullInboxService,
    format_dispatch_result,
    format_pull_result,
)

GUILD_ID = "123456789012345678"
CHANNEL_ID = "234567890123456789"


def make_newsletter(**overrides) -> Newsletter:
    values = {
        "name": "Morning Brew",
        "url": "https://morningbrew.com",
        "sender_email": "crew@morningbrew.com",
    }
    values.update(overrides)
    return Newsletter.create(**values)


def make_email(sender: str, subject: str, html: str = None, message_id: str = None) -> EmailMessage:
    return EmailMessage(
        sender=sender,
        subject=subject,
        received_at=datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc),
        html=html,
        message_id=message_id,
    )


def make_issue(newsletter_id: str = "n1", title: str = "Issue #1") -> Issue:
    return Issue.create(
        newsletter_id=newsletter_id,
        title=title,
        web_url="https://morningbrew.com/daily/1",
        received_at=datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc),
    )


def make_subscription(channel_id: str = CHANNEL_ID, newsletter_id: str = "n1") -> GuildSubscription:
    return GuildSubscription.create(GUILD_ID, channel_id, newsletter_id)


def make_issue_repository() -> AsyncMock:
    repository = AsyncMock()
    repository.exists_by_message_id.return_value = False
    return repository


class TestPullInboxService:
    """Inbox check cycle."""

    @pytest.mark.asyncio
    async def test_unmatched_and_unextractable_emails(self) -> None:
        """Test one unknown sender and one matched email with no link."""
        newsletter = make_newsletter()
        inbox = AsyncMock()
        inbox.fetch_new_emails.return_value = [
            make_email("Stranger <who@unknown.example>", "Hello", "<p>hi</p>", "1"),
            make_email("Brew <crew@morningbrew.com>", "No links today", "<p>nothing</p>", "2"),
        ]
        newsletters = AsyncMock()
        newsletters.get_by_sender_email.side_effect = (
            lambda email: newsletter if email == "crew@morningbrew.com" else None
        )
        issues = make_issue_repository()

        service = PullInboxService(inbox, newsletters, issues)
        result = await service.execute()

        assert result.total_emails == 2
        assert result.matched_newsletters == 1
        assert result.extracted_issues == 0
        assert result.errors == [EmailError(subject="No links today", error="Failed to extract web URL")]
        issues.save.assert_not_called()
        inbox.mark_as_processed.assert_not_called()
        inbox.connect.assert_awaited_once()
        inbox.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_extracts_and_saves_issue(self) -> None:
        """Test the happy path stores an issue and marks the email."""
        newsletter = make_newsletter()
        inbox = AsyncMock()
        inbox.fetch_new_emails.return_value = [
            make_email(
                "Morning Brew <Crew@MorningBrew.com>",
                "Issue #7",
                "<a href='https://morningbrew.com/daily/7'>View in browser</a>",
                "77",
            )
        ]
        newsletters = AsyncMock()
        newsletters.get_by_sender_email.return_value = newsletter
        issues = make_issue_repository()

        result = await PullInboxService(inbox, newsletters, issues).execute()

        assert result.extracted_issues == 1
        assert result.errors == []
        saved: Issue = issues.save.call_args.args[0]
        assert saved.newsletter_id == newsletter.id
        assert saved.title == "Issue #7"
        assert saved.web_url == "https://morningbrew.com/daily/7"
        assert saved.message_id == "77"
        assert saved.processed is False
        assert result.issues == [saved]
        newsletters.get_by_sender_email.assert_awaited_once_with("crew@morningbrew.com")
        inbox.mark_as_processed.assert_awaited_once_with("77")

    @pytest.mark.asyncio
    async def test_custom_pattern_is_used(self) -> None:
        """Test that the newsletter's own pattern drives extraction."""
        newsletter = make_newsletter(extraction_pattern=r'href="(https://morningbrew\.com/p/[^"]+)"')
        inbox = AsyncMock()
        inbox.fetch_new_emails.return_value = [
            make_email(
                "crew@morningbrew.com",
                "Issue #8",
                '<a href="https://x.com/view">View in browser</a>'
                '<a href="https://morningbrew.com/p/8">Read</a>',
                "88",
            )
        ]
        newsletters = AsyncMock()
        newsletters.get_by_sender_email.return_value = newsletter
        issues = make_issue_repository()

        result = await PullInboxService(inbox, newsletters, issues).execute()

        assert result.issues[0].web_url == "https://morningbrew.com/p/8"

    @pytest.mark.asyncio
    async def test_duplicate_message_is_skipped(self) -> None:
        """Test that an email which already produced an issue is not stored twice."""
        inbox = AsyncMock()
        inbox.fetch_new_emails.return_value = [
            make_email("crew@morningbrew.com", "Issue #7", "<a href='https://m.com/v'>View online</a>", "77")
        ]
        newsletters = AsyncMock()
        newsletters.get_by_sender_email.return_value = make_newsletter()
        issues = AsyncMock()
        issues.exists_by_message_id.return_value = True

        result = await PullInboxService(inbox, newsletters, issues).execute()

        assert result.matched_newsletters == 1
        assert result.skipped_duplicates == 1
        assert result.extracted_issues == 0
        issues.save.assert_not_called()
        inbox.mark_as_processed.assert_awaited_once_with("77")

    @pytest.mark.asyncio
    async def test_per_email_failure_is_recorded(self) -> None:
        """Test that one failing email does not stop the batch."""
        newsletter = make_newsletter()
        inbox = AsyncMock()
        inbox.fetch_new_emails.return_value = [
            make_email("crew@morningbrew.com", "Broken", "<a href='https://m.com/a'>View online</a>", "1"),
            make_email("crew@morningbrew.com", "Fine", "<a href='https://m.com/b'>View online</a>", "2"),
        ]
        newsletters = AsyncMock()
        newsletters.get_by_sender_email.return_value = newsletter
        issues = make_issue_repository()
        issues.save.side_effect = [RuntimeError("disk full"), None]

        result = await PullInboxService(inbox, newsletters, issues).execute()

        assert result.extracted_issues == 1
        assert result.errors == [EmailError(subject="Broken", error="disk full")]
        inbox.mark_as_processed.assert_awaited_once_with("2")

    @pytest.mark.asyncio
    async def test_mark_failure_is_not_an_email_error(self) -> None:
        """Test that failing to flag the email still counts the issue."""
        inbox = AsyncMock()
        inbox.fetch_new_emails.return_value = [
            make_email("crew@morningbrew.com", "Issue", "<a href='https://m.com/a'>View online</a>", "1")
        ]
        inbox.mark_as_processed.side_effect = RuntimeError("IMAP gone")
        newsletters = AsyncMock()
        newsletters.get_by_sender_email.return_value = make_newsletter()

        result = await PullInboxService(inbox, newsletters, make_issue_repository()).execute()

        assert result.extracted_issues == 1
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_fetch_failure_propagates_and_disconnects(self) -> None:
        """Test that connection-level failures raise after disconnecting."""
        inbox = AsyncMock()
        inbox.fetch_new_emails.side_effect = ConnectionError("IMAP down")

        service = PullInboxService(inbox, AsyncMock(), make_issue_repository())

        with pytest.raises(ConnectionError):
            await service.execute()
        inbox.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_inbox(self) -> None:
        """Test that an empty inbox still opens and closes the session."""
        inbox = AsyncMock()
        inbox.fetch_new_emails.return_value = []

        result = await PullInboxService(inbox, AsyncMock(), make_issue_repository()).execute()

        assert result == PullInboxResult()
        inbox.connect.assert_awaited_once()
        inbox.disconnect.assert_awaited_once()


class TestDispatchService:
    """Fan-out of issues to channels."""

    @pytest.mark.asyncio
    async def test_zero_subscriptions_is_success(self) -> None:
        """Test that an issue nobody subscribes to still succeeds."""
        issue = make_issue()
        issues = AsyncMock()
        issues.get_by_id.return_value = issue
        subscriptions = AsyncMock()
        subscriptions.get_active_by_newsletter_id.return_value = []
        poster = AsyncMock()

        result = await DispatchService(issues, subscriptions, poster).dispatch_issue(issue.id)

        assert result.success is True
        assert result.channels_dispatched == 0
        assert result.errors == []
        poster.post_to_channel.assert_not_called()
        issues.mark_as_processed.assert_awaited_once_with(issue.id)

    @pytest.mark.asyncio
    async def test_one_of_three_posts_fails(self) -> None:
        """Test partial delivery counts as success and records the failure."""
        issue = make_issue()
        issues = AsyncMock()
        issues.get_by_id.return_value = issue
        subscriptions = AsyncMock()
        subscriptions.get_active_by_newsletter_id.return_value = [
            make_subscription("300000000000000001"),
            make_subscription("300000000000000002"),
            make_subscription("300000000000000003"),
        ]
        poster = AsyncMock()
        poster.post_to_channel.side_effect = [None, RuntimeError("Missing Access"), None]

        result = await DispatchService(issues, subscriptions, poster).dispatch_issue(issue.id)

        assert result.success is True
        assert result.channels_dispatched == 2
        assert result.errors == [
            DispatchError(
                guild_id=GUILD_ID,
                channel_id="300000000000000002",
                error="Missing Access",
                issue_id=issue.id,
            )
        ]

    @pytest.mark.asyncio
    async def test_all_posts_fail(self) -> None:
        """Test that an issue with no delivered posts is not a success."""
        issue = make_issue()
        issues = AsyncMock()
        issues.get_by_id.return_value = issue
        subscriptions = AsyncMock()
        subscriptions.get_active_by_newsletter_id.return_value = [make_subscription()]
        poster = AsyncMock()
        poster.post_to_channel.side_effect = RuntimeError("Unknown Channel")

        result = await DispatchService(issues, subscriptions, poster).dispatch_issue(issue.id)

        assert result.success is False
        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_post_payload(self) -> None:
        """Test the post built for each channel."""
        newsletter = make_newsletter()
        issue = make_issue(newsletter_id=newsletter.id)
        issues = AsyncMock()
        issues.get_by_id.return_value = issue
        subscriptions = AsyncMock()
        subscriptions.get_active_by_newsletter_id.return_value = [
            make_subscription(newsletter_id=newsletter.id)
        ]
        newsletters = AsyncMock()
        newsletters.get_by_id.return_value = newsletter
        poster = AsyncMock()

        await DispatchService(issues, subscriptions, poster, newsletters).dispatch_issue(issue.id)

        post: ChannelPost = poster.post_to_channel.call_args.args[0]
        assert post.channel_id == CHANNEL_ID
        assert post.title == "Issue #1"
        assert post.url == "https://morningbrew.com/daily/1"
        assert post.description == "New issue from Morning Brew"
        assert post.footer == "Sent at 2024-05-01 08:30"
        assert post.timestamp is not None

    @pytest.mark.asyncio
    async def test_unknown_issue(self) -> None:
        """Test dispatching an id that does not exist."""
        issues = AsyncMock()
        issues.get_by_id.return_value = None

        with pytest.raises(NotFoundError):
            await DispatchService(issues, AsyncMock(), AsyncMock()).dispatch_issue("missing")

    @pytest.mark.asyncio
    async def test_dispatch_unprocessed_batch(self) -> None:
        """Test batch counters across delivered, undelivered and broken issues."""
        delivered = make_issue("n1", "Delivered")
        undelivered = make_issue("n2", "Undelivered")
        broken = make_issue("n3", "Broken")
        issues = AsyncMock()
        issues.get_unprocessed.return_value = [delivered, undelivered, broken]

        async def active_for(newsletter_id: str) -> list:
            if newsletter_id == "n3":
                raise RuntimeError("store unavailable")
            return [make_subscription(newsletter_id=newsletter_id)]

        subscriptions = AsyncMock()
        subscriptions.get_active_by_newsletter_id.side_effect = active_for
        poster = AsyncMock()
        poster.post_to_channel.side_effect = [None, RuntimeError("Forbidden")]

        batch = await DispatchService(issues, subscriptions, poster).dispatch_unprocessed()

        assert batch.total_issues == 3
        assert batch.successful_issues == 1
        assert batch.failed_issues == 2
        assert batch.total_channels == 1
        assert [error.error for error in batch.errors] == ["Forbidden", "store unavailable"]
        assert batch.errors[1].channel_id is None
        assert batch.errors[1].issue_id == broken.id

        marked = [call.args[0] for call in issues.mark_as_processed.await_args_list]
        assert marked == [delivered.id, undelivered.id]

    @pytest.mark.asyncio
    async def test_mark_failure_does_not_stop_batch(self) -> None:
        """Test that failing to mark one issue still dispatches the rest."""
        first = make_issue("n1", "First")
        second = make_issue("n1", "Second")
        issues = AsyncMock()
        issues.get_unprocessed.return_value = [first, second]
        issues.mark_as_processed.side_effect = [RuntimeError("disk full"), None]
        subscriptions = AsyncMock()
        subscriptions.get_active_by_newsletter_id.return_value = [make_subscription()]
        poster = AsyncMock()

        batch = await DispatchService(issues, subscriptions, poster).dispatch_unprocessed()

        assert poster.post_to_channel.await_count == 2
        assert batch.successful_issues == 2
        assert batch.total_channels == 2
        assert batch.errors == [
            DispatchError(guild_id=None, channel_id=None, error="disk full", issue_id=first.id)
        ]

    @pytest.mark.asyncio
    async def test_dispatch_unprocessed_empty(self) -> None:
        """Test that nothing to do is not an error."""
        issues = AsyncMock()
        issues.get_unprocessed.return_value = []

        batch = await DispatchService(issues, AsyncMock(), AsyncMock()).dispatch_unprocessed()

        assert batch == DispatchBatchResult()


class TestNewsletterService:
    """Newsletter management."""

    @pytest.mark.asyncio
    async def test_add_newsletter(self) -> None:
        repository = AsyncMock()
        repository.exists_by_sender_email.return_value = False

        newsletter = await NewsletterService(repository).add_newsletter(
            "Morning Brew", "https://morningbrew.com", "Crew@MorningBrew.com"
        )

        assert newsletter.sender_email == "crew@morningbrew.com"
        repository.save.assert_awaited_once_with(newsletter)

    @pytest.mark.asyncio
    async def test_add_duplicate_sender(self) -> None:
        repository = AsyncMock()
        repository.exists_by_sender_email.return_value = True

        with pytest.raises(DuplicateError):
            await NewsletterService(repository).add_newsletter(
                "Morning Brew", "https://morningbrew.com", "crew@morningbrew.com"
            )
        repository.save.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_newsletter(self) -> None:
        existing = make_newsletter()
        repository = AsyncMock()
        repository.get_by_id.return_value = existing
        repository.exists_by_sender_email.return_value = False

        updated = await NewsletterService(repository).update_newsletter(
            existing.id, name="Brew Daily", sender_email="daily@morningbrew.com"
        )

        assert updated.id == existing.id
        assert updated.name == "Brew Daily"
        assert updated.sender_email == "daily@morningbrew.com"
        assert updated.url == existing.url
        repository.save.assert_awaited_once_with(updated)

    @pytest.mark.asyncio
    async def test_update_clears_extraction_pattern(self) -> None:
        existing = make_newsletter(extraction_pattern=r"(https://\S+)")
        repository = AsyncMock()
        repository.get_by_id.return_value = existing
        service = NewsletterService(repository)

        renamed = await service.update_newsletter(existing.id, name="Brew Daily")
        cleared = await service.update_newsletter(existing.id, extraction_pattern=None)

        assert renamed.extraction_pattern == r"(https://\S+)"
        assert cleared.extraction_pattern is None
        assert cleared.name == existing.name

    @pytest.mark.asyncio
    async def test_update_to_taken_sender(self) -> None:
        repository = AsyncMock()
        repository.get_by_id.return_value = make_newsletter()
        repository.exists_by_sender_email.return_value = True

        with pytest.raises(DuplicateError):
            await NewsletterService(repository).update_newsletter(
                "n1", sender_email="taken@example.com"
            )

    @pytest.mark.asyncio
    async def test_update_and_delete_missing(self) -> None:
        repository = AsyncMock()
        repository.get_by_id.return_value = None
        service = NewsletterService(repository)

        with pytest.raises(NotFoundError):
            await service.update_newsletter("missing", name="X")
        with pytest.raises(NotFoundError):
            await service.delete_newsletter("missing")
        repository.delete.assert_not_called()


class TestGuildSubscriptionService:
    """Guild subscription management."""

    @pytest.mark.asyncio
    async def test_subscribe_creates_subscription(self) -> None:
        subscriptions = AsyncMock()
        subscriptions.get_by_guild_and_newsletter.return_value = None
        newsletters = AsyncMock()
        newsletters.get_by_id.return_value = make_newsletter()

        subscription = await GuildSubscriptionService(subscriptions, newsletters).subscribe(
            GUILD_ID, CHANNEL_ID, "n1"
        )

        assert subscription.active
        assert subscription.channel_id == CHANNEL_ID
        subscriptions.save.assert_awaited_once_with(subscription)

    @pytest.mark.asyncio
    async def test_subscribe_unknown_newsletter(self) -> None:
        newsletters = AsyncMock()
        newsletters.get_by_id.return_value = None

        with pytest.raises(NotFoundError):
            await GuildSubscriptionService(AsyncMock(), newsletters).subscribe(
                GUILD_ID, CHANNEL_ID, "missing"
            )

    @pytest.mark.asyncio
    async def test_subscribe_reactivates_and_moves_existing(self) -> None:
        existing = make_subscription().deactivate()
        subscriptions = AsyncMock()
        subscriptions.get_by_guild_and_newsletter.return_value = existing
        newsletters = AsyncMock()
        newsletters.get_by_id.return_value = make_newsletter()

        subscription = await GuildSubscriptionService(subscriptions, newsletters).subscribe(
            GUILD_ID, "345678901234567890", "n1"
        )

        assert subscription.id == existing.id
        assert subscription.active
        assert subscription.channel_id == "345678901234567890"
        subscriptions.save.assert_awaited_once_with(subscription)

    @pytest.mark.asyncio
    async def test_subscribe_same_channel_is_noop(self) -> None:
        existing = make_subscription()
        subscriptions = AsyncMock()
        subscriptions.get_by_guild_and_newsletter.return_value = existing
        newsletters = AsyncMock()
        newsletters.get_by_id.return_value = make_newsletter()

        subscription = await GuildSubscriptionService(subscriptions, newsletters).subscribe(
            GUILD_ID, CHANNEL_ID, "n1"
        )

        assert subscription is existing
        subscriptions.save.assert_not_called()

    @pytest.mark.asyncio
    async def test_unsubscribe_deactivates(self) -> None:
        subscriptions = AsyncMock()
        subscriptions.get_by_guild_and_newsletter.return_value = make_subscription()

        await GuildSubscriptionService(subscriptions, AsyncMock()).unsubscribe(GUILD_ID, "n1")

        saved: GuildSubscription = subscriptions.save.call_args.args[0]
        assert saved.active is False

    @pytest.mark.asyncio
    async def test_unsubscribe_missing_is_ignored(self) -> None:
        subscriptions = AsyncMock()
        subscriptions.get_by_guild_and_newsletter.return_value = None

        await GuildSubscriptionService(subscriptions, AsyncMock()).unsubscribe(GUILD_ID, "n1")

        subscriptions.save.assert_not_called()

    @pytest.mark.asyncio
    async def test_change_channel_missing(self) -> None:
        subscriptions = AsyncMock()
        subscriptions.get_by_guild_and_newsletter.return_value = None

        with pytest.raises(NotFoundError):
            await GuildSubscriptionService(subscriptions, AsyncMock()).change_channel(
                GUILD_ID, "n1", CHANNEL_ID
            )

    @pytest.mark.asyncio
    async def test_list_guild_newsletters(self) -> None:
        first = make_newsletter()
        second = make_newsletter(name="Other", sender_email="other@example.com")
        subscriptions = AsyncMock()
        subscriptions.get_by_guild_id.return_value = [make_subscription(newsletter_id=second.id)]
        newsletters = AsyncMock()
        newsletters.get_all.return_value = [first, second]

        result = await GuildSubscriptionService(subscriptions, newsletters).list_guild_newsletters(
            GUILD_ID
        )

        assert result == [second]


def test_format_pull_result() -> None:
    """Test pull summary formatting."""
    result = PullInboxResult(
        total_emails=2,
        matched_newsletters=1,
        extracted_issues=1,
        errors=[EmailError(subject="Weird mail", error="Failed to extract web URL")],
        issues=[make_issue()],
    )

    output = format_pull_result(result)

    assert "EMAIL PROCESSING RESULTS" in output
    assert "Total emails checked: 2" in output
    assert "https://morningbrew.com/daily/1" in output
    assert "Weird mail: Failed to extract web URL" in output


def test_format_dispatch_result() -> None:
    """Test dispatch summary formatting."""
    result = DispatchBatchResult(
        total_issues=2,
        successful_issues=1,
        failed_issues=1,
        total_channels=3,
        errors=[DispatchError(guild_id=GUILD_ID, channel_id=CHANNEL_ID, error="Forbidden", issue_id="i1")],
    )

    output = format_dispatch_result(result)

    assert "DISPATCH RESULTS" in output
    assert "Total channels posted to: 3" in output
    assert f"Issue i1 to channel {CHANNEL_ID}: Forbidden" in output
