"""YAML file repositories with a TTL cache in front."""

import asyncio
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Generic, Optional, TypeVar

import yaml

from newsletter_courier.core import (
    CourierError,
    GuildSubscription,
    GuildSubscriptionRepository,
    Issue,
    IssueRepository,
    Newsletter,
    NewsletterRepository,
    NotFoundError,
    TTLCache,
    normalize_email,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class YamlTable(Generic[T]):
    """One YAML file holding a list of records, cached by id."""

    def __init__(
        self,
        path: Path,
        to_record: Callable[[T], dict],
        from_record: Callable[[dict], T],
        cache_ttl: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.path = path
        self._to_record = to_record
        self._from_record = from_record
        self.cache: TTLCache[T] = TTLCache(cache_ttl, clock=clock)

    def _read(self) -> list[dict]:
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or []

    def _write(self, records: list[dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(records, f, allow_unicode=True, default_flow_style=False, sort_keys=False)
        tmp_path.replace(self.path)

    async def _refresh_if_needed(self) -> None:
        if self.cache.is_fresh():
            return
        records = await asyncio.to_thread(self._read)
        entities = {}
        for record in records:
            entity = self._parse(record)
            if entity is not None:
                entities[entity.id] = entity
        self.cache.load(entities)

    def _parse(self, record: dict) -> Optional[T]:
        try:
            return self._from_record(record)
        except (CourierError, KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping invalid record in %s: %s (%r)", self.path.name, e, record)
            return None

    async def all(self) -> list[T]:
        await self._refresh_if_needed()
        return self.cache.values()

    async def get(self, entity_id: str) -> Optional[T]:
        await self._refresh_if_needed()
        return self.cache.get(entity_id)

    async def upsert(self, entity: T) -> None:
        records = await asyncio.to_thread(self._read)
        record = self._to_record(entity)
        for i, existing in enumerate(records):
            if existing.get("id") == record["id"]:
                records[i] = record
                break
        else:
            records.append(record)
        await asyncio.to_thread(self._write, records)
        self.cache.put(record["id"], entity)

    async def remove(self, predicate: Callable[[T], bool]) -> None:
        records = await asyncio.to_thread(self._read)
        kept, removed_ids = [], []
        for record in records:
            entity = self._parse(record)
            if entity is not None and predicate(entity):
                removed_ids.append(record["id"])
            else:
                kept.append(record)
        if not removed_ids:
            return
        await asyncio.to_thread(self._write, kept)
        for entity_id in removed_ids:
            self.cache.remove(entity_id)


def newsletter_to_record(newsletter: Newsletter) -> dict:
    return {
        "id": newsletter.id,
        "name": newsletter.name,
        "url": newsletter.url,
        "sender_email": newsletter.sender_email,
        "extraction_pattern": newsletter.extraction_pattern,
        "created_at": newsletter.created_at.isoformat(),
        "updated_at": newsletter.updated_at.isoformat(),
    }


def newsletter_from_record(record: dict) -> Newsletter:
    return Newsletter.create(
        id=record["id"],
        name=record["name"],
        url=record["url"],
        sender_email=record["sender_email"],
        extraction_pattern=record.get("extraction_pattern"),
        created_at=_dt(record.get("created_at")),
        updated_at=_dt(record.get("updated_at")),
    )


def issue_to_record(issue: Issue) -> dict:
    return {
        "id": issue.id,
        "newsletter_id": issue.newsletter_id,
        "title": issue.title,
        "web_url": issue.web_url,
        "received_at": issue.received_at.isoformat(),
        "message_id": issue.message_id,
        "processed": issue.processed,
    }


def issue_from_record(record: dict) -> Issue:
    return Issue.create(
        id=record["id"],
        newsletter_id=record["newsletter_id"],
        title=record["title"],
        web_url=record["web_url"],
        received_at=_dt(record.get("received_at")),
        message_id=record.get("message_id"),
        processed=bool(record.get("processed", False)),
    )


def subscription_to_record(subscription: GuildSubscription) -> dict:
    return {
        "id": subscription.id,
        "guild_id": subscription.guild_id,
        "channel_id": subscription.channel_id,
        "newsletter_id": subscription.newsletter_id,
        "active": subscription.active,
        "created_at": subscription.created_at.isoformat(),
        "updated_at": subscription.updated_at.isoformat(),
    }


def subscription_from_record(record: dict) -> GuildSubscription:
    return GuildSubscription.create(
        id=record["id"],
        # Snowflakes may have been written unquoted and read back as ints
        guild_id=str(record["guild_id"]),
        channel_id=str(record["channel_id"]),
        newsletter_id=record["newsletter_id"],
        active=bool(record.get("active", True)),
        created_at=_dt(record.get("created_at")),
        updated_at=_dt(record.get("updated_at")),
    )


class YamlNewsletterRepository(NewsletterRepository):
    """Newsletters stored in newsletters.yaml."""

    def __init__(self, data_dir: Path, cache_ttl: float = 60.0, **kwargs: Any) -> None:
        self.table: YamlTable[Newsletter] = YamlTable(
            data_dir / "newsletters.yaml",
            newsletter_to_record,
            newsletter_from_record,
            cache_ttl,
            **kwargs,
        )

    async def get_all(self) -> list[Newsletter]:
        return await self.table.all()

    async def get_by_id(self, newsletter_id: str) -> Optional[Newsletter]:
        return await self.table.get(newsletter_id)

    async def get_by_sender_email(self, email: str) -> Optional[Newsletter]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        for newsletter in await self.table.all():
            if newsletter.sender_email == normalized:
                return newsletter
        return None

    async def save(self, newsletter: Newsletter) -> None:
        await self.table.upsert(newsletter)

    async def delete(self, newsletter_id: str) -> None:
        await self.table.remove(lambda newsletter: newsletter.id == newsletter_id)

    async def exists_by_sender_email(self, email: str) -> bool:
        return await self.get_by_sender_email(email) is not None


class YamlIssueRepository(IssueRepository):
    """Issues stored in issues.yaml."""

    def __init__(self, data_dir: Path, cache_ttl: float = 60.0, **kwargs: Any) -> None:
        self.table: YamlTable[Issue] = YamlTable(
            data_dir / "issues.yaml",
            issue_to_record,
            issue_from_record,
            cache_ttl,
            **kwargs,
        )

    async def get_all(self) -> list[Issue]:
        return await self.table.all()

    async def get_by_id(self, issue_id: str) -> Optional[Issue]:
        return await self.table.get(issue_id)

    async def get_by_newsletter_id(self, newsletter_id: str) -> list[Issue]:
        return [issue for issue in await self.table.all() if issue.newsletter_id == newsletter_id]

    async def get_by_message_id(self, message_id: str) -> Optional[Issue]:
        for issue in await self.table.all():
            if issue.message_id == message_id:
                return issue
        return None

    async def get_unprocessed(self) -> list[Issue]:
        return [issue for issue in await self.table.all() if not issue.processed]

    async def save(self, issue: Issue) -> None:
        await self.table.upsert(issue)

    async def delete(self, issue_id: str) -> None:
        await self.table.remove(lambda issue: issue.id == issue_id)

    async def mark_as_processed(self, issue_id: str) -> None:
        issue = await self.table.get(issue_id)
        if not issue:
            raise NotFoundError(f"Issue with ID {issue_id} not found")
        await self.table.upsert(issue.mark_as_processed())

    async def exists_by_message_id(self, message_id: str) -> bool:
        return await self.get_by_message_id(message_id) is not None


class YamlGuildSubscriptionRepository(GuildSubscriptionRepository):
    """Guild subscriptions stored in subscriptions.yaml."""

    def __init__(self, data_dir: Path, cache_ttl: float = 60.0, **kwargs: Any) -> None:
        self.table: YamlTable[GuildSubscription] = YamlTable(
            data_dir / "subscriptions.yaml",
            subscription_to_record,
            subscription_from_record,
            cache_ttl,
            **kwargs,
        )

    async def get_all(self) -> list[GuildSubscription]:
        return await self.table.all()

    async def get_by_id(self, subscription_id: str) -> Optional[GuildSubscription]:
        return await self.table.get(subscription_id)

    async def get_by_guild_id(self, guild_id: str) -> list[GuildSubscription]:
        return [s for s in await self.table.all() if s.guild_id == guild_id]

    async def get_by_newsletter_id(self, newsletter_id: str) -> list[GuildSubscription]:
        return [s for s in await self.table.all() if s.newsletter_id == newsletter_id]

    async def get_active_by_newsletter_id(self, newsletter_id: str) -> list[GuildSubscription]:
        return [s for s in await self.get_by_newsletter_id(newsletter_id) if s.active]

    async def get_by_guild_and_newsletter(
        self, guild_id: str, newsletter_id: str
    ) -> Optional[GuildSubscription]:
        for subscription in await self.table.all():
            if subscription.guild_id == guild_id and subscription.newsletter_id == newsletter_id:
                return subscription
        return None

    async def save(self, subscription: GuildSubscription) -> None:
        await self.table.upsert(subscription)

    async def delete(self, subscription_id: str) -> None:
        await self.table.remove(lambda subscription: subscription.id == subscription_id)

    async def delete_by_guild_id(self, guild_id: str) -> None:
        await self.table.remove(lambda subscription: subscription.guild_id == guild_id)

    async def exists_by_guild_and_newsletter(self, guild_id: str, newsletter_id: str) -> bool:
        return await self.get_by_guild_and_newsletter(guild_id, newsletter_id) is not None
