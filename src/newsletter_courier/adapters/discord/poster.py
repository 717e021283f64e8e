"""Discord channel poster adapter."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from newsletter_courier.adapters.discord.delivery_queue import DeliveryQueue
from newsletter_courier.core.entities import ChannelPost
from newsletter_courier.core.errors import RateLimitedError
from newsletter_courier.core.interfaces import ChannelPoster

logger = logging.getLogger(__name__)


class DiscordChannelPoster(ChannelPoster):
    """Post issue embeds to Discord channels over the REST API."""

    def __init__(
        self,
        bot_token: str,
        api_base: str = "https://discord.com/api/v10",
        queue: Optional[DeliveryQueue] = None,
        embed_color: int = 0x3498DB,
        timeout: float = 30.0,
    ) -> None:
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        self.queue = queue or DeliveryQueue()
        self.embed_color = embed_color
        self.timeout = timeout

    async def post_to_channel(self, post: ChannelPost) -> None:
        await self.queue.submit(post.channel_id, lambda: self._send(post))

    def _build_embed(self, post: ChannelPost) -> dict[str, Any]:
        timestamp = post.timestamp or datetime.now(timezone.utc)
        embed: dict[str, Any] = {
            "title": post.title[:256],
            "url": post.url,
            "color": post.color if post.color is not None else self.embed_color,
            "timestamp": timestamp.isoformat(),
        }
        if post.description:
            embed["description"] = post.description
        if post.footer:
            embed["footer"] = {"text": post.footer}
        return embed

    async def _send(self, post: ChannelPost) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.api_base}/channels/{post.channel_id}/messages",
                headers={
                    "Authorization": f"Bot {self.bot_token}",
                    "Content-Type": "application/json",
                },
                json={"embeds": [self._build_embed(post)]},
            )

        if response.status_code == 429:
            raise RateLimitedError(
                f"Rate limited posting to channel {post.channel_id}",
                retry_after=self._get_retry_after(response),
            )

        response.raise_for_status()
        logger.info("Posted to channel %s", post.channel_id)

    def _get_retry_after(self, response: httpx.Response) -> Optional[float]:
        """Read the provider delay from the JSON body, then the Retry-After header."""
        try:
            data = response.json()
            if isinstance(data, dict) and data.get("retry_after") is not None:
                return float(data["retry_after"])
        except ValueError:
            pass

        retry_after = response.headers.get("retry-after")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        return None
