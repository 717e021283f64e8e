"""Discord delivery adapters."""

from newsletter_courier.adapters.discord.delivery_queue import DeliveryQueue
from newsletter_courier.adapters.discord.poster import DiscordChannelPoster

__all__ = ["DeliveryQueue", "DiscordChannelPoster"]
