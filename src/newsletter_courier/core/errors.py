"""Error taxonomy for the courier core."""

from typing import Optional


class CourierError(Exception):
    """Base error for newsletter courier."""


class ValidationError(CourierError, ValueError):
    """Entity construction received a missing or malformed field."""


class NotFoundError(CourierError):
    """A looked-up entity does not exist."""


class DuplicateError(CourierError):
    """An entity with the same unique key already exists."""


class ConfigurationError(CourierError):
    """Required settings are missing."""


class RateLimitedError(CourierError):
    """The channel provider asked us to slow down."""

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after
