"""Time-boxed in-memory cache in front of slow stores."""

import time
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class TTLCache(Generic[T]):
    """Entity cache keyed by id, reloaded wholesale once it expires.

    Writes go through `put`/`remove` so a fresh cache stays consistent with
    the backing store without a reload.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._items: dict[str, T] = {}
        self._loaded_at: Optional[float] = None

    def is_fresh(self) -> bool:
        if self._loaded_at is None:
            return False
        return self._clock() - self._loaded_at < self.ttl

    def load(self, items: dict[str, T]) -> None:
        self._items = dict(items)
        self._loaded_at = self._clock()

    def get(self, key: str) -> Optional[T]:
        return self._items.get(key)

    def values(self) -> list[T]:
        return list(self._items.values())

    def put(self, key: str, value: T) -> None:
        self._items[key] = value

    def remove(self, key: str) -> None:
        self._items.pop(key, None)

    def invalidate(self) -> None:
        self._items = {}
        self._loaded_at = None

    def __len__(self) -> int:
        return len(self._items)
