"""Single-value cache that expires after a fixed time-to-live."""

from __future__ import annotations

import time
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class TTLCache(Generic[T]):
    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._value: Optional[T] = None
        self._stored_at: Optional[float] = None

    def get(self) -> Optional[T]:
        if self._stored_at is None:
            return None
        if self._clock() - self._stored_at >= self._ttl:
            return None
        return self._value

    def set(self, value: T) -> None:
        self._value = value
        self._stored_at = self._clock()

    def invalidate(self) -> None:
        self._value = None
        self._stored_at = None
