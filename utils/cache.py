# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

"""
Soft in-process caches

Both caches only save round trips. Losing or serving a stale value never
changes what is persisted, so they are safe to share across requests.
"""
import time
import logging
from threading import Lock
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class AccessTokenCache:
    """Holds one bearer token until it is within `margin_seconds` of expiring"""

    def __init__(self, margin_seconds: int = 60, clock: Callable[[], float] = time.time):
        self.margin_seconds = margin_seconds
        self.clock = clock
        self._token: Optional[str] = None
        self._expires_at: Optional[float] = None
        self._lock = Lock()

    def get(self) -> Optional[str]:
        with self._lock:
            if not self._token or self._expires_at is None:
                return None
            if self.clock() + self.margin_seconds >= self._expires_at:
                return None
            return self._token

    def store(self, token: str, expires_in: float):
        with self._lock:
            self._token = token
            self._expires_at = self.clock() + float(expires_in)

    def clear(self):
        with self._lock:
            self._token = None
            self._expires_at = None


class TTLCache:
    """Single-value read cache with a fixed time-to-live"""

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._value: Any = None
        self._loaded_at: Optional[float] = None

    def get(self) -> Any:
        """Return the cached value, or None when empty or expired"""
        if self._loaded_at is None:
            return None
        if self.clock() - self._loaded_at > self.ttl_seconds:
            return None
        return self._value

    def set(self, value: Any):
        self._value = value
        self._loaded_at = self.clock()

    def touch(self):
        """Restart the TTL after an optimistic in-place update"""
        if self._loaded_at is not None:
            self._loaded_at = self.clock()

    def invalidate(self):
        self._value = None
        self._loaded_at = None
