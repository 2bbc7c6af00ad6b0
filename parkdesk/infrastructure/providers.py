# File: parkdesk/infrastructure/providers.py
"""
Clock and identity providers injected into the application services
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
import threading
import time


class Clock(ABC):

    @abstractmethod
    def now(self) -> int:
        """Current instant in milliseconds since the epoch"""
        pass

    def now_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now() / 1000, tz=timezone.utc)


class SystemClock(Clock):

    def now(self) -> int:
        return time.time_ns() // 1_000_000


class ManualClock(Clock):
    """Test clock; only moves when told to"""

    def __init__(self, start_ms: int = 0):
        self._now = int(start_ms)
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            return self._now

    def set(self, timestamp_ms: int) -> None:
        with self._lock:
            self._now = int(timestamp_ms)

    def advance(self, minutes: int = 0, seconds: int = 0, ms: int = 0) -> int:
        with self._lock:
            self._now += minutes * 60_000 + seconds * 1000 + ms
            return self._now


class IdentityProvider(ABC):

    @abstractmethod
    def current_owner(self) -> str:
        pass


class StaticIdentityProvider(IdentityProvider):
    """Fixed operator identity, 'anonymous' when none is signed in"""

    ANONYMOUS = "anonymous"

    def __init__(self, owner_ref: str = ANONYMOUS):
        self.owner_ref = owner_ref or self.ANONYMOUS

    def current_owner(self) -> str:
        return self.owner_ref
