"""Per-owner send limits that rely on the persisted send log."""

import time
from typing import Optional

from .persistence import Persistence

WINDOWS = (("per_minute", 60), ("per_hour", 3600), ("per_day", 86400))


class RateLimiter:
    """Simple sliding-window limiter built on top of :class:`Persistence`."""

    def __init__(
        self,
        persistence: Persistence,
        *,
        per_minute: Optional[int] = None,
        per_hour: Optional[int] = None,
        per_day: Optional[int] = None,
    ):
        """Store the persistence helper and the limits; ``None`` or ``0`` disables a window."""
        self.persistence = persistence
        self.limits = {
            "per_minute": per_minute,
            "per_hour": per_hour,
            "per_day": per_day,
        }

    @property
    def enabled(self) -> bool:
        return any(v and int(v) > 0 for v in self.limits.values())

    async def retry_after(self, owner: str) -> Optional[float]:
        """Return the seconds until ``owner`` may send again, or ``None`` when allowed now."""
        now = int(time.time())
        for key, window in WINDOWS:
            limit = self.limits.get(key)
            if not limit or int(limit) <= 0:
                continue
            count = await self.persistence.count_sends_since(owner, now - window)
            if count >= int(limit):
                return float((now // window + 1) * window - now)
        return None

    async def log_send(self, owner: str) -> None:
        """Persist the fact that ``owner`` has sent a message right now."""
        await self.persistence.log_send(owner, int(time.time()))
