"""
Time source injected into every service.
"""

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

from actguard.core.config import settings


class Clock:
    """System clock returning timezone-aware UTC datetimes"""

    def __init__(self, local_timezone: Optional[str] = None):
        name = local_timezone or settings.LOCAL_TIMEZONE
        self.local_tz: tzinfo = timezone.utc if name.upper() == "UTC" else ZoneInfo(name)

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def local_now(self) -> datetime:
        """Current time in the deployment's local timezone"""
        return self.now().astimezone(self.local_tz)


class FrozenClock(Clock):
    """Clock that only moves when told to"""

    def __init__(self, start: Optional[datetime] = None, local_timezone: Optional[str] = "UTC"):
        super().__init__(local_timezone)
        start = start or datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        self._now = moment

    def advance(self, **kwargs) -> datetime:
        """Move forward by the given timedelta keyword arguments"""
        self._now = self._now + timedelta(**kwargs)
        return self._now
