# binary_mlm/utils/time_machine.py
"""
Time machine for testing - controls virtual time in the system.
"""
from datetime import datetime, timezone, timedelta
from typing import Optional, Union
import logging

logger = logging.getLogger(__name__)


class TimeMachine:
    """Singleton for managing system time."""

    _instance = None
    _virtualTime: Optional[datetime] = None
    _isTestMode: bool = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def now(self) -> datetime:
        """Get current system time (real or virtual)."""
        if self._isTestMode and self._virtualTime:
            return self._virtualTime
        return datetime.now(timezone.utc)

    @property
    def currentMonth(self) -> str:
        """Get current month in YYYY-MM format."""
        return self.now.strftime('%Y-%m')

    @property
    def today(self) -> str:
        """Get current UTC date in YYYY-MM-DD format."""
        return self.now.strftime('%Y-%m-%d')

    @property
    def startOfDay(self) -> datetime:
        """UTC midnight of the current day."""
        return self.now.replace(hour=0, minute=0, second=0, microsecond=0)

    @property
    def startOfWeek(self) -> datetime:
        """UTC midnight of the Monday of the current ISO week."""
        return self.startOfDay - timedelta(days=self.now.weekday())

    @property
    def startOfMonth(self) -> datetime:
        """UTC midnight of the first day of the current month."""
        return self.startOfDay.replace(day=1)

    def setTime(self, newTime: datetime, adminId: Optional[str] = None):
        """Set virtual time for testing."""
        if newTime.tzinfo is None:
            newTime = newTime.replace(tzinfo=timezone.utc)
        self._isTestMode = True
        self._virtualTime = newTime
        logger.info(f"Virtual time set to {newTime} by admin {adminId}")

    def advanceTime(self, days: int = 0, hours: int = 0, minutes: int = 0):
        """Advance virtual time forward."""
        if not self._isTestMode:
            raise ValueError("Cannot advance time when not in test mode")

        self._virtualTime += timedelta(days=days, hours=hours, minutes=minutes)
        logger.info(f"Time advanced to {self._virtualTime}")

    def resetToRealTime(self):
        """Return to real time."""
        self._isTestMode = False
        self._virtualTime = None
        logger.info("Returned to real time")


def toTimestamp(value: datetime) -> str:
    """Serialize a datetime the way the document store keeps it."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parseTimestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Read a stored timestamp back into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# Global instance
timeMachine = TimeMachine()
