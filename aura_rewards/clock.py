"""Day and week boundaries in the deployment timezone."""
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo


def week_start(day: date) -> date:
    """Monday of the week containing ``day``."""
    return day - timedelta(days=day.weekday())


class Clock:
    """Source of "now" for every date-sensitive service.

    Tests substitute a subclass with a fixed or steppable time.
    """

    def __init__(self, timezone: str = "UTC"):
        self.tz = ZoneInfo(timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def stamp(self) -> datetime:
        # Naive local time; DateTime columns store no offset
        return self.now().replace(tzinfo=None)

    def today(self) -> date:
        return self.now().date()

    def current_week_start(self) -> date:
        return week_start(self.today())
