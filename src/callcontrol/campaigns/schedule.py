"""
Daily calling window for campaigns.
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

DEFAULT_DAILY_START = "09:00"


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":", 1)
    return time(int(hours), int(minutes))


@dataclass(frozen=True)
class DailyWindow:
    """Local-time window in which a campaign may dial.

    Outside means local time before ``start`` or at/after ``end``.
    """

    start: time
    end: time | None
    tz: ZoneInfo

    @classmethod
    def from_strings(
        cls,
        start: str | None,
        end: str | None,
        tz_name: str = "UTC",
    ) -> "DailyWindow | None":
        if not start and not end:
            return None
        end_time = parse_hhmm(end) if end else None
        if start:
            start_time = parse_hhmm(start)
        else:
            # The default start only applies when it comes before the end.
            start_time = parse_hhmm(DEFAULT_DAILY_START)
            if end_time is not None and start_time >= end_time:
                start_time = time.min
        return cls(start=start_time, end=end_time, tz=ZoneInfo(tz_name))

    def contains(self, now: datetime) -> bool:
        return self.resume_at(now) is None

    def resume_at(self, now: datetime) -> datetime | None:
        """Next window start (UTC) when `now` is outside the window, else None."""
        local = now.astimezone(self.tz)
        current = local.time()

        before_start = current < self.start
        after_end = self.end is not None and current >= self.end
        if not (before_start or after_end):
            return None

        day = local.date() if before_start else local.date() + timedelta(days=1)
        resume_local = datetime.combine(day, self.start, tzinfo=self.tz)
        return resume_local.astimezone(timezone.utc)
