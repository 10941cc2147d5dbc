from datetime import datetime, time, timedelta
from typing import Optional


class DutySchedule:
    """Daily duty window. Without a configured window the driver is always on duty."""

    def __init__(self, start: Optional[time] = None, end: Optional[time] = None,
                 end_window_minutes: int = 15):
        if (start is None) != (end is None):
            raise ValueError("Duty hours need both a start and an end")
        self.start = start
        self.end = end
        self.end_window = timedelta(minutes=end_window_minutes)

    @classmethod
    def from_config(cls, config) -> 'DutySchedule':
        return cls(config.duty_start, config.duty_end, config.duty_end_window_min)

    @property
    def is_configured(self) -> bool:
        return self.start is not None

    def is_within(self, now: datetime) -> bool:
        if not self.is_configured:
            return True
        current = now.time()
        if self.start <= self.end:
            return self.start <= current < self.end
        # overnight shift
        return current >= self.start or current < self.end

    def is_end_of_duty(self, now: datetime) -> bool:
        if not self.is_configured:
            return False
        end_at = datetime.combine(now.date(), self.end)
        if end_at < now:
            end_at += timedelta(days=1)
        return end_at - now <= self.end_window

    def to_dict(self) -> dict:
        return {
            'start': self.start.strftime('%H:%M') if self.start else None,
            'end': self.end.strftime('%H:%M') if self.end else None,
            'end_window_minutes': int(self.end_window.total_seconds() // 60),
        }
