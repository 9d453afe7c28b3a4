"""Cron expression parsing.

Supports standard 5-field cron format:
- minute (0-59)
- hour (0-23)
- day of month (1-31)
- month (1-12)
- day of week (0-7, 0 and 7 = Sunday)

Special characters:
- * : any value
- */n : every n values
- n-m : range from n to m
- n-m/s : every s values from n to m
- n,m : specific values n and m

As in standard cron, when both day of month and day of week are
restricted a time matches if either one does.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from arcana.errors import ConfigurationError

# Five years covers leap-day schedules; anything later never matches
_MAX_SEARCH = timedelta(days=366 * 5)


class CronExpression:
    """Parse and evaluate cron expressions.

    Raises:
        ConfigurationError: If the expression is malformed
    """

    def __init__(self, expression: str) -> None:
        self.expression = expression
        self._parse(expression)

    def __repr__(self) -> str:
        return f"CronExpression({self.expression!r})"

    def _parse(self, expression: str) -> None:
        """Parse cron expression into components."""
        parts = expression.strip().split()
        if len(parts) != 5:
            raise ConfigurationError(f"Invalid cron expression (expected 5 parts): {expression}")

        self.minute = self._parse_field(parts[0], 0, 59)
        self.hour = self._parse_field(parts[1], 0, 23)
        self.day_of_month = self._parse_field(parts[2], 1, 31)
        self.month = self._parse_field(parts[3], 1, 12)
        day_of_week = self._parse_field(parts[4], 0, 7)
        if 7 in day_of_week:
            day_of_week = (day_of_week - {7}) | {0}
        self.day_of_week = day_of_week

        # A field starting with "*" (including "*/n") does not restrict the day
        self._dom_restricted = not parts[2].startswith("*")
        self._dow_restricted = not parts[4].startswith("*")

    def _parse_field(self, field: str, min_val: int, max_val: int) -> set[int]:
        """Parse a single cron field."""
        values: set[int] = set()

        for part in field.split(","):
            try:
                values.update(self._parse_part(part, min_val, max_val))
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid cron field '{field}' in '{self.expression}': {e}"
                ) from e

        return values

    @staticmethod
    def _parse_part(part: str, min_val: int, max_val: int) -> range:
        step = 1
        if "/" in part:
            part, step_str = part.split("/", 1)
            step = int(step_str)
            if step < 1:
                raise ValueError("step must be positive")

        if part == "*":
            start, end = min_val, max_val
        elif "-" in part:
            start_str, end_str = part.split("-", 1)
            start, end = int(start_str), int(end_str)
        else:
            start = int(part)
            end = start if step == 1 else max_val

        if start < min_val or end > max_val or start > end:
            raise ValueError(f"{part} outside {min_val}-{max_val}")

        return range(start, end + 1, step)

    def _matches_day(self, dt: datetime) -> bool:
        # Cron: 0=Sun, 1=Mon, ..., 6=Sat; Python weekday(): 0=Mon, ..., 6=Sun
        cron_weekday = (dt.weekday() + 1) % 7
        dom_ok = dt.day in self.day_of_month
        dow_ok = cron_weekday in self.day_of_week

        if self._dom_restricted and self._dow_restricted:
            return dom_ok or dow_ok
        return dom_ok and dow_ok

    def matches(self, dt: datetime) -> bool:
        """Check if datetime matches this cron expression."""
        return (
            dt.minute in self.minute
            and dt.hour in self.hour
            and dt.month in self.month
            and self._matches_day(dt)
        )

    def next_run(self, after: datetime | None = None) -> datetime:
        """Calculate the first matching minute strictly after `after`."""
        if after is None:
            after = datetime.now(UTC)

        current = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = current + _MAX_SEARCH

        while current < limit:
            if current.month not in self.month:
                year = current.year + (1 if current.month == 12 else 0)
                month = 1 if current.month == 12 else current.month + 1
                current = current.replace(year=year, month=month, day=1, hour=0, minute=0)
                continue

            if not self._matches_day(current):
                current = (current + timedelta(days=1)).replace(hour=0, minute=0)
                continue

            if current.hour not in self.hour:
                current = (current + timedelta(hours=1)).replace(minute=0)
                continue

            if current.minute not in self.minute:
                current += timedelta(minutes=1)
                continue

            return current

        raise ConfigurationError(f"No matching time found for: {self.expression}")


# Common schedule presets
SCHEDULE_PRESETS = {
    "every_minute": "* * * * *",
    "every_5_minutes": "*/5 * * * *",
    "every_15_minutes": "*/15 * * * *",
    "every_hour": "0 * * * *",
    "daily_midnight": "0 0 * * *",
    "daily_2am": "0 2 * * *",
    "weekly_sunday": "0 0 * * 0",
    "weekly_monday": "0 0 * * 1",
    "monthly_first": "0 0 1 * *",
}
