"""
Five-field cron expressions on top of APScheduler's CronTrigger.

Fields are minute, hour, day-of-month, month, day-of-week. Day-of-week uses
crontab numbering (0 or 7 = Sunday) and is translated to APScheduler's
weekday names, since APScheduler counts from Monday. Next-run times are
computed by the trigger in the schedule's own timezone, so DST shifts are
applied per date rather than through a cached offset.
"""

import calendar
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from kpisync.core.errors import InvalidCronExpression, InvalidTimezoneError

CRON_WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]
# Output order for APScheduler, which starts the week on Monday
APSCHEDULER_WEEKDAY_ORDER = [1, 2, 3, 4, 5, 6, 0]


def validate_timezone(tz: str) -> str:
    if not tz:
        raise InvalidTimezoneError(tz)
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        raise InvalidTimezoneError(tz)
    return tz


def _weekday_value(token: str, expression: str) -> int:
    token = token.strip().lower()
    if token.isdigit():
        value = int(token)
        if value > 7:
            raise InvalidCronExpression(expression, f"day-of-week {value} out of range 0-7")
        return value
    if token[:3] in CRON_WEEKDAYS and len(token) == 3:
        return CRON_WEEKDAYS.index(token)
    raise InvalidCronExpression(expression, f"bad day-of-week '{token}'")


def _translate_day_of_week(field: str, expression: str) -> str:
    """Expand a crontab day-of-week field into APScheduler weekday names."""
    days: set[int] = set()
    for part in field.split(","):
        if not part:
            raise InvalidCronExpression(expression, "empty day-of-week entry")
        base, _, step_text = part.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise InvalidCronExpression(expression, f"bad step '{step_text}'")
            step = int(step_text)

        if base == "*":
            start, end = 0, 6
        elif "-" in base:
            first, _, last = base.partition("-")
            start, end = _weekday_value(first, expression), _weekday_value(last, expression)
            if end == 0 and start > 0:
                # "sun" or 0 closing a range means 7, as in "mon-sun"
                end = 7
            if start > end:
                raise InvalidCronExpression(expression, f"day-of-week range {base} is reversed")
        else:
            start = _weekday_value(base, expression)
            end = 6 if step_text else start

        for value in range(start, end + 1, step):
            days.add(value % 7)

    if len(days) == 7:
        return "*"
    return ",".join(CRON_WEEKDAYS[d] for d in APSCHEDULER_WEEKDAY_ORDER if d in days)


def _literal_values(field: str) -> list[int] | None:
    parts = field.split(",")
    if all(p.isdigit() for p in parts):
        return [int(p) for p in parts]
    return None


def _check_satisfiable(day: str, month: str, expression: str) -> None:
    # Catch dates like "31 4" up front; APScheduler would otherwise search to year 9999
    days, months = _literal_values(day), _literal_values(month)
    if not days or not months:
        return
    for m in months:
        if not 1 <= m <= 12:
            return  # range errors are reported by CronTrigger
        longest = 29 if m == 2 else calendar.monthrange(2001, m)[1]
        if any(d <= longest for d in days):
            return
    raise InvalidCronExpression(expression, "day-of-month never occurs in the given months")


def build_trigger(expression: str, tz: str) -> CronTrigger:
    """Parse a 5-field cron expression into a timezone-bound CronTrigger."""
    validate_timezone(tz)
    if not isinstance(expression, str):
        raise InvalidCronExpression(str(expression), "expression must be a string")
    fields = expression.split()
    if len(fields) != 5:
        raise InvalidCronExpression(expression, f"wrong number of fields; got {len(fields)}, expected 5")

    minute, hour, day, month, day_of_week = fields
    _check_satisfiable(day, month, expression)
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_translate_day_of_week(day_of_week, expression),
            timezone=tz,
        )
    except ValueError as e:
        raise InvalidCronExpression(expression, str(e))


def validate_cron(expression: str) -> str:
    build_trigger(expression, "UTC")
    return expression


def compute_next_run(expression: str, tz: str, now: datetime | None = None) -> datetime:
    """
    Next instant strictly after `now` matching the expression in `tz`.

    Naive `now` values are taken as UTC. Returns an aware UTC datetime.
    """
    trigger = build_trigger(expression, tz)
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    # The trigger returns matches at or after its start; nudge past `now`
    next_fire = trigger.get_next_fire_time(None, now + timedelta(microseconds=1))
    if next_fire is None:
        raise InvalidCronExpression(expression, "expression never fires")
    return next_fire.astimezone(timezone.utc)
