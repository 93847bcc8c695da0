"""Cron evaluation for recurring tasks, kept free of scheduler state."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from apscheduler.triggers.cron import CronTrigger

from fleetctl.errors import InvalidCronExpression


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_cron(expression: str | None) -> CronTrigger:
    """Parse a five-field crontab expression evaluated in UTC."""
    if not expression or not expression.strip():
        raise InvalidCronExpression("Cron expression is empty")
    try:
        return CronTrigger.from_crontab(expression.strip(), timezone="UTC")
    except (ValueError, TypeError) as exc:
        raise InvalidCronExpression(f"Invalid cron expression {expression!r}: {exc}") from exc


def validate_cron(expression: str | None) -> None:
    parse_cron(expression)


def next_fire_time(expression: str, after: datetime) -> datetime | None:
    """First fire time strictly after ``after``."""
    trigger = parse_cron(expression)
    return trigger.get_next_fire_time(None, _as_utc(after) + timedelta(microseconds=1))


def is_cron_due(expression: str, since: datetime, now: datetime) -> bool:
    """True when the schedule has fired at least once after ``since`` and not after ``now``."""
    upcoming = next_fire_time(expression, since)
    return upcoming is not None and upcoming <= _as_utc(now)
