"""
Next-trigger computation for scheduled test runs.

A scheduled run stores its recurrence as a frequency plus a JSON blob whose
shape depends on the frequency. ``parse_schedule`` turns the blob into one of
four typed variants and ``next_trigger`` computes the next execution time
from it. Neither function touches the database.

Day of week follows the 0 = Sunday ... 6 = Saturday numbering used by the
application layer. Monthly schedules clamp a day-of-month that does not exist
in the target month to that month's last day (31 in April runs on the 30th).
"""

import calendar
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from testrun_jobs.errors import ScheduleConfigError
from testrun_jobs.models.schemas import Frequency

logger = logging.getLogger(__name__)


class _ScheduleModel(BaseModel):
    class Config:
        populate_by_name = True
        extra = "ignore"


class DailySchedule(_ScheduleModel):
    hour: int = Field(0, ge=0, le=23)
    minute: int = Field(0, ge=0, le=59)


class WeeklySchedule(_ScheduleModel):
    day_of_week: int = Field(1, ge=0, le=6, alias="dayOfWeek")
    hour: int = Field(0, ge=0, le=23)
    minute: int = Field(0, ge=0, le=59)


class MonthlySchedule(_ScheduleModel):
    day_of_month: int = Field(1, ge=1, le=31, alias="dayOfMonth")
    hour: int = Field(0, ge=0, le=23)
    minute: int = Field(0, ge=0, le=59)


class CustomSchedule(_ScheduleModel):
    next_run: Optional[datetime] = Field(None, alias="nextRun")


ScheduleConfig = Union[DailySchedule, WeeklySchedule, MonthlySchedule, CustomSchedule]

_SCHEDULE_MODELS = {
    Frequency.DAILY: DailySchedule,
    Frequency.WEEKLY: WeeklySchedule,
    Frequency.MONTHLY: MonthlySchedule,
    Frequency.CUSTOM: CustomSchedule,
}


@dataclass(frozen=True)
class NextTrigger:
    """Computed trigger time; ``fallback`` is set when the schedule was unusable"""

    at: datetime
    fallback: bool = False
    reason: Optional[str] = None


def parse_schedule(frequency: Union[Frequency, str], raw: Union[str, bytes, Mapping[str, Any], None]) -> ScheduleConfig:
    """Decode a stored schedule blob into the variant for ``frequency``.

    Raises:
        ScheduleConfigError: unknown frequency, malformed JSON, a non-object
            payload or out-of-range fields. ``None`` and empty strings decode
            to the variant's defaults.
    """
    try:
        freq = Frequency(frequency)
    except ValueError:
        raise ScheduleConfigError(f"Unknown frequency: {frequency!r}")

    if raw is None or (isinstance(raw, (str, bytes)) and not raw.strip()):
        payload: Any = {}
    elif isinstance(raw, (str, bytes)):
        try:
            payload = json.loads(raw)
        except ValueError as e:
            raise ScheduleConfigError(f"Schedule is not valid JSON: {e}") from e
    else:
        payload = raw

    if not isinstance(payload, Mapping):
        raise ScheduleConfigError(f"Schedule must be a JSON object, got {type(payload).__name__}")

    # null fields mean "use the default", as the application layer writes them
    payload = {key: value for key, value in payload.items() if value is not None}
    try:
        return _SCHEDULE_MODELS[freq].model_validate(payload)
    except ValidationError as e:
        raise ScheduleConfigError(f"Invalid {freq.value} schedule: {e.errors()}") from e


def _at_time(day: datetime, hour: int, minute: int) -> datetime:
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)


def _add_month(now: datetime, day_of_month: int) -> datetime:
    year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
    last_day = calendar.monthrange(year, month)[1]
    return now.replace(year=year, month=month, day=min(day_of_month, last_day))


def _js_weekday(moment: datetime) -> int:
    # datetime counts Monday as 0; schedules count Sunday as 0
    return (moment.weekday() + 1) % 7


def compute_next(schedule: ScheduleConfig, now: datetime) -> datetime:
    """Next trigger for an already-parsed schedule."""
    if isinstance(schedule, DailySchedule):
        return _at_time(now + timedelta(days=1), schedule.hour, schedule.minute)

    if isinstance(schedule, WeeklySchedule):
        days_until = schedule.day_of_week - _js_weekday(now)
        if days_until <= 0:
            days_until += 7
        return _at_time(now + timedelta(days=days_until), schedule.hour, schedule.minute)

    if isinstance(schedule, MonthlySchedule):
        return _at_time(_add_month(now, schedule.day_of_month), schedule.hour, schedule.minute)

    if isinstance(schedule, CustomSchedule):
        if schedule.next_run is not None:
            return schedule.next_run
        return now + timedelta(days=1)

    raise TypeError(f"Unsupported schedule type: {type(schedule).__name__}")


def next_trigger(frequency: Union[Frequency, str], schedule: Union[str, bytes, Mapping[str, Any], ScheduleConfig, None], now: datetime) -> NextTrigger:
    """Compute when a scheduled run should fire next.

    Never raises for bad input: an unknown frequency or an undecodable
    schedule falls back to ``now + 1 day`` and the result carries
    ``fallback=True`` with the reason, which is also logged.
    """
    if isinstance(schedule, (DailySchedule, WeeklySchedule, MonthlySchedule, CustomSchedule)):
        config = schedule
    else:
        try:
            config = parse_schedule(frequency, schedule)
        except ScheduleConfigError as e:
            logger.warning(
                "Falling back to next day for %s schedule: %s", frequency, e
            )
            return NextTrigger(at=now + timedelta(days=1), fallback=True, reason=str(e))

    return NextTrigger(at=compute_next(config, now))
