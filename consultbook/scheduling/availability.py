"""Advisor weekly availability.

Availability is stored on the advisor profile as a list of day records. Two
layouts exist in stored data:

* ``{"dayOfWeek": 0, "isAvailable": true, "timeSlots": [{"startTime": "09:00", "endTime": "12:00"}, ...]}``
* ``{"dayOfWeek": 0, "isAvailable": true, "startTime": "09:00", "endTime": "17:00"}`` (legacy)

Both are resolved once, here, into ``DayAvailability.schedule`` so the rest of
the scheduler only ever sees ``DayAvailability.windows``.

``dayOfWeek`` follows ``date.weekday()``: Monday is 0 and Sunday is 6.
"""

from collections.abc import Iterable
from datetime import date, datetime, time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator

from consultbook.core.errors import AvailabilityConventionError, ValidationError

WEEKDAY_NAMES = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')


class TimeWindow(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    start_time: time = Field(alias='startTime')
    end_time: time = Field(alias='endTime')

    @model_validator(mode='after')
    def check_order(self) -> 'TimeWindow':
        if self.end_time <= self.start_time:
            raise ValueError('A working window must end after it starts.')
        return self

    def bounds_on(self, day: date) -> tuple[datetime, datetime]:
        return datetime.combine(day, self.start_time), datetime.combine(day, self.end_time)

    def as_metadata(self) -> dict:
        return {'startTime': self.start_time.strftime('%H:%M'), 'endTime': self.end_time.strftime('%H:%M')}


class LegacyWindow(BaseModel):
    kind: Literal['legacy'] = 'legacy'
    window: TimeWindow

    @property
    def windows(self) -> list[TimeWindow]:
        return [self.window]


class WindowList(BaseModel):
    kind: Literal['windows'] = 'windows'
    windows: list[TimeWindow] = Field(default_factory=list)


class DayAvailability(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    day_of_week: int = Field(alias='dayOfWeek', ge=0, le=6)
    is_available: bool = Field(default=True, alias='isAvailable')
    day: str | None = None
    schedule: LegacyWindow | WindowList = Field(discriminator='kind')

    @model_validator(mode='before')
    @classmethod
    def resolve_layout(cls, data):
        if not isinstance(data, dict) or 'schedule' in data:
            return data

        data = dict(data)
        time_slots = data.pop('timeSlots', None)
        start_time = data.pop('startTime', None)
        end_time = data.pop('endTime', None)

        if isinstance(time_slots, list) and time_slots:
            data['schedule'] = {'kind': 'windows', 'windows': time_slots}
        elif start_time and end_time:
            data['schedule'] = {'kind': 'legacy', 'window': {'startTime': start_time, 'endTime': end_time}}
        else:
            data['schedule'] = {'kind': 'windows', 'windows': []}
        return data

    @property
    def windows(self) -> list[TimeWindow]:
        if not self.is_available:
            return []
        return sorted(self.schedule.windows, key=lambda window: window.start_time)

    @property
    def first_window_start(self) -> time | None:
        windows = self.windows
        if not windows:
            return None
        # First configured window, not the earliest one.
        return self.schedule.windows[0].start_time

    def covers(self, start: datetime, end: datetime) -> bool:
        for window in self.windows:
            window_start, window_end = window.bounds_on(start.date())
            if window_start <= start and end <= window_end:
                return True
        return False

    def working_hours(self) -> list[dict] | dict | None:
        if not self.is_available:
            return None
        if isinstance(self.schedule, LegacyWindow):
            return {
                'start': self.schedule.window.start_time.strftime('%H:%M'),
                'end': self.schedule.window.end_time.strftime('%H:%M'),
            }
        return [window.as_metadata() for window in self.schedule.windows]


def unavailable_day(day_of_week: int) -> DayAvailability:
    return DayAvailability(day_of_week=day_of_week, is_available=False, schedule=WindowList())


def parse_weekly_availability(records: Iterable[dict] | None) -> dict[int, DayAvailability]:
    weekly: dict[int, DayAvailability] = {}

    for raw in records or []:
        try:
            record = DayAvailability.model_validate(raw)
        except PydanticValidationError as exc:
            raise ValidationError(
                'Advisor availability is malformed.',
                code='invalid_availability',
                errors=exc.errors(include_url=False, include_context=False, include_input=False),
            ) from exc

        if record.day is not None:
            expected = WEEKDAY_NAMES[record.day_of_week]
            if record.day.strip().lower() != expected:
                raise AvailabilityConventionError(
                    f'dayOfWeek {record.day_of_week} is {expected}, not {record.day!r}. '
                    'Availability uses Monday=0 through Sunday=6.',
                )

        if record.day_of_week in weekly:
            raise ValidationError(
                f'dayOfWeek {record.day_of_week} is listed more than once.',
                code='invalid_availability',
            )
        weekly[record.day_of_week] = record

    return weekly


def resolve_day(records: Iterable[dict] | None, day: date) -> DayAvailability:
    weekday = day.weekday()
    record = parse_weekly_availability(records).get(weekday)
    if record is None or not record.is_available:
        return unavailable_day(weekday)
    return record
