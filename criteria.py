"""
Date criteria attached to searches, standing requests and subscriptions.

A criterion is one of three variants:

* ``ExactDate``  - a single calendar day
* ``DateSet``    - up to five calendar days
* ``Month``      - a whole calendar month

Every consumer dispatches over the three with ``isinstance`` and treats any
other value as a programming error.
"""
import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional, Tuple, Union

from errors import ValidationError

MAX_DATE_SET = 5


@dataclass(frozen=True)
class ExactDate:
    day: date


@dataclass(frozen=True)
class DateSet:
    days: Tuple[date, ...]

    def __post_init__(self):
        if not self.days:
            raise ValidationError("a date set needs at least one date")
        if len(self.days) > MAX_DATE_SET:
            raise ValidationError(f"a date set holds at most {MAX_DATE_SET} dates")


@dataclass(frozen=True)
class Month:
    year: int
    month: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValidationError(f"invalid month {self.month}")

    @classmethod
    def parse(cls, value: str) -> "Month":
        try:
            year, month = value.split("-")
            return cls(int(year), int(month))
        except ValueError:
            raise ValidationError(f"month must look like YYYY-MM, got {value!r}")

    def __str__(self):
        return f"{self.year:04d}-{self.month:02d}"

    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    def last_day(self) -> date:
        return date(self.year, self.month, calendar.monthrange(self.year, self.month)[1])

    def includes(self, day: date) -> bool:
        return day.year == self.year and day.month == self.month


DateCriteria = Union[ExactDate, DateSet, Month]


def _unknown(criteria) -> ValueError:
    return ValueError(f"not a date criterion: {criteria!r}")


def window(criteria: DateCriteria) -> Tuple[datetime, datetime]:
    """Half-open [start, end) datetime window covering every day of the criterion."""
    if isinstance(criteria, ExactDate):
        start = datetime.combine(criteria.day, time.min)
        return start, start + timedelta(days=1)
    if isinstance(criteria, DateSet):
        return (datetime.combine(min(criteria.days), time.min),
                datetime.combine(max(criteria.days), time.min) + timedelta(days=1))
    if isinstance(criteria, Month):
        start = datetime.combine(criteria.first_day(), time.min)
        return start, datetime.combine(criteria.last_day(), time.min) + timedelta(days=1)
    raise _unknown(criteria)


def contains(criteria: DateCriteria, moment: Union[date, datetime]) -> bool:
    """Whether a calendar day (or a datetime's own date) satisfies the criterion."""
    day = moment.date() if isinstance(moment, datetime) else moment
    if isinstance(criteria, ExactDate):
        return day == criteria.day
    if isinstance(criteria, DateSet):
        return day in criteria.days
    if isinstance(criteria, Month):
        return criteria.includes(day)
    raise _unknown(criteria)


def _days(criteria: DateCriteria) -> Iterable[date]:
    if isinstance(criteria, ExactDate):
        return (criteria.day,)
    if isinstance(criteria, DateSet):
        return criteria.days
    raise _unknown(criteria)


def overlaps(a: DateCriteria, b: DateCriteria) -> bool:
    """True when some calendar day satisfies both criteria."""
    if isinstance(a, Month) and isinstance(b, Month):
        return a == b
    if isinstance(a, Month):
        return any(a.includes(d) for d in _days(b))
    if isinstance(b, Month):
        return any(b.includes(d) for d in _days(a))
    return bool(set(_days(a)) & set(_days(b)))


def last_day(criteria: DateCriteria) -> date:
    if isinstance(criteria, Month):
        return criteria.last_day()
    return max(_days(criteria))


def _parse_day(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"invalid date {value!r}")


def parse_date_criteria(date_type: Optional[str], specific_date=None, multiple_dates=None,
                        month: Optional[str] = None) -> Optional[DateCriteria]:
    """Build a criterion from the flat column/payload representation."""
    if not date_type:
        return None
    if date_type == "specific_date":
        if not specific_date:
            raise ValidationError("specific_date is required")
        return ExactDate(_parse_day(specific_date))
    if date_type == "multiple_dates":
        days = sorted({_parse_day(d) for d in (multiple_dates or [])})
        return DateSet(tuple(days))
    if date_type == "month":
        if not month:
            raise ValidationError("month is required")
        return Month.parse(month)
    raise ValidationError(f"unknown date type {date_type!r}")


def to_columns(criteria: DateCriteria) -> dict:
    """Inverse of parse_date_criteria: the column values for a stored criterion."""
    if isinstance(criteria, ExactDate):
        return {"date_type": "specific_date", "specific_date": criteria.day,
                "multiple_dates": None, "month": None}
    if isinstance(criteria, DateSet):
        return {"date_type": "multiple_dates", "specific_date": None,
                "multiple_dates": [d.isoformat() for d in criteria.days], "month": None}
    if isinstance(criteria, Month):
        return {"date_type": "month", "specific_date": None,
                "multiple_dates": None, "month": str(criteria)}
    raise _unknown(criteria)
