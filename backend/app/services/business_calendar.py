"""
Business Calendar

Shifts collection timestamps onto business days.
A business day is any day that is not a Saturday, not a Sunday and not a
Dutch national holiday (or an extra closing day configured for the office).

Every scheduled step time passes through next_business_day() before it is
persisted, so collection timelines never land on a day the debtor or the
court registry cannot be reached.
"""
import os
from datetime import date, datetime, timedelta
from functools import lru_cache
from typing import FrozenSet, Union

from dateutil.easter import easter


SATURDAY = 5
SUNDAY = 6

# Koningsdag moved from 30 April to 27 April with the 2014 accession
KINGS_DAY_FROM_YEAR = 2014


def _parse_extra_holidays(raw: str) -> FrozenSet[date]:
    days = set()
    for entry in raw.split(","):
        entry = entry.strip()
        if entry:
            days.add(date.fromisoformat(entry))
    return frozenset(days)


# Extra closing days, e.g. "2026-12-31,2027-01-02"
EXTRA_HOLIDAYS = _parse_extra_holidays(os.getenv("COLLECTION_EXTRA_HOLIDAYS", ""))


def _kings_day(year: int) -> date:
    if year >= KINGS_DAY_FROM_YEAR:
        day = date(year, 4, 27)
    else:
        day = date(year, 4, 30)
    # Celebrated a day early when it falls on a Sunday
    if day.weekday() == SUNDAY:
        day -= timedelta(days=1)
    return day


@lru_cache(maxsize=64)
def holidays_for_year(year: int) -> FrozenSet[date]:
    """Dutch national holidays for a calendar year."""
    easter_sunday = easter(year)
    return frozenset({
        date(year, 1, 1),                          # Nieuwjaarsdag
        easter_sunday - timedelta(days=2),         # Goede Vrijdag
        easter_sunday,                             # Eerste Paasdag
        easter_sunday + timedelta(days=1),         # Tweede Paasdag
        _kings_day(year),                          # Koningsdag / Koninginnedag
        date(year, 5, 5),                          # Bevrijdingsdag
        easter_sunday + timedelta(days=39),        # Hemelvaartsdag
        easter_sunday + timedelta(days=49),        # Eerste Pinksterdag
        easter_sunday + timedelta(days=50),        # Tweede Pinksterdag
        date(year, 12, 25),                        # Eerste Kerstdag
        date(year, 12, 26),                        # Tweede Kerstdag
    })


def is_holiday(day: date) -> bool:
    """Check whether a date is a national holiday or a configured closing day."""
    return day in holidays_for_year(day.year) or day in EXTRA_HOLIDAYS


def is_business_day(day: Union[date, datetime]) -> bool:
    """Check whether a date (or the date part of a timestamp) is a business day."""
    if isinstance(day, datetime):
        day = day.date()
    return day.weekday() not in (SATURDAY, SUNDAY) and not is_holiday(day)


def next_business_day(moment: datetime) -> datetime:
    """
    Return the earliest timestamp >= moment that falls on a business day.

    Advances one whole day at a time, so the time of day is preserved.
    A moment that already falls on a business day is returned unchanged.
    """
    while not is_business_day(moment):
        moment = moment + timedelta(days=1)
    return moment
