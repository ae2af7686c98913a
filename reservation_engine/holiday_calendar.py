from __future__ import annotations

from datetime import date, datetime, time, timedelta

import holidays as pyholidays

from .models import BlackoutPeriod

_HOLIDAY_CACHE: dict[tuple[str, int], dict[date, str]] = {}


def public_holidays(country: str, year: int) -> dict[date, str]:
    key = (country.upper(), year)
    if key not in _HOLIDAY_CACHE:
        holiday_map = pyholidays.country_holidays(key[0], years=[year])
        _HOLIDAY_CACHE[key] = {day: str(name) for day, name in holiday_map.items()}
    return _HOLIDAY_CACHE[key]


def holiday_blackouts(resource_id: int, country: str, start_date: date, end_date: date) -> list[BlackoutPeriod]:
    """Full-day blackouts for every public holiday in [start_date, end_date]."""
    if start_date > end_date:
        raise ValueError("start_date must not be after end_date")

    blackouts: list[BlackoutPeriod] = []
    for year in range(start_date.year, end_date.year + 1):
        for day, name in sorted(public_holidays(country, year).items()):
            if not start_date <= day <= end_date:
                continue
            start = datetime.combine(day, time(0, 0))
            blackouts.append(
                BlackoutPeriod(
                    resource_id=resource_id,
                    start=start,
                    end=start + timedelta(days=1),
                    reason=f"Public holiday: {name}",
                )
            )
    return blackouts
