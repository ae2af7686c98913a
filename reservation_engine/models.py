from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any
import math

from .errors import InvalidWindow
from .intervals import Interval, validate_window

STATUS_REQUESTED = "requested"
STATUS_ACCEPTED = "accepted"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
RESERVATION_STATUSES = (STATUS_REQUESTED, STATUS_ACCEPTED, STATUS_COMPLETED, STATUS_CANCELLED)
# Statuses whose windows occupy the resource timeline.
BLOCKING_STATUSES = (STATUS_ACCEPTED, STATUS_COMPLETED)

ROLE_REQUESTOR = "requestor"
ROLE_PROVIDER = "provider"
PARTY_ROLES = (ROLE_REQUESTOR, ROLE_PROVIDER)

RESOURCE_PROPERTY = "property"
RESOURCE_PERSON = "person"

GOAL_PLANNED = "planned"
GOAL_IN_PROGRESS = "in_progress"
GOAL_ACHIEVED = "achieved"

# 0 = Sunday.
DAY_NAMES = ("sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday")


def day_of_week(target_date: date) -> int:
    return (target_date.weekday() + 1) % 7


def _format_time(value: time) -> str:
    return value.strftime("%H:%M")


def _parse_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, int):
        # YAML 1.1 reads unquoted HH:MM as sexagesimal minutes.
        return time(value // 60, value % 60)
    return time.fromisoformat(str(value))


def _parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _optional_datetime(value: Any) -> datetime | None:
    return _parse_datetime(value) if value is not None else None


def _format_datetime(value: datetime | None) -> str | None:
    return value.isoformat(timespec="seconds") if value is not None else None


def _time_range_on(target_date: date, start_time: time, end_time: time) -> Interval:
    start = datetime.combine(target_date, start_time)
    if end_time == time(0, 0):
        end = datetime.combine(target_date + timedelta(days=1), time(0, 0))
    else:
        end = datetime.combine(target_date, end_time)
    return Interval(start, end)


def _validate_time_range(start_time: time, end_time: time) -> None:
    if end_time != time(0, 0) and start_time >= end_time:
        raise InvalidWindow("start_time must be earlier than end_time.")


@dataclass(frozen=True)
class Resource:
    id: int
    owner_id: int
    name: str = ""
    kind: str = RESOURCE_PERSON

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "owner_id": self.owner_id, "name": self.name, "kind": self.kind}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Resource":
        return Resource(
            id=int(data["id"]),
            owner_id=int(data["owner_id"]),
            name=str(data.get("name") or ""),
            kind=str(data.get("kind") or RESOURCE_PERSON),
        )


@dataclass(frozen=True)
class WeeklyTemplate:
    resource_id: int
    day_of_week: int
    start_time: time
    end_time: time
    active: bool = True
    id: int | None = None

    def __post_init__(self) -> None:
        if not 0 <= self.day_of_week <= 6:
            raise ValueError("day_of_week must be between 0 (Sunday) and 6 (Saturday).")
        _validate_time_range(self.start_time, self.end_time)

    def interval_on(self, target_date: date) -> Interval:
        return _time_range_on(target_date, self.start_time, self.end_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "resource_id": self.resource_id,
            "day_of_week": self.day_of_week,
            "start_time": _format_time(self.start_time),
            "end_time": _format_time(self.end_time),
            "active": self.active,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "WeeklyTemplate":
        return WeeklyTemplate(
            id=int(data["id"]) if data.get("id") is not None else None,
            resource_id=int(data["resource_id"]),
            day_of_week=int(data["day_of_week"]),
            start_time=_parse_time(data["start_time"]),
            end_time=_parse_time(data["end_time"]),
            active=bool(data.get("active", True)),
        )


@dataclass(frozen=True)
class DateOverride:
    resource_id: int
    date: date
    start_time: time
    end_time: time
    is_available: bool = True
    note: str | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        _validate_time_range(self.start_time, self.end_time)

    def interval(self) -> Interval:
        return _time_range_on(self.date, self.start_time, self.end_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "resource_id": self.resource_id,
            "date": self.date.isoformat(),
            "start_time": _format_time(self.start_time),
            "end_time": _format_time(self.end_time),
            "is_available": self.is_available,
            "note": self.note,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "DateOverride":
        return DateOverride(
            id=int(data["id"]) if data.get("id") is not None else None,
            resource_id=int(data["resource_id"]),
            date=_parse_date(data["date"]),
            start_time=_parse_time(data["start_time"]),
            end_time=_parse_time(data["end_time"]),
            is_available=bool(data.get("is_available", True)),
            note=(str(data["note"]) if data.get("note") is not None else None),
        )


@dataclass(frozen=True)
class BlackoutPeriod:
    resource_id: int
    start: datetime
    end: datetime
    reason: str | None = None
    recurring: bool = False
    id: int | None = None

    def __post_init__(self) -> None:
        validate_window(self.start, self.end, "Blackout")

    def interval(self) -> Interval:
        return Interval(self.start, self.end)

    def occurrences_touching(self, bounds: Interval) -> list[Interval]:
        """Return the spans of this blackout that intersect ``bounds``.

        Recurring blackouts repeat every 7 days from their first occurrence.
        """
        if not self.recurring:
            if self.interval().overlaps(bounds):
                return [self.interval()]
            return []

        week = timedelta(days=7)
        duration = self.end - self.start
        spans: list[Interval] = []
        first_week = max(0, (bounds.start - self.end) // week)
        shift = first_week
        while True:
            start = self.start + week * shift
            if start >= bounds.end:
                break
            span = Interval(start, start + duration)
            if span.overlaps(bounds):
                spans.append(span)
            shift += 1
        return spans

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "resource_id": self.resource_id,
            "start": self.start.isoformat(timespec="minutes"),
            "end": self.end.isoformat(timespec="minutes"),
            "reason": self.reason,
            "recurring": self.recurring,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "BlackoutPeriod":
        return BlackoutPeriod(
            id=int(data["id"]) if data.get("id") is not None else None,
            resource_id=int(data["resource_id"]),
            start=_parse_datetime(data["start"]),
            end=_parse_datetime(data["end"]),
            reason=(str(data["reason"]) if data.get("reason") is not None else None),
            recurring=bool(data.get("recurring", False)),
        )


@dataclass(frozen=True)
class Reservation:
    requestor_id: int
    resource_id: int
    provider_id: int
    window_start: datetime
    window_end: datetime
    status: str = STATUS_REQUESTED
    requestor_confirmed: bool = False
    provider_confirmed: bool = False
    title: str = ""
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None

    def __post_init__(self) -> None:
        validate_window(self.window_start, self.window_end)
        if self.status not in RESERVATION_STATUSES:
            raise ValueError(f"Unknown reservation status: {self.status}")

    @property
    def window(self) -> Interval:
        return Interval(self.window_start, self.window_end)

    @property
    def duration_minutes(self) -> int:
        # A started minute counts as a whole one.
        return math.ceil((self.window_end - self.window_start).total_seconds() / 60)

    @property
    def occupies_timeline(self) -> bool:
        return self.status in BLOCKING_STATUSES

    def party_id(self, role: str) -> int:
        if role == ROLE_REQUESTOR:
            return self.requestor_id
        if role == ROLE_PROVIDER:
            return self.provider_id
        raise ValueError(f"Unknown party role: {role}")

    def is_participant(self, user_id: int) -> bool:
        return user_id in (self.requestor_id, self.provider_id)

    def other_party(self, user_id: int) -> int:
        return self.provider_id if user_id == self.requestor_id else self.requestor_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "requestor_id": self.requestor_id,
            "resource_id": self.resource_id,
            "provider_id": self.provider_id,
            "window_start": self.window_start.isoformat(timespec="minutes"),
            "window_end": self.window_end.isoformat(timespec="minutes"),
            "status": self.status,
            "requestor_confirmed": self.requestor_confirmed,
            "provider_confirmed": self.provider_confirmed,
            "title": self.title,
            "created_at": _format_datetime(self.created_at),
            "updated_at": _format_datetime(self.updated_at),
            "completed_at": _format_datetime(self.completed_at),
            "cancelled_at": _format_datetime(self.cancelled_at),
            "cancel_reason": self.cancel_reason,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Reservation":
        return Reservation(
            id=int(data["id"]) if data.get("id") is not None else None,
            requestor_id=int(data["requestor_id"]),
            resource_id=int(data["resource_id"]),
            provider_id=int(data["provider_id"]),
            window_start=_parse_datetime(data["window_start"]),
            window_end=_parse_datetime(data["window_end"]),
            status=str(data.get("status", STATUS_REQUESTED)),
            requestor_confirmed=bool(data.get("requestor_confirmed", False)),
            provider_confirmed=bool(data.get("provider_confirmed", False)),
            title=str(data.get("title") or ""),
            created_at=_optional_datetime(data.get("created_at")),
            updated_at=_optional_datetime(data.get("updated_at")),
            completed_at=_optional_datetime(data.get("completed_at")),
            cancelled_at=_optional_datetime(data.get("cancelled_at")),
            cancel_reason=(str(data["cancel_reason"]) if data.get("cancel_reason") is not None else None),
        )


@dataclass(frozen=True)
class ScheduledNotification:
    fire_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    user_id: int | None = None
    kind: str = "generic"
    delivered: bool = False
    id: int | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "kind": self.kind,
            "payload": dict(self.payload),
            "fire_at": self.fire_at.isoformat(timespec="seconds"),
            "delivered": self.delivered,
            "created_at": _format_datetime(self.created_at),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ScheduledNotification":
        return ScheduledNotification(
            id=int(data["id"]) if data.get("id") is not None else None,
            user_id=int(data["user_id"]) if data.get("user_id") is not None else None,
            kind=str(data.get("kind") or "generic"),
            payload=dict(data.get("payload") or {}),
            fire_at=_parse_datetime(data["fire_at"]),
            delivered=bool(data.get("delivered", False)),
            created_at=_optional_datetime(data.get("created_at")),
        )


@dataclass(frozen=True)
class PersonalGoal:
    user_id: int
    title: str
    status: str = GOAL_PLANNED
    reservation_id: int | None = None
    id: int | None = None

    @property
    def is_open(self) -> bool:
        return self.status == GOAL_IN_PROGRESS and self.reservation_id is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "status": self.status,
            "reservation_id": self.reservation_id,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "PersonalGoal":
        return PersonalGoal(
            id=int(data["id"]) if data.get("id") is not None else None,
            user_id=int(data["user_id"]),
            title=str(data.get("title") or ""),
            status=str(data.get("status") or GOAL_PLANNED),
            reservation_id=int(data["reservation_id"]) if data.get("reservation_id") is not None else None,
        )
