from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from itertools import count
from threading import RLock
from typing import Iterable, Protocol, TypeVar

from .models import (
    BlackoutPeriod,
    DateOverride,
    PersonalGoal,
    Reservation,
    Resource,
    ScheduledNotification,
    WeeklyTemplate,
)

T = TypeVar("T")


class RewardLedger(Protocol):
    def credit_user(self, user_id: int, amount: int) -> int: ...


class ReservationStore(RewardLedger, Protocol):
    """Everything the engine needs from persistence, keyed by resource id."""

    def get_resource(self, resource_id: int) -> Resource | None: ...

    def save_resource(self, resource: Resource) -> Resource: ...

    def get_weekly_templates(self, resource_id: int, active_only: bool = False) -> list[WeeklyTemplate]: ...

    def save_weekly_template(self, template: WeeklyTemplate) -> WeeklyTemplate: ...

    def get_date_overrides(
        self,
        resource_id: int,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[DateOverride]: ...

    def save_date_override(self, override: DateOverride) -> DateOverride: ...

    def get_blackout_periods(
        self,
        resource_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[BlackoutPeriod]: ...

    def save_blackout_period(self, blackout: BlackoutPeriod) -> BlackoutPeriod: ...

    def delete_blackout_period(self, blackout_id: int) -> None: ...

    def get_reservation(self, reservation_id: int) -> Reservation | None: ...

    def get_reservations_by_resource(
        self,
        resource_id: int,
        statuses: Iterable[str] | None = None,
    ) -> list[Reservation]: ...

    def save_reservation(self, reservation: Reservation) -> Reservation: ...

    def get_goals(self, user_id: int) -> list[PersonalGoal]: ...

    def save_goal(self, goal: PersonalGoal) -> PersonalGoal: ...

    def add_notification(self, notification: ScheduledNotification) -> ScheduledNotification: ...

    def save_notification(self, notification: ScheduledNotification) -> ScheduledNotification: ...

    def list_notifications(self) -> list[ScheduledNotification]: ...

    def get_balance(self, user_id: int) -> int: ...


def filter_overrides(
    overrides: Iterable[DateOverride],
    start_date: date | None,
    end_date: date | None,
) -> list[DateOverride]:
    selected = []
    for override in overrides:
        if start_date is not None and override.date < start_date:
            continue
        if end_date is not None and override.date > end_date:
            continue
        selected.append(override)
    return sorted(selected, key=lambda item: item.date)


def filter_blackouts(
    blackouts: Iterable[BlackoutPeriod],
    start: datetime | None,
    end: datetime | None,
) -> list[BlackoutPeriod]:
    """Keep blackouts touching the range; recurring ones are always kept."""
    selected = []
    for blackout in blackouts:
        if not blackout.recurring:
            if start is not None and blackout.end <= start:
                continue
            if end is not None and blackout.start >= end:
                continue
        elif end is not None and blackout.start >= end:
            continue
        selected.append(blackout)
    return selected


def filter_reservations(reservations: Iterable[Reservation], statuses: Iterable[str] | None) -> list[Reservation]:
    wanted = set(statuses) if statuses is not None else None
    selected = [row for row in reservations if wanted is None or row.status in wanted]
    return sorted(selected, key=lambda row: (row.window_start, row.id or 0))


class InMemoryReservationStore:
    """Dictionary-backed store used by tests and embedded callers."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._ids = {name: count(1) for name in ("template", "override", "blackout", "reservation", "goal", "notification")}
        self._resources: dict[int, Resource] = {}
        self._templates: dict[int, WeeklyTemplate] = {}
        self._overrides: dict[int, DateOverride] = {}
        self._blackouts: dict[int, BlackoutPeriod] = {}
        self._reservations: dict[int, Reservation] = {}
        self._goals: dict[int, PersonalGoal] = {}
        self._notifications: dict[int, ScheduledNotification] = {}
        self._balances: dict[int, int] = {}

    def _next_id(self, name: str) -> int:
        return next(self._ids[name])

    def _snapshot(self, table: dict[int, T]) -> list[T]:
        # Copy under the lock; writers may resize the dict at any time.
        with self._lock:
            return list(table.values())

    def get_resource(self, resource_id: int) -> Resource | None:
        with self._lock:
            return self._resources.get(resource_id)

    def save_resource(self, resource: Resource) -> Resource:
        with self._lock:
            self._resources[resource.id] = resource
        return resource

    def get_weekly_templates(self, resource_id: int, active_only: bool = False) -> list[WeeklyTemplate]:
        rows = [row for row in self._snapshot(self._templates) if row.resource_id == resource_id]
        if active_only:
            rows = [row for row in rows if row.active]
        return sorted(rows, key=lambda row: (row.day_of_week, row.start_time))

    def save_weekly_template(self, template: WeeklyTemplate) -> WeeklyTemplate:
        with self._lock:
            if template.id is None:
                template = replace(template, id=self._next_id("template"))
            self._templates[template.id] = template
        return template

    def get_date_overrides(
        self,
        resource_id: int,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[DateOverride]:
        rows = [row for row in self._snapshot(self._overrides) if row.resource_id == resource_id]
        return filter_overrides(rows, start_date, end_date)

    def save_date_override(self, override: DateOverride) -> DateOverride:
        with self._lock:
            for existing in list(self._overrides.values()):
                if existing.resource_id == override.resource_id and existing.date == override.date and existing.id != override.id:
                    del self._overrides[existing.id]
            if override.id is None:
                override = replace(override, id=self._next_id("override"))
            self._overrides[override.id] = override
        return override

    def get_blackout_periods(
        self,
        resource_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[BlackoutPeriod]:
        rows = [row for row in self._snapshot(self._blackouts) if row.resource_id == resource_id]
        return filter_blackouts(rows, start, end)

    def save_blackout_period(self, blackout: BlackoutPeriod) -> BlackoutPeriod:
        with self._lock:
            if blackout.id is None:
                blackout = replace(blackout, id=self._next_id("blackout"))
            self._blackouts[blackout.id] = blackout
        return blackout

    def delete_blackout_period(self, blackout_id: int) -> None:
        with self._lock:
            self._blackouts.pop(blackout_id, None)

    def get_reservation(self, reservation_id: int) -> Reservation | None:
        with self._lock:
            return self._reservations.get(reservation_id)

    def get_reservations_by_resource(
        self,
        resource_id: int,
        statuses: Iterable[str] | None = None,
    ) -> list[Reservation]:
        rows = [row for row in self._snapshot(self._reservations) if row.resource_id == resource_id]
        return filter_reservations(rows, statuses)

    def save_reservation(self, reservation: Reservation) -> Reservation:
        with self._lock:
            if reservation.id is None:
                reservation = replace(reservation, id=self._next_id("reservation"))
            self._reservations[reservation.id] = reservation
        return reservation

    def get_goals(self, user_id: int) -> list[PersonalGoal]:
        rows = [row for row in self._snapshot(self._goals) if row.user_id == user_id]
        return sorted(rows, key=lambda row: row.id or 0)

    def save_goal(self, goal: PersonalGoal) -> PersonalGoal:
        with self._lock:
            if goal.id is None:
                goal = replace(goal, id=self._next_id("goal"))
            self._goals[goal.id] = goal
        return goal

    def add_notification(self, notification: ScheduledNotification) -> ScheduledNotification:
        with self._lock:
            notification = replace(notification, id=self._next_id("notification"))
            self._notifications[notification.id] = notification
        return notification

    def save_notification(self, notification: ScheduledNotification) -> ScheduledNotification:
        if notification.id is None:
            return self.add_notification(notification)
        with self._lock:
            self._notifications[notification.id] = notification
        return notification

    def list_notifications(self) -> list[ScheduledNotification]:
        return sorted(self._snapshot(self._notifications), key=lambda row: row.id or 0)

    def credit_user(self, user_id: int, amount: int) -> int:
        with self._lock:
            self._balances[user_id] = self._balances.get(user_id, 0) + amount
            return self._balances[user_id]

    def get_balance(self, user_id: int) -> int:
        with self._lock:
            return self._balances.get(user_id, 0)
