from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Callable

from .models import ScheduledNotification
from .storage import ReservationStore


class NotificationScheduler:
    """Record when notifications become due. Delivery belongs to the caller."""

    def __init__(self, store: ReservationStore, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self.clock: Callable[[], datetime] = clock or datetime.now

    def schedule(
        self,
        payload: dict[str, Any],
        fire_at: datetime,
        user_id: int | None = None,
        kind: str = "generic",
    ) -> ScheduledNotification:
        notification = ScheduledNotification(
            fire_at=fire_at,
            payload=dict(payload),
            user_id=user_id,
            kind=kind,
            created_at=self.clock(),
        )
        return self.store.add_notification(notification)

    def due_as_of(self, now: datetime | None = None) -> list[ScheduledNotification]:
        effective_now = now or self.clock()
        if effective_now.tzinfo is not None:
            raise ValueError("now must be a local time without a UTC offset")
        due = [row for row in self.store.list_notifications() if not row.delivered and row.fire_at <= effective_now]
        return sorted(due, key=lambda row: (row.fire_at, row.id or 0))

    def pending_for_user(self, user_id: int) -> list[ScheduledNotification]:
        pending = [row for row in self.store.list_notifications() if row.user_id == user_id and not row.delivered]
        return sorted(pending, key=lambda row: (row.fire_at, row.id or 0))

    def mark_delivered(self, notification_id: int) -> ScheduledNotification:
        for row in self.store.list_notifications():
            if row.id == notification_id:
                return self.store.save_notification(replace(row, delivered=True))
        raise LookupError(f"Notification #{notification_id} not found")
