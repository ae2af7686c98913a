from __future__ import annotations

from datetime import date, datetime
from typing import Callable

from .availability import AvailabilityEditor, AvailabilityResolver
from .conflicts import ConflictChecker
from .intervals import Interval
from .lifecycle import ReservationLifecycle
from .models import Reservation
from .notifications import NotificationScheduler
from .settings import EngineSettings
from .storage import ReservationStore, RewardLedger


class ReservationEngine:
    """Wire the resolver, checker, scheduler and lifecycle over one store."""

    def __init__(
        self,
        store: ReservationStore,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] | None = None,
        ledger: RewardLedger | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or EngineSettings()
        self.clock: Callable[[], datetime] = clock or datetime.now
        self.resolver = AvailabilityResolver(store, self.settings)
        self.editor = AvailabilityEditor(store)
        self.checker = ConflictChecker(store, self.resolver)
        self.scheduler = NotificationScheduler(store, clock=self.clock)
        self.lifecycle = ReservationLifecycle(
            store,
            self.checker,
            self.scheduler,
            ledger=ledger,
            settings=self.settings,
            clock=self.clock,
        )

    def open_intervals(self, resource_id: int, target_date: date, open_world: bool | None = None) -> list[Interval]:
        return self.resolver.open_intervals(resource_id, target_date, open_world=open_world)

    def can_reserve(
        self,
        resource_id: int,
        start: datetime,
        end: datetime,
        exclude_reservation_id: int | None = None,
        open_world: bool | None = None,
    ) -> bool:
        return self.checker.can_reserve(resource_id, start, end, exclude_reservation_id, open_world)

    def find_conflict(
        self,
        resource_id: int,
        start: datetime,
        end: datetime,
        exclude_reservation_id: int | None = None,
    ) -> Reservation | None:
        return self.checker.find_conflict(resource_id, start, end, exclude_reservation_id)

    def create(self, requestor_id: int, resource_id: int, start: datetime, end: datetime, title: str = "") -> Reservation:
        return self.lifecycle.create(requestor_id, resource_id, start, end, title)

    def accept(self, reservation_id: int, acting_user_id: int | None = None) -> Reservation:
        return self.lifecycle.accept(reservation_id, acting_user_id)

    def confirm_completion(self, reservation_id: int, party_role: str, acting_user_id: int | None = None) -> Reservation:
        return self.lifecycle.confirm_completion(reservation_id, party_role, acting_user_id)

    def cancel(self, reservation_id: int, reason: str | None = None, acting_user_id: int | None = None) -> Reservation:
        return self.lifecycle.cancel(reservation_id, reason, acting_user_id)

    def reschedule(
        self,
        reservation_id: int,
        start: datetime,
        end: datetime,
        acting_user_id: int | None = None,
    ) -> Reservation:
        return self.lifecycle.reschedule(reservation_id, start, end, acting_user_id)
