from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from threading import Lock
from typing import Callable, Iterable, Iterator
from weakref import WeakValueDictionary
import logging
import math

from .conflicts import ConflictChecker
from .errors import (
    InvalidStateTransition,
    NotAuthorizedParty,
    ReservationNotFound,
    ResourceNotFound,
)
from .intervals import validate_window
from .models import (
    PARTY_ROLES,
    ROLE_REQUESTOR,
    STATUS_ACCEPTED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_REQUESTED,
    PersonalGoal,
    Reservation,
)
from .notifications import NotificationScheduler
from .settings import DEFAULT_CREDIT_BLOCK_MINUTES, EngineSettings
from .storage import ReservationStore, RewardLedger

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = (STATUS_REQUESTED, STATUS_ACCEPTED)


def credits_for_duration(duration_minutes: int, block_minutes: int = DEFAULT_CREDIT_BLOCK_MINUTES) -> int:
    """One time credit per started block of ``block_minutes``."""
    if duration_minutes <= 0:
        return 0
    return math.ceil(duration_minutes / block_minutes)


class ReservationLifecycle:
    """Move reservations through requested -> accepted -> completed, or cancelled.

    Every transition that reads and then writes a reservation holds the lock of
    the reservation's resource, so two overlapping accepts can never both pass
    the conflict check. Credits and notifications for a completion are issued
    after the completed status has been written.
    """

    def __init__(
        self,
        store: ReservationStore,
        checker: ConflictChecker,
        scheduler: NotificationScheduler,
        ledger: RewardLedger | None = None,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.checker = checker
        self.scheduler = scheduler
        self.ledger: RewardLedger = ledger or store
        self.settings = settings or EngineSettings()
        self.clock: Callable[[], datetime] = clock or datetime.now
        # Entries vanish once no thread holds or waits on the lock.
        self._locks: WeakValueDictionary[int, Lock] = WeakValueDictionary()
        self._locks_guard = Lock()

    @contextmanager
    def _resource_lock(self, resource_id: int) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.get(resource_id)
            if lock is None:
                lock = Lock()
                self._locks[resource_id] = lock
        with lock:
            yield

    def get(self, reservation_id: int) -> Reservation:
        reservation = self.store.get_reservation(reservation_id)
        if reservation is None:
            raise ReservationNotFound(f"Reservation #{reservation_id} not found")
        return reservation

    def list_for_resource(self, resource_id: int, statuses: Iterable[str] | None = None) -> list[Reservation]:
        return self.store.get_reservations_by_resource(resource_id, statuses)

    def create(
        self,
        requestor_id: int,
        resource_id: int,
        start: datetime,
        end: datetime,
        title: str = "",
    ) -> Reservation:
        validate_window(start, end)

        resource = self.store.get_resource(resource_id)
        if resource is None:
            raise ResourceNotFound(f"Resource {resource_id} not found")
        if resource.owner_id == requestor_id:
            raise NotAuthorizedParty(requestor_id, f"own resource {resource_id}")

        # Requests hold no lock on the timeline; accept() re-validates.
        self.checker.check(resource_id, start, end)

        now = self.clock()
        created = self.store.save_reservation(
            Reservation(
                requestor_id=requestor_id,
                resource_id=resource_id,
                provider_id=resource.owner_id,
                window_start=start,
                window_end=end,
                status=STATUS_REQUESTED,
                title=title,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info("Reservation #%s requested on resource %s by user %s", created.id, resource_id, requestor_id)

        self._notify(
            created,
            created.provider_id,
            "reservation_requested",
            "New Reservation Request",
            f'A new reservation was requested: "{created.title}" on {_format_window(created)}.',
            now,
        )
        return created

    def accept(self, reservation_id: int, acting_user_id: int | None = None) -> Reservation:
        reservation = self.get(reservation_id)
        with self._resource_lock(reservation.resource_id):
            current = self.get(reservation_id)
            if acting_user_id is not None and acting_user_id != current.provider_id:
                raise NotAuthorizedParty(acting_user_id, f"reservation #{reservation_id}")
            if current.status != STATUS_REQUESTED:
                raise InvalidStateTransition(current.id, current.status, "accept")

            # Raises SlotConflict and leaves the reservation requested.
            self.checker.check(current.resource_id, current.window_start, current.window_end)

            now = self.clock()
            accepted = self.store.save_reservation(replace(current, status=STATUS_ACCEPTED, updated_at=now))

        logger.info("Reservation #%s accepted", accepted.id)
        self._notify(
            accepted,
            accepted.requestor_id,
            "reservation_accepted",
            "Reservation Accepted",
            f'Your reservation "{accepted.title}" on {_format_window(accepted)} was accepted.',
            now,
        )
        self._schedule_reminders(accepted, now)
        return accepted

    def confirm_completion(
        self,
        reservation_id: int,
        party_role: str,
        acting_user_id: int | None = None,
    ) -> Reservation:
        if party_role not in PARTY_ROLES:
            raise ValueError(f"party_role must be one of {', '.join(PARTY_ROLES)}")

        reservation = self.get(reservation_id)
        with self._resource_lock(reservation.resource_id):
            current = self.get(reservation_id)
            if acting_user_id is not None and current.party_id(party_role) != acting_user_id:
                raise NotAuthorizedParty(acting_user_id, f"reservation #{reservation_id} as {party_role}")
            if current.status != STATUS_ACCEPTED:
                raise InvalidStateTransition(current.id, current.status, "confirm completion of")

            flag = "requestor_confirmed" if party_role == ROLE_REQUESTOR else "provider_confirmed"
            if getattr(current, flag):
                return current

            now = self.clock()
            updated = replace(current, updated_at=now, **{flag: True})
            if updated.requestor_confirmed and updated.provider_confirmed:
                updated = replace(updated, status=STATUS_COMPLETED, completed_at=now)
            saved = self.store.save_reservation(updated)

        logger.info("Reservation #%s confirmed by %s", saved.id, party_role)
        if saved.status == STATUS_COMPLETED:
            self._on_completed(saved, now)
        return saved

    def cancel(self, reservation_id: int, reason: str | None = None, acting_user_id: int | None = None) -> Reservation:
        """Cancel a requested or accepted reservation; ``acting_user_id=None`` means the system."""
        reservation = self.get(reservation_id)
        with self._resource_lock(reservation.resource_id):
            current = self.get(reservation_id)
            if acting_user_id is not None and not current.is_participant(acting_user_id):
                raise NotAuthorizedParty(acting_user_id, f"reservation #{reservation_id}")
            if current.status not in CANCELLABLE_STATUSES:
                raise InvalidStateTransition(current.id, current.status, "cancel")

            now = self.clock()
            cancelled = self.store.save_reservation(
                replace(current, status=STATUS_CANCELLED, updated_at=now, cancelled_at=now, cancel_reason=reason)
            )

        logger.info("Reservation #%s cancelled: %s", cancelled.id, reason)
        if acting_user_id is None:
            recipients = [cancelled.requestor_id, cancelled.provider_id]
        else:
            recipients = [cancelled.other_party(acting_user_id)]
        for user_id in recipients:
            self._notify(
                cancelled,
                user_id,
                "reservation_cancelled",
                "Reservation Cancelled",
                f'The reservation "{cancelled.title}" on {_format_window(cancelled)} was cancelled.'
                + (f" Reason: {reason}" if reason else ""),
                now,
            )
        return cancelled

    def reschedule(
        self,
        reservation_id: int,
        start: datetime,
        end: datetime,
        acting_user_id: int | None = None,
    ) -> Reservation:
        validate_window(start, end)

        reservation = self.get(reservation_id)
        with self._resource_lock(reservation.resource_id):
            current = self.get(reservation_id)
            if acting_user_id is not None and not current.is_participant(acting_user_id):
                raise NotAuthorizedParty(acting_user_id, f"reservation #{reservation_id}")
            if current.status not in CANCELLABLE_STATUSES:
                raise InvalidStateTransition(current.id, current.status, "reschedule")

            self.checker.check(current.resource_id, start, end, exclude_reservation_id=current.id)

            now = self.clock()
            moved = self.store.save_reservation(replace(current, window_start=start, window_end=end, updated_at=now))

        logger.info("Reservation #%s moved to %s", moved.id, _format_window(moved))
        if moved.status == STATUS_ACCEPTED:
            self._schedule_reminders(moved, now)
        return moved

    def _on_completed(self, reservation: Reservation, now: datetime) -> None:
        credits = credits_for_duration(reservation.duration_minutes, self.settings.credit_block_minutes)
        for user_id in (reservation.requestor_id, reservation.provider_id):
            self.ledger.credit_user(user_id, credits)
            self._notify(
                reservation,
                user_id,
                "time_credits_earned",
                "Time Credits Earned",
                f'You\'ve earned {credits} time credits for completing "{reservation.title}".',
                now,
                credits=credits,
            )
            self._notify(
                reservation,
                user_id,
                "reservation_completed",
                "Reservation Completed",
                f'"{reservation.title}" has been completed. Please leave a review of your experience.',
                now,
            )
            self._notify(
                reservation,
                user_id,
                "follow_up_reminder",
                "Follow Up on Your Recent Reservation",
                f'It\'s been a while since "{reservation.title}". Would you like to send a thank you or book again?',
                now + self.settings.follow_up_delay,
            )

        goal = self._link_first_open_goal(reservation)
        logger.info(
            "Reservation #%s completed; %s credits each, goal linked: %s",
            reservation.id,
            credits,
            goal.id if goal is not None else None,
        )

    def _link_first_open_goal(self, reservation: Reservation) -> PersonalGoal | None:
        for goal in self.store.get_goals(reservation.requestor_id):
            if goal.is_open:
                return self.store.save_goal(replace(goal, reservation_id=reservation.id))
        return None

    def _schedule_reminders(self, reservation: Reservation, now: datetime) -> None:
        for offset in self.settings.reminder_offsets:
            fire_at = reservation.window_start - offset
            if fire_at <= now:
                continue
            hours = offset.total_seconds() / 3600
            label = f"{hours:g} hour" + ("" if hours == 1 else "s")
            for user_id in (reservation.requestor_id, reservation.provider_id):
                self._notify(
                    reservation,
                    user_id,
                    "reservation_reminder",
                    f"Reservation Reminder - {label}",
                    f'Your reservation "{reservation.title}" starts in {label}.',
                    fire_at,
                )

    def _notify(
        self,
        reservation: Reservation,
        user_id: int,
        kind: str,
        title: str,
        message: str,
        fire_at: datetime,
        **extra: object,
    ) -> None:
        payload = {
            "title": title,
            "message": message,
            "link": f"/reservations/{reservation.id}",
            "reservation_id": reservation.id,
            **extra,
        }
        self.scheduler.schedule(payload, fire_at, user_id=user_id, kind=kind)


def _format_window(reservation: Reservation) -> str:
    return (
        f"{reservation.window_start.isoformat(timespec='minutes')}"
        f" - {reservation.window_end.isoformat(timespec='minutes')}"
    )
