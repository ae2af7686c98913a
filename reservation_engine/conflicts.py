from __future__ import annotations

from datetime import datetime
import logging

from .availability import AvailabilityResolver
from .errors import OutsideAvailability, ReservationRejected, SlotConflict
from .intervals import covers, has_time_overlap, split_by_day, validate_window
from .models import BLOCKING_STATUSES, Reservation
from .storage import ReservationStore

logger = logging.getLogger(__name__)


class ConflictChecker:
    """Decide whether a window may be reserved on a resource.

    Checks run fresh on every call. Only accepted and completed reservations
    occupy the timeline; requested ones never block each other.
    """

    def __init__(self, store: ReservationStore, resolver: AvailabilityResolver) -> None:
        self.store = store
        self.resolver = resolver

    def find_conflict(
        self,
        resource_id: int,
        start: datetime,
        end: datetime,
        exclude_reservation_id: int | None = None,
    ) -> Reservation | None:
        validate_window(start, end)

        for reservation in self.store.get_reservations_by_resource(resource_id, BLOCKING_STATUSES):
            if exclude_reservation_id is not None and reservation.id == exclude_reservation_id:
                continue
            if has_time_overlap(start, end, reservation.window_start, reservation.window_end):
                return reservation
        return None

    def is_structurally_open(
        self,
        resource_id: int,
        start: datetime,
        end: datetime,
        open_world: bool | None = None,
    ) -> bool:
        for segment in split_by_day(start, end):
            open_intervals = self.resolver.open_intervals(resource_id, segment.start.date(), open_world=open_world)
            if not covers(open_intervals, segment.start, segment.end):
                return False
        return True

    def check(
        self,
        resource_id: int,
        start: datetime,
        end: datetime,
        exclude_reservation_id: int | None = None,
        open_world: bool | None = None,
    ) -> None:
        """Raise the first rejection that applies to the window, or return None."""
        validate_window(start, end)

        if not self.is_structurally_open(resource_id, start, end, open_world=open_world):
            raise OutsideAvailability(resource_id, start, end)

        conflict = self.find_conflict(resource_id, start, end, exclude_reservation_id)
        if conflict is not None:
            logger.info("Window on resource %s conflicts with reservation #%s", resource_id, conflict.id)
            raise SlotConflict(conflict)

    def can_reserve(
        self,
        resource_id: int,
        start: datetime,
        end: datetime,
        exclude_reservation_id: int | None = None,
        open_world: bool | None = None,
    ) -> bool:
        try:
            self.check(resource_id, start, end, exclude_reservation_id, open_world)
        except ReservationRejected:
            return False
        return True
