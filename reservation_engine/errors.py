from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Reservation


class ReservationRejected(ValueError):
    """Base class for expected, recoverable business rejections."""

    kind = "rejected"


class InvalidWindow(ReservationRejected):
    kind = "invalid_window"


class OutsideAvailability(ReservationRejected):
    kind = "outside_availability"

    def __init__(self, resource_id: int, start: datetime, end: datetime) -> None:
        super().__init__(
            f"Resource {resource_id} is not open for the whole window "
            f"{start.isoformat(timespec='minutes')} - {end.isoformat(timespec='minutes')}."
        )
        self.resource_id = resource_id
        self.start = start
        self.end = end


class SlotConflict(ReservationRejected):
    kind = "slot_conflict"

    def __init__(self, conflicting: "Reservation") -> None:
        super().__init__(
            f"Window overlaps reservation #{conflicting.id} "
            f"({conflicting.window_start.isoformat(timespec='minutes')} - "
            f"{conflicting.window_end.isoformat(timespec='minutes')})."
        )
        self.conflicting = conflicting

    @property
    def conflicting_id(self) -> int | None:
        return self.conflicting.id

    @property
    def conflicting_window(self) -> tuple[datetime, datetime]:
        return self.conflicting.window_start, self.conflicting.window_end


class InvalidStateTransition(ReservationRejected):
    kind = "invalid_state_transition"

    def __init__(self, reservation_id: int | None, status: str, action: str) -> None:
        super().__init__(f"Cannot {action} reservation #{reservation_id} while it is {status}.")
        self.reservation_id = reservation_id
        self.status = status
        self.action = action


class NotAuthorizedParty(ReservationRejected):
    kind = "not_authorized_party"

    def __init__(self, user_id: int | None, target: str) -> None:
        super().__init__(f"User {user_id} is not allowed to act on {target}.")
        self.user_id = user_id
        self.target = target


class ReservationNotFound(LookupError):
    kind = "not_found"


class ResourceNotFound(LookupError):
    kind = "not_found"


class ReservationStorageError(RuntimeError):
    pass
