from .availability import AvailabilityEditor, AvailabilityResolver
from .conflicts import ConflictChecker
from .engine import ReservationEngine
from .errors import (
	InvalidStateTransition,
	InvalidWindow,
	NotAuthorizedParty,
	OutsideAvailability,
	ReservationNotFound,
	ReservationRejected,
	ReservationStorageError,
	ResourceNotFound,
	SlotConflict,
)
from .intervals import Interval, has_time_overlap, merge_intervals, split_by_day, subtract
from .lifecycle import ReservationLifecycle, credits_for_duration
from .models import (
	BlackoutPeriod,
	DateOverride,
	PersonalGoal,
	Reservation,
	Resource,
	ScheduledNotification,
	WeeklyTemplate,
)
from .notifications import NotificationScheduler
from .settings import EngineSettings, load_settings
from .storage import InMemoryReservationStore, ReservationStore, RewardLedger
from .yaml_store import YamlReservationStore

__all__ = [
	"AvailabilityEditor",
	"AvailabilityResolver",
	"ConflictChecker",
	"ReservationEngine",
	"InvalidStateTransition",
	"InvalidWindow",
	"NotAuthorizedParty",
	"OutsideAvailability",
	"ReservationNotFound",
	"ReservationRejected",
	"ReservationStorageError",
	"ResourceNotFound",
	"SlotConflict",
	"Interval",
	"has_time_overlap",
	"merge_intervals",
	"split_by_day",
	"subtract",
	"ReservationLifecycle",
	"credits_for_duration",
	"BlackoutPeriod",
	"DateOverride",
	"PersonalGoal",
	"Reservation",
	"Resource",
	"ScheduledNotification",
	"WeeklyTemplate",
	"NotificationScheduler",
	"EngineSettings",
	"load_settings",
	"InMemoryReservationStore",
	"ReservationStore",
	"RewardLedger",
	"YamlReservationStore",
]
