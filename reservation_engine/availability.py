from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, time, timedelta
import logging

from .errors import InvalidWindow, NotAuthorizedParty, ResourceNotFound
from .holiday_calendar import holiday_blackouts
from .intervals import Interval, clip, day_bounds, merge_intervals, subtract
from .models import BlackoutPeriod, DateOverride, Resource, WeeklyTemplate, day_of_week
from .settings import EngineSettings
from .storage import ReservationStore

logger = logging.getLogger(__name__)


class AvailabilityResolver:
    """Derive a resource's open intervals from templates, overrides and blackouts.

    Precedence for a single date:

    1. A date override replaces the weekly templates for that date entirely.
       An override with ``is_available=False`` closes the date.
    2. Otherwise the active weekly templates for the weekday apply.
    3. Blackout periods are subtracted from whichever set was chosen.

    A resource with nothing configured is closed unless open-world mode is on.
    """

    def __init__(self, store: ReservationStore, settings: EngineSettings | None = None) -> None:
        self.store = store
        self.settings = settings or EngineSettings()

    def open_intervals(self, resource_id: int, target_date: date, open_world: bool | None = None) -> list[Interval]:
        bounds = day_bounds(target_date)
        base = self._base_intervals(resource_id, target_date, bounds, open_world)

        for cut in self._blackout_spans(resource_id, target_date, bounds):
            base = subtract(base, cut)
            if not base:
                break

        return merge_intervals(base)

    def open_intervals_between(
        self,
        resource_id: int,
        start_date: date,
        end_date: date,
        open_world: bool | None = None,
    ) -> dict[date, list[Interval]]:
        if start_date > end_date:
            raise ValueError("start_date must not be after end_date")

        result: dict[date, list[Interval]] = {}
        cursor = start_date
        while cursor <= end_date:
            result[cursor] = self.open_intervals(resource_id, cursor, open_world=open_world)
            cursor += timedelta(days=1)
        return result

    def is_unconfigured(self, resource_id: int) -> bool:
        return not self.store.get_weekly_templates(resource_id, active_only=True) and not self.store.get_date_overrides(resource_id)

    def _base_intervals(
        self,
        resource_id: int,
        target_date: date,
        bounds: Interval,
        open_world: bool | None,
    ) -> list[Interval]:
        overrides = self.store.get_date_overrides(resource_id, target_date, target_date)
        if overrides:
            override = overrides[-1]
            if not override.is_available:
                return []
            clipped = clip(override.interval(), bounds)
            return [clipped] if clipped is not None else []

        templates = self.store.get_weekly_templates(resource_id, active_only=True)
        if not templates:
            allow_open_world = self.settings.open_world_when_unconfigured if open_world is None else open_world
            if allow_open_world and self.is_unconfigured(resource_id):
                return [bounds]
            return []

        weekday = day_of_week(target_date)
        base: list[Interval] = []
        for template in templates:
            if template.day_of_week != weekday:
                continue
            clipped = clip(template.interval_on(target_date), bounds)
            if clipped is not None:
                base.append(clipped)
        return base

    def _blackout_spans(self, resource_id: int, target_date: date, bounds: Interval) -> list[Interval]:
        spans: list[Interval] = []
        for blackout in self.store.get_blackout_periods(resource_id, bounds.start, bounds.end):
            spans.extend(blackout.occurrences_touching(bounds))

        if self.settings.holiday_country:
            for blackout in holiday_blackouts(resource_id, self.settings.holiday_country, target_date, target_date):
                spans.append(blackout.interval())

        return spans


class AvailabilityEditor:
    """Owner-only mutations of a resource's availability data."""

    def __init__(self, store: ReservationStore) -> None:
        self.store = store

    def register_resource(self, resource: Resource) -> Resource:
        return self.store.save_resource(resource)

    def add_weekly_template(
        self,
        owner_id: int,
        resource_id: int,
        day_of_week: int,
        start_time: time,
        end_time: time,
    ) -> WeeklyTemplate:
        self._require_owner(owner_id, resource_id)
        template = WeeklyTemplate(resource_id=resource_id, day_of_week=day_of_week, start_time=start_time, end_time=end_time)

        # Compare on an arbitrary date with the right weekday; only times matter.
        reference = date(2000, 1, 2) + timedelta(days=day_of_week)
        for existing in self.store.get_weekly_templates(resource_id, active_only=True):
            if existing.day_of_week != day_of_week:
                continue
            if existing.interval_on(reference).overlaps(template.interval_on(reference)):
                raise InvalidWindow(f"Template overlaps existing weekly template #{existing.id}.")

        saved = self.store.save_weekly_template(template)
        logger.info("Added weekly template #%s for resource %s", saved.id, resource_id)
        return saved

    def deactivate_weekly_template(self, owner_id: int, resource_id: int, template_id: int) -> WeeklyTemplate:
        self._require_owner(owner_id, resource_id)
        for template in self.store.get_weekly_templates(resource_id):
            if template.id == template_id:
                return self.store.save_weekly_template(replace(template, active=False))
        raise LookupError(f"Weekly template #{template_id} not found for resource {resource_id}")

    def set_date_override(
        self,
        owner_id: int,
        resource_id: int,
        target_date: date,
        start_time: time,
        end_time: time,
        is_available: bool = True,
        note: str | None = None,
    ) -> DateOverride:
        self._require_owner(owner_id, resource_id)
        override = DateOverride(
            resource_id=resource_id,
            date=target_date,
            start_time=start_time,
            end_time=end_time,
            is_available=is_available,
            note=note,
        )
        return self.store.save_date_override(override)

    def add_blackout_period(
        self,
        owner_id: int,
        resource_id: int,
        start: datetime,
        end: datetime,
        reason: str | None = None,
        recurring: bool = False,
    ) -> BlackoutPeriod:
        self._require_owner(owner_id, resource_id)
        blackout = BlackoutPeriod(resource_id=resource_id, start=start, end=end, reason=reason, recurring=recurring)
        return self.store.save_blackout_period(blackout)

    def remove_blackout_period(self, owner_id: int, resource_id: int, blackout_id: int) -> None:
        self._require_owner(owner_id, resource_id)
        if not any(blackout.id == blackout_id for blackout in self.store.get_blackout_periods(resource_id)):
            raise LookupError(f"Blackout period #{blackout_id} not found for resource {resource_id}")
        self.store.delete_blackout_period(blackout_id)

    def _require_owner(self, user_id: int, resource_id: int) -> Resource:
        resource = self.store.get_resource(resource_id)
        if resource is None:
            raise ResourceNotFound(f"Resource {resource_id} not found")
        if resource.owner_id != user_id:
            raise NotAuthorizedParty(user_id, f"resource {resource_id}")
        return resource
