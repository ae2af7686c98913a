from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Iterable, TypeVar
import shutil

import yaml

from .errors import ReservationStorageError
from .models import (
    BlackoutPeriod,
    DateOverride,
    PersonalGoal,
    Reservation,
    Resource,
    ScheduledNotification,
    WeeklyTemplate,
)
from .storage import filter_blackouts, filter_overrides, filter_reservations

T = TypeVar("T")


class YamlReservationStore:
    """File-backed store: one YAML list per record type plus an append-only event log."""

    def __init__(self, base_dir: str | Path = "data") -> None:
        self.base_dir = Path(base_dir)
        self.resources_file = self.base_dir / "resources.yaml"
        self.templates_file = self.base_dir / "weekly_templates.yaml"
        self.overrides_file = self.base_dir / "date_overrides.yaml"
        self.blackouts_file = self.base_dir / "blackout_periods.yaml"
        self.reservations_file = self.base_dir / "reservations.yaml"
        self.goals_file = self.base_dir / "goals.yaml"
        self.notifications_file = self.base_dir / "notifications.yaml"
        self.balances_file = self.base_dir / "credit_balances.yaml"
        self.log_file = self.base_dir / "reservation_events.yaml"
        self._lock = RLock()
        self._ensure_files()

    def _data_files(self) -> tuple[Path, ...]:
        return (
            self.resources_file,
            self.templates_file,
            self.overrides_file,
            self.blackouts_file,
            self.reservations_file,
            self.goals_file,
            self.notifications_file,
            self.balances_file,
            self.log_file,
        )

    def _ensure_files(self) -> None:
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            for path in self._data_files():
                if not path.exists():
                    path.write_text("[]\n", encoding="utf-8")
        except OSError as error:
            raise ReservationStorageError(f"Failed to prepare data directory: {self.base_dir}") from error

    def _read_yaml_list(self, path: Path) -> list[dict[str, Any]]:
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            path.write_text("[]\n", encoding="utf-8")
            return []
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
            self._recover_corrupted_yaml(path, error)
            return []

        if payload is None:
            return []
        if not isinstance(payload, list):
            self._recover_corrupted_yaml(path, ValueError("top-level YAML is not a list"))
            return []

        sanitized: list[dict[str, Any]] = []
        for index, row in enumerate(payload):
            if isinstance(row, dict):
                sanitized.append(row)
            elif path != self.log_file:
                self._log_event(
                    "YAML_ROW_SKIPPED",
                    {
                        "file": str(path.name),
                        "index": index,
                        "reason": "row is not a mapping",
                    },
                )
        return sanitized

    def _write_yaml_list(self, path: Path, rows: list[dict[str, Any]]) -> None:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            temp_path.write_text(yaml.safe_dump(rows, allow_unicode=True, sort_keys=False), encoding="utf-8")
            temp_path.replace(path)
        except OSError as error:
            raise ReservationStorageError(f"Failed to write YAML file: {path}") from error
        finally:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)

    def _recover_corrupted_yaml(self, path: Path, error: Exception) -> None:
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        backup_path = path.with_name(f"{path.stem}.corrupt.{timestamp}{path.suffix}")
        try:
            if path.exists():
                shutil.copy2(path, backup_path)
        except OSError:
            pass

        path.write_text("[]\n", encoding="utf-8")
        if path != self.log_file:
            self._log_event(
                "YAML_RECOVERED",
                {
                    "file": str(path.name),
                    "backup": str(backup_path.name),
                    "reason": str(error),
                },
            )

    def _log_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        timestamp = (event_time or datetime.now()).isoformat(timespec="seconds")
        with self._lock:
            events = self._read_yaml_list(self.log_file)
            events.append({"event_time": timestamp, "event_type": event_type, "payload": payload})
            self._write_yaml_list(self.log_file, events)

    def get_events(self) -> list[dict[str, Any]]:
        return self._read_yaml_list(self.log_file)

    def _load(self, path: Path, parse: Callable[[dict[str, Any]], T]) -> list[T]:
        records: list[T] = []
        for index, row in enumerate(self._read_yaml_list(path)):
            try:
                records.append(parse(row))
            except (KeyError, TypeError, ValueError) as error:
                self._log_event(
                    "YAML_ROW_SKIPPED",
                    {"file": str(path.name), "index": index, "reason": str(error)},
                )
        return records

    def _upsert(self, path: Path, record: Any, log_type: str | None = None) -> Any:
        """Insert or replace ``record`` by id, assigning the next id when missing."""
        with self._lock:
            rows = self._read_yaml_list(path)
            if record.id is None:
                next_id = max((int(row.get("id") or 0) for row in rows), default=0) + 1
                record = replace(record, id=next_id)

            payload = record.to_dict()
            for index, row in enumerate(rows):
                if row.get("id") == record.id:
                    rows[index] = payload
                    break
            else:
                rows.append(payload)
            self._write_yaml_list(path, rows)
            if log_type is not None:
                self._log_event(log_type, payload)
        return record

    def get_resource(self, resource_id: int) -> Resource | None:
        for resource in self._load(self.resources_file, Resource.from_dict):
            if resource.id == resource_id:
                return resource
        return None

    def save_resource(self, resource: Resource) -> Resource:
        return self._upsert(self.resources_file, resource, "RESOURCE_SAVED")

    def get_weekly_templates(self, resource_id: int, active_only: bool = False) -> list[WeeklyTemplate]:
        rows = [row for row in self._load(self.templates_file, WeeklyTemplate.from_dict) if row.resource_id == resource_id]
        if active_only:
            rows = [row for row in rows if row.active]
        return sorted(rows, key=lambda row: (row.day_of_week, row.start_time))

    def save_weekly_template(self, template: WeeklyTemplate) -> WeeklyTemplate:
        return self._upsert(self.templates_file, template, "WEEKLY_TEMPLATE_SAVED")

    def get_date_overrides(
        self,
        resource_id: int,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[DateOverride]:
        rows = [row for row in self._load(self.overrides_file, DateOverride.from_dict) if row.resource_id == resource_id]
        return filter_overrides(rows, start_date, end_date)

    def save_date_override(self, override: DateOverride) -> DateOverride:
        with self._lock:
            rows = self._read_yaml_list(self.overrides_file)
            kept = [
                row
                for row in rows
                if not (
                    int(row.get("resource_id", -1)) == override.resource_id
                    and str(row.get("date")) == override.date.isoformat()
                    and row.get("id") != override.id
                )
            ]
            if len(kept) != len(rows):
                self._write_yaml_list(self.overrides_file, kept)
            return self._upsert(self.overrides_file, override, "DATE_OVERRIDE_SAVED")

    def get_blackout_periods(
        self,
        resource_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[BlackoutPeriod]:
        rows = [row for row in self._load(self.blackouts_file, BlackoutPeriod.from_dict) if row.resource_id == resource_id]
        return filter_blackouts(rows, start, end)

    def save_blackout_period(self, blackout: BlackoutPeriod) -> BlackoutPeriod:
        return self._upsert(self.blackouts_file, blackout, "BLACKOUT_SAVED")

    def delete_blackout_period(self, blackout_id: int) -> None:
        with self._lock:
            rows = self._read_yaml_list(self.blackouts_file)
            remaining = [row for row in rows if row.get("id") != blackout_id]
            if len(remaining) == len(rows):
                return
            self._write_yaml_list(self.blackouts_file, remaining)
            self._log_event("BLACKOUT_DELETED", {"id": blackout_id})

    def get_reservation(self, reservation_id: int) -> Reservation | None:
        for reservation in self._load(self.reservations_file, Reservation.from_dict):
            if reservation.id == reservation_id:
                return reservation
        return None

    def get_reservations_by_resource(
        self,
        resource_id: int,
        statuses: Iterable[str] | None = None,
    ) -> list[Reservation]:
        rows = [row for row in self._load(self.reservations_file, Reservation.from_dict) if row.resource_id == resource_id]
        return filter_reservations(rows, statuses)

    def save_reservation(self, reservation: Reservation) -> Reservation:
        with self._lock:
            previous = self.get_reservation(reservation.id) if reservation.id is not None else None
            if previous is None:
                event_type = "RESERVATION_CREATED"
            elif previous.status != reservation.status:
                event_type = f"RESERVATION_{reservation.status.upper()}"
            else:
                event_type = "RESERVATION_UPDATED"
            return self._upsert(self.reservations_file, reservation, event_type)

    def get_goals(self, user_id: int) -> list[PersonalGoal]:
        rows = [row for row in self._load(self.goals_file, PersonalGoal.from_dict) if row.user_id == user_id]
        return sorted(rows, key=lambda row: row.id or 0)

    def save_goal(self, goal: PersonalGoal) -> PersonalGoal:
        return self._upsert(self.goals_file, goal, "GOAL_SAVED")

    def add_notification(self, notification: ScheduledNotification) -> ScheduledNotification:
        return self._upsert(self.notifications_file, replace(notification, id=None), "NOTIFICATION_SCHEDULED")

    def save_notification(self, notification: ScheduledNotification) -> ScheduledNotification:
        return self._upsert(self.notifications_file, notification)

    def list_notifications(self) -> list[ScheduledNotification]:
        rows = self._load(self.notifications_file, ScheduledNotification.from_dict)
        return sorted(rows, key=lambda row: row.id or 0)

    def credit_user(self, user_id: int, amount: int) -> int:
        with self._lock:
            rows = self._read_yaml_list(self.balances_file)
            balance = amount
            for row in rows:
                if int(row.get("user_id", -1)) == user_id:
                    balance = int(row.get("balance") or 0) + amount
                    row["balance"] = balance
                    break
            else:
                rows.append({"user_id": user_id, "balance": balance})
            self._write_yaml_list(self.balances_file, rows)
            self._log_event("CREDITS_ISSUED", {"user_id": user_id, "amount": amount, "balance": balance})
        return balance

    def get_balance(self, user_id: int) -> int:
        for row in self._read_yaml_list(self.balances_file):
            if int(row.get("user_id", -1)) == user_id:
                return int(row.get("balance") or 0)
        return 0
