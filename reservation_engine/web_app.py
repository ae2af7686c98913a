from __future__ import annotations

from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Any, Callable

from flask import Flask, jsonify, request

from .engine import ReservationEngine
from .errors import (
    InvalidStateTransition,
    NotAuthorizedParty,
    OutsideAvailability,
    ReservationNotFound,
    ReservationRejected,
    ReservationStorageError,
    ResourceNotFound,
    SlotConflict,
)
from .models import Reservation, Resource
from .settings import EngineSettings
from .yaml_store import YamlReservationStore

MAX_INTERVAL_DAYS = 31


def create_app(
    data_dir: str | Path = "data",
    now_provider: Callable[[], datetime] | None = None,
    settings: EngineSettings | None = None,
) -> Flask:
    app = Flask(__name__)
    store = YamlReservationStore(data_dir)
    clock: Callable[[], datetime] = now_provider or datetime.now
    engine = ReservationEngine(store, settings=settings, clock=clock)
    app.extensions["reservation_engine"] = engine

    @app.after_request
    def add_cors_headers(response: Any) -> Any:
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    @app.get("/api/resources/<int:resource_id>/open-intervals")
    def get_open_intervals(resource_id: int) -> Any:
        try:
            start_date = _parse_date(request.args.get("date")) if request.args.get("date") else clock().date()
            days = int(request.args.get("days", 1))
        except ValueError as error:
            return _bad_request(str(error))
        if not 1 <= days <= MAX_INTERVAL_DAYS:
            return _bad_request(f"days must be between 1 and {MAX_INTERVAL_DAYS}")

        by_day = engine.resolver.open_intervals_between(resource_id, start_date, start_date + timedelta(days=days - 1))
        return jsonify(
            {
                "ok": True,
                "resource_id": resource_id,
                "days": [
                    {"date": day.isoformat(), "intervals": [interval.to_dict() for interval in intervals]}
                    for day, intervals in by_day.items()
                ],
            }
        )

    @app.post("/api/resources")
    def register_resource() -> Any:
        payload = request.get_json(silent=True) or {}
        try:
            resource = Resource(
                id=int(payload["id"]),
                owner_id=int(payload["owner_id"]),
                name=str(payload.get("name", "")),
                kind=str(payload.get("kind", "person")),
            )
        except (KeyError, TypeError, ValueError):
            return _bad_request("id and owner_id are required integers.")

        existing = store.get_resource(resource.id)
        if existing is not None and existing.owner_id != resource.owner_id:
            return _rejection(NotAuthorizedParty(resource.owner_id, f"resource {resource.id}"))
        saved = engine.editor.register_resource(resource)
        return jsonify({"ok": True, "resource": saved.to_dict()}), 201

    @app.post("/api/resources/<int:resource_id>/weekly-templates")
    def add_weekly_template(resource_id: int) -> Any:
        payload = request.get_json(silent=True) or {}
        try:
            owner_id = int(payload["owner_id"])
            day = int(payload["day_of_week"])
            start_time = _parse_time(payload["start_time"])
            end_time = _parse_time(payload["end_time"])
        except (KeyError, TypeError, ValueError):
            return _bad_request("owner_id, day_of_week, start_time and end_time are required.")

        try:
            template = engine.editor.add_weekly_template(owner_id, resource_id, day, start_time, end_time)
        except (ReservationRejected, ResourceNotFound) as error:
            return _rejection(error)
        except ValueError as error:
            return _bad_request(str(error))
        return jsonify({"ok": True, "template": template.to_dict()}), 201

    @app.post("/api/resources/<int:resource_id>/date-overrides")
    def set_date_override(resource_id: int) -> Any:
        payload = request.get_json(silent=True) or {}
        try:
            owner_id = int(payload["owner_id"])
            target_date = _parse_date(payload["date"])
            start_time = _parse_time(payload.get("start_time", "00:00"))
            end_time = _parse_time(payload.get("end_time", "00:00"))
            is_available = _parse_bool(payload.get("is_available"), default=True)
        except (KeyError, TypeError, ValueError):
            return _bad_request("owner_id and date are required; is_available must be a boolean.")

        try:
            override = engine.editor.set_date_override(
                owner_id,
                resource_id,
                target_date,
                start_time,
                end_time,
                is_available=is_available,
                note=payload.get("note"),
            )
        except (ReservationRejected, ResourceNotFound) as error:
            return _rejection(error)
        return jsonify({"ok": True, "override": override.to_dict()}), 201

    @app.post("/api/resources/<int:resource_id>/blackouts")
    def add_blackout(resource_id: int) -> Any:
        payload = request.get_json(silent=True) or {}
        try:
            owner_id = int(payload["owner_id"])
            start = _parse_datetime(payload["start"])
            end = _parse_datetime(payload["end"])
            recurring = _parse_bool(payload.get("recurring"), default=False)
        except (KeyError, TypeError, ValueError):
            return _bad_request("owner_id, start and end are required; recurring must be a boolean.")

        try:
            blackout = engine.editor.add_blackout_period(
                owner_id,
                resource_id,
                start,
                end,
                reason=payload.get("reason"),
                recurring=recurring,
            )
        except (ReservationRejected, ResourceNotFound) as error:
            return _rejection(error)
        return jsonify({"ok": True, "blackout": blackout.to_dict()}), 201

    @app.post("/api/resources/<int:resource_id>/can-reserve")
    def can_reserve(resource_id: int) -> Any:
        payload = request.get_json(silent=True) or {}
        try:
            start = _parse_datetime(payload["start"])
            end = _parse_datetime(payload["end"])
            exclude = payload.get("exclude_reservation_id")
            exclude_id = int(exclude) if exclude is not None else None
        except (KeyError, TypeError, ValueError):
            return _bad_request("start and end are required ISO datetimes.")

        try:
            engine.checker.check(resource_id, start, end, exclude_reservation_id=exclude_id)
        except ReservationRejected as error:
            body = _rejection_body(error)
            body["ok"] = True
            body["can_reserve"] = False
            return jsonify(body)
        return jsonify({"ok": True, "can_reserve": True})

    @app.get("/api/reservations/<int:reservation_id>")
    def get_reservation(reservation_id: int) -> Any:
        try:
            reservation = engine.lifecycle.get(reservation_id)
        except ReservationNotFound as error:
            return _rejection(error)
        return jsonify({"ok": True, "reservation": _serialize_reservation(reservation)})

    @app.post("/api/reservations")
    def create_reservation() -> Any:
        payload = request.get_json(silent=True) or {}
        try:
            requestor_id = int(payload["requestor_id"])
            resource_id = int(payload["resource_id"])
            start = _parse_datetime(payload["start"])
            end = _parse_datetime(payload["end"])
        except (KeyError, TypeError, ValueError):
            return _bad_request("requestor_id, resource_id, start and end are required.")

        try:
            created = engine.create(requestor_id, resource_id, start, end, str(payload.get("title", "")))
        except (ReservationRejected, ResourceNotFound) as error:
            return _rejection(error)
        except ReservationStorageError:
            return jsonify({"ok": False, "error": "storage_error", "message": "Reservation could not be saved."}), 500
        return jsonify({"ok": True, "reservation": _serialize_reservation(created)}), 201

    @app.post("/api/reservations/<int:reservation_id>/accept")
    def accept_reservation(reservation_id: int) -> Any:
        payload = request.get_json(silent=True) or {}
        try:
            user_id = _optional_int(payload.get("user_id"))
        except (TypeError, ValueError):
            return _bad_request("user_id must be an integer.")

        try:
            accepted = engine.accept(reservation_id, acting_user_id=user_id)
        except (ReservationRejected, ReservationNotFound) as error:
            return _rejection(error)
        return jsonify({"ok": True, "reservation": _serialize_reservation(accepted)})

    @app.post("/api/reservations/<int:reservation_id>/confirm")
    def confirm_reservation(reservation_id: int) -> Any:
        payload = request.get_json(silent=True) or {}
        try:
            user_id = int(payload["user_id"])
            role = str(payload["role"])
        except (KeyError, TypeError, ValueError):
            return _bad_request("user_id and role are required.")

        try:
            confirmed = engine.confirm_completion(reservation_id, role, acting_user_id=user_id)
        except (ReservationRejected, ReservationNotFound) as error:
            return _rejection(error)
        except ValueError as error:
            return _bad_request(str(error))
        return jsonify({"ok": True, "reservation": _serialize_reservation(confirmed)})

    @app.post("/api/reservations/<int:reservation_id>/cancel")
    def cancel_reservation(reservation_id: int) -> Any:
        payload = request.get_json(silent=True) or {}
        try:
            user_id = _optional_int(payload.get("user_id"))
        except (TypeError, ValueError):
            return _bad_request("user_id must be an integer.")

        try:
            cancelled = engine.cancel(reservation_id, payload.get("reason"), acting_user_id=user_id)
        except (ReservationRejected, ReservationNotFound) as error:
            return _rejection(error)
        return jsonify({"ok": True, "reservation": _serialize_reservation(cancelled)})

    @app.post("/api/reservations/<int:reservation_id>/reschedule")
    def reschedule_reservation(reservation_id: int) -> Any:
        payload = request.get_json(silent=True) or {}
        try:
            user_id = _optional_int(payload.get("user_id"))
            start = _parse_datetime(payload["start"])
            end = _parse_datetime(payload["end"])
        except (KeyError, TypeError, ValueError):
            return _bad_request("start and end are required ISO datetimes.")

        try:
            moved = engine.reschedule(reservation_id, start, end, acting_user_id=user_id)
        except (ReservationRejected, ReservationNotFound) as error:
            return _rejection(error)
        return jsonify({"ok": True, "reservation": _serialize_reservation(moved)})

    @app.post("/api/notifications/<int:notification_id>/delivered")
    def mark_notification_delivered(notification_id: int) -> Any:
        try:
            delivered = engine.scheduler.mark_delivered(notification_id)
        except LookupError as error:
            return jsonify({"ok": False, "error": "not_found", "message": str(error)}), 404
        return jsonify({"ok": True, "notification": delivered.to_dict()})

    @app.get("/api/notifications/due")
    def due_notifications() -> Any:
        try:
            now = _parse_datetime(request.args["now"]) if request.args.get("now") else clock()
            due = engine.scheduler.due_as_of(now)
        except ValueError as error:
            return _bad_request(str(error))
        return jsonify({"ok": True, "notifications": [row.to_dict() for row in due]})

    @app.get("/api/users/<int:user_id>/balance")
    def get_balance(user_id: int) -> Any:
        return jsonify({"ok": True, "user_id": user_id, "time_credits": store.get_balance(user_id)})

    return app


def _serialize_reservation(reservation: Reservation) -> dict[str, Any]:
    payload = reservation.to_dict()
    payload["duration_minutes"] = reservation.duration_minutes
    return payload


def _rejection_body(error: Exception) -> dict[str, Any]:
    body: dict[str, Any] = {"ok": False, "error": getattr(error, "kind", "rejected"), "message": str(error)}
    if isinstance(error, SlotConflict):
        body["conflict"] = {
            "reservation_id": error.conflicting_id,
            "start": error.conflicting.window_start.isoformat(timespec="minutes"),
            "end": error.conflicting.window_end.isoformat(timespec="minutes"),
        }
    return body


def _rejection(error: Exception) -> Any:
    if isinstance(error, (ReservationNotFound, ResourceNotFound)):
        status = 404
    elif isinstance(error, NotAuthorizedParty):
        status = 403
    elif isinstance(error, (SlotConflict, OutsideAvailability, InvalidStateTransition)):
        status = 409
    else:
        status = 400
    return jsonify(_rejection_body(error)), status


def _bad_request(message: str) -> Any:
    return jsonify({"ok": False, "error": "invalid_request", "message": message}), 400


def _optional_int(value: Any) -> int | None:
    return int(value) if value is not None else None


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise TypeError(f"expected a JSON boolean, got {value!r}")
    return value


def _parse_datetime(value: Any) -> datetime:
    return datetime.fromisoformat(str(value))


def _parse_date(value: Any) -> date:
    return date.fromisoformat(str(value))


def _parse_time(value: Any) -> time:
    return time.fromisoformat(str(value))


if __name__ == "__main__":
    app = create_app()
    app.run(host="127.0.0.1", port=5000, debug=False)
