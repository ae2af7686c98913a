from __future__ import annotations

from datetime import date, datetime
import os
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from reservation_engine import ReservationEngine, ReservationRejected, YamlReservationStore, load_settings

mcp = FastMCP(
    "Reservation MCP Server",
    instructions="Expose availability and reservation operations from the reservation_engine project.",
    json_response=True,
)

DATA_DIR = Path(os.environ.get("RESERVATION_DATA_DIR", Path(__file__).parent / "data"))
_ENGINE: ReservationEngine | None = None


def get_engine() -> ReservationEngine:
    global _ENGINE
    if _ENGINE is None:
        settings = load_settings(DATA_DIR / "settings.yaml")
        _ENGINE = ReservationEngine(YamlReservationStore(DATA_DIR), settings=settings)
    return _ENGINE


def configure(data_dir: str | Path) -> ReservationEngine:
    global DATA_DIR, _ENGINE
    DATA_DIR = Path(data_dir)
    _ENGINE = None
    return get_engine()


@mcp.tool()
def open_intervals(resource_id: int, date_iso: str) -> list[dict[str, str]]:
    """Return the open time windows of a resource on one date."""
    intervals = get_engine().open_intervals(resource_id, date.fromisoformat(date_iso))
    return [interval.to_dict() for interval in intervals]


@mcp.tool()
def check_window(resource_id: int, start_iso: str, end_iso: str) -> dict[str, Any]:
    """Tell whether a window can be reserved, naming the reason when it cannot."""
    try:
        get_engine().checker.check(resource_id, datetime.fromisoformat(start_iso), datetime.fromisoformat(end_iso))
    except ReservationRejected as error:
        return {"can_reserve": False, "error": error.kind, "message": str(error)}
    return {"can_reserve": True}


@mcp.tool()
def request_reservation(requestor_id: int, resource_id: int, start_iso: str, end_iso: str, title: str = "MCP reservation") -> dict[str, Any]:
    """Create a reservation request using ISO timestamps."""
    created = get_engine().create(
        requestor_id,
        resource_id,
        datetime.fromisoformat(start_iso),
        datetime.fromisoformat(end_iso),
        title,
    )
    return created.to_dict()


@mcp.tool()
def list_reservations(resource_id: int, status: str | None = None) -> list[dict[str, Any]]:
    """Return reservations of a resource, optionally filtered by status."""
    statuses = [status] if status else None
    return [row.to_dict() for row in get_engine().lifecycle.list_for_resource(resource_id, statuses)]


@mcp.tool()
def due_notifications(now_iso: str | None = None) -> list[dict[str, Any]]:
    """Return notifications that are due and not yet delivered."""
    now = datetime.fromisoformat(now_iso) if now_iso else None
    return [row.to_dict() for row in get_engine().scheduler.due_as_of(now)]


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
