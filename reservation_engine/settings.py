from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CREDIT_BLOCK_MINUTES = 15
DEFAULT_FOLLOW_UP_DELAY_HOURS = 24
DEFAULT_REMINDER_OFFSETS_HOURS = (24, 1)


@dataclass(frozen=True)
class EngineSettings:
    # Resources with no templates and no overrides are closed unless this is set.
    open_world_when_unconfigured: bool = False
    credit_block_minutes: int = DEFAULT_CREDIT_BLOCK_MINUTES
    follow_up_delay_hours: float = DEFAULT_FOLLOW_UP_DELAY_HOURS
    reminder_offsets_hours: tuple[float, ...] = DEFAULT_REMINDER_OFFSETS_HOURS
    holiday_country: str | None = None

    def __post_init__(self) -> None:
        if self.credit_block_minutes <= 0:
            raise ValueError("credit_block_minutes must be greater than zero")
        if self.follow_up_delay_hours < 0:
            raise ValueError("follow_up_delay_hours must not be negative")
        if any(offset <= 0 for offset in self.reminder_offsets_hours):
            raise ValueError("reminder_offsets_hours must all be greater than zero")

    @property
    def follow_up_delay(self) -> timedelta:
        return timedelta(hours=self.follow_up_delay_hours)

    @property
    def reminder_offsets(self) -> tuple[timedelta, ...]:
        return tuple(timedelta(hours=offset) for offset in self.reminder_offsets_hours)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "EngineSettings":
        known = {item.name for item in fields(EngineSettings)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown settings keys: {', '.join(unknown)}")

        values = dict(data)
        if "reminder_offsets_hours" in values:
            values["reminder_offsets_hours"] = tuple(float(item) for item in values["reminder_offsets_hours"] or ())
        if values.get("holiday_country") is not None:
            values["holiday_country"] = str(values["holiday_country"]).upper()
        return EngineSettings(**values)


def load_settings(path: str | Path | None = None) -> EngineSettings:
    if path is None:
        return EngineSettings()

    settings_path = Path(path)
    if not settings_path.exists():
        return EngineSettings()

    payload = yaml.safe_load(settings_path.read_text(encoding="utf-8"))
    if payload is None:
        return EngineSettings()
    if not isinstance(payload, dict):
        raise ValueError(f"Settings file must contain a mapping: {settings_path}")
    return EngineSettings.from_dict(payload)
