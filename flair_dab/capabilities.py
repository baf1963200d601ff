"""Capabilities the balancing engine consumes from its host."""
from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Protocol

from .models import HvacMode


class DabPlatform(Protocol):
    """Sensors, vents, storage and timers as seen by the orchestrator.

    Temperatures are Celsius; ``None`` means the reading is missing.
    ``request_vent_percent`` must not block; confirmation happens out of band.
    """

    def read_room_temperature(self, room_id: str) -> float | None: ...

    def read_duct_temperature(self, vent_id: str) -> float | None: ...

    def request_vent_percent(self, vent_id: str, percent: int) -> None: ...

    def read_vent_percent(self, vent_id: str) -> float | None: ...

    def read_thermostat_state(self) -> str | None: ...

    def read_setpoint(self, mode: HvacMode) -> float | None: ...

    def read_room_active(self, room_id: str) -> bool | None: ...

    def persist(self, key: str, value: Any) -> None: ...

    def load(self, key: str) -> Any: ...

    def now(self) -> datetime: ...

    def schedule_every(self, interval: timedelta, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` every ``interval``; returns a cancel function."""
