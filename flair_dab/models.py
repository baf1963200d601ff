"""Typed data model shared by the DAB engine components."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

REJECTED_RATE = -1.0


class HvacMode(StrEnum):
    """HVAC operating mode as seen by the balancing engine."""

    HEATING = "heating"
    COOLING = "cooling"
    IDLE = "idle"

    @property
    def is_active(self) -> bool:
        return self in (HvacMode.HEATING, HvacMode.COOLING)


class CycleStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"


class RateError(StrEnum):
    """Why a rate sample was rejected."""

    MISSING_INPUT = "missing_input"
    TOO_SHORT = "too_short"
    CLOSED_VENT = "closed_vent"
    BELOW_DETECTION = "below_detection"
    IMPLAUSIBLE = "implausible"


@dataclass(frozen=True)
class RateResult:
    """Outcome of a rate computation: either a rate or a rejection reason."""

    rate: float | None = None
    error: RateError | None = None

    @classmethod
    def accepted(cls, rate: float) -> RateResult:
        return cls(rate=rate)

    @classmethod
    def rejected(cls, error: RateError) -> RateResult:
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def value(self) -> float:
        """Rate, or the ``-1`` sentinel when rejected."""
        return self.rate if self.rate is not None else REJECTED_RATE


@dataclass(frozen=True)
class VentConfig:
    vent_id: str
    weight: float = 1.0
    duct_sensor: str | None = None


@dataclass(frozen=True)
class RoomConfig:
    """Static description of a room, built once from the config entry."""

    room_id: str
    name: str
    vents: tuple[VentConfig, ...]
    temp_sensor: str | None = None
    active: bool = True

    @property
    def vent_ids(self) -> list[str]:
        return [vent.vent_id for vent in self.vents]

    @property
    def vent_weights(self) -> dict[str, float]:
        return {vent.vent_id: vent.weight for vent in self.vents}


@dataclass
class RoomObservation:
    """One room's state during a planning pass."""

    room_id: str
    vent_ids: list[str]
    active: bool
    temperature: float | None
    rate: float
    vent_weights: dict[str, float] = field(default_factory=dict)
    name: str = ""


@dataclass(frozen=True)
class RateSample:
    timestamp: datetime
    room_id: str
    hvac_mode: str
    hour: int
    rate: float

    def as_record(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "roomId": self.room_id,
            "hvacMode": str(self.hvac_mode),
            "hour": self.hour,
            "rate": self.rate,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> RateSample:
        return cls(
            timestamp=datetime.fromisoformat(record["timestamp"]),
            room_id=str(record["roomId"]),
            hvac_mode=str(record["hvacMode"]),
            hour=int(record["hour"]),
            rate=float(record["rate"]),
        )


@dataclass(frozen=True)
class AdaptiveMark:
    """A large correction of a learned rate versus the rate seeded at cycle start."""

    timestamp: datetime
    room_id: str
    hvac_mode: str
    hour: int
    ratio: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "room_id": self.room_id,
            "hvac_mode": str(self.hvac_mode),
            "hour": self.hour,
            "ratio": self.ratio,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AdaptiveMark:
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            room_id=str(data["room_id"]),
            hvac_mode=str(data["hvac_mode"]),
            hour=int(data["hour"]),
            ratio=float(data["ratio"]),
        )


@dataclass
class Cycle:
    """One HVAC run, from the idle-to-active transition until finalization."""

    mode: HvacMode
    started_cycle: datetime
    started_running: datetime
    start_hour: int
    starting_temps: dict[str, float] = field(default_factory=dict)
    seeded_rates: dict[str, float] = field(default_factory=dict)
    commanded: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "mode": str(self.mode),
            "started_cycle": self.started_cycle.isoformat(),
            "started_running": self.started_running.isoformat(),
            "start_hour": self.start_hour,
            "starting_temps": dict(self.starting_temps),
            "seeded_rates": dict(self.seeded_rates),
            "commanded": dict(self.commanded),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Cycle:
        return cls(
            mode=HvacMode(data["mode"]),
            started_cycle=datetime.fromisoformat(data["started_cycle"]),
            started_running=datetime.fromisoformat(data["started_running"]),
            start_hour=int(data["start_hour"]),
            starting_temps={k: float(v) for k, v in (data.get("starting_temps") or {}).items()},
            seeded_rates={k: float(v) for k, v in (data.get("seeded_rates") or {}).items()},
            commanded={k: int(v) for k, v in (data.get("commanded") or {}).items()},
        )


@dataclass
class DabState:
    """Process-wide mutable engine state, owned by the orchestrator."""

    room_rates: dict[str, dict[str, float]] = field(default_factory=dict)
    max_rates: dict[str, float] = field(
        default_factory=lambda: {HvacMode.COOLING.value: 0.0, HvacMode.HEATING.value: 0.0}
    )
    max_running_minutes: float | None = None
    manual_overrides: dict[str, int] = field(default_factory=dict)
    last_rebalance: datetime | None = None
    # vent_id -> {"target": int, "actual": int}
    discrepancies: dict[str, dict[str, int]] = field(default_factory=dict)

    def get_room_rate(self, room_id: str, mode: str) -> float:
        return float(self.room_rates.get(room_id, {}).get(str(mode), 0.0))

    def set_room_rate(self, room_id: str, mode: str, rate: float) -> None:
        self.room_rates.setdefault(room_id, {})[str(mode)] = rate

    def clear_learned(self) -> None:
        self.room_rates.clear()
        self.max_rates = {HvacMode.COOLING.value: 0.0, HvacMode.HEATING.value: 0.0}
        self.max_running_minutes = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "room_rates": self.room_rates,
            "max_rates": self.max_rates,
            "max_running_minutes": self.max_running_minutes,
            "manual_overrides": self.manual_overrides,
            "last_rebalance": self.last_rebalance.isoformat() if self.last_rebalance else None,
            "discrepancies": self.discrepancies,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DabState:
        state = cls()
        if not data:
            return state
        state.room_rates = {
            room: {mode: float(rate) for mode, rate in rates.items()}
            for room, rates in (data.get("room_rates") or {}).items()
        }
        state.max_rates.update(
            {mode: float(rate) for mode, rate in (data.get("max_rates") or {}).items()}
        )
        max_running = data.get("max_running_minutes")
        state.max_running_minutes = float(max_running) if max_running is not None else None
        state.manual_overrides = {
            vent: int(percent) for vent, percent in (data.get("manual_overrides") or {}).items()
        }
        last = data.get("last_rebalance")
        state.last_rebalance = datetime.fromisoformat(last) if last else None
        state.discrepancies = {
            vent: {"target": int(item["target"]), "actual": int(item["actual"])}
            for vent, item in (data.get("discrepancies") or {}).items()
        }
        return state
