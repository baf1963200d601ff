"""Option validation and typed configuration for the DAB engine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import voluptuous as vol

from .const import (
    CONF_ACTIVE,
    CONF_ADAPTIVE_BOOST,
    CONF_ADAPTIVE_ENABLED,
    CONF_ADAPTIVE_LOOKBACK,
    CONF_ADAPTIVE_MAX_BOOST,
    CONF_ADAPTIVE_THRESHOLD,
    CONF_ALLOW_FULL_CLOSE,
    CONF_CARRY_FORWARD,
    CONF_CLOSE_INACTIVE_ROOMS,
    CONF_DAB_ENABLED,
    CONF_DUCT_SENSOR_ENTITY,
    CONF_EWMA_ENABLED,
    CONF_EWMA_HALF_LIFE_DAYS,
    CONF_FAIL_FAST,
    CONF_FAN_ONLY_OPEN_ALL,
    CONF_MIN_AIRFLOW_PERCENT,
    CONF_MIN_VENT_FLOOR,
    CONF_NAME,
    CONF_OUTLIER_ENABLED,
    CONF_OUTLIER_MODE,
    CONF_OUTLIER_THRESHOLD_MAD,
    CONF_RETENTION_DAYS,
    CONF_ROOM_ID,
    CONF_ROOMS,
    CONF_STANDARD_VENTS,
    CONF_TEMP_SENSOR_ENTITY,
    CONF_THERMOSTAT_ENTITY,
    CONF_VENT_GRANULARITY,
    CONF_VENT_ID,
    CONF_VENTS,
    CONF_WEIGHT,
    DEFAULT_ADAPTIVE_BOOST,
    DEFAULT_ADAPTIVE_ENABLED,
    DEFAULT_ADAPTIVE_LOOKBACK,
    DEFAULT_ADAPTIVE_MAX_BOOST,
    DEFAULT_ADAPTIVE_THRESHOLD,
    DEFAULT_ALLOW_FULL_CLOSE,
    DEFAULT_CARRY_FORWARD,
    DEFAULT_CLOSE_INACTIVE_ROOMS,
    DEFAULT_DAB_ENABLED,
    DEFAULT_EWMA_ENABLED,
    DEFAULT_EWMA_HALF_LIFE_DAYS,
    DEFAULT_FAIL_FAST,
    DEFAULT_FAN_ONLY_OPEN_ALL,
    DEFAULT_MIN_AIRFLOW_PERCENT,
    DEFAULT_MIN_VENT_FLOOR,
    DEFAULT_OUTLIER_ENABLED,
    DEFAULT_OUTLIER_MODE,
    DEFAULT_OUTLIER_THRESHOLD_MAD,
    DEFAULT_RETENTION_DAYS,
    DEFAULT_STANDARD_VENTS,
    DEFAULT_VENT_GRANULARITY,
    DEFAULT_VENT_WEIGHT,
    DOMAIN,
    GRANULARITY_OPTIONS,
    MAX_RETENTION_DAYS,
    MAX_STANDARD_VENTS,
    MAX_VENT_WEIGHT,
    MIN_RETENTION_DAYS,
    MIN_VENT_WEIGHT,
    OUTLIER_MODE_CLIP,
    OUTLIER_MODE_REJECT,
)
from .models import RoomConfig, VentConfig


def _clamped(lower: float, upper: float, kind: type = float):
    """Coerce to ``kind`` and clamp into ``[lower, upper]`` instead of failing."""
    return vol.All(vol.Coerce(kind), vol.Clamp(min=lower, max=upper))


VENT_SCHEMA = vol.Schema(
    {
        vol.Required(CONF_VENT_ID): str,
        vol.Optional(CONF_WEIGHT, default=DEFAULT_VENT_WEIGHT): _clamped(
            MIN_VENT_WEIGHT, MAX_VENT_WEIGHT
        ),
        vol.Optional(CONF_DUCT_SENSOR_ENTITY): vol.Any(None, str),
    }
)

ROOM_SCHEMA = vol.Schema(
    {
        vol.Required(CONF_ROOM_ID): vol.Coerce(str),
        vol.Optional(CONF_NAME): str,
        vol.Optional(CONF_TEMP_SENSOR_ENTITY): vol.Any(None, str),
        vol.Optional(CONF_ACTIVE, default=True): bool,
        vol.Required(CONF_VENTS): vol.All([VENT_SCHEMA], vol.Length(min=1)),
    }
)


def _unique_vents(rooms: list[dict[str, Any]]) -> list[dict[str, Any]]:
    seen: set[str] = set()
    for room in rooms:
        for vent in room[CONF_VENTS]:
            vent_id = vent[CONF_VENT_ID]
            if vent_id in seen:
                raise vol.Invalid(f"vent {vent_id} is assigned to more than one room")
            seen.add(vent_id)
    return rooms


OPTIONS_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_DAB_ENABLED, default=DEFAULT_DAB_ENABLED): bool,
        vol.Optional(CONF_THERMOSTAT_ENTITY): vol.Any(None, str),
        vol.Optional(CONF_ROOMS, default=list): vol.All([ROOM_SCHEMA], _unique_vents),
        vol.Optional(CONF_STANDARD_VENTS, default=DEFAULT_STANDARD_VENTS): _clamped(
            0, MAX_STANDARD_VENTS, int
        ),
        vol.Optional(CONF_CLOSE_INACTIVE_ROOMS, default=DEFAULT_CLOSE_INACTIVE_ROOMS): bool,
        vol.Optional(CONF_RETENTION_DAYS, default=DEFAULT_RETENTION_DAYS): _clamped(
            MIN_RETENTION_DAYS, MAX_RETENTION_DAYS, int
        ),
        vol.Optional(CONF_MIN_AIRFLOW_PERCENT, default=DEFAULT_MIN_AIRFLOW_PERCENT): _clamped(
            0, 100
        ),
        vol.Optional(CONF_VENT_GRANULARITY, default=DEFAULT_VENT_GRANULARITY): vol.All(
            vol.Coerce(int), vol.In(GRANULARITY_OPTIONS)
        ),
        vol.Optional(CONF_EWMA_ENABLED, default=DEFAULT_EWMA_ENABLED): bool,
        vol.Optional(CONF_EWMA_HALF_LIFE_DAYS, default=DEFAULT_EWMA_HALF_LIFE_DAYS): vol.All(
            vol.Coerce(float), vol.Range(min=0)
        ),
        vol.Optional(CONF_OUTLIER_ENABLED, default=DEFAULT_OUTLIER_ENABLED): bool,
        vol.Optional(CONF_OUTLIER_THRESHOLD_MAD, default=DEFAULT_OUTLIER_THRESHOLD_MAD): vol.All(
            vol.Coerce(float), vol.Range(min=0, min_included=False)
        ),
        vol.Optional(CONF_OUTLIER_MODE, default=DEFAULT_OUTLIER_MODE): vol.In(
            [OUTLIER_MODE_REJECT, OUTLIER_MODE_CLIP]
        ),
        vol.Optional(CONF_CARRY_FORWARD, default=DEFAULT_CARRY_FORWARD): bool,
        vol.Optional(CONF_ADAPTIVE_ENABLED, default=DEFAULT_ADAPTIVE_ENABLED): bool,
        vol.Optional(CONF_ADAPTIVE_LOOKBACK, default=DEFAULT_ADAPTIVE_LOOKBACK): _clamped(
            1, 24, int
        ),
        vol.Optional(CONF_ADAPTIVE_THRESHOLD, default=DEFAULT_ADAPTIVE_THRESHOLD): vol.All(
            vol.Coerce(float), vol.Range(min=0)
        ),
        vol.Optional(CONF_ADAPTIVE_BOOST, default=DEFAULT_ADAPTIVE_BOOST): vol.All(
            vol.Coerce(float), vol.Range(min=0)
        ),
        vol.Optional(CONF_ADAPTIVE_MAX_BOOST, default=DEFAULT_ADAPTIVE_MAX_BOOST): vol.All(
            vol.Coerce(float), vol.Range(min=0)
        ),
        vol.Optional(CONF_MIN_VENT_FLOOR, default=DEFAULT_MIN_VENT_FLOOR): _clamped(0, 100, int),
        vol.Optional(CONF_ALLOW_FULL_CLOSE, default=DEFAULT_ALLOW_FULL_CLOSE): bool,
        vol.Optional(CONF_FAN_ONLY_OPEN_ALL, default=DEFAULT_FAN_ONLY_OPEN_ALL): bool,
        vol.Optional(CONF_FAIL_FAST, default=DEFAULT_FAIL_FAST): bool,
    },
    extra=vol.REMOVE_EXTRA,
)


@dataclass(frozen=True)
class DabConfig:
    """User-facing options, validated once per config entry load."""

    dab_enabled: bool = DEFAULT_DAB_ENABLED
    thermostat_entity: str | None = None
    rooms: tuple[RoomConfig, ...] = ()
    standard_vents: int = DEFAULT_STANDARD_VENTS
    close_inactive_rooms: bool = DEFAULT_CLOSE_INACTIVE_ROOMS
    retention_days: int = DEFAULT_RETENTION_DAYS
    min_airflow_percent: float = DEFAULT_MIN_AIRFLOW_PERCENT
    vent_granularity: int = DEFAULT_VENT_GRANULARITY
    ewma_enabled: bool = DEFAULT_EWMA_ENABLED
    ewma_half_life_days: float = DEFAULT_EWMA_HALF_LIFE_DAYS
    outlier_enabled: bool = DEFAULT_OUTLIER_ENABLED
    outlier_threshold_mad: float = DEFAULT_OUTLIER_THRESHOLD_MAD
    outlier_mode: str = DEFAULT_OUTLIER_MODE
    carry_forward: bool = DEFAULT_CARRY_FORWARD
    adaptive_enabled: bool = DEFAULT_ADAPTIVE_ENABLED
    adaptive_lookback: int = DEFAULT_ADAPTIVE_LOOKBACK
    adaptive_threshold_percent: float = DEFAULT_ADAPTIVE_THRESHOLD
    adaptive_boost_percent: float = DEFAULT_ADAPTIVE_BOOST
    adaptive_max_boost_percent: float = DEFAULT_ADAPTIVE_MAX_BOOST
    min_vent_floor_percent: int = DEFAULT_MIN_VENT_FLOOR
    allow_full_close: bool = DEFAULT_ALLOW_FULL_CLOSE
    fan_only_open_all: bool = DEFAULT_FAN_ONLY_OPEN_ALL
    fail_fast: bool = DEFAULT_FAIL_FAST

    @property
    def floor_percent(self) -> int:
        return 0 if self.allow_full_close else self.min_vent_floor_percent

    @classmethod
    def from_options(cls, options: dict[str, Any] | None) -> DabConfig:
        """Validate raw options and build a typed config.

        Raises ``vol.Invalid`` when the options cannot be coerced.
        """
        data = OPTIONS_SCHEMA(dict(options or {}))
        rooms = tuple(_build_room(room) for room in data[CONF_ROOMS])
        return cls(
            dab_enabled=data[CONF_DAB_ENABLED],
            thermostat_entity=data.get(CONF_THERMOSTAT_ENTITY),
            rooms=rooms,
            standard_vents=data[CONF_STANDARD_VENTS],
            close_inactive_rooms=data[CONF_CLOSE_INACTIVE_ROOMS],
            retention_days=data[CONF_RETENTION_DAYS],
            min_airflow_percent=data[CONF_MIN_AIRFLOW_PERCENT],
            vent_granularity=data[CONF_VENT_GRANULARITY],
            ewma_enabled=data[CONF_EWMA_ENABLED],
            ewma_half_life_days=data[CONF_EWMA_HALF_LIFE_DAYS],
            outlier_enabled=data[CONF_OUTLIER_ENABLED],
            outlier_threshold_mad=data[CONF_OUTLIER_THRESHOLD_MAD],
            outlier_mode=data[CONF_OUTLIER_MODE],
            carry_forward=data[CONF_CARRY_FORWARD],
            adaptive_enabled=data[CONF_ADAPTIVE_ENABLED],
            adaptive_lookback=data[CONF_ADAPTIVE_LOOKBACK],
            adaptive_threshold_percent=data[CONF_ADAPTIVE_THRESHOLD],
            adaptive_boost_percent=data[CONF_ADAPTIVE_BOOST],
            adaptive_max_boost_percent=data[CONF_ADAPTIVE_MAX_BOOST],
            min_vent_floor_percent=data[CONF_MIN_VENT_FLOOR],
            allow_full_close=data[CONF_ALLOW_FULL_CLOSE],
            fan_only_open_all=data[CONF_FAN_ONLY_OPEN_ALL],
            fail_fast=data[CONF_FAIL_FAST],
        )


def _build_room(room: dict[str, Any]) -> RoomConfig:
    vents = tuple(
        VentConfig(
            vent_id=vent[CONF_VENT_ID],
            weight=float(vent[CONF_WEIGHT]),
            duct_sensor=vent.get(CONF_DUCT_SENSOR_ENTITY),
        )
        for vent in room[CONF_VENTS]
    )
    room_id = room[CONF_ROOM_ID]
    return RoomConfig(
        room_id=room_id,
        name=room.get(CONF_NAME) or room_id,
        vents=vents,
        temp_sensor=room.get(CONF_TEMP_SENSOR_ENTITY),
        active=room[CONF_ACTIVE],
    )


CONFIG_SCHEMA = vol.Schema({vol.Optional(DOMAIN): OPTIONS_SCHEMA}, extra=vol.ALLOW_EXTRA)
