"""Vent opening planner: shared time-to-target and the exponential opening curve."""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
import logging
import math

from .dab import (
    DEFAULT_SETTINGS,
    DabSettings,
    clamp,
    has_room_reached_setpoint,
    round_big_decimal,
)
from .models import RoomObservation

_LOGGER = logging.getLogger(__name__)


@dataclass
class VentPlanInput:
    """Per-vent planning input derived from its room."""

    vent_id: str
    room_id: str
    rate: float
    temperature: float
    active: bool = True
    name: str = ""
    missing_temperature: bool = False


@dataclass
class VentPlan:
    longest_time: float
    percents: dict[str, float] = field(default_factory=dict)
    inputs: dict[str, VentPlanInput] = field(default_factory=dict)


def minutes_to_target(rate: float | None, delta: float, max_running_time: float) -> float | None:
    """Minutes needed to cover ``delta`` at ``rate``, capped at ``max_running_time``."""
    if not rate or rate <= 0:
        return None
    return min(abs(delta) / rate, max_running_time)


def calculate_longest_minutes_to_target(
    inputs: Mapping[str, VentPlanInput],
    hvac_mode: str,
    setpoint: float,
    max_running_time: float,
    close_inactive: bool = True,
    settings: DabSettings = DEFAULT_SETTINGS,
) -> float:
    """Longest minutes-to-target across vents, or -1 when nobody needs time."""
    longest_time = -1.0
    for item in inputs.values():
        if close_inactive and not item.active:
            continue
        if has_room_reached_setpoint(hvac_mode, setpoint, item.temperature):
            continue
        minutes = minutes_to_target(item.rate, setpoint - item.temperature, max_running_time)
        if minutes is None:
            continue
        longest_time = max(longest_time, minutes)
    return longest_time


def calculate_vent_open_percentage(
    start_temp: float,
    setpoint: float,
    hvac_mode: str,
    rate: float,
    longest_time: float,
    settings: DabSettings = DEFAULT_SETTINGS,
) -> float:
    if has_room_reached_setpoint(hvac_mode, setpoint, start_temp):
        return 0.0
    if rate <= 0 or longest_time <= 0:
        return 100.0

    target_rate = abs(setpoint - start_temp) / longest_time
    try:
        percentage_open = settings.base_const * math.exp((target_rate / rate) * settings.exp_const)
    except OverflowError:
        return 100.0
    return clamp(round_big_decimal(percentage_open * 100, 3), 0.0, 100.0)


def calculate_open_percentage_for_all_vents(
    inputs: Mapping[str, VentPlanInput],
    hvac_mode: str,
    setpoint: float,
    longest_time: float,
    close_inactive: bool = True,
    settings: DabSettings = DEFAULT_SETTINGS,
) -> dict[str, float]:
    percent_open_map: dict[str, float] = {}
    for vent_id, item in inputs.items():
        if close_inactive and not item.active:
            percentage_open = 0.0
        elif has_room_reached_setpoint(hvac_mode, setpoint, item.temperature):
            percentage_open = 0.0
        elif item.rate < settings.min_temp_change_rate:
            percentage_open = 100.0
        else:
            percentage_open = calculate_vent_open_percentage(
                item.temperature, setpoint, hvac_mode, item.rate, longest_time, settings
            )
        percent_open_map[vent_id] = percentage_open
    return percent_open_map


def build_vent_inputs(observations: Iterable[RoomObservation], setpoint: float) -> dict[str, VentPlanInput]:
    """Expand room observations into per-vent inputs, dividing the room rate by each vent weight."""
    inputs: dict[str, VentPlanInput] = {}
    for room in observations:
        missing = room.temperature is None
        temperature = setpoint if missing else room.temperature
        for vent_id in room.vent_ids:
            weight = room.vent_weights.get(vent_id, 1.0) or 1.0
            inputs[vent_id] = VentPlanInput(
                vent_id=vent_id,
                room_id=room.room_id,
                rate=max(room.rate, 0.0) / weight,
                temperature=temperature,
                active=room.active,
                name=room.name,
                missing_temperature=missing,
            )
    return inputs


def plan_vent_openings(
    inputs: Mapping[str, VentPlanInput],
    hvac_mode: str,
    setpoint: float,
    max_running_time: float,
    close_inactive: bool = True,
    settings: DabSettings = DEFAULT_SETTINGS,
) -> VentPlan:
    longest_time = calculate_longest_minutes_to_target(
        inputs, hvac_mode, setpoint, max_running_time, close_inactive, settings
    )
    if longest_time < 0:
        _LOGGER.debug("All rooms already reached setpoint %.2f", setpoint)
        longest_time = max_running_time

    if longest_time == 0:
        percents = {
            vent_id: 0.0 if close_inactive and not item.active else 100.0
            for vent_id, item in inputs.items()
        }
    else:
        percents = calculate_open_percentage_for_all_vents(
            inputs, hvac_mode, setpoint, longest_time, close_inactive, settings
        )

    for vent_id, item in inputs.items():
        if item.missing_temperature and item.active:
            percents[vent_id] = 100.0

    _LOGGER.debug("Planned openings (longest %.2f min): %s", longest_time, percents)
    return VentPlan(longest_time=longest_time, percents=percents, inputs=dict(inputs))
