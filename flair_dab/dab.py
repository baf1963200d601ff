"""Dynamic Airflow Balancing (DAB) tuning constants and shared math helpers."""
from __future__ import annotations

from dataclasses import dataclass
import math

from .models import HvacMode


@dataclass(frozen=True)
class DabSettings:
    """Algorithm constants for DAB calculations (Celsius-based)."""

    max_temp_change_rate: float = 1.5
    min_temp_change_rate: float = 0.001
    setpoint_offset: float = 0.7
    max_minutes_to_setpoint: float = 60.0
    min_minutes_to_setpoint: float = 1.0
    min_runtime_for_rate_calc: float = 5.0
    temp_sensor_accuracy: float = 0.5
    min_detectable_temp_change: float = 0.1
    noise_floor_open_percent: float = 30.0
    zero_rate_seed_fraction: float = 0.1
    rolling_average_entries: int = 4
    max_running_average_entries: int = 6
    increment_percentage: float = 1.5
    max_iterations: int = 500
    standard_vent_default_open: float = 50.0
    rebalancing_tolerance: float = 0.5
    rebalancing_open_percent: float = 30.0
    temp_boundary_adjustment: float = 0.1
    duct_temp_diff_threshold: float = 0.5
    duct_temp_hysteresis: float = 0.2
    min_plausible_temp: float = -40.0
    max_plausible_temp: float = 60.0
    default_cooling_setpoint: float = 24.0
    default_heating_setpoint: float = 20.0
    base_const: float = 0.0991
    exp_const: float = 2.3


DEFAULT_SETTINGS = DabSettings()


def round_big_decimal(value: float, scale: int = 3) -> float:
    return round(float(value), scale)


def round_to_nearest_multiple(value: float, granularity: int) -> int:
    if granularity <= 0:
        return int(round(value))
    quotient = value / granularity
    if quotient >= 0:
        rounded = math.floor(quotient + 0.5)
    else:
        rounded = math.ceil(quotient - 0.5)
    return int(rounded * granularity)


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def rolling_average(current_average: float | None, new_number: float, weight: float = 1, num_entries: int = 10) -> float:
    """Move ``current_average`` toward ``new_number`` by ``weight / num_entries``."""
    if num_entries <= 0:
        return 0
    base = new_number if not current_average else current_average
    total = base * (num_entries - 1)
    weighted_value = (new_number - base) * weight
    total += base + weighted_value
    return total / num_entries


def has_room_reached_setpoint(hvac_mode: str, setpoint: float, current_temp: float, offset: float = 0) -> bool:
    if hvac_mode == HvacMode.COOLING:
        return current_temp <= setpoint - offset
    return current_temp >= setpoint + offset


def is_plausible_temperature(value: float | None, settings: DabSettings = DEFAULT_SETTINGS) -> bool:
    if value is None or math.isnan(value):
        return False
    return settings.min_plausible_temp <= value <= settings.max_plausible_temp
