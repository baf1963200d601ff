"""Minimum combined airflow enforcement and final vent position shaping."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
import math

from .dab import DEFAULT_SETTINGS, DabSettings, clamp, round_to_nearest_multiple
from .models import HvacMode
from .planner import VentPlanInput

_LOGGER = logging.getLogger(__name__)


@dataclass
class AirflowResult:
    percents: dict[str, float] = field(default_factory=dict)
    combined_flow: float = 0.0
    iterations: int = 0
    satisfied: bool = True


def combined_flow_percent(
    percents: Mapping[str, float],
    standard_vents: int,
    settings: DabSettings = DEFAULT_SETTINGS,
) -> float:
    """Average opening across smart and standard vents, in percent."""
    standard = max(standard_vents, 0)
    device_count = standard + len(percents)
    if device_count <= 0:
        return 0.0
    total = standard * settings.standard_vent_default_open + sum(p or 0 for p in percents.values())
    return total / device_count


def adjust_for_minimum_airflow(
    inputs: Mapping[str, VentPlanInput],
    hvac_mode: str,
    percents: Mapping[str, float],
    standard_vents: int,
    min_combined_flow: float = 30.0,
    settings: DabSettings = DEFAULT_SETTINGS,
) -> AirflowResult:
    """Raise smart vent openings until the combined flow reaches ``min_combined_flow``.

    Each pass adds ``increment_percentage`` scaled by how far the room sits
    inside the observed temperature range, so rooms furthest from the
    setpoint side open first.
    """
    adjusted = {vent_id: float(p or 0) for vent_id, p in percents.items()}
    standard = max(standard_vents, 0)
    device_count = standard + len(adjusted)
    if device_count <= 0:
        return AirflowResult(adjusted, 0.0, 0, True)

    combined = combined_flow_percent(adjusted, standard, settings)
    if combined >= min_combined_flow:
        return AirflowResult(adjusted, combined, 0, True)

    temps = [item.temperature for item in inputs.values() if item.temperature is not None]
    if temps:
        min_temp = min(temps) - settings.temp_boundary_adjustment
        max_temp = max(temps) + settings.temp_boundary_adjustment
    else:
        min_temp, max_temp = 20.0, 25.0

    shortfall = min_combined_flow * device_count - combined * device_count
    iterations = 0
    while shortfall > 0 and iterations < settings.max_iterations:
        iterations += 1
        progress = 0.0
        for vent_id, item in inputs.items():
            current = adjusted.get(vent_id, 0.0)
            if current >= 100:
                continue
            temp = item.temperature if item.temperature is not None else (min_temp + max_temp) / 2
            if max_temp == min_temp:
                proportion = 0.0
            elif hvac_mode == HvacMode.COOLING:
                proportion = (temp - min_temp) / (max_temp - min_temp)
            else:
                proportion = (max_temp - temp) / (max_temp - min_temp)

            raised = min(100.0, current + settings.increment_percentage * proportion)
            adjusted[vent_id] = raised
            progress += raised - current
            shortfall -= raised - current
            if shortfall <= 0:
                break
        if progress <= 0:
            break

    combined = combined_flow_percent(adjusted, standard, settings)
    satisfied = shortfall <= 0
    if not satisfied:
        _LOGGER.warning(
            "Minimum airflow %.1f%% not reached after %s iterations (combined %.1f%%)",
            min_combined_flow,
            iterations,
            combined,
        )
    return AirflowResult(adjusted, combined, iterations, satisfied)


def finalize_positions(
    percents: Mapping[str, float],
    overrides: Mapping[str, int],
    floor_percent: int = 0,
    allow_full_close: bool = True,
    granularity: int = 5,
) -> dict[str, int]:
    """Apply manual overrides, the closing floor and granularity rounding."""
    floor = 0 if allow_full_close else int(clamp(floor_percent, 0, 100))
    floor_step = floor
    if granularity > 0 and floor % granularity:
        floor_step = min(100, math.ceil(floor / granularity) * granularity)

    positions: dict[str, int] = {}
    for vent_id, percent in percents.items():
        if vent_id in overrides:
            positions[vent_id] = int(clamp(int(overrides[vent_id]), 0, 100))
            continue
        value = clamp(float(percent or 0), floor, 100.0)
        rounded = min(100, round_to_nearest_multiple(value, granularity))
        if rounded < floor:
            rounded = floor_step
        positions[vent_id] = rounded
    return positions
