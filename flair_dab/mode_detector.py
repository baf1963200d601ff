"""HVAC mode detection from duct and room temperatures."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import logging
import statistics
from typing import Any

from .dab import DEFAULT_SETTINGS, DabSettings, is_plausible_temperature
from .models import HvacMode

_LOGGER = logging.getLogger(__name__)

HEATING_STATES = {"heating", "heat", "pending heat", "preheating"}
COOLING_STATES = {"cooling", "cool", "pending cool"}
FAN_STATES = {"fan", "fan only", "fan_only"}


def _normalize(state: Any) -> str:
    if state is None:
        return ""
    return str(state).strip().lower()


def mode_from_thermostat_state(state: Any) -> HvacMode | None:
    normalized = _normalize(state)
    if normalized in HEATING_STATES:
        return HvacMode.HEATING
    if normalized in COOLING_STATES:
        return HvacMode.COOLING
    return None


def is_fan_active(state: Any) -> bool:
    return _normalize(state) in FAN_STATES


@dataclass(frozen=True)
class ModeTransition:
    previous: HvacMode
    current: HvacMode

    @property
    def started(self) -> bool:
        return not self.previous.is_active and self.current.is_active

    @property
    def stopped(self) -> bool:
        return self.previous.is_active and not self.current.is_active

    @property
    def switched(self) -> bool:
        return self.previous.is_active and self.current.is_active


class HvacModeDetector:
    """Infer heating/cooling/idle from the median duct-minus-room delta.

    Once a mode is active it is kept until the median falls back inside
    ``threshold - hysteresis``, which stops flapping around the threshold.
    Without usable duct readings the thermostat operating state decides.
    """

    def __init__(self, settings: DabSettings = DEFAULT_SETTINGS, mode: HvacMode = HvacMode.IDLE) -> None:
        self._settings = settings
        self._mode = mode

    @property
    def mode(self) -> HvacMode:
        return self._mode

    def reset(self, mode: HvacMode = HvacMode.IDLE) -> None:
        self._mode = mode

    def median_delta(self, readings: Iterable[tuple[Any, Any]]) -> float | None:
        diffs: list[float] = []
        for duct, room in readings:
            try:
                duct_temp = float(duct)
                room_temp = float(room)
            except (TypeError, ValueError):
                continue
            if not is_plausible_temperature(duct_temp, self._settings):
                continue
            if not is_plausible_temperature(room_temp, self._settings):
                continue
            diffs.append(duct_temp - room_temp)
        if not diffs:
            return None
        return statistics.median(diffs)

    def detect(self, readings: Iterable[tuple[Any, Any]], thermostat_state: Any = None) -> HvacMode:
        median = self.median_delta(readings)
        if median is not None:
            threshold = self._settings.duct_temp_diff_threshold
            hold = threshold - self._settings.duct_temp_hysteresis
            if self._mode == HvacMode.HEATING and median > hold:
                return HvacMode.HEATING
            if self._mode == HvacMode.COOLING and median < -hold:
                return HvacMode.COOLING
            if median > threshold:
                return HvacMode.HEATING
            if median < -threshold:
                return HvacMode.COOLING
        fallback = mode_from_thermostat_state(thermostat_state)
        return fallback if fallback is not None else HvacMode.IDLE

    def update(self, readings: Iterable[tuple[Any, Any]], thermostat_state: Any = None) -> ModeTransition | None:
        """Detect the mode and return a transition when it changed."""
        current = self.detect(readings, thermostat_state)
        if current == self._mode:
            return None
        transition = ModeTransition(self._mode, current)
        _LOGGER.info("HVAC mode changed: %s -> %s", transition.previous, transition.current)
        self._mode = current
        return transition
