"""Per-room efficiency rate learning from completed HVAC runs."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
import math

from .config import DabConfig
from .dab import (
    DEFAULT_SETTINGS,
    DabSettings,
    has_room_reached_setpoint,
    rolling_average,
    round_big_decimal,
)
from .history import RateHistoryStore
from .models import Cycle, DabState, RateError, RateResult

_LOGGER = logging.getLogger(__name__)

SKIPPED_ERRORS = {RateError.TOO_SHORT, RateError.IMPLAUSIBLE, RateError.MISSING_INPUT}


def _missing(value: float | None) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def calculate_room_change_rate(
    last_start_temp: float | None,
    current_temp: float | None,
    elapsed_minutes: float | None,
    percent_open: float | None,
    current_rate: float | None,
    settings: DabSettings = DEFAULT_SETTINGS,
) -> RateResult:
    """Normalized temperature change per minute per fully open vent."""
    if any(_missing(v) for v in (last_start_temp, current_temp, elapsed_minutes, percent_open)):
        return RateResult.rejected(RateError.MISSING_INPUT)
    if elapsed_minutes < settings.min_minutes_to_setpoint:
        return RateResult.rejected(RateError.TOO_SHORT)
    if elapsed_minutes < settings.min_runtime_for_rate_calc:
        return RateResult.rejected(RateError.TOO_SHORT)
    if percent_open <= 0:
        return RateResult.rejected(RateError.CLOSED_VENT)

    diff_temps = abs(last_start_temp - current_temp)
    if diff_temps < settings.min_detectable_temp_change:
        if percent_open >= settings.noise_floor_open_percent:
            return RateResult.accepted(settings.min_temp_change_rate)
        return RateResult.rejected(RateError.BELOW_DETECTION)

    if diff_temps < settings.temp_sensor_accuracy:
        diff_temps = max(diff_temps, settings.min_detectable_temp_change)

    rate = diff_temps / elapsed_minutes
    max_rate = max(rate, current_rate or 0)
    approx_rate = (rate / max_rate) / (percent_open / 100) if max_rate else 0

    if approx_rate > settings.max_temp_change_rate:
        return RateResult.rejected(RateError.IMPLAUSIBLE)
    if approx_rate < settings.min_temp_change_rate:
        return RateResult.accepted(settings.min_temp_change_rate)
    return RateResult.accepted(approx_rate)


@dataclass
class RoomSnapshot:
    """Room readings taken when a cycle is finalized."""

    room_id: str
    temperature: float | None
    vent_percents: dict[str, float | None] = field(default_factory=dict)


def aggregate_percent_open(vent_percents: dict[str, float | None], commanded: dict[str, int]) -> int | None:
    """Sum the room's vent openings, capped at 100; None when no vent could be read."""
    total = 0
    known = False
    for vent_id, percent in vent_percents.items():
        if percent is None:
            percent = commanded.get(vent_id)
        if percent is None:
            continue
        known = True
        total += int(percent)
    if not known:
        return None
    return min(total, 100)


class RateLearner:
    """Turns a finished cycle into merged room rates and history samples."""

    def __init__(
        self,
        history: RateHistoryStore,
        state: DabState,
        config: DabConfig,
        settings: DabSettings = DEFAULT_SETTINGS,
    ) -> None:
        self._history = history
        self._state = state
        self._config = config
        self._settings = settings

    def finalize_cycle(
        self,
        cycle: Cycle,
        finished_at: datetime,
        setpoint: float | None,
        snapshots: list[RoomSnapshot],
    ) -> dict[str, float]:
        """Learn from ``cycle`` and return the new rate for every vent that was updated."""
        total_minutes = (finished_at - cycle.started_cycle).total_seconds() / 60.0
        if total_minutes < self._settings.min_minutes_to_setpoint:
            _LOGGER.info(
                "Skipping finalization: cycle ran %.2f minutes, needs at least %s",
                total_minutes,
                self._settings.min_minutes_to_setpoint,
            )
            return {}

        vent_rates: dict[str, float] = {}
        for snapshot in snapshots:
            try:
                rate = self._finalize_room(cycle, snapshot, total_minutes, setpoint, finished_at)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("Failed to finalize room %s", snapshot.room_id)
                if self._config.fail_fast:
                    raise
                continue
            if rate is None:
                continue
            for vent_id in snapshot.vent_percents:
                vent_rates[vent_id] = rate

        running_minutes = (finished_at - cycle.started_running).total_seconds() / 60.0
        previous = self._state.max_running_minutes or self._settings.max_minutes_to_setpoint
        self._state.max_running_minutes = round_big_decimal(
            rolling_average(previous, running_minutes, 1, self._settings.max_running_average_entries), 6
        )
        return vent_rates

    def _finalize_room(
        self,
        cycle: Cycle,
        snapshot: RoomSnapshot,
        total_minutes: float,
        setpoint: float | None,
        finished_at: datetime,
    ) -> float | None:
        room_id = snapshot.room_id
        mode = str(cycle.mode)
        percent_open = aggregate_percent_open(snapshot.vent_percents, cycle.commanded)
        if percent_open is None:
            _LOGGER.debug("Skipping room %s: no vent position available", room_id)
            return None

        current_rate = self._state.get_room_rate(room_id, mode)
        current_temp = snapshot.temperature
        result = calculate_room_change_rate(
            cycle.starting_temps.get(room_id),
            current_temp,
            total_minutes,
            percent_open,
            current_rate,
            self._settings,
        )

        if result.ok:
            new_rate = result.rate
        elif result.error in SKIPPED_ERRORS:
            _LOGGER.debug("Keeping prior rate for room %s (%s)", room_id, result.error)
            return None
        elif result.error == RateError.CLOSED_VENT:
            if current_rate > 0:
                return None
            new_rate = self._state.max_rates.get(mode, 0.0) * self._settings.zero_rate_seed_fraction
            if new_rate <= 0:
                return None
        else:
            at_setpoint = setpoint is not None and has_room_reached_setpoint(mode, setpoint, current_temp)
            if at_setpoint and current_rate > 0:
                new_rate = current_rate
            else:
                new_rate = self._settings.min_temp_change_rate

        merged = rolling_average(
            current_rate, new_rate, percent_open / 100, self._settings.rolling_average_entries
        )
        cleaned = round_big_decimal(merged, 6)
        self._state.set_room_rate(room_id, mode, cleaned)
        if cleaned > self._state.max_rates.get(mode, 0.0):
            self._state.max_rates[mode] = cleaned
        _LOGGER.info("Updated %s rate for room %s: %.6f -> %.6f", mode, room_id, current_rate, cleaned)

        self._history.record_adaptive_mark(
            room_id, mode, cycle.start_hour, cleaned, cycle.seeded_rates.get(room_id, 0.0), finished_at
        )
        self._history.append_sample(room_id, mode, cycle.start_hour, cleaned, finished_at)
        return cleaned
