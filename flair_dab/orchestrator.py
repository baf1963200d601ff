"""Cycle state machine tying detection, learning and planning together."""
from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
import logging

from .airflow import adjust_for_minimum_airflow, finalize_positions
from .capabilities import DabPlatform
from .config import DabConfig
from .const import STORAGE_KEY_CYCLE, STORAGE_KEY_HISTORY, STORAGE_KEY_STATE
from .dab import (
    DEFAULT_SETTINGS,
    DabSettings,
    clamp,
    has_room_reached_setpoint,
    is_plausible_temperature,
)
from .history import RateHistoryStore
from .learner import RateLearner, RoomSnapshot, aggregate_percent_open
from .mode_detector import HvacModeDetector, ModeTransition, is_fan_active
from .models import Cycle, CycleStatus, DabState, HvacMode, RoomConfig, RoomObservation
from .planner import build_vent_inputs, plan_vent_openings

_LOGGER = logging.getLogger(__name__)

DUCT_EVALUATION_INTERVAL = timedelta(minutes=1)
REBALANCE_EVALUATION_INTERVAL = timedelta(minutes=5)
FORCED_REBALANCE_INTERVAL = timedelta(minutes=30)
DAILY_MAINTENANCE_INTERVAL = timedelta(days=1)


class CycleOrchestrator:
    """Single owner of the DAB state: cycle, learned rates, history and overrides."""

    def __init__(
        self,
        platform: DabPlatform,
        config: DabConfig,
        settings: DabSettings = DEFAULT_SETTINGS,
    ) -> None:
        self._platform = platform
        self._config = config
        self._settings = settings
        self._rooms: dict[str, RoomConfig] = {room.room_id: room for room in config.rooms}
        self._vent_rooms: dict[str, str] = {
            vent_id: room.room_id for room in config.rooms for vent_id in room.vent_ids
        }
        self._timers: list[Callable[[], None]] = []
        self._cycle_timers: list[Callable[[], None]] = []

        self.history = RateHistoryStore.from_dict(platform.load(STORAGE_KEY_HISTORY), config, platform.now)
        self.state = DabState.from_dict(platform.load(STORAGE_KEY_STATE))
        self.detector = HvacModeDetector(settings)
        self.learner = RateLearner(self.history, self.state, config, settings)
        self.cycle: Cycle | None = None
        self._restore_cycle(platform.load(STORAGE_KEY_CYCLE))

    def _restore_cycle(self, data) -> None:
        if not data:
            return
        try:
            cycle = Cycle.from_dict(data)
        except (KeyError, TypeError, ValueError) as err:
            _LOGGER.warning("Discarding unreadable persisted cycle: %s", err)
            return
        if not cycle.mode.is_active:
            return
        self.cycle = cycle
        self.detector.reset(cycle.mode)
        _LOGGER.info("Resumed %s cycle started at %s", cycle.mode, cycle.started_cycle)

    @property
    def status(self) -> CycleStatus:
        return CycleStatus.RUNNING if self.cycle is not None else CycleStatus.IDLE

    @property
    def rooms(self) -> list[RoomConfig]:
        return list(self._rooms.values())

    def vent_ids(self) -> list[str]:
        return list(self._vent_rooms)

    def start(self) -> None:
        self.stop()
        self._timers.append(
            self._platform.schedule_every(DUCT_EVALUATION_INTERVAL, self.evaluate_duct_temperatures)
        )
        self._timers.append(
            self._platform.schedule_every(DAILY_MAINTENANCE_INTERVAL, self.run_daily_maintenance)
        )
        if self.cycle is not None:
            self._schedule_cycle_timers()

    def stop(self) -> None:
        self._cancel_cycle_timers()
        for cancel in self._timers:
            cancel()
        self._timers.clear()

    def _schedule_cycle_timers(self) -> None:
        self._cancel_cycle_timers()
        self._cycle_timers.append(
            self._platform.schedule_every(REBALANCE_EVALUATION_INTERVAL, self.evaluate_rebalancing)
        )
        self._cycle_timers.append(
            self._platform.schedule_every(FORCED_REBALANCE_INTERVAL, self.force_rebalance)
        )

    def _cancel_cycle_timers(self) -> None:
        for cancel in self._cycle_timers:
            cancel()
        self._cycle_timers.clear()

    def save(self) -> None:
        self._platform.persist(STORAGE_KEY_HISTORY, self.history.as_dict())
        self._platform.persist(STORAGE_KEY_STATE, self.state.as_dict())
        self._platform.persist(STORAGE_KEY_CYCLE, self.cycle.as_dict() if self.cycle else None)

    def room_temperature(self, room_id: str) -> float | None:
        temp = self._platform.read_room_temperature(room_id)
        if temp is None:
            return None
        if not is_plausible_temperature(temp, self._settings):
            _LOGGER.debug("Ignoring implausible temperature %s for room %s", temp, room_id)
            return None
        return temp

    def setpoint(self, mode: HvacMode) -> float:
        setpoint = self._platform.read_setpoint(mode)
        if setpoint is not None:
            return setpoint
        if mode == HvacMode.COOLING:
            return self._settings.default_cooling_setpoint
        return self._settings.default_heating_setpoint

    def evaluate_duct_temperatures(self) -> ModeTransition | None:
        readings = []
        for room in self._rooms.values():
            room_temp = self.room_temperature(room.room_id)
            for vent_id in room.vent_ids:
                readings.append((self._platform.read_duct_temperature(vent_id), room_temp))
        thermostat_state = self._platform.read_thermostat_state()
        transition = self.detector.update(readings, thermostat_state)
        if transition is None:
            return None

        if transition.started:
            self._start_cycle(transition.current)
        elif transition.switched:
            self._end_cycle()
            self._start_cycle(transition.current)
        elif transition.stopped:
            self._end_cycle()
            if self._config.fan_only_open_all and is_fan_active(thermostat_state):
                _LOGGER.info("Fan-only mode active; opening all vents")
                self._send_positions({vent_id: 100.0 for vent_id in self._vent_rooms})
        self.save()
        return transition

    def _seed_rates(self, mode: HvacMode, now: datetime) -> dict[str, float]:
        seeded: dict[str, float] = {}
        for room_id in self._rooms:
            rate = self.history.base_rate(room_id, mode, now.hour, now)
            if rate > 0:
                self.state.set_room_rate(room_id, mode, round(rate, 6))
            seeded[room_id] = self.state.get_room_rate(room_id, mode)
        return seeded

    def _starting_temps(self) -> dict[str, float]:
        temps: dict[str, float] = {}
        for room_id in self._rooms:
            temp = self.room_temperature(room_id)
            if temp is not None:
                temps[room_id] = temp
        return temps

    def _start_cycle(self, mode: HvacMode) -> None:
        if not self._config.dab_enabled:
            _LOGGER.debug("DAB disabled; tracking %s without balancing", mode)
            return
        now = self._platform.now()
        self.cycle = Cycle(
            mode=mode,
            started_cycle=now,
            started_running=now,
            start_hour=now.hour,
            starting_temps=self._starting_temps(),
            seeded_rates=self._seed_rates(mode, now),
        )
        _LOGGER.info("Started %s cycle", mode)
        self._schedule_cycle_timers()
        self._apply_plan(mode)

    def _end_cycle(self) -> None:
        self._cancel_cycle_timers()
        cycle = self.cycle
        if cycle is None:
            return
        self._finalize(cycle, self._platform.now())
        self.cycle = None
        _LOGGER.info("Finished %s cycle", cycle.mode)

    def _finalize(self, cycle: Cycle, finished_at: datetime) -> dict[str, float]:
        snapshots = [
            RoomSnapshot(
                room_id=room.room_id,
                temperature=self.room_temperature(room.room_id),
                vent_percents={
                    vent_id: self._platform.read_vent_percent(vent_id) for vent_id in room.vent_ids
                },
            )
            for room in self._rooms.values()
        ]
        return self.learner.finalize_cycle(cycle, finished_at, self.setpoint(cycle.mode), snapshots)

    def evaluate_rebalancing(self) -> bool:
        """Rebalance early when an open, active room already overshot the setpoint."""
        cycle = self.cycle
        if cycle is None:
            return False
        now = self._platform.now()
        min_gap = timedelta(minutes=self._settings.min_runtime_for_rate_calc)
        if self.state.last_rebalance and now - self.state.last_rebalance < min_gap:
            return False

        setpoint = self.setpoint(cycle.mode)
        for room in self._rooms.values():
            if not self._room_active(room):
                continue
            temp = self.room_temperature(room.room_id)
            if temp is None:
                continue
            percent_open = aggregate_percent_open(
                {vent_id: self._platform.read_vent_percent(vent_id) for vent_id in room.vent_ids},
                cycle.commanded,
            )
            if not percent_open or percent_open < self._settings.rebalancing_open_percent:
                continue
            if has_room_reached_setpoint(cycle.mode, setpoint, temp, self._settings.rebalancing_tolerance):
                _LOGGER.info("Rebalancing because %s reached setpoint", room.name)
                self.state.last_rebalance = now
                return self.force_rebalance()
        return False

    def force_rebalance(self) -> bool:
        """Fold the partial cycle into history and re-plan from fresh readings."""
        cycle = self.cycle
        if cycle is None:
            _LOGGER.debug("Skipping rebalance: no HVAC cycle running")
            return False
        now = self._platform.now()
        running_minutes = (now - cycle.started_running).total_seconds() / 60.0
        if running_minutes < self._settings.min_runtime_for_rate_calc:
            _LOGGER.debug("Skipping rebalance: HVAC only running for %.1f minutes", running_minutes)
            return False

        self._finalize(cycle, now)
        cycle.started_cycle = now
        cycle.start_hour = now.hour
        cycle.starting_temps = self._starting_temps()
        cycle.seeded_rates = self._seed_rates(cycle.mode, now)
        self._apply_plan(cycle.mode)
        self.save()
        return True

    def _room_active(self, room: RoomConfig) -> bool:
        active = self._platform.read_room_active(room.room_id)
        return room.active if active is None else active

    def _observations(self, mode: HvacMode, now: datetime) -> list[RoomObservation]:
        observations: list[RoomObservation] = []
        for room in self._rooms.values():
            vent_ids = [
                vent_id for vent_id in room.vent_ids if self._platform.read_vent_percent(vent_id) is not None
            ]
            if not vent_ids:
                _LOGGER.debug("Skipping room %s: no reachable vents", room.room_id)
                continue
            rate = self.state.get_room_rate(room.room_id, mode)
            if rate <= 0:
                rate = self.history.base_rate(room.room_id, mode, now.hour, now)
            # boost applies to planning only, never to the learned rate
            rate *= 1 + self.history.adaptive_boost_percent(room.room_id, mode, now) / 100
            observations.append(
                RoomObservation(
                    room_id=room.room_id,
                    vent_ids=vent_ids,
                    active=self._room_active(room),
                    temperature=self.room_temperature(room.room_id),
                    rate=rate,
                    vent_weights=room.vent_weights,
                    name=room.name,
                )
            )
        return observations

    def plan_cycle(self, mode: HvacMode | str) -> dict[str, int]:
        """Compute final vent positions for ``mode`` without moving anything."""
        mode = HvacMode(mode)
        now = self._platform.now()
        setpoint = self.setpoint(mode)
        inputs = build_vent_inputs(self._observations(mode, now), setpoint)
        max_running = self.state.max_running_minutes or self._settings.max_minutes_to_setpoint
        plan = plan_vent_openings(
            inputs, mode, setpoint, max_running, self._config.close_inactive_rooms, self._settings
        )
        airflow = adjust_for_minimum_airflow(
            plan.inputs,
            mode,
            plan.percents,
            self._config.standard_vents,
            self._config.min_airflow_percent,
            self._settings,
        )
        return self._final_positions(airflow.percents)

    def _final_positions(self, percents: dict[str, float]) -> dict[str, int]:
        return finalize_positions(
            percents,
            self.state.manual_overrides,
            self._config.floor_percent,
            self._config.allow_full_close,
            self._config.vent_granularity,
        )

    def _apply_plan(self, mode: HvacMode) -> None:
        if not self._config.dab_enabled:
            return
        positions = self.plan_cycle(mode)
        if not positions:
            _LOGGER.debug("No vents to adjust for %s", mode)
            return
        self._request_positions(positions)

    def _send_positions(self, percents: dict[str, float]) -> None:
        if not self._config.dab_enabled:
            return
        self._request_positions(self._final_positions(percents))

    def _request_positions(self, positions: dict[str, int]) -> None:
        changed = 0
        for vent_id, percent in positions.items():
            if self.cycle is not None:
                self.cycle.commanded[vent_id] = percent
            current = self._platform.read_vent_percent(vent_id)
            if current is not None and int(current) == percent:
                continue
            self._platform.request_vent_percent(vent_id, percent)
            changed += 1
        if changed == 0:
            _LOGGER.debug("Vent positions already match plan")
        else:
            _LOGGER.info("Requested %s vent change(s)", changed)

    def set_manual_override(self, vent_id: str, percent: float) -> int:
        if vent_id not in self._vent_rooms:
            raise ValueError(f"Unknown vent: {vent_id}")
        pinned = int(clamp(round(percent), 0, 100))
        self.state.manual_overrides[vent_id] = pinned
        if self._config.dab_enabled:
            self._platform.request_vent_percent(vent_id, pinned)
            if self.cycle is not None:
                self.cycle.commanded[vent_id] = pinned
        self.save()
        return pinned

    def clear_manual_override(self, vent_id: str | None = None) -> int:
        """Clear one override, or all of them when ``vent_id`` is None; returns how many were removed."""
        if vent_id is None:
            removed = len(self.state.manual_overrides)
            self.state.manual_overrides.clear()
        else:
            removed = 1 if self.state.manual_overrides.pop(vent_id, None) is not None else 0
        if removed:
            self.save()
        return removed

    def average_rate(self, room_id: str, mode: HvacMode | str, hour: int | None = None) -> float:
        now = self._platform.now()
        return self.history.average_rate(room_id, str(HvacMode(mode)), now.hour if hour is None else hour, now)

    def export_history(self, fmt: str = "json") -> str:
        return self.history.export_history(fmt)

    def clear_all_learned_data(self) -> None:
        self.history.clear()
        self.state.clear_learned()
        if self.cycle is not None:
            self.cycle.seeded_rates.clear()
        self.save()
        _LOGGER.info("Cleared all learned DAB data")

    def run_daily_maintenance(self) -> None:
        self.history.aggregate_daily_stats()
        self.history.prune_expired()
        self.save()
