"""Home Assistant adapter hosting the DAB engine."""
from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
import logging
from typing import Any

from homeassistant.components import persistent_notification
from homeassistant.config_entries import ConfigEntry
from homeassistant.const import STATE_UNAVAILABLE, STATE_UNKNOWN
from homeassistant.core import HomeAssistant, callback
from homeassistant.helpers.event import async_track_time_interval
from homeassistant.helpers.storage import Store
from homeassistant.util import dt as dt_util

from .config import DabConfig
from .const import DOMAIN, NOTIFICATION_TITLE, STORAGE_VERSION
from .dab import DEFAULT_SETTINGS
from .models import HvacMode
from .orchestrator import CycleOrchestrator
from .utils import to_celsius
from .vent_control import VentController

_LOGGER = logging.getLogger(__name__)

SAVE_DELAY = 10


class DabCoordinator:
    """Reads sensors and drives vents for one config entry."""

    def __init__(
        self,
        hass: HomeAssistant,
        entry: ConfigEntry,
        store: Store | None = None,
        vent_controller: VentController | None = None,
    ) -> None:
        self.hass = hass
        self.entry = entry
        self.config = DabConfig.from_options(dict(entry.options))
        self._store = store or Store(hass, STORAGE_VERSION, f"{DOMAIN}_{entry.entry_id}_dab.json")
        self._data: dict[str, Any] = {}
        self._rooms = {room.room_id: room for room in self.config.rooms}
        self._duct_sensors = {
            vent.vent_id: vent.duct_sensor for room in self.config.rooms for vent in room.vents
        }
        self.vent_controller = vent_controller
        self.orchestrator: CycleOrchestrator | None = None
        self._error_counter = 0

    async def async_initialize(self) -> None:
        """Load persisted state and build the engine."""
        stored = await self._store.async_load()
        self._data = dict(stored or {})
        self.orchestrator = CycleOrchestrator(self, self.config, DEFAULT_SETTINGS)
        if self.vent_controller is None:
            self.vent_controller = VentController(
                self.hass,
                discrepancies=self.orchestrator.state.discrepancies,
                on_discrepancy_change=self.orchestrator.save,
            )

    @callback
    def async_start(self) -> None:
        if self.orchestrator is None:
            raise RuntimeError("Coordinator not initialized")
        self.orchestrator.start()

    async def async_shutdown(self) -> None:
        """Stop timers, cancel pending vent commands and flush state."""
        if self.orchestrator is not None:
            self.orchestrator.stop()
            self.orchestrator.save()
        if self.vent_controller is not None:
            await self.vent_controller.async_shutdown()
        await self._store.async_save(dict(self._data))

    # Platform capabilities used by the orchestrator.

    def _read_temperature(self, entity_id: str | None) -> float | None:
        if not entity_id:
            return None
        state = self.hass.states.get(entity_id)
        if not state or state.state in {STATE_UNKNOWN, STATE_UNAVAILABLE}:
            return None
        return to_celsius(state.state, state.attributes.get("unit_of_measurement"))

    def read_room_temperature(self, room_id: str) -> float | None:
        room = self._rooms.get(room_id)
        return self._read_temperature(room.temp_sensor if room else None)

    def read_duct_temperature(self, vent_id: str) -> float | None:
        return self._read_temperature(self._duct_sensors.get(vent_id))

    def request_vent_percent(self, vent_id: str, percent: int) -> None:
        self.vent_controller.request(vent_id, percent)

    def read_vent_percent(self, vent_id: str) -> float | None:
        return self.vent_controller.read_position(vent_id)

    def read_thermostat_state(self) -> str | None:
        entity_id = self.config.thermostat_entity
        if not entity_id:
            return None
        state = self.hass.states.get(entity_id)
        if not state or state.state in {STATE_UNKNOWN, STATE_UNAVAILABLE}:
            return None
        action = state.attributes.get("hvac_action")
        return str(action) if action else state.state

    def _resolve_temperature_unit(self, unit: str | None) -> str | None:
        if unit:
            return unit
        return self.hass.config.units.temperature_unit

    def read_setpoint(self, mode: HvacMode) -> float | None:
        """Thermostat setpoint for ``mode`` in Celsius, pulled toward comfort by the setpoint offset."""
        entity_id = self.config.thermostat_entity
        if not entity_id:
            return None
        state = self.hass.states.get(entity_id)
        if not state:
            return None
        attrs = state.attributes
        cool = attrs.get("target_temp_high") or attrs.get("cooling_setpoint")
        heat = attrs.get("target_temp_low") or attrs.get("heating_setpoint")
        target = attrs.get("temperature")

        if mode == HvacMode.COOLING:
            setpoint = cool if cool is not None else target
            offset = -DEFAULT_SETTINGS.setpoint_offset
        else:
            setpoint = heat if heat is not None else target
            offset = DEFAULT_SETTINGS.setpoint_offset

        setpoint = to_celsius(setpoint, self._resolve_temperature_unit(attrs.get("temperature_unit")))
        if setpoint is None:
            return None
        return setpoint + offset

    def read_room_active(self, room_id: str) -> bool | None:
        room = self._rooms.get(room_id)
        return room.active if room else None

    def persist(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._store.async_delay_save(lambda: dict(self._data), SAVE_DELAY)

    def load(self, key: str) -> Any:
        return self._data.get(key)

    def now(self) -> datetime:
        return dt_util.now()

    def schedule_every(self, interval: timedelta, action: Callable[[], Any]) -> Callable[[], None]:
        @callback
        def _tick(_now: datetime) -> None:
            self._run_guarded(action)

        return async_track_time_interval(self.hass, _tick, interval)

    def _run_guarded(self, action: Callable[[], Any]) -> None:
        try:
            action()
        except Exception as err:  # noqa: BLE001
            _LOGGER.exception("DAB processing failed: %s", err)
            self._async_notify_error("DAB processing failed", str(err))

    def _async_notify_error(self, title: str, message: str) -> None:
        self._error_counter += 1
        persistent_notification.async_create(
            self.hass,
            message,
            title=f"{NOTIFICATION_TITLE}: {title}",
            notification_id=f"{DOMAIN}_{self.entry.entry_id}_error_{self._error_counter}",
        )

    # Operations exposed to services.

    def _engine(self) -> CycleOrchestrator:
        if self.orchestrator is None:
            raise RuntimeError("Coordinator not initialized")
        return self.orchestrator

    def run_dab(self) -> bool:
        """Force a rebalance of the running cycle."""
        if not self.config.dab_enabled:
            _LOGGER.info("DAB is disabled; ignoring manual run request")
            return False
        return self._engine().force_rebalance()

    def plan_cycle(self, mode: HvacMode | str) -> dict[str, int]:
        return self._engine().plan_cycle(mode)

    def average_rate(self, room_id: str, mode: HvacMode | str, hour: int | None = None) -> float:
        return self._engine().average_rate(room_id, mode, hour)

    def export_history(self, fmt: str = "json") -> str:
        return self._engine().export_history(fmt)

    def clear_all_learned_data(self) -> None:
        self._engine().clear_all_learned_data()

    def set_manual_override(self, vent_id: str, percent: float) -> int:
        return self._engine().set_manual_override(vent_id, percent)

    def clear_manual_override(self, vent_id: str | None = None) -> int:
        return self._engine().clear_manual_override(vent_id)

