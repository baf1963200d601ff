import asyncio
from datetime import timedelta

import pytest
import voluptuous as vol

from conftest import FakeEntry, FakeStore
from flair_dab import coordinator as coordinator_module
from flair_dab.coordinator import DabCoordinator
from flair_dab.models import HvacMode


class _FakeVentController:
    def __init__(self):
        self.requests = []
        self.positions = {}

    def request(self, vent_id, percent):
        self.requests.append((vent_id, percent))

    def read_position(self, vent_id):
        return self.positions.get(vent_id)

    async def async_shutdown(self):
        self.shutdown = True


@pytest.fixture
def tracked(monkeypatch):
    intervals = []

    def _track(hass, action, interval):
        intervals.append((interval, action))
        return lambda: None

    monkeypatch.setattr(coordinator_module, "async_track_time_interval", _track)
    return intervals


@pytest.fixture
def notifications(monkeypatch):
    created = []

    def _create(hass, message, title=None, notification_id=None):
        created.append((title, message, notification_id))

    monkeypatch.setattr(coordinator_module.persistent_notification, "async_create", _create)
    return created


def _coordinator(hass, options, stored=None):
    store = FakeStore(stored)
    controller = _FakeVentController()
    coordinator = DabCoordinator(hass, FakeEntry(options=options), store=store, vent_controller=controller)
    asyncio.run(coordinator.async_initialize())
    return coordinator, store, controller


def test_initialize_restores_persisted_state(hass, two_room_options):
    stored = {"state": {"room_rates": {"office": {"heating": 0.4}}, "manual_overrides": {"cover.office_vent": 25}}}
    coordinator, _, _ = _coordinator(hass, two_room_options, stored)
    assert coordinator.orchestrator.state.get_room_rate("office", "heating") == 0.4
    assert coordinator.orchestrator.state.manual_overrides == {"cover.office_vent": 25}


def test_start_registers_timers(hass, two_room_options, tracked):
    coordinator, _, _ = _coordinator(hass, two_room_options)
    coordinator.async_start()
    assert sorted(interval for interval, _ in tracked) == [timedelta(minutes=1), timedelta(days=1)]


def test_reads_temperatures_in_celsius(hass, two_room_options):
    coordinator, _, _ = _coordinator(hass, two_room_options)
    hass.states.set("sensor.office_temp", "70", {"unit_of_measurement": "°F"})
    hass.states.set("sensor.bedroom_temp", "21.5", {"unit_of_measurement": "°C"})
    hass.states.set("sensor.office_duct", "unknown")

    assert coordinator.read_room_temperature("office") == pytest.approx(21.111, abs=0.001)
    assert coordinator.read_room_temperature("bedroom") == 21.5
    assert coordinator.read_duct_temperature("cover.office_vent") is None
    assert coordinator.read_duct_temperature("cover.bedroom_vent_2") is None
    assert coordinator.read_room_temperature("garage") is None


def test_thermostat_state_prefers_hvac_action(hass, two_room_options):
    coordinator, _, _ = _coordinator(hass, two_room_options)
    hass.states.set("climate.house", "heat_cool", {"hvac_action": "cooling"})
    assert coordinator.read_thermostat_state() == "cooling"
    hass.states.set("climate.house", "off", {})
    assert coordinator.read_thermostat_state() == "off"


def test_setpoint_applies_offset(hass, two_room_options):
    coordinator, _, _ = _coordinator(hass, two_room_options)
    hass.states.set("climate.house", "heat_cool", {"target_temp_low": 20, "target_temp_high": 25})
    assert coordinator.read_setpoint(HvacMode.HEATING) == pytest.approx(20.7)
    assert coordinator.read_setpoint(HvacMode.COOLING) == pytest.approx(24.3)


def test_setpoint_converts_fahrenheit(hass, two_room_options):
    coordinator, _, _ = _coordinator(hass, two_room_options)
    hass.config.units.temperature_unit = "°F"
    hass.states.set("climate.house", "cool", {"temperature": 77})
    hass.states.set("climate.house", "heat", {"temperature": 68, "temperature_unit": "°F"})
    assert coordinator.read_setpoint(HvacMode.HEATING) == pytest.approx(20.7)


def test_setpoint_ignores_unavailable_target(hass, two_room_options):
    coordinator, _, _ = _coordinator(hass, two_room_options)
    hass.states.set("climate.house", "cool", {"temperature": "unavailable"})
    assert coordinator.read_setpoint(HvacMode.COOLING) is None


def test_setpoint_missing_without_thermostat(hass, two_room_options):
    coordinator, _, _ = _coordinator(hass, {**two_room_options, "thermostat_entity": None})
    assert coordinator.read_setpoint(HvacMode.HEATING) is None
    assert coordinator.orchestrator.setpoint(HvacMode.HEATING) == 20.0


def test_vent_commands_go_through_controller(hass, two_room_options):
    coordinator, _, controller = _coordinator(hass, two_room_options)
    controller.positions["cover.office_vent"] = 35.0

    coordinator.request_vent_percent("cover.office_vent", 60)

    assert controller.requests == [("cover.office_vent", 60)]
    assert coordinator.read_vent_percent("cover.office_vent") == 35.0


def test_persist_uses_delayed_save(hass, two_room_options):
    coordinator, store, _ = _coordinator(hass, two_room_options)
    coordinator.persist("state", {"room_rates": {}})
    assert store.saved["state"] == {"room_rates": {}}
    assert coordinator.load("state") == {"room_rates": {}}


def test_timer_failures_are_reported_not_raised(hass, two_room_options, tracked, notifications):
    coordinator, _, _ = _coordinator(hass, two_room_options)

    def _broken():
        raise RuntimeError("sensor exploded")

    coordinator.schedule_every(timedelta(minutes=1), _broken)
    _, tick = tracked[0]
    tick(None)

    assert len(notifications) == 1
    assert "sensor exploded" in notifications[0][1]


def test_run_dab_respects_disabled_flag(hass, two_room_options):
    disabled, _, _ = _coordinator(hass, {**two_room_options, "dab_enabled": False})
    assert disabled.run_dab() is False

    enabled, _, _ = _coordinator(hass, two_room_options)
    assert enabled.run_dab() is False


def test_operations_delegate_to_engine(hass, two_room_options):
    coordinator, _, controller = _coordinator(hass, two_room_options)
    for vent_id in ("cover.office_vent", "cover.bedroom_vent_1", "cover.bedroom_vent_2"):
        controller.positions[vent_id] = 50

    assert coordinator.set_manual_override("cover.office_vent", 35) == 35
    assert coordinator.plan_cycle("cooling")["cover.office_vent"] == 35
    assert coordinator.clear_manual_override() == 1
    assert coordinator.average_rate("office", "cooling", 3) == 0
    assert coordinator.export_history("json") == "[]"
    coordinator.clear_all_learned_data()


def test_shutdown_flushes_store(hass, two_room_options):
    coordinator, store, controller = _coordinator(hass, two_room_options)
    coordinator.orchestrator.state.set_room_rate("office", "heating", 0.3)

    asyncio.run(coordinator.async_shutdown())

    assert controller.shutdown
    assert store.saved["state"]["room_rates"] == {"office": {"heating": 0.3}}


def test_invalid_options_raise(hass):
    with pytest.raises(vol.Invalid):
        DabCoordinator(hass, FakeEntry(options={"vent_granularity": 7}), store=FakeStore())
