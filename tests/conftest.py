"""Shared fakes for Flair DAB tests."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from flair_dab.config import DabConfig


class FakeState:
    def __init__(self, state, attributes=None):
        self.state = state
        self.attributes = attributes or {}


class FakeStates:
    def __init__(self):
        self._states = {}

    def get(self, entity_id):
        return self._states.get(entity_id)

    def set(self, entity_id, state, attributes=None):
        self._states[entity_id] = FakeState(state, attributes)


class FakeServices:
    def __init__(self):
        self.calls = []
        self.registry = {}
        self.fail_with = None
        self.on_call = None

    async def async_call(self, domain, service, data, blocking=False):
        self.calls.append((domain, service, dict(data)))
        if self.on_call is not None:
            self.on_call(domain, service, data)
        if self.fail_with is not None:
            raise self.fail_with

    def async_register(self, domain, service, handler, schema=None, supports_response=None):
        self.registry[(domain, service)] = SimpleNamespace(
            handler=handler, schema=schema, supports_response=supports_response
        )

    def async_remove(self, domain, service):
        self.registry.pop((domain, service), None)

    def has_service(self, domain, service):
        return (domain, service) in self.registry


class FakeHass:
    def __init__(self, config_dir="/config"):
        self.states = FakeStates()
        self.services = FakeServices()
        self.data = {}
        self.tasks = []
        self.config = SimpleNamespace(
            path=lambda *parts: "/".join([config_dir, *parts]).rstrip("/"),
            is_allowed_path=lambda path: False,
            units=SimpleNamespace(temperature_unit="°C"),
        )

    def async_create_task(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self.tasks.append(task)
        return task

    async def async_add_executor_job(self, func, *args):
        return func(*args)


class FakeStore:
    def __init__(self, data=None):
        self.data = data
        self.saved = None
        self.delay_saves = 0

    async def async_load(self):
        return self.data

    def async_delay_save(self, data_func, delay=0):
        self.delay_saves += 1
        self.saved = data_func()

    async def async_save(self, data):
        self.saved = data


class FakePlatform:
    """In-memory DabPlatform with a manual clock and timer registry."""

    def __init__(self, start=None):
        self.clock = start or datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc)
        self.room_temps = {}
        self.duct_temps = {}
        self.vent_percents = {}
        self.room_active = {}
        self.thermostat_state = None
        self.setpoints = {}
        self.requests = []
        self.stored = {}
        self.timers = {}
        self.cancelled = []

    def read_room_temperature(self, room_id):
        return self.room_temps.get(room_id)

    def read_duct_temperature(self, vent_id):
        return self.duct_temps.get(vent_id)

    def request_vent_percent(self, vent_id, percent):
        self.requests.append((vent_id, percent))
        self.vent_percents[vent_id] = percent

    def read_vent_percent(self, vent_id):
        return self.vent_percents.get(vent_id)

    def read_thermostat_state(self):
        return self.thermostat_state

    def read_setpoint(self, mode):
        return self.setpoints.get(str(mode))

    def read_room_active(self, room_id):
        return self.room_active.get(room_id)

    def persist(self, key, value):
        self.stored[key] = value

    def load(self, key):
        return self.stored.get(key)

    def now(self):
        return self.clock

    def advance(self, **kwargs):
        self.clock += timedelta(**kwargs)

    def schedule_every(self, interval, callback):
        key = (interval, getattr(callback, "__name__", repr(callback)))
        self.timers[key] = callback

        def _cancel():
            self.timers.pop(key, None)
            self.cancelled.append(key)

        return _cancel

    def timer_names(self):
        return sorted(name for _, name in self.timers)


class FakeEntry:
    def __init__(self, entry_id="entry1", options=None, data=None):
        self.entry_id = entry_id
        self.options = options or {}
        self.data = data or {}
        self.unload_callbacks = []

    def async_on_unload(self, func):
        self.unload_callbacks.append(func)

    def add_update_listener(self, listener):
        return lambda: None


TWO_ROOM_OPTIONS = {
    "thermostat_entity": "climate.house",
    "rooms": [
        {
            "room_id": "office",
            "name": "Office",
            "temp_sensor_entity": "sensor.office_temp",
            "vents": [{"vent_id": "cover.office_vent", "duct_sensor_entity": "sensor.office_duct"}],
        },
        {
            "room_id": "bedroom",
            "name": "Bedroom",
            "temp_sensor_entity": "sensor.bedroom_temp",
            "vents": [
                {"vent_id": "cover.bedroom_vent_1", "duct_sensor_entity": "sensor.bedroom_duct"},
                {"vent_id": "cover.bedroom_vent_2"},
            ],
        },
    ],
}


@pytest.fixture
def hass():
    return FakeHass()


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def two_room_options():
    return {
        **TWO_ROOM_OPTIONS,
        "rooms": [
            {**room, "vents": [dict(vent) for vent in room["vents"]]}
            for room in TWO_ROOM_OPTIONS["rooms"]
        ],
    }


@pytest.fixture
def two_room_config(two_room_options):
    return DabConfig.from_options(two_room_options)
