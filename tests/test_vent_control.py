import asyncio
from datetime import timedelta

import pytest
from homeassistant.exceptions import HomeAssistantError

from flair_dab import vent_control
from flair_dab.vent_control import VentController


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def notifications(monkeypatch):
    created = []

    def _create(hass, message, title=None, notification_id=None):
        created.append({"message": message, "title": title, "notification_id": notification_id})

    monkeypatch.setattr(vent_control.persistent_notification, "async_create", _create)
    return created


def _controller(hass, **kwargs):
    sleeps = []

    async def _sleep(delay):
        sleeps.append(delay)

    kwargs.setdefault("rate_per_sec", 1000.0)
    controller = VentController(hass, sleep=_sleep, **kwargs)
    return controller, sleeps


def _settle_position(hass):
    def _on_call(domain, service, data):
        hass.states.set(data["entity_id"], "open", {"current_position": data["position"]})

    hass.services.on_call = _on_call


def test_set_position_calls_cover_service_and_verifies(hass, notifications):
    _settle_position(hass)
    controller, sleeps = _controller(hass)

    assert asyncio.run(controller.async_set_position("cover.office_vent", 40)) is True
    assert hass.services.calls == [
        ("cover", "set_cover_position", {"entity_id": "cover.office_vent", "position": 40})
    ]
    assert sleeps == [5.0]
    assert controller.discrepancies == {}


def test_request_is_fire_and_forget(hass, notifications):
    _settle_position(hass)
    controller, _ = _controller(hass)

    async def _run():
        controller.request("cover.office_vent", 70)
        assert hass.services.calls == []
        await asyncio.gather(*hass.tasks)

    asyncio.run(_run())
    assert hass.services.calls[0][2]["position"] == 70


def test_retries_with_exponential_backoff(hass, notifications):
    attempts = {"count": 0}

    def _flaky(domain, service, data):
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise HomeAssistantError("vent offline")
        hass.states.set(data["entity_id"], "open", {"current_position": data["position"]})

    hass.services.on_call = _flaky
    controller, sleeps = _controller(hass, failure_threshold=5)

    assert asyncio.run(controller.async_set_position("cover.office_vent", 60)) is True
    assert sleeps[:2] == [1.0, 2.0]
    assert notifications == []


def test_backoff_delay_is_capped():
    controller = VentController(object(), max_delay=60.0)
    assert controller.backoff_delay(0) == 1.0
    assert controller.backoff_delay(3) == 8.0
    assert controller.backoff_delay(10) == 60.0


def test_circuit_opens_after_repeated_failures_and_resets(hass, notifications):
    hass.services.fail_with = HomeAssistantError("timeout")
    clock = _Clock()
    controller, _ = _controller(hass, clock=clock, cooldown=timedelta(minutes=5))

    assert asyncio.run(controller.async_set_position("cover.office_vent", 60)) is False
    assert len(hass.services.calls) == 3
    assert controller.is_circuit_open("cover.office_vent")
    assert notifications[0]["notification_id"] == "flair_dab_circuit_cover.office_vent"

    assert asyncio.run(controller.async_set_position("cover.office_vent", 60)) is False
    assert len(hass.services.calls) == 3

    clock.now += 301
    assert not controller.is_circuit_open("cover.office_vent")


def test_gives_up_after_max_attempts(hass, notifications):
    hass.services.fail_with = HomeAssistantError("timeout")
    controller, _ = _controller(hass, max_attempts=2, failure_threshold=10)

    assert asyncio.run(controller.async_set_position("cover.office_vent", 60)) is False
    assert len(hass.services.calls) == 2
    assert notifications == []


def test_mismatch_is_recorded_as_discrepancy(hass, notifications):
    hass.states.set("cover.office_vent", "open", {"current_position": 20})
    changes = []
    controller, _ = _controller(hass, on_discrepancy_change=lambda: changes.append(True))

    assert asyncio.run(controller.async_set_position("cover.office_vent", 60)) is False
    # initial command plus two resends
    assert len(hass.services.calls) == 3
    assert controller.discrepancies == {"cover.office_vent": {"target": 60, "actual": 20}}
    assert changes == [True]


def test_matching_verification_clears_discrepancy(hass, notifications):
    _settle_position(hass)
    discrepancies = {"cover.office_vent": {"target": 60, "actual": 20}}
    changes = []
    controller, _ = _controller(
        hass, discrepancies=discrepancies, on_discrepancy_change=lambda: changes.append(True)
    )

    assert asyncio.run(controller.async_set_position("cover.office_vent", 60)) is True
    assert discrepancies == {}
    assert changes == [True]


def test_unknown_position_records_minus_one(hass, notifications):
    controller, _ = _controller(hass, verify_attempts=1)
    assert asyncio.run(controller.async_set_position("cover.missing", 30)) is False
    assert controller.discrepancies["cover.missing"] == {"target": 30, "actual": -1}


def test_read_position(hass):
    controller = VentController(hass)
    hass.states.set("cover.a", "open", {"current_position": "45"})
    hass.states.set("cover.b", "unavailable", {"current_position": 45})
    hass.states.set("cover.c", "open", {})
    assert controller.read_position("cover.a") == 45.0
    assert controller.read_position("cover.b") is None
    assert controller.read_position("cover.c") is None
    assert controller.read_position("cover.none") is None


def test_shutdown_cancels_pending_commands(hass, notifications):
    gate = asyncio.Event()

    async def _blocked(*_args, **_kwargs):
        await gate.wait()

    controller, _ = _controller(hass)

    async def _run():
        hass.services.async_call = _blocked
        controller.request("cover.office_vent", 70)
        await asyncio.sleep(0)
        await controller.async_shutdown()
        return [task.cancelled() for task in hass.tasks]

    assert asyncio.run(_run()) == [True]


def test_newer_request_stops_verification_of_older_target(hass, notifications):
    def _settle_low_positions(domain, service, data):
        if data["position"] == 20:
            hass.states.set(data["entity_id"], "open", {"current_position": 20})

    hass.services.on_call = _settle_low_positions
    hass.states.set("cover.office_vent", "open", {"current_position": 0})
    controller = None

    async def _sleep(delay):
        # an override arrives while the first command is being verified
        if [call[2]["position"] for call in hass.services.calls] == [80]:
            controller.request("cover.office_vent", 20)

    controller = VentController(hass, sleep=_sleep, rate_per_sec=1000.0)

    async def _run():
        controller.request("cover.office_vent", 80)
        await asyncio.gather(*hass.tasks)
        await asyncio.gather(*hass.tasks)

    asyncio.run(_run())

    assert [call[2]["position"] for call in hass.services.calls] == [80, 20]
    assert controller.discrepancies == {}


def test_stale_request_is_never_sent(hass, notifications):
    _settle_position(hass)
    controller, _ = _controller(hass)

    async def _run():
        controller.request("cover.office_vent", 80)
        controller.request("cover.office_vent", 20)
        await asyncio.gather(*hass.tasks)

    asyncio.run(_run())

    assert [call[2]["position"] for call in hass.services.calls] == [20]
