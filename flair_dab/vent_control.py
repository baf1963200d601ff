"""Outbound vent commands: bounded concurrency, retries, circuit breaker and verification."""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta
import logging
import time
from typing import Any

from homeassistant.components import persistent_notification
from homeassistant.const import STATE_UNAVAILABLE, STATE_UNKNOWN
from homeassistant.core import HomeAssistant
from homeassistant.exceptions import HomeAssistantError

from .const import DOMAIN, NOTIFICATION_TITLE
from .utils import AsyncRateLimiter

_LOGGER = logging.getLogger(__name__)

COVER_DOMAIN = "cover"
SERVICE_SET_COVER_POSITION = "set_cover_position"
ATTR_CURRENT_POSITION = "current_position"


class VentController:
    """Drives vent cover entities without blocking the caller."""

    def __init__(
        self,
        hass: HomeAssistant,
        *,
        discrepancies: dict[str, dict[str, int]] | None = None,
        on_discrepancy_change: Callable[[], None] | None = None,
        max_in_flight: int = 8,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        failure_threshold: int = 3,
        cooldown: timedelta = timedelta(minutes=5),
        verify_delay: float = 5.0,
        verify_attempts: int = 3,
        position_tolerance: int = 1,
        rate_per_sec: float = 4.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.hass = hass
        self.discrepancies = discrepancies if discrepancies is not None else {}
        self._on_discrepancy_change = on_discrepancy_change
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._limiter = AsyncRateLimiter(rate_per_sec)
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._failure_threshold = failure_threshold
        self._cooldown = cooldown.total_seconds()
        self._verify_delay = verify_delay
        self._verify_attempts = verify_attempts
        self._tolerance = position_tolerance
        self._clock = clock
        self._sleep = sleep
        self._failures: dict[str, int] = {}
        self._open_until: dict[str, float] = {}
        self._tasks: set[asyncio.Task] = set()
        # latest requested position per vent
        self._targets: dict[str, int] = {}

    def request(self, vent_id: str, percent: int) -> None:
        """Schedule a position change and return immediately."""
        self._targets[vent_id] = int(percent)
        task = self.hass.async_create_task(self._async_apply(vent_id, int(percent)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def read_position(self, vent_id: str) -> float | None:
        state = self.hass.states.get(vent_id)
        if not state or state.state in {STATE_UNKNOWN, STATE_UNAVAILABLE}:
            return None
        position = state.attributes.get(ATTR_CURRENT_POSITION)
        try:
            return float(position) if position is not None else None
        except (TypeError, ValueError):
            return None

    def is_circuit_open(self, vent_id: str) -> bool:
        until = self._open_until.get(vent_id)
        if until is None:
            return False
        if self._clock() >= until:
            self._open_until.pop(vent_id, None)
            _LOGGER.info("Circuit for vent %s closed after cooldown", vent_id)
            return False
        return True

    def backoff_delay(self, attempt: int) -> float:
        return min(self._max_delay, self._base_delay * 2**attempt)

    def _superseded(self, vent_id: str, target: int) -> bool:
        latest = self._targets.get(vent_id)
        if latest is not None and latest != target:
            _LOGGER.debug("Dropping vent %s command for %s%%; %s%% requested since", vent_id, target, latest)
            return True
        return False

    async def async_set_position(self, vent_id: str, percent: int) -> bool:
        self._targets[vent_id] = int(percent)
        return await self._async_apply(vent_id, int(percent))

    async def _async_apply(self, vent_id: str, percent: int) -> bool:
        if self.is_circuit_open(vent_id):
            _LOGGER.warning("Skipping vent %s command: circuit open", vent_id)
            return False
        if not await self._async_send_with_retry(vent_id, percent):
            return False
        return await self._async_verify(vent_id, percent)

    async def _async_send(self, vent_id: str, percent: int) -> None:
        async with self._semaphore:
            await self._limiter.acquire()
            await self.hass.services.async_call(
                COVER_DOMAIN,
                SERVICE_SET_COVER_POSITION,
                {"entity_id": vent_id, "position": int(percent)},
                blocking=True,
            )

    async def _async_send_with_retry(self, vent_id: str, percent: int) -> bool:
        for attempt in range(self._max_attempts):
            if self._superseded(vent_id, percent):
                return False
            try:
                await self._async_send(vent_id, percent)
            except HomeAssistantError as err:
                _LOGGER.debug("Vent %s command failed (attempt %s): %s", vent_id, attempt + 1, err)
                if self._record_failure(vent_id):
                    return False
                if attempt + 1 < self._max_attempts:
                    await self._sleep(self.backoff_delay(attempt))
                continue
            self._failures.pop(vent_id, None)
            return True
        _LOGGER.warning("Giving up on vent %s after %s attempts", vent_id, self._max_attempts)
        return False

    def _record_failure(self, vent_id: str) -> bool:
        """Count a failure; returns True when the circuit opened."""
        failures = self._failures.get(vent_id, 0) + 1
        if failures < self._failure_threshold:
            self._failures[vent_id] = failures
            return False
        self._failures.pop(vent_id, None)
        self._open_until[vent_id] = self._clock() + self._cooldown
        message = (
            f"Vent {vent_id} failed {failures} times in a row; "
            f"pausing commands for {int(self._cooldown // 60)} minutes."
        )
        _LOGGER.warning("%s", message)
        persistent_notification.async_create(
            self.hass,
            message,
            title=NOTIFICATION_TITLE,
            notification_id=f"{DOMAIN}_circuit_{vent_id}",
        )
        return True

    async def _async_verify(self, vent_id: str, target: int) -> bool:
        actual: float | None = None
        for attempt in range(self._verify_attempts):
            await self._sleep(self._verify_delay)
            if self._superseded(vent_id, target):
                return False
            actual = self.read_position(vent_id)
            if actual is not None and abs(actual - target) <= self._tolerance:
                if self.discrepancies.pop(vent_id, None) is not None:
                    self._discrepancy_changed()
                return True
            if attempt + 1 < self._verify_attempts:
                _LOGGER.debug("Vent %s at %s, expected %s; resending", vent_id, actual, target)
                try:
                    await self._async_send(vent_id, target)
                except HomeAssistantError as err:
                    _LOGGER.debug("Vent %s resend failed: %s", vent_id, err)

        self.discrepancies[vent_id] = {"target": int(target), "actual": int(actual) if actual is not None else -1}
        _LOGGER.warning("Vent %s did not reach %s%% (reported %s)", vent_id, target, actual)
        self._discrepancy_changed()
        return False

    def _discrepancy_changed(self) -> None:
        if self._on_discrepancy_change is not None:
            self._on_discrepancy_change()

    async def async_shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
