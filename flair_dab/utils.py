"""Shared helper utilities."""
from __future__ import annotations

from typing import Any
import asyncio
import math
import time

from homeassistant.const import STATE_UNAVAILABLE, STATE_UNKNOWN


class AsyncRateLimiter:
    """Async rate limiter enforcing a minimum interval between calls."""

    def __init__(self, rate_per_sec: float) -> None:
        if rate_per_sec <= 0:
            raise ValueError("rate_per_sec must be > 0")
        self._min_interval = 1.0 / rate_per_sec
        self._next_time = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            now = time.monotonic()
            if now < self._next_time:
                await asyncio.sleep(self._next_time - now)
            self._next_time = max(now, self._next_time) + self._min_interval


def is_fahrenheit_unit(unit: str | None) -> bool:
    """Return True if the unit represents Fahrenheit."""
    if not unit:
        return False
    normalized = "".join(ch for ch in unit.lower() if ch.isascii())
    return normalized in {"f", "degf", "fahrenheit"}


def fahrenheit_to_celsius(value: float) -> float:
    return (value - 32) * 5 / 9


def coerce_float(value: Any) -> float | None:
    """Parse a state value; unknown, unavailable and non-numeric values give None."""
    if value is None or value in (STATE_UNKNOWN, STATE_UNAVAILABLE):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def to_celsius(value: Any, unit: str | None) -> float | None:
    number = coerce_float(value)
    if number is None:
        return None
    if is_fahrenheit_unit(unit):
        return fahrenheit_to_celsius(number)
    return number
