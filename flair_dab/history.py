"""Retention-bounded history of learned rates."""
from __future__ import annotations

from collections.abc import Callable
import csv
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import io
import json
import logging
import statistics
from typing import Any

from .config import DabConfig
from .const import OUTLIER_MODE_REJECT
from .models import AdaptiveMark, RateSample

_LOGGER = logging.getLogger(__name__)

MAD_SCALE = 1.4826
MIN_OUTLIER_SAMPLES = 4
MAX_ADAPTIVE_MARKS = 200
CARRY_FORWARD_HOURS = 23
EXPORT_FIELDS = ["timestamp", "roomId", "hvacMode", "hour", "rate"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ewma_alpha(half_life_days: float) -> float:
    """Smoothing factor for a half-life expressed in samples (one per day per hour slot)."""
    if half_life_days <= 0:
        return 1.0
    return 1 - 2 ** (-1.0 / half_life_days)


@dataclass(frozen=True)
class OutlierDecision:
    action: str
    value: float | None = None


ACCEPT = OutlierDecision("accept")


class RateHistoryStore:
    """Hourly rate buckets per room and mode, with a flat log for export."""

    def __init__(self, config: DabConfig, clock: Callable[[], datetime] = _utcnow) -> None:
        self._config = config
        self._clock = clock
        # room -> mode -> hour -> [(timestamp, rate)]
        self.buckets: dict[str, dict[str, dict[int, list[tuple[datetime, float]]]]] = {}
        self.entries: list[RateSample] = []
        self.adaptive_marks: list[AdaptiveMark] = []
        self.daily_stats: dict[str, dict[str, list[dict[str, Any]]]] = {}

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self._config.retention_days)

    def _cutoff(self, now: datetime | None = None) -> datetime:
        return (now or self._clock()) - self.retention

    def _bucket(self, room_id: str, mode: str, hour: int) -> list[tuple[datetime, float]]:
        return self.buckets.get(room_id, {}).get(str(mode), {}).get(int(hour), [])

    def live_rates(self, room_id: str, mode: str, hour: int, now: datetime | None = None) -> list[float]:
        """Rates in the bucket that are still inside the retention window."""
        cutoff = self._cutoff(now)
        return [rate for ts, rate in self._bucket(room_id, mode, hour) if ts >= cutoff]

    def assess_outlier(self, room_id: str, mode: str, hour: int, candidate: float) -> OutlierDecision:
        rates = self.live_rates(room_id, mode, hour)
        if len(rates) < MIN_OUTLIER_SAMPLES:
            return ACCEPT

        k = self._config.outlier_threshold_mad
        center = statistics.median(rates)
        mad = statistics.median(abs(rate - center) for rate in rates)
        if mad == 0:
            center = statistics.fmean(rates)
            spread = statistics.stdev(rates)
            if spread == 0:
                return ACCEPT
        else:
            spread = MAD_SCALE * mad

        bound = k * spread
        if abs(candidate - center) <= bound:
            return ACCEPT
        if self._config.outlier_mode == OUTLIER_MODE_REJECT:
            return OutlierDecision("reject")
        return OutlierDecision("clip", center + bound if candidate > center else center - bound)

    def append_sample(
        self,
        room_id: str,
        mode: str,
        hour: int,
        rate: float | None,
        timestamp: datetime | None = None,
    ) -> bool:
        """Record a rate for ``(room, mode, hour)``; returns False when nothing was stored."""
        if rate is None or rate <= 0:
            return False
        mode = str(mode)
        hour = int(hour)
        timestamp = timestamp or self._clock()

        if self._config.outlier_enabled:
            decision = self.assess_outlier(room_id, mode, hour, rate)
            if decision.action == "reject":
                _LOGGER.debug("Rejected outlier rate %.4f for %s/%s/%s", rate, room_id, mode, hour)
                return False
            if decision.action == "clip":
                _LOGGER.debug(
                    "Clipped outlier rate %.4f to %.4f for %s/%s/%s",
                    rate,
                    decision.value,
                    room_id,
                    mode,
                    hour,
                )
                rate = decision.value

        bucket = self.buckets.setdefault(room_id, {}).setdefault(mode, {}).setdefault(hour, [])
        bucket.append((timestamp, rate))
        cutoff = self._cutoff()
        bucket[:] = [item for item in bucket if item[0] >= cutoff][-self._config.retention_days :]

        self.entries.append(RateSample(timestamp, room_id, mode, hour, rate))
        return True

    def smoothed_rate(self, room_id: str, mode: str, hour: int, now: datetime | None = None) -> float | None:
        """EWMA over the live samples of one hour slot, oldest first."""
        cutoff = self._cutoff(now)
        samples = sorted(item for item in self._bucket(room_id, mode, hour) if item[0] >= cutoff)
        if not samples:
            return None
        alpha = ewma_alpha(self._config.ewma_half_life_days)
        smoothed = samples[0][1]
        for _, rate in samples[1:]:
            smoothed = alpha * rate + (1 - alpha) * smoothed
        return round(smoothed, 6)

    def _hour_estimate(self, room_id: str, mode: str, hour: int, now: datetime) -> float:
        if self._config.ewma_enabled:
            smoothed = self.smoothed_rate(room_id, mode, hour, now)
            if smoothed is not None:
                return smoothed
        rates = self.live_rates(room_id, mode, hour, now)
        if rates:
            return sum(rates) / len(rates)
        return 0.0

    def base_rate(self, room_id: str, mode: str, hour: int, now: datetime | None = None) -> float:
        """Estimate before adaptive boosting, carrying forward from earlier hours when empty."""
        now = now or self._clock()
        mode = str(mode)
        hour = int(hour) % 24
        estimate = self._hour_estimate(room_id, mode, hour, now)
        if estimate > 0 or not self._config.carry_forward:
            return estimate
        for offset in range(1, CARRY_FORWARD_HOURS + 1):
            estimate = self._hour_estimate(room_id, mode, (hour - offset) % 24, now)
            if estimate > 0:
                return estimate
        return 0.0

    def average_rate(self, room_id: str, mode: str, hour: int, now: datetime | None = None) -> float:
        now = now or self._clock()
        base = self.base_rate(room_id, mode, hour, now)
        if base <= 0:
            return 0.0
        boost = self.adaptive_boost_percent(room_id, mode, now)
        return base * (1 + boost / 100)

    def adaptive_boost_percent(self, room_id: str, mode: str, now: datetime | None = None) -> float:
        if not self._config.adaptive_enabled:
            return 0.0
        now = now or self._clock()
        since = now - timedelta(hours=self._config.adaptive_lookback)
        threshold = self._config.adaptive_threshold_percent
        marked_hours = {
            mark.timestamp.replace(minute=0, second=0, microsecond=0)
            for mark in self.adaptive_marks
            if mark.room_id == room_id
            and mark.hvac_mode == str(mode)
            and since <= mark.timestamp <= now
            and (mark.ratio - 1) * 100 >= threshold
        }
        if not marked_hours:
            return 0.0
        return min(
            self._config.adaptive_max_boost_percent,
            self._config.adaptive_boost_percent * len(marked_hours),
        )

    def record_adaptive_mark(
        self,
        room_id: str,
        mode: str,
        hour: int,
        learned_rate: float,
        seeded_rate: float,
        timestamp: datetime | None = None,
    ) -> AdaptiveMark | None:
        """Mark a large upward correction of the learned rate versus the rate seeded at cycle start."""
        if not self._config.adaptive_enabled or seeded_rate <= 0 or learned_rate <= 0:
            return None
        ratio = learned_rate / seeded_rate
        if (ratio - 1) * 100 < self._config.adaptive_threshold_percent:
            return None
        mark = AdaptiveMark(timestamp or self._clock(), room_id, str(mode), int(hour), round(ratio, 4))
        self.adaptive_marks.append(mark)
        del self.adaptive_marks[:-MAX_ADAPTIVE_MARKS]
        _LOGGER.debug("Adaptive mark for %s/%s hour %s (ratio %.2f)", room_id, mode, hour, ratio)
        return mark

    def prune_expired(self, now: datetime | None = None) -> int:
        """Drop everything older than the retention window; returns the number of samples removed."""
        cutoff = self._cutoff(now)
        removed = 0
        for room_id in list(self.buckets):
            modes = self.buckets[room_id]
            for mode in list(modes):
                hours = modes[mode]
                for hour in list(hours):
                    kept = [item for item in hours[hour] if item[0] >= cutoff]
                    removed += len(hours[hour]) - len(kept)
                    if kept:
                        hours[hour] = kept
                    else:
                        del hours[hour]
                if not hours:
                    del modes[mode]
            if not modes:
                del self.buckets[room_id]

        self.entries = [entry for entry in self.entries if entry.timestamp >= cutoff]
        self.adaptive_marks = [mark for mark in self.adaptive_marks if mark.timestamp >= cutoff]
        if removed:
            _LOGGER.debug("Pruned %s expired rate samples", removed)
        return removed

    def aggregate_daily_stats(self, day: date | None = None) -> dict[str, dict[str, float]]:
        """Average the flat entries of ``day`` (default yesterday) per room and mode."""
        if day is None:
            day = (self._clock() - timedelta(days=1)).date()
        grouped: dict[str, dict[str, list[float]]] = {}
        for entry in self.entries:
            if entry.timestamp.date() != day:
                continue
            grouped.setdefault(entry.room_id, {}).setdefault(entry.hvac_mode, []).append(entry.rate)

        averages: dict[str, dict[str, float]] = {}
        day_key = day.isoformat()
        for room_id, modes in grouped.items():
            for mode, rates in modes.items():
                avg = round(sum(rates) / len(rates), 6)
                averages.setdefault(room_id, {})[mode] = avg
                days = self.daily_stats.setdefault(room_id, {}).setdefault(mode, [])
                days[:] = [item for item in days if item["date"] != day_key]
                days.append({"date": day_key, "avg": avg})
                days.sort(key=lambda item: item["date"])
                del days[: -self._config.retention_days]
        return averages

    def export_history(self, fmt: str = "json") -> str:
        records = [entry.as_record() for entry in sorted(self.entries, key=lambda e: e.timestamp)]
        if fmt == "json":
            return json.dumps(records)
        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=EXPORT_FIELDS, lineterminator="\n")
            writer.writeheader()
            writer.writerows(records)
            return buffer.getvalue()
        raise ValueError(f"Unsupported export format: {fmt}")

    def clear(self) -> None:
        self.buckets.clear()
        self.entries.clear()
        self.adaptive_marks.clear()
        self.daily_stats.clear()

    def as_dict(self) -> dict[str, Any]:
        return {
            "entries": [entry.as_record() for entry in self.entries],
            "hourly_rates": {
                room_id: {
                    mode: {
                        str(hour): [[ts.isoformat(), rate] for ts, rate in samples]
                        for hour, samples in hours.items()
                    }
                    for mode, hours in modes.items()
                }
                for room_id, modes in self.buckets.items()
            },
            "adaptive_marks": [mark.as_dict() for mark in self.adaptive_marks],
            "daily_stats": self.daily_stats,
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any] | None,
        config: DabConfig,
        clock: Callable[[], datetime] = _utcnow,
    ) -> RateHistoryStore:
        store = cls(config, clock)
        if not data:
            return store
        for record in data.get("entries") or []:
            try:
                store.entries.append(RateSample.from_record(record))
            except (KeyError, TypeError, ValueError):
                _LOGGER.debug("Dropping malformed history record: %s", record)
        for room_id, modes in (data.get("hourly_rates") or {}).items():
            for mode, hours in modes.items():
                for hour, samples in hours.items():
                    store.buckets.setdefault(room_id, {}).setdefault(mode, {})[int(hour)] = [
                        (datetime.fromisoformat(ts), float(rate)) for ts, rate in samples
                    ]
        store.adaptive_marks = [AdaptiveMark.from_dict(mark) for mark in data.get("adaptive_marks") or []]
        store.daily_stats = data.get("daily_stats") or {}
        return store
