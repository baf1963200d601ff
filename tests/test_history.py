import csv
from datetime import date, datetime, timedelta, timezone
import io
import json

import pytest

from flair_dab.config import DabConfig
from flair_dab.history import RateHistoryStore, ewma_alpha

NOW = datetime(2026, 1, 15, 8, 30, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


def _store(clock=None, **options):
    options.setdefault("adaptive_boost_enabled", False)
    return RateHistoryStore(DabConfig.from_options(options), clock or _Clock())


def test_average_of_live_samples():
    store = _store()
    store.append_sample("office", "cooling", 8, 0.2, NOW - timedelta(days=2))
    store.append_sample("office", "cooling", 8, 0.4, NOW - timedelta(days=1))
    assert store.average_rate("office", "cooling", 8) == pytest.approx(0.3)


def test_average_rate_is_idempotent():
    store = _store()
    store.append_sample("office", "cooling", 8, 0.2, NOW - timedelta(days=1))
    first = store.average_rate("office", "cooling", 8)
    assert store.average_rate("office", "cooling", 8) == first


def test_non_positive_rates_are_ignored():
    store = _store()
    assert store.append_sample("office", "cooling", 8, 0) is False
    assert store.append_sample("office", "cooling", 8, -1) is False
    assert store.append_sample("office", "cooling", 8, None) is False
    assert store.entries == []


def test_expired_sample_excluded_and_pruned():
    config = DabConfig.from_options({"adaptive_boost_enabled": False, "carry_forward_last_hour": False})
    old = (NOW - timedelta(days=11)).isoformat()
    fresh = (NOW - timedelta(days=1)).isoformat()
    store = RateHistoryStore.from_dict(
        {
            "entries": [
                {"timestamp": old, "roomId": "office", "hvacMode": "heating", "hour": 8, "rate": 0.9},
                {"timestamp": fresh, "roomId": "office", "hvacMode": "heating", "hour": 8, "rate": 0.3},
            ],
            "hourly_rates": {"office": {"heating": {"8": [[old, 0.9], [fresh, 0.3]]}}},
        },
        config,
        _Clock(),
    )

    assert store.average_rate("office", "heating", 8) == pytest.approx(0.3)
    assert store.prune_expired() == 1
    assert store.buckets["office"]["heating"][8] == [(NOW - timedelta(days=1), 0.3)]
    assert [entry.rate for entry in store.entries] == [0.3]
    assert store.average_rate("office", "heating", 8) == pytest.approx(0.3)



def test_smoothed_rate_expires_with_retention():
    clock = _Clock(NOW - timedelta(days=11))
    store = _store(clock, ewma_enabled=True, retention_days=10, carry_forward_last_hour=False)
    store.append_sample("office", "heating", 8, 0.4)
    assert store.average_rate("office", "heating", 8) == pytest.approx(0.4)

    clock.now = NOW
    assert store.average_rate("office", "heating", 8) == 0.0
    store.prune_expired()
    assert store.buckets == {}
    assert store.average_rate("office", "heating", 8) == 0.0


def test_smoothed_rate_ignores_expired_samples_behind_fresh_ones():
    clock = _Clock(NOW - timedelta(days=11))
    store = _store(clock, ewma_enabled=True, ewma_half_life_days=1, retention_days=10)
    store.append_sample("office", "heating", 8, 0.9)
    clock.now = NOW
    store.append_sample("office", "heating", 8, 0.3, NOW - timedelta(hours=1))
    assert store.average_rate("office", "heating", 8) == pytest.approx(0.3)


def test_bucket_keeps_at_most_retention_days_samples():
    store = _store(retention_days=3)
    for minutes in range(5):
        store.append_sample("office", "heating", 8, 0.1 * (minutes + 1), NOW - timedelta(minutes=minutes))
    assert len(store.buckets["office"]["heating"][8]) == 3


def test_carry_forward_uses_previous_hour():
    store = _store()
    store.append_sample("office", "heating", 6, 0.25, NOW - timedelta(days=1))
    assert store.average_rate("office", "heating", 8) == pytest.approx(0.25)
    assert store.average_rate("office", "heating", 5) == pytest.approx(0.25)


def test_carry_forward_disabled_returns_zero():
    store = _store(carry_forward_last_hour=False)
    store.append_sample("office", "heating", 6, 0.25, NOW - timedelta(days=1))
    assert store.average_rate("office", "heating", 8) == 0


def test_unknown_room_has_zero_rate():
    assert _store().average_rate("nowhere", "cooling", 3) == 0


def test_ewma_alpha():
    assert ewma_alpha(1) == pytest.approx(0.5)
    assert ewma_alpha(0) == 1.0
    assert ewma_alpha(3) == pytest.approx(1 - 2 ** (-1 / 3))


def test_ewma_smooths_base_estimate():
    store = _store(ewma_enabled=True, ewma_half_life_days=1)
    store.append_sample("office", "cooling", 8, 0.4, NOW - timedelta(days=2))
    store.append_sample("office", "cooling", 8, 0.8, NOW - timedelta(days=1))
    assert store.smoothed_rate("office", "cooling", 8) == pytest.approx(0.6)
    assert store.average_rate("office", "cooling", 8) == pytest.approx(0.6)


def _seed_bucket(store, rates):
    for index, rate in enumerate(rates):
        store.append_sample("office", "cooling", 8, rate, NOW - timedelta(hours=index + 1))


def test_outlier_clipped_to_mad_bound():
    store = _store(outlier_rejection_enabled=True, outlier_threshold_mad=3, retention_days=30)
    _seed_bucket(store, [0.20, 0.22, 0.18, 0.21, 0.19])

    assert store.append_sample("office", "cooling", 8, 5.0, NOW)

    # median 0.20, MAD 0.01, bound 3 * 1.4826 * 0.01
    clipped = store.buckets["office"]["cooling"][8][-1][1]
    assert clipped == pytest.approx(0.20 + 3 * 1.4826 * 0.01, abs=1e-6)


def test_outlier_rejected_in_reject_mode():
    store = _store(
        outlier_rejection_enabled=True, outlier_mode="reject", outlier_threshold_mad=3, retention_days=30
    )
    _seed_bucket(store, [0.20, 0.22, 0.18, 0.21, 0.19])

    assert store.append_sample("office", "cooling", 8, 5.0, NOW) is False
    assert len(store.buckets["office"]["cooling"][8]) == 5


def test_outlier_check_needs_enough_samples():
    store = _store(outlier_rejection_enabled=True, outlier_mode="reject")
    _seed_bucket(store, [0.20, 0.21, 0.19])
    assert store.append_sample("office", "cooling", 8, 5.0, NOW)


def test_outlier_check_falls_back_to_stdev_when_mad_is_zero():
    store = _store(
        outlier_rejection_enabled=True, outlier_mode="reject", outlier_threshold_mad=2, retention_days=30
    )
    _seed_bucket(store, [0.2, 0.2, 0.2, 0.2, 1.0])
    # median deviation is 0, so mean 0.36 +/- 2 * stdev decides
    assert store.append_sample("office", "cooling", 8, 0.9, NOW)
    assert store.append_sample("office", "cooling", 8, 5.0, NOW) is False


def test_identical_samples_accept_anything():
    store = _store(outlier_rejection_enabled=True, outlier_mode="reject", retention_days=30)
    _seed_bucket(store, [0.2, 0.2, 0.2, 0.2])
    assert store.append_sample("office", "cooling", 8, 3.0, NOW)


def test_adaptive_boost_scales_with_marked_hours():
    clock = _Clock()
    store = _store(clock=clock, adaptive_boost_enabled=True)
    store.append_sample("office", "heating", 8, 0.4, NOW - timedelta(days=1))

    store.record_adaptive_mark("office", "heating", 7, 0.6, 0.4, NOW - timedelta(hours=1))
    assert store.adaptive_boost_percent("office", "heating") == pytest.approx(12.5)
    assert store.average_rate("office", "heating", 8) == pytest.approx(0.4 * 1.125)

    store.record_adaptive_mark("office", "heating", 8, 0.6, 0.4, NOW - timedelta(minutes=10))
    store.record_adaptive_mark("office", "heating", 6, 0.6, 0.4, NOW - timedelta(hours=2))
    assert store.adaptive_boost_percent("office", "heating") == pytest.approx(25.0)


def test_adaptive_mark_requires_threshold():
    store = _store(adaptive_boost_enabled=True)
    assert store.record_adaptive_mark("office", "heating", 8, 0.45, 0.4, NOW) is None
    assert store.record_adaptive_mark("office", "heating", 8, 0.6, 0.0, NOW) is None
    assert store.adaptive_marks == []


def test_adaptive_marks_outside_lookback_are_ignored():
    store = _store(adaptive_boost_enabled=True, adaptive_lookback_periods=2)
    store.record_adaptive_mark("office", "heating", 3, 0.6, 0.4, NOW - timedelta(hours=5))
    assert store.adaptive_boost_percent("office", "heating") == 0


def test_daily_stats_average_yesterday():
    store = _store()
    yesterday = NOW - timedelta(days=1)
    store.append_sample("office", "heating", 6, 0.2, yesterday.replace(hour=6))
    store.append_sample("office", "heating", 9, 0.4, yesterday.replace(hour=9))
    store.append_sample("office", "heating", 8, 0.9, NOW)

    averages = store.aggregate_daily_stats()

    assert averages == {"office": {"heating": pytest.approx(0.3)}}
    assert store.daily_stats["office"]["heating"] == [
        {"date": yesterday.date().isoformat(), "avg": pytest.approx(0.3)}
    ]
    store.aggregate_daily_stats(yesterday.date())
    assert len(store.daily_stats["office"]["heating"]) == 1


def test_daily_stats_for_empty_day():
    assert _store().aggregate_daily_stats(date(2020, 1, 1)) == {}


def test_export_json_and_csv():
    store = _store()
    store.append_sample("office", "heating", 8, 0.25, NOW)

    records = json.loads(store.export_history("json"))
    assert records == [
        {"timestamp": NOW.isoformat(), "roomId": "office", "hvacMode": "heating", "hour": 8, "rate": 0.25}
    ]

    rows = list(csv.DictReader(io.StringIO(store.export_history("csv"))))
    assert rows[0]["roomId"] == "office"
    assert float(rows[0]["rate"]) == 0.25


def test_export_rejects_unknown_format():
    with pytest.raises(ValueError):
        _store().export_history("xml")


def test_persisted_round_trip_keeps_buckets_and_marks():
    store = _store(adaptive_boost_enabled=True, ewma_enabled=True)
    store.append_sample("office", "heating", 8, 0.25, NOW)
    store.record_adaptive_mark("office", "heating", 8, 0.6, 0.4, NOW)

    restored = RateHistoryStore.from_dict(store.as_dict(), store._config, _Clock())

    assert restored.buckets == store.buckets
    assert restored.smoothed_rate("office", "heating", 8) == store.smoothed_rate("office", "heating", 8)
    assert restored.adaptive_marks == store.adaptive_marks
    assert restored.entries == store.entries


def test_clear_removes_everything():
    store = _store(adaptive_boost_enabled=True)
    store.append_sample("office", "heating", 8, 0.25, NOW)
    store.record_adaptive_mark("office", "heating", 8, 0.6, 0.4, NOW)
    store.clear()
    assert store.buckets == {}
    assert store.entries == []
    assert store.adaptive_marks == []
    assert store.average_rate("office", "heating", 8) == 0
