"""Unit tests for driver candidate ranking."""
from __future__ import annotations

import os
import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

os.environ["STATE_DB_PATH"] = ":memory:"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from farmout.models.dispatch import Driver, Reservation  # noqa: E402
from farmout.models.settings import DispatchSettings  # noqa: E402
from farmout.services.exceptions import RankingUnavailableError  # noqa: E402
from farmout.services.ranking import (  # noqa: E402
    FallbackRanker,
    LocalRanker,
    RemoteRanker,
    driver_rating,
    extract_city,
    is_on_demand,
    pickup_datetime,
)


UTC = timezone.utc
NOW = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)


def _driver(driver_id: str, name: str, rating=5, **extra) -> Driver:
    fields = {
        "id": driver_id,
        "name": name,
        "rating": rating,
        "phone": f"+1312555{int(driver_id[1:]):04d}",
        "available": True,
        "service_areas": ["Chicago"],
        "preferred_vehicle_types": ["Sedan"],
    }
    fields.update(extra)
    return Driver(**fields)


def _reservation(**extra) -> Reservation:
    fields = {
        "id": "R1",
        "pickup_location": "100 Main St, Chicago, IL",
        "dropoff_location": "Naperville",
        "pickup_date": "2026-03-02",
        "pickup_time": "10:30",
        "vehicle_type": "Sedan",
        "grand_total": 100.0,
    }
    fields.update(extra)
    return Reservation(**fields)


def _ids(candidates):
    return [candidate.driver_id for candidate in candidates]


class StubRemoteRanker(RemoteRanker):
    def __init__(self, rows):
        super().__init__(tz=UTC)
        self.rows = rows
        self.payloads = []

    def _fetch_rows(self, payload):
        self.payloads.append(payload)
        if isinstance(self.rows, Exception):
            raise self.rows
        return self.rows


def test_extract_city_uses_second_to_last_part():
    assert extract_city("100 Main St, Chicago, IL 60601") == "Chicago"
    assert extract_city("O'Hare Airport, Chicago") == "O'Hare Airport"
    assert extract_city("Naperville") == "Naperville"
    assert extract_city("") == ""
    assert extract_city(None) == ""


def test_pickup_datetime_and_on_demand_threshold():
    settings = DispatchSettings()
    assert pickup_datetime(_reservation(), UTC) == datetime(2026, 3, 2, 10, 30, tzinfo=UTC)
    assert pickup_datetime(_reservation(pickup_time="2:30 PM"), UTC) == datetime(2026, 3, 2, 14, 30, tzinfo=UTC)
    assert pickup_datetime(_reservation(pickup_date=None), UTC) is None

    assert is_on_demand(_reservation(), settings, NOW, UTC) is True
    assert is_on_demand(_reservation(pickup_time="13:00"), settings, NOW, UTC) is False
    assert is_on_demand(_reservation(pickup_time="13:00"), DispatchSettings(on_demand_threshold_minutes=240), NOW, UTC) is True
    assert is_on_demand(_reservation(pickup_date=""), settings, NOW, UTC) is False


def test_driver_rating_defaults_and_clamps():
    assert driver_rating(None) == 5
    assert driver_rating("abc") == 5
    assert driver_rating(15) == 10
    assert driver_rating(0) == 1
    assert driver_rating("8") == 8


def test_scores_combine_rating_area_vehicle_and_on_demand():
    drivers = [
        _driver("D1", "Alice", 9),
        _driver("D2", "Bob", 9, service_areas=["Evanston"]),
        _driver("D3", "Cara", 9, preferred_vehicle_types=["SUV"]),
        _driver("D4", "Dan", 9, available=False),
    ]
    candidates = LocalRanker(UTC).rank(_reservation(), drivers, {}, DispatchSettings(), NOW)

    scores = {candidate.driver_id: candidate.priority_score for candidate in candidates}
    assert scores == {"D1": 9900, "D4": 9800, "D2": 9400, "D3": 9600}
    assert _ids(candidates) == ["D1", "D4", "D3", "D2"]
    assert candidates[0].matches_service_area and candidates[0].matches_vehicle_type


def test_service_area_substring_matches_both_directions():
    drivers = [
        _driver("D1", "Alice", service_areas=["chicago metro"]),
        _driver("D2", "Bob", service_areas=["CHI"]),
        _driver("D3", "Cara", service_areas=["Milwaukee"]),
    ]
    candidates = LocalRanker(UTC).rank(_reservation(), drivers, {}, DispatchSettings(), NOW)
    matches = {c.driver_id: c.matches_service_area for c in candidates}
    assert matches == {"D1": True, "D2": True, "D3": False}


def test_ties_break_on_rating_then_name_then_id():
    drivers = [
        _driver("D4", "bob", 7),
        _driver("D3", "Bob", 7),
        _driver("D2", "alice", 7),
        _driver("D1", "Zed", 8),
    ]
    settings = DispatchSettings(enable_service_area_matching=False, enable_vehicle_type_matching=False)
    candidates = LocalRanker(UTC).rank(_reservation(pickup_date="2026-03-09"), drivers, {}, settings, NOW)
    assert _ids(candidates) == ["D1", "D2", "D3", "D4"]


def test_rating_priority_disabled_orders_alphabetically():
    drivers = [_driver("D1", "Charlie", 10), _driver("D2", "alice", 1), _driver("D3", "Bob", 5)]
    settings = DispatchSettings(enable_driver_rating_priority=False)
    candidates = LocalRanker(UTC).rank(_reservation(pickup_date="2026-03-09"), drivers, {}, settings, NOW)
    assert _ids(candidates) == ["D2", "D3", "D1"]
    assert all(candidate.priority_score == 800 for candidate in candidates)


def test_ranking_is_deterministic_for_shuffled_input():
    drivers = [_driver(f"D{i}", name, rating) for i, (name, rating) in enumerate(
        [("Alice", 10), ("Bob", 10), ("Charlie", 9), ("Diana", 8), ("Edward", 7), ("Frank", 7), ("Grace", 5)],
        start=1,
    )]
    ranker = LocalRanker(UTC)
    expected = _ids(ranker.rank(_reservation(), drivers, {}, DispatchSettings(), NOW))
    assert expected == ["D1", "D2", "D3", "D4", "D5", "D6", "D7"]

    rng = random.Random(7)
    for _ in range(5):
        shuffled = drivers[:]
        rng.shuffle(shuffled)
        assert _ids(ranker.rank(_reservation(), shuffled, {}, DispatchSettings(), NOW)) == expected


def test_filters_inactive_affiliate_and_cooldown():
    drivers = [
        _driver("D1", "Alice", 9, active=False),
        _driver("D2", "Bob", 9, affiliate_id="AFF-2"),
        _driver("D3", "Cara", 9, affiliate_id="AFF-1"),
        _driver("D4", "Dan", 9),
        _driver("D5", "Eve", 9, last_farmout_offer_at=NOW - timedelta(hours=2)),
        _driver("D6", "Finn", 9),
    ]
    ledger = {"D6": NOW - timedelta(hours=23, minutes=59)}
    candidates = LocalRanker(UTC).rank(_reservation(affiliate_id="AFF-1"), drivers, ledger, DispatchSettings(), NOW)
    assert _ids(candidates) == ["D3", "D4"]

    ledger = {"D6": NOW - timedelta(hours=24)}
    candidates = LocalRanker(UTC).rank(_reservation(affiliate_id="AFF-1"), drivers, ledger, DispatchSettings(), NOW)
    assert "D6" in _ids(candidates)


def test_unreachable_driver_skipped_only_without_in_app_offers():
    drivers = [_driver("D1", "Alice", 9, phone=None), _driver("D2", "Bob", 5)]
    assert _ids(LocalRanker(UTC).rank(_reservation(), drivers, {}, DispatchSettings(), NOW)) == ["D1", "D2"]

    settings = DispatchSettings(enable_in_app_offers=False)
    assert _ids(LocalRanker(UTC).rank(_reservation(), drivers, {}, settings, NOW)) == ["D2"]


def test_remote_ranker_applies_cooldown_and_tie_break():
    rows = [
        {"driver_id": "D2", "driver_name": "Bob", "driver_rating": 8, "priority_score": 8800},
        {"driver_id": "D3", "driver_name": "alice", "driver_rating": 8, "priority_score": 8800},
        {"driver_id": "D1", "driver_name": "Zed", "driver_rating": 10, "priority_score": 10800},
        {"driver_id": "D4", "driver_name": "Cooling", "driver_rating": 10, "priority_score": 20000},
    ]
    drivers = [_driver("D1", "Zed", 10), _driver("D2", "Bob", 8), _driver("D3", "alice", 8), _driver("D4", "Cooling", 10)]
    ranker = StubRemoteRanker(rows)
    ledger = {"D4": NOW - timedelta(hours=1)}

    candidates = ranker.rank(_reservation(), drivers, ledger, DispatchSettings(), NOW)

    assert _ids(candidates) == ["D1", "D3", "D2"]
    assert ranker.payloads[0]["pickup_city"] == "Chicago"
    assert ranker.payloads[0]["is_on_demand"] is True


def test_remote_ranker_empty_result_is_unavailable():
    with pytest.raises(RankingUnavailableError):
        StubRemoteRanker([]).rank(_reservation(), [], {}, DispatchSettings(), NOW)


def test_fallback_ranker_uses_local_on_remote_failure():
    drivers = [_driver("D1", "Alice", 9), _driver("D2", "Bob", 5)]
    local = LocalRanker(UTC)
    expected = _ids(local.rank(_reservation(), drivers, {}, DispatchSettings(), NOW))

    failing = FallbackRanker(local, StubRemoteRanker(RankingUnavailableError("timeout")))
    assert _ids(failing.rank(_reservation(), drivers, {}, DispatchSettings(), NOW)) == expected

    empty = FallbackRanker(local, StubRemoteRanker([]))
    assert _ids(empty.rank(_reservation(), drivers, {}, DispatchSettings(), NOW)) == expected

    working = FallbackRanker(local, StubRemoteRanker([{"driver_id": "D2", "driver_name": "Bob", "priority_score": 1}]))
    assert _ids(working.rank(_reservation(), drivers, {}, DispatchSettings(), NOW)) == ["D2"]
