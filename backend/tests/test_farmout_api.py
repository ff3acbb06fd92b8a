"""API-level tests for the farm-out routers."""
from __future__ import annotations

import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

os.environ["STATE_DB_PATH"] = ":memory:"
os.environ["SMS_GATEWAY_URL"] = ""
os.environ["RANKING_SERVICE_URL"] = ""
os.environ["AUTH_ENABLED"] = "false"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from farmout.core.config import Settings  # noqa: E402
from farmout.main import app  # noqa: E402
from farmout.services.engine import FarmoutEngine, get_engine  # noqa: E402
from farmout.services.ranking import LocalRanker  # noqa: E402
from farmout.services.state_store import FarmoutStateStore  # noqa: E402
from farmout.services.timers import ManualTimerService  # noqa: E402


START = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

client = TestClient(app)


@pytest.fixture()
def engine():
    test_engine = FarmoutEngine(
        settings=Settings(state_db_path=":memory:", dispatch_timezone="UTC", portal_base_url="https://portal.test"),
        store=FarmoutStateStore(":memory:"),
        timers=ManualTimerService(START),
        ranker=LocalRanker(timezone.utc),
    )
    test_engine.start()
    app.dependency_overrides[get_engine] = lambda: test_engine
    yield test_engine
    app.dependency_overrides.clear()
    test_engine.close()


def _add_driver(driver_id: str, name: str, rating: int, phone: str) -> None:
    response = client.post(
        "/drivers",
        json={
            "id": driver_id,
            "name": name,
            "rating": rating,
            "phone": phone,
            "available": True,
            "service_areas": ["Chicago"],
            "preferred_vehicle_types": ["Sedan"],
        },
    )
    assert response.status_code == 200


def _reservation_payload(reservation_id: str = "R1", **extra) -> dict:
    payload = {
        "id": reservation_id,
        "passenger_name": "Jane Doe",
        "pickup_location": "100 Main St, Chicago, IL",
        "dropoff_location": "1 Terminal Way, Rosemont, IL",
        "pickup_date": "2026-03-05",
        "pickup_time": "09:00",
        "vehicle_type": "Sedan",
        "grand_total": 200.0,
        "farmout_mode": "automatic",
    }
    payload.update(extra)
    return payload


def test_health_and_root():
    assert client.get("/health").json() == {"status": "healthy"}
    assert client.get("/").json()["endpoints"]["farmout"] == "/farmout"


def test_offer_decline_then_sms_accept_flow(engine):
    _add_driver("D1", "Alice", 9, "+13125550001")
    _add_driver("D2", "Bob", 5, "(312) 555-0002")

    created = client.post("/farmout/reservations", json=_reservation_payload())
    assert created.status_code == 200
    assert created.json()["dispatch"]["description"] == "Awaiting Alice • next driver in 15m 00s"

    pending = client.get("/farmout/offers/pending", params={"driver_id": "D1"})
    assert pending.status_code == 200
    offers = pending.json()["offers"]
    assert len(offers) == 1
    assert offers[0]["details"]["pickup_city"] == "Chicago"
    assert "https://portal.test/alice?offer=R1" in offers[0]["payload"]

    declined = client.post(
        "/farmout/responses",
        json={"reservation_id": "R1", "driver_id": "D1", "accepted": False},
        headers={"X-Actor-Role": "driver"},
    )
    assert declined.status_code == 200
    job = declined.json()["job"]
    assert job["current_offer"]["driver_id"] == "D2"
    assert job["attempted_drivers"] == ["D1", "D2"]

    reply = client.post("/farmout/sms/incoming", json={"from": "+1 312 555 0002", "body": "yes please"})
    assert reply.status_code == 200
    assert reply.json() == {"outcome": "accepted"}

    reservation = client.get("/farmout/reservations/R1").json()
    assert reservation["reservation"]["assigned_driver_id"] == "D2"
    assert reservation["reservation"]["farmout_status"] == "assigned"
    assert reservation["dispatch"]["job"] is None
    assert reservation["dispatch"]["description"] == "Auto-dispatch inactive for this trip"

    stats = client.get("/farmout/stats").json()
    assert stats["active_jobs"] == 0
    assert stats["offers_sent"] == 2
    assert stats["declined"] == 1
    assert stats["accepted"] == 1

    activity = client.get("/farmout/activity", params={"reservation_id": "R1"}).json()["events"]
    assert any("accepted via sms" in event["message"] for event in activity)

    confirmations = client.get("/farmout/outbox", params={"kind": "farmout_confirmation"}).json()["messages"]
    assert len(confirmations) == 1
    assert confirmations[0]["address"] == "(312) 555-0002"


def test_unmatched_sms_outcomes(engine):
    _add_driver("D1", "Alice", 9, "+13125550001")

    assert client.post("/farmout/sms/incoming", json={"from": "+13125550001", "body": "maybe"}).json() == {
        "outcome": "unrecognized"
    }
    assert client.post("/farmout/sms/incoming", json={"from": "+13125559999", "body": "Y"}).json() == {
        "outcome": "unknown_driver"
    }
    assert client.post("/farmout/sms/incoming", json={"from": "+13125550001", "body": "N"}).json() == {
        "outcome": "no_pending_offer"
    }


def test_settings_patch_clamps_and_requires_admin(engine):
    patched = client.patch("/farmout/settings", json={"offer_timeout_minutes": 500, "offer_spacing_minutes": 0})
    assert patched.status_code == 200
    body = patched.json()
    assert body["offer_timeout_minutes"] == 60
    assert body["offer_spacing_minutes"] == 0
    assert body["version"] == 1

    assert client.get("/farmout/settings").json()["offer_timeout_minutes"] == 60

    forbidden = client.patch(
        "/farmout/settings",
        json={"offer_timeout_minutes": 5},
        headers={"X-Actor-Role": "driver"},
    )
    assert forbidden.status_code == 403
    assert client.get("/farmout/settings").json()["offer_timeout_minutes"] == 60

    recipients = client.put("/farmout/settings/recipients", json={"entries": "ops@example.com | +13125550100"})
    assert recipients.status_code == 200
    assert recipients.json()["recipients"][0]["phone"] == "+13125550100"


def test_manual_reservation_and_explicit_activation(engine):
    _add_driver("D1", "Alice", 9, "+13125550001")

    created = client.post("/farmout/reservations", json=_reservation_payload(farmout_mode="manual"))
    assert created.json()["dispatch"]["job"] is None

    activated = client.post("/farmout/jobs/R1/activate")
    assert activated.status_code == 200
    assert activated.json()["job"]["state"] == "offer_pending"
    assert engine.reservations.get_reservation("R1").farmout_mode == "automatic"

    jobs = client.get("/farmout/jobs").json()["jobs"]
    assert [job["reservation_id"] for job in jobs] == ["R1"]

    stopped = client.post("/farmout/jobs/R1/stop", json={"reason": "Handled by phone."})
    assert stopped.status_code == 200
    assert stopped.json()["job"] is None
    assert client.get("/farmout/offers/pending", params={"driver_id": "D1"}).json()["offers"] == []

    history = client.get("/farmout/reservations/R1/offers")
    assert history.status_code == 200
    assert [(offer["driver_id"], offer["status"]) for offer in history.json()["offers"]] == [("D1", "expired")]


def test_activation_rejected_for_closed_reservation(engine):
    _add_driver("D1", "Alice", 9, "+13125550001")
    client.post("/farmout/reservations", json=_reservation_payload(farmout_mode="manual", farmout_status="completed"))

    rejected = client.post("/farmout/jobs/R1/activate")
    assert rejected.status_code == 400
    assert engine.reservations.get_reservation("R1").farmout_mode == "manual"
    assert not engine.scheduler.has_job("R1")
    assert client.get("/farmout/reservations/R1/offers").json()["offers"] == []


def test_admin_override_assigns_driver(engine):
    _add_driver("D1", "Alice", 9, "+13125550001")
    _add_driver("D2", "Bob", 5, "+13125550002")
    client.post("/farmout/reservations", json=_reservation_payload())

    overridden = client.post("/farmout/jobs/R1/override", json={"driver_id": "D2"})
    assert overridden.status_code == 200
    assert overridden.json()["job"] is None

    reservation = engine.reservations.get_reservation("R1")
    assert reservation.assigned_driver_id == "D2"
    assert engine.store.list_pending_offers() == []


def test_events_endpoint(engine):
    _add_driver("D1", "Alice", 9, "+13125550001")
    client.post("/farmout/reservations", json=_reservation_payload())

    removed = client.post("/farmout/events", json={"type": "reservation_removed", "reservation_id": "R1"})
    assert removed.status_code == 200
    assert removed.json()["job"] is None

    invalid = client.post("/farmout/events", json={"type": "teleported", "reservation_id": "R1"})
    assert invalid.status_code == 400


def test_not_found_responses(engine):
    assert client.get("/farmout/reservations/NOPE").status_code == 404
    assert client.post("/farmout/reservations/NOPE/mode", json={"mode": "automatic"}).status_code == 404
    assert client.post("/farmout/jobs/NOPE/refresh").status_code == 404
    assert client.post("/farmout/jobs/NOPE/activate").status_code == 404
    assert client.get("/farmout/reservations/NOPE/offers").status_code == 404
    assert client.get("/drivers/NOPE").status_code == 404

    client.post("/farmout/reservations", json=_reservation_payload(farmout_mode="manual"))
    assert client.post("/farmout/jobs/R1/override", json={"driver_id": "NOPE"}).status_code == 404
