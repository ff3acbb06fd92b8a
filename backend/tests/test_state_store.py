from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ["STATE_DB_PATH"] = ":memory:"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from farmout.services.state_store import FarmoutStateStore  # noqa: E402


NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def _offer(offer_id: str, driver_id: str = "D1", reservation_id: str = "R1", status: str = "pending") -> dict:
    return {
        "offer_id": offer_id,
        "reservation_id": reservation_id,
        "driver_id": driver_id,
        "status": status,
        "issued_at": NOW.isoformat(),
    }


def test_state_store_persists_across_reopen(tmp_path):
    db_path = tmp_path / "farmout_state.db"

    store = FarmoutStateStore(str(db_path))
    assert store.next_offer_id() == "OFR-000001"
    assert store.next_offer_id() == "OFR-000002"
    store.set_value("dispatch_settings", {"offer_timeout_minutes": 20})
    store.set_value("dispatch_settings", {"offer_timeout_minutes": 25})
    store.record_driver_offer("D1", NOW)
    store.close()

    reopened = FarmoutStateStore(str(db_path))
    assert reopened.db_path == str(db_path)
    assert reopened.next_offer_id() == "OFR-000003"
    assert reopened.get_value("dispatch_settings") == {"offer_timeout_minutes": 25}
    assert reopened.cooldown_ledger() == {"D1": NOW}
    assert reopened.get_value("missing") is None


def test_cooldown_ledger_keeps_latest_write():
    store = FarmoutStateStore(":memory:")
    store.record_driver_offer("D1", NOW - timedelta(hours=5))
    store.record_driver_offer("D1", NOW)
    store.record_driver_offer("D2", NOW - timedelta(hours=1))
    assert store.cooldown_ledger() == {"D1": NOW, "D2": NOW - timedelta(hours=1)}


def test_pending_offer_filters():
    store = FarmoutStateStore(":memory:")
    store.save_offer(_offer("OFR-000001", "D1"), in_app=True)
    store.save_offer(_offer("OFR-000002", "D2"), in_app=True)
    store.save_offer(_offer("OFR-000003", "D1"), in_app=False)
    store.save_offer(_offer("OFR-000004", "D1", status="declined"), in_app=True)

    assert [o["offer_id"] for o in store.list_pending_offers("D1")] == ["OFR-000001"]
    assert len(store.list_pending_offers()) == 2
    assert len(store.list_pending_offers(in_app_only=False)) == 3

    store.save_offer(_offer("OFR-000001", "D1", status="accepted"))
    assert store.get_offer("OFR-000001")["status"] == "accepted"
    assert store.list_pending_offers("D1") == []
    assert store.get_offer("OFR-999999") is None


def test_status_update_keeps_in_app_flag():
    store = FarmoutStateStore(":memory:")
    store.save_offer(_offer("OFR-000001"), in_app=True)
    store.save_offer(_offer("OFR-000001"))
    assert len(store.list_pending_offers("D1")) == 1


def test_expire_stale_offers():
    store = FarmoutStateStore(":memory:")
    store.save_offer(_offer("OFR-000001"), in_app=True)
    store.save_offer(_offer("OFR-000002", "D2"), in_app=False)
    store.save_offer(_offer("OFR-000003", status="accepted"), in_app=True)

    assert store.expire_stale_offers() == 2
    assert store.list_pending_offers(in_app_only=False) == []
    assert [o["status"] for o in store.list_offers("R1")] == ["expired", "expired", "accepted"]
    assert store.expire_stale_offers() == 0


def test_activity_log_and_outbox():
    store = FarmoutStateStore(":memory:")
    first = store.record_activity("R1", "Offer sent to Alice")
    store.record_activity("R2", "Escalated")
    store.record_activity("R1", "Alice declined")

    assert first["event_id"] == "ACT-000001"
    assert [row["message"] for row in store.list_activity("R1")] == ["Alice declined", "Offer sent to Alice"]
    assert len(store.list_activity()) == 3
    assert len(store.list_activity(limit=1)) == 1

    store.add_outbox_message("+13125550001", "hello", "farmout_offer")
    store.add_outbox_message("ops@example.com", "help", "farmout_escalation")
    assert [m["message_id"] for m in store.list_outbox()] == ["MSG-000001", "MSG-000002"]
    assert [m["body"] for m in store.list_outbox(kind="farmout_escalation")] == ["help"]
    assert store.list_outbox(address="+13125550001")[0]["kind"] == "farmout_offer"


def test_unwritable_path_falls_back_to_memory(tmp_path):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("x", encoding="utf-8")

    store = FarmoutStateStore(str(blocker / "state.db"))

    assert store.db_path == ":memory:"
    store.set_value("k", 1)
    assert store.get_value("k") == 1


def test_listing_order_survives_seven_digit_ids():
    store = FarmoutStateStore(":memory:")
    store.record_activity("R1", "first")
    store.add_outbox_message("+13125550001", "first", "farmout_offer")
    store._conn.execute("UPDATE sequences SET next_value = 999999")
    store.record_activity("R1", "second")
    store.record_activity("R1", "third")
    store.add_outbox_message("+13125550001", "second", "farmout_offer")
    store.add_outbox_message("+13125550001", "third", "farmout_offer")

    activity = store.list_activity("R1")
    assert [row["event_id"] for row in activity] == ["ACT-1000000", "ACT-999999", "ACT-000001"]
    assert [row["message"] for row in activity] == ["third", "second", "first"]
    assert [m["body"] for m in store.list_outbox()] == ["first", "second", "third"]
