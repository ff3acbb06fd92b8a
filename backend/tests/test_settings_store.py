"""Tests for dispatch settings normalization and persistence."""
from __future__ import annotations

import os
import sys
from pathlib import Path

os.environ["STATE_DB_PATH"] = ":memory:"

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from farmout.models.settings import (  # noqa: E402
    DEFAULT_OFFER_TEMPLATE,
    DispatchSettings,
    MessageTemplates,
    SettingsUpdateRequest,
)
from farmout.services.settings_store import (  # noqa: E402
    SETTINGS_KEY,
    SettingsRepository,
    parse_recipient_entries,
)
from farmout.services.state_store import FarmoutStateStore  # noqa: E402


def test_defaults():
    settings = DispatchSettings()
    assert settings.offer_timeout_minutes == 15
    assert settings.offer_spacing_minutes == 2
    assert settings.window_start() == (8, 0)
    assert settings.window_end() == (21, 0)
    assert settings.driver_cooldown_hours == 24
    assert settings.on_demand_threshold_minutes == 120
    assert settings.driver_pay_percentage == 70.0
    assert settings.enable_auto_escalation is True
    assert settings.recipients == []
    assert settings.version == 0


def test_numeric_fields_are_clamped_not_rejected():
    settings = DispatchSettings(
        offer_timeout_minutes=500,
        offer_spacing_minutes=-3,
        driver_cooldown_hours=0,
        on_demand_threshold_minutes=99999,
        driver_pay_percentage=150,
    )
    assert settings.offer_timeout_minutes == 60
    assert settings.offer_spacing_minutes == 0
    assert settings.driver_cooldown_hours == 1
    assert settings.on_demand_threshold_minutes == 1440
    assert settings.driver_pay_percentage == 100

    garbage = DispatchSettings(offer_timeout_minutes="soon", driver_pay_percentage="lots")
    assert garbage.offer_timeout_minutes == 15
    assert garbage.driver_pay_percentage == 70.0


def test_window_times_normalize_or_fall_back():
    settings = DispatchSettings(offer_window_start="7:05", offer_window_end="25:00")
    assert settings.offer_window_start == "07:05"
    assert settings.offer_window_end == "21:00"
    assert DispatchSettings(offer_window_start="22:00", offer_window_end="06:00").window_end() == (6, 0)


def test_blank_template_uses_default():
    templates = MessageTemplates(offer="   ", rejection="Thanks anyway")
    assert templates.offer == DEFAULT_OFFER_TEMPLATE
    assert templates.rejection == "Thanks anyway"


def test_update_persists_and_bumps_version():
    store = FarmoutStateStore(":memory:")
    repo = SettingsRepository(store)

    first = repo.update({"offer_timeout_minutes": 30, "enable_sms_offers": None})
    assert first.version == 1
    assert first.offer_timeout_minutes == 30
    assert first.enable_sms_offers is True
    assert first.updated_at is not None

    second = repo.update(SettingsUpdateRequest(driver_cooldown_hours=48, templates=MessageTemplates(expiry="Gone.")))
    assert second.version == 2
    assert second.offer_timeout_minutes == 30
    assert second.driver_cooldown_hours == 48
    assert second.templates.expiry == "Gone."

    reloaded = SettingsRepository(store).load()
    assert reloaded.version == 2
    assert reloaded.driver_cooldown_hours == 48
    assert reloaded.templates.expiry == "Gone."


def test_update_clamps_patch_values():
    repo = SettingsRepository(FarmoutStateStore(":memory:"))
    updated = repo.update(SettingsUpdateRequest(offer_timeout_minutes=0, offer_window_start="nope"))
    assert updated.offer_timeout_minutes == 1
    assert updated.offer_window_start == "08:00"


def test_parse_recipient_entries():
    text = "ops@example.com | +13125550100\nNight Desk | +13125550101; , oncall@example.com\n  |  \n"
    recipients = parse_recipient_entries(text)

    assert len(recipients) == 3
    assert recipients[0].email == "ops@example.com"
    assert recipients[0].phone == "+13125550100"
    assert recipients[1].identifier == "Night Desk"
    assert recipients[1].email is None
    assert recipients[2].email == "oncall@example.com"
    assert recipients[2].phone is None
    assert parse_recipient_entries("") == []


def test_apply_recipient_entries_keeps_raw_text():
    repo = SettingsRepository(FarmoutStateStore(":memory:"))
    saved = repo.apply_recipient_entries("dispatch@example.com")
    assert saved.recipient_entries == "dispatch@example.com"
    assert [r.label for r in saved.recipients] == ["dispatch@example.com"]
    assert repo.current().version == 1


def test_unreadable_blob_loads_defaults():
    store = FarmoutStateStore(":memory:")
    store.set_value(SETTINGS_KEY, {"enable_sms_offers": "maybe", "offer_timeout_minutes": 30})
    assert SettingsRepository(store).load() == DispatchSettings()

    store.set_value(SETTINGS_KEY, "not-a-dict")
    assert SettingsRepository(store).load() == DispatchSettings()
