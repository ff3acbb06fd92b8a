"""Dispatch tunables for automatic farm-out.

Every numeric field is clamped into its accepted range instead of being rejected,
and unparsable values fall back to the default, so callers never need to
validate before saving.
"""
from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator


DEFAULT_OFFER_TEMPLATE = (
    "New Trip Available!\n"
    "{pickup_date} at {pickup_time}\n"
    "From: {pickup_city}\n"
    "To: {dropoff_city}\n"
    "Payout: ${pay_amount}\n"
    "Expires in {timeout_minutes} min\n"
    "\n"
    "Reply Y to accept or N to decline: {portal_link}"
)
DEFAULT_CONFIRMATION_TEMPLATE = (
    "Confirmed! Trip #{reservation_id} on {pickup_date}. Pickup: {pickup_address} at {pickup_time}. "
    "Passenger: {passenger_name}. Full details in app: {portal_link}"
)
DEFAULT_REJECTION_TEMPLATE = "No worries! The trip has been offered to another driver."
DEFAULT_EXPIRY_TEMPLATE = "The offer for {pickup_city} to {dropoff_city} on {pickup_date} has expired."

_TIME_OF_DAY = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::\d{2})?\s*$")


def clamp_number(value: Any, minimum: float, maximum: float, fallback: float) -> float:
    """Clamp ``value`` into ``[minimum, maximum]``; non-numeric input yields ``fallback``."""
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(numeric):
        return fallback
    return min(max(numeric, minimum), maximum)


def parse_time_of_day(value: Any) -> Optional[tuple[int, int]]:
    match = _TIME_OF_DAY.match(str(value or ""))
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return hour, minute


class EscalationRecipient(BaseModel):
    """Admin/dispatch contact notified when automatic dispatch gives up."""

    identifier: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def label(self) -> str:
        return self.email or self.phone or self.identifier or "recipient"


class MessageTemplates(BaseModel):
    offer: str = DEFAULT_OFFER_TEMPLATE
    confirmation: str = DEFAULT_CONFIRMATION_TEMPLATE
    rejection: str = DEFAULT_REJECTION_TEMPLATE
    expiry: str = DEFAULT_EXPIRY_TEMPLATE

    @field_validator("offer", "confirmation", "rejection", "expiry", mode="before")
    @classmethod
    def _blank_uses_default(cls, value: Any, info) -> str:
        if value is None or not str(value).strip():
            return cls.model_fields[info.field_name].default
        return str(value)


# field -> (minimum, maximum, default)
INTEGER_BOUNDS = {
    "offer_timeout_minutes": (1, 60, 15),
    "offer_spacing_minutes": (0, 60, 2),
    "driver_cooldown_hours": (1, 168, 24),
    "on_demand_threshold_minutes": (0, 1440, 120),
}


class DispatchSettings(BaseModel):
    """Global automation settings, versioned by last write."""

    offer_timeout_minutes: int = 15
    offer_spacing_minutes: int = 2
    offer_window_start: str = "08:00"
    offer_window_end: str = "21:00"
    driver_cooldown_hours: int = 24
    on_demand_threshold_minutes: int = 120
    driver_pay_percentage: float = 70.0

    enable_driver_rating_priority: bool = True
    enable_service_area_matching: bool = True
    enable_vehicle_type_matching: bool = True
    enable_on_demand_priority: bool = True
    enable_sms_offers: bool = True
    enable_in_app_offers: bool = True
    enable_auto_escalation: bool = True

    recipient_entries: str = ""
    recipients: List[EscalationRecipient] = Field(default_factory=list)
    templates: MessageTemplates = Field(default_factory=MessageTemplates)

    version: int = 0
    updated_at: Optional[datetime] = None

    @field_validator(*INTEGER_BOUNDS.keys(), mode="before")
    @classmethod
    def _clamp_integer(cls, value: Any, info) -> int:
        minimum, maximum, default = INTEGER_BOUNDS[info.field_name]
        return int(round(clamp_number(value, minimum, maximum, default)))

    @field_validator("driver_pay_percentage", mode="before")
    @classmethod
    def _clamp_pay(cls, value: Any) -> float:
        return clamp_number(value, 0, 100, 70.0)

    @field_validator("offer_window_start", "offer_window_end", mode="before")
    @classmethod
    def _normalize_window(cls, value: Any, info) -> str:
        parsed = parse_time_of_day(value)
        if parsed is None:
            return cls.model_fields[info.field_name].default
        return f"{parsed[0]:02d}:{parsed[1]:02d}"

    @field_validator("recipients", mode="before")
    @classmethod
    def _recipients_list(cls, value: Any) -> Any:
        return value if isinstance(value, list) else []

    @field_validator("templates", mode="before")
    @classmethod
    def _templates_dict(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, MessageTemplates)) else {}

    def window_start(self) -> tuple[int, int]:
        return parse_time_of_day(self.offer_window_start) or (8, 0)

    def window_end(self) -> tuple[int, int]:
        return parse_time_of_day(self.offer_window_end) or (21, 0)

    def stamped(self) -> "DispatchSettings":
        """Copy with the version bumped, as stored by the last writer."""
        return self.model_copy(update={"version": self.version + 1, "updated_at": datetime.now(timezone.utc)})


class SettingsUpdateRequest(BaseModel):
    """Partial settings update; omitted fields keep their current value."""

    offer_timeout_minutes: Optional[Any] = None
    offer_spacing_minutes: Optional[Any] = None
    offer_window_start: Optional[str] = None
    offer_window_end: Optional[str] = None
    driver_cooldown_hours: Optional[Any] = None
    on_demand_threshold_minutes: Optional[Any] = None
    driver_pay_percentage: Optional[Any] = None
    enable_driver_rating_priority: Optional[bool] = None
    enable_service_area_matching: Optional[bool] = None
    enable_vehicle_type_matching: Optional[bool] = None
    enable_on_demand_priority: Optional[bool] = None
    enable_sms_offers: Optional[bool] = None
    enable_in_app_offers: Optional[bool] = None
    enable_auto_escalation: Optional[bool] = None
    templates: Optional[MessageTemplates] = None


class RecipientEntriesRequest(BaseModel):
    entries: str = ""
