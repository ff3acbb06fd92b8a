"""Offer delivery and message templating.

The channel turns an offer into driver-facing messages and delivers them over
the enabled channels: a text message through the messaging collaborator and an
in-app entry in the driver portal feed. Delivery is best effort; every failure
is logged and swallowed so the scheduler never sees it.
"""
from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from farmout.core.logging import logger
from farmout.models.dispatch import Driver, Offer, OfferDetails, Reservation
from farmout.models.settings import DispatchSettings
from farmout.services.messaging import MessageSender
from farmout.services.ranking import extract_city
from farmout.services.state_store import FarmoutStateStore


NOTES_LIMIT = 200

_PLACEHOLDER = re.compile(r"\{([a-zA-Z_]+)\}")
_SLUG_INVALID = re.compile(r"[^a-z0-9-]")
_SLUG_DASHES = re.compile(r"-+")


def render(template: str, values: Mapping[str, Any]) -> str:
    """Substitute ``{name}`` placeholders; unknown names are left as written."""
    if not template:
        return ""

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in values:
            return match.group(0)
        value = values[key]
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_replace, template)


def portal_slug(driver: Driver) -> str:
    if driver.portal_slug and driver.portal_slug.strip():
        return driver.portal_slug.strip()
    first = (driver.first_name or "").strip()
    last = (driver.last_name or "").strip()
    if not first and not last:
        parts = driver.display_name.split(" ", 1)
        first, last = parts[0], parts[1] if len(parts) > 1 else ""
    slug = _SLUG_INVALID.sub("-", f"{first}-{last}".lower())
    slug = _SLUG_DASHES.sub("-", slug).strip("-")
    return slug or f"driver-{driver.id}"


def build_offer_details(
    reservation: Reservation,
    settings: DispatchSettings,
    now: datetime,
    reveal: bool = False,
) -> OfferDetails:
    """Trip summary for a driver.

    Offers show cities and the passenger's first name only; ``reveal`` adds the
    full addresses once the driver has accepted.
    """
    pickup_city = extract_city(reservation.pickup_location)
    dropoff_city = extract_city(reservation.dropoff_location)
    passenger = (reservation.passenger_name or "").strip()
    first_name = passenger.split(" ")[0] if passenger else "Passenger"
    pay = reservation.grand_total * settings.driver_pay_percentage / 100
    return OfferDetails(
        reservation_id=reservation.id,
        confirmation_number=reservation.confirmation_number or reservation.id,
        pickup_date=reservation.pickup_date or "",
        pickup_time=reservation.pickup_time or "",
        pickup_city=pickup_city,
        dropoff_city=dropoff_city,
        pickup_address=reservation.pickup_location if reveal else pickup_city,
        dropoff_address=reservation.dropoff_location if reveal else dropoff_city,
        passenger_first_name=first_name or "Passenger",
        passenger_count=reservation.passenger_count or 1,
        vehicle_type=reservation.vehicle_type,
        driver_pay=f"{pay:.2f}",
        grand_total=reservation.grand_total,
        notes=(reservation.trip_notes or "")[:NOTES_LIMIT],
        timeout_minutes=settings.offer_timeout_minutes,
        offered_at=now,
        expires_at=now + timedelta(minutes=settings.offer_timeout_minutes),
    )


class OfferChannel:
    """Render and deliver offer lifecycle messages to drivers."""

    def __init__(self, sender: MessageSender, store: FarmoutStateStore, portal_base_url: str) -> None:
        self.sender = sender
        self.store = store
        self.portal_base_url = (portal_base_url or "").rstrip("/")

    def portal_link(self, driver: Driver, reservation_id: str) -> str:
        return f"{self.portal_base_url}/{portal_slug(driver)}?offer={reservation_id}"

    def template_values(
        self,
        driver: Driver,
        details: OfferDetails,
        timeout_minutes: int,
        passenger_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        display = driver.display_name
        first = (driver.first_name or "").strip() or display.split(" ")[0] or "Driver"
        reference = details.confirmation_number or details.reservation_id
        return {
            "driver_name": display,
            "driver_first_name": first,
            "driver_last_name": driver.last_name or "",
            "pickup_city": details.pickup_city,
            "dropoff_city": details.dropoff_city,
            "pickup_date": details.pickup_date,
            "pickup_time": details.pickup_time,
            "pickup_address": details.pickup_address or details.pickup_city,
            "dropoff_address": details.dropoff_address or details.dropoff_city,
            "pay_amount": details.driver_pay,
            "passenger_name": passenger_name or details.passenger_first_name,
            "passenger_count": details.passenger_count,
            "vehicle_type": details.vehicle_type,
            "reservation_id": reference,
            "confirmation_number": reference,
            "trip_notes": details.notes,
            "portal_link": self.portal_link(driver, details.reservation_id),
            "timeout_minutes": timeout_minutes,
        }

    def render_for(
        self,
        template: str,
        driver: Driver,
        details: OfferDetails,
        timeout_minutes: int,
        passenger_name: Optional[str] = None,
    ) -> str:
        return render(template, self.template_values(driver, details, timeout_minutes, passenger_name))

    def _deliver(self, driver: Driver, body: str, kind: str, settings: DispatchSettings, reservation_id: str) -> Optional[str]:
        if not settings.enable_sms_offers:
            return None
        phone = (driver.phone or "").strip()
        address = phone or (driver.email or "").strip()
        if not address:
            return None
        try:
            self.sender.send_message(address, body, kind)
        except Exception as exc:
            logger.warning(
                "Driver message delivery failed",
                reservation_id=reservation_id,
                driver_id=driver.id,
                kind=kind,
                error=str(exc),
            )
            return None
        return "sms" if phone else "email"

    def send_offer(self, driver: Driver, offer: Offer, settings: DispatchSettings) -> List[str]:
        channels: List[str] = []
        in_app = settings.enable_in_app_offers
        try:
            self.store.save_offer(offer.model_dump(mode="json"), in_app=in_app)
            if in_app:
                channels.append("in_app")
        except Exception as exc:
            logger.warning(
                "Offer could not be recorded",
                reservation_id=offer.reservation_id,
                driver_id=driver.id,
                error=str(exc),
            )
        used = self._deliver(driver, offer.payload, "farmout_offer", settings, offer.reservation_id)
        if used:
            channels.append(used)
        logger.info(
            "Offer delivered",
            reservation_id=offer.reservation_id,
            driver_id=driver.id,
            offer_id=offer.offer_id,
            channels=channels,
        )
        return channels

    def send_confirmation(self, driver: Driver, reservation: Reservation, settings: DispatchSettings, now: datetime) -> List[str]:
        details = build_offer_details(reservation, settings, now, reveal=True)
        body = self.render_for(
            settings.templates.confirmation,
            driver,
            details,
            settings.offer_timeout_minutes,
            passenger_name=reservation.passenger_name or details.passenger_first_name,
        )
        used = self._deliver(driver, body, "farmout_confirmation", settings, reservation.id)
        return [used] if used else []

    def send_rejection(self, driver: Driver, offer: Offer, settings: DispatchSettings) -> List[str]:
        body = self.render_for(settings.templates.rejection, driver, offer.details, offer.details.timeout_minutes)
        used = self._deliver(driver, body, "farmout_rejection", settings, offer.reservation_id)
        return [used] if used else []

    def send_expiry(self, driver: Driver, offer: Offer, settings: DispatchSettings) -> List[str]:
        body = self.render_for(settings.templates.expiry, driver, offer.details, offer.details.timeout_minutes)
        used = self._deliver(driver, body, "farmout_expiry", settings, offer.reservation_id)
        return [used] if used else []

    def record_status(self, offer: Offer) -> None:
        try:
            self.store.save_offer(offer.model_dump(mode="json"))
        except Exception as exc:
            logger.warning(
                "Offer status could not be recorded",
                reservation_id=offer.reservation_id,
                offer_id=offer.offer_id,
                error=str(exc),
            )
