"""Reservation and driver collaborators.

The engine reaches the reservation store and the driver directory through the
``ReservationGateway`` and ``DriverDirectory`` protocols. The in-memory
implementations below back the HTTP service and the tests; the reservation
store publishes lifecycle events on the event bus as records change.
"""
from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional, Protocol

from farmout.core.logging import logger
from farmout.models.dispatch import (
    Driver,
    DriverAssigned,
    DriverCleared,
    ModeChanged,
    Reservation,
    ReservationRemoved,
    ReservationUpdated,
    StatusChanged,
)
from farmout.services.events import EventBus
from farmout.services.exceptions import ReservationNotFoundError


AUTOMATIC_MODE = "automatic"
MANUAL_MODE = "manual"

TERMINAL_FARMOUT_STATUSES = frozenset(
    {
        "assigned",
        "affiliate_assigned",
        "affiliate_driver_assigned",
        "declined",
        "completed",
        "cancelled",
        "cancelled_by_affiliate",
        "late_cancel",
        "late_cancelled",
        "no_show",
        "in_house",
    }
)

_MODE_ALIASES = {
    "auto": AUTOMATIC_MODE,
    "auto_dispatch": AUTOMATIC_MODE,
    "automatic_dispatch": AUTOMATIC_MODE,
}

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_key(value: Any) -> str:
    text = _NON_ALNUM.sub("_", str(value or "").strip().lower())
    return text.strip("_")


def normalize_mode(value: Any) -> str:
    key = normalize_key(value)
    if not key:
        return MANUAL_MODE
    return _MODE_ALIASES.get(key, key)


def normalize_status(value: Any) -> str:
    return normalize_key(value) or "unassigned"


def is_terminal_status(value: Any) -> bool:
    return normalize_status(value) in TERMINAL_FARMOUT_STATUSES


def should_auto_dispatch(reservation: Reservation) -> bool:
    return (
        normalize_mode(reservation.farmout_mode) == AUTOMATIC_MODE
        and not is_terminal_status(reservation.farmout_status)
    )


def phone_digits(value: Any) -> str:
    """Last ten digits of a phone number, used to match inbound SMS senders."""
    digits = re.sub(r"\D", "", str(value or ""))
    return digits[-10:]


class ReservationGateway(Protocol):
    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        ...

    def list_reservations(self) -> List[Reservation]:
        ...

    def assign_driver(self, reservation_id: str, driver_id: str, vehicle_id: Optional[str]) -> Reservation:
        ...

    def update_farmout_status(self, reservation_id: str, status: str) -> Reservation:
        ...


class DriverDirectory(Protocol):
    def list_drivers(self) -> List[Driver]:
        ...

    def get_driver_by_id(self, driver_id: str) -> Optional[Driver]:
        ...

    def find_driver_by_phone(self, phone: str) -> Optional[Driver]:
        ...


class InMemoryReservationStore:
    """Reservation records held in process, publishing lifecycle events."""

    def __init__(self, bus: Optional[EventBus] = None) -> None:
        self.bus = bus
        self._reservations: Dict[str, Reservation] = {}

    def _publish(self, event: Any) -> None:
        if self.bus is not None:
            self.bus.publish(event)

    def _require(self, reservation_id: str) -> Reservation:
        reservation = self._reservations.get(str(reservation_id))
        if reservation is None:
            raise ReservationNotFoundError(f"Reservation not found: {reservation_id}")
        return reservation

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        return self._reservations.get(str(reservation_id))

    def list_reservations(self) -> List[Reservation]:
        return list(self._reservations.values())

    def load(self, reservations: Iterable[Reservation]) -> None:
        """Seed records without publishing events."""
        for reservation in reservations:
            self._reservations[reservation.id] = reservation

    def upsert(self, reservation: Reservation) -> Reservation:
        self._reservations[reservation.id] = reservation
        self._publish(
            ReservationUpdated(
                reservation=reservation,
                mode=normalize_mode(reservation.farmout_mode),
                status=normalize_status(reservation.farmout_status),
            )
        )
        return reservation

    def set_mode(self, reservation_id: str, mode: str) -> Reservation:
        normalized = normalize_mode(mode)
        updated = self._require(reservation_id).model_copy(update={"farmout_mode": normalized})
        self._reservations[updated.id] = updated
        self._publish(ModeChanged(reservation=updated, mode=normalized, status=normalize_status(updated.farmout_status)))
        return updated

    def set_status(self, reservation_id: str, status: str) -> Reservation:
        updated = self._write_status(reservation_id, status)
        self._publish(
            StatusChanged(
                reservation=updated,
                mode=normalize_mode(updated.farmout_mode),
                status=normalize_status(updated.farmout_status),
            )
        )
        return updated

    def clear_driver(self, reservation_id: str) -> Reservation:
        updated = self._require(reservation_id).model_copy(
            update={"assigned_driver_id": None, "assigned_vehicle_id": None, "farmout_status": "unassigned"}
        )
        self._reservations[updated.id] = updated
        self._publish(
            DriverCleared(reservation=updated, mode=normalize_mode(updated.farmout_mode), status="unassigned")
        )
        return updated

    def remove(self, reservation_id: str) -> None:
        if self._reservations.pop(str(reservation_id), None) is not None:
            self._publish(ReservationRemoved(reservation_id=reservation_id))

    def assign_driver(self, reservation_id: str, driver_id: str, vehicle_id: Optional[str]) -> Reservation:
        updated = self._require(reservation_id).model_copy(
            update={"assigned_driver_id": str(driver_id), "assigned_vehicle_id": vehicle_id}
        )
        self._reservations[updated.id] = updated
        logger.info("Driver assigned to reservation", reservation_id=updated.id, driver_id=str(driver_id))
        self._publish(
            DriverAssigned(
                reservation=updated,
                driver_info={"driver_id": str(driver_id), "vehicle_id": vehicle_id},
            )
        )
        return updated

    def update_farmout_status(self, reservation_id: str, status: str) -> Reservation:
        # Engine write-backs change only the stored status; the engine already
        # knows about them, so no event is published.
        return self._write_status(reservation_id, status)

    def _write_status(self, reservation_id: str, status: str) -> Reservation:
        updated = self._require(reservation_id).model_copy(update={"farmout_status": normalize_status(status)})
        self._reservations[updated.id] = updated
        return updated


class InMemoryDriverDirectory:
    """Driver records held in process."""

    def __init__(self, drivers: Optional[Iterable[Driver]] = None) -> None:
        self._drivers: Dict[str, Driver] = {}
        for driver in drivers or []:
            self.upsert(driver)

    def upsert(self, driver: Driver) -> Driver:
        self._drivers[driver.id] = driver
        return driver

    def remove(self, driver_id: str) -> bool:
        return self._drivers.pop(str(driver_id), None) is not None

    def list_drivers(self) -> List[Driver]:
        return list(self._drivers.values())

    def get_driver_by_id(self, driver_id: str) -> Optional[Driver]:
        return self._drivers.get(str(driver_id))

    def find_driver_by_phone(self, phone: str) -> Optional[Driver]:
        target = phone_digits(phone)
        if not target:
            return None
        for driver in self._drivers.values():
            if driver.phone and phone_digits(driver.phone) == target:
                return driver
        return None
