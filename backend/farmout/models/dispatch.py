"""Domain models for automatic farm-out dispatch."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    """Lifecycle state of one automatic dispatch job."""

    QUEUED = "queued"
    RUNNING = "running"
    OFFER_PENDING = "offer_pending"
    ESCALATING = "escalating"
    STOPPED = "stopped"


class TimerPurpose(str, Enum):
    """Why a job's single timer is armed."""

    WINDOW_WAIT = "window_wait"
    OFFER_TIMEOUT = "offer_timeout"
    OFFER_SPACING = "offer_spacing"


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class StopOutcome(str, Enum):
    """Why a job left the registry."""

    ASSIGNED = "assigned"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"


class Reservation(BaseModel):
    """The reservation fields the dispatch engine reads."""

    id: str
    confirmation_number: Optional[str] = None
    passenger_name: str = ""
    passenger_count: int = Field(default=1, ge=0)
    pickup_location: str = ""
    dropoff_location: str = ""
    pickup_date: Optional[str] = None
    pickup_time: Optional[str] = None
    vehicle_type: str = ""
    grand_total: float = 0.0
    trip_notes: str = ""
    affiliate_id: Optional[str] = None
    farmout_mode: str = "manual"
    farmout_status: str = "unassigned"
    assigned_driver_id: Optional[str] = None
    assigned_vehicle_id: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)


class Driver(BaseModel):
    """Driver directory entry."""

    id: str
    name: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    rating: Optional[float] = None
    active: bool = True
    available: bool = False
    service_areas: List[str] = Field(default_factory=list)
    preferred_vehicle_types: List[str] = Field(default_factory=list)
    affiliate_id: Optional[str] = None
    assigned_vehicle_id: Optional[str] = None
    portal_slug: Optional[str] = None
    last_farmout_offer_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)

    @property
    def display_name(self) -> str:
        full = f"{self.first_name} {self.last_name}".strip()
        return (self.name or full or "Driver").strip()


class Candidate(BaseModel):
    """A ranked, eligible driver for one reservation."""

    driver_id: str
    name: str
    contact_address: Optional[str] = None
    priority_score: int = 0
    rating: int = 5
    is_available: bool = False
    matches_service_area: bool = False
    matches_vehicle_type: bool = False


class OfferDetails(BaseModel):
    """Trip summary shown to a driver before acceptance."""

    reservation_id: str
    confirmation_number: str = ""
    pickup_date: str = ""
    pickup_time: str = ""
    pickup_city: str = ""
    dropoff_city: str = ""
    pickup_address: str = ""
    dropoff_address: str = ""
    passenger_first_name: str = "Passenger"
    passenger_count: int = 1
    vehicle_type: str = ""
    driver_pay: str = "0.00"
    grand_total: float = 0.0
    notes: str = ""
    timeout_minutes: int = 15
    offered_at: datetime = Field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None


class Offer(BaseModel):
    """One time-boxed offer to one driver."""

    offer_id: str
    reservation_id: str
    driver_id: str
    driver_name: str = ""
    payload: str = ""
    details: OfferDetails
    issued_at: datetime
    expires_at: datetime
    status: OfferStatus = OfferStatus.PENDING
    responded_at: Optional[datetime] = None
    response_channel: Optional[str] = None


class JobSnapshot(BaseModel):
    """Read-only view of an active dispatch job."""

    reservation_id: str
    state: JobState
    candidate_ids: List[str] = Field(default_factory=list)
    cursor: int = 0
    attempted_drivers: List[str] = Field(default_factory=list)
    timer_purpose: Optional[TimerPurpose] = None
    next_deadline: Optional[datetime] = None
    current_offer: Optional[Offer] = None
    activated_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None


# ==================== Reservation lifecycle events ====================

class ModeChanged(BaseModel):
    type: Literal["mode_changed"] = "mode_changed"
    reservation: Reservation
    mode: Optional[str] = None
    status: Optional[str] = None


class StatusChanged(BaseModel):
    type: Literal["status_changed"] = "status_changed"
    reservation: Reservation
    mode: Optional[str] = None
    status: Optional[str] = None


class DriverAssigned(BaseModel):
    type: Literal["driver_assigned"] = "driver_assigned"
    reservation: Reservation
    driver_info: Dict[str, Any] = Field(default_factory=dict)


class DriverCleared(BaseModel):
    type: Literal["driver_cleared"] = "driver_cleared"
    reservation: Reservation
    mode: Optional[str] = None
    status: Optional[str] = None


class ReservationUpdated(BaseModel):
    type: Literal["reservation_updated"] = "reservation_updated"
    reservation: Reservation
    mode: Optional[str] = None
    status: Optional[str] = None


class ReservationRemoved(BaseModel):
    type: Literal["reservation_removed"] = "reservation_removed"
    reservation_id: str

    @field_validator("reservation_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return str(value)


ReservationEvent = Annotated[
    Union[ModeChanged, StatusChanged, DriverAssigned, DriverCleared, ReservationUpdated, ReservationRemoved],
    Field(discriminator="type"),
]


# ==================== API payloads ====================

class DriverResponseRequest(BaseModel):
    """A driver's accept/decline answer to an offer."""

    reservation_id: str
    driver_id: str
    accepted: bool
    channel: str = "in_app"


class IncomingSmsRequest(BaseModel):
    """Inbound SMS reply forwarded by the gateway webhook."""

    from_number: str = Field(alias="from")
    body: str

    model_config = {"populate_by_name": True}


class AdminOverrideRequest(BaseModel):
    driver_id: str


class StopJobRequest(BaseModel):
    reason: str = "Stopped by dispatcher."


class ModeUpdateRequest(BaseModel):
    mode: str


class StatusUpdateRequest(BaseModel):
    status: str


class JobDescription(BaseModel):
    reservation_id: str
    description: str
    job: Optional[JobSnapshot] = None
