"""API routes for automatic farm-out dispatch."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import TypeAdapter, ValidationError

from farmout.core.auth import OperatorContext, get_operator_context, require_roles
from farmout.core.logging import logger
from farmout.models.dispatch import (
    AdminOverrideRequest,
    DriverResponseRequest,
    IncomingSmsRequest,
    JobDescription,
    ModeUpdateRequest,
    Reservation,
    ReservationEvent,
    StatusUpdateRequest,
    StopJobRequest,
)
from farmout.services.directory import AUTOMATIC_MODE, is_terminal_status, normalize_mode, normalize_status
from farmout.services.engine import FarmoutEngine, get_engine
from farmout.services.exceptions import ReservationNotFoundError

router = APIRouter(prefix="/farmout", tags=["farmout"])

_event_adapter = TypeAdapter(ReservationEvent)


def _require_reservation(engine: FarmoutEngine, reservation_id: str) -> Reservation:
    reservation = engine.reservations.get_reservation(reservation_id)
    if reservation is None:
        raise HTTPException(status_code=404, detail="Reservation not found")
    return reservation


def _describe(engine: FarmoutEngine, reservation_id: str) -> JobDescription:
    return JobDescription(
        reservation_id=reservation_id,
        description=engine.scheduler.describe(reservation_id),
        job=engine.scheduler.get_job(reservation_id),
    )


# ==================== Reservations (in-memory collaborator) ====================

@router.post("/reservations")
async def upsert_reservation(
    reservation: Reservation,
    context: OperatorContext = Depends(require_roles("dispatcher", "admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    engine.reservations.upsert(reservation)
    logger.info("Reservation upserted", reservation_id=reservation.id, actor=context.actor)
    return {"reservation": engine.reservations.get_reservation(reservation.id), "dispatch": _describe(engine, reservation.id)}


@router.get("/reservations/{reservation_id}")
async def get_reservation(
    reservation_id: str,
    context: OperatorContext = Depends(get_operator_context),
    engine: FarmoutEngine = Depends(get_engine),
):
    reservation = _require_reservation(engine, reservation_id)
    return {"reservation": reservation, "dispatch": _describe(engine, reservation_id)}


@router.get("/reservations/{reservation_id}/offers")
async def reservation_offers(
    reservation_id: str,
    context: OperatorContext = Depends(get_operator_context),
    engine: FarmoutEngine = Depends(get_engine),
):
    _require_reservation(engine, reservation_id)
    return {"offers": engine.store.list_offers(reservation_id)}


@router.delete("/reservations/{reservation_id}")
async def delete_reservation(
    reservation_id: str,
    context: OperatorContext = Depends(require_roles("dispatcher", "admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    _require_reservation(engine, reservation_id)
    engine.reservations.remove(reservation_id)
    return {"deleted": reservation_id}


@router.post("/reservations/{reservation_id}/mode")
async def set_reservation_mode(
    reservation_id: str,
    request: ModeUpdateRequest,
    context: OperatorContext = Depends(require_roles("dispatcher", "admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    try:
        reservation = engine.reservations.set_mode(reservation_id, request.mode)
    except ReservationNotFoundError:
        raise HTTPException(status_code=404, detail="Reservation not found")
    return {"reservation": reservation, "dispatch": _describe(engine, reservation_id)}


@router.post("/reservations/{reservation_id}/status")
async def set_reservation_status(
    reservation_id: str,
    request: StatusUpdateRequest,
    context: OperatorContext = Depends(require_roles("dispatcher", "admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    try:
        reservation = engine.reservations.set_status(reservation_id, request.status)
    except ReservationNotFoundError:
        raise HTTPException(status_code=404, detail="Reservation not found")
    return {"reservation": reservation, "dispatch": _describe(engine, reservation_id)}


@router.post("/reservations/{reservation_id}/clear-driver")
async def clear_reservation_driver(
    reservation_id: str,
    context: OperatorContext = Depends(require_roles("dispatcher", "admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    try:
        reservation = engine.reservations.clear_driver(reservation_id)
    except ReservationNotFoundError:
        raise HTTPException(status_code=404, detail="Reservation not found")
    return {"reservation": reservation, "dispatch": _describe(engine, reservation_id)}


@router.post("/events")
async def publish_reservation_event(
    payload: dict,
    context: OperatorContext = Depends(require_roles("dispatcher", "admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    """Feed a lifecycle event from an external reservation system."""
    try:
        event = _event_adapter.validate_python(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    engine.scheduler.on_reservation_event(event)
    reservation_id = getattr(event, "reservation_id", None) or event.reservation.id
    return _describe(engine, reservation_id)


# ==================== Jobs ====================

@router.get("/jobs")
async def list_jobs(
    context: OperatorContext = Depends(get_operator_context),
    engine: FarmoutEngine = Depends(get_engine),
):
    return {"jobs": engine.scheduler.active_jobs()}


@router.get("/jobs/{reservation_id}", response_model=JobDescription)
async def describe_job(
    reservation_id: str,
    context: OperatorContext = Depends(get_operator_context),
    engine: FarmoutEngine = Depends(get_engine),
):
    return _describe(engine, reservation_id)


@router.post("/jobs/{reservation_id}/activate", response_model=JobDescription)
async def activate_job(
    reservation_id: str,
    context: OperatorContext = Depends(require_roles("dispatcher", "admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    reservation = _require_reservation(engine, reservation_id)
    if is_terminal_status(reservation.farmout_status):
        raise HTTPException(
            status_code=400,
            detail=f"Farm-out status is {normalize_status(reservation.farmout_status)}; auto-dispatch cannot start",
        )
    if normalize_mode(reservation.farmout_mode) != AUTOMATIC_MODE:
        reservation = engine.reservations.set_mode(reservation_id, AUTOMATIC_MODE)
    engine.scheduler.activate(reservation)
    logger.info("Auto-dispatch activation requested", reservation_id=reservation_id, actor=context.actor)
    return _describe(engine, reservation_id)


@router.post("/jobs/{reservation_id}/stop", response_model=JobDescription)
async def stop_job(
    reservation_id: str,
    request: Optional[StopJobRequest] = None,
    context: OperatorContext = Depends(require_roles("dispatcher", "admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    reason = (request.reason if request else "") or "Stopped by dispatcher."
    engine.scheduler.stop(reservation_id, f"{reason} ({context.actor})")
    return _describe(engine, reservation_id)


@router.post("/jobs/{reservation_id}/refresh", response_model=JobDescription)
async def refresh_job(
    reservation_id: str,
    context: OperatorContext = Depends(require_roles("dispatcher", "admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    if not engine.scheduler.has_job(reservation_id):
        raise HTTPException(status_code=404, detail="No active dispatch job for reservation")
    engine.scheduler.refresh_candidates(reservation_id)
    return _describe(engine, reservation_id)


@router.post("/jobs/{reservation_id}/override", response_model=JobDescription)
async def admin_override_accept(
    reservation_id: str,
    request: AdminOverrideRequest,
    context: OperatorContext = Depends(require_roles("dispatcher", "admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    _require_reservation(engine, reservation_id)
    if engine.drivers.get_driver_by_id(request.driver_id) is None:
        raise HTTPException(status_code=404, detail="Driver not found")
    engine.scheduler.admin_override_accept(reservation_id, request.driver_id)
    logger.info("Dispatcher override", reservation_id=reservation_id, driver_id=request.driver_id, actor=context.actor)
    return _describe(engine, reservation_id)


# ==================== Driver responses ====================

@router.post("/responses", response_model=JobDescription)
async def driver_response(
    request: DriverResponseRequest,
    context: OperatorContext = Depends(require_roles("driver", "dispatcher", "admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    engine.scheduler.handle_driver_response(
        request.reservation_id,
        request.driver_id,
        request.accepted,
        request.channel,
    )
    return _describe(engine, request.reservation_id)


@router.post("/sms/incoming")
async def incoming_sms(
    request: IncomingSmsRequest,
    engine: FarmoutEngine = Depends(get_engine),
):
    outcome = engine.scheduler.handle_incoming_sms(request.from_number, request.body)
    return {"outcome": outcome}


@router.get("/offers/pending")
async def pending_offers(
    driver_id: Optional[str] = Query(default=None),
    context: OperatorContext = Depends(get_operator_context),
    engine: FarmoutEngine = Depends(get_engine),
):
    return {"offers": engine.scheduler.pending_offers(driver_id)}


# ==================== Console views ====================

@router.get("/stats")
async def automation_stats(
    context: OperatorContext = Depends(get_operator_context),
    engine: FarmoutEngine = Depends(get_engine),
):
    return engine.scheduler.stats()


@router.get("/activity")
async def automation_activity(
    reservation_id: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    context: OperatorContext = Depends(get_operator_context),
    engine: FarmoutEngine = Depends(get_engine),
):
    return {"events": engine.scheduler.activity(reservation_id, limit)}


@router.get("/outbox")
async def message_outbox(
    address: Optional[str] = Query(default=None),
    kind: Optional[str] = Query(default=None),
    context: OperatorContext = Depends(require_roles("dispatcher", "admin")),
    engine: FarmoutEngine = Depends(get_engine),
):
    return {"messages": engine.store.list_outbox(address=address, kind=kind)}
