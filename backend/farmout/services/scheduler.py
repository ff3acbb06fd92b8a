"""Automatic farm-out job scheduler.

One ``DispatchJob`` per reservation in automatic mode lives in the scheduler's
registry. Every entry point (lifecycle events, driver responses, fired timers,
dispatcher commands) is queued and handled to completion before the next one
starts, so a collaborator that calls back into the scheduler mid-step only
enqueues work. Each job holds at most one timer; arming a new one always goes
through ``DispatchJob.replace_timer``.
"""
from __future__ import annotations

import itertools
import re
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from farmout.core.logging import logger
from farmout.models.dispatch import (
    Candidate,
    DriverAssigned,
    DriverCleared,
    JobSnapshot,
    JobState,
    ModeChanged,
    Offer,
    OfferStatus,
    Reservation,
    ReservationRemoved,
    ReservationUpdated,
    StatusChanged,
    StopOutcome,
    TimerPurpose,
)
from farmout.models.settings import DispatchSettings
from farmout.services.directory import (
    AUTOMATIC_MODE,
    DriverDirectory,
    ReservationGateway,
    is_terminal_status,
    normalize_mode,
    normalize_status,
    should_auto_dispatch,
)
from farmout.services.escalation import EscalationNotifier, EscalationResult, reservation_summary
from farmout.services.events import EventBus
from farmout.services.offer_channel import OfferChannel, build_offer_details
from farmout.services.ranking import CandidateRanker, is_on_demand
from farmout.services.settings_store import SettingsRepository
from farmout.services.state_store import FarmoutStateStore
from farmout.services.timers import (
    TimerHandle,
    TimerService,
    format_countdown,
    format_minutes,
    is_within_window,
    next_window_open,
)


ESCALATED_STATUS = "escalated"
OFFERED_STATUS = "offered"
ASSIGNED_STATUS = "assigned"

_ACCEPT_REPLIES = {"Y", "YES", "ACCEPT"}
_DECLINE_REPLIES = {"N", "NO", "DECLINE", "REJECT"}

# Shared across jobs so a callback armed for a stopped job can never match a
# later job for the same reservation.
_timer_tokens = itertools.count(1)
_rank_tokens = itertools.count(1)


def parse_sms_reply(body: str) -> Optional[bool]:
    """``True`` for an accept reply, ``False`` for a decline, ``None`` otherwise."""
    words = re.sub(r"[^A-Z ]", " ", str(body or "").upper()).split()
    if not words:
        return None
    reply = words[0]
    if reply in _ACCEPT_REPLIES:
        return True
    if reply in _DECLINE_REPLIES:
        return False
    return None


@dataclass
class DispatchJob:
    """Mutable record of one reservation's automatic dispatch."""

    reservation_id: str
    state: JobState = JobState.QUEUED
    candidates: List[Candidate] = field(default_factory=list)
    ranked: bool = False
    cursor: int = 0
    attempted_drivers: Set[str] = field(default_factory=set)
    cooldown_ledger: Dict[str, datetime] = field(default_factory=dict)
    pending_timer: Optional[TimerHandle] = None
    timer_purpose: Optional[TimerPurpose] = None
    timer_token: int = 0
    next_deadline: Optional[datetime] = None
    current_offer: Optional[Offer] = None
    activated_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    rank_token: int = 0
    send_after_rank: bool = False

    def replace_timer(
        self,
        timers: TimerService,
        when: datetime,
        purpose: TimerPurpose,
        callback: Callable[[int], None],
    ) -> int:
        """Cancel any outstanding timer, then arm ``callback(token)`` at ``when``."""
        self.clear_timer()
        token = next(_timer_tokens)
        self.timer_token = token
        self.timer_purpose = purpose
        self.next_deadline = when
        self.pending_timer = timers.call_at(when, lambda: callback(token))
        return token

    def clear_timer(self) -> None:
        if self.pending_timer is not None:
            self.pending_timer.cancel()
        self.pending_timer = None
        self.timer_purpose = None
        self.timer_token = 0
        self.next_deadline = None

    def remaining_candidates(self) -> List[Candidate]:
        return [c for c in self.candidates[self.cursor:] if c.driver_id not in self.attempted_drivers]

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            reservation_id=self.reservation_id,
            state=self.state,
            candidate_ids=[candidate.driver_id for candidate in self.candidates],
            cursor=self.cursor,
            attempted_drivers=sorted(self.attempted_drivers),
            timer_purpose=self.timer_purpose,
            next_deadline=self.next_deadline,
            current_offer=self.current_offer,
            activated_at=self.activated_at,
            last_attempt_at=self.last_attempt_at,
        )


class DispatchScheduler:
    """Owns the job registry and drives each job through its state machine."""

    def __init__(
        self,
        gateway: ReservationGateway,
        directory: DriverDirectory,
        settings_repo: SettingsRepository,
        ranker: CandidateRanker,
        channel: OfferChannel,
        notifier: EscalationNotifier,
        store: FarmoutStateStore,
        timers: TimerService,
        bus: Optional[EventBus] = None,
        tz: Optional[tzinfo] = None,
    ) -> None:
        self.gateway = gateway
        self.directory = directory
        self.settings_repo = settings_repo
        self.ranker = ranker
        self.channel = channel
        self.notifier = notifier
        self.store = store
        self.timers = timers
        self.bus = bus
        self.tz = tz or timezone.utc

        self._jobs: Dict[str, DispatchJob] = {}
        self._escalated: Set[str] = set()
        self._queue: Deque[Tuple[Callable[..., None], Tuple[Any, ...]]] = deque()
        self._draining = False
        self._subscription: Optional[int] = None
        self._counters: Dict[str, int] = {
            "activated": 0,
            "offers_sent": 0,
            "accepted": 0,
            "declined": 0,
            "expired": 0,
            "escalated": 0,
            "cancelled": 0,
        }
        self.escalations: List[EscalationResult] = []

    # ==================== Lifecycle ====================

    def start(self) -> None:
        if self.bus is not None and self._subscription is None:
            self._subscription = self.bus.subscribe(self.on_reservation_event)

    def close(self) -> None:
        if self.bus is not None and self._subscription is not None:
            self.bus.unsubscribe(self._subscription)
        self._subscription = None
        for job in self._jobs.values():
            job.clear_timer()
            job.state = JobState.STOPPED
        self._jobs.clear()
        self._queue.clear()

    def bootstrap(self) -> int:
        """Expire persisted pending offers and re-derive jobs from reservation state."""
        expired = self._guard("expire stale offers", None, self.store.expire_stale_offers) or 0
        reservations = self._guard("list reservations", None, self.gateway.list_reservations) or []
        eligible = [r for r in reservations if should_auto_dispatch(r) and not self._is_held(r)]
        for reservation in eligible:
            self._submit(self._activate, reservation, False)
        logger.info("Dispatch scheduler bootstrapped", stale_offers=expired, jobs=len(self._jobs))
        return len(eligible)

    # ==================== Public entry points ====================

    def activate(self, reservation: Reservation) -> None:
        self._submit(self._activate, reservation, True)

    def on_reservation_event(self, event: Any) -> None:
        self._submit(self._handle_event, event)

    def stop(self, reservation_id: str, reason: str) -> None:
        self._submit(self._stop, str(reservation_id), reason, StopOutcome.CANCELLED)

    def handle_driver_response(
        self,
        reservation_id: str,
        driver_id: str,
        accepted: bool,
        channel: str = "in_app",
    ) -> None:
        self._submit(self._handle_response, str(reservation_id), str(driver_id), bool(accepted), channel)

    def refresh_candidates(self, reservation_id: str) -> None:
        self._submit(self._refresh, str(reservation_id))

    def admin_override_accept(self, reservation_id: str, driver_id: str) -> None:
        self._submit(self._override, str(reservation_id), str(driver_id))

    def handle_incoming_sms(self, from_number: str, body: str) -> str:
        reply = parse_sms_reply(body)
        if reply is None:
            logger.info("Unrecognized SMS reply", from_number=from_number)
            return "unrecognized"
        driver = self._guard("find driver by phone", None, self.directory.find_driver_by_phone, from_number)
        if driver is None:
            logger.info("SMS reply from unknown number", from_number=from_number)
            return "unknown_driver"
        job = next(
            (
                j
                for j in self._jobs.values()
                if j.state == JobState.OFFER_PENDING
                and j.current_offer is not None
                and j.current_offer.driver_id == driver.id
            ),
            None,
        )
        if job is None:
            logger.info("SMS reply without a pending offer", driver_id=driver.id)
            return "no_pending_offer"
        self.handle_driver_response(job.reservation_id, driver.id, reply, "sms")
        return "accepted" if reply else "declined"

    # ==================== Read-only views ====================

    def has_job(self, reservation_id: str) -> bool:
        return str(reservation_id) in self._jobs

    def get_job(self, reservation_id: str) -> Optional[JobSnapshot]:
        job = self._jobs.get(str(reservation_id))
        return job.snapshot() if job else None

    def active_jobs(self) -> List[JobSnapshot]:
        return [job.snapshot() for job in self._jobs.values()]

    def pending_offers(self, driver_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.store.list_pending_offers(driver_id=driver_id)

    def is_held(self, reservation_id: str) -> bool:
        return str(reservation_id) in self._escalated

    def stats(self) -> Dict[str, Any]:
        by_state: Dict[str, int] = {state.value: 0 for state in JobState if state != JobState.STOPPED}
        for job in self._jobs.values():
            by_state[job.state.value] = by_state.get(job.state.value, 0) + 1
        return {
            "active_jobs": len(self._jobs),
            "by_state": by_state,
            "held_after_escalation": len(self._escalated),
            "pending_offers": len(self.store.list_pending_offers(in_app_only=False)),
            **self._counters,
        }

    def describe(self, reservation_id: str) -> str:
        rid = str(reservation_id)
        job = self._jobs.get(rid)
        now = self.timers.now()
        if job is not None:
            remaining = (job.next_deadline - now).total_seconds() if job.next_deadline else None
            countdown = format_countdown(remaining)
            if job.state == JobState.QUEUED:
                return f"Outside offer hours • next window in {countdown}"
            if job.state == JobState.OFFER_PENDING and job.current_offer is not None:
                who = job.current_offer.driver_name or job.current_offer.driver_id
                if job.remaining_candidates():
                    return f"Awaiting {who} • next driver in {countdown}"
                return f"Awaiting {who} • escalation in {countdown}"
            if job.timer_purpose == TimerPurpose.OFFER_SPACING:
                return f"Auto-dispatch active • next driver in {countdown}"
            if job.state == JobState.ESCALATING:
                return "Escalating to dispatch"
            return "Auto-dispatch active"

        reservation = self._guard("read reservation", rid, self.gateway.get_reservation, rid)
        if reservation is not None and should_auto_dispatch(reservation):
            if self._is_held(reservation):
                return "Auto-dispatch escalated • awaiting dispatcher"
            return "Auto-dispatch idle • awaiting next trigger"
        return "Auto-dispatch inactive for this trip"

    def activity(self, reservation_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        return self.store.list_activity(reservation_id, limit)

    # ==================== Work queue ====================

    def _submit(self, step: Callable[..., None], *args: Any) -> None:
        self._queue.append((step, args))
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue:
                current, current_args = self._queue.popleft()
                try:
                    current(*current_args)
                except Exception as exc:
                    logger.error("Dispatch step failed", step=current.__name__, error=str(exc))
        finally:
            self._draining = False

    def _guard(self, action: str, reservation_id: Optional[str], fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except Exception as exc:
            logger.warning("Collaborator call failed", action=action, reservation_id=reservation_id, error=str(exc))
            return None

    def _log(self, reservation_id: Optional[str], message: str) -> None:
        self._guard("record activity", reservation_id, self.store.record_activity, reservation_id, message)

    def _arm(self, job: DispatchJob, when: datetime, purpose: TimerPurpose) -> None:
        rid = job.reservation_id
        job.replace_timer(self.timers, when, purpose, lambda token: self._submit(self._on_timer, rid, token))

    def _is_held(self, reservation: Reservation) -> bool:
        return reservation.id in self._escalated or normalize_status(reservation.farmout_status) == ESCALATED_STATUS

    def _settings(self) -> DispatchSettings:
        return self.settings_repo.current()

    def _within_window(self, settings: DispatchSettings, now: datetime) -> bool:
        return is_within_window(now, settings.window_start(), settings.window_end(), self.tz)

    # ==================== Steps ====================

    def _activate(self, reservation: Reservation, explicit: bool) -> None:
        rid = reservation.id
        if explicit:
            self._escalated.discard(rid)
        elif self._is_held(reservation):
            logger.info("Reservation held after escalation", reservation_id=rid)
            return

        current = self._guard("read reservation", rid, self.gateway.get_reservation, rid) or reservation
        status = normalize_status(current.farmout_status)
        if rid in self._jobs:
            if is_terminal_status(status):
                self._stop(rid, f"Farm-out status changed to {status}.", StopOutcome.CANCELLED)
            elif normalize_mode(current.farmout_mode) != AUTOMATIC_MODE:
                self._stop(rid, "Farm-out mode switched to manual.", StopOutcome.CANCELLED)
            return
        if is_terminal_status(status):
            logger.info("Activation skipped for closed reservation", reservation_id=rid, farmout_status=status)
            return

        now = self.timers.now()
        settings = self._settings()
        job = DispatchJob(reservation_id=rid, activated_at=now)
        self._jobs[rid] = job
        self._counters["activated"] += 1
        logger.info("Auto-dispatch activated", reservation_id=rid)

        if not self._within_window(settings, now):
            self._park(job, settings, now)
            return

        self._log(rid, f"Auto-dispatch activated with {format_minutes(settings.offer_timeout_minutes)} per offer.")
        job.state = JobState.RUNNING
        self._rank(job, current, settings, now, then_send=True)

    def _park(self, job: DispatchJob, settings: DispatchSettings, now: datetime) -> None:
        opens_at = next_window_open(now, settings.window_start(), self.tz)
        job.state = JobState.QUEUED
        job.current_offer = None
        self._arm(job, opens_at, TimerPurpose.WINDOW_WAIT)
        wait_minutes = int((opens_at - now).total_seconds() // 60)
        self._log(job.reservation_id, f"Outside offer hours. Queued for next window in {wait_minutes} minutes.")
        logger.info("Auto-dispatch queued", reservation_id=job.reservation_id, opens_at=opens_at.isoformat())

    def _rank(
        self,
        job: DispatchJob,
        reservation: Reservation,
        settings: DispatchSettings,
        now: datetime,
        then_send: bool = False,
    ) -> None:
        """Rank candidates for ``job``; a blocking ranker runs off the loop and reports back as a queued step."""
        rid = job.reservation_id
        drivers = self._guard("list drivers", rid, self.directory.list_drivers) or []
        ledger: Dict[str, datetime] = dict(self._guard("read cooldown ledger", rid, self.store.cooldown_ledger) or {})
        for driver_id, offered_at in job.cooldown_ledger.items():
            if driver_id not in ledger or ledger[driver_id] < offered_at:
                ledger[driver_id] = offered_at
        token = next(_rank_tokens)
        job.rank_token = token
        job.send_after_rank = job.send_after_rank or then_send

        def rank() -> List[Candidate]:
            return self.ranker.rank(reservation, drivers, ledger, settings, now)

        if getattr(self.ranker, "blocking", False):
            self.timers.run_blocking(
                rank,
                lambda result, error: self._submit(self._on_ranked, rid, token, result, error, reservation),
            )
            return
        try:
            candidates, error = rank(), None
        except Exception as exc:
            candidates, error = None, exc
        self._on_ranked(rid, token, candidates, error, reservation)

    def _on_ranked(
        self,
        reservation_id: str,
        token: int,
        candidates: Optional[List[Candidate]],
        error: Optional[BaseException],
        reservation: Reservation,
    ) -> None:
        job = self._jobs.get(reservation_id)
        if job is None or job.rank_token != token:
            logger.info("Ignoring stale ranking result", reservation_id=reservation_id)
            return
        if error is not None:
            logger.warning("Collaborator call failed", action="rank drivers", reservation_id=reservation_id, error=str(error))
        settings = self._settings()
        now = self.timers.now()
        job.rank_token = 0
        job.candidates = [c for c in candidates or [] if c.driver_id not in job.attempted_drivers]
        job.cursor = 0
        job.ranked = True

        on_demand = is_on_demand(reservation, settings, now, self.tz)
        top = f" Top driver: {job.candidates[0].name} (Score: {job.candidates[0].priority_score})." if job.candidates else ""
        self._log(
            reservation_id,
            f"Found {len(job.candidates)} eligible drivers.{top}{' (On-demand priority)' if on_demand else ''}",
        )
        logger.info(
            "Candidates ranked",
            reservation_id=reservation_id,
            candidates=len(job.candidates),
            on_demand=on_demand,
        )

        if job.send_after_rank:
            job.send_after_rank = False
            self._send_next(job)
        else:
            self._log(reservation_id, "Candidate list refreshed.")

    def _send_next(self, job: DispatchJob) -> None:
        rid = job.reservation_id
        reservation = self._guard("read reservation", rid, self.gateway.get_reservation, rid)
        if reservation is None:
            self._stop(rid, "Reservation no longer exists.", StopOutcome.CANCELLED)
            return

        settings = self._settings()
        now = self.timers.now()
        if not self._within_window(settings, now):
            self._park(job, settings, now)
            return

        while True:
            remaining = job.remaining_candidates()
            if not remaining:
                self._escalate(job, reservation, settings)
                return
            candidate = remaining[0]
            job.cursor = job.candidates.index(candidate) + 1
            driver = self._guard("read driver", rid, self.directory.get_driver_by_id, candidate.driver_id)
            if driver is None:
                logger.warning("Candidate missing from directory", reservation_id=rid, driver_id=candidate.driver_id)
                job.attempted_drivers.add(candidate.driver_id)
                continue
            break

        job.attempted_drivers.add(driver.id)
        job.cooldown_ledger[driver.id] = now
        job.last_attempt_at = now
        self._guard("record cooldown", rid, self.store.record_driver_offer, driver.id, now)

        details = build_offer_details(reservation, settings, now)
        offer_id = self._guard("allocate offer id", rid, self.store.next_offer_id) or f"OFR-{uuid.uuid4().hex[:12]}"
        offer = Offer(
            offer_id=offer_id,
            reservation_id=rid,
            driver_id=driver.id,
            driver_name=driver.display_name,
            payload=self.channel.render_for(settings.templates.offer, driver, details, settings.offer_timeout_minutes),
            details=details,
            issued_at=now,
            expires_at=details.expires_at or now + timedelta(minutes=settings.offer_timeout_minutes),
        )
        job.current_offer = offer
        job.state = JobState.OFFER_PENDING
        self._arm(job, offer.expires_at, TimerPurpose.OFFER_TIMEOUT)

        self.channel.send_offer(driver, offer, settings)
        self._guard("update farm-out status", rid, self.gateway.update_farmout_status, rid, OFFERED_STATUS)
        self._counters["offers_sent"] += 1

        rating = f"(Rating: {candidate.rating}/10)" if settings.enable_driver_rating_priority else "(Rating priority OFF)"
        self._log(rid, f"Offer sent to {driver.display_name} {rating}.")
        logger.info("Offer sent", reservation_id=rid, driver_id=driver.id, offer_id=offer.offer_id)

    def _on_timer(self, reservation_id: str, token: int) -> None:
        job = self._jobs.get(reservation_id)
        if job is None or job.pending_timer is None or job.timer_token != token:
            return
        purpose = job.timer_purpose
        job.pending_timer = None
        job.timer_purpose = None
        job.timer_token = 0
        job.next_deadline = None

        if purpose == TimerPurpose.WINDOW_WAIT:
            self._on_window_open(job)
        elif purpose == TimerPurpose.OFFER_TIMEOUT:
            self._on_offer_timeout(job)
        elif purpose == TimerPurpose.OFFER_SPACING:
            job.state = JobState.RUNNING
            self._send_next(job)

    def _on_window_open(self, job: DispatchJob) -> None:
        rid = job.reservation_id
        job.state = JobState.RUNNING
        settings = self._settings()
        self._log(rid, f"Offer window open. Auto-dispatch running with {format_minutes(settings.offer_timeout_minutes)} per offer.")
        if not job.ranked:
            reservation = self._guard("read reservation", rid, self.gateway.get_reservation, rid)
            if reservation is None:
                self._stop(rid, "Reservation no longer exists.", StopOutcome.CANCELLED)
                return
            self._rank(job, reservation, settings, self.timers.now(), then_send=True)
            return
        self._send_next(job)

    def _on_offer_timeout(self, job: DispatchJob) -> None:
        rid = job.reservation_id
        offer = job.current_offer
        job.current_offer = None
        job.state = JobState.RUNNING
        settings = self._settings()

        if offer is not None:
            offer.status = OfferStatus.EXPIRED
            self.channel.record_status(offer)
            driver = self._guard("read driver", rid, self.directory.get_driver_by_id, offer.driver_id)
            if driver is not None:
                self.channel.send_expiry(driver, offer, settings)
            self._counters["expired"] += 1
            self._log(rid, f"Offer to {offer.driver_name or offer.driver_id} expired without a response.")
            logger.info("Offer expired", reservation_id=rid, driver_id=offer.driver_id, offer_id=offer.offer_id)

        if job.remaining_candidates() and settings.offer_spacing_minutes > 0:
            when = self.timers.now() + timedelta(minutes=settings.offer_spacing_minutes)
            self._arm(job, when, TimerPurpose.OFFER_SPACING)
            return
        self._send_next(job)

    def _handle_response(self, reservation_id: str, driver_id: str, accepted: bool, channel: str) -> None:
        job = self._jobs.get(reservation_id)
        offer = job.current_offer if job else None
        if job is None or offer is None or job.state != JobState.OFFER_PENDING or offer.driver_id != driver_id:
            logger.info(
                "Ignoring stale driver response",
                reservation_id=reservation_id,
                driver_id=driver_id,
                accepted=accepted,
            )
            return

        job.clear_timer()
        offer.responded_at = self.timers.now()
        offer.response_channel = channel
        if accepted:
            offer.status = OfferStatus.ACCEPTED
            self.channel.record_status(offer)
            self._counters["accepted"] += 1
            self._log(reservation_id, f"Driver {offer.driver_name or driver_id} accepted via {channel}.")
            self._assign(reservation_id, driver_id, channel)
            return

        offer.status = OfferStatus.DECLINED
        self.channel.record_status(offer)
        self._counters["declined"] += 1
        settings = self._settings()
        driver = self._guard("read driver", reservation_id, self.directory.get_driver_by_id, driver_id)
        if driver is not None:
            self.channel.send_rejection(driver, offer, settings)
        self._log(reservation_id, f"Driver {offer.driver_name or driver_id} declined via {channel}.")
        logger.info("Offer declined", reservation_id=reservation_id, driver_id=driver_id, channel=channel)
        job.current_offer = None
        job.state = JobState.RUNNING
        self._send_next(job)

    def _assign(self, reservation_id: str, driver_id: str, channel: str) -> None:
        driver = self._guard("read driver", reservation_id, self.directory.get_driver_by_id, driver_id)
        vehicle_id = driver.assigned_vehicle_id if driver else None
        name = driver.display_name if driver else driver_id
        reservation = self._guard(
            "assign driver", reservation_id, self.gateway.assign_driver, reservation_id, driver_id, vehicle_id
        )
        if reservation is None:
            job = self._jobs.get(reservation_id)
            if job is None:
                job = DispatchJob(reservation_id=reservation_id, activated_at=self.timers.now())
                self._jobs[reservation_id] = job
            job.attempted_drivers.add(driver_id)
            current = self._guard("read reservation", reservation_id, self.gateway.get_reservation, reservation_id)
            self._escalate(job, current, self._settings(), f"Assigning driver {name} failed. Escalated to dispatch.")
            return

        updated = self._guard(
            "update farm-out status", reservation_id, self.gateway.update_farmout_status, reservation_id, ASSIGNED_STATUS
        )
        reservation = updated or reservation
        if driver is not None:
            self.channel.send_confirmation(driver, reservation, self._settings(), self.timers.now())
        self._escalated.discard(reservation_id)
        self._stop(reservation_id, f"Driver {name} assigned via {channel}. Auto-dispatch stopped.", StopOutcome.ASSIGNED)

    def _override(self, reservation_id: str, driver_id: str) -> None:
        job = self._jobs.get(reservation_id)
        if job is not None:
            job.clear_timer()
            offer = job.current_offer
            if offer is not None and offer.status == OfferStatus.PENDING:
                offer.status = OfferStatus.ACCEPTED if offer.driver_id == driver_id else OfferStatus.EXPIRED
                offer.responded_at = self.timers.now()
                offer.response_channel = "admin_override"
                self.channel.record_status(offer)
                job.current_offer = None
        self._counters["accepted"] += 1
        self._log(reservation_id, f"Dispatcher override: driver {driver_id} accepted.")
        logger.info("Admin override accept", reservation_id=reservation_id, driver_id=driver_id)
        self._assign(reservation_id, driver_id, "admin_override")

    def _refresh(self, reservation_id: str) -> None:
        job = self._jobs.get(reservation_id)
        if job is None:
            return
        reservation = self._guard("read reservation", reservation_id, self.gateway.get_reservation, reservation_id)
        if reservation is None:
            self._stop(reservation_id, "Reservation no longer exists.", StopOutcome.CANCELLED)
            return
        self._rank(job, reservation, self._settings(), self.timers.now())

    def _escalate(
        self,
        job: DispatchJob,
        reservation: Optional[Reservation],
        settings: DispatchSettings,
        reason: str = "No drivers accepted. Escalated to dispatch.",
    ) -> None:
        rid = job.reservation_id
        job.clear_timer()
        job.current_offer = None
        job.state = JobState.ESCALATING
        logger.info("Escalating to dispatch", reservation_id=rid, attempted=len(job.attempted_drivers), reason=reason)

        result = self._guard(
            "escalate",
            rid,
            self.notifier.escalate,
            job,
            reservation_summary(reservation, rid),
            list(settings.recipients),
            settings.enable_auto_escalation,
        )
        if result is not None:
            self.escalations.append(result)
        self._guard("update farm-out status", rid, self.gateway.update_farmout_status, rid, ESCALATED_STATUS)
        self._escalated.add(rid)
        self._counters["escalated"] += 1
        self._stop(rid, reason, StopOutcome.ESCALATED)

    def _stop(self, reservation_id: str, reason: str, outcome: StopOutcome) -> None:
        job = self._jobs.pop(reservation_id, None)
        if job is None:
            return
        job.clear_timer()
        job.state = JobState.STOPPED
        offer = job.current_offer
        if offer is not None and offer.status == OfferStatus.PENDING:
            offer.status = OfferStatus.EXPIRED
            self.channel.record_status(offer)
        job.current_offer = None
        if outcome == StopOutcome.CANCELLED:
            self._counters["cancelled"] += 1
        self._log(reservation_id, reason)
        logger.info("Auto-dispatch stopped", reservation_id=reservation_id, outcome=outcome.value, reason=reason)

    def _handle_event(self, event: Any) -> None:
        if isinstance(event, ReservationRemoved):
            self._escalated.discard(event.reservation_id)
            self._stop(event.reservation_id, "Reservation deleted. Auto-dispatch stopped.", StopOutcome.CANCELLED)
            return

        reservation: Reservation = event.reservation
        rid = reservation.id

        if isinstance(event, DriverAssigned):
            info = event.driver_info or {}
            who = info.get("name") or info.get("driver_id")
            label = f"Driver {who}" if who else "Driver"
            self._escalated.discard(rid)
            self._stop(rid, f"{label} assigned. Auto-dispatch stopped.", StopOutcome.ASSIGNED)
            return

        mode = normalize_mode(event.mode or reservation.farmout_mode)
        status = normalize_status(event.status or reservation.farmout_status)
        automatic = mode == AUTOMATIC_MODE

        if isinstance(event, ModeChanged):
            if automatic and not is_terminal_status(status):
                self._activate(reservation, True)
            elif automatic:
                self._stop(rid, f"Farm-out status changed to {status}.", StopOutcome.CANCELLED)
            else:
                self._stop(rid, "Farm-out mode switched to manual.", StopOutcome.CANCELLED)
            return

        if isinstance(event, DriverCleared):
            if automatic and not is_terminal_status(status):
                self._activate(reservation, True)
            return

        if isinstance(event, (StatusChanged, ReservationUpdated)):
            if is_terminal_status(status):
                self._stop(rid, f"Farm-out status changed to {status}.", StopOutcome.CANCELLED)
            elif automatic:
                self._activate(reservation, False)
            else:
                self._stop(rid, "Farm-out mode switched to manual.", StopOutcome.CANCELLED)
            return

        logger.warning("Unhandled reservation event", event_type=getattr(event, "type", type(event).__name__))
