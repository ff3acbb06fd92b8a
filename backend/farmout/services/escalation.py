"""Escalation to human dispatchers when automatic dispatch gives up."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional

from farmout.core.logging import logger
from farmout.models.dispatch import Reservation
from farmout.models.settings import EscalationRecipient
from farmout.services.messaging import MessageSender
from farmout.services.state_store import FarmoutStateStore

if TYPE_CHECKING:
    from farmout.services.scheduler import DispatchJob


NO_RECIPIENTS_MESSAGE = "Escalation attempted but no admin/dispatch contacts are configured."
SUPPRESSED_MESSAGE = "Escalation suppressed: auto-escalation is disabled in settings."


def reservation_summary(reservation: Optional[Reservation], reservation_id: str = "") -> str:
    """``passenger - date time - pickup`` line used in escalation messages."""
    if reservation is None:
        return f"Reservation {reservation_id}".strip()
    passenger = (reservation.passenger_name or "").strip() or "Passenger"
    when = f"{reservation.pickup_date or ''} {reservation.pickup_time or ''}".strip()
    pickup = (reservation.pickup_location or "").strip()
    return " - ".join(part for part in (passenger, when, pickup) if part)


@dataclass
class EscalationResult:
    reservation_id: str
    attempted: bool = True
    suppressed: bool = False
    notified: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    summary: str = ""


class EscalationNotifier:
    """Notify every configured recipient once; never retries."""

    def __init__(self, sender: MessageSender, store: FarmoutStateStore) -> None:
        self.sender = sender
        self.store = store

    def _record(self, reservation_id: str, message: str) -> None:
        try:
            self.store.record_activity(reservation_id, message)
        except Exception as exc:
            logger.warning("Activity log write failed", reservation_id=reservation_id, error=str(exc))

    def escalate(
        self,
        job: "DispatchJob",
        reservation_summary: str,
        recipients: List[EscalationRecipient],
        enabled: bool = True,
    ) -> EscalationResult:
        reservation_id = job.reservation_id
        result = EscalationResult(reservation_id=reservation_id, summary=reservation_summary)

        if not enabled:
            result.suppressed = True
            self._record(reservation_id, SUPPRESSED_MESSAGE)
            logger.warning("Escalation suppressed", reservation_id=reservation_id)
            return result

        if not recipients:
            self._record(reservation_id, NO_RECIPIENTS_MESSAGE)
            logger.warning("Escalation has no recipients", reservation_id=reservation_id)
            return result

        body = (
            f"Auto-dispatch could not place reservation {reservation_id}: "
            f"{len(job.attempted_drivers)} driver(s) offered, none accepted. {reservation_summary}"
        )
        for recipient in recipients:
            address = (recipient.phone or "").strip() or (recipient.email or "").strip()
            if not address:
                result.failed.append(recipient.label)
                logger.warning(
                    "Escalation recipient has no address",
                    reservation_id=reservation_id,
                    recipient=recipient.label,
                )
                continue
            try:
                self.sender.send_message(address, body, "farmout_escalation")
            except Exception as exc:
                result.failed.append(recipient.label)
                logger.warning(
                    "Escalation delivery failed",
                    reservation_id=reservation_id,
                    recipient=recipient.label,
                    error=str(exc),
                )
                continue
            result.notified.append(recipient.label)

        self._record(
            reservation_id,
            f"Escalated to {len(result.notified)} of {len(recipients)} contact(s): {reservation_summary}",
        )
        logger.info(
            "Escalation sent",
            reservation_id=reservation_id,
            notified=len(result.notified),
            failed=len(result.failed),
        )
        return result
