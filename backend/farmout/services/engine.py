"""Composition root for the farm-out dispatch engine."""
from __future__ import annotations

from typing import Optional

from farmout.core.config import Settings, get_settings
from farmout.core.logging import logger
from farmout.services.directory import InMemoryDriverDirectory, InMemoryReservationStore
from farmout.services.escalation import EscalationNotifier
from farmout.services.events import EventBus
from farmout.services.messaging import MessageSender, build_message_sender
from farmout.services.offer_channel import OfferChannel
from farmout.services.ranking import CandidateRanker, build_ranker
from farmout.services.scheduler import DispatchScheduler
from farmout.services.settings_store import SettingsRepository
from farmout.services.state_store import FarmoutStateStore
from farmout.services.timers import AsyncioTimerService, TimerService


class FarmoutEngine:
    """Wires the store, collaborators, ranker, channel and scheduler together."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[FarmoutStateStore] = None,
        timers: Optional[TimerService] = None,
        ranker: Optional[CandidateRanker] = None,
        sender: Optional[MessageSender] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.tz = self.settings.resolved_timezone()
        self.store = store or FarmoutStateStore(self.settings.state_db_path)
        self.bus = EventBus()
        self.reservations = InMemoryReservationStore(self.bus)
        self.drivers = InMemoryDriverDirectory()
        self.settings_repo = SettingsRepository(self.store)
        self.sender = sender or build_message_sender(self.store, self.settings)
        self.ranker = ranker or build_ranker(self.settings, self.tz)
        self.channel = OfferChannel(self.sender, self.store, self.settings.portal_base_url)
        self.notifier = EscalationNotifier(self.sender, self.store)
        self.timers = timers or AsyncioTimerService()
        self.scheduler = DispatchScheduler(
            gateway=self.reservations,
            directory=self.drivers,
            settings_repo=self.settings_repo,
            ranker=self.ranker,
            channel=self.channel,
            notifier=self.notifier,
            store=self.store,
            timers=self.timers,
            bus=self.bus,
            tz=self.tz,
        )
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self.settings_repo.load()
        self.scheduler.start()
        jobs = self.scheduler.bootstrap()
        self._started = True
        logger.info("Farm-out engine started", state_db=self.store.db_path, jobs=jobs)

    async def drain(self) -> None:
        drain = getattr(self.sender, "drain", None)
        if drain is not None:
            await drain()

    def close(self) -> None:
        self.scheduler.close()
        self.store.close()
        self._started = False
        logger.info("Farm-out engine stopped")


farmout_engine = FarmoutEngine()


def get_engine() -> FarmoutEngine:
    return farmout_engine
