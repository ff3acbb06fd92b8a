"""Repository for the dispatch tunables.

The scheduler and the ranker read settings only through this repository; nothing
else touches the stored blob directly. Each read returns the latest saved
version, so a change takes effect at the next scheduling decision.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from farmout.core.logging import logger
from farmout.models.settings import (
    DispatchSettings,
    EscalationRecipient,
    SettingsUpdateRequest,
)
from farmout.services.state_store import FarmoutStateStore


SETTINGS_KEY = "dispatch_settings"

_ENTRY_SPLIT = re.compile(r"[\n,;]+")


def parse_recipient_entries(text: str) -> List[EscalationRecipient]:
    """Parse ``identifier | phone`` entries separated by newlines or commas.

    An identifier containing ``@`` is treated as an email address. Entries
    with neither an identifier nor a phone are dropped.
    """
    recipients: List[EscalationRecipient] = []
    for raw in _ENTRY_SPLIT.split(text or ""):
        entry = raw.strip()
        if not entry:
            continue
        identifier, _, phone = (part.strip() for part in entry.partition("|"))
        if not identifier and not phone:
            continue
        recipients.append(
            EscalationRecipient(
                identifier=identifier,
                email=identifier if "@" in identifier else None,
                phone=phone or None,
            )
        )
    return recipients


class SettingsRepository:
    """Load/save ``DispatchSettings`` through the state store."""

    def __init__(self, store: FarmoutStateStore) -> None:
        self.store = store
        self._cached: Optional[DispatchSettings] = None

    def load(self) -> DispatchSettings:
        raw = self.store.get_value(SETTINGS_KEY)
        if isinstance(raw, dict):
            try:
                self._cached = DispatchSettings.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Stored dispatch settings unreadable, using defaults", error=str(exc))
                self._cached = DispatchSettings()
        else:
            self._cached = DispatchSettings()
        return self._cached

    def current(self) -> DispatchSettings:
        if self._cached is None:
            return self.load()
        return self._cached

    def save(self, settings: DispatchSettings) -> DispatchSettings:
        stamped = settings.stamped()
        self.store.set_value(SETTINGS_KEY, stamped.model_dump(mode="json"))
        self._cached = stamped
        logger.info("Dispatch settings saved", version=stamped.version)
        return stamped

    def update(self, patch: SettingsUpdateRequest | Dict[str, Any]) -> DispatchSettings:
        if isinstance(patch, SettingsUpdateRequest):
            changes = patch.model_dump(exclude_none=True)
        else:
            changes = {key: value for key, value in dict(patch).items() if value is not None}
        merged = self.current().model_dump()
        merged.update(changes)
        return self.save(DispatchSettings.model_validate(merged))

    def apply_recipient_entries(self, text: str) -> DispatchSettings:
        recipients = parse_recipient_entries(text)
        merged = self.current().model_dump()
        merged["recipient_entries"] = text or ""
        merged["recipients"] = [recipient.model_dump() for recipient in recipients]
        return self.save(DispatchSettings.model_validate(merged))
