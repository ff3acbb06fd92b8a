"""Outbound messaging collaborators.

Every message is recorded in the state store outbox. When an SMS gateway is
configured, ``HttpSmsSender`` also posts it to the provider.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Protocol, Set, Tuple

import httpx

from farmout.core.config import Settings, get_settings
from farmout.core.logging import logger
from farmout.services.exceptions import MessageDeliveryError
from farmout.services.state_store import FarmoutStateStore


class MessageSender(Protocol):
    def send_message(self, address: str, body: str, kind: str) -> Dict[str, Any]:
        ...


class OutboxSender:
    """Record messages in the outbox without contacting a provider."""

    def __init__(self, store: FarmoutStateStore) -> None:
        self.store = store

    def send_message(self, address: str, body: str, kind: str) -> Dict[str, Any]:
        if not (address or "").strip():
            raise MessageDeliveryError("Message address is empty.")
        row = self.store.add_outbox_message(address.strip(), body, kind)
        logger.info("Message recorded", message_id=row["message_id"], kind=kind, address=row["address"])
        return row


class HttpSmsSender(OutboxSender):
    """Post messages to the SMS gateway, keeping an outbox copy.

    Inside a running event loop the gateway request is scheduled as a task so a
    slow provider never stalls dispatch; failures are logged when the task
    finishes. Without a loop the request is made inline and failures raise
    ``MessageDeliveryError``.
    """

    def __init__(
        self,
        store: FarmoutStateStore,
        settings: Optional[Settings] = None,
        transport: Any = None,
    ) -> None:
        super().__init__(store)
        self.settings = settings or get_settings()
        self.transport = transport
        self._tasks: Set[asyncio.Task] = set()

    def _request(self, row: Dict[str, Any], body: str) -> Tuple[Dict[str, Any], Dict[str, str]]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        token = (self.settings.sms_api_token or "").strip()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        payload = {
            "to": row["address"],
            "from": self.settings.sms_from_number or None,
            "body": body,
            "reference": row["message_id"],
        }
        return payload, headers

    def send_message(self, address: str, body: str, kind: str) -> Dict[str, Any]:
        row = super().send_message(address, body, kind)
        payload, headers = self._request(row, body)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            task = loop.create_task(self._post(payload, headers))
            self._tasks.add(task)
            task.add_done_callback(lambda done: self._finished(done, row))
            return row
        try:
            with httpx.Client(timeout=self.settings.sms_timeout_seconds, transport=self.transport) as client:
                response = client.post(self.settings.sms_gateway_url, json=payload, headers=headers)
                response.raise_for_status()
        except Exception as exc:
            raise MessageDeliveryError(f"SMS gateway request failed: {exc}") from exc
        return row

    async def _post(self, payload: Dict[str, Any], headers: Dict[str, str]) -> None:
        async with httpx.AsyncClient(timeout=self.settings.sms_timeout_seconds, transport=self.transport) as client:
            response = await client.post(self.settings.sms_gateway_url, json=payload, headers=headers)
        response.raise_for_status()

    def _finished(self, task: asyncio.Task, row: Dict[str, Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                "SMS gateway request failed",
                message_id=row["message_id"],
                kind=row["kind"],
                address=row["address"],
                error=str(error),
            )

    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for scheduled gateway requests to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def build_message_sender(store: FarmoutStateStore, settings: Optional[Settings] = None) -> MessageSender:
    settings = settings or get_settings()
    if settings.sms_enabled():
        return HttpSmsSender(store, settings)
    return OutboxSender(store)
