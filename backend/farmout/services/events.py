"""In-process event bus for reservation lifecycle events."""
from __future__ import annotations

import itertools
from typing import Any, Callable, Dict

from farmout.core.logging import logger


Handler = Callable[[Any], None]


class EventBus:
    """Synchronous publish/subscribe with explicit unsubscribe.

    Handlers run in subscription order on the publisher's turn. A failing
    handler is logged and never breaks the publisher or the other handlers.
    """

    def __init__(self) -> None:
        self._handlers: Dict[int, Handler] = {}
        self._tokens = itertools.count(1)

    def subscribe(self, handler: Handler) -> int:
        token = next(self._tokens)
        self._handlers[token] = handler
        return token

    def unsubscribe(self, token: int) -> None:
        self._handlers.pop(token, None)

    def subscriber_count(self) -> int:
        return len(self._handlers)

    def publish(self, event: Any) -> None:
        for token, handler in list(self._handlers.items()):
            try:
                handler(event)
            except Exception as exc:
                logger.error(
                    "Event handler failed",
                    event_type=getattr(event, "type", type(event).__name__),
                    subscriber=token,
                    error=str(exc),
                )
