"""In-process notification channel.

Services publish state changes here (bootstrap finished, profile saved, batch
progress) so a presentation layer can refresh without the core depending on
any UI framework.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]

BOOTSTRAP_COMPLETED = "provisioning.bootstrap_completed"
TOKEN_REFRESHED = "provisioning.token_refreshed"
PROFILE_SAVED = "schedule.profile_saved"
PROFILES_LOADED = "schedule.profiles_loaded"
BATCH_STARTED = "device_actions.batch_started"
BATCH_PROGRESS = "device_actions.batch_progress"
BATCH_FINISHED = "device_actions.batch_finished"


@dataclass
class Event:
    """A published state change.

    Attributes:
        event_type: One of the module-level event type constants.
        payload: Event data.
        timestamp: When the event was published.
    """

    event_type: str
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Async observer list keyed by event type.

    Handlers for one event run concurrently. A failing handler is logged and
    does not affect the publisher or the other handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug("Subscribed handler to: %s", event_type)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> bool:
        """Remove a handler.

        Returns:
            True if the handler was subscribed, False otherwise.
        """
        handlers = self._handlers.get(event_type, [])
        try:
            handlers.remove(handler)
        except ValueError:
            return False
        if not handlers:
            del self._handlers[event_type]
        return True

    async def publish(self, event_type: str, payload: dict[str, Any] | None = None) -> Event:
        event = Event(event_type=event_type, payload=payload or {})
        handlers = list(self._handlers.get(event_type, []))
        if not handlers:
            return event

        async def safe_call(handler: EventHandler) -> None:
            try:
                await handler(event)
            except Exception as e:
                logger.error("Handler error for event %s: %s", event_type, e, exc_info=True)

        await asyncio.gather(*(safe_call(handler) for handler in handlers))
        return event
