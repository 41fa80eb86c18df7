"""Typed publish/subscribe plumbing and user-facing notifications."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Generic, Protocol, TypeVar

if TYPE_CHECKING:
    from docbridge.models import ServiceHealthStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], None]
Unsubscribe = Callable[[], None]


class Broadcaster(Generic[T]):
    """Fan a value out to every subscriber.

    ``subscribe()`` returns a handle that removes exactly that subscription,
    so callers never have to pair add/remove by hand.  A subscriber that
    raises is logged and skipped; the others still receive the value.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._listeners: list[Listener[T]] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener[T]) -> Unsubscribe:
        self._listeners.append(listener)
        logger.debug("%s: subscriber added (total: %d)", self._name, len(self._listeners))

        def unsubscribe() -> None:
            self.unsubscribe(listener)

        return unsubscribe

    def unsubscribe(self, listener: Listener[T]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return
        logger.debug("%s: subscriber removed (total: %d)", self._name, len(self._listeners))

    def publish(self, value: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("%s: subscriber %r failed", self._name, listener)

    def clear(self) -> None:
        self._listeners.clear()


# ---------------------------------------------------------------------------
# Recovery notifications
# ---------------------------------------------------------------------------

RECOVERY_NEEDED_MESSAGE = "Local companion service needs manual intervention"


@dataclass(slots=True, frozen=True)
class RecoveryNeeded:
    """Emitted once per failure episode when automatic recovery fails."""

    status: ServiceHealthStatus
    message: str = RECOVERY_NEEDED_MESSAGE
    raised_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class NotificationSink(Protocol):
    """Receives user-facing events; must not block."""

    def notify(self, event: RecoveryNeeded) -> None: ...


class LoggingNotificationSink:
    """Default sink: surface the event in the log."""

    def notify(self, event: RecoveryNeeded) -> None:
        logger.warning(
            "%s (consecutive errors: %d, last check: %s)",
            event.message,
            event.status.consecutive_errors,
            event.status.last_check.isoformat(),
        )


class BroadcastNotificationSink:
    """Sink that re-publishes events to any number of subscribers."""

    def __init__(self) -> None:
        self.events: Broadcaster[RecoveryNeeded] = Broadcaster("recovery-needed")

    def notify(self, event: RecoveryNeeded) -> None:
        self.events.publish(event)
