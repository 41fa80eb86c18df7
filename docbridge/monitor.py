"""Health supervision for the localhost companion service.

``HealthMonitor`` periodically probes the companion, keeps consecutive
failure and request statistics, runs one bounded recovery attempt per
failure episode, and broadcasts status snapshots to subscribers.

Lifetime: construct one monitor explicitly (usually one per process) and
inject it wherever it is needed; nothing starts at import time.  Probing
begins with ``start_monitoring()`` and ends with ``stop_monitoring()`` or
``close()``.  Removing a status listener never stops the monitor, because
other consumers may still depend on it.

Scheduling is fixed-delay: the next probe is scheduled after the previous
cycle (including any recovery attempt) has finished, so cycles never
overlap.  ``force_health_check()`` is serialized with the periodic cycle
through the same lock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from docbridge.availability import CompanionAvailability
from docbridge.events import (
    Broadcaster,
    Listener,
    LoggingNotificationSink,
    NotificationSink,
    RecoveryNeeded,
    Unsubscribe,
)
from docbridge.models import (
    RESPONSE_TIME_WINDOW,
    MonitoringConfig,
    ServiceHealthStatus,
)
from docbridge.opener import DEFAULT_OPEN_TIMEOUT_MS

if TYPE_CHECKING:
    from docbridge.availability import AvailabilityProbe
    from docbridge.models import DocumentRef, OpenResult
    from docbridge.opener import OpenRequestClient

logger = logging.getLogger(__name__)

#: ``is_service_available()`` reads False from this many consecutive errors
#: on, even if the most recent probe succeeded.
AVAILABILITY_ERROR_CEILING = 3


class HealthMonitor:
    """Supervisor for the companion service's health.

    Parameters
    ----------
    opener:
        Client used by ``open_document()`` and, when *availability* is not
        given, wrapped into the default cached availability probe.
    availability:
        Anything implementing ``probe(timeout_ms, force_refresh) -> bool``
        and ``clear()``.
    config:
        Timing and recovery policy; replaceable through ``update_options``.
    notifier:
        Receives ``RecoveryNeeded`` when automatic recovery fails.
    """

    def __init__(
        self,
        opener: OpenRequestClient,
        *,
        availability: AvailabilityProbe | None = None,
        config: MonitoringConfig | None = None,
        notifier: NotificationSink | None = None,
    ) -> None:
        self._opener = opener
        self._availability = availability or CompanionAvailability(opener)
        self._config = config or MonitoringConfig()
        self._notifier = notifier or LoggingNotificationSink()

        self._status = ServiceHealthStatus()
        self._samples: deque[float] = deque(maxlen=RESPONSE_TIME_WINDOW)
        self._listeners: Broadcaster[ServiceHealthStatus] = Broadcaster("health-status")
        self._last_successful_check: datetime | None = None
        self._task: asyncio.Task[None] | None = None
        self._monitoring = False
        self._cycle_lock = asyncio.Lock()
        self._recovery_attempted = False
        self._recovery_attempts = 0

    # ── Properties ───────────────────────────────────────────────

    @property
    def config(self) -> MonitoringConfig:
        return self._config

    @property
    def is_monitoring(self) -> bool:
        return self._monitoring

    @property
    def recovery_attempts(self) -> int:
        """Total recovery attempts made over the monitor's lifetime."""
        return self._recovery_attempts

    def _trace(self, msg: str, *args: Any) -> None:
        logger.log(logging.INFO if self._config.debug else logging.DEBUG, msg, *args)

    # ── Lifecycle ────────────────────────────────────────────────

    def start_monitoring(self) -> None:
        """Probe now, then every ``check_interval_ms``.  Idempotent."""
        if self._monitoring:
            self._trace("Health monitoring already running")
            return
        self._monitoring = True
        self._task = asyncio.get_running_loop().create_task(
            self._monitor_loop(), name="docbridge-health-monitor"
        )
        self._trace(
            "Health monitoring started (interval %dms)", self._config.check_interval_ms
        )

    def stop_monitoring(self) -> None:
        """Cancel the periodic probe.  Safe to call when not running."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        if self._monitoring:
            self._monitoring = False
            self._trace("Health monitoring stopped")

    async def close(self) -> None:
        """Stop monitoring and drop every listener and sample."""
        task = self._task
        self.stop_monitoring()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._listeners.clear()
        self._samples.clear()

    async def _monitor_loop(self) -> None:
        while True:
            await self.check_service_health()
            await asyncio.sleep(self._config.check_interval_ms / 1000)

    # ── Probe cycle ──────────────────────────────────────────────

    async def force_health_check(self) -> ServiceHealthStatus:
        """Run one probe now, regardless of the timer, and return the result."""
        await self.check_service_health()
        return self.get_status()

    async def check_service_health(self) -> None:
        """One probe cycle.  Never raises: every outcome is a state update."""
        async with self._cycle_lock:
            started = time.perf_counter()
            try:
                available = await self._availability.probe(
                    self._config.probe_timeout_ms, force_refresh=True
                )
            except Exception as exc:
                self._trace("Health probe raised: %s", exc)
                available = False
            self._record_response_time((time.perf_counter() - started) * 1000)

            if available:
                self._mark_success()
                self._trace("Health check: companion OK")
            else:
                self._status.is_available = False
                self._status.consecutive_errors += 1
                self._trace(
                    "Health check: companion unavailable (consecutive errors: %d)",
                    self._status.consecutive_errors,
                )
                if self._should_recover():
                    await self.attempt_recovery()

            self._status.last_check = datetime.now(UTC)
            self._listeners.publish(self.get_status())

    def _should_recover(self) -> bool:
        return (
            self._config.auto_restart
            and not self._recovery_attempted
            and self._status.consecutive_errors >= self._config.max_consecutive_errors
        )

    def _mark_success(self) -> None:
        self._status.is_available = True
        self._status.consecutive_errors = 0
        self._last_successful_check = datetime.now(UTC)
        self._recovery_attempted = False

    async def attempt_recovery(self) -> bool:
        """Clear the probe cache, back off, and retry once with a longer timeout.

        Returns whether the companion came back.  On failure a single
        ``RecoveryNeeded`` is sent to the notifier; no further attempt is made
        until a successful probe ends the episode.
        """
        self._recovery_attempted = True
        self._recovery_attempts += 1
        logger.warning(
            "Companion unavailable after %d consecutive errors, attempting recovery",
            self._status.consecutive_errors,
        )

        self._availability.clear()
        try:
            await asyncio.sleep(self._config.recovery_backoff_ms / 1000)
            available = await self._availability.probe(
                self._config.recovery_timeout_ms, force_refresh=True
            )
        except asyncio.CancelledError:
            # An interrupted attempt does not count against the episode.
            self._recovery_attempted = False
            raise
        except Exception as exc:
            self._trace("Recovery probe raised: %s", exc)
            available = False

        if available:
            logger.info("Companion recovered automatically")
            self._mark_success()
            return True

        self._status.is_available = False
        self._notify_manual_recovery()
        return False

    def _notify_manual_recovery(self) -> None:
        event = RecoveryNeeded(status=self.get_status())
        try:
            self._notifier.notify(event)
        except Exception:
            logger.exception("Recovery notification sink failed")

    def _record_response_time(self, elapsed_ms: float) -> None:
        self._samples.append(elapsed_ms)
        self._status.average_response_time = sum(self._samples) / len(self._samples)

    # ── Observers ────────────────────────────────────────────────

    def add_status_listener(self, listener: Listener[ServiceHealthStatus]) -> Unsubscribe:
        return self._listeners.subscribe(listener)

    def remove_status_listener(self, listener: Listener[ServiceHealthStatus]) -> None:
        self._listeners.unsubscribe(listener)

    # ── Queries and knobs ────────────────────────────────────────

    def get_status(self) -> ServiceHealthStatus:
        """Independent copy of the current status with ``uptime`` filled in."""
        snapshot = self._status.copy()
        if self._last_successful_check is not None:
            snapshot.uptime = datetime.now(UTC) - self._last_successful_check
        return snapshot

    def reset_stats(self) -> None:
        self._status.total_requests = 0
        self._status.successful_requests = 0
        self._status.failed_requests = 0
        self._status.average_response_time = 0.0
        self._samples.clear()
        self._trace("Companion request statistics reset")

    def update_options(self, **changes: Any) -> None:
        """Merge *changes* into the config; restart the timer if running."""
        self._config = self._config.merged(**changes)
        self._trace("Monitoring options updated: %s", self._config)
        if self._monitoring:
            self.stop_monitoring()
            self.start_monitoring()

    def is_service_available(self) -> bool:
        return (
            self._status.is_available
            and self._status.consecutive_errors < AVAILABILITY_ERROR_CEILING
        )

    def get_diagnostics(self) -> dict[str, Any]:
        return {
            "status": self.get_status().to_dict(),
            "is_monitoring": self._monitoring,
            "last_successful_check": (
                self._last_successful_check.isoformat()
                if self._last_successful_check is not None
                else None
            ),
            "recovery_attempts": self._recovery_attempts,
            "options": {
                "check_interval_ms": self._config.check_interval_ms,
                "max_consecutive_errors": self._config.max_consecutive_errors,
                "auto_restart": self._config.auto_restart,
                "debug": self._config.debug,
            },
        }

    # ── Document opening with statistics ─────────────────────────

    async def open_document(
        self,
        doc: DocumentRef,
        timeout_ms: int | None = None,
        *,
        retry: bool = True,
    ) -> OpenResult:
        self._status.total_requests += 1
        result = await self._opener.open_local_document(
            doc, timeout_ms or DEFAULT_OPEN_TIMEOUT_MS, retry=retry
        )
        if result.ok:
            self._status.successful_requests += 1
        else:
            self._status.failed_requests += 1
        return result
