"""Client for the server-side sync job and its progress stream.

``SyncStreamClient`` starts a job with ``POST /api/sync``, attaches to
``GET /api/sync/stream`` and keeps a ``SyncProgress`` view of the job.
The status moves only along the table in :mod:`docbridge.sync_state`.

Two pieces of state decide what happens when things go wrong:

* ``_stream`` is the single live ``EventStream``.  Opening while one exists
  is a no-op, so there is never more than one subscription per client.
* ``_syncing`` says whether the job is still believed to be running.  It is
  the only input to the reconnect decision; whether the stream object is
  alive or not is irrelevant.  Terminal events clear it before anything
  else happens.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import httpx

from docbridge.events import Broadcaster, Listener, Unsubscribe
from docbridge.exceptions import (
    MalformedResponse,
    NetworkFailure,
    SyncConflict,
    TransportTimeout,
)
from docbridge.models import (
    IDLE_PROGRESS,
    ProgressPayload,
    SyncProgress,
    SyncStartResult,
)
from docbridge.sync_state import SyncStateMachine, SyncStatus
from docbridge.transport import (
    EventStream,
    ServerSentEvent,
    error_message,
    is_success,
    read_json,
    request,
)

logger = logging.getLogger(__name__)

SYNC_START_PATH = "/api/sync"
SYNC_STREAM_PATH = "/api/sync/stream"

DEFAULT_START_TIMEOUT_MS = 15_000
DEFAULT_CLOSE_GRACE_MS = 5_000
DEFAULT_ERROR_GRACE_MS = 2_000
DEFAULT_RECONNECT_DELAY_MS = 2_000
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5

CONNECTION_LOST_MESSAGE = "connection to the sync stream was lost"
JOB_VANISHED_MESSAGE = "sync job is no longer running on the server"
SYNC_FAILED_MESSAGE = "sync failed"


class SyncStreamClient:
    """One client per sync session.

    Callbacks are invoked from stream handlers on the event loop.
    ``on_progress`` must not trigger data refreshes itself; refreshing is
    the job of ``on_completed``, which runs before the stream is torn down.
    """

    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
        on_progress: Callable[[SyncProgress], None] | None = None,
        on_completed: Callable[[SyncProgress], None] | None = None,
        on_error: Callable[[str], None] | None = None,
        start_timeout_ms: int = DEFAULT_START_TIMEOUT_MS,
        close_grace_ms: int = DEFAULT_CLOSE_GRACE_MS,
        error_grace_ms: int = DEFAULT_ERROR_GRACE_MS,
        reconnect_delay_ms: int = DEFAULT_RECONNECT_DELAY_MS,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._headers = dict(headers or {})
        self._on_progress = on_progress
        self._on_completed = on_completed
        self._on_error = on_error
        self._start_timeout_ms = start_timeout_ms
        self._close_grace_ms = close_grace_ms
        self._error_grace_ms = error_grace_ms
        self._reconnect_delay_ms = reconnect_delay_ms
        self._max_reconnect_attempts = max_reconnect_attempts

        self._machine = SyncStateMachine()
        self._progress: SyncProgress = IDLE_PROGRESS
        self._updates: Broadcaster[SyncProgress] = Broadcaster("sync-progress")
        self._stream: EventStream | None = None
        self._syncing = False
        self._sync_id: str | None = None
        self._reconnect_attempts = 0
        self._reconnect_task: asyncio.Task[None] | None = None
        self._close_task: asyncio.Task[None] | None = None

    # ── Accessors ────────────────────────────────────────────────

    @property
    def progress(self) -> SyncProgress:
        return self._progress

    @property
    def status(self) -> SyncStatus:
        return self._machine.status

    @property
    def sync_id(self) -> str | None:
        return self._sync_id

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def has_stream(self) -> bool:
        return self._stream is not None

    @property
    def is_connected(self) -> bool:
        return self._stream is not None and self._stream.is_connected

    def subscribe(self, listener: Listener[SyncProgress]) -> Unsubscribe:
        return self._updates.subscribe(listener)

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    # ── Starting a job ───────────────────────────────────────────

    async def start_sync(self) -> SyncStartResult:
        """Start a job (or resume into the one already running).

        Raises
        ------
        InvalidSyncTransition
            Called from ``completed``/``error`` without ``reset()`` first.
        """
        status = self._machine.status
        if status is SyncStatus.SYNCING:
            self._open_stream()
            return SyncStartResult(success=True, sync_id=self._sync_id)
        if status is SyncStatus.PENDING:
            return SyncStartResult(success=False, error="a sync start is already pending")

        self._machine.advance(SyncStatus.PENDING)
        self._set_progress(SyncProgress(status=SyncStatus.PENDING))

        try:
            response = await request(
                self._client,
                "POST",
                self._url(SYNC_START_PATH),
                timeout_ms=self._start_timeout_ms,
                headers={"Content-Type": "application/json", **self._headers},
            )
        except (TransportTimeout, NetworkFailure) as exc:
            return self._start_failed(str(exc))
        except httpx.HTTPError as exc:
            return self._start_failed(str(exc) or type(exc).__name__)

        if self._machine.status is SyncStatus.IDLE:
            logger.info("Sync start answered after reset; ignoring response")
            return SyncStartResult(success=False, error="sync start cancelled")
        if self._machine.is_terminal:
            # the stream already reported the outcome while the POST was in flight
            return SyncStartResult(
                success=self._machine.status is SyncStatus.COMPLETED,
                sync_id=self._sync_id,
                error=self._progress.error,
            )

        if response.status_code == 409:
            try:
                conflict = self._parse_conflict(response)
            except MalformedResponse as exc:
                logger.warning("Unusable 409 from sync start: %s", exc.detail)
                return self._start_failed(error_message(response, "sync already in progress"))
            return self._resume_running_job(conflict)

        if not is_success(response):
            return self._start_failed(
                error_message(response, f"HTTP error {response.status_code}")
            )

        try:
            data = read_json(response)
        except MalformedResponse as exc:
            logger.warning("Sync start body unreadable, continuing: %s", exc.detail)
            data = None
        if isinstance(data, dict) and data.get("syncId") is not None:
            self._sync_id = str(data["syncId"])

        logger.info("Sync started (id=%s)", self._sync_id)
        self._enter_syncing()
        if self._progress.status is not SyncStatus.SYNCING:
            self._set_progress(SyncProgress(status=SyncStatus.SYNCING))
        self._open_stream()
        return SyncStartResult(success=True, sync_id=self._sync_id)

    @staticmethod
    def _parse_conflict(response: httpx.Response) -> SyncConflict:
        body = read_json(response)
        current = body.get("currentProgress") if isinstance(body, dict) else None
        if current is None:
            raise MalformedResponse("409 without currentProgress")
        payload = ProgressPayload.parse(current)
        return SyncConflict(
            SyncProgress(
                status=SyncStatus.SYNCING,
                processed=payload.processed,
                total=payload.total,
                current_batch=payload.current_batch,
                total_batches=payload.total_batches,
                duration_ms=payload.duration,
            )
        )

    def _resume_running_job(self, conflict: SyncConflict) -> SyncStartResult:
        progress = conflict.progress
        logger.info(
            "Sync already running on server, attaching (%d/%d)",
            progress.processed,
            progress.total,
        )
        self._enter_syncing()
        self._progress = progress
        self._invoke(self._on_progress, progress)
        self._updates.publish(progress)
        self._open_stream()
        return SyncStartResult(success=True, sync_id=self._sync_id)

    def _start_failed(self, message: str) -> SyncStartResult:
        logger.warning("Sync start failed: %s", message)
        if self._machine.status is SyncStatus.PENDING:
            self._machine.advance(SyncStatus.ERROR)
            self._set_progress(SyncProgress(status=SyncStatus.ERROR, error=message))
            self._invoke(self._on_error, message)
        return SyncStartResult(success=False, error=message)

    def _enter_syncing(self) -> None:
        if self._machine.status is SyncStatus.IDLE:
            self._machine.advance(SyncStatus.PENDING)
        self._machine.advance(SyncStatus.SYNCING)
        self._syncing = True

    # ── Stream lifecycle ─────────────────────────────────────────

    def connect(self) -> None:
        """Attach to the stream without starting a job."""
        self._open_stream()

    def _open_stream(self) -> None:
        if self._stream is not None:
            return
        stream = EventStream(
            self._client,
            self._url(SYNC_STREAM_PATH),
            on_event=self._handle_event,
            on_open=self._handle_open,
            on_disconnect=lambda error: self._handle_disconnect(stream, error),
            headers=self._headers,
        )
        self._stream = stream
        stream.open()

    def _handle_open(self) -> None:
        self._reconnect_attempts = 0

    def _handle_disconnect(self, stream: EventStream, error: Exception | None) -> None:
        if self._stream is stream:
            self._stream = None

        if not self._syncing:
            logger.info("Sync stream ended while idle; not reconnecting")
            return

        self._reconnect_attempts += 1
        if self._reconnect_attempts > self._max_reconnect_attempts:
            logger.error(
                "Sync stream lost after %d reconnect attempts", self._max_reconnect_attempts
            )
            self._fail(CONNECTION_LOST_MESSAGE, self._error_grace_ms)
            return

        logger.warning(
            "Sync stream dropped (%s); reconnecting in %dms (attempt %d/%d)",
            error or "closed by server",
            self._reconnect_delay_ms,
            self._reconnect_attempts,
            self._max_reconnect_attempts,
        )
        self._cancel_task(self._reconnect_task)
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_after(self._reconnect_delay_ms)
        )

    async def _reconnect_after(self, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000)
        self._reconnect_task = None
        if self._syncing:
            self._open_stream()

    def _schedule_close(self, delay_ms: int) -> None:
        stream = self._stream
        if stream is None:
            return
        self._cancel_task(self._close_task)
        self._close_task = asyncio.get_running_loop().create_task(
            self._close_after(stream, delay_ms)
        )

    async def _close_after(self, stream: EventStream, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000)
        self._close_task = None
        stream.close()
        if self._stream is stream:
            self._stream = None

    def disconnect(self) -> None:
        """Close any stream now and stop believing a job is running."""
        self._cancel_task(self._reconnect_task)
        self._cancel_task(self._close_task)
        self._reconnect_task = None
        self._close_task = None
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        self._syncing = False

    def reset(self) -> None:
        """``disconnect()`` plus a return to the idle progress value."""
        self.disconnect()
        self._machine.reset()
        self._sync_id = None
        self._reconnect_attempts = 0
        self._set_progress(IDLE_PROGRESS)

    async def aclose(self) -> None:
        stream = self._stream
        self.disconnect()
        if stream is not None:
            await stream.wait_closed()
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _cancel_task(task: asyncio.Task[None] | None) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ── Event handlers ───────────────────────────────────────────

    def _handle_event(self, sse: ServerSentEvent) -> None:
        if sse.event == "ping":
            return
        handler = {
            "status": self._on_status_event,
            "progress": self._on_progress_event,
            "completed": self._on_completed_event,
            "error": self._on_error_event,
        }.get(sse.event)
        if handler is None:
            logger.debug("Ignoring unknown sync event %r", sse.event)
            return
        try:
            data = sse.json()
            handler(data)
        except MalformedResponse as exc:
            logger.warning("Dropping unreadable %r event: %s", sse.event, exc.detail)

    def _on_status_event(self, data: Any) -> None:
        if not isinstance(data, dict) or data.get("status") != SyncStatus.IDLE.value:
            return
        status = self._machine.status
        if status is SyncStatus.IDLE:
            self._set_progress(IDLE_PROGRESS)
        elif status is SyncStatus.SYNCING:
            self._fail(JOB_VANISHED_MESSAGE, self._error_grace_ms)

    def _on_progress_event(self, data: Any) -> None:
        payload = ProgressPayload.parse(data)
        # a stream reopened after the job ended replays its final state as "progress"
        if payload.status == SyncStatus.COMPLETED.value:
            self._on_completed_event(data)
            return
        if payload.status == SyncStatus.ERROR.value:
            self._fail(
                payload.error or payload.message or SYNC_FAILED_MESSAGE, self._error_grace_ms
            )
            return
        status = self._machine.status
        if status in (SyncStatus.COMPLETED, SyncStatus.ERROR):
            logger.debug("Ignoring progress after %s", status.value)
            return
        if status is not SyncStatus.SYNCING:
            self._enter_syncing()
        self._machine.advance(SyncStatus.SYNCING)

        progress = SyncProgress(
            status=SyncStatus.SYNCING,
            processed=payload.processed,
            total=payload.total,
            current_batch=payload.current_batch,
            total_batches=payload.total_batches,
            duration_ms=payload.duration,
        )
        self._progress = progress
        self._invoke(self._on_progress, progress)
        self._updates.publish(progress)

    def _on_completed_event(self, data: Any) -> None:
        payload = ProgressPayload.parse(data)
        # a job can finish before its start request is answered
        if self._machine.status is SyncStatus.PENDING:
            self._machine.advance(SyncStatus.SYNCING)
        if self._machine.status is not SyncStatus.SYNCING:
            logger.debug("Ignoring completed event in %s", self._machine.status.value)
            return
        self._syncing = False

        failed = payload.failed or 0
        progress = SyncProgress(
            status=SyncStatus.COMPLETED,
            processed=payload.processed,
            total=payload.processed + failed,
            duration_ms=payload.duration,
            success=payload.success,
            failed=payload.failed,
        )
        self._machine.advance(SyncStatus.COMPLETED)
        self._progress = progress
        logger.info(
            "Sync completed: %d processed, %d failed", progress.processed, failed
        )
        self._invoke(self._on_completed, progress)
        self._updates.publish(progress)
        self._schedule_close(self._close_grace_ms)

    def _on_error_event(self, data: Any) -> None:
        payload = ProgressPayload.parse(data)
        self._fail(
            payload.message or payload.error or SYNC_FAILED_MESSAGE, self._error_grace_ms
        )

    def _fail(self, message: str, close_after_ms: int) -> None:
        self._syncing = False
        if self._machine.can_advance(SyncStatus.ERROR):
            self._machine.advance(SyncStatus.ERROR)
            self._set_progress(SyncProgress(status=SyncStatus.ERROR, error=message))
        else:
            logger.warning(
                "Sync error reported in %s state: %s", self._machine.status.value, message
            )
        self._invoke(self._on_error, message)
        self._schedule_close(close_after_ms)

    # ── Helpers ──────────────────────────────────────────────────

    def _set_progress(self, progress: SyncProgress) -> None:
        self._progress = progress
        self._updates.publish(progress)

    @staticmethod
    def _invoke(callback: Callable[[Any], None] | None, value: Any) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:
            logger.exception("Sync callback %r failed", callback)
