"""Data model shared by the monitor, the opener and the sync client.

Internal state is held in plain dataclasses; anything parsed off the wire
goes through a pydantic model first so that a bad payload surfaces as
``MalformedResponse`` instead of a ``KeyError`` deep in a handler.
"""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from docbridge.exceptions import MalformedResponse
from docbridge.sync_state import SyncStatus

if TYPE_CHECKING:
    from docbridge.config import Settings

RESPONSE_TIME_WINDOW = 10


# ---------------------------------------------------------------------------
# Health monitoring
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ServiceHealthStatus:
    """Point-in-time view of the companion service.

    Owned by a single ``HealthMonitor``; everyone else receives copies.
    ``average_response_time`` is in milliseconds.
    """

    is_available: bool = False
    last_check: datetime = field(default_factory=lambda: datetime.now(UTC))
    consecutive_errors: int = 0
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time: float = 0.0
    uptime: timedelta | None = None

    def copy(self) -> ServiceHealthStatus:
        return dataclasses.replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_available": self.is_available,
            "last_check": self.last_check.isoformat(),
            "consecutive_errors": self.consecutive_errors,
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "average_response_time": round(self.average_response_time, 2),
            "uptime_seconds": (
                self.uptime.total_seconds() if self.uptime is not None else None
            ),
        }


@dataclass(slots=True, frozen=True)
class MonitoringConfig:
    """Timing and recovery policy for ``HealthMonitor``."""

    check_interval_ms: int = 30_000
    max_consecutive_errors: int = 5
    auto_restart: bool = True
    debug: bool = False
    probe_timeout_ms: int = 5_000
    recovery_backoff_ms: int = 2_000
    recovery_timeout_ms: int = 8_000

    def merged(self, **changes: Any) -> MonitoringConfig:
        """Return a new config with *changes* applied; unknown keys raise."""
        unknown = set(changes) - {f.name for f in dataclasses.fields(self)}
        if unknown:
            raise TypeError(f"Unknown monitoring options: {sorted(unknown)}")
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_settings(cls, settings: Settings) -> MonitoringConfig:
        return cls(
            check_interval_ms=settings.check_interval_ms,
            max_consecutive_errors=settings.max_consecutive_errors,
            auto_restart=settings.auto_restart,
            debug=settings.debug,
        )


# ---------------------------------------------------------------------------
# Opening documents
# ---------------------------------------------------------------------------


class FailureKind(StrEnum):
    """Why an opener result (``OpenResult``, ``RootsResult``, ...) is not ok."""

    TIMEOUT = "timeout"
    NETWORK = "network"
    PROTOCOL = "protocol"
    MALFORMED = "malformed"
    REMOTE = "remote"
    BUSY = "busy"
    REJECTED = "rejected"
    NOT_FOUND = "not_found"


@dataclass(slots=True, frozen=True)
class DocumentRef:
    """The subset of a tracked document the companion needs."""

    title: str
    revision: str = ""
    file_type: str = ""
    path: str = ""
    drive_url: str | None = None


@dataclass(slots=True, frozen=True)
class OpenDocumentRequest:
    """Body of ``POST /open``."""

    title: str
    revision: str
    file_type: str
    logical_path: str
    candidates: tuple[str, ...]
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def request_id(self) -> str:
        return f"{self.title}-{self.revision}-{self.file_type}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "revision": self.revision,
            "fileType": self.file_type,
            "logicalPath": self.logical_path,
            "candidates": list(self.candidates),
            "requestId": self.request_id,
            "timestamp": self.timestamp,
        }


@dataclass(slots=True, frozen=True)
class OpenResult:
    ok: bool
    message: str | None = None
    kind: FailureKind | None = None


class CompanyInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    code: str | None = None


class WatchedRoots(BaseModel):
    """Folders the companion is allowed to open files from."""

    model_config = ConfigDict(extra="ignore")

    roots: list[str] = Field(default_factory=list)
    company: CompanyInfo | None = None

    @field_validator("roots")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))


@dataclass(slots=True, frozen=True)
class RootsResult:
    ok: bool
    roots: WatchedRoots | None = None
    message: str | None = None
    kind: FailureKind | None = None


class DrivePathsReport(BaseModel):
    """Body of ``GET /detect-drive-paths`` and its retrying variant."""

    model_config = ConfigDict(extra="ignore")

    paths: list[str] = Field(default_factory=list)
    success: bool | None = None
    message: str | None = None
    attempts: int | None = None

    @field_validator("paths")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))


@dataclass(slots=True, frozen=True)
class DrivePathsResult:
    """Synced-drive folders found on the user's machine."""

    ok: bool
    paths: tuple[str, ...] = ()
    message: str | None = None
    kind: FailureKind | None = None
    attempts: int | None = None


class ClientConfig(BaseModel):
    """Per-client folder selection stored by the companion."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    client_id: str = Field(alias="clientId")
    drive_paths: list[str] = Field(default_factory=list, alias="drivePaths")
    roots: list[str] = Field(default_factory=list)


@dataclass(slots=True, frozen=True)
class ClientConfigResult:
    ok: bool
    config: ClientConfig | None = None
    message: str | None = None
    kind: FailureKind | None = None


# ---------------------------------------------------------------------------
# Sync progress
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class SyncProgress:
    """Snapshot of a server-side sync job as seen by the client."""

    status: SyncStatus = SyncStatus.IDLE
    processed: int = 0
    total: int = 0
    current_batch: int = 0
    total_batches: int = 0
    duration_ms: int | None = None
    success: bool | None = None
    failed: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "processed": self.processed,
            "total": self.total,
            "currentBatch": self.current_batch,
            "totalBatches": self.total_batches,
            "duration": self.duration_ms,
            "success": self.success,
            "failed": self.failed,
            "error": self.error,
        }


IDLE_PROGRESS = SyncProgress()


class ProgressPayload(BaseModel):
    """JSON payload of ``progress``/``completed``/``error`` events and of
    the 409 ``currentProgress`` field.  Missing counters read as 0."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    status: str | None = None
    processed: int = 0
    total: int = 0
    current_batch: int = Field(default=0, alias="currentBatch")
    total_batches: int = Field(default=0, alias="totalBatches")
    duration: int | None = None
    success: bool | None = None
    failed: int | None = None
    message: str | None = None
    error: str | None = None

    @classmethod
    def parse(cls, data: Any) -> ProgressPayload:
        if not isinstance(data, dict):
            raise MalformedResponse(f"expected a JSON object, got {type(data).__name__}")
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise MalformedResponse(str(exc)) from exc


@dataclass(slots=True, frozen=True)
class SyncStartResult:
    success: bool
    sync_id: str | None = None
    error: str | None = None
