"""docbridge: resilient client layer for a document tracker's remote actors.

Public API:
    - HealthMonitor: supervises the localhost companion service
    - OpenRequestClient: asks the companion to open documents; manages roots
    - CompanionAvailability: TTL-cached ``/health`` probe
    - SyncStreamClient: starts a server sync job and follows its SSE stream
    - SyncStatus: idle / pending / syncing / completed / error
    - build_candidate_names: file names tried for a document
    - Settings: environment-driven configuration
    - DocbridgeError: base exception for blanket catch
"""

from __future__ import annotations

from docbridge.availability import CompanionAvailability
from docbridge.config import Settings, load_settings
from docbridge.events import (
    Broadcaster,
    BroadcastNotificationSink,
    LoggingNotificationSink,
    RecoveryNeeded,
)
from docbridge.exceptions import (
    DocbridgeError,
    InvalidSyncTransition,
    MalformedResponse,
    NetworkFailure,
    ProtocolError,
    SyncConflict,
    TransportTimeout,
    UserInputError,
)
from docbridge.models import (
    ClientConfig,
    ClientConfigResult,
    DocumentRef,
    DrivePathsResult,
    FailureKind,
    MonitoringConfig,
    OpenDocumentRequest,
    OpenResult,
    RootsResult,
    ServiceHealthStatus,
    SyncProgress,
    SyncStartResult,
    WatchedRoots,
)
from docbridge.monitor import HealthMonitor
from docbridge.opener import OpenRequestClient, build_candidate_names, validate_root_path
from docbridge.sync_client import SyncStreamClient
from docbridge.sync_state import SyncStateMachine, SyncStatus

__all__ = [
    "BroadcastNotificationSink",
    "Broadcaster",
    "ClientConfig",
    "ClientConfigResult",
    "CompanionAvailability",
    "DocbridgeError",
    "DocumentRef",
    "DrivePathsResult",
    "FailureKind",
    "HealthMonitor",
    "InvalidSyncTransition",
    "LoggingNotificationSink",
    "MalformedResponse",
    "MonitoringConfig",
    "NetworkFailure",
    "OpenDocumentRequest",
    "OpenRequestClient",
    "OpenResult",
    "ProtocolError",
    "RecoveryNeeded",
    "RootsResult",
    "ServiceHealthStatus",
    "Settings",
    "SyncConflict",
    "SyncProgress",
    "SyncStartResult",
    "SyncStateMachine",
    "SyncStatus",
    "SyncStreamClient",
    "TransportTimeout",
    "UserInputError",
    "WatchedRoots",
    "build_candidate_names",
    "load_settings",
    "validate_root_path",
]
