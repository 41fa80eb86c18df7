"""Explicit state machine for a client-side view of a sync job.

This module exposes:

- ``SyncStatus``: enum of the five legal states.
- ``VALID_TRANSITIONS``: frozenset of (from, to) pairs; single source of truth.
- ``validate_transition``: pure guard; raises on an illegal pair.
- ``reachable_from``: immediate successors of a state.
- ``SyncStateMachine``: stateful wrapper used by ``SyncStreamClient``.

``completed`` and ``error`` are terminal until an explicit reset.
"""

from __future__ import annotations

import logging
from enum import StrEnum

from docbridge.exceptions import InvalidSyncTransition

logger = logging.getLogger(__name__)


class SyncStatus(StrEnum):
    IDLE = "idle"
    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    ERROR = "error"


#: All valid (from_status, to_status) pairs.
VALID_TRANSITIONS: frozenset[tuple[SyncStatus, SyncStatus]] = frozenset(
    {
        (SyncStatus.IDLE, SyncStatus.PENDING),  # start requested
        (SyncStatus.PENDING, SyncStatus.SYNCING),  # accepted, or 409 resume
        (SyncStatus.PENDING, SyncStatus.ERROR),  # start rejected
        (SyncStatus.SYNCING, SyncStatus.SYNCING),  # progress update
        (SyncStatus.SYNCING, SyncStatus.COMPLETED),
        (SyncStatus.SYNCING, SyncStatus.ERROR),
        (SyncStatus.COMPLETED, SyncStatus.IDLE),  # reset
        (SyncStatus.ERROR, SyncStatus.IDLE),  # reset
    }
)

TERMINAL_STATES: frozenset[SyncStatus] = frozenset(
    {SyncStatus.COMPLETED, SyncStatus.ERROR}
)


def reachable_from(status: SyncStatus) -> frozenset[SyncStatus]:
    """Return the set of states directly reachable from *status*."""
    return frozenset(t for f, t in VALID_TRANSITIONS if f == status)


def validate_transition(from_status: SyncStatus, to_status: SyncStatus) -> bool:
    """Return ``True`` iff ``from_status → to_status`` is in the table.

    Raises
    ------
    InvalidSyncTransition
        If the pair is not in ``VALID_TRANSITIONS``.  The state is never
        inferred from flags; the table is the only authority.
    """
    if (from_status, to_status) in VALID_TRANSITIONS:
        return True
    raise InvalidSyncTransition(
        from_status,
        to_status,
        sorted(s.value for s in reachable_from(from_status)),
    )


class SyncStateMachine:
    """Tracks the current ``SyncStatus`` and validates every move.

    ``status`` has no setter; it changes only through ``advance()`` or
    ``reset()``.
    """

    __slots__ = ("_status",)

    def __init__(self) -> None:
        self._status = SyncStatus.IDLE

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def is_terminal(self) -> bool:
        return self._status in TERMINAL_STATES

    def can_advance(self, to_status: SyncStatus) -> bool:
        return (self._status, to_status) in VALID_TRANSITIONS

    def advance(self, to_status: SyncStatus) -> SyncStatus:
        """Move to *to_status*; on an illegal move the state is unchanged."""
        validate_transition(self._status, to_status)
        if to_status != self._status:
            logger.debug("Sync status %s → %s", self._status.value, to_status.value)
        self._status = to_status
        return self._status

    def reset(self) -> None:
        """Force the machine back to IDLE from any state."""
        self._status = SyncStatus.IDLE

    def __repr__(self) -> str:
        return f"SyncStateMachine(status={self._status.value!r})"
