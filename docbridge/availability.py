"""Cached availability probe for the companion service.

``HealthMonitor`` only depends on the ``AvailabilityProbe`` protocol; this
module provides the default implementation on top of
``OpenRequestClient.check_availability``.  Results are cached for a short
TTL so that UI code asking "is it up?" several times a second does not
hammer localhost.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from docbridge.opener import OpenRequestClient

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_MS = 5_000
DEFAULT_PROBE_TIMEOUT_MS = 3_000


class AvailabilityProbe(Protocol):
    async def probe(self, timeout_ms: int, force_refresh: bool = False) -> bool: ...

    def clear(self) -> None: ...


@dataclass(slots=True, frozen=True)
class _CachedResult:
    available: bool
    checked_at: float


class CompanionAvailability:
    """TTL-cached wrapper around the companion's ``/health`` endpoint."""

    def __init__(
        self,
        opener: OpenRequestClient,
        *,
        cache_ttl_ms: int = DEFAULT_CACHE_TTL_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._opener = opener
        self._ttl_s = cache_ttl_ms / 1000
        self._monotonic = clock
        self._cached: _CachedResult | None = None

    @property
    def last_result(self) -> bool | None:
        return self._cached.available if self._cached is not None else None

    async def probe(
        self,
        timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS,
        force_refresh: bool = False,
    ) -> bool:
        if not force_refresh and self._cached is not None:
            age = self._monotonic() - self._cached.checked_at
            if age < self._ttl_s:
                logger.debug("Companion availability (cached): %s", self._cached.available)
                return self._cached.available

        available = await self._opener.check_availability(timeout_ms)
        self._cached = _CachedResult(available, self._monotonic())
        return available

    def clear(self) -> None:
        self._cached = None
