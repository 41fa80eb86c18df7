"""Client for the localhost companion service that opens documents.

Browsers cannot open arbitrary local paths, so a helper process listening
on 127.0.0.1 performs the OS-level open.  This module asks it to open one
of several candidate file names for a document, probes its ``/health``
endpoint, manages the set of folders it is allowed to serve from, and
looks up synced-drive folders and per-client folder selections.

Every expected failure comes back as an ``OpenResult`` / ``RootsResult``;
the only exception that escapes is ``UserInputError`` for a root path that
is rejected before anything is sent.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from docbridge.config import DEFAULT_COMPANION_URL
from docbridge.exceptions import (
    MalformedResponse,
    NetworkFailure,
    TransportTimeout,
    UserInputError,
)
from docbridge.models import (
    ClientConfig,
    ClientConfigResult,
    DocumentRef,
    DrivePathsReport,
    DrivePathsResult,
    FailureKind,
    OpenDocumentRequest,
    OpenResult,
    RootsResult,
    WatchedRoots,
)
from docbridge.transport import error_message, is_success, read_json, request

logger = logging.getLogger(__name__)

DEFAULT_OPEN_TIMEOUT_MS = 4_000
DEFAULT_HEALTH_TIMEOUT_MS = 2_000
DEFAULT_CONFIG_TIMEOUT_MS = 5_000
DEFAULT_LOAD_CONFIG_TIMEOUT_MS = 4_000
DEFAULT_DETECT_TIMEOUT_MS = 8_000
DEFAULT_DETECT_RETRY_TIMEOUT_MS = 45_000
DEFAULT_DETECT_RETRIES = 5
DEFAULT_DETECT_RETRY_DELAY_MS = 2_000
DEFAULT_RETRY_DELAY_MS = 1_000
MAX_CONCURRENT_REQUESTS = 3
RETRYABLE_STATUS = frozenset({500, 502, 503})

REMOTE_DOCUMENT_MESSAGE = "remote document"
TIMEOUT_MESSAGE = "timeout"

_DRIVE_PATH = re.compile(r"^[A-Za-z]:\\")
_UNC_PATH = re.compile(r"^\\\\[^\\/]+\\[^\\/]+")


def build_candidate_names(title: str, revision: str, ext: str) -> list[str]:
    """File names to try for a document, most specific first.

    >>> build_candidate_names("Report", "Rev.1", "pdf")
    ['Report Rev.1.pdf', 'Report.pdf', 'Report Rev.1', 'Report']
    """
    if ext.startswith("."):
        ext = ext[1:]
    candidates: dict[str, None] = {}
    if title and revision and ext:
        candidates[f"{title} {revision}.{ext}"] = None
    if title and ext:
        candidates[f"{title}.{ext}"] = None
    if title and revision:
        candidates[f"{title} {revision}"] = None
    if title:
        candidates[title] = None
    return list(candidates)


def validate_root_path(path: str) -> str:
    """Accept ``X:\\...`` drive paths and ``\\\\server\\share`` UNC paths."""
    cleaned = path.strip()
    if not cleaned:
        raise UserInputError("root", path, "path is empty")
    if not (_DRIVE_PATH.match(cleaned) or _UNC_PATH.match(cleaned)):
        raise UserInputError(
            "root",
            path,
            "expected a drive path like C:\\Docs or a UNC path like \\\\server\\share",
        )
    return cleaned


class OpenRequestClient:
    """Talks to the companion service over HTTP.

    Pass an ``httpx.AsyncClient`` to share a connection pool (or to inject
    a mock transport); otherwise the client creates and owns one.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_COMPANION_URL,
        *,
        client: httpx.AsyncClient | None = None,
        debug: bool = False,
        retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
        max_concurrent: int = MAX_CONCURRENT_REQUESTS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._debug = debug
        self._retry_delay_ms = retry_delay_ms
        self._max_concurrent = max_concurrent
        self._in_flight: set[str] = set()
        self._roots: WatchedRoots | None = None

    async def __aenter__(self) -> OpenRequestClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def cached_roots(self) -> WatchedRoots | None:
        """Last roots configuration returned by the companion, if any."""
        return self._roots.model_copy(deep=True) if self._roots is not None else None

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _trace(self, msg: str, *args: Any) -> None:
        logger.log(logging.INFO if self._debug else logging.DEBUG, msg, *args)

    # ── Opening documents ────────────────────────────────────────

    @staticmethod
    def build_request(doc: DocumentRef) -> OpenDocumentRequest:
        return OpenDocumentRequest(
            title=doc.title,
            revision=doc.revision,
            file_type=doc.file_type,
            logical_path=doc.path,
            candidates=tuple(
                build_candidate_names(doc.title, doc.revision, doc.file_type)
            ),
        )

    async def open_local_document(
        self,
        doc: DocumentRef,
        timeout_ms: int = DEFAULT_OPEN_TIMEOUT_MS,
        *,
        retry: bool = True,
    ) -> OpenResult:
        """Ask the companion to open *doc*; never raises for expected failures."""
        if doc.drive_url:
            return OpenResult(ok=False, message=REMOTE_DOCUMENT_MESSAGE, kind=FailureKind.REMOTE)

        open_request = self.build_request(doc)
        request_id = open_request.request_id
        if request_id in self._in_flight:
            self._trace("Open already in flight for %s", request_id)
            return OpenResult(
                ok=False,
                message="an open request for this document is already in progress",
                kind=FailureKind.BUSY,
            )
        if len(self._in_flight) >= self._max_concurrent:
            self._trace("Too many concurrent open requests (%d)", len(self._in_flight))
            return OpenResult(
                ok=False,
                message="companion service busy, retry in a few seconds",
                kind=FailureKind.BUSY,
            )

        self._in_flight.add(request_id)
        try:
            self._trace("Opening %r rev %r", doc.title, doc.revision)
            return await self._send_open(open_request, timeout_ms, retry)
        finally:
            self._in_flight.discard(request_id)

    async def _send_open(
        self,
        open_request: OpenDocumentRequest,
        timeout_ms: int,
        retry: bool,
    ) -> OpenResult:
        try:
            response = await request(
                self._client,
                "POST",
                self._url("/open"),
                timeout_ms=timeout_ms,
                json=open_request.to_payload(),
                headers={
                    "Cache-Control": "no-cache",
                    "X-Request-ID": open_request.request_id,
                },
            )
        except TransportTimeout:
            self._trace("Open timed out after %dms", timeout_ms)
            return OpenResult(ok=False, message=TIMEOUT_MESSAGE, kind=FailureKind.TIMEOUT)
        except NetworkFailure as exc:
            self._trace("Companion unreachable: %s", exc.detail)
            return OpenResult(ok=False, message=str(exc), kind=FailureKind.NETWORK)
        except httpx.HTTPError as exc:
            return OpenResult(ok=False, message=str(exc) or type(exc).__name__)

        if not is_success(response):
            if retry and response.status_code in RETRYABLE_STATUS:
                self._trace("Retrying open after HTTP %d", response.status_code)
                await asyncio.sleep(self._retry_delay_ms / 1000)
                return await self._send_open(open_request, timeout_ms, retry=False)
            return OpenResult(
                ok=False,
                message=error_message(
                    response, f"companion service unavailable ({response.status_code})"
                ),
                kind=FailureKind.PROTOCOL,
            )

        try:
            data = read_json(response)
            if not isinstance(data, dict):
                raise MalformedResponse(f"expected a JSON object, got {type(data).__name__}")
        except MalformedResponse as exc:
            logger.warning("Companion /open returned an unusable body: %s", exc.detail)
            return OpenResult(
                ok=False,
                message="malformed response from companion service",
                kind=FailureKind.MALFORMED,
            )

        if data.get("success") is True:
            self._trace("Opened %s", data.get("path") or "unknown path")
            return OpenResult(ok=True, message=data.get("message"))

        message = data.get("message") or "companion could not open the file"
        self._trace("Open refused: %s", message)
        return OpenResult(ok=False, message=message, kind=FailureKind.REJECTED)

    # ── Availability ─────────────────────────────────────────────

    async def check_availability(self, timeout_ms: int = DEFAULT_HEALTH_TIMEOUT_MS) -> bool:
        try:
            response = await request(
                self._client,
                "GET",
                self._url("/health"),
                timeout_ms=timeout_ms,
                headers={"Cache-Control": "no-cache"},
            )
        except (TransportTimeout, NetworkFailure, httpx.HTTPError) as exc:
            self._trace("Companion health probe failed: %s", exc)
            return False
        self._trace("Companion health probe: HTTP %d", response.status_code)
        return is_success(response)

    # ── Watched roots ────────────────────────────────────────────

    async def list_roots(self, timeout_ms: int = DEFAULT_CONFIG_TIMEOUT_MS) -> RootsResult:
        return await self._config_call("GET", None, timeout_ms)

    async def add_root(
        self, path: str, timeout_ms: int = DEFAULT_CONFIG_TIMEOUT_MS
    ) -> RootsResult:
        """Add a watched folder.

        Raises
        ------
        UserInputError
            *path* is neither a drive path nor a UNC path; nothing is sent.
        """
        cleaned = validate_root_path(path)
        return await self._config_call("POST", {"addRoot": cleaned}, timeout_ms)

    async def remove_root(
        self, path: str, timeout_ms: int = DEFAULT_CONFIG_TIMEOUT_MS
    ) -> RootsResult:
        return await self._config_call("DELETE", {"root": path}, timeout_ms)

    async def _config_call(
        self,
        method: str,
        body: dict[str, str] | None,
        timeout_ms: int,
    ) -> RootsResult:
        try:
            response = await request(
                self._client,
                method,
                self._url("/config"),
                timeout_ms=timeout_ms,
                json=body,
            )
        except TransportTimeout:
            return RootsResult(
                ok=False, roots=self.cached_roots, message=TIMEOUT_MESSAGE,
                kind=FailureKind.TIMEOUT,
            )
        except NetworkFailure as exc:
            return RootsResult(
                ok=False, roots=self.cached_roots, message=str(exc),
                kind=FailureKind.NETWORK,
            )

        if not is_success(response):
            return RootsResult(
                ok=False,
                roots=self.cached_roots,
                message=error_message(
                    response, f"config request failed ({response.status_code})"
                ),
                kind=FailureKind.PROTOCOL,
            )

        try:
            roots = WatchedRoots.model_validate(read_json(response))
        except (MalformedResponse, ValidationError) as exc:
            logger.warning("Companion %s /config returned an unusable body: %s", method, exc)
            return RootsResult(
                ok=False,
                roots=self.cached_roots,
                message="malformed response from companion service",
                kind=FailureKind.MALFORMED,
            )

        # Mutating calls answer with roots only; keep the known company.
        if roots.company is None and self._roots is not None:
            roots.company = self._roots.company
        self._roots = roots
        logger.info("Companion roots (%s): %s", method, roots.roots)
        return RootsResult(ok=True, roots=self.cached_roots)

    # ── Drive folders and client config ──────────────────────────

    async def detect_drive_paths(
        self, timeout_ms: int = DEFAULT_DETECT_TIMEOUT_MS
    ) -> DrivePathsResult:
        """Ask the companion which synced-drive folders exist on this machine."""
        return await self._detect("/detect-drive-paths", timeout_ms, retrying=False)

    async def detect_drive_paths_with_retry(
        self,
        retries: int = DEFAULT_DETECT_RETRIES,
        delay_ms: int = DEFAULT_DETECT_RETRY_DELAY_MS,
        timeout_ms: int = DEFAULT_DETECT_RETRY_TIMEOUT_MS,
    ) -> DrivePathsResult:
        """Same as ``detect_drive_paths`` but the companion retries on its side.

        The drive client can take a while to mount its folder after login, so
        the companion polls up to *retries* times, *delay_ms* apart.  The
        outcome comes from the body's ``success`` flag, not the HTTP status.
        """
        query = httpx.QueryParams({"retries": retries, "delay": delay_ms})
        return await self._detect(
            f"/detect-drive-paths-with-retry?{query}", timeout_ms, retrying=True
        )

    async def _detect(self, path: str, timeout_ms: int, *, retrying: bool) -> DrivePathsResult:
        try:
            response = await request(
                self._client,
                "GET",
                self._url(path),
                timeout_ms=timeout_ms,
                headers={"Cache-Control": "no-cache"},
            )
        except TransportTimeout:
            self._trace("Drive path detection timed out after %dms", timeout_ms)
            return DrivePathsResult(ok=False, message=TIMEOUT_MESSAGE, kind=FailureKind.TIMEOUT)
        except NetworkFailure as exc:
            return DrivePathsResult(ok=False, message=str(exc), kind=FailureKind.NETWORK)

        if not is_success(response):
            return DrivePathsResult(
                ok=False,
                message=error_message(
                    response, f"drive path detection failed ({response.status_code})"
                ),
                kind=FailureKind.PROTOCOL,
            )

        try:
            report = DrivePathsReport.model_validate(read_json(response))
        except (MalformedResponse, ValidationError) as exc:
            logger.warning("Companion %s returned an unusable body: %s", path, exc)
            return DrivePathsResult(
                ok=False,
                message="malformed response from companion service",
                kind=FailureKind.MALFORMED,
            )

        ok = bool(report.success) if retrying else True
        message = report.message or f"found {len(report.paths)} drive folder(s)"
        self._trace("Drive path detection: %s", report.paths)
        return DrivePathsResult(
            ok=ok,
            paths=tuple(report.paths),
            message=message,
            kind=None if ok else FailureKind.REJECTED,
            attempts=report.attempts,
        )

    async def save_client_config(
        self,
        client_id: str,
        drive_paths: list[str],
        timeout_ms: int = DEFAULT_CONFIG_TIMEOUT_MS,
    ) -> ClientConfigResult:
        """Store the drive folders chosen for *client_id* with the companion.

        Raises
        ------
        UserInputError
            *client_id* is blank; nothing is sent.
        """
        config = ClientConfig(
            client_id=_require_client_id(client_id), drive_paths=list(drive_paths)
        )
        body = {
            "clientId": config.client_id,
            "drivePaths": config.drive_paths,
            "action": "saveClientConfig",
            "timestamp": int(time.time() * 1000),
        }
        try:
            response = await request(
                self._client,
                "POST",
                self._url("/config"),
                timeout_ms=timeout_ms,
                json=body,
                headers={"Cache-Control": "no-cache"},
            )
        except TransportTimeout:
            return ClientConfigResult(ok=False, message=TIMEOUT_MESSAGE, kind=FailureKind.TIMEOUT)
        except NetworkFailure as exc:
            return ClientConfigResult(ok=False, message=str(exc), kind=FailureKind.NETWORK)

        if not is_success(response):
            return ClientConfigResult(
                ok=False,
                message=error_message(
                    response, f"saving client config failed ({response.status_code})"
                ),
                kind=FailureKind.PROTOCOL,
            )
        logger.info(
            "Saved config for client %s (%d drive folders)",
            config.client_id,
            len(config.drive_paths),
        )
        return ClientConfigResult(ok=True, config=config)

    async def load_client_config(
        self, client_id: str, timeout_ms: int = DEFAULT_LOAD_CONFIG_TIMEOUT_MS
    ) -> ClientConfigResult:
        """Fetch the stored folder selection for *client_id*.

        A client with nothing stored yields ``kind=FailureKind.NOT_FOUND``.
        """
        cleaned = _require_client_id(client_id)
        try:
            response = await request(
                self._client,
                "GET",
                self._url(f"/config/{quote(cleaned, safe='')}"),
                timeout_ms=timeout_ms,
                headers={"Cache-Control": "no-cache"},
            )
        except TransportTimeout:
            return ClientConfigResult(ok=False, message=TIMEOUT_MESSAGE, kind=FailureKind.TIMEOUT)
        except NetworkFailure as exc:
            return ClientConfigResult(ok=False, message=str(exc), kind=FailureKind.NETWORK)

        if response.status_code == 404:
            self._trace("No stored config for client %s", cleaned)
            return ClientConfigResult(
                ok=False,
                message=f"no configuration stored for client {cleaned}",
                kind=FailureKind.NOT_FOUND,
            )
        if not is_success(response):
            return ClientConfigResult(
                ok=False,
                message=error_message(
                    response, f"loading client config failed ({response.status_code})"
                ),
                kind=FailureKind.PROTOCOL,
            )

        try:
            config = ClientConfig.model_validate(read_json(response))
        except (MalformedResponse, ValidationError) as exc:
            logger.warning("Companion /config/%s returned an unusable body: %s", cleaned, exc)
            return ClientConfigResult(
                ok=False,
                message="malformed response from companion service",
                kind=FailureKind.MALFORMED,
            )
        return ClientConfigResult(ok=True, config=config)


def _require_client_id(client_id: str) -> str:
    cleaned = client_id.strip()
    if not cleaned:
        raise UserInputError("client id", client_id, "client id is empty")
    return cleaned
