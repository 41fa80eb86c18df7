"""Transport: abortable HTTP requests and a subscribable SSE connection.

Both the companion client and the sync client sit on top of this module.
Status codes are never interpreted here except for the stream handshake;
callers decide what a 409 or a 503 means for them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from docbridge.exceptions import (
    DocbridgeError,
    MalformedResponse,
    NetworkFailure,
    ProtocolError,
    TransportTimeout,
)

logger = logging.getLogger(__name__)

STREAM_CONNECT_TIMEOUT_MS = 10_000

EventHandler = Callable[["ServerSentEvent"], None]
DisconnectHandler = Callable[[DocbridgeError | None], None]


async def request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    timeout_ms: int,
    json: Any = None,
    headers: dict[str, str] | None = None,
) -> httpx.Response:
    """Issue one request bounded by an abort scope of *timeout_ms*.

    Raises
    ------
    TransportTimeout
        The scope expired; the in-flight call was cancelled.
    NetworkFailure
        Connection refused, reset or otherwise broken.
    """
    timeout_s = timeout_ms / 1000
    try:
        async with asyncio.timeout(timeout_s):
            return await client.request(
                method,
                url,
                json=json,
                headers=headers,
                timeout=timeout_s,
            )
    except (TimeoutError, httpx.TimeoutException) as exc:
        raise TransportTimeout(url, timeout_ms) from exc
    except httpx.HTTPError as exc:
        raise NetworkFailure(url, str(exc) or type(exc).__name__) from exc


def is_success(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


def read_json(response: httpx.Response) -> Any:
    """Decode a JSON body or raise ``MalformedResponse``."""
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedResponse(
            f"HTTP {response.status_code} body is not JSON: {response.text[:100]!r}"
        ) from exc


def error_message(response: httpx.Response, default: str) -> str:
    """Best message from an error body: JSON ``message``/``error``, then
    the raw text, then *default*."""
    try:
        data = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        data = None
    if isinstance(data, dict):
        for key in ("message", "error"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    text = response.text.strip()
    return text or default


def protocol_error(response: httpx.Response, default: str) -> ProtocolError:
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = None
    return ProtocolError(response.status_code, error_message(response, default), body)


# ---------------------------------------------------------------------------
# Server-sent events
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ServerSentEvent:
    event: str
    data: str
    id: str | None = None

    def json(self) -> Any:
        try:
            return json.loads(self.data)
        except json.JSONDecodeError as exc:
            raise MalformedResponse(
                f"{self.event!r} event data is not JSON: {self.data[:100]!r}"
            ) from exc


class SSEDecoder:
    """Line-oriented ``text/event-stream`` decoder.

    Feed it lines without their terminator; it returns an event each time
    a blank line closes a frame that carried data.
    """

    __slots__ = ("_data", "_event", "_last_id")

    def __init__(self) -> None:
        self._event = ""
        self._data: list[str] = []
        self._last_id: str | None = None

    def decode(self, line: str) -> ServerSentEvent | None:
        if not line:
            if not self._data:
                self._event = ""
                return None
            sse = ServerSentEvent(
                event=self._event or "message",
                data="\n".join(self._data),
                id=self._last_id,
            )
            self._event = ""
            self._data = []
            return sse

        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id" and "\0" not in value:
            self._last_id = value
        # "retry" and unknown fields are ignored
        return None


class EventStream:
    """One SSE connection driven by a background task.

    ``on_event`` receives every event in server-send order.  ``on_open``
    fires when the 2xx handshake completes.  ``on_disconnect`` fires exactly
    once when the connection ends for any reason other than ``close()``;
    the argument is the failure, or ``None`` for a clean server EOF.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        *,
        on_event: EventHandler,
        on_disconnect: DisconnectHandler | None = None,
        on_open: Callable[[], None] | None = None,
        headers: dict[str, str] | None = None,
        connect_timeout_ms: int = STREAM_CONNECT_TIMEOUT_MS,
    ) -> None:
        self._client = client
        self._url = url
        self._on_event = on_event
        self._on_disconnect = on_disconnect
        self._on_open = on_open
        self._headers = {
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
            **(headers or {}),
        }
        self._connect_timeout_ms = connect_timeout_ms
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        self._connected = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_open(self) -> bool:
        """True while the read task is alive (connecting or connected)."""
        return self._task is not None and not self._task.done() and not self._closed

    @property
    def is_connected(self) -> bool:
        return self._connected

    def open(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def close(self) -> None:
        """Tear the connection down without reporting a disconnect."""
        if self._closed:
            return
        self._closed = True
        self._connected = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.debug("SSE stream closed: %s", self._url)

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        error: DocbridgeError | None = None
        timeout = httpx.Timeout(self._connect_timeout_ms / 1000, read=None)
        try:
            async with self._client.stream(
                "GET", self._url, headers=self._headers, timeout=timeout
            ) as response:
                if not is_success(response):
                    await response.aread()
                    raise protocol_error(
                        response, f"stream rejected ({response.status_code})"
                    )
                self._connected = True
                logger.info("SSE connected to %s", self._url)
                if self._on_open is not None:
                    self._on_open()
                decoder = SSEDecoder()
                async for line in response.aiter_lines():
                    sse = decoder.decode(line)
                    if sse is not None:
                        self._dispatch(sse)
                    if self._closed:
                        return
        except DocbridgeError as exc:
            error = exc
        except httpx.TimeoutException as exc:
            error = TransportTimeout(self._url, self._connect_timeout_ms)
            error.__cause__ = exc
        except httpx.HTTPError as exc:
            error = NetworkFailure(self._url, str(exc) or type(exc).__name__)
            error.__cause__ = exc
        finally:
            self._connected = False

        if self._closed:
            return
        self._closed = True
        if error is not None:
            logger.warning("SSE stream %s dropped: %s", self._url, error)
        else:
            logger.info("SSE stream %s ended by server", self._url)
        if self._on_disconnect is not None:
            self._on_disconnect(error)

    def _dispatch(self, sse: ServerSentEvent) -> None:
        try:
            self._on_event(sse)
        except Exception:
            logger.exception("SSE handler failed for %r event", sse.event)
