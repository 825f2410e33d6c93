"""Cancellable client for the provider's messages endpoint.

At most one request is in flight. Its I/O runs on a worker thread;
everything the worker produces reaches the caller through the controlling
asyncio loop via call_soon_threadsafe, so every callback runs on that
loop's thread. The worker only touches its own buffers and, briefly under
a lock, the pending stream buffer drained by a periodic loop task.
"""

import asyncio
import logging
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Callable

from . import wire
from .report import (
    AgentError,
    ConcurrencyError,
    ParseError,
    ProtocolError,
    TransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_MAX_TOKENS = 2048
API_VERSION = "2023-06-01"

REQUEST_TIMEOUT = 60  # seconds, whole non-streaming transfer
STREAM_READ_TIMEOUT = 30  # seconds without a single byte
LOW_SPEED_LIMIT = 1  # bytes/s averaged over LOW_SPEED_TIME
LOW_SPEED_TIME = 30
STREAM_POLL_INTERVAL = 0.05
CHUNK_SIZE = 4096
MAX_RESPONSE_SIZE = 10 * 1024 * 1024


@dataclass
class _StreamState:
    accumulated: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    raw: bytearray = field(default_factory=bytearray)
    lock: threading.Lock = field(default_factory=threading.Lock)


@dataclass
class _PendingRequest:
    system_prompt: str
    turns: list
    on_complete: Callable[[str], None]
    on_error: Callable[[AgentError], None]
    on_stream_delta: Callable[[str], None] | None
    streaming: bool
    stream: _StreamState = field(default_factory=_StreamState)
    text: str | None = None
    error: AgentError | None = None


def _protocol_error(status: int, raw: bytes) -> ProtocolError:
    message = wire.extract_error_message(raw.decode("utf-8", errors="replace"))
    if message:
        return ProtocolError(f"API error (HTTP {status}): {message}", status=status)
    return ProtocolError(f"API error (HTTP {status})", status=status)


class Transport:
    """Sends one request at a time and reports back on the controlling loop."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        api_key: str | None,
        *,
        model: str = DEFAULT_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        base_url: str = DEFAULT_BASE_URL,
        stream: bool = True,
        opener: Callable | None = None,
    ):
        self._loop = loop
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.base_url = base_url
        self.stream = stream
        self._opener = opener or urllib.request.urlopen

        self._thread: threading.Thread | None = None
        self._request: _PendingRequest | None = None
        self._busy = False
        self._cancel = threading.Event()

    @property
    def busy(self) -> bool:
        return self._busy

    def send(
        self,
        system_prompt: str,
        turns: list,
        on_complete: Callable[[str], None],
        on_error: Callable[[AgentError], None],
        on_stream_delta: Callable[[str], None] | None = None,
    ) -> None:
        """Start a request. Raises ConcurrencyError if one is already running."""
        if self._busy:
            raise ConcurrencyError("A request is already in progress")

        if self._thread is not None:
            self._thread.join()
            self._thread = None

        request = _PendingRequest(
            system_prompt=system_prompt,
            turns=list(turns),
            on_complete=on_complete,
            on_error=on_error,
            on_stream_delta=on_stream_delta,
            streaming=self.stream,
        )
        self._cancel.clear()
        self._busy = True
        self._request = request

        thread = threading.Thread(
            target=self._worker,
            args=(request,),
            name="hostpilot-transport",
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError as e:
            self._busy = False
            self._request = None
            raise TransportError(f"Failed to start background thread: {e}") from e
        self._thread = thread

        if request.streaming:
            self._loop.call_later(STREAM_POLL_INTERVAL, self._on_stream_timer, request)

    def cancel(self) -> None:
        """Ask the worker to stop; the request then ends as cancelled."""
        self._cancel.set()

    def close(self, timeout: float = 5) -> None:
        self.cancel()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("transport worker did not stop within %ss", timeout)
            self._thread = None

    # --- Worker thread ---

    def _worker(self, request: _PendingRequest) -> None:
        try:
            request.text = self._perform(request)
        except AgentError as e:
            request.error = e
        except Exception as e:
            logger.exception("transport worker failed")
            request.error = TransportError(f"Unexpected transport failure: {e}")
        try:
            self._loop.call_soon_threadsafe(self._deliver, request)
        except RuntimeError:
            # Loop closed while we were working; nobody is left to tell.
            logger.warning("controlling loop closed before delivery")

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise TransportError("Request cancelled", cancelled=True)

    def _perform(self, request: _PendingRequest) -> str:
        body = wire.build_payload(
            self.model,
            self.max_tokens,
            request.system_prompt,
            request.turns,
            stream=request.streaming,
        )
        url = f"{self.base_url.rstrip('/')}/v1/messages"
        http_request = urllib.request.Request(
            url,
            data=body.encode("utf-8"),
            headers={
                "x-api-key": self.api_key or "",
                "anthropic-version": API_VERSION,
                "content-type": "application/json",
            },
            method="POST",
        )
        logger.debug(
            "POST %s model=%s turns=%d stream=%s",
            url,
            self.model,
            len(request.turns),
            request.streaming,
        )

        timeout = STREAM_READ_TIMEOUT if request.streaming else REQUEST_TIMEOUT
        try:
            response = self._opener(http_request, timeout=timeout)
        except urllib.error.HTTPError as e:
            try:
                raw = e.read()
            except OSError:
                raw = b""
            finally:
                e.close()
            self._check_cancelled()
            raise _protocol_error(e.code, raw)
        except (urllib.error.URLError, OSError) as e:
            self._check_cancelled()
            reason = getattr(e, "reason", e)
            raise TransportError(f"Network error: {reason}") from e

        try:
            status = getattr(response, "status", 200)
            if request.streaming:
                raw = self._read_stream(response, request.stream)
            else:
                raw = self._read_body(response)
        finally:
            response.close()

        if not 200 <= status < 300:
            raise _protocol_error(status, raw)

        if request.streaming:
            text = "".join(request.stream.accumulated)
        else:
            text = wire.extract_response_text(raw.decode("utf-8", errors="replace"))
        if not text:
            raise ParseError("Failed to parse API response")
        return text

    def _read_body(self, response) -> bytes:
        deadline = time.monotonic() + REQUEST_TIMEOUT
        raw = bytearray()
        while True:
            self._check_cancelled()
            try:
                chunk = response.read(CHUNK_SIZE)
            except TimeoutError as e:
                raise TransportError("Request timed out") from e
            except OSError as e:
                raise TransportError(f"Network error: {e}") from e
            if not chunk:
                break
            if len(raw) < MAX_RESPONSE_SIZE:
                raw += chunk
            if time.monotonic() > deadline:
                raise TransportError("Request timed out")
        self._check_cancelled()
        return bytes(raw)

    def _read_stream(self, response, state: _StreamState) -> bytes:
        parser = wire.SseParser()
        window_start = time.monotonic()
        window_bytes = 0
        while True:
            self._check_cancelled()
            try:
                chunk = response.read1(CHUNK_SIZE)
            except TimeoutError as e:
                raise TransportError(
                    f"Stream stalled: no data for {STREAM_READ_TIMEOUT}s"
                ) from e
            except OSError as e:
                raise TransportError(f"Network error: {e}") from e
            if not chunk:
                break
            self._check_cancelled()

            if len(state.raw) < MAX_RESPONSE_SIZE:
                state.raw += chunk
            self._take_deltas(state, parser.feed(chunk))
            if parser.error:
                raise ProtocolError(f"API error: {parser.error}")
            if parser.done:
                break

            window_bytes += len(chunk)
            elapsed = time.monotonic() - window_start
            if elapsed >= LOW_SPEED_TIME:
                if window_bytes / elapsed < LOW_SPEED_LIMIT:
                    raise TransportError("Stream too slow, aborting")
                window_start = time.monotonic()
                window_bytes = 0

        self._take_deltas(state, parser.close())
        if parser.error:
            raise ProtocolError(f"API error: {parser.error}")
        return bytes(state.raw)

    @staticmethod
    def _take_deltas(state: _StreamState, deltas: list[str]) -> None:
        if not deltas:
            return
        state.accumulated.extend(deltas)
        with state.lock:
            state.pending.extend(deltas)

    # --- Controlling loop ---

    def _flush_pending(self, request: _PendingRequest) -> None:
        with request.stream.lock:
            text = "".join(request.stream.pending)
            request.stream.pending.clear()
        if text and request.on_stream_delta is not None and not self._cancel.is_set():
            request.on_stream_delta(text)

    def _on_stream_timer(self, request: _PendingRequest) -> None:
        if request is not self._request:
            return
        self._flush_pending(request)
        if self._busy:
            self._loop.call_later(STREAM_POLL_INTERVAL, self._on_stream_timer, request)

    def _deliver(self, request: _PendingRequest) -> None:
        if request is not self._request:
            return
        self._busy = False
        self._request = None

        if self._cancel.is_set():
            request.on_error(TransportError("Request cancelled", cancelled=True))
            return
        if request.error is not None:
            logger.debug("request failed: %s", request.error)
            request.on_error(request.error)
            return
        self._flush_pending(request)
        request.on_complete(request.text)
