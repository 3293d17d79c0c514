"""
Streaming HTTP transport.

Each request runs on its own worker thread and delivers raw byte chunks to
listeners keyed by (session id, generation). Releasing a listener is
idempotent, and events for a key nobody listens to are dropped.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from parley.core.errors import EngineError, classify_failure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0
CONNECT_TIMEOUT = 30.0

ChunkCallback = Callable[[bytes], None]
DoneCallback = Callable[[bool], None]
ErrorCallback = Callable[[str], None]


@dataclass(frozen=True)
class StreamKey:
    """Identifies one in-flight request: a session and its generation."""

    session_id: str
    generation: int

    def __str__(self) -> str:
        return f"{self.session_id}#{self.generation}"


@dataclass
class _Listener:
    on_chunk: ChunkCallback
    on_done: DoneCallback
    on_error: ErrorCallback


class Subscription:
    """Handle for one listener registration. ``release`` may be called any number of times."""

    def __init__(self, release: Callable[[], None]):
        self._release = release
        self._lock = threading.Lock()
        self.released = False

    def release(self) -> bool:
        """Unregister the listener. Returns True only for the call that did it."""
        with self._lock:
            if self.released:
                return False
            self.released = True
        self._release()
        return True


class Transport(ABC):
    """What the engine needs from the network layer."""

    @abstractmethod
    def listen(
        self,
        key: StreamKey,
        on_chunk: ChunkCallback,
        on_done: DoneCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        ...

    @abstractmethod
    def send(self, url: str, headers: dict[str, str], body: bytes, key: StreamKey) -> Any:
        ...

    @abstractmethod
    def abort(self, key: StreamKey) -> None:
        ...

    @abstractmethod
    def request(self, url: str, headers: dict[str, str], body: bytes) -> dict[str, Any]:
        """Non-streaming POST returning the decoded JSON body."""
        ...


class HttpxTransport(Transport):
    """
    Transport built on httpx streaming responses.

    Non-2xx responses are reported as errors of the form
    ``"API error {status}: {body}"``; connection problems as
    ``"Request error: ..."``. Retries are left to the caller.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, client: httpx.Client | None = None):
        self._client = client or httpx.Client(timeout=httpx.Timeout(CONNECT_TIMEOUT, read=timeout))
        self._lock = threading.Lock()
        self._listeners: dict[StreamKey, _Listener] = {}
        self._cancelled: dict[StreamKey, threading.Event] = {}
        self._responses: dict[StreamKey, httpx.Response] = {}

    # ── Listeners ─────────────────────────────────────────────────────

    def listen(
        self,
        key: StreamKey,
        on_chunk: ChunkCallback,
        on_done: DoneCallback,
        on_error: ErrorCallback,
    ) -> Subscription:
        with self._lock:
            self._listeners[key] = _Listener(on_chunk, on_done, on_error)

        def _release() -> None:
            with self._lock:
                self._listeners.pop(key, None)

        return Subscription(_release)

    def _listener(self, key: StreamKey) -> _Listener | None:
        with self._lock:
            return self._listeners.get(key)

    # ── Requests ──────────────────────────────────────────────────────

    def send(self, url: str, headers: dict[str, str], body: bytes, key: StreamKey) -> threading.Thread:
        """Start streaming ``url`` on a worker thread and return the thread."""
        cancelled = threading.Event()
        with self._lock:
            self._cancelled[key] = cancelled

        thread = threading.Thread(
            target=self._run,
            args=(url, headers, body, key, cancelled),
            name=f"parley-stream-{key}",
            daemon=True,
        )
        thread.start()
        return thread

    def abort(self, key: StreamKey) -> None:
        """Ask an in-flight request to stop. Unknown keys are ignored."""
        with self._lock:
            cancelled = self._cancelled.get(key)
            response = self._responses.get(key)
        if cancelled is None:
            return
        cancelled.set()
        if response is not None:
            # Unblocks a read that is waiting on the network
            response.close()
        logger.debug("Abort requested for %s", key)

    def _run(
        self,
        url: str,
        headers: dict[str, str],
        body: bytes,
        key: StreamKey,
        cancelled: threading.Event,
    ) -> None:
        try:
            with self._client.stream("POST", url, headers=headers, content=body) as response:
                with self._lock:
                    self._responses[key] = response

                if not 200 <= response.status_code < 300:
                    text = response.read().decode("utf-8", errors="replace")
                    self._deliver_error(key, f"API error {response.status_code}: {text}")
                    return

                for chunk in response.iter_bytes():
                    if cancelled.is_set():
                        break
                    listener = self._listener(key)
                    if listener is not None and chunk:
                        listener.on_chunk(chunk)

            self._deliver_done(key, cancelled.is_set())
        except httpx.TimeoutException as e:
            if cancelled.is_set():
                self._deliver_done(key, True)
            else:
                self._deliver_error(key, f"Request error: timed out ({type(e).__name__})")
        except (httpx.HTTPError, httpx.StreamError) as e:
            if cancelled.is_set():
                self._deliver_done(key, True)
            else:
                self._deliver_error(key, f"Request error: connection failed ({type(e).__name__}: {e})")
        finally:
            with self._lock:
                self._cancelled.pop(key, None)
                self._responses.pop(key, None)

    def _deliver_done(self, key: StreamKey, aborted: bool) -> None:
        listener = self._listener(key)
        if listener is not None:
            listener.on_done(aborted)

    def _deliver_error(self, key: StreamKey, message: str) -> None:
        logger.warning("Stream %s failed: %.300s", key, message)
        listener = self._listener(key)
        if listener is not None:
            listener.on_error(message)

    def request(self, url: str, headers: dict[str, str], body: bytes) -> dict[str, Any]:
        """
        Non-streaming POST.

        Raises:
            EngineError: Classified failure (auth, rate limit, transport...)
        """
        try:
            response = self._client.post(url, headers=headers, content=body)
        except httpx.TimeoutException as e:
            raise classify_failure(f"Request error: timed out ({type(e).__name__})") from e
        except httpx.RequestError as e:
            raise classify_failure(f"Request error: connection failed ({e})") from e

        if not response.is_success:
            raise classify_failure(f"API error {response.status_code}: {response.text}")
        try:
            data = response.json()
        except ValueError as e:
            raise EngineError("The provider returned a response that is not JSON.", original=e) from e
        if not isinstance(data, dict):
            raise EngineError("The provider returned an unexpected response shape.")
        return data

    def close(self) -> None:
        self._client.close()
