"""Stream connection manager: connect, read, reconnect with backoff, cancel."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

import httpx

from perfetto_assistant.stream.sse import SSEDecoder, StreamEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

BASE_DELAY_MS = 1000
MAX_DELAY_MS = 30_000
JITTER = 0.2
DEFAULT_MAX_RETRIES = 5

# These events end the run; the loop stops without waiting for end-of-stream.
TERMINAL_EVENTS = frozenset({"analysis_completed", "error"})

TRANSPORT_ERRORS = (httpx.HTTPError, OSError)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class StatusKind(str, Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class StatusUpdate:
    kind: StatusKind
    attempt: int = 0
    max_retries: int = 0
    delay_ms: float = 0.0
    error: str = ""


def backoff_delay_ms(
    attempt: int,
    *,
    base_ms: float = BASE_DELAY_MS,
    max_ms: float = MAX_DELAY_MS,
    rng: random.Random | None = None,
) -> float:
    """``min(base * 2^attempt, max)`` randomised by +/-20%."""
    delay = min(base_ms * (2 ** attempt), max_ms)
    uniform = (rng or random).uniform
    return delay * uniform(1 - JITTER, 1 + JITTER)


class CancellationToken:
    """Cancellation flag owned by exactly one connection attempt."""

    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Wait ``seconds`` or until cancelled; return True when cancelled."""
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(seconds, 0))
        except TimeoutError:
            return False
        return True

    async def first(self, awaitable: Awaitable[T], default: T | None = None) -> T | None:
        """Await ``awaitable`` unless cancelled first; ``default`` on cancellation."""
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return default
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.cancel()
        if work.cancelled():
            return default
        return work.result()


class StreamConnectionManager:
    """
    Opens the analysis event stream for a session and keeps it alive.

    Only one stream is live at a time: ``open`` cancels whatever the previous
    call was doing. Every attempt checks its own token before touching
    ``state``, so a superseded attempt can never overwrite newer state.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay_ms: float = BASE_DELAY_MS,
        max_delay_ms: float = MAX_DELAY_MS,
        rng: random.Random | None = None,
        on_state_change: Callable[[ConnectionState], None] | None = None,
        on_status: Callable[[StatusUpdate], None] | None = None,
    ):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.rng = rng
        self.on_state_change = on_state_change
        self.on_status = on_status
        self.state = ConnectionState.DISCONNECTED
        self.retry_count = 0
        self._token: CancellationToken | None = None

    def stream_url(self, session_id: str) -> str:
        return f"{self.base_url}/api/agent/{session_id}/stream"

    def cancel(self) -> None:
        """Stop the live stream, including any pending backoff wait."""
        token, self._token = self._token, None
        if token is not None and not token.cancelled:
            token.cancel()
            logger.debug("Stream cancelled")
        self._set_state(ConnectionState.DISCONNECTED)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        self.state = state
        if self.on_state_change is not None:
            self.on_state_change(state)

    def _transition(self, token: CancellationToken, state: ConnectionState) -> bool:
        if token.cancelled:
            return False
        self._set_state(state)
        return True

    def _report(self, token: CancellationToken, update: StatusUpdate) -> None:
        if token.cancelled or self.on_status is None:
            return
        self.on_status(update)

    async def open(self, session_id: str) -> AsyncIterator[StreamEvent]:
        """
        Yield decoded events for ``session_id`` until the run ends.

        The iterator finishes on a terminal event, on a clean server close, on
        cancellation, or after ``max_retries`` consecutive transport failures.
        """
        if self._token is not None:
            self._token.cancel()
        token = CancellationToken()
        self._token = token
        self.retry_count = 0
        url = self.stream_url(session_id)
        self._transition(token, ConnectionState.CONNECTING)

        while not token.cancelled:
            try:
                async with self.client.stream(
                    "GET", url, headers={"Accept": "text/event-stream"}
                ) as response:
                    response.raise_for_status()
                    if not self._transition(token, ConnectionState.CONNECTED):
                        return
                    previous_failures, self.retry_count = self.retry_count, 0
                    self._report(
                        token,
                        StatusUpdate(StatusKind.CONNECTED, attempt=previous_failures,
                                     max_retries=self.max_retries),
                    )
                    logger.debug("Stream connected: %s", url)

                    decoder = SSEDecoder()
                    chunks = response.aiter_text()
                    while True:
                        # A silent server must not block cancellation.
                        chunk = await token.first(anext(chunks, None))
                        if token.cancelled:
                            return
                        if chunk is None:
                            break
                        for event in decoder.feed(chunk):
                            if token.cancelled:
                                return
                            yield event
                            if event.event_type in TERMINAL_EVENTS:
                                self._transition(token, ConnectionState.DISCONNECTED)
                                return
                    for event in decoder.flush():
                        if token.cancelled:
                            return
                        yield event
                        if event.event_type in TERMINAL_EVENTS:
                            break
                logger.debug("Stream closed by server: %s", url)
                self._transition(token, ConnectionState.DISCONNECTED)
                return
            except TRANSPORT_ERRORS as exc:
                if token.cancelled:
                    return
                self.retry_count += 1
                error = str(exc) or type(exc).__name__
                if self.retry_count >= self.max_retries:
                    logger.warning(
                        "Stream failed after %d attempts: %s", self.retry_count, error
                    )
                    self._report(
                        token,
                        StatusUpdate(StatusKind.FAILED, attempt=self.retry_count,
                                     max_retries=self.max_retries, error=error),
                    )
                    self._transition(token, ConnectionState.DISCONNECTED)
                    return

                delay = backoff_delay_ms(
                    self.retry_count - 1,
                    base_ms=self.base_delay_ms,
                    max_ms=self.max_delay_ms,
                    rng=self.rng,
                )
                logger.info(
                    "Stream attempt %d/%d failed (%s); retrying in %.0f ms",
                    self.retry_count, self.max_retries, error, delay,
                )
                self._transition(token, ConnectionState.RECONNECTING)
                self._report(
                    token,
                    StatusUpdate(StatusKind.RECONNECTING, attempt=self.retry_count,
                                 max_retries=self.max_retries, delay_ms=delay, error=error),
                )
                if await token.sleep(delay / 1000):
                    return
