"""Shared fixtures and test doubles for rpc-metrics tests."""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from typing import Any

import pytest

from rpc_metrics import EOF, InMemoryMetricsSink, MethodDescriptor, StatusCode

UNARY_PATH = "/test.Echo/Unary"
SERVER_STREAM_PATH = "/test.Echo/ServerStream"
CLIENT_STREAM_PATH = "/test.Echo/ClientStream"
DUPLEX_PATH = "/test.Echo/Duplex"


# ---------------------------------------------------------------------------
# Call context + streams
# ---------------------------------------------------------------------------


@dataclass
class FakeContext:
    """Minimal call context: only the method path."""

    method: str = UNARY_PATH


class ListStream:
    """Inbound stream over a list: async-iterable and ``read()``-able.

    When *fail_at* is set, reading the item at that index raises ``OSError``.
    """

    def __init__(self, items: Iterable[Any], *, fail_at: int | None = None) -> None:
        """Initialize with the items to deliver."""
        self._items = list(items)
        self._pos = 0
        self._fail_at = fail_at

    def __aiter__(self) -> ListStream:
        return self

    async def __anext__(self) -> Any:
        item = await self.read()
        if item is EOF:
            raise StopAsyncIteration
        return item

    async def read(self) -> Any:
        """Return the next item or ``EOF``."""
        await asyncio.sleep(0)
        if self._fail_at is not None and self._pos == self._fail_at:
            raise OSError("stream broken")
        if self._pos >= len(self._items):
            return EOF
        item = self._items[self._pos]
        self._pos += 1
        return item


class ReadOnlyStream:
    """Inbound stream exposing only ``read()``."""

    def __init__(self, items: Iterable[Any]) -> None:
        """Initialize with the items to deliver."""
        self._inner = ListStream(items)

    async def read(self) -> Any:
        """Return the next item or ``EOF``."""
        return await self._inner.read()


class ListWriter:
    """Outbound stream collecting written messages.

    When *fail_at* is set, the write at that index raises ``OSError``.
    """

    def __init__(self, *, fail_at: int | None = None) -> None:
        """Initialize an empty writer."""
        self.written: list[Any] = []
        self.write_options = "buffered"
        self._fail_at = fail_at

    async def write(self, message: Any) -> None:
        """Append *message* unless this write is set to fail."""
        await asyncio.sleep(0)
        if self._fail_at is not None and len(self.written) == self._fail_at:
            raise OSError("peer gone")
        self.written.append(message)


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class RecordingSink:
    """Sink that records every call in order."""

    def __init__(self) -> None:
        """Initialize an empty call log."""
        self._lock = threading.Lock()
        self.calls: list[tuple[Any, ...]] = []

    def _add(self, *call: Any) -> None:
        with self._lock:
            self.calls.append(call)

    def increment_request_count(self, descriptor: MethodDescriptor) -> None:
        """Record the call."""
        self._add("request", descriptor)

    def increment_response_count(self, descriptor: MethodDescriptor, status: StatusCode) -> None:
        """Record the call."""
        self._add("response", descriptor, status)

    def increment_stream_sent_count(self, descriptor: MethodDescriptor) -> None:
        """Record the call."""
        self._add("sent", descriptor)

    def increment_stream_received_count(self, descriptor: MethodDescriptor) -> None:
        """Record the call."""
        self._add("received", descriptor)

    def record_latency(self, descriptor: MethodDescriptor, elapsed_seconds: float) -> None:
        """Record the call."""
        self._add("latency", descriptor, elapsed_seconds)

    def names(self) -> list[str]:
        """Operation names in call order."""
        with self._lock:
            return [c[0] for c in self.calls]


class FailingSink:
    """Sink whose every operation raises."""

    def increment_request_count(self, descriptor: MethodDescriptor) -> None:
        """Raise."""
        raise RuntimeError("sink down")

    def increment_response_count(self, descriptor: MethodDescriptor, status: StatusCode) -> None:
        """Raise."""
        raise RuntimeError("sink down")

    def increment_stream_sent_count(self, descriptor: MethodDescriptor) -> None:
        """Raise."""
        raise RuntimeError("sink down")

    def increment_stream_received_count(self, descriptor: MethodDescriptor) -> None:
        """Raise."""
        raise RuntimeError("sink down")

    def record_latency(self, descriptor: MethodDescriptor, elapsed_seconds: float) -> None:
        """Raise."""
        raise RuntimeError("sink down")


async def drain(stream: AsyncIterator[Any]) -> list[Any]:
    """Collect every item of an async iterator."""
    return [item async for item in stream]


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll until *predicate* holds."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise TimeoutError(f"condition not met within {timeout}s")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sink() -> InMemoryMetricsSink:
    """Fresh in-memory sink."""
    return InMemoryMetricsSink()


@pytest.fixture()
def recording_sink() -> RecordingSink:
    """Fresh recording sink."""
    return RecordingSink()
