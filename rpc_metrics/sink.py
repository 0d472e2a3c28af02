# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Metrics sink protocol and in-process implementations.

A sink is the boundary between the interceptor and whatever metrics backend
stores and exports the numbers.  The interceptor only calls the five
operations of :class:`MetricsSink`; it never reads anything back.

Shipped sinks:

* :class:`InMemoryMetricsSink` keeps thread-safe counters in process and can
  be inspected with :meth:`~InMemoryMetricsSink.snapshot`.
* :class:`CompositeMetricsSink` fans every call out to several sinks.
* :class:`rpc_metrics.otel.OtelMetricsSink` records OpenTelemetry instruments.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Protocol, runtime_checkable

from rpc_metrics._types import MethodDescriptor, StatusCode

__all__ = [
    "CompositeMetricsSink",
    "InMemoryMetricsSink",
    "MetricsSink",
    "MetricsSnapshot",
]

_logger = logging.getLogger("rpc_metrics.sink")


# ---------------------------------------------------------------------------
# Sink protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class MetricsSink(Protocol):
    """Operations the interceptor calls on the metrics backend.

    Implementations must tolerate unbounded concurrent calls from
    overlapping RPCs and must not block.
    """

    def increment_request_count(self, descriptor: MethodDescriptor) -> None:
        """Count a call before its handler runs."""
        ...

    def increment_response_count(self, descriptor: MethodDescriptor, status: StatusCode) -> None:
        """Count a call outcome under *status*."""
        ...

    def increment_stream_sent_count(self, descriptor: MethodDescriptor) -> None:
        """Count one outbound streamed message."""
        ...

    def increment_stream_received_count(self, descriptor: MethodDescriptor) -> None:
        """Count one inbound streamed message."""
        ...

    def record_latency(self, descriptor: MethodDescriptor, elapsed_seconds: float) -> None:
        """Record the wall-clock duration of a call."""
        ...


# ---------------------------------------------------------------------------
# In-memory sink
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricsSnapshot:
    """Immutable copy of the counters held by an :class:`InMemoryMetricsSink`.

    Keys are ``MethodDescriptor`` instances, so the same path invoked with
    different call shapes is tracked separately.

    Attributes:
        requests: Request count per descriptor.
        responses: Response count per ``(descriptor, status)`` pair.
        sent: Outbound streamed messages per descriptor.
        received: Inbound streamed messages per descriptor.
        latencies: Recorded latency observations per descriptor, in order.

    """

    requests: Mapping[MethodDescriptor, int] = field(default_factory=dict)
    responses: Mapping[tuple[MethodDescriptor, StatusCode], int] = field(default_factory=dict)
    sent: Mapping[MethodDescriptor, int] = field(default_factory=dict)
    received: Mapping[MethodDescriptor, int] = field(default_factory=dict)
    latencies: Mapping[MethodDescriptor, tuple[float, ...]] = field(default_factory=dict)

    @property
    def total_requests(self) -> int:
        """Requests across every method."""
        return sum(self.requests.values())

    @property
    def total_responses(self) -> int:
        """Responses across every method and status."""
        return sum(self.responses.values())


class InMemoryMetricsSink:
    """Thread-safe in-process sink.

    Every operation takes a single lock for the duration of one dict update,
    so it never blocks longer than other increments.  Lookups by path sum
    across call shapes.
    """

    __slots__ = ("_latencies", "_lock", "_received", "_requests", "_responses", "_sent")

    def __init__(self) -> None:
        """Initialize empty counters."""
        self._lock = threading.Lock()
        self._requests: Counter[MethodDescriptor] = Counter()
        self._responses: Counter[tuple[MethodDescriptor, StatusCode]] = Counter()
        self._sent: Counter[MethodDescriptor] = Counter()
        self._received: Counter[MethodDescriptor] = Counter()
        self._latencies: dict[MethodDescriptor, list[float]] = {}

    def increment_request_count(self, descriptor: MethodDescriptor) -> None:
        """Count a call before its handler runs."""
        with self._lock:
            self._requests[descriptor] += 1

    def increment_response_count(self, descriptor: MethodDescriptor, status: StatusCode) -> None:
        """Count a call outcome under *status*."""
        with self._lock:
            self._responses[(descriptor, status)] += 1

    def increment_stream_sent_count(self, descriptor: MethodDescriptor) -> None:
        """Count one outbound streamed message."""
        with self._lock:
            self._sent[descriptor] += 1

    def increment_stream_received_count(self, descriptor: MethodDescriptor) -> None:
        """Count one inbound streamed message."""
        with self._lock:
            self._received[descriptor] += 1

    def record_latency(self, descriptor: MethodDescriptor, elapsed_seconds: float) -> None:
        """Append a latency observation."""
        with self._lock:
            self._latencies.setdefault(descriptor, []).append(elapsed_seconds)

    # -- inspection --------------------------------------------------------

    def snapshot(self) -> MetricsSnapshot:
        """Return an immutable copy of all counters."""
        with self._lock:
            return MetricsSnapshot(
                requests=MappingProxyType(dict(self._requests)),
                responses=MappingProxyType(dict(self._responses)),
                sent=MappingProxyType(dict(self._sent)),
                received=MappingProxyType(dict(self._received)),
                latencies=MappingProxyType({k: tuple(v) for k, v in self._latencies.items()}),
            )

    def reset(self) -> None:
        """Clear all counters."""
        with self._lock:
            self._requests.clear()
            self._responses.clear()
            self._sent.clear()
            self._received.clear()
            self._latencies.clear()

    def request_count(self, full_name: str) -> int:
        """Requests recorded for *full_name*."""
        with self._lock:
            return sum(n for d, n in self._requests.items() if d.full_name == full_name)

    def response_count(self, full_name: str, status: StatusCode | None = None) -> int:
        """Responses recorded for *full_name*, optionally only under *status*."""
        with self._lock:
            return sum(
                n
                for (d, s), n in self._responses.items()
                if d.full_name == full_name and (status is None or s == status)
            )

    def sent_count(self, full_name: str) -> int:
        """Outbound streamed messages recorded for *full_name*."""
        with self._lock:
            return sum(n for d, n in self._sent.items() if d.full_name == full_name)

    def received_count(self, full_name: str) -> int:
        """Inbound streamed messages recorded for *full_name*."""
        with self._lock:
            return sum(n for d, n in self._received.items() if d.full_name == full_name)

    def latencies(self, full_name: str) -> tuple[float, ...]:
        """Latency observations recorded for *full_name*."""
        with self._lock:
            values: list[float] = []
            for d, observed in self._latencies.items():
                if d.full_name == full_name:
                    values.extend(observed)
            return tuple(values)


# ---------------------------------------------------------------------------
# Composite sink
# ---------------------------------------------------------------------------


class CompositeMetricsSink:
    """Forwards every call to each member sink in registration order.

    Each member is isolated: a failure in one does not prevent the others
    from seeing the call.
    """

    __slots__ = ("_sinks",)

    def __init__(self, *sinks: MetricsSink) -> None:
        """Initialize with the member sinks."""
        self._sinks: tuple[_GuardedSink, ...] = tuple(_GuardedSink(s) for s in sinks)

    @property
    def sinks(self) -> Sequence[MetricsSink]:
        """Member sinks, in order."""
        return tuple(g.inner for g in self._sinks)

    def increment_request_count(self, descriptor: MethodDescriptor) -> None:
        """Forward to every member."""
        for sink in self._sinks:
            sink.increment_request_count(descriptor)

    def increment_response_count(self, descriptor: MethodDescriptor, status: StatusCode) -> None:
        """Forward to every member."""
        for sink in self._sinks:
            sink.increment_response_count(descriptor, status)

    def increment_stream_sent_count(self, descriptor: MethodDescriptor) -> None:
        """Forward to every member."""
        for sink in self._sinks:
            sink.increment_stream_sent_count(descriptor)

    def increment_stream_received_count(self, descriptor: MethodDescriptor) -> None:
        """Forward to every member."""
        for sink in self._sinks:
            sink.increment_stream_received_count(descriptor)

    def record_latency(self, descriptor: MethodDescriptor, elapsed_seconds: float) -> None:
        """Forward to every member."""
        for sink in self._sinks:
            sink.record_latency(descriptor, elapsed_seconds)


# ---------------------------------------------------------------------------
# Best-effort guard
# ---------------------------------------------------------------------------


class _GuardedSink:
    """Wraps a sink so that its failures never reach the RPC caller.

    Failures are logged at DEBUG with the traceback and otherwise ignored;
    metric emission is best-effort relative to the call outcome.
    """

    __slots__ = ("inner",)

    def __init__(self, inner: MetricsSink) -> None:
        self.inner = inner

    def increment_request_count(self, descriptor: MethodDescriptor) -> None:
        try:
            self.inner.increment_request_count(descriptor)
        except Exception:
            _logger.debug("Metrics sink increment_request_count failed for %s", descriptor.full_name, exc_info=True)

    def increment_response_count(self, descriptor: MethodDescriptor, status: StatusCode) -> None:
        try:
            self.inner.increment_response_count(descriptor, status)
        except Exception:
            _logger.debug("Metrics sink increment_response_count failed for %s", descriptor.full_name, exc_info=True)

    def increment_stream_sent_count(self, descriptor: MethodDescriptor) -> None:
        try:
            self.inner.increment_stream_sent_count(descriptor)
        except Exception:
            _logger.debug(
                "Metrics sink increment_stream_sent_count failed for %s", descriptor.full_name, exc_info=True
            )

    def increment_stream_received_count(self, descriptor: MethodDescriptor) -> None:
        try:
            self.inner.increment_stream_received_count(descriptor)
        except Exception:
            _logger.debug(
                "Metrics sink increment_stream_received_count failed for %s", descriptor.full_name, exc_info=True
            )

    def record_latency(self, descriptor: MethodDescriptor, elapsed_seconds: float) -> None:
        try:
            self.inner.record_latency(descriptor, elapsed_seconds)
        except Exception:
            _logger.debug("Metrics sink record_latency failed for %s", descriptor.full_name, exc_info=True)


def _guard(sink: MetricsSink) -> _GuardedSink:
    """Return *sink* behind a best-effort guard (idempotent)."""
    if isinstance(sink, _GuardedSink):
        return sink
    return _GuardedSink(sink)
