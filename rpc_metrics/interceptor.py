# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Server-side call interceptor emitting request, response, stream and latency metrics.

:class:`ServerMetricsInterceptor` exposes one entry point per call shape.  A
framework binding (see :mod:`rpc_metrics.grpc_aio`) invokes the matching
entry point with the call context and a *continuation* that runs the real
handler.  Every entry point follows the same sequence:

1. build a :class:`MethodDescriptor` from the call shape and ``context.method``
2. count the request
3. start a :class:`CallTimer`
4. wrap the request stream (received counter) and/or response stream
   (sent counter) when the shape has one
5. run the continuation
6. count the response under ``OK`` or under the status of a recognized
   transport-level error, which is then re-raised as the same object
7. on every exit path, record latency when enabled

Unary calls are awaited, so their status reflects handler completion.  The
streaming entry points return the continuation's handle as soon as the
invocation returns, so their status only reflects that the invocation did
not raise; a stream that fails after it starts is still counted as ``OK``.
"""

from __future__ import annotations

import contextlib
import functools
import logging
import time
from collections.abc import Awaitable, Callable, Iterator
from typing import Any, Protocol

from rpc_metrics._types import MethodDescriptor, MethodType, RpcStatusError, StatusCode
from rpc_metrics.sink import MetricsSink, _guard
from rpc_metrics.streams import EOF, CountingStreamReader, CountingStreamWriter

__all__ = ["CallTimer", "ServerCallContext", "ServerMetricsInterceptor", "StatusClassifier"]

_logger = logging.getLogger("rpc_metrics.interceptor")


class ServerCallContext(Protocol):
    """The part of a framework call context the interceptor reads."""

    @property
    def method(self) -> str:
        """Fully-qualified method path, e.g. ``"/package.Service/Method"``."""
        ...


# ---------------------------------------------------------------------------
# CallTimer
# ---------------------------------------------------------------------------


class CallTimer:
    """Per-call elapsed wall-clock measurement.

    Starts on construction; :meth:`stop` freezes the elapsed time and is
    idempotent so it can be read exactly once on any exit path.
    """

    __slots__ = ("_elapsed", "_start")

    def __init__(self) -> None:
        """Start timing."""
        self._start = time.monotonic()
        self._elapsed: float | None = None

    @property
    def stopped(self) -> bool:
        """Whether :meth:`stop` has been called."""
        return self._elapsed is not None

    @property
    def elapsed(self) -> float:
        """Seconds since start, frozen once stopped."""
        if self._elapsed is not None:
            return self._elapsed
        return max(time.monotonic() - self._start, 0.0)

    def stop(self) -> float:
        """Stop the timer and return the elapsed seconds."""
        if self._elapsed is None:
            self._elapsed = max(time.monotonic() - self._start, 0.0)
        return self._elapsed


# ---------------------------------------------------------------------------
# Status classification
# ---------------------------------------------------------------------------


class StatusClassifier:
    """Maps call outcomes to the status reported on the response counter.

    Subclass to recognize a framework's own transport-level error type.
    """

    def error_status(self, error: Exception, context: Any) -> StatusCode | None:
        """Return the status for a transport-level error, or ``None`` for any other failure.

        Failures mapped to ``None`` propagate without a response count.
        """
        if isinstance(error, RpcStatusError):
            return error.code
        return None

    def completed_status(self, context: Any) -> StatusCode:
        """Return the status for a unary handler that returned normally."""
        return StatusCode.OK


_DEFAULT_CLASSIFIER = StatusClassifier()


# ---------------------------------------------------------------------------
# Interceptor
# ---------------------------------------------------------------------------


class ServerMetricsInterceptor:
    """Instruments the four server call shapes with call-level metrics.

    The sink is shared by every call and held for the interceptor's
    lifetime behind a guard, so a failing sink never changes what the RPC
    caller observes.  The interceptor itself keeps no per-call state.
    """

    __slots__ = ("_classifier", "_enable_latency_metrics", "_sink")

    def __init__(
        self,
        sink: MetricsSink,
        enable_latency_metrics: bool = False,
        *,
        classifier: StatusClassifier | None = None,
    ) -> None:
        """Initialize with the metrics sink.

        Args:
            sink: Process-wide metrics sink; must tolerate concurrent calls.
            enable_latency_metrics: Record call latency via ``record_latency``.
            classifier: Recognizes transport-level errors; defaults to one
                that recognizes :class:`~rpc_metrics.RpcStatusError`.

        """
        self._sink = _guard(sink)
        self._enable_latency_metrics = enable_latency_metrics
        self._classifier = classifier or _DEFAULT_CLASSIFIER

    @property
    def sink(self) -> MetricsSink:
        """The sink passed at construction."""
        return self._sink.inner

    @property
    def enable_latency_metrics(self) -> bool:
        """Whether latency is recorded."""
        return self._enable_latency_metrics

    # -- entry points ------------------------------------------------------

    async def unary_server_handler[Req, Resp](
        self,
        request: Req,
        context: ServerCallContext,
        continuation: Callable[[Req, Any], Awaitable[Resp]],
    ) -> Resp:
        """Instrument a unary call; the status reflects handler completion."""
        descriptor = self._start_call(context, MethodType.UNARY)
        with self._timed(descriptor):
            try:
                response = await continuation(request, context)
            except Exception as exc:
                self._record_failure(descriptor, exc, context)
                raise
            self._sink.increment_response_count(descriptor, self._completed_status(descriptor, context))
            return response

    def server_streaming_server_handler[Req, H](
        self,
        request: Req,
        response_stream: Any,
        context: ServerCallContext,
        continuation: Callable[[Req, CountingStreamWriter[Any], Any], H],
    ) -> H:
        """Instrument a server-streaming call; returns the continuation's handle."""
        descriptor = self._start_call(context, MethodType.SERVER_STREAMING)
        with self._timed(descriptor):
            writer = self._counting_writer(response_stream, descriptor)
            try:
                handle = continuation(request, writer, context)
            except Exception as exc:
                self._record_failure(descriptor, exc, context)
                raise
            self._sink.increment_response_count(descriptor, StatusCode.OK)
            return handle

    def client_streaming_server_handler[H](
        self,
        request_stream: Any,
        context: ServerCallContext,
        continuation: Callable[[CountingStreamReader[Any], Any], H],
        *,
        eof: object = EOF,
    ) -> H:
        """Instrument a client-streaming call; returns the continuation's handle."""
        descriptor = self._start_call(context, MethodType.CLIENT_STREAMING)
        with self._timed(descriptor):
            reader = self._counting_reader(request_stream, descriptor, eof)
            try:
                handle = continuation(reader, context)
            except Exception as exc:
                self._record_failure(descriptor, exc, context)
                raise
            self._sink.increment_response_count(descriptor, StatusCode.OK)
            return handle

    def duplex_streaming_server_handler[H](
        self,
        request_stream: Any,
        response_stream: Any,
        context: ServerCallContext,
        continuation: Callable[[CountingStreamReader[Any], CountingStreamWriter[Any], Any], H],
        *,
        eof: object = EOF,
    ) -> H:
        """Instrument a duplex-streaming call; returns the continuation's handle."""
        descriptor = self._start_call(context, MethodType.DUPLEX_STREAMING)
        with self._timed(descriptor):
            reader = self._counting_reader(request_stream, descriptor, eof)
            writer = self._counting_writer(response_stream, descriptor)
            try:
                handle = continuation(reader, writer, context)
            except Exception as exc:
                self._record_failure(descriptor, exc, context)
                raise
            self._sink.increment_response_count(descriptor, StatusCode.OK)
            return handle

    # -- internals ---------------------------------------------------------

    def _start_call(self, context: ServerCallContext, method_type: MethodType) -> MethodDescriptor:
        descriptor = MethodDescriptor(context.method, method_type)
        self._sink.increment_request_count(descriptor)
        return descriptor

    @contextlib.contextmanager
    def _timed(self, descriptor: MethodDescriptor) -> Iterator[CallTimer]:
        timer = CallTimer()
        try:
            yield timer
        finally:
            elapsed = timer.stop()
            if self._enable_latency_metrics:
                self._sink.record_latency(descriptor, elapsed)

    def _counting_reader(self, stream: Any, descriptor: MethodDescriptor, eof: object) -> CountingStreamReader[Any]:
        return CountingStreamReader(
            stream,
            functools.partial(self._sink.increment_stream_received_count, descriptor),
            eof=eof,
        )

    def _counting_writer(self, stream: Any, descriptor: MethodDescriptor) -> CountingStreamWriter[Any]:
        return CountingStreamWriter(stream, functools.partial(self._sink.increment_stream_sent_count, descriptor))

    def _completed_status(self, descriptor: MethodDescriptor, context: Any) -> StatusCode:
        try:
            return self._classifier.completed_status(context)
        except Exception:
            _logger.debug("Status classification failed for %s", descriptor.full_name, exc_info=True)
            return StatusCode.OK

    def _record_failure(self, descriptor: MethodDescriptor, error: Exception, context: Any) -> None:
        """Count the response for a transport-level error; other failures are left alone."""
        try:
            status = self._classifier.error_status(error, context)
        except Exception:
            _logger.debug("Status classification failed for %s", descriptor.full_name, exc_info=True)
            return
        if status is None:
            return
        _logger.debug("RPC %s failed with status %s", descriptor.full_name, status.name)
        self._sink.increment_response_count(descriptor, status)
