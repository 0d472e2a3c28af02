# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""``grpc.aio`` binding for the metrics interceptor.

Provides ``GrpcMetricsInterceptor``, a ``grpc.aio.ServerInterceptor`` that
routes every handler through :class:`~rpc_metrics.ServerMetricsInterceptor`.

Requires ``pip install rpc-metrics[grpc]`` (grpcio).

Usage::

    from grpc import aio
    from rpc_metrics import InMemoryMetricsSink
    from rpc_metrics.grpc_aio import GrpcMetricsInterceptor

    server = aio.server(interceptors=[GrpcMetricsInterceptor(InMemoryMetricsSink())])

Handlers see a context proxy that forwards to the real
``grpc.aio.ServicerContext``.  Its ``read()`` / ``write()`` and the request
iterator go through the counting wrappers, so messages are counted however
the handler consumes or produces them.  Response-streaming handlers may be
async generators, coroutines calling ``context.write()``, or plain
generators (iterated on the event loop).

Status classification:

* ``context.abort(code, ...)``: counted under *code*
* :class:`~rpc_metrics.RpcStatusError`: counted under its code, then the call is aborted with it
* unary handler calling ``context.set_code(code)`` and returning: counted under *code*

Any other exception, including a ``grpc.RpcError`` from a failed downstream
call, reaches the caller as ``UNKNOWN`` and gets no response count.
"""

from __future__ import annotations

import functools
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Final

import grpc
from grpc import aio

from rpc_metrics._types import MethodType, RpcStatusError, StatusCode
from rpc_metrics.interceptor import ServerMetricsInterceptor, StatusClassifier
from rpc_metrics.sink import MetricsSink
from rpc_metrics.streams import CountingStreamReader, CountingStreamWriter

__all__ = ["GrpcMetricsInterceptor", "GrpcStatusClassifier"]

_logger = logging.getLogger("rpc_metrics.grpc_aio")

_GRPC_CODES: Final[dict[int, grpc.StatusCode]] = {code.value[0]: code for code in grpc.StatusCode}


def _to_status(code: Any) -> StatusCode:
    """Convert a ``grpc.StatusCode`` (or its integer value) to :class:`StatusCode`."""
    if isinstance(code, grpc.StatusCode):
        code = code.value[0]
    try:
        return StatusCode(code)
    except ValueError:
        return StatusCode.UNKNOWN


def _to_grpc_code(status: StatusCode) -> grpc.StatusCode:
    return _GRPC_CODES.get(int(status), grpc.StatusCode.UNKNOWN)


def _to_str(v: str | bytes) -> str:
    if isinstance(v, str):
        return v
    return v.decode("utf-8")


# ---------------------------------------------------------------------------
# Context proxy + request stream
# ---------------------------------------------------------------------------


class _InterceptedContext:
    """Forwards to a ``grpc.aio.ServicerContext``, routing stream I/O through counting wrappers."""

    __slots__ = ("_context", "_method", "_reader", "_writer", "aborted_code", "explicit_code")

    def __init__(self, context: aio.ServicerContext, method: str) -> None:
        self._context = context
        self._method = method
        self._reader: CountingStreamReader[Any] | None = None
        self._writer: CountingStreamWriter[Any] | None = None
        self.aborted_code: grpc.StatusCode | None = None
        self.explicit_code: grpc.StatusCode | None = None

    @property
    def method(self) -> str:
        """Fully-qualified method path."""
        return self._method

    def bind(
        self,
        reader: CountingStreamReader[Any] | None = None,
        writer: CountingStreamWriter[Any] | None = None,
    ) -> None:
        """Route ``read()`` / ``write()`` through the given wrappers."""
        self._reader = reader
        self._writer = writer

    async def read(self) -> Any:
        """Read one request message (``grpc.aio.EOF`` at end)."""
        if self._reader is None:
            return await self._context.read()
        return await self._reader.read()

    async def write(self, message: Any) -> None:
        """Write one response message."""
        if self._writer is None:
            await self._context.write(message)
            return
        await self._writer.write(message)

    async def abort(self, code: grpc.StatusCode, details: str = "", trailing_metadata: Any = ()) -> None:
        """Abort the call (raises ``grpc.aio.AbortError``), remembering *code* for status classification."""
        self.aborted_code = code
        await self._context.abort(code, details, trailing_metadata)

    def set_code(self, code: grpc.StatusCode) -> None:
        """Set the status code, remembering it for status classification."""
        self.explicit_code = code
        self._context.set_code(code)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self._context, name)


class _RequestStream:
    """Request stream readable both by iteration and by ``read()``."""

    __slots__ = ("_context", "_request_iterator")

    def __init__(self, request_iterator: Any, context: aio.ServicerContext) -> None:
        self._request_iterator = request_iterator
        self._context = context

    def __aiter__(self) -> AsyncIterator[Any]:
        return aiter(self._request_iterator)

    async def read(self) -> Any:
        return await self._context.read()


# ---------------------------------------------------------------------------
# Status classification
# ---------------------------------------------------------------------------


class GrpcStatusClassifier(StatusClassifier):
    """Recognizes gRPC aborts and explicit ``set_code``."""

    def error_status(self, error: Exception, context: Any) -> StatusCode | None:
        """Map gRPC failures to their status code; other failures return ``None``."""
        if isinstance(error, aio.AbortError):
            code = getattr(context, "aborted_code", None)
            if code is None:
                code = context.code()
            return _to_status(code)
        return super().error_status(error, context)

    def completed_status(self, context: Any) -> StatusCode:
        """Use a code set via ``set_code()``, else ``OK``."""
        code = getattr(context, "explicit_code", None)
        if code is None:
            return StatusCode.OK
        return _to_status(code)


# ---------------------------------------------------------------------------
# Continuations
# ---------------------------------------------------------------------------


async def _invoke(behavior: Callable[..., Any], *args: Any) -> Any:
    result = behavior(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def _drain(result: Any, writer: CountingStreamWriter[Any]) -> None:
    """Push whatever a response-streaming handler produced through *writer*."""
    if hasattr(result, "__aiter__"):
        async for message in result:
            await writer.write(message)
    elif inspect.isawaitable(result):
        await result
    elif result is not None:
        for message in result:
            await writer.write(message)


async def _respond(
    behavior: Callable[..., Any],
    request: Any,
    writer: CountingStreamWriter[Any],
    context: _InterceptedContext,
) -> None:
    context.bind(writer=writer)
    await _drain(behavior(request, context), writer)


async def _consume(
    behavior: Callable[..., Any],
    reader: CountingStreamReader[Any],
    context: _InterceptedContext,
) -> Any:
    context.bind(reader=reader)
    return await _invoke(behavior, reader, context)


async def _exchange(
    behavior: Callable[..., Any],
    reader: CountingStreamReader[Any],
    writer: CountingStreamWriter[Any],
    context: _InterceptedContext,
) -> None:
    context.bind(reader=reader, writer=writer)
    await _drain(behavior(reader, context), writer)


async def _abort_with(context: aio.ServicerContext, error: RpcStatusError) -> None:
    await context.abort(_to_grpc_code(error.code), error.details)


# ---------------------------------------------------------------------------
# Interceptor
# ---------------------------------------------------------------------------


class GrpcMetricsInterceptor(aio.ServerInterceptor):
    """``grpc.aio`` server interceptor emitting call-level metrics."""

    def __init__(self, sink: MetricsSink, enable_latency_metrics: bool = False) -> None:
        """Initialize with the metrics sink.

        Args:
            sink: Process-wide metrics sink.
            enable_latency_metrics: Record call latency via ``record_latency``.

        """
        self._interceptor = ServerMetricsInterceptor(
            sink,
            enable_latency_metrics,
            classifier=GrpcStatusClassifier(),
        )

    @property
    def interceptor(self) -> ServerMetricsInterceptor:
        """The framework-neutral interceptor doing the accounting."""
        return self._interceptor

    async def intercept_service(
        self,
        continuation: Callable[[grpc.HandlerCallDetails], Awaitable[grpc.RpcMethodHandler]],
        handler_call_details: grpc.HandlerCallDetails,
    ) -> grpc.RpcMethodHandler:
        """Resolve the handler and wrap its behavior for its call shape."""
        handler = await continuation(handler_call_details)
        method = _to_str(handler_call_details.method)  # type: ignore[attr-defined]
        if handler is None:
            _logger.debug("No handler for %s, not instrumenting", method)
            return handler
        method_type = MethodType.from_streaming(handler.request_streaming, handler.response_streaming)
        if method_type is MethodType.UNARY:
            return grpc.unary_unary_rpc_method_handler(
                self._wrap_unary(handler.unary_unary, method),
                request_deserializer=handler.request_deserializer,
                response_serializer=handler.response_serializer,
            )
        if method_type is MethodType.SERVER_STREAMING:
            return grpc.unary_stream_rpc_method_handler(
                self._wrap_server_streaming(handler.unary_stream, method),
                request_deserializer=handler.request_deserializer,
                response_serializer=handler.response_serializer,
            )
        if method_type is MethodType.CLIENT_STREAMING:
            return grpc.stream_unary_rpc_method_handler(
                self._wrap_client_streaming(handler.stream_unary, method),
                request_deserializer=handler.request_deserializer,
                response_serializer=handler.response_serializer,
            )
        return grpc.stream_stream_rpc_method_handler(
            self._wrap_duplex_streaming(handler.stream_stream, method),
            request_deserializer=handler.request_deserializer,
            response_serializer=handler.response_serializer,
        )

    def _wrap_unary(self, behavior: Callable[..., Any], method: str) -> Callable[..., Awaitable[Any]]:
        interceptor = self._interceptor

        async def unary_unary(request: Any, context: aio.ServicerContext) -> Any:
            ctx = _InterceptedContext(context, method)
            try:
                return await interceptor.unary_server_handler(request, ctx, functools.partial(_invoke, behavior))
            except RpcStatusError as exc:
                await _abort_with(context, exc)

        return unary_unary

    def _wrap_server_streaming(self, behavior: Callable[..., Any], method: str) -> Callable[..., Awaitable[None]]:
        interceptor = self._interceptor

        async def unary_stream(request: Any, context: aio.ServicerContext) -> None:
            ctx = _InterceptedContext(context, method)
            try:
                handle = interceptor.server_streaming_server_handler(
                    request, context, ctx, functools.partial(_respond, behavior)
                )
                await handle
            except RpcStatusError as exc:
                await _abort_with(context, exc)

        return unary_stream

    def _wrap_client_streaming(self, behavior: Callable[..., Any], method: str) -> Callable[..., Awaitable[Any]]:
        interceptor = self._interceptor

        async def stream_unary(request_iterator: Any, context: aio.ServicerContext) -> Any:
            ctx = _InterceptedContext(context, method)
            try:
                handle = interceptor.client_streaming_server_handler(
                    _RequestStream(request_iterator, context),
                    ctx,
                    functools.partial(_consume, behavior),
                    eof=aio.EOF,
                )
                return await handle
            except RpcStatusError as exc:
                await _abort_with(context, exc)

        return stream_unary

    def _wrap_duplex_streaming(self, behavior: Callable[..., Any], method: str) -> Callable[..., Awaitable[None]]:
        interceptor = self._interceptor

        async def stream_stream(request_iterator: Any, context: aio.ServicerContext) -> None:
            ctx = _InterceptedContext(context, method)
            try:
                handle = interceptor.duplex_streaming_server_handler(
                    _RequestStream(request_iterator, context),
                    context,
                    ctx,
                    functools.partial(_exchange, behavior),
                    eof=aio.EOF,
                )
                await handle
            except RpcStatusError as exc:
                await _abort_with(context, exc)

        return stream_stream
