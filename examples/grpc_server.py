"""Instrument a grpc.aio server and print the collected metrics.

Starts a local server with one unary and one bidirectional-streaming
method (raw bytes, no protobuf), makes a few calls, then prints the
in-memory counters.

Run::

    python examples/grpc_server.py
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import grpc
from grpc import aio

from rpc_metrics import InMemoryMetricsSink
from rpc_metrics.grpc_aio import GrpcMetricsInterceptor


# 1. Handlers for a tiny "demo.Echo" service.
async def shout(request: bytes, context: aio.ServicerContext) -> bytes:
    """Return the request upper-cased; reject empty requests."""
    if not request:
        await context.abort(grpc.StatusCode.INVALID_ARGUMENT, "empty request")
    return request.upper()


async def chat(request_iterator: AsyncIterator[bytes], context: aio.ServicerContext) -> AsyncIterator[bytes]:
    """Echo every message back twice."""
    async for message in request_iterator:
        yield message
        yield message


async def main() -> None:
    """Serve, call, and report."""
    # 2. Attach the interceptor with a shared sink.
    sink = InMemoryMetricsSink()
    server = aio.server(interceptors=[GrpcMetricsInterceptor(sink, enable_latency_metrics=True)])
    server.add_generic_rpc_handlers(
        (
            grpc.method_handlers_generic_handler(
                "demo.Echo",
                {
                    "Shout": grpc.unary_unary_rpc_method_handler(shout),
                    "Chat": grpc.stream_stream_rpc_method_handler(chat),
                },
            ),
        )
    )
    port = server.add_insecure_port("127.0.0.1:0")
    await server.start()

    # 3. Make some calls.
    async with aio.insecure_channel(f"127.0.0.1:{port}") as channel:
        shout_call = channel.unary_unary("/demo.Echo/Shout")
        print(await shout_call(b"hello"))
        try:
            await shout_call(b"")
        except aio.AioRpcError as exc:
            print(f"rejected: {exc.code().name}")

        async def messages() -> AsyncIterator[bytes]:
            for word in (b"one", b"two", b"three"):
                yield word

        print([reply async for reply in channel.stream_stream("/demo.Echo/Chat")(messages())])

    await server.stop(None)

    # 4. Inspect what was recorded.
    snapshot = sink.snapshot()
    for (descriptor, status), count in snapshot.responses.items():
        print(f"{descriptor.full_name} [{descriptor.method_type.value}] {status.name}: {count}")
    print(f"Chat received={sink.received_count('/demo.Echo/Chat')} sent={sink.sent_count('/demo.Echo/Chat')}")
    for descriptor, latencies in snapshot.latencies.items():
        print(f"{descriptor.full_name} latencies: {[round(s * 1000, 2) for s in latencies]} ms")


if __name__ == "__main__":
    asyncio.run(main())
