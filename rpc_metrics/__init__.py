# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Server-side RPC call metrics: request, response, stream message and latency accounting."""

import contextlib
import logging

from rpc_metrics._types import MethodDescriptor, MethodType, RpcStatusError, StatusCode
from rpc_metrics.interceptor import CallTimer, ServerCallContext, ServerMetricsInterceptor, StatusClassifier
from rpc_metrics.sink import CompositeMetricsSink, InMemoryMetricsSink, MetricsSink, MetricsSnapshot
from rpc_metrics.streams import EOF, CountingStreamReader, CountingStreamWriter

# OpenTelemetry sink (optional, requires `pip install rpc-metrics[otel]`)
with contextlib.suppress(ImportError):
    from rpc_metrics.otel import OtelConfig, OtelMetricsSink

# gRPC asyncio binding (optional, requires `pip install rpc-metrics[grpc]`)
with contextlib.suppress(ImportError):
    from rpc_metrics.grpc_aio import GrpcMetricsInterceptor, GrpcStatusClassifier

__all__ = [
    # Interceptor
    "ServerMetricsInterceptor",
    "ServerCallContext",
    "StatusClassifier",
    "CallTimer",
    # Call identity & status
    "MethodDescriptor",
    "MethodType",
    "StatusCode",
    "RpcStatusError",
    # Sinks
    "MetricsSink",
    "InMemoryMetricsSink",
    "CompositeMetricsSink",
    "MetricsSnapshot",
    # Streams
    "CountingStreamReader",
    "CountingStreamWriter",
    "EOF",
]

# Conditionally include optional names only when actually imported
if "OtelConfig" in dir():
    __all__ += ["OtelConfig", "OtelMetricsSink"]
if "GrpcMetricsInterceptor" in dir():
    __all__ += ["GrpcMetricsInterceptor", "GrpcStatusClassifier"]

# Attach NullHandler to the package logger so library users don't get
# "No handler found" warnings.
logging.getLogger("rpc_metrics").addHandler(logging.NullHandler())
