# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""OpenTelemetry metrics sink for rpc-metrics.

Provides ``OtelConfig`` and ``OtelMetricsSink``, which translates the sink
operations into OpenTelemetry counters and a duration histogram.

Requires ``pip install rpc-metrics[otel]`` (opentelemetry-api; add
opentelemetry-sdk to export).

Usage::

    from rpc_metrics import ServerMetricsInterceptor
    from rpc_metrics.otel import OtelConfig, OtelMetricsSink

    sink = OtelMetricsSink()  # uses global MeterProvider
    interceptor = ServerMetricsInterceptor(sink, enable_latency_metrics=True)
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from opentelemetry.metrics import Counter, Histogram, Meter, MeterProvider, get_meter_provider

from rpc_metrics._types import MethodDescriptor, StatusCode

__all__ = ["OtelConfig", "OtelMetricsSink"]

_logger = logging.getLogger("rpc_metrics.otel")

_METER_NAME = "rpc_metrics"
_METER_VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OtelConfig:
    """Configuration for the OpenTelemetry sink.

    Attributes:
        meter_provider: Custom ``MeterProvider``; uses the global provider when ``None``.
        rpc_system: Value of the ``rpc.system`` attribute (default ``"grpc"``).
        custom_attributes: Extra attributes merged into every measurement.

    """

    meter_provider: MeterProvider | None = None
    rpc_system: str = "grpc"
    custom_attributes: Mapping[str, str] = field(default_factory=dict)


class OtelMetricsSink:
    """Records sink operations on OpenTelemetry instruments.

    Instruments (all on meter ``rpc_metrics``):

    * ``rpc.server.requests``: counter, one per call
    * ``rpc.server.responses``: counter, one per classified outcome, with
      ``rpc.grpc.status_code`` and ``status`` attributes
    * ``rpc.server.stream.messages_sent``: counter, one per outbound message
    * ``rpc.server.stream.messages_received``: counter, one per inbound message
    * ``rpc.server.duration``: histogram of call latency in seconds

    OpenTelemetry instruments are thread-safe, so the sink needs no locking.
    """

    __slots__ = (
        "_config",
        "_duration",
        "_meter",
        "_received",
        "_requests",
        "_responses",
        "_sent",
    )

    def __init__(self, config: OtelConfig | None = None) -> None:
        """Create the meter and instruments.

        Args:
            config: Optional configuration; uses the global provider and defaults when ``None``.

        """
        if config is None:
            config = OtelConfig()
        self._config = config

        mp: MeterProvider = config.meter_provider or get_meter_provider()
        self._meter: Meter = mp.get_meter(_METER_NAME, _METER_VERSION)
        self._requests: Counter = self._meter.create_counter(
            "rpc.server.requests",
            unit="{request}",
            description="Number of RPC requests started",
        )
        self._responses: Counter = self._meter.create_counter(
            "rpc.server.responses",
            unit="{response}",
            description="Number of RPC responses by status code",
        )
        self._sent: Counter = self._meter.create_counter(
            "rpc.server.stream.messages_sent",
            unit="{message}",
            description="Number of stream messages sent by the server",
        )
        self._received: Counter = self._meter.create_counter(
            "rpc.server.stream.messages_received",
            unit="{message}",
            description="Number of stream messages received by the server",
        )
        self._duration: Histogram = self._meter.create_histogram(
            "rpc.server.duration",
            unit="s",
            description="Duration of RPC calls",
        )
        _logger.debug("OpenTelemetry metrics sink created (rpc.system=%s)", config.rpc_system)

    @property
    def config(self) -> OtelConfig:
        """The configuration this sink was created with."""
        return self._config

    def _attributes(self, descriptor: MethodDescriptor) -> dict[str, str | int]:
        attrs: dict[str, str | int] = {
            "rpc.system": self._config.rpc_system,
            "rpc.service": descriptor.service,
            "rpc.method": descriptor.method,
            "rpc.method_type": descriptor.method_type.value,
        }
        attrs.update(self._config.custom_attributes)
        return attrs

    def increment_request_count(self, descriptor: MethodDescriptor) -> None:
        """Add one to ``rpc.server.requests``."""
        self._requests.add(1, self._attributes(descriptor))

    def increment_response_count(self, descriptor: MethodDescriptor, status: StatusCode) -> None:
        """Add one to ``rpc.server.responses`` under *status*."""
        attrs = self._attributes(descriptor)
        attrs["rpc.grpc.status_code"] = int(status)
        attrs["status"] = status.name
        self._responses.add(1, attrs)

    def increment_stream_sent_count(self, descriptor: MethodDescriptor) -> None:
        """Add one to ``rpc.server.stream.messages_sent``."""
        self._sent.add(1, self._attributes(descriptor))

    def increment_stream_received_count(self, descriptor: MethodDescriptor) -> None:
        """Add one to ``rpc.server.stream.messages_received``."""
        self._received.add(1, self._attributes(descriptor))

    def record_latency(self, descriptor: MethodDescriptor, elapsed_seconds: float) -> None:
        """Record *elapsed_seconds* on ``rpc.server.duration``."""
        self._duration.record(elapsed_seconds, self._attributes(descriptor))
