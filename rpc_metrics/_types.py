# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Call identity, call shapes, and status codes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum

# ---------------------------------------------------------------------------
# MethodType enum
# ---------------------------------------------------------------------------


class MethodType(Enum):
    """Classification of RPC call shapes."""

    UNARY = "unary"
    SERVER_STREAMING = "server_streaming"
    CLIENT_STREAMING = "client_streaming"
    DUPLEX_STREAMING = "duplex_streaming"

    @classmethod
    def from_streaming(cls, request_streaming: bool, response_streaming: bool) -> MethodType:
        """Derive the call shape from the two streaming flags a framework exposes."""
        if request_streaming and response_streaming:
            return cls.DUPLEX_STREAMING
        if request_streaming:
            return cls.CLIENT_STREAMING
        if response_streaming:
            return cls.SERVER_STREAMING
        return cls.UNARY


# ---------------------------------------------------------------------------
# StatusCode enum
# ---------------------------------------------------------------------------


class StatusCode(IntEnum):
    """Canonical RPC status codes reported on the response counter."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


# ---------------------------------------------------------------------------
# MethodDescriptor
# ---------------------------------------------------------------------------

_UNKNOWN_SERVICE = "unknown"


@dataclass(frozen=True)
class MethodDescriptor:
    """Identity and shape of a single call, used to label every metric it emits.

    Attributes:
        full_name: Fully-qualified method path as supplied by the framework,
            e.g. ``"/package.Service/Method"``.  Accepted as-is.
        method_type: Which of the four call shapes was invoked.

    """

    full_name: str
    method_type: MethodType

    @property
    def service(self) -> str:
        """Service part of the path (``"package.Service"``), or ``"unknown"``."""
        return self._split()[0]

    @property
    def method(self) -> str:
        """Method part of the path (``"Method"``)."""
        return self._split()[1]

    def _split(self) -> tuple[str, str]:
        stripped = self.full_name.lstrip("/")
        service, sep, method = stripped.partition("/")
        if not sep or not service or not method:
            return _UNKNOWN_SERVICE, stripped
        return service, method


# ---------------------------------------------------------------------------
# RpcStatusError
# ---------------------------------------------------------------------------


class RpcStatusError(Exception):
    """Transport-level RPC failure carrying a status code.

    Raised by handlers to end a call with a non-OK status.  The metrics
    interceptor counts the response under ``code`` and re-raises the same
    instance.
    """

    def __init__(self, code: StatusCode, details: str = "") -> None:
        """Initialize with the status code and optional details."""
        self.code = code
        self.details = details
        super().__init__(f"{code.name}: {details}" if details else code.name)
