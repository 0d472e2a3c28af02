# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Pass-through stream wrappers that count messages as they flow.

Both wrappers forward every operation to the wrapped stream unchanged and
call a counter callback exactly once per item actually transferred.  Items
are never buffered, reordered or transformed.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any, Final, Self

__all__ = ["EOF", "CountingStreamReader", "CountingStreamWriter"]


class _EndOfStream:
    """Sentinel type returned by ``read()`` once a stream is exhausted."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "EOF"


EOF: Final = _EndOfStream()
"""Default end-of-stream sentinel for readers exposing ``read()``."""


class CountingStreamReader[T]:
    """Inbound stream wrapper: counts each item delivered to the handler.

    Supports both read styles of the wrapped stream:

    * async iteration (``async for item in reader``), ending with
      ``StopAsyncIteration``;
    * ``await reader.read()``, ending when the wrapped stream returns the
      *eof* sentinel.

    End of stream and read failures propagate unchanged and are not counted.
    If the wrapped stream only has ``read()``, iteration is built on it.
    """

    __slots__ = ("_eof", "_inner", "_iterator", "_on_item")

    def __init__(self, inner: Any, on_item: Callable[[], None], *, eof: object = EOF) -> None:
        """Initialize with the wrapped stream and the per-item callback.

        Args:
            inner: The underlying request stream.
            on_item: Called once after each item is read successfully.
            eof: Value the wrapped ``read()`` returns at end of stream.

        """
        self._inner = inner
        self._on_item = on_item
        self._eof = eof
        self._iterator: AsyncIterator[T] | None = None

    @property
    def inner(self) -> Any:
        """The wrapped stream."""
        return self._inner

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> T:
        if self._iterator is None:
            if hasattr(self._inner, "__aiter__"):
                self._iterator = aiter(self._inner)
            else:
                self._iterator = self._read_until_eof()
        item = await anext(self._iterator)
        self._on_item()
        return item

    async def read(self) -> T | object:
        """Read one item, or return the EOF sentinel unchanged."""
        item = await self._inner.read()
        if item is self._eof:
            return item
        self._on_item()
        return item

    async def _read_until_eof(self) -> AsyncIterator[T]:
        while True:
            item = await self._inner.read()
            if item is self._eof:
                return
            yield item

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self._inner, name)


class CountingStreamWriter[T]:
    """Outbound stream wrapper: counts each message after a successful write.

    A failing write propagates unchanged and is not counted.  Any other
    attribute is forwarded to the wrapped stream.
    """

    __slots__ = ("_inner", "_on_item")

    def __init__(self, inner: Any, on_item: Callable[[], None]) -> None:
        """Initialize with the wrapped stream and the per-message callback."""
        self._inner = inner
        self._on_item = on_item

    @property
    def inner(self) -> Any:
        """The wrapped stream."""
        return self._inner

    async def write(self, message: T) -> Any:
        """Write *message* to the wrapped stream, then count it.

        Returns whatever the wrapped ``write()`` returned.
        """
        result = await self._inner.write(message)
        self._on_item()
        return result

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return getattr(self._inner, name)
