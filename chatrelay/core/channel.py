"""StreamingChannel: push-to-pull handoff between a chat transport and the engine.

The transport pushes user content at arbitrary times; the engine pulls it
lazily, one item at a time, by iterating the channel. A channel is in one of
three states:

- **open/idle**: no consumer is waiting; pushed items are queued.
- **open/waiting**: the consumer is blocked on an empty queue; the next push
  is handed to it directly.
- **closed**: pushes fail; queued items still drain, then iteration ends.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from typing import Any, Generic, TypeVar

from ..errors import ChannelClosedError, ChannelConsumedError

T = TypeVar("T")

# Wakes a waiting consumer when the channel closes.
_END_OF_STREAM = object()


class StreamingChannel(Generic[T]):
    """Single-consumer async queue with direct handoff to a waiting reader.

    Every item pushed before ``close()`` is delivered exactly once, in push
    order. Iteration is lazy, finite once closed, and not restartable.
    """

    def __init__(self, session_id: str = "") -> None:
        self.session_id = session_id
        self._queue: deque[T] = deque()
        self._waiter: asyncio.Future[Any] | None = None
        self._closed = False
        self._consumed = False
        self._pushed = 0
        self._delivered = 0

    # --- Producer side ---

    def push(self, item: T) -> None:
        """Hand ``item`` to a waiting consumer, or queue it."""
        if self._closed:
            raise ChannelClosedError()
        self._pushed += 1
        waiter = self._waiter
        if waiter is not None and not waiter.done():
            # A waiter only exists while the queue is empty, so handing off
            # directly cannot overtake queued items.
            self._waiter = None
            waiter.set_result(item)
        else:
            self._queue.append(item)

    def create_message(self, text: str) -> dict[str, Any]:
        """Build a user-message envelope stamped with the current session id."""
        return {
            "type": "user",
            "message": {"role": "user", "content": text},
            "parent_tool_use_id": None,
            "session_id": self.session_id,
        }

    def push_text(self, text: str) -> None:
        """Push a user-message envelope built from ``text``."""
        self.push(self.create_message(text))  # type: ignore[arg-type]

    def close(self) -> None:
        """Signal that no more items will be pushed (idempotent)."""
        if self._closed:
            return
        self._closed = True
        waiter = self._waiter
        if waiter is not None and not waiter.done():
            self._waiter = None
            waiter.set_result(_END_OF_STREAM)

    # --- Introspection ---

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        """Items queued but not yet delivered to the consumer."""
        return len(self._queue)

    @property
    def has_pending(self) -> bool:
        return bool(self._queue)

    @property
    def pushed_count(self) -> int:
        """Total items accepted by ``push`` over the channel's lifetime."""
        return self._pushed

    @property
    def delivered_count(self) -> int:
        return self._delivered

    @property
    def waiting(self) -> bool:
        """True while a consumer is blocked on an empty queue."""
        return self._waiter is not None and not self._waiter.done()

    # --- Consumer side ---

    def __aiter__(self) -> AsyncIterator[T]:
        if self._consumed:
            raise ChannelConsumedError()
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        while True:
            if self._queue:
                self._delivered += 1
                yield self._queue.popleft()
                continue
            if self._closed:
                return

            waiter: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
            self._waiter = waiter
            try:
                item = await waiter
            except asyncio.CancelledError:
                # Cancelled after a handoff landed: leave the item queued
                # rather than dropping it.
                if waiter.done() and not waiter.cancelled():
                    handed = waiter.result()
                    if handed is not _END_OF_STREAM:
                        self._queue.appendleft(handed)
                raise
            finally:
                # A cancelled reader must not leave a dead future behind for
                # push() to hand items to.
                if self._waiter is waiter:
                    self._waiter = None
            if item is _END_OF_STREAM:
                return
            self._delivered += 1
            yield item

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("waiting" if self.waiting else "idle")
        return (
            f"StreamingChannel(state={state}, pending={len(self._queue)}, "
            f"pushed={self._pushed}, session_id={self.session_id!r})"
        )
