"""
EventBus: replay-1 broadcast channel between install callbacks and their consumers.

publish() may be called from any thread; subscribers live on an asyncio loop.
"""
import asyncio
import logging
import threading
from typing import Any, Generic, List, Optional, TypeVar

logger = logging.getLogger("privbroker.events")

T = TypeVar("T")

_MISSING = object()
_CLOSED = object()


class Subscription(Generic[T]):
    """One consumer's view of the bus. Iterate it, or await get()."""

    def __init__(self, bus: "EventBus[T]", loop: asyncio.AbstractEventLoop):
        self._bus = bus
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        # first item is the replayed latest value
        self.replayed = False

    def _push(self, value: Any) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, value)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self, timeout: Optional[float] = None) -> T:
        if self.closed and self._queue.empty():
            raise EOFError("Subscription closed")
        value = await asyncio.wait_for(self._queue.get(), timeout)
        if value is _CLOSED:
            raise EOFError("Subscription closed")
        return value

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus._unsubscribe(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        try:
            return await self.get()
        except EOFError:
            raise StopAsyncIteration

    def __enter__(self) -> "Subscription[T]":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class EventBus(Generic[T]):
    """
    Holds the latest value and fans every new one out to current subscribers.
    A new subscriber first sees the latest value, never older history.
    """

    def __init__(self, initial: Any = _MISSING):
        self._lock = threading.Lock()
        self._latest = initial
        self._subscribers: List[Subscription[T]] = []

    @property
    def latest(self) -> Optional[T]:
        return None if self._latest is _MISSING else self._latest

    @property
    def has_value(self) -> bool:
        return self._latest is not _MISSING

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, value: T) -> None:
        with self._lock:
            self._latest = value
            stale = []
            for subscriber in self._subscribers:
                try:
                    subscriber._push(value)
                except RuntimeError:
                    # its loop is gone
                    stale.append(subscriber)
            for subscriber in stale:
                self._subscribers.remove(subscriber)

    def subscribe(self) -> Subscription[T]:
        """Must be called from a running event loop."""
        loop = asyncio.get_running_loop()
        subscription = Subscription(self, loop)
        with self._lock:
            if self._latest is not _MISSING:
                subscription._queue.put_nowait(self._latest)
                subscription.replayed = True
            self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription[T]) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
