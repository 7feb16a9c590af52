import asyncio
import logging
from typing import Callable, List, Optional

from .models import ImportProgressSnapshot, ImportStatus

logger = logging.getLogger(__name__)

Listener = Callable[[ImportProgressSnapshot], None]

TERMINAL = {ImportStatus.COMPLETED, ImportStatus.PAUSED, ImportStatus.ERROR, ImportStatus.IDLE}


class Subscription:
    """
    Async iterator over snapshots. Slow consumers only ever see the most recent one.
    Ends after a terminal snapshot when opened with until_terminal, or on close().
    """

    def __init__(self, channel: "ProgressChannel", until_terminal: bool):
        self._channel = channel
        self._until_terminal = until_terminal
        self._pending: Optional[ImportProgressSnapshot] = None
        self._event = asyncio.Event()
        self._closed = False
        self._finished = False

    def _offer(self, snapshot: ImportProgressSnapshot):
        self._pending = snapshot
        self._event.set()
        if self._until_terminal and snapshot.status in TERMINAL:
            # Nothing after this is delivered, so stop receiving even if never iterated
            self._channel._unsubscribe(self)

    def close(self):
        self._closed = True
        self._event.set()
        self._channel._unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ImportProgressSnapshot:
        if self._finished:
            raise StopAsyncIteration
        while self._pending is None:
            if self._closed:
                raise StopAsyncIteration
            self._event.clear()
            await self._event.wait()
        snapshot, self._pending = self._pending, None
        if self._until_terminal and snapshot.status in TERMINAL:
            self._finished = True
            self._channel._unsubscribe(self)
        return snapshot


class ProgressChannel:
    """Single-producer fan-out of progress snapshots for one resource."""

    def __init__(self, initial: ImportProgressSnapshot):
        self.latest = initial
        self._listeners: List[Listener] = []
        self._subscriptions: List[Subscription] = []

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def subscribe(self, replay: bool = True, until_terminal: bool = False) -> Subscription:
        subscription = Subscription(self, until_terminal)
        self._subscriptions.append(subscription)
        if replay:
            subscription._offer(self.latest)
        return subscription

    def _unsubscribe(self, subscription: Subscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, snapshot: ImportProgressSnapshot):
        self.latest = snapshot
        for subscription in list(self._subscriptions):
            subscription._offer(snapshot)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                # A broken consumer must never stop the import loop
                logger.error(f"Progress listener {listener!r} failed: {e}", exc_info=True)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
