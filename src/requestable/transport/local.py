"""In-process broker.

Everything lives in this process: items are held in dictionaries, handed to
consumers by a small pool of dispatch threads, and completions are fanned out
to listeners on the same threads. Useful for tests, and for running a client
and a server side by side without any external infrastructure.
"""

from __future__ import annotations

import collections
import itertools
import logging
import queue
import threading
from typing import Deque, Dict, List, Optional, Set

from .base import (
    Broker as BaseBroker,
    Completion,
    Handler,
    Listener,
    Subscription,
    TransportConnectionError,
    deliver,
)

logger = logging.getLogger(__name__)


class _Channel:
    """Book-keeping for a single named channel."""

    def __init__(self, name: str):
        self.name = name
        self.items: Dict[str, bytes] = {}
        self.backlog: Deque[str] = collections.deque()
        self.completed: Deque[str] = collections.deque()
        self.delivering: Set[str] = set()
        self.consumers: List[Subscription] = []
        self.listeners: List[Subscription] = []
        self.turn = itertools.count()

    def next_consumer(self) -> Optional[Subscription]:
        if not self.consumers:
            return None
        return self.consumers[next(self.turn) % len(self.consumers)]


class Broker(BaseBroker):
    """In-process broker. The most recent *retain* completed items on each
    channel remain available to :meth:`lookup`; older ones are forgotten.
    Items not yet completed, and items whose completion is still being
    delivered to listeners, are never forgotten.
    """

    workers = 4

    def __init__(self, retain: int = 1000, workers: Optional[int] = None):
        self.retain = int(retain)
        if workers is not None:
            self.workers = int(workers)

        self._channels: Dict[str, _Channel] = {}
        self._lock = threading.RLock()
        self._work: "queue.SimpleQueue" = queue.SimpleQueue()
        self._threads: List[threading.Thread] = []
        self._open = False
        self._ids = itertools.count(1)

    # --- lifecycle ---
    def open(self) -> None:
        with self._lock:
            if self._open:
                return
            self._open = True

            for number in range(self.workers):
                thread = threading.Thread(
                    target=self._worker_main,
                    name=f"requestable.local.{number}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)

    def close(self) -> None:
        with self._lock:
            if not self._open:
                return
            self._open = False
            threads = self._threads
            self._threads = []

        for _thread in threads:
            self._work.put(None)

        current = threading.current_thread()
        for thread in threads:
            if thread is not current:
                thread.join(timeout=5)

    @property
    def is_open(self) -> bool:
        return self._open

    # --- broker operations ---
    def publish(self, channel: str, payload: bytes) -> str:
        if not self._open:
            raise TransportConnectionError("local broker is not open")

        item_id = str(next(self._ids))

        with self._lock:
            state = self._channel(channel)
            state.items[item_id] = payload
            self._route(state, item_id)

        return item_id

    def consume(self, channel: str, handler: Handler) -> Subscription:
        if not self._open:
            raise TransportConnectionError("local broker is not open")

        subscription = Subscription(channel, handler, self._cancel_consumer)

        with self._lock:
            state = self._channel(channel)
            state.consumers.append(subscription)

            backlog = state.backlog
            state.backlog = collections.deque()
            for item_id in backlog:
                self._route(state, item_id)

        return subscription

    def completions(self, channel: str, listener: Listener) -> Subscription:
        if not self._open:
            raise TransportConnectionError("local broker is not open")

        subscription = Subscription(channel, listener, self._cancel_listener)

        with self._lock:
            self._channel(channel).listeners.append(subscription)

        return subscription

    def lookup(self, channel: str, item_id: str) -> Optional[bytes]:
        with self._lock:
            try:
                state = self._channels[channel]
            except KeyError:
                return None
            return state.items.get(item_id)

    # --- internal ---
    def _channel(self, name: str) -> _Channel:
        try:
            state = self._channels[name]
        except KeyError:
            state = _Channel(name)
            self._channels[name] = state
        return state

    def _route(self, state: _Channel, item_id: str) -> None:
        """Assign *item_id* to the next consumer, or hold it in the backlog
        until a consumer arrives. Caller holds the lock.
        """

        consumer = state.next_consumer()
        if consumer is None:
            state.backlog.append(item_id)
            return

        self._work.put((state, item_id, consumer))

    def _cancel_consumer(self, subscription: Subscription) -> None:
        with self._lock:
            state = self._channel(subscription.channel)
            if subscription in state.consumers:
                state.consumers.remove(subscription)

    def _cancel_listener(self, subscription: Subscription) -> None:
        with self._lock:
            state = self._channel(subscription.channel)
            if subscription in state.listeners:
                state.listeners.remove(subscription)

    def _complete(self, state: _Channel, item_id: str) -> None:
        with self._lock:
            state.completed.append(item_id)
            state.delivering.add(item_id)
            listeners = [listener.callback for listener in state.listeners if listener.active]

        try:
            deliver(listeners, Completion(item_id))
        finally:
            with self._lock:
                state.delivering.discard(item_id)
                self._evict(state)

    def _evict(self, state: _Channel) -> None:
        """Forget the oldest completed items beyond *retain*. An item whose
        completion is still being delivered stays available to lookup(),
        and so does anything completed after it. Caller holds the lock.
        """

        while len(state.completed) > self.retain:
            oldest = state.completed[0]
            if oldest in state.delivering:
                break
            state.completed.popleft()
            state.items.pop(oldest, None)

    def _worker_main(self) -> None:
        """Dispatch thread: hand one item at a time to its consumer, then
        announce its completion.
        """

        while True:
            work = self._work.get()

            if work is None:
                break

            state, item_id, consumer = work

            if not consumer.active:
                # The consumer went away after the item was assigned to it.
                with self._lock:
                    self._route(state, item_id)
                continue

            with self._lock:
                payload = state.items.get(item_id)

            try:
                consumer.callback(payload)
            except Exception:
                logger.exception("consumer failed on %s item %s", state.name, item_id)

            self._complete(state, item_id)
