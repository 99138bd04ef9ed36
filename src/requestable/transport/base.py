"""Transport interface.

This is the (small) contract a broker adapter must follow. It lives outside
:mod:`requestable.protocol` so the protocol remains transport-agnostic, and
it deals only in opaque payload bytes.

A broker offers named channels. Items published to a channel are handed to
exactly one of the channel's consumers; once that consumer's handler returns
the item is complete, and a :class:`Completion` is broadcast to every
completion listener on the channel. Listeners retrieve the completed item's
payload with :meth:`Broker.lookup`.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


# Transport agnostic exceptions

class TransportError(Exception):
    """Base class for all transport-layer errors."""


class TransportTimeout(TransportError):
    """A broker operation did not receive a timely response."""


class TransportConnectionError(TransportError):
    """The transport could not establish or maintain a connection."""


@dataclass(frozen=True)
class Completion:
    """Notification that the broker finished processing one item."""

    item_id: str
    previous: Optional[str] = None


Handler = Callable[[bytes], None]
Listener = Callable[[Completion], None]


class Subscription:
    """Handle returned by :meth:`Broker.consume` and
    :meth:`Broker.completions`; :meth:`cancel` ends the interest. Cancelling
    more than once is harmless.
    """

    def __init__(self, channel: str, callback, canceller: Callable[["Subscription"], None]):
        self.channel = channel
        self.callback = callback
        self._canceller = canceller
        self._lock = threading.Lock()
        self.active = True

    def cancel(self) -> None:
        with self._lock:
            if not self.active:
                return
            self.active = False

        self._canceller(self)

    def __repr__(self):
        state = 'active' if self.active else 'cancelled'
        return f"<Subscription {self.channel} {state}>"


class Broker(ABC):
    """Minimal contract for a broker connection."""

    @abstractmethod
    def open(self) -> None:
        """Establish the underlying connection."""

    @abstractmethod
    def close(self) -> None:
        """Tear down the underlying connection."""

    @abstractmethod
    def publish(self, channel: str, payload: bytes) -> str:
        """Queue *payload* on *channel*; return the broker-level item id."""

    @abstractmethod
    def consume(self, channel: str, handler: Handler) -> Subscription:
        """Hand items queued on *channel* to *handler*, one call per item."""

    @abstractmethod
    def completions(self, channel: str, listener: Listener) -> Subscription:
        """Invoke *listener* for every item completed on *channel*."""

    @abstractmethod
    def lookup(self, channel: str, item_id: str) -> Optional[bytes]:
        """Return the payload of item *item_id*, or None if it is unknown."""

    @property
    def is_open(self) -> bool:
        """Whether the broker connection is currently established."""
        return False

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *exc_info):
        self.close()


def deliver(callbacks: List, argument) -> None:
    """Invoke every callback in *callbacks* with *argument*. A failing
    callback is logged and does not prevent delivery to the others.
    """

    for callback in callbacks:
        try:
            callback(argument)
        except Exception:
            logger.exception("callback %r failed", callback)
