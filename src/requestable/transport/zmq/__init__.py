"""ZeroMQ transport: a :class:`Broker` connection and the :class:`Device`
it connects to."""

from .broker import Broker
from .device import Device, main
