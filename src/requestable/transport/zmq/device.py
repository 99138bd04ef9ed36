"""ZeroMQ broker device.

The device is the broker process for the ZeroMQ transport: it holds the
items published on each channel, hands each one to a single consumer, and
tells every listener on the channel when an item completes. It keeps no
state on disk; items assigned to a connection that goes away are lost.

Run it with the ``requestable-broker`` console script, or embed it::

    device = Device(port=10179)
    device.start()
"""

from __future__ import annotations

import argparse
import collections
import itertools
import logging
import threading
from typing import Deque, Dict, List, Optional

import zmq

from ... import config
from ..base import TransportError
from . import framing
from .framing import Frame

logger = logging.getLogger(__name__)

zmq_context = zmq.Context()


class _Channel:
    """Book-keeping for a single named channel."""

    def __init__(self, name: str):
        self.name = name
        self.items: Dict[str, bytes] = {}
        self.assigned: Dict[str, bytes] = {}
        self.backlog: Deque[str] = collections.deque()
        self.completed: Deque[str] = collections.deque()
        self.consumers: List[bytes] = []
        self.listeners: List[bytes] = []
        self.turn = itertools.count()


class Device:
    """Receive broker operations via a ZeroMQ ROUTER socket and act on them.
    If no *port* is given an available one is chosen; the chosen port is
    available as :attr:`port`. The most recent *retain* completed items on
    each channel remain available for lookup.

    :ivar port: The port on which this device is listening.
    """

    retain = 1000

    def __init__(self, address: str = '*', port: Optional[int] = None, retain: Optional[int] = None):
        self.address = address

        if retain is not None:
            self.retain = int(retain)

        self.socket = zmq_context.socket(zmq.ROUTER)
        self.socket.setsockopt(zmq.LINGER, 0)

        try:
            if port is None:
                self.port = self.socket.bind_to_random_port(f"tcp://{address}")
            else:
                self.port = int(port)
                self.socket.bind(f"tcp://{address}:{self.port}")
        except zmq.ZMQError as exc:
            self.socket.close()
            raise TransportError(f"cannot listen on {address}:{port}: {exc}") from exc

        self._channels: Dict[str, _Channel] = {}
        self._ids = itertools.count(1)

        self.shutdown = False
        self.thread = None

        self._handlers = {
            framing.PUB: self._op_publish,
            framing.GET: self._op_lookup,
            framing.CON: self._op_consume,
            framing.UNC: self._op_unconsume,
            framing.LIS: self._op_listen,
            framing.UNL: self._op_unlisten,
            framing.DONE: self._op_done,
            framing.NAK: self._op_nak,
            framing.BYE: self._op_bye,
        }

    def start(self) -> None:
        """Run the device on a background thread."""

        self.thread = threading.Thread(target=self.run, name="requestable.Device", daemon=True)
        self.thread.start()

    def stop(self) -> None:
        self.shutdown = True
        if self.thread is not None and self.thread is not threading.current_thread():
            self.thread.join(timeout=5)

    def run(self) -> None:
        poller = zmq.Poller()
        poller.register(self.socket, zmq.POLLIN)

        logger.info("broker device listening on %s:%d", self.address, self.port)

        while not self.shutdown:
            for active, _flag in poller.poll(100):
                if active == self.socket:
                    parts = self.socket.recv_multipart()
                    self._incoming(parts)

        self.socket.close()

    # --- internal ---
    def _channel(self, name: str) -> _Channel:
        try:
            state = self._channels[name]
        except KeyError:
            state = _Channel(name)
            self._channels[name] = state
        return state

    def _send(self, frame: Frame) -> None:
        self.socket.send_multipart(framing.to_frames(frame))

    def _incoming(self, parts) -> None:
        try:
            frame = framing.from_frames(parts, routed=True)
        except TransportError as e:
            logger.warning("discarding message: %s", e)
            return

        logger.debug("%s %s %s", frame.op.decode(), frame.channel, frame.item_id)

        try:
            handler = self._handlers[frame.op]
        except KeyError:
            self._send(frame.reply(framing.ERR, payload=b"unknown operation " + frame.op))
            return

        try:
            handler(frame)
        except Exception as e:
            logger.exception("%s on %s failed", frame.op.decode(), frame.channel)
            self._send(frame.reply(framing.ERR, payload=str(e).encode()))

    def _route(self, state: _Channel, item_id: str, avoid: Optional[bytes] = None) -> None:
        """Assign *item_id* to the next consumer, or hold it in the backlog
        until a consumer arrives. *avoid* is skipped when there is any
        other choice.
        """

        consumers = state.consumers
        if avoid is not None and len(consumers) > 1:
            consumers = [ident for ident in consumers if ident != avoid]

        if not consumers:
            state.backlog.append(item_id)
            return

        ident = consumers[next(state.turn) % len(consumers)]
        state.assigned[item_id] = ident
        payload = state.items.get(item_id, b'')
        self._send(Frame(framing.JOB, state.name, item_id, payload, prefix=(ident,)))

    def _op_publish(self, frame: Frame) -> None:
        state = self._channel(frame.channel)
        item_id = str(next(self._ids))
        state.items[item_id] = frame.payload

        self._send(frame.reply(item_id=item_id))
        self._route(state, item_id)

    def _op_lookup(self, frame: Frame) -> None:
        state = self._channels.get(frame.channel)
        payload = None
        if state is not None:
            payload = state.items.get(frame.item_id)

        if payload is None:
            self._send(frame.reply(item_id=''))
        else:
            self._send(frame.reply(payload=payload))

    def _op_consume(self, frame: Frame) -> None:
        state = self._channel(frame.channel)
        ident = frame.prefix[0]
        if ident not in state.consumers:
            state.consumers.append(ident)

        self._send(frame.reply())

        backlog = state.backlog
        state.backlog = collections.deque()
        for item_id in backlog:
            self._route(state, item_id)

    def _op_unconsume(self, frame: Frame) -> None:
        self._forget_consumer(self._channel(frame.channel), frame.prefix[0])
        self._send(frame.reply())

    def _op_listen(self, frame: Frame) -> None:
        state = self._channel(frame.channel)
        ident = frame.prefix[0]
        if ident not in state.listeners:
            state.listeners.append(ident)
        self._send(frame.reply())

    def _op_unlisten(self, frame: Frame) -> None:
        state = self._channel(frame.channel)
        ident = frame.prefix[0]
        if ident in state.listeners:
            state.listeners.remove(ident)
        self._send(frame.reply())

    def _op_done(self, frame: Frame) -> None:
        state = self._channel(frame.channel)
        item_id = frame.item_id
        state.assigned.pop(item_id, None)

        state.completed.append(item_id)
        while len(state.completed) > self.retain:
            expired = state.completed.popleft()
            state.items.pop(expired, None)

        for ident in state.listeners:
            self._send(Frame(framing.EVT, state.name, item_id, prefix=(ident,)))

    def _op_nak(self, frame: Frame) -> None:
        state = self._channel(frame.channel)
        state.assigned.pop(frame.item_id, None)
        self._route(state, frame.item_id, avoid=frame.prefix[0])

    def _op_bye(self, frame: Frame) -> None:
        ident = frame.prefix[0]
        for state in self._channels.values():
            self._forget_consumer(state, ident)
            if ident in state.listeners:
                state.listeners.remove(ident)

    def _forget_consumer(self, state: _Channel, ident: bytes) -> None:
        if ident not in state.consumers:
            return

        state.consumers.remove(ident)

        # Anything handed to this consumer and not yet done goes to another.
        orphans = [item_id for item_id, owner in state.assigned.items() if owner == ident]
        for item_id in orphans:
            del state.assigned[item_id]
            self._route(state, item_id)


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Broker device for the requestable ZeroMQ transport.")
    parser.add_argument('--address', default='*', help="interface to listen on (default: all)")
    parser.add_argument('--port', type=int, default=config.zmq_port, help="port to listen on (default: %(default)s)")
    parser.add_argument('--retain', type=int, default=Device.retain, help="completed items kept per channel for lookup")
    parser.add_argument('-v', '--verbose', action='store_true', help="log every operation")
    arguments = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if arguments.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    device = Device(arguments.address, arguments.port, arguments.retain)

    try:
        device.run()
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
