"""ZeroMQ broker connection.

A :class:`Broker` holds one DEALER socket connected to a :class:`Device`.
All socket traffic happens on a single background thread; other threads
hand outgoing frames to it through a queue and an inproc signal socket.
Items handed to this connection for consumption, and completion
notifications, are delivered on separate worker pools so that handlers are
free to issue further broker operations.
"""

from __future__ import annotations

import concurrent.futures
import itertools
import logging
import queue
import threading
import uuid
from typing import Dict, List, Optional

import zmq

from ... import config
from ..base import (
    Broker as BaseBroker,
    Completion,
    Handler,
    Listener,
    Subscription,
    TransportConnectionError,
    TransportError,
    TransportTimeout,
    deliver,
)
from . import framing
from .framing import Frame

logger = logging.getLogger(__name__)

zmq_context = zmq.Context()


class PendingRequest:
    """Connection-side helper that waits for the device's reply."""

    def __init__(self, frame: Frame):
        self.frame = frame
        self.response: Optional[Frame] = None
        self.rep_event = threading.Event()

    @property
    def id(self) -> bytes:
        return self.frame.id

    def wait(self, timeout: Optional[float]) -> bool:
        return self.rep_event.wait(timeout)

    def _complete(self, response: Frame) -> None:
        self.response = response
        self.rep_event.set()


class Broker(BaseBroker):
    """Connection to the broker device at *address*:*port*."""

    timeout = 5.0
    workers = 4

    def __init__(self, address: Optional[str] = None, port: Optional[int] = None):
        self.address = address or config.zmq_host
        self.port = int(port or config.zmq_port)

        self.identity = f"requestable.Broker.{uuid.uuid4().hex}".encode()

        self._open = False
        self._lock = threading.Lock()
        self._signal_lock = threading.Lock()
        self._ids = itertools.count(1)

        self._pending: Dict[bytes, PendingRequest] = {}
        self._consumers: Dict[str, List[Subscription]] = {}
        self._listeners: Dict[str, List[Subscription]] = {}
        self._turn = itertools.count()

        self._thread = None
        self._jobs = None
        self._events = None

    # --- lifecycle ---
    def open(self) -> None:
        if self._open:
            return

        server = f"tcp://{self.address}:{self.port}"

        self.socket = zmq_context.socket(zmq.DEALER)
        self.socket.setsockopt(zmq.LINGER, 0)
        self.socket.identity = self.identity
        self.socket.connect(server)

        self._outbox: "queue.SimpleQueue" = queue.SimpleQueue()

        internal = f"inproc://requestable.Broker:signal:{self.identity.decode()}"
        self._signal_rx = zmq_context.socket(zmq.PAIR)
        self._signal_rx.bind(internal)
        self._signal_tx = zmq_context.socket(zmq.PAIR)
        self._signal_tx.connect(internal)

        self._jobs = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="requestable.zmq.job"
        )
        self._events = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="requestable.zmq.event"
        )

        self.shutdown = False
        self._open = True
        self._thread = threading.Thread(target=self.run, name="requestable.zmq", daemon=True)
        self._thread.start()

        logger.debug("connected to broker device at %s", server)

    def close(self) -> None:
        if not self._open:
            return

        self._post(Frame(framing.BYE))
        self._open = False
        self.shutdown = True
        self._wake()

        if self._thread is not threading.current_thread():
            self._thread.join(timeout=5)

        self._jobs.shutdown(wait=False)
        self._events.shutdown(wait=False)

        with self._lock:
            abandoned = list(self._pending.values())
            self._pending.clear()
            self._consumers.clear()
            self._listeners.clear()

        for pending in abandoned:
            pending._complete(pending.frame.reply(framing.ERR, payload=b"connection closed"))

    @property
    def is_open(self) -> bool:
        return self._open

    # --- broker operations ---
    def publish(self, channel: str, payload: bytes) -> str:
        response = self._request(Frame(framing.PUB, channel, payload=payload))
        return response.item_id

    def lookup(self, channel: str, item_id: str) -> Optional[bytes]:
        response = self._request(Frame(framing.GET, channel, item_id))
        if response.item_id == '':
            return None
        return response.payload

    def consume(self, channel: str, handler: Handler) -> Subscription:
        return self._subscribe(self._consumers, framing.CON, channel, handler, self._cancel_consumer)

    def completions(self, channel: str, listener: Listener) -> Subscription:
        return self._subscribe(self._listeners, framing.LIS, channel, listener, self._cancel_listener)

    # --- internal ---
    def _subscribe(self, table, op, channel, callback, canceller) -> Subscription:
        if not self._open:
            raise TransportConnectionError("broker connection is not open")

        subscription = Subscription(channel, callback, canceller)

        with self._lock:
            subscriptions = table.setdefault(channel, [])
            subscriptions.append(subscription)
            first = len(subscriptions) == 1

        if first:
            try:
                self._request(Frame(op, channel))
            except TransportError:
                canceller(subscription)
                raise

        return subscription

    def _unsubscribe(self, table, op, subscription) -> None:
        channel = subscription.channel

        with self._lock:
            subscriptions = table.get(channel, [])
            if subscription in subscriptions:
                subscriptions.remove(subscription)
            last = not subscriptions
            if last:
                table.pop(channel, None)

        if last and self._open:
            self._post(Frame(op, channel))

    def _cancel_consumer(self, subscription: Subscription) -> None:
        self._unsubscribe(self._consumers, framing.UNC, subscription)

    def _cancel_listener(self, subscription: Subscription) -> None:
        self._unsubscribe(self._listeners, framing.UNL, subscription)

    def _wake(self) -> None:
        # PAIR sockets are not thread-safe; serialize the signal.
        with self._signal_lock:
            if not self._signal_tx.closed:
                self._signal_tx.send(b"")

    def _post(self, frame: Frame) -> None:
        """Queue *frame* for the socket thread, without waiting for a reply."""

        self._outbox.put(frame)
        self._wake()

    def _request(self, frame: Frame) -> Frame:
        """Send *frame* and block until the device replies."""

        if not self._open:
            raise TransportConnectionError("broker connection is not open")

        frame.id = ("%08x" % next(self._ids)).encode()
        pending = PendingRequest(frame)

        with self._lock:
            self._pending[pending.id] = pending

        self._post(frame)

        if not pending.wait(self.timeout):
            with self._lock:
                self._pending.pop(pending.id, None)
            raise TransportTimeout(
                f"{frame.op.decode()} @ {self.address}:{self.port}: no reply in {self.timeout:.2f} sec"
            )

        response = pending.response
        if response.op == framing.ERR:
            raise TransportError(response.payload.decode(errors="replace"))

        return response

    def _handle_outgoing(self) -> None:
        # Clear the signals and send whatever is queued.
        try:
            while True:
                self._signal_rx.recv(flags=zmq.NOBLOCK)
        except zmq.Again:
            pass

        while True:
            try:
                frame = self._outbox.get(block=False)
            except queue.Empty:
                break
            self.socket.send_multipart(framing.to_frames(frame))

    def _handle_incoming(self, parts) -> None:
        try:
            frame = framing.from_frames(parts)
        except TransportError as e:
            logger.warning("discarding message from broker device: %s", e)
            return

        if frame.op in (framing.REP, framing.ERR):
            with self._lock:
                pending = self._pending.pop(frame.id, None)
            if pending is not None:
                pending._complete(frame)
            return

        if frame.op == framing.JOB:
            self._job_incoming(frame)
            return

        if frame.op == framing.EVT:
            with self._lock:
                listeners = [s.callback for s in self._listeners.get(frame.channel, ()) if s.active]
            if listeners:
                self._events.submit(deliver, listeners, Completion(frame.item_id))
            return

        logger.debug("unexpected %r from broker device", frame.op)

    def _job_incoming(self, frame: Frame) -> None:
        with self._lock:
            consumers = [s for s in self._consumers.get(frame.channel, ()) if s.active]

        if not consumers:
            self._post(Frame(framing.NAK, frame.channel, frame.item_id))
            return

        consumer = consumers[next(self._turn) % len(consumers)]
        self._jobs.submit(self._job_main, consumer, frame)

    def _job_main(self, consumer: Subscription, frame: Frame) -> None:
        try:
            consumer.callback(frame.payload)
        except Exception:
            logger.exception("consumer failed on %s item %s", frame.channel, frame.item_id)
        finally:
            if self._open:
                self._post(Frame(framing.DONE, frame.channel, frame.item_id))

    def run(self) -> None:
        poller = zmq.Poller()
        poller.register(self.socket, zmq.POLLIN)
        poller.register(self._signal_rx, zmq.POLLIN)

        while not self.shutdown:
            for active, _flag in poller.poll(1000):
                if active == self._signal_rx:
                    self._handle_outgoing()
                elif active == self.socket:
                    parts = tuple(self.socket.recv_multipart())
                    self._handle_incoming(parts)

        # Flush the goodbye, if any, before closing up.
        self._handle_outgoing()

        self.socket.setsockopt(zmq.LINGER, 100)
        self.socket.close()
        self._signal_rx.close()
        with self._signal_lock:
            self._signal_tx.close()
