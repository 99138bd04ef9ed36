"""RabbitMQ broker connection.

Each channel is a durable-free work queue of the same name: published items
go to that queue and RabbitMQ hands each one to a single consumer. When a
consumer's handler returns, the item is acknowledged and re-published on the
fanout exchange ``<channel>.completed``; every connection listening for
completions binds an exclusive queue to that exchange, keeps the most recent
*retain* completed payloads, and notifies its listeners. :meth:`lookup`
answers from those retained payloads.

pika connections are not thread-safe. All channel operations run on the
connection's own thread; other threads schedule them with
``add_callback_threadsafe`` and wait for the result.
"""

from __future__ import annotations

import collections
import concurrent.futures
import logging
import threading
import uuid
from typing import Dict, List, Optional, Tuple

import pika

from ... import config
from ..base import (
    Broker as BaseBroker,
    Completion,
    Handler,
    Listener,
    Subscription,
    TransportConnectionError,
    TransportTimeout,
    deliver,
)

logger = logging.getLogger(__name__)


def _broker_params(host: str, port: int) -> pika.ConnectionParameters:
    return pika.ConnectionParameters(
        host=host,
        port=port,
        heartbeat=600,
        blocked_connection_timeout=300,
    )


class Broker(BaseBroker):
    """Connection to a RabbitMQ broker, either at *host*:*port* or at the
    AMQP *url*.
    """

    timeout = 10.0
    workers = 4
    retain = 1000

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None, url: Optional[str] = None, retain: Optional[int] = None):
        if url is not None:
            self.params = pika.URLParameters(url)
        else:
            self.params = _broker_params(host or config.amqp_host, int(port or config.amqp_port))

        if retain is not None:
            self.retain = int(retain)

        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._connection = None
        self._channel = None
        self._thread = None
        self._error: Optional[BaseException] = None

        self._declared = set()
        self._listeners: Dict[str, List[Subscription]] = {}
        self._listening: Dict[str, Tuple[str, str]] = {}
        self._completed: Dict[str, "collections.OrderedDict[str, bytes]"] = {}

        self._jobs = None
        self._events = None

    # --- lifecycle ---
    def open(self) -> None:
        if self.is_open:
            return

        self._ready.clear()
        self._error = None
        self._declared.clear()
        self._listening.clear()
        self._jobs = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="requestable.amqp.job"
        )
        self._events = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="requestable.amqp.event"
        )

        self._thread = threading.Thread(target=self._run, name="requestable.amqp", daemon=True)
        self._thread.start()

        if not self._ready.wait(timeout=self.timeout) or self._connection is None:
            raise TransportConnectionError(
                f"not connected to AMQP broker at {self.params.host}:{self.params.port}: {self._error}"
            )

    def close(self) -> None:
        connection = self._connection
        if connection is None:
            return

        try:
            connection.add_callback_threadsafe(self._stop_consuming)
        except Exception as e:
            logger.debug("AMQP connection already gone: %s", e)

        if self._thread is not threading.current_thread():
            self._thread.join(timeout=5)

        self._jobs.shutdown(wait=False)
        self._events.shutdown(wait=False)

    @property
    def is_open(self) -> bool:
        connection = self._connection
        return connection is not None and connection.is_open

    # --- broker operations ---
    def publish(self, channel: str, payload: bytes) -> str:
        item_id = uuid.uuid4().hex

        def publish():
            self._declare(channel)
            self._channel.basic_publish(
                exchange="",
                routing_key=channel,
                properties=pika.BasicProperties(message_id=item_id),
                body=payload,
            )

        self._call(publish)
        return item_id

    def consume(self, channel: str, handler: Handler) -> Subscription:

        def on_message(ch, method, properties, body):
            self._jobs.submit(self._job_main, handler, channel, method.delivery_tag, properties.message_id, body)

        def start():
            self._declare(channel)
            return self._channel.basic_consume(queue=channel, on_message_callback=on_message)

        tag = self._call(start)

        def cancel(subscription):
            if self.is_open:
                self._call(lambda: self._channel.basic_cancel(tag))

        return Subscription(channel, handler, cancel)

    def completions(self, channel: str, listener: Listener) -> Subscription:
        subscription = Subscription(channel, listener, self._cancel_listener)

        with self._lock:
            subscriptions = self._listeners.setdefault(channel, [])
            subscriptions.append(subscription)
            first = len(subscriptions) == 1

        if first:
            self._call(lambda: self._listen(channel))

        return subscription

    def lookup(self, channel: str, item_id: str) -> Optional[bytes]:
        with self._lock:
            try:
                return self._completed[channel].get(item_id)
            except KeyError:
                return None

    # --- internal, any thread ---
    def _call(self, function):
        """Run *function* on the connection thread and return its result."""

        connection = self._connection
        if connection is None or not connection.is_open:
            raise TransportConnectionError("AMQP connection is not open")

        if threading.current_thread() is self._thread:
            return function()

        future: concurrent.futures.Future = concurrent.futures.Future()

        def run():
            try:
                future.set_result(function())
            except Exception as e:
                future.set_exception(e)

        connection.add_callback_threadsafe(run)

        try:
            return future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError:
            raise TransportTimeout(f"AMQP operation took longer than {self.timeout:.2f} sec")

    def _cancel_listener(self, subscription: Subscription) -> None:
        with self._lock:
            subscriptions = self._listeners.get(subscription.channel, [])
            if subscription not in subscriptions:
                return

            subscriptions.remove(subscription)
            last = not subscriptions
            if last:
                del self._listeners[subscription.channel]

        if last and self.is_open:
            self._call(lambda: self._unlisten(subscription.channel))

    def _job_main(self, handler, channel, delivery_tag, item_id, body) -> None:
        try:
            handler(body)
        except Exception:
            logger.exception("consumer failed on %s item %s", channel, item_id)

        def complete():
            self._channel.basic_ack(delivery_tag=delivery_tag)
            self._channel.basic_publish(
                exchange=channel + ".completed",
                routing_key="",
                properties=pika.BasicProperties(message_id=item_id),
                body=body,
            )

        if self.is_open:
            self._connection.add_callback_threadsafe(complete)

    # --- internal, connection thread only ---
    def _run(self) -> None:
        try:
            self._connection = pika.BlockingConnection(self.params)
            self._channel = self._connection.channel()
            self._channel.basic_qos(prefetch_count=self.workers)
        except Exception as e:
            self._error = e
            self._connection = None
            self._ready.set()
            return

        self._ready.set()

        try:
            self._channel.start_consuming()
        finally:
            if self._connection.is_open:
                self._connection.close()

    def _stop_consuming(self) -> None:
        self._channel.stop_consuming()

    def _declare(self, channel: str) -> None:
        if channel in self._declared:
            return

        self._channel.queue_declare(queue=channel, durable=False)
        self._channel.exchange_declare(exchange=channel + ".completed", exchange_type="fanout")
        self._declared.add(channel)

    def _listen(self, channel: str) -> None:
        if channel in self._listening:
            return

        self._declare(channel)

        result = self._channel.queue_declare(queue="", exclusive=True)
        queue = result.method.queue
        self._channel.queue_bind(queue=queue, exchange=channel + ".completed")

        def on_completed(ch, method, properties, body):
            item_id = properties.message_id

            with self._lock:
                retained = self._completed.setdefault(channel, collections.OrderedDict())
                retained[item_id] = body
                while len(retained) > self.retain:
                    retained.popitem(last=False)

                listeners = [s.callback for s in self._listeners.get(channel, ()) if s.active]

            if listeners:
                self._events.submit(deliver, listeners, Completion(item_id))

        tag = self._channel.basic_consume(queue=queue, on_message_callback=on_completed, auto_ack=True)
        self._listening[channel] = (tag, queue)

    def _unlisten(self, channel: str) -> None:
        # A listener may have arrived since the last one left.
        with self._lock:
            if self._listeners.get(channel):
                return

        listening = self._listening.pop(channel, None)
        if listening is None:
            return

        tag, queue = listening
        self._channel.basic_cancel(tag)
        self._channel.queue_delete(queue=queue)
