import collections
import itertools
import pytest

import requestable
import requestable.transport.local
import requestable.transport.zmq

from requestable.transport import base


class RecordingBroker(base.Broker):
    """ A broker that does nothing on its own: published payloads are
        recorded, and lookups are answered from the *items* dictionary.
        Tests drive completions by hand. Naming an operation in *refuse*
        makes its next call raise TransportTimeout.
    """

    def __init__(self):
        self.published = list()
        self.items = dict()
        self.consumers = list()
        self.listeners = list()
        self.opened = False
        self.ids = itertools.count(1)
        self.refuse = set()
        self.calls = collections.Counter()

    def open(self):
        self.opened = True

    def close(self):
        self.opened = False

    @property
    def is_open(self):
        return self.opened

    def publish(self, channel, payload):
        item_id = str(next(self.ids))
        self.published.append((channel, item_id, payload))
        return item_id

    def _attempt(self, operation):
        self.calls[operation] += 1
        if operation in self.refuse:
            self.refuse.discard(operation)
            raise base.TransportTimeout(operation + ' timed out')

    def consume(self, channel, handler):
        self._attempt('consume')
        subscription = base.Subscription(channel, handler, self.consumers.remove)
        self.consumers.append(subscription)
        return subscription

    def completions(self, channel, listener):
        self._attempt('completions')
        subscription = base.Subscription(channel, listener, self.listeners.remove)
        self.listeners.append(subscription)
        return subscription

    def lookup(self, channel, item_id):
        return self.items.get(item_id)

    def complete(self, item_id, payload):
        """ Make *payload* available as *item_id* and notify every listener.
        """

        self.items[item_id] = payload
        for listener in list(self.listeners):
            listener.callback(base.Completion(item_id))


# end of class RecordingBroker



@pytest.fixture
def recording():
    broker = RecordingBroker()
    broker.open()
    yield broker
    broker.close()


@pytest.fixture
def broker():
    broker = requestable.transport.local.Broker()
    broker.open()
    yield broker
    broker.close()


@pytest.fixture
def server(broker):
    server = requestable.Server()
    server.start(broker)
    yield server
    server.stop()


@pytest.fixture
def client(broker):
    client = requestable.Client(timeout=5, sweep=0.05)
    client.start(broker)
    yield client
    client.stop()


@pytest.fixture
def device():
    device = requestable.transport.zmq.Device('127.0.0.1')
    device.start()
    yield device
    device.stop()


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
