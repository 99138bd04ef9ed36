""" End-to-end calls: a client and a server talking through the in-process
    broker.
"""

import asyncio
import concurrent.futures
import datetime
import threading
import time
import uuid
import pytest
import requestable

from requestable.protocol import fields


def test_get(server, client):

    server.register(lambda: 42, 'answer', 'GET')

    assert client.get('answer') == 42
    assert client.pending() == 0


def test_post(server, client):

    stored = dict()

    def store(key, value):
        stored[key] = value
        return True

    server.register(store, 'store', 'POST')

    assert client.post('store', 'focus', 12.5) is True
    assert stored == {'focus': 12.5}


def test_request(server, client):

    server.register(lambda first, second: first * second, 'multiply', 'GET')

    assert client.request('multiply', 'GET', 6, 7) == 42
    assert client.request('multiply', requestable.GET, 2, 3) == 6


def test_structured_values(server, client):

    def describe(name, settings):
        return {'name': name, 'settings': settings, 'items': [1, 2.5, None, False]}

    server.register(describe, 'describe', 'GET')

    result = client.get('describe', 'camera', {'gain': 2, 'binning': [1, 1]})
    assert result == {
        'name': 'camera',
        'settings': {'gain': 2, 'binning': [1, 1]},
        'items': [1, 2.5, None, False],
    }


def test_none_value(server, client):

    server.register(lambda: None, 'nothing', 'POST')

    assert client.post('nothing') is None


def test_not_found(server, client):

    server.register(lambda: 42, 'answer', 'POST')

    with pytest.raises(requestable.RequestError) as caught:
        client.get('answer')

    assert caught.value.error == fields.REQUESTABLE_NOT_FOUND

    with pytest.raises(requestable.RequestError) as caught:
        client.get('nonexistent')

    assert caught.value.error == 'REQUESTABLE_NOT_FOUND'


def test_invalid_method(server, client):

    server.register(lambda: 42, 'answer', 'GET')

    with pytest.raises(requestable.RequestError) as caught:
        client.request('answer', 'DELETE')

    assert caught.value.error == fields.INVALID_METHOD


def test_errors(server, client):

    def fail():
        raise ValueError('filter wheel is stuck')

    server.register(fail, 'hidden', 'POST')
    server.register(fail, 'echoed', 'POST', echo_errors=True)

    with pytest.raises(requestable.RequestError) as caught:
        client.post('hidden')

    assert caught.value.error == fields.DEFAULT_ERROR

    with pytest.raises(requestable.RequestError) as caught:
        client.post('echoed')

    assert caught.value.error == 'filter wheel is stuck'


def test_unencodable_value(server, client):

    server.register(lambda: object(), 'hidden', 'GET')
    server.register(lambda: object(), 'echoed', 'GET', echo_errors=True)

    with pytest.raises(requestable.RequestError) as caught:
        client.get('hidden')

    assert caught.value.error == fields.DEFAULT_ERROR

    with pytest.raises(requestable.RequestError) as caught:
        client.get('echoed')

    assert caught.value.error != fields.DEFAULT_ERROR


def test_bytes_value_refused(server, client):

    server.register(lambda: b'abc', 'raw', 'GET')
    server.register(lambda: b'abc', 'raw', 'POST', echo_errors=True)

    with pytest.raises(requestable.RequestError) as caught:
        client.get('raw')

    assert caught.value.error == fields.DEFAULT_ERROR

    with pytest.raises(requestable.RequestError) as caught:
        client.post('raw')

    assert 'bytes' in caught.value.error


def test_datetime_argument_refused(server, client):

    received = list()
    server.register(received.append, 'record', 'POST')

    with pytest.raises(TypeError):
        client.post('record', datetime.datetime(2024, 1, 2, 3, 4, 5))

    assert client.pending() == 0

    client.post('record', '2024-01-02T03:04:05')
    assert received == ['2024-01-02T03:04:05']


def test_registered_after_start(server, client):

    with pytest.raises(requestable.RequestError):
        client.get('late')

    server.register(lambda: 'here', 'late', 'GET')
    assert client.get('late') == 'here'


def test_decorator(server, client):

    @server.requestable('GET')
    def exposure(seconds):
        return seconds * 1000

    assert client.get('exposure', 2) == 2000


def test_concurrent_calls(server, client):
    """ Many calls in flight at once, finishing out of order, each receive
        their own response.
    """

    def delayed(number):
        time.sleep((10 - number % 10) * 0.005)
        return number

    server.register(delayed, 'delayed', 'GET')

    calls = [client.issue('delayed', 'GET', (number,)) for number in range(40)]

    for number, call in enumerate(calls):
        assert call.wait() == number

    assert client.pending() == 0


def test_many_threads(server, client):

    server.register(lambda number: number * 2, 'double', 'GET')

    with concurrent.futures.ThreadPoolExecutor(max_workers=8) as executor:
        results = list(executor.map(lambda number: client.get('double', number), range(50)))

    assert results == [number * 2 for number in range(50)]


def test_two_clients(broker, server):

    server.register(lambda name: 'hello ' + name, 'greet', 'GET')

    first = requestable.Client(timeout=5)
    second = requestable.Client(timeout=5)
    first.start(broker)
    second.start(broker)

    first_call = first.issue('greet', 'GET', ('first',))
    second_call = second.issue('greet', 'GET', ('second',))

    assert first_call.wait() == 'hello first'
    assert second_call.wait() == 'hello second'

    first.stop()
    second.stop()


def test_timeout(broker, server):

    release = threading.Event()
    server.register(lambda: release.wait(5), 'slow', 'GET')

    client = requestable.Client(timeout=0.1, sweep=0.05)
    client.start(broker)

    with pytest.raises(requestable.RequestTimeout) as caught:
        client.get('slow')

    assert caught.value.error == fields.TIMEOUT
    release.set()

    # The late response is ignored and does not disturb later calls.
    server.register(lambda: 42, 'answer', 'GET')
    client.timeout = 5
    assert client.get('answer') == 42

    client.stop()


def test_prefixes(broker):

    north = requestable.Server(prefix='north')
    south = requestable.Server(prefix='south')
    north.register(lambda: 'north', 'where', 'GET')
    south.register(lambda: 'south', 'where', 'GET')
    north.start(broker)
    south.start(broker)

    client = requestable.Client(prefix='south', timeout=5)
    client.start(broker)

    assert client.get('where') == 'south'

    client.stop()
    north.stop()
    south.stop()


def test_shared_broker():

    prefix = 'test-' + uuid.uuid4().hex

    server = requestable.Server(prefix=prefix)
    server.register(lambda: 'shared', 'where', 'GET')
    server.start('local://')

    with requestable.Client(prefix=prefix, timeout=5) as client:
        client.start('local://')
        assert client.get('where') == 'shared'

    server.stop()

    # Neither side opened the shared broker, so neither closed it.
    assert requestable.transport.shared().is_open


def test_server_request(server):

    server.register(lambda first, second: first + second, 'add', 'GET')

    outcome = server.request('add', 'GET', 1, 2)
    assert outcome.ok
    assert outcome.value == 3

    assert server.request('add', 'POST').error == fields.REQUESTABLE_NOT_FOUND


def test_server_request_from_async_code():

    async def answer():
        await asyncio.sleep(0.01)
        return 42

    server = requestable.Server()
    server.register(answer, 'answer', 'GET', echo_errors=True)

    async def main():
        return server.request('answer', 'GET')

    outcome = asyncio.run(main())
    assert outcome.error is None
    assert outcome.value == 42


def test_server_restart(broker):

    server = requestable.Server()
    server.register(lambda: 42, 'answer', 'GET')

    server.start(broker)
    server.start(broker)
    assert server.started

    server.stop()
    assert not server.started
    assert broker.is_open

    server.start(broker)

    with requestable.Client(timeout=5) as client:
        client.start(broker)
        assert client.get('answer') == 42

    server.stop()


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
