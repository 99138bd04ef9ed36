""" Correlation tests against a broker that does nothing by itself: every
    completion is delivered by hand, in whatever order the test chooses.
"""

import threading
import time
import pytest
import requestable

from requestable.protocol import fields, wire
from requestable.protocol.message import Outcome, ResponseEnvelope
from requestable.transport.base import Completion


def respond(broker, item_id, request_id, outcome):
    payload = wire.pack(ResponseEnvelope(request_id, outcome))
    broker.complete(item_id, payload)


def issued(broker):
    """ Return the request envelopes published so far, oldest first.
    """

    return [wire.unpack_request(payload) for channel, item_id, payload in broker.published]


def test_not_started(recording):

    client = requestable.Client()
    assert not client.started

    with pytest.raises(requestable.NotStarted) as caught:
        client.get('answer')

    assert caught.value.error == fields.NOT_STARTED
    assert isinstance(caught.value, requestable.RequestError)

    with pytest.raises(requestable.NotStarted):
        client.post('answer', 1, 2)

    with pytest.raises(requestable.NotStarted):
        client.issue('answer', 'GET')

    assert client.pending() == 0
    assert recording.published == []


def test_started(recording):

    client = requestable.Client()
    client.start(recording)

    assert client.started
    assert len(recording.consumers) == 1
    assert len(recording.listeners) == 1

    # Starting twice does not subscribe twice.
    client.start(recording)
    assert len(recording.listeners) == 1

    client.stop()
    assert not client.started
    assert recording.consumers == []
    assert recording.listeners == []

    # The client did not open this broker, so it leaves it open.
    assert recording.is_open

    with pytest.raises(requestable.NotStarted):
        client.get('answer')


def test_request_envelope(recording):

    client = requestable.Client(timeout=None)
    client.start(recording)

    call = client.issue('add', 'POST', (1, 2))

    assert len(recording.published) == 1
    channel, item_id, payload = recording.published[0]
    assert channel == 'requestable:request'

    request = wire.unpack_request(payload)
    assert request.id == call.id
    assert request.function_name == 'add'
    assert request.method == 'POST'
    assert request.args == (1, 2)

    assert client.pending() == 1
    assert not call.poll()

    client.stop()


def test_success(recording):

    client = requestable.Client(timeout=None)
    client.start(recording)

    call = client.issue('answer', 'GET')
    respond(recording, '100', call.id, Outcome.success(42))

    assert call.poll()
    assert call.wait() == 42
    assert client.pending() == 0

    client.stop()


def test_failure(recording):

    client = requestable.Client(timeout=None)
    client.start(recording)

    call = client.issue('answer', 'GET')
    respond(recording, '100', call.id, Outcome.failure(fields.REQUESTABLE_NOT_FOUND))

    with pytest.raises(requestable.RequestError) as caught:
        call.wait()

    assert caught.value.error == 'REQUESTABLE_NOT_FOUND'
    assert str(caught.value) == 'REQUESTABLE_NOT_FOUND'
    assert not isinstance(caught.value, requestable.RequestTimeout)

    client.stop()


def test_none_value(recording):

    client = requestable.Client(timeout=None)
    client.start(recording)

    call = client.issue('nothing', 'GET')
    respond(recording, '100', call.id, Outcome.success(None))

    assert call.wait() is None

    client.stop()


def test_interleaved(recording):
    """ Responses arrive in the opposite order of the requests; each call
        still settles with its own outcome.
    """

    client = requestable.Client(timeout=None)
    client.start(recording)

    calls = list()
    for number in range(10):
        calls.append(client.issue('echo', 'GET', (number,)))

    requests = issued(recording)
    requests.reverse()

    for number, request in enumerate(requests):
        respond(recording, str(1000 + number), request.id, Outcome.success(request.args[0]))

    for number, call in enumerate(calls):
        assert call.wait() == number

    assert client.pending() == 0
    client.stop()


def test_only_matching_call_settles(recording):

    client = requestable.Client(timeout=None)
    client.start(recording)

    first = client.issue('first', 'GET')
    second = client.issue('second', 'GET')

    respond(recording, '100', second.id, Outcome.success('second'))

    assert second.poll()
    assert not first.poll()
    assert client.pending() == 1

    respond(recording, '101', first.id, Outcome.success('first'))
    assert first.wait() == 'first'
    assert second.wait() == 'second'

    client.stop()


def test_unknown_completions_ignored(recording):

    client = requestable.Client(timeout=None)
    client.start(recording)

    call = client.issue('answer', 'GET')

    # An identity this client never issued.
    respond(recording, '100', 'f' * 32, Outcome.success('not yours'))

    # A completion for an item the broker has no record of.
    client._on_completed(Completion('404'))

    # A completed item that is not a response envelope at all.
    recording.complete('101', b'{"something": "else"}')
    recording.complete('102', b'garbage')

    assert not call.poll()
    assert client.pending() == 1

    respond(recording, '103', call.id, Outcome.success(42))
    assert call.wait() == 42

    client.stop()


def test_settles_once(recording):

    client = requestable.Client(timeout=None)
    client.start(recording)

    call = client.issue('answer', 'GET')

    respond(recording, '100', call.id, Outcome.success(1))
    respond(recording, '101', call.id, Outcome.success(2))
    respond(recording, '102', call.id, Outcome.failure('late'))

    assert call.wait() == 1
    assert call.outcome.value == 1

    client.stop()


def test_ids_unique(recording):

    client = requestable.Client(timeout=None)
    client.start(recording)

    ids = set()
    for number in range(100):
        ids.add(client.issue('echo', 'GET', (number,)).id)

    assert len(ids) == 100
    assert client.pending() == 100

    client.stop()


def test_unencodable_arguments(recording):

    client = requestable.Client(timeout=None)
    client.start(recording)

    with pytest.raises(TypeError):
        client.issue('store', 'POST', (object(),))

    assert recording.published == []
    assert client.pending() == 0

    client.stop()


def test_publish_failure(recording):

    def refuse(channel, payload):
        raise requestable.transport.TransportConnectionError('broker went away')

    client = requestable.Client(timeout=None)
    client.start(recording)
    recording.publish = refuse

    with pytest.raises(requestable.transport.TransportConnectionError):
        client.get('answer')

    assert client.pending() == 0
    client.stop()


def test_timeout(recording):

    client = requestable.Client(timeout=0.1, sweep=10)
    client.start(recording)

    start = time.time()
    with pytest.raises(requestable.RequestTimeout) as caught:
        client.get('answer')

    elapsed = time.time() - start
    assert elapsed >= 0.09
    assert elapsed < 5
    assert caught.value.error == fields.TIMEOUT
    assert client.pending() == 0

    # A response arriving after the deadline is ignored.
    request = issued(recording)[0]
    respond(recording, '100', request.id, Outcome.success(42))

    client.stop()


def test_per_call_timeout(recording):

    client = requestable.Client(timeout=None)
    client.start(recording)

    call = client.issue('answer', 'GET', timeout=0.05)
    assert call.deadline is not None

    with pytest.raises(requestable.RequestTimeout):
        call.wait()

    unlimited = client.issue('answer', 'GET')
    assert unlimited.deadline is None
    client.stop()


def test_reaper(recording):
    """ Calls nobody waits on are still removed once their deadline passes.
    """

    client = requestable.Client(timeout=0.05, sweep=0.02)
    client.start(recording)

    calls = [client.issue('answer', 'GET') for number in range(5)]
    assert client.pending() == 5

    time.sleep(0.5)

    assert client.pending() == 0
    for call in calls:
        assert call.poll()
        assert call.outcome.error == fields.TIMEOUT
        with pytest.raises(requestable.RequestTimeout):
            call.wait()

    client.stop()


def test_stop_fails_outstanding(recording):

    client = requestable.Client(timeout=None)
    client.start(recording)

    call = client.issue('answer', 'GET')
    client.stop()

    assert call.poll()
    with pytest.raises(requestable.Stopped) as caught:
        call.wait()

    assert caught.value.error == fields.STOPPED


def test_wait_from_another_thread(recording):

    client = requestable.Client(timeout=None)
    client.start(recording)

    call = client.issue('answer', 'GET')
    results = list()

    def waiter():
        results.append(call.wait())

    thread = threading.Thread(target=waiter)
    thread.start()

    time.sleep(0.05)
    assert results == []

    respond(recording, '100', call.id, Outcome.success('done'))
    thread.join(timeout=5)

    assert results == ['done']
    client.stop()


def test_owned_broker():

    client = requestable.Client()
    broker = requestable.transport.local.Broker()

    client.start(broker)
    assert broker.is_open
    assert client.owned

    client.stop()
    assert not broker.is_open


def test_failed_start_leaves_nothing_behind(recording):
    """ A start that fails partway cancels what it subscribed, so a retry
        ends up with exactly one of each subscription.
    """

    recording.refuse.add('completions')

    client = requestable.Client(timeout=None)

    with pytest.raises(requestable.transport.TransportTimeout):
        client.start(recording)

    assert not client.started
    assert recording.consumers == []
    assert recording.listeners == []

    client.start(recording)

    assert client.started
    assert len(recording.consumers) == 1
    assert len(recording.listeners) == 1

    client.stop()


def test_failed_start_closes_opened_broker(recording):

    recording.close()
    recording.refuse.add('consume')

    client = requestable.Client(timeout=None)

    with pytest.raises(requestable.transport.TransportTimeout):
        client.start(recording)

    assert not recording.is_open
    assert not client.owned
    assert client.broker is None


def test_prefix(recording):

    client = requestable.Client(prefix='telescope', timeout=None)
    client.start(recording)

    assert client.request_channel == 'telescope:request'
    assert client.response_channel == 'telescope:response'

    client.issue('answer', 'GET')
    assert recording.published[0][0] == 'telescope:request'
    assert recording.listeners[0].channel == 'telescope:response'

    client.stop()


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
