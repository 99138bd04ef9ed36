""" The calling side of a requestable exchange. A :class:`Client` publishes
    request envelopes to the request channel and watches the completion
    stream of the response channel for the matching responses.

    Every call is identified by a freshly minted correlation identity. The
    outstanding calls are held in a dictionary keyed by that identity; a
    single completion subscription, established in :func:`Client.start`,
    looks up each completed response and settles the one call it belongs
    to. Responses for identities this client is not waiting on (because
    they belong to another client, or were already settled or expired) are
    ignored.
"""

import logging
import threading
import time

from . import config
from . import transport
from .errors import NotStarted, RequestError, RequestTimeout, Stopped
from .protocol import fields
from .protocol import wire
from .protocol.message import Method, Outcome, ProtocolError, RequestEnvelope

logger = logging.getLogger(__name__)

_default = object()


class PendingCall:
    """ Client-side record of one outstanding call. :func:`wait` blocks
        until the call is settled, then either returns the remote function's
        value or raises :class:`requestable.errors.RequestError` carrying
        the error string.

        A call is settled exactly once: by its response, by reaching its
        deadline, or by the client being stopped.

        :ivar id: The correlation identity of this call.
        :ivar deadline: A :func:`time.monotonic` timestamp, or None.
        :ivar outcome: The settled :class:`Outcome`, None until settled.
    """

    def __init__(self, client, envelope, deadline=None):

        self.client = client
        self.id = envelope.id
        self.method = envelope.method
        self.function_name = envelope.function_name
        self.deadline = deadline

        self.outcome = None
        self.exception = None
        self.event = threading.Event()


    def __repr__(self):
        if self.outcome is None:
            state = 'outstanding'
        elif self.outcome.ok:
            state = 'succeeded'
        else:
            state = 'failed'

        return '<PendingCall %s@%s#%s %s>' % (self.function_name, self.method, self.id, state)


    def _settle(self, outcome, error_class=RequestError):
        """ Record the *outcome* and release anyone blocked in :func:`wait`.
            Only the code path that removed this call from the client's
            pending table may invoke this method.
        """

        if outcome.error is not None:
            self.exception = error_class(outcome.error)

        self.outcome = outcome
        self.event.set()


    def expired(self, now=None):
        if self.deadline is None:
            return False

        if now is None:
            now = time.monotonic()

        return now >= self.deadline


    def poll(self):
        """ Return True if the call is settled, otherwise return False.
        """

        return self.event.is_set()


    def wait(self):
        """ Block until the call is settled. Returns the value on success,
            raises :class:`RequestError` (or one of its subclasses) with
            the error string on failure.
        """

        if self.deadline is None:
            self.event.wait()
        else:
            remaining = self.deadline - time.monotonic()
            if not self.event.wait(max(remaining, 0)):
                self.client._expire(self)

            # Either this thread expired the call, or a response claimed it
            # first and is in the middle of settling it.
            self.event.wait()

        if self.exception is not None:
            raise self.exception

        return self.outcome.value


# end of class PendingCall



class Client:
    """ Issue calls to functions registered with a remote
        :class:`requestable.Server`. The client must be started with a broker
        connection before any call is issued::

            client = requestable.Client()
            client.start(broker)
            client.get('temperature', 'north')

        The *prefix* selects the channel names, and must match the server's.
        Each call expires after *timeout* seconds; None disables the deadline.

        :ivar timeout: The default per-call deadline in seconds.
        :ivar sweep: Seconds between sweeps for expired calls.
    """

    timeout = config.timeout
    sweep = config.sweep

    def __init__(self, prefix=None, timeout=_default, sweep=None):

        if timeout is not _default:
            self.timeout = timeout
        if sweep is not None:
            self.sweep = sweep

        self.request_channel = config.request_channel(prefix)
        self.response_channel = config.response_channel(prefix)

        self.broker = None
        self.owned = False

        self._drain = None
        self._completions = None
        self._pending = dict()
        self._lock = threading.Lock()

        self._stopping = threading.Event()
        self._reaper = None


    def __enter__(self):
        return self


    def __exit__(self, *exc_info):
        self.stop()


    @property
    def started(self):
        """ True once the request channel, the response channel, and the
            completion subscription are all established.
        """

        if self.broker is None or self._drain is None or self._completions is None:
            return False

        return self.broker.is_open


    def pending(self):
        """ Return the number of calls currently outstanding.
        """

        with self._lock:
            return len(self._pending)


    def start(self, broker=None):
        """ Attach to a *broker*: either a :class:`transport.base.Broker`
            instance or a URL understood by :func:`transport.connect`. A
            broker created or opened here is closed again by :func:`stop`.
        """

        if self.started:
            return

        if broker is None or isinstance(broker, str):
            broker = transport.connect(broker)

        owned = False
        if not broker.is_open:
            broker.open()
            owned = True

        self.broker = broker
        drain = None

        # Responses must be consumed for the broker to complete them; any
        # client will do, the payload is retrieved later via lookup().

        try:
            drain = broker.consume(self.response_channel, _discard)
            completions = broker.completions(self.response_channel, self._on_completed)
        except Exception:
            if drain is not None:
                drain.cancel()
            self.broker = None
            if owned:
                broker.close()
            raise

        self.owned = owned
        self._drain = drain
        self._completions = completions

        self._stopping.clear()
        self._reaper = threading.Thread(target=self._reaper_main, name='requestable.Client.reaper', daemon=True)
        self._reaper.start()

        logger.debug("client started on %s/%s", self.request_channel, self.response_channel)


    def stop(self):
        """ Release the broker subscriptions. Calls still outstanding are
            failed with STOPPED.
        """

        if self._completions is not None:
            self._completions.cancel()
            self._completions = None

        if self._drain is not None:
            self._drain.cancel()
            self._drain = None

        self._stopping.set()
        if self._reaper is not None and self._reaper is not threading.current_thread():
            self._reaper.join(timeout=5)
        self._reaper = None

        with self._lock:
            abandoned = list(self._pending.values())
            self._pending.clear()

        for call in abandoned:
            call._settle(Outcome.failure(fields.STOPPED), Stopped)

        broker = self.broker
        self.broker = None

        if broker is not None and self.owned:
            broker.close()
        self.owned = False


    def get(self, function_name, *args):
        """ Call the remote GET-requestable *function_name* with *args* and
            return its value. **Case-sensitive**.
        """

        return self.issue(function_name, Method.GET, args).wait()


    def post(self, function_name, *args):
        """ Call the remote POST-requestable *function_name* with *args* and
            return its value. **Case-sensitive**.
        """

        return self.issue(function_name, Method.POST, args).wait()


    def request(self, function_name, method, *args):
        """ Same as :func:`get` and :func:`post`, with an explicit *method*.
        """

        return self.issue(function_name, method, args).wait()


    def issue(self, function_name, method, args=(), timeout=_default):
        """ Publish a call and return its :class:`PendingCall` without
            waiting for the response. *timeout* overrides the client's
            default deadline for this call only.
        """

        if not self.started:
            logger.debug("refusing %s %r: client must be started first by calling Client.start()", method, function_name)
            raise NotStarted()

        envelope = RequestEnvelope(function_name, method, args)

        # Encode before the call becomes pending; an argument that cannot be
        # encoded raises TypeError here and nothing is published.

        payload = wire.pack(envelope)

        if timeout is _default:
            timeout = self.timeout

        if timeout is None:
            deadline = None
        else:
            deadline = time.monotonic() + timeout

        call = PendingCall(self, envelope, deadline)

        with self._lock:
            self._pending[call.id] = call

        try:
            self.broker.publish(self.request_channel, payload)
        except Exception:
            self._claim(call.id)
            raise

        logger.debug("Added Job@%s#%s to the %s queue.", method, call.id, self.request_channel)
        return call


    def _claim(self, id):
        """ Remove and return the outstanding call for *id*, or None. This is
            the single point where a call changes hands: whoever claims it
            settles it.
        """

        with self._lock:
            return self._pending.pop(id, None)


    def _expire(self, call):

        claimed = self._claim(call.id)

        if claimed is None:
            return

        logger.debug("Job@%s#%s expired without a response.", call.method, call.id)
        claimed._settle(Outcome.failure(fields.TIMEOUT), RequestTimeout)


    def _sweep(self, now=None):
        """ Expire every outstanding call whose deadline has passed.
        """

        if now is None:
            now = time.monotonic()

        with self._lock:
            expired = [call for call in self._pending.values() if call.expired(now)]

        for call in expired:
            self._expire(call)


    def _reaper_main(self):

        while not self._stopping.wait(self.sweep):
            try:
                self._sweep()
            except Exception:
                logger.exception("sweep for expired calls failed")


    def _on_completed(self, completion):
        """ Shared completion callback: find the response behind
            *completion* and settle the call it answers, if that call is
            outstanding here.
        """

        if not self._pending:
            return

        broker = self.broker
        if broker is None:
            return

        payload = broker.lookup(self.response_channel, completion.item_id)

        if payload is None:
            logger.debug("Job #%s is undefined.", completion.item_id)
            return

        try:
            response = wire.unpack_response(payload)
        except ProtocolError as e:
            logger.debug("Job #%s is not a response: %s", completion.item_id, e)
            return

        call = self._claim(response.id)

        if call is None:
            return

        result = response.result

        if result.error is not None:
            logger.debug("Job@%s#%s failed with error: %s", call.method, call.id, result.error)
        else:
            logger.debug("Job@%s#%s completed successfully, received response from server: %r", call.method, call.id, result.value)

        call._settle(result)


# end of class Client



def _discard(payload):
    pass


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
