""" The :class:`Server` is the object a process uses to offer functions to
    remote callers: register functions with it, then start it with a broker
    connection.
"""

import logging

from . import config
from . import transport
from .gateway import Gateway
from .registry import Registry

logger = logging.getLogger(__name__)


class Server:
    """ A :class:`Registry` of requestable functions, plus the
        :class:`Gateway` that answers remote requests for them once
        :func:`start` is called. Functions may be registered before or after
        the server is started::

            server = requestable.Server()
            server.register(read_temperature, 'temperature', 'GET')
            server.start(broker)

        The *prefix* selects the channel names, and must match the clients'.
        *workers* is the number of requests handled concurrently.
    """

    def __init__(self, prefix=None, workers=None, registry=None):

        if registry is None:
            registry = Registry()

        self.registry = registry
        self.request_channel = config.request_channel(prefix)
        self.response_channel = config.response_channel(prefix)
        self.workers = workers

        self.broker = None
        self.owned = False
        self.gateway = None


    def __enter__(self):
        return self


    def __exit__(self, *exc_info):
        self.stop()


    @property
    def started(self):
        return self.gateway is not None


    def start(self, broker=None):
        """ Begin answering requests arriving via *broker*, which is either
            a :class:`transport.base.Broker` instance or a URL understood by
            :func:`transport.connect`.
        """

        if self.gateway is not None:
            return

        if broker is None or isinstance(broker, str):
            broker = transport.connect(broker)

        owned = False
        if not broker.is_open:
            broker.open()
            owned = True

        # Nothing is recorded until the gateway is consuming; a failed
        # start leaves the server stopped, and a later start() retries.

        gateway = Gateway(self.registry, broker, self.request_channel, self.response_channel, self.workers)

        try:
            gateway.start()
        except Exception:
            if owned:
                broker.close()
            raise

        self.broker = broker
        self.owned = owned
        self.gateway = gateway

        logger.debug("server started with %d requestable functions", len(self.registry))


    def stop(self):

        if self.gateway is not None:
            self.gateway.stop()
            self.gateway = None

        broker = self.broker
        self.broker = None

        if broker is not None and self.owned:
            broker.close()
        self.owned = False


    def register(self, function, name, method, echo_errors=False):
        """ Make *function* callable by remote clients as *name* using the
            access *method* ('GET' or 'POST'). If *echo_errors* is True, the
            text of any failure is returned to the caller; otherwise the
            caller only sees DEFAULT_ERROR.
        """

        self.registry.register(function, name, method, echo_errors)


    def requestable(self, method, name=None, echo_errors=False):
        """ Decorator form of :func:`register`.
        """

        return self.registry.requestable(method, name, echo_errors)


    def unregister(self, name, method):
        return self.registry.unregister(name, method)


    def request(self, name, method, *args):
        """ Invoke the function registered as *name* for *method* in this
            process, exactly as a remote request would, and return the
            :class:`requestable.protocol.Outcome`.
        """

        return self.registry.invoke(name, method, args)


# end of class Server


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
