""" The receiving side of a requestable exchange. A :class:`Gateway`
    consumes request envelopes from the broker, runs them through a
    :class:`requestable.registry.Registry`, and publishes one response
    envelope per request back to the broker. No state is retained between
    requests.
"""

import concurrent.futures
import logging

from .protocol import fields
from .protocol import wire
from .protocol.message import Outcome, ProtocolError, ResponseEnvelope
from .registry import describe

logger = logging.getLogger(__name__)


class Gateway:
    """ Glue between a broker and a registry. Requests are handed to a pool
        of worker threads so that a long-running function does not hold up
        the requests queued behind it.
    """

    worker_count = 8

    def __init__(self, registry, broker, request_channel, response_channel, workers=None):

        self.registry = registry
        self.broker = broker
        self.request_channel = request_channel
        self.response_channel = response_channel

        if workers is not None:
            self.worker_count = int(workers)

        self.workers = None
        self.subscription = None


    def start(self):

        if self.subscription is not None:
            return

        workers = concurrent.futures.ThreadPoolExecutor(max_workers=self.worker_count, thread_name_prefix='requestable.Gateway')
        self.workers = workers

        try:
            self.subscription = self.broker.consume(self.request_channel, self.req_incoming)
        except Exception:
            self.workers = None
            workers.shutdown(wait=False)
            raise

        logger.debug("gateway consuming %s, answering on %s", self.request_channel, self.response_channel)


    def stop(self):

        if self.subscription is not None:
            self.subscription.cancel()
            self.subscription = None

        workers = self.workers
        self.workers = None

        if workers is not None:
            workers.shutdown(wait=True)


    def req_incoming(self, payload):
        """ All inbound requests are filtered through this method. A frame
            that is not a valid request envelope is dropped, as there is no
            correlation identity to answer to.
        """

        try:
            request = wire.unpack_request(payload)
        except ProtocolError as e:
            logger.warning("dropping malformed request on %s: %s", self.request_channel, e)
            return

        workers = self.workers
        if workers is None:
            self.req_handler(request)
        else:
            workers.submit(self._worker_main, request)


    def _worker_main(self, request):

        try:
            self.req_handler(request)
        except Exception:
            logger.exception("request %s for %r was not answered", request.id, request.function_name)


    def req_handler(self, request):
        """ Invoke the requested function and publish its outcome.
        """

        outcome = self.registry.invoke(request.function_name, request.method, request.args)
        response = ResponseEnvelope(request.id, outcome)

        try:
            payload = wire.pack(response)
        except (TypeError, ValueError) as e:
            # The function ran, but its value cannot cross the broker.
            logger.warning("%s %r returned an unencodable value: %s", request.method, request.function_name, e)
            entry = self.registry.lookup(request.function_name, request.method)

            if entry is not None and entry.echo_errors:
                error = describe(e)
            else:
                error = fields.DEFAULT_ERROR

            response = ResponseEnvelope(request.id, Outcome.failure(error))
            payload = wire.pack(response)

        self.broker.publish(self.response_channel, payload)
        return response


# end of class Gateway


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
