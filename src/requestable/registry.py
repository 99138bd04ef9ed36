""" The :class:`Registry` holds the functions a :class:`requestable.Server`
    is willing to run on behalf of remote callers. Functions are stored in
    one namespace per access method; invoking one always yields exactly one
    :class:`requestable.protocol.Outcome`, never an exception.
"""

import asyncio
import concurrent.futures
import inspect
import logging
import threading
import traceback

from .errors import Failure
from .protocol import fields
from .protocol.message import Method, Outcome

logger = logging.getLogger(__name__)


class Entry:
    """ A registered function, plus whether its failures are echoed back to
        the caller. The *function* can be any callable, including coroutine
        functions.
    """

    __slots__ = ('function', 'echo_errors')

    def __init__(self, function, echo_errors=False):
        self.function = function
        self.echo_errors = bool(echo_errors)


    def __repr__(self):
        return 'Entry(%r, echo_errors=%r)' % (self.function, self.echo_errors)


# end of class Entry



class Registry:
    """ Named functions, partitioned by access method. The GET and POST
        namespaces are independent: the same name may be registered in
        both, referring to different functions.

        All access to the namespaces is serialized with a lock; the
        registry is safe to share between the broker thread delivering
        requests and any threads registering functions.
    """

    def __init__(self):

        self.namespaces = dict()
        for method in Method:
            self.namespaces[method] = dict()

        self.lock = threading.Lock()


    def __contains__(self, key):
        """ *key* is a (name, method) tuple.
        """

        name, method = key
        return self.lookup(name, method) is not None


    def __len__(self):
        with self.lock:
            return sum(len(namespace) for namespace in self.namespaces.values())


    def _namespace(self, method):

        method = Method.parse(method)

        if method is None:
            return None

        return self.namespaces[method]


    def register(self, function, name, method, echo_errors=False):
        """ Make *function* invocable under *name* for the given *method*.
            Registering a name that already exists in that namespace
            replaces the previous entry. An unrecognized *method* registers
            nothing.
        """

        namespace = self._namespace(method)

        if namespace is None:
            logger.warning("refusing to register %r: invalid method %r", name, method)
            return

        entry = Entry(function, echo_errors)

        with self.lock:
            namespace[name] = entry

        logger.debug("Registered %r function as %s-requestable. Will echo errors = %s.", name, method, entry.echo_errors)


    def requestable(self, method, name=None, echo_errors=False):
        """ Decorator form of :func:`register`. The function's own name is
            used if *name* is not specified::

                @registry.requestable('GET')
                def temperature(sensor):
                    ...
        """

        def decorator(function):
            self.register(function, name or function.__name__, method, echo_errors)
            return function

        return decorator


    def unregister(self, name, method):
        """ Remove *name* from the namespace for *method*. Returns the
            removed function, or None if nothing was registered.
        """

        namespace = self._namespace(method)

        if namespace is None:
            return None

        with self.lock:
            entry = namespace.pop(name, None)

        if entry is None:
            return None

        return entry.function


    def lookup(self, name, method):
        """ Return the :class:`Entry` for *name* and *method*, or None.
        """

        namespace = self._namespace(method)

        if namespace is None:
            return None

        with self.lock:
            return namespace.get(name)


    def names(self, method):
        """ Return a sorted list of the names registered for *method*.
        """

        namespace = self._namespace(method)

        if namespace is None:
            return []

        with self.lock:
            return sorted(namespace.keys())


    def invoke(self, name, method, args=()):
        """ Run the function registered as *name* for *method* with the
            positional *args*, and return an :class:`Outcome`. The argument
            count is not checked; an arity mismatch is just another failure
            raised by the function.
        """

        namespace = self._namespace(method)

        if namespace is None:
            return Outcome.failure(fields.INVALID_METHOD)

        with self.lock:
            entry = namespace.get(name)

        if entry is None:
            return Outcome.failure(fields.REQUESTABLE_NOT_FOUND)

        try:
            result = _complete(entry.function(*args))
        except Exception as failure:
            logger.debug("%s %r raised:\n%s", method, name, traceback.format_exc())

            if entry.echo_errors:
                return Outcome.failure(describe(failure))
            else:
                return Outcome.failure(fields.DEFAULT_ERROR)

        return Outcome.success(result)


# end of class Registry



def _complete(result):
    """ Resolve *result* if the registered function handed back something
        that completes later: a coroutine (or other awaitable) is run to
        completion on a private event loop, a future is waited on. If the
        calling thread is already running an event loop, the private loop
        runs on a helper thread instead, and this thread blocks until it
        is done.
    """

    if isinstance(result, concurrent.futures.Future):
        return result.result()

    if inspect.isawaitable(result):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(_await(result))

        with concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix='requestable.Registry') as helper:
            return helper.submit(asyncio.run, _await(result)).result()

    return result


async def _await(awaitable):
    return await awaitable


def describe(failure):
    """ Reduce a *failure* to the text echoed back to a caller. Text is
        passed through verbatim, an exception is reduced to its message,
        anything else is reported as an unknown error.
    """

    if isinstance(failure, str):
        return failure

    if isinstance(failure, Failure):
        return str(failure.text)

    if isinstance(failure, BaseException):
        if len(failure.args) == 1 and isinstance(failure.args[0], str):
            return failure.args[0]

        text = str(failure)
        if text == '':
            text = type(failure).__name__
        return text

    return fields.UNKNOWN_ERROR + str(failure)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
