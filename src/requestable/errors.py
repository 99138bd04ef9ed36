"""Exceptions raised to callers of :mod:`requestable`.

Errors cross the broker as plain strings inside an :class:`Outcome`; these
classes only exist on the calling side, wrapping that string so it can be
raised. The string is always available, unmodified, as ``error``.
"""

from .protocol import fields
from .protocol.message import ProtocolError


class RequestableError(Exception):
    """Base class for all requestable errors."""


class RequestError(RequestableError):
    """A remote call settled with a failure outcome.

    ``error`` is the exact string received: one of the tags in
    :mod:`requestable.protocol.fields`, or text echoed by the remote function.
    """

    def __init__(self, error):
        RequestableError.__init__(self, error)
        self.error = error

    def __str__(self):
        return str(self.error)


class NotStarted(RequestError):
    """The client was used before its broker connections were established."""

    def __init__(self, error=fields.NOT_STARTED):
        RequestError.__init__(self, error)


class RequestTimeout(RequestError):
    """No response arrived before the call's deadline."""

    def __init__(self, error=fields.TIMEOUT):
        RequestError.__init__(self, error)


class Stopped(RequestError):
    """The client was stopped while the call was still outstanding."""

    def __init__(self, error=fields.STOPPED):
        RequestError.__init__(self, error)


class Failure(Exception):
    """Raise this from a registered function to report a plain text failure.
    With error echoing enabled the text reaches the caller verbatim.
    """

    def __init__(self, text):
        Exception.__init__(self, text)
        self.text = text

    def __str__(self):
        return str(self.text)
