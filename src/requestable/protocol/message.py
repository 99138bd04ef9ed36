""" Class representations of the envelopes exchanged through the broker.

    There are only two: a :class:`RequestEnvelope` travels from the calling
    side to the remote side, and a :class:`ResponseEnvelope` carrying an
    :class:`Outcome` travels back. Both are immutable once built; the wire
    encoding lives in :mod:`requestable.protocol.wire`.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple, Union

from . import fields


class ProtocolError(ValueError):
    """ A frame could not be interpreted as a request or response envelope.
    """



class Method(str, enum.Enum):
    """ The access method partitions the namespace of requestable functions.
        It carries no HTTP semantics; a GET function and a POST function may
        share a name without colliding.
    """

    GET = fields.GET
    POST = fields.POST

    def __str__(self):
        return self.value

    @classmethod
    def parse(cls, value) -> Optional["Method"]:
        """ Return the :class:`Method` matching *value*, or None if *value*
            is not a recognized access method. Matching is case-sensitive.
        """

        if isinstance(value, cls):
            return value

        try:
            return cls(value)
        except ValueError:
            return None


def new_id() -> str:
    """ Mint a correlation identity: 128 random bits rendered as hex text.
    """

    return uuid.uuid4().hex


@dataclass(frozen=True)
class Outcome:
    """ The result of one invocation: success XOR failure. A failure is
        signalled only by a non-None *error*; a success may legitimately
        carry None as its *value*.
    """

    value: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None) -> "Outcome":
        return cls(value=value)

    @classmethod
    def failure(cls, error: str) -> "Outcome":
        if error is None:
            raise ValueError('a failure outcome requires an error string')
        return cls(error=str(error))

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        if self.error is not None:
            return {fields.ERROR: self.error}
        return {fields.VALUE: self.value}

    @classmethod
    def from_dict(cls, data) -> "Outcome":
        if not isinstance(data, dict):
            raise ProtocolError('outcome must be an object, got %s' % (type(data).__name__))

        error = data.get(fields.ERROR)
        if error is not None:
            return cls.failure(error)

        return cls.success(data.get(fields.VALUE))


@dataclass(frozen=True)
class RequestEnvelope:
    """ A single call: which function, in which namespace, with which
        positional arguments. The *method* is kept as the raw string when
        it does not name a recognized :class:`Method`, so the receiving
        side can answer with INVALID_METHOD instead of dropping it.
    """

    function_name: str
    method: Union[Method, str]
    args: Tuple[Any, ...] = ()
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        # Freeze the argument list; a caller-held list must not alter an
        # envelope after it is built.
        object.__setattr__(self, 'args', tuple(self.args))

        method = Method.parse(self.method)
        if method is not None:
            object.__setattr__(self, 'method', method)

    def to_dict(self) -> dict:
        return {
            fields.ID: self.id,
            fields.FUNCTION_NAME: self.function_name,
            fields.METHOD: str(self.method),
            fields.ARGS: list(self.args),
        }

    @classmethod
    def from_dict(cls, data) -> "RequestEnvelope":
        if not isinstance(data, dict):
            raise ProtocolError('request must be an object, got %s' % (type(data).__name__))

        try:
            id = data[fields.ID]
            function_name = data[fields.FUNCTION_NAME]
            method = data[fields.METHOD]
        except KeyError as missing:
            raise ProtocolError('request is missing field %s' % (missing,))

        args = data.get(fields.ARGS)
        if args is None:
            args = ()

        if not isinstance(id, str) or id == '':
            raise ProtocolError('request id must be a non-empty string')
        if not isinstance(function_name, str):
            raise ProtocolError('request functionName must be a string')
        if not isinstance(args, (list, tuple)):
            raise ProtocolError('request args must be an array')

        return cls(function_name, method, args, id)


@dataclass(frozen=True)
class ResponseEnvelope:
    """ The answer to the :class:`RequestEnvelope` with the same *id*.
    """

    id: str
    result: Outcome

    def to_dict(self) -> dict:
        return {fields.ID: self.id, fields.RESULT: self.result.to_dict()}

    @classmethod
    def from_dict(cls, data) -> "ResponseEnvelope":
        if not isinstance(data, dict):
            raise ProtocolError('response must be an object, got %s' % (type(data).__name__))

        try:
            id = data[fields.ID]
            result = data[fields.RESULT]
        except KeyError as missing:
            raise ProtocolError('response is missing field %s' % (missing,))

        if not isinstance(id, str) or id == '':
            raise ProtocolError('response id must be a non-empty string')

        return cls(id, Outcome.from_dict(result))


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
