"""
requestable Protocol Layer
==========================

This package defines the transport-agnostic data contract exchanged between
a :class:`requestable.Client` and a :class:`requestable.Server`.

The protocol layer MUST NOT depend on any transport implementation
(e.g. ZeroMQ, RabbitMQ, etc).

---------------------------------------------------------------------

Layer Overview
--------------

Message Model (message.py)
    Immutable envelopes
    - Method        GET / POST namespace partition
    - Outcome       success value XOR error string
    - RequestEnvelope   {id, functionName, method, args}
    - ResponseEnvelope  {id, result}

Wire Encoding (wire.py)
    Envelope <-> bytes, via requestable.json

Field Vocabulary (fields.py)
    Canonical names for envelope keys and error tags

---------------------------------------------------------------------

Values that survive the round trip: None, bool, int, finite float, str,
lists and tuples (decoded as lists), dicts with string keys, and any nesting
of those. Anything else (bytes, datetime, set, non-string dict keys, ...) is
rejected with TypeError when encoding.
"""

from . import fields
from . import message
from . import wire

from .message import Method, Outcome, ProtocolError, RequestEnvelope, ResponseEnvelope


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
