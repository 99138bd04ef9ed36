''' Encoding for everything that crosses a broker. The most performant
    available library handles the equivalent of :func:`json.loads` and
    :func:`json.dumps`; :func:`dumps` first confirms the value is made only
    of kinds that come back out of :func:`loads` unchanged:

        None, bool, int, finite float, str, list, tuple (decoded as a
        list), and dict with str keys, nested to any depth.

    msgspec and orjson would otherwise quietly encode bytes, datetime,
    set, UUID, Decimal and dataclass values as something else, and the
    receiving side would get a different value than the one sent. Any
    other kind raises TypeError, whichever library is in use.
'''

import math

# The business about conditionally importing the libraries is intended to
# avoid importing less efficient libraries if they are not available.

msgspec = None
orjson = None
json = None

try:
    import msgspec
except ImportError:
    pass

if msgspec is None:
    try:
        import orjson
    except ImportError:
        pass

if msgspec is None and orjson is None:
    import json


_scalars = (str, int, type(None))
_sequences = (list, tuple)


def check(value, _containers=None):
    """ Raise TypeError if *value*, or anything nested inside it, is not
        one of the kinds that survives a round trip. A container that
        contains itself raises ValueError.
    """

    # bool is an int, str-based enums are a str.
    if isinstance(value, _scalars):
        return

    if isinstance(value, float):
        if not math.isfinite(value):
            raise TypeError('cannot encode non-finite float ' + repr(value))
        return

    if isinstance(value, _sequences):
        children = value
    elif isinstance(value, dict):
        for key in value.keys():
            if not isinstance(key, str):
                raise TypeError('cannot encode dict key of type ' + type(key).__name__ + ', keys must be str')
        children = value.values()
    else:
        raise TypeError('cannot encode value of type ' + type(value).__name__)

    if _containers is None:
        _containers = set()

    marker = id(value)
    if marker in _containers:
        raise ValueError('circular reference')

    _containers.add(marker)
    for child in children:
        check(child, _containers)
    _containers.discard(marker)


# The msgspec 'encode' operation returns bytes, as does orjson.dumps. To
# maintain alignment all 'dumps' methods need to do so as well.

def json_dumps(value):
    return json.dumps(value, separators=(',', ':'), allow_nan=False).encode()

if msgspec is not None:
    encode = msgspec.json.Encoder().encode
    loads = msgspec.json.Decoder().decode
    DecodeError = msgspec.DecodeError
elif orjson is not None:
    encode = orjson.dumps
    loads = orjson.loads
    DecodeError = orjson.JSONDecodeError
else:
    encode = json_dumps
    loads = json.loads
    DecodeError = json.JSONDecodeError


def dumps(value):
    check(value)
    return encode(value)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
