from __future__ import annotations

from typing import Union

from .. import json
from .message import ProtocolError, RequestEnvelope, ResponseEnvelope


def pack(envelope: Union[RequestEnvelope, ResponseEnvelope]) -> bytes:
    """
    Serialize an envelope -> bytes

    Layout is a single compact JSON object; see
    :meth:`RequestEnvelope.to_dict` and :meth:`ResponseEnvelope.to_dict`.
    Raises TypeError if any value inside the envelope is not one of the
    kinds listed in :mod:`requestable.json`, since it would not arrive
    unchanged.
    """

    return json.dumps(envelope.to_dict())


def _decode(frame: bytes):

    if frame is None or frame == b'':
        raise ProtocolError('empty frame')

    try:
        return json.loads(frame)
    except (json.DecodeError, UnicodeDecodeError) as exc:
        raise ProtocolError('frame is not valid JSON: ' + str(exc)) from exc


def unpack_request(frame: bytes) -> RequestEnvelope:
    """
    Deserialize bytes -> RequestEnvelope
    """

    return RequestEnvelope.from_dict(_decode(frame))


def unpack_response(frame: bytes) -> ResponseEnvelope:
    """
    Deserialize bytes -> ResponseEnvelope
    """

    return ResponseEnvelope.from_dict(_decode(frame))
