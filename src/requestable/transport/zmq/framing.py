"""ZMQ multipart framing between a broker connection and the broker device.

Connection <-> Device (DEALER<->ROUTER)
    (optional routing prefix...), version, id, op, channel, item_id, payload

The id ties a device reply to the connection request that caused it; it is
empty for unsolicited messages (JOB, EVT).

Connection -> Device ops:
    PUB   queue payload on channel; REP carries the new item_id
    GET   fetch item_id's payload; REP carries it, or an empty item_id
    CON   become a consumer of channel; REP
    UNC   stop consuming channel; REP
    LIS   receive completions for channel; REP
    UNL   stop receiving completions for channel; REP
    DONE  item_id has been handled
    NAK   item_id was not handled, give it to someone else
    BYE   connection is going away, forget it everywhere

Device -> Connection ops:
    REP   reply to a request
    ERR   reply to a request that failed; payload is the error text
    JOB   item to handle: item_id, payload
    EVT   item_id on channel completed
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence, Tuple

from ..base import TransportError


# Version of the on-the-wire protocol implemented here, identified by a
# single byte.

version = b'1'

PUB = b'PUB'
GET = b'GET'
CON = b'CON'
UNC = b'UNC'
LIS = b'LIS'
UNL = b'UNL'
DONE = b'DONE'
NAK = b'NAK'
BYE = b'BYE'

REP = b'REP'
ERR = b'ERR'
JOB = b'JOB'
EVT = b'EVT'


@dataclass
class Frame:
    op: bytes
    channel: str = ''
    item_id: str = ''
    payload: bytes = b''
    id: bytes = b''
    prefix: Tuple[bytes, ...] = field(default=(), repr=False)

    def reply(self, op: bytes = REP, item_id: str = None, payload: bytes = b'') -> "Frame":
        """Build the answer to this frame, routed back to its sender."""

        if item_id is None:
            item_id = self.item_id

        return Frame(op, self.channel, item_id, payload, self.id, self.prefix)


def to_frames(frame: Frame) -> Tuple[bytes, ...]:
    """Encode a :class:`Frame` to multipart frames, routing prefix first."""

    parts = (
        version,
        frame.id,
        frame.op,
        frame.channel.encode(),
        frame.item_id.encode(),
        frame.payload or b'',
    )
    return tuple(frame.prefix) + parts


def from_frames(parts: Sequence[bytes], routed: bool = False) -> Frame:
    """Decode multipart frames into a :class:`Frame`. A ROUTER socket
    prepends the sender identity; pass *routed* to keep it as the prefix.
    """

    parts = tuple(parts)

    if routed:
        prefix = parts[:1]
        parts = parts[1:]
    else:
        prefix = ()

    if len(parts) != 6:
        raise TransportError(f"expected 6 message parts, got {len(parts)}")

    their_version, msg_id, op, channel, item_id, payload = parts

    if their_version != version:
        raise TransportError(
            f"message is requestable protocol {their_version!r}, recipient expects {version!r}"
        )

    return Frame(op, channel.decode(), item_id.decode(), payload, msg_id, prefix)
