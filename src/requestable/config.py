""" Runtime configuration, read once from the environment at import time.
    Every value here is a default: the classes that consume them accept an
    explicit override as a constructor argument.

    ``REQUESTABLE_TRANSPORT``
        Broker adapter used by :func:`requestable.transport.connect` when
        no URL is supplied: ``local``, ``zmq``, or ``rabbitmq``.

    ``REQUESTABLE_PREFIX``
        Prefix applied to the logical channel names, so that unrelated
        deployments can share one broker.

    ``REQUESTABLE_TIMEOUT``
        Default per-call deadline in seconds. ``none`` or ``0`` disables it.

    ``REQUESTABLE_SWEEP``
        Interval in seconds between sweeps for expired calls.

    ``REQUESTABLE_ZMQ_HOST``, ``REQUESTABLE_ZMQ_PORT``
        Location of the ZeroMQ broker device.

    ``REQUESTABLE_AMQP_HOST``, ``REQUESTABLE_AMQP_PORT``
        Location of the RabbitMQ broker.
"""

import os

from .protocol import fields


def _seconds(name, default):

    raw = os.environ.get(name)

    if raw is None:
        return default

    raw = raw.strip().lower()
    if raw in ('', 'none', 'off'):
        return None

    value = float(raw)
    if value <= 0:
        return None

    return value


transport = os.environ.get('REQUESTABLE_TRANSPORT', 'local').lower()
prefix = os.environ.get('REQUESTABLE_PREFIX', 'requestable')

timeout = _seconds('REQUESTABLE_TIMEOUT', 60.0)
sweep = _seconds('REQUESTABLE_SWEEP', 0.5) or 0.5

zmq_host = os.environ.get('REQUESTABLE_ZMQ_HOST', 'localhost')
zmq_port = int(os.environ.get('REQUESTABLE_ZMQ_PORT', '10179'))

amqp_host = os.environ.get('REQUESTABLE_AMQP_HOST', 'localhost')
amqp_port = int(os.environ.get('REQUESTABLE_AMQP_PORT', '5672'))


def channel(name, namespace=None):
    """ Return the broker-level name for the logical channel *name*, for
        example ``requestable:request``.
    """

    if namespace is None:
        namespace = prefix

    if namespace:
        return namespace + ':' + name
    return name


def request_channel(namespace=None):
    return channel(fields.REQUEST, namespace)


def response_channel(namespace=None):
    return channel(fields.RESPONSE, namespace)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
