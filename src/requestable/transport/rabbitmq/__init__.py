"""RabbitMQ transport."""

from .broker import Broker
