""" Python implementation of requestable remote calls. A :class:`Server`
    registers named functions and answers requests for them; a
    :class:`Client` calls those functions from another process, with a
    message broker carrying the requests and responses in between.
"""

import logging

# Utility components.

from . import json
from . import config

# Submodules used by multiple other components.

from . import protocol
from . import errors
from . import transport

# Primary public-facing interfaces.

from .protocol import Method, Outcome
from .protocol.fields import GET, POST
from .errors import RequestableError, RequestError, NotStarted, RequestTimeout, Stopped, Failure
from .registry import Registry
from .server import Server
from .client import Client, PendingCall
from .transport import connect

logging.getLogger(__name__).addHandler(logging.NullHandler())

# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
