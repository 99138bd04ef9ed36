"""Protocol constants.

Keep these in one place to avoid stringly-typed message handling. The error
tags are compared literally by callers, do not reword them.
"""

# Access methods
GET = "GET"
POST = "POST"

# Error tags carried in Outcome.error
INVALID_METHOD = "INVALID_METHOD"
REQUESTABLE_NOT_FOUND = "REQUESTABLE_NOT_FOUND"
DEFAULT_ERROR = "DEFAULT_ERROR"
NOT_STARTED = "NOT_STARTED"
TIMEOUT = "TIMEOUT"
STOPPED = "STOPPED"

UNKNOWN_ERROR = "Unknown error: "

# Envelope keys, as they appear on the wire
ID = "id"
FUNCTION_NAME = "functionName"
METHOD = "method"
ARGS = "args"
RESULT = "result"
VALUE = "value"
ERROR = "error"

# Logical channel names
REQUEST = "request"
RESPONSE = "response"
