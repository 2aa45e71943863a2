"""Exception taxonomy for the generation orchestration layer.

Validation and admission errors are raised synchronously to the caller and
never reach a session.  I/O and decode errors are captured inside the
session and surface only through its terminal outcome.
"""


class BridgeError(Exception):
    """Base class for all errors raised by beebridge."""

    pass


class ValidationError(BridgeError):
    """User-friendly validation error.

    Raised when a request or settings field is out of range.  The message is
    intended to be displayed directly to the user.
    """

    pass


class AlreadyActiveError(BridgeError):
    """A session already occupies the coordinator's slot."""

    pass


class NotActiveError(BridgeError):
    """No session occupies the coordinator's slot."""

    pass


class LaunchError(BridgeError):
    """The worker executable could not be started."""

    pass


class WriteError(BridgeError):
    """A line could not be written to the worker's input pipe."""

    pass


class DecodeError(BridgeError):
    """A protocol line did not match the expected shape.

    Attributes:
        line: The offending line (terminator stripped).
    """

    def __init__(self, message: str, line: str = ""):
        super().__init__(message)
        self.line = line


class WorkerReportedError(BridgeError):
    """The worker sent an explicit error payload."""

    pass
