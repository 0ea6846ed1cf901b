class HarnessError(Exception):
    """Base for every control-path failure. str(err) is the status line shown to the operator."""


class AlreadyRunning(HarnessError):
    pass


class NotRunning(HarnessError):
    pass


class BindError(HarnessError):
    pass


class ConnectError(HarnessError):
    pass


class EncodingError(HarnessError):
    """Malformed base64 payload."""


class PeerNotFound(HarnessError):
    pass


class WriteError(HarnessError):
    pass


class InternalError(HarnessError):
    """Registry lock could not be acquired."""
