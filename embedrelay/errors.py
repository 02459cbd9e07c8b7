class StreamRelayError(Exception):
    """Base class for every failure the HTTP layer knows how to answer."""


class ResolutionError(StreamRelayError):
    """The sandbox could not recover a stream descriptor from an embed page."""


class CreationError(StreamRelayError):
    """A browser session could not capture a manifest."""


class RelayError(StreamRelayError):
    NO_SESSION = 'no_session'
    DETACHED = 'detached'
    BUSY = 'busy'
    FETCH = 'fetch'

    def __init__(self, kind, message=''):
        self.kind = kind
        super().__init__(message or kind)


class DriverError(Exception):
    """Raised by a BrowserDriver when a browser operation fails."""


class TabClosedError(DriverError):
    """The tab was closed, crashed, or its execution context was destroyed."""


# Not an Exception subclass: the interpreter's own `except Exception` blocks must not catch it.
class ScriptTimeout(BaseException):
    """A sandboxed script ran past its execution budget."""


class ScriptError(Exception):
    """A sandboxed script failed to parse or threw at runtime."""
