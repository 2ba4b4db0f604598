class RelayError(Exception):
    """Base class for errors raised by the relay core."""


class RouteNotFoundError(RelayError):
    def __init__(self, path: str) -> None:
        super().__init__(f"no route matches path '{path}'")
        self.path = path


class MalformedBodyError(RelayError):
    """Raised when the inbound body cannot be read as a JSON object."""


class UpstreamProtocolError(RelayError):
    """Raised when the upstream answers with a payload that is not a JSON object."""


class ChannelClosedError(RelayError):
    """Raised by writes on a stream channel whose reader has gone away."""
