"""CoWatch exception hierarchy."""
from __future__ import annotations


class CoWatchError(Exception):
    """Base class for every error raised by CoWatch code."""

    code = "error"


class ProtocolError(CoWatchError):
    """Raised for a frame that is not a well-formed envelope."""

    code = "bad_message"


class UnknownMessageError(ProtocolError):
    """Raised for a well-formed envelope carrying an unrecognised type tag."""

    code = "unknown_message"

    def __init__(self, msg_type: str):
        super().__init__(f"Unknown message type: {msg_type!r}")
        self.msg_type = msg_type


class BadRequestError(CoWatchError):
    code = "bad_request"


class ForbiddenError(CoWatchError):
    code = "forbidden"


class ConfigError(CoWatchError):
    """Raised when a config file fails validation. Carries every problem found."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors
