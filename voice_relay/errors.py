"""
Error taxonomy for the relay.

Admission and upstream errors are recovered per connection and reported to the
client as ``error`` frames. Protocol, auth and config errors end the attempt at
the boundary with an HTTP status.
"""

from voice_relay.models.realtime_schemas import ErrorFrame


class RelayError(Exception):
    """Base class for all relay errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_frame(self) -> dict:
        """Render the error as an outbound ``error`` frame."""
        return ErrorFrame(message=self.message).model_dump()


class ProtocolError(RelayError):
    """Malformed upgrade request; rejected before any state is created."""

    status_code = 400


class AuthError(RelayError):
    """Missing or invalid caller credential."""

    status_code = 401


class AdmissionError(RelayError):
    """Frame rejected by the size or rate guard; the connection stays open."""

    status_code = 429


class UpstreamError(RelayError):
    """The link to the realtime speech peer failed."""

    status_code = 502


class ConfigError(RelayError):
    """A required secret or setting is missing at startup."""

    status_code = 500
