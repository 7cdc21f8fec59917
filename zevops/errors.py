"""Error taxonomy for device interactions.

Three kinds of failure are kept apart:

- transport failures: the request never completed (refused, reset, timed out)
- device-reported failures: the device answered with an error status
- input validation failures: a client-side precondition was not met, so no
  request was sent at all
"""

from typing import Optional


class ConsoleError(Exception):
    """Base class for all console errors."""


class DeviceTransportError(ConsoleError):
    """The request to the device could not complete."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class DeviceRequestError(ConsoleError):
    """The device answered, but with an error status."""

    def __init__(
        self,
        status_code: int,
        message: str,
        path: Optional[str] = None,
        structured: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.path = path
        # True when the device explained the failure in a JSON error body
        self.structured = structured

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500

    def __str__(self) -> str:
        return f"{self.message} (HTTP {self.status_code})"


class InputValidationError(ConsoleError):
    """A client-side precondition failed before anything was sent."""
