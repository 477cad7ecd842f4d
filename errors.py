# FILE: errors.py  # client-side error taxonomy

from typing import Any, Optional


class ClientError(Exception):  # base for everything the client raises
    pass


class TransportError(ClientError):  # network failure, never auto-retried
    pass


class ApiError(ClientError):
    """Non-2xx answer from the backend; ``message`` is the server text verbatim."""

    def __init__(self, status_code: int, message: str, code: Optional[str] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code  # HTTP status
        self.message = message  # shown to the operator as-is
        self.code = code  # machine code if any
        self.payload = payload  # raw body

    def __str__(self) -> str:
        return f"HTTP_{self.status_code}: {self.message}"


class SessionExpiredError(ClientError):  # credentials purged, re-login needed
    pass


class CommandNotAllowed(ClientError):  # command issued in a status that forbids it
    def __init__(self, command: str, status: Optional[str]):
        super().__init__(f"{command} not allowed while status={status}")
        self.command = command
        self.status = status


class GeolocationError(ClientError):  # classified device-location failure
    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason  # permission_denied / position_unavailable / timeout / ...
        self.message = message  # localized text
