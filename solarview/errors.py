"""
Error taxonomy for the SolarView engine.

Every failure that reaches a caller carries a stable ``kind`` string plus a
human-readable message. The API layer maps kinds to HTTP status codes.
"""

from typing import Any, Dict, Optional


class SolarViewError(Exception):
    """Base class for all engine errors."""

    kind: str = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message}


class ValidationError(SolarViewError):
    """Malformed input: missing field, empty selection, out-of-range value."""

    kind = "validation"


class ConfigurationError(SolarViewError):
    """Invalid tariff, emission factors or configuration file content."""

    kind = "configuration"


class DeviceUnreachable(SolarViewError):
    """Gateway timeout, connection failure or unusable gateway response."""

    kind = "device_unreachable"

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class ConflictError(SolarViewError):
    """A job of the same kind is already running for this owner."""

    kind = "conflict"


class StageFailure(SolarViewError):
    """A pipeline stage raised; terminal for the owning job only."""

    kind = "stage_failure"

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"Stage '{stage}' failed: {cause}")
        self.stage = stage
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["stage"] = self.stage
        data["cause"] = getattr(self.cause, "kind", type(self.cause).__name__)
        return data


class NotFoundError(SolarViewError):
    kind = "not_found"


class InvalidStateError(SolarViewError):
    kind = "invalid_state"
