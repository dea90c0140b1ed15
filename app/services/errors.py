"""
Errors raised by the service layer.

Routes translate these into HTTP responses; services never build
HTTP responses themselves.
"""
from typing import List, Optional


class BrocyError(Exception):
    """Base class for expected, user-facing failures."""
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {"error": self.message}


class ValidationError(BrocyError):
    """Malformed or missing input. Nothing was written."""
    status_code = 400

    def __init__(self, message: str, valid_values: Optional[List[str]] = None):
        self.valid_values = valid_values
        super().__init__(message)

    def to_detail(self) -> dict:
        detail = super().to_detail()
        if self.valid_values is not None:
            detail["validValues"] = self.valid_values
        return detail


class NotFoundError(BrocyError):
    """A referenced entity does not exist."""
    status_code = 404

    def __init__(self, message: str, missing_ids: Optional[List[int]] = None):
        self.missing_ids = missing_ids
        super().__init__(message)

    def to_detail(self) -> dict:
        detail = super().to_detail()
        if self.missing_ids is not None:
            detail["missingIds"] = self.missing_ids
        return detail


class ConflictError(BrocyError):
    """
    The requested transition is invalid given current reservation state.
    This is the system refusing, not malfunctioning.
    """
    status_code = 409

    def __init__(
        self,
        message: str,
        suggestion: Optional[str] = None,
        conflicting_reservations: Optional[List[int]] = None
    ):
        self.suggestion = suggestion
        self.conflicting_reservations = conflicting_reservations or []
        super().__init__(message)

    def to_detail(self) -> dict:
        detail = super().to_detail()
        if self.suggestion:
            detail["suggestion"] = self.suggestion
        detail["conflictingReservations"] = self.conflicting_reservations
        return detail


class PermissionDeniedError(BrocyError):
    status_code = 403
