"""
Domain errors.

Every failure the rest of the system depends on carries a machine-readable
``code``; the HTTP status comes from the error family:

    DomainError
    +-- ValidationFailed   400  VALIDATION_ERROR, INVALID_PAYLOAD, PERIOD_INVALID_TODAY, ...
    +-- Forbidden          403  FORBIDDEN, FORBIDDEN_UNIT, REPORT_LOCKED, AFTER_CUTOFF, ...
    +-- NotFound           404  NOT_FOUND, PERSON_NOT_FOUND, PDF_NOT_FOUND
    +-- Conflict           409  ALREADY_PENDING, NOT_PENDING, USER_EXISTS, ...
"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    status_code: int = 400
    default_code: str = "ERROR"

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None, **data: Any):
        self.code = code or self.default_code
        self.message = message or self.code
        self.data = data
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data:
            out.update(self.data)
        return out


class ValidationFailed(DomainError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class Forbidden(DomainError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFound(DomainError):
    status_code = 404
    default_code = "NOT_FOUND"


class Conflict(DomainError):
    status_code = 409
    default_code = "CONFLICT"
