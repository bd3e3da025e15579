"""SerialStock — Service error taxonomy.

Every error carries a machine `code`, the HTTP status it maps to, and a
`kind`: "rejected" means nothing was changed and the same request may be
retried as-is; "conflict" means a concurrent writer got there first and the
caller should re-read before deciding what to do.
"""
from typing import Any

REJECTED = "rejected"
CONFLICT = "conflict"


class ServiceError(Exception):
    code = "SERVICE_ERROR"
    status_code = 500
    kind = REJECTED

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "kind": self.kind,
            "details": self.details or None,
        }


class ValidationError(ServiceError):
    """Malformed input, rejected before anything was written."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFound(ServiceError):
    code = "NOT_FOUND"
    status_code = 404


class IllegalTransition(ServiceError):
    code = "ILLEGAL_TRANSITION"
    status_code = 400

    def __init__(self, old: str, new: str):
        super().__init__(f"Cannot change status from '{old}' to '{new}'", old=old, new=new)


class InsufficientStock(ServiceError):
    code = "INSUFFICIENT_STOCK"
    status_code = 400


class DuplicateSerial(ServiceError):
    code = "DUPLICATE_SERIAL"
    status_code = 409
    kind = CONFLICT

    def __init__(self, serial_number: str):
        super().__init__(f"Serial number already exists: {serial_number}", serial_number=serial_number)


class AlreadyReserved(ServiceError):
    code = "ALREADY_RESERVED"
    status_code = 409
    kind = CONFLICT


class NotAvailable(ServiceError):
    code = "NOT_AVAILABLE"
    status_code = 409
    kind = CONFLICT


class ConflictLostRace(ServiceError):
    """A conditional write matched zero rows: another writer changed the row first."""

    code = "CONFLICT_LOST_RACE"
    status_code = 409
    kind = CONFLICT


class StoreUnavailable(ServiceError):
    code = "STORE_UNAVAILABLE"
    status_code = 500
