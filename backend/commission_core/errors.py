"""
ERROR TAXONOMY

Every failure raised by the commission core derives from CommissionError:
- ValidationError: malformed input, rejected before any write
- NotFoundError: referenced entity absent
- ConflictError: local/remote divergence requiring resolution
- SyncTransportError: network/backend failure, retryable
- IntegrityError: a write would violate a stored invariant
- StorageError: local storage driver fault
"""

from typing import Optional, Dict, Any


class CommissionError(Exception):
    """Base class for all commission core errors"""
    error_type = "COMMISSION_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(CommissionError):
    """Raised when input is rejected before any write"""
    error_type = "VALIDATION_ERROR"


class NotFoundError(CommissionError):
    """Raised when a referenced entity does not exist"""
    error_type = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any = None, message: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        if message is None:
            message = f"{entity} not found" if entity_id is None else f"{entity} not found: {entity_id}"
        super().__init__(message, {"entity": entity, "entity_id": entity_id})


class ConflictError(CommissionError):
    """Raised when local and remote versions of a record diverge"""
    error_type = "CONFLICT"

    def __init__(self, table: str, record_id: str, message: Optional[str] = None):
        self.table = table
        self.record_id = record_id
        super().__init__(
            message or f"Conflict on {table}:{record_id}",
            {"table": table, "record_id": record_id}
        )


class SyncTransportError(CommissionError):
    """Raised when the remote backend cannot be reached or fails server-side"""
    error_type = "SYNC_TRANSPORT_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, {"status_code": status_code})


class IntegrityError(CommissionError):
    """Raised when a write would violate a stored invariant"""
    error_type = "INTEGRITY_ERROR"

    def __init__(self, violation_type: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.violation_type = violation_type
        super().__init__(message, details)


class StorageError(CommissionError):
    """Raised when the local storage driver fails"""
    error_type = "STORAGE_ERROR"
