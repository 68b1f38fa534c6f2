"""
Result contract of the domain managers.

Success: {"success": True, "data": ..., "message": "..."}
Failure: {"success": False, "error": "...", "error_type": "..."}
"""

from typing import Optional, Dict, Any
import functools
import logging

from .errors import CommissionError, StorageError

logger = logging.getLogger(__name__)


def success(data: Any = None, message: str = "") -> Dict[str, Any]:
    return {"success": True, "data": data, "message": message}


def failure(error: str, error_type: str = "ERROR", details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    result = {"success": False, "error": error, "error_type": error_type}
    if details:
        result["details"] = details
    return result


def from_error(exc: CommissionError) -> Dict[str, Any]:
    """Convert a core exception into a failure result"""
    return failure(exc.message, exc.error_type, exc.details or None)


def returns_result(operation: str):
    """
    Wrap a manager coroutine so core errors come back as failure results.

    Only CommissionError subclasses are converted; anything else is a bug
    and propagates.
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except CommissionError as e:
                if isinstance(e, StorageError):
                    logger.error(f"{operation} failed: {e.message}")
                else:
                    logger.warning(f"{operation} rejected: {e.message}")
                return from_error(e)
        return wrapper
    return decorator
