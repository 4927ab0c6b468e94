"""
Collector error hierarchy for clear classification in logs and ledger history.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CollectorError(Exception):
    """Base class for all collector errors."""

    def __init__(
        self,
        message: str,
        *,
        request_id: Optional[str] = None,
        source_id: Optional[str] = None,
        phase: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.request_id = request_id
        self.source_id = source_id
        self.phase = phase
        self.details = details or {}

    def as_dict(self) -> Dict[str, Any]:
        """Serializable representation for logs and ledger history."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "request_id": self.request_id,
            "source_id": self.source_id,
            "phase": self.phase,
            "details": self.details,
        }


class QueueProbeError(CollectorError):
    """Raised when the downstream queue depth cannot be read."""

    def __init__(
        self,
        message: str,
        *,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.endpoint = endpoint
        self.status_code = status_code
        if endpoint is not None:
            self.details["endpoint"] = endpoint
        if status_code is not None:
            self.details["status_code"] = status_code


class SourceFetchError(CollectorError):
    """Raised by search/extraction collaborators for a failed source attempt."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code
        if status_code is not None:
            self.details["status_code"] = status_code


class PersistenceError(CollectorError):
    """Raised during reads/writes against a schedule or request store."""

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.operation = operation
        if operation is not None:
            self.details["operation"] = operation


class ConfigError(CollectorError):
    """Raised on missing/invalid configuration values."""

    def __init__(
        self,
        message: str,
        *,
        key: Optional[str] = None,
        section: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.key = key
        self.section = section
        if key is not None:
            self.details["key"] = key
        if section is not None:
            self.details["section"] = section


def describe_error(error: BaseException) -> Dict[str, Any]:
    if isinstance(error, CollectorError):
        return error.as_dict()
    return {"error_type": error.__class__.__name__, "message": str(error)}


__all__ = [
    "CollectorError",
    "QueueProbeError",
    "SourceFetchError",
    "PersistenceError",
    "ConfigError",
    "describe_error",
]
