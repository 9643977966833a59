from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class EphemeralStoreUnavailable(Exception):
    """Raised by a critical ephemeral-store call when the backend cannot answer."""

    def __init__(self, operation: str, key: str, cause: Optional[BaseException] = None):
        super().__init__(f"ephemeral store unavailable during {operation}")
        self.operation = operation
        self.key = key
        self.cause = cause


__all__ = ["ConstraintViolation", "EphemeralStoreUnavailable"]
