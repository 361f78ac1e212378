"""
Error taxonomy for the task hierarchy engine.

Every error carries the offending field and/or task id when one exists, so
callers (and the API layer) can point at the exact input that was rejected.
"""

from typing import Any, Dict, Optional


class TaskTreeError(Exception):
    """Base exception for task hierarchy errors."""

    code = "task_tree_error"
    retryable = False

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        task_id: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.task_id = str(task_id) if task_id is not None else None

    def to_dict(self) -> Dict[str, Any]:
        """Render the error as a JSON-serializable dictionary."""
        body: Dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.field is not None:
            body["field"] = self.field
        if self.task_id is not None:
            body["task_id"] = self.task_id
        return body


class TaskValidationError(TaskTreeError):
    """Raised for malformed input (bad id, negative order, unknown enum value)."""

    code = "validation_error"


class InvalidOrderError(TaskValidationError):
    """Raised when a sibling order is negative, non-integer or already taken."""

    code = "invalid_order"


class InvalidEnumError(TaskValidationError):
    """Raised when a policy or status value is outside its declared set."""

    code = "invalid_enum"


class TaskNotFoundError(TaskTreeError):
    """Raised when a referenced task does not exist."""

    code = "not_found"


class DepthExceededError(TaskTreeError):
    """Raised when a mutation would nest a task deeper than the maximum depth."""

    code = "depth_exceeded"


class CycleDetectedError(TaskTreeError):
    """Raised when a task would become its own ancestor."""

    code = "cycle_detected"


class ConflictError(TaskTreeError):
    """Raised when a concurrent mutation invalidated the current transaction."""

    code = "conflict"
    retryable = True


class StorageUnavailableError(TaskTreeError):
    """Raised when the underlying store cannot be reached."""

    code = "storage_unavailable"
