"""Error kinds raised by the pipeline and search core.

The API layer maps ``code`` to transport status; the core never does.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all core errors."""

    code = "INTERNAL"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(PipelineError):
    """Referenced entity does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: object) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class ValidationFailedError(PipelineError):
    """Malformed request reached the core."""

    code = "VALIDATION"


class LimitExceededError(PipelineError):
    """Requested page size is above the hardcoded ceiling."""

    code = "LIMIT_EXCEEDED"

    def __init__(self, field: str, limit: int, maximum: int) -> None:
        self.field = field
        self.limit = limit
        self.maximum = maximum
        super().__init__(f"{field}={limit} exceeds maximum of {maximum}")


class PersistenceError(PipelineError):
    """The underlying store failed; the operation's effects were rolled back."""

    code = "PERSISTENCE"


def validate_page_size(field: str, value: int, maximum: int) -> None:
    """Reject non-positive page sizes and page sizes above ``maximum``.

    Raises:
        ValidationFailedError: If value <= 0.
        LimitExceededError: If value > maximum.
    """
    if value <= 0:
        raise ValidationFailedError(f"{field} must be positive, got {value}")
    if value > maximum:
        raise LimitExceededError(field, value, maximum)
