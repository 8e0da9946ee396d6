"""FastAPI dependency helpers for the pipeline and search routers.

Services are created once in the application lifespan and stored on
``app.state``; these helpers fetch them (503 when missing), read the actor
from the ``X-Actor-ID`` header, and translate core errors to HTTP errors.
"""

from __future__ import annotations

from typing import Any

from fastapi import Header, HTTPException, Request, status

from src.app.pipeline.errors import (
    LimitExceededError,
    NotFoundError,
    PersistenceError,
    PipelineError,
    ValidationFailedError,
)


def get_state_service(request: Request, name: str, label: str) -> Any:
    """Retrieve a service from app.state, 503 if not initialized."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


# Matches the String(128) created_by/updated_by/changed_by columns.
MAX_ACTOR_ID_LENGTH = 128


async def get_actor_id(
    x_actor_id: str | None = Header(default=None, alias="X-Actor-ID"),
) -> str | None:
    """Opaque actor identifier supplied by the upstream auth layer.

    Raises:
        HTTPException: 422 if the trimmed value exceeds MAX_ACTOR_ID_LENGTH.
    """
    if x_actor_id is None:
        return None
    actor_id = x_actor_id.strip()
    if len(actor_id) > MAX_ACTOR_ID_LENGTH:
        raise to_http_exception(
            ValidationFailedError(
                f"X-Actor-ID exceeds {MAX_ACTOR_ID_LENGTH} characters"
            )
        )
    return actor_id or None


_STATUS_BY_ERROR: list[tuple[type[PipelineError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationFailedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (LimitExceededError, status.HTTP_400_BAD_REQUEST),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def to_http_exception(exc: PipelineError) -> HTTPException:
    """Map a core error to an HTTPException carrying its code and message."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = mapped
            break

    detail: dict[str, Any] = {"code": exc.code, "message": exc.message}
    if isinstance(exc, LimitExceededError):
        detail["limit"] = exc.limit
        detail["maximum"] = exc.maximum
    return HTTPException(status_code=status_code, detail=detail)
