"""Common exception utilities for FastAPI routers."""

from typing import NoReturn

from fastapi import HTTPException, status

from docportal.services.errors import JobErrorCode, describe_error


def raise_not_found(resource_name: str, *, cause: Exception | None = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"{resource_name} not found",
    ) from cause


def raise_bad_request(detail: str, *, cause: Exception | None = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=detail,
    ) from cause


def raise_conflict(detail: str, *, cause: Exception | None = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=detail,
    ) from cause


def raise_too_large(detail: str, *, cause: Exception | None = None) -> NoReturn:
    raise HTTPException(
        status_code=status.HTTP_413_CONTENT_TOO_LARGE,
        detail=detail,
    ) from cause


def raise_job_error(code: JobErrorCode, message: str | None = None, *, cause: Exception | None = None) -> NoReturn:
    """Raise with the structured body clients use for job errors."""
    info = describe_error(code)
    raise HTTPException(
        status_code=info.status_code,
        detail={
            "error_code": code.value,
            "message": message or info.user_message,
            "suggested_action": info.suggested_action,
            "retryable": info.retryable,
        },
    ) from cause
