"""Router utilities."""

from docportal.utils.exceptions import (
    raise_bad_request,
    raise_conflict,
    raise_job_error,
    raise_not_found,
    raise_too_large,
)

__all__ = [
    "raise_bad_request",
    "raise_conflict",
    "raise_job_error",
    "raise_not_found",
    "raise_too_large",
]
