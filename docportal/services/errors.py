"""Engine error taxonomy and structured job error codes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from docportal.services.deduplication import DuplicateCandidate


class JobErrorCode(str, Enum):
    """Stable error codes persisted on failed jobs and returned to clients."""

    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    PROCESSING_FAILED = "PROCESSING_FAILED"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    PARSING_ERROR = "PARSING_ERROR"
    OCR_FAILED = "OCR_FAILED"
    TIMEOUT = "TIMEOUT"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    DUPLICATE_FILE = "DUPLICATE_FILE"
    STORAGE_ERROR = "STORAGE_ERROR"
    STORAGE_BUCKET_MISSING = "STORAGE_BUCKET_MISSING"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"


@dataclass(frozen=True)
class JobErrorInfo:
    message: str
    user_message: str
    status_code: int
    retryable: bool
    suggested_action: str | None = None


JOB_ERRORS: dict[JobErrorCode, JobErrorInfo] = {
    JobErrorCode.FILE_TOO_LARGE: JobErrorInfo(
        message="File size exceeds maximum allowed size",
        user_message="File is too large. Please upload a file smaller than 10MB.",
        status_code=400,
        retryable=True,
        suggested_action="Try uploading a smaller file",
    ),
    JobErrorCode.INVALID_FILE_TYPE: JobErrorInfo(
        message="Invalid file type or format",
        user_message="This file type is not supported. Please upload a supported format.",
        status_code=400,
        retryable=True,
        suggested_action="Check the file format and try again",
    ),
    JobErrorCode.UPLOAD_FAILED: JobErrorInfo(
        message="Failed to upload file to storage",
        user_message="We couldn't save your file. Please try again.",
        status_code=500,
        retryable=True,
        suggested_action="Check your internet connection and try again",
    ),
    JobErrorCode.PROCESSING_FAILED: JobErrorInfo(
        message="File processing failed",
        user_message="We couldn't process your file. Please check the file format and try again.",
        status_code=500,
        retryable=True,
        suggested_action="Verify the file is not corrupted and try again",
    ),
    JobErrorCode.DOWNLOAD_FAILED: JobErrorInfo(
        message="Failed to download file from storage",
        user_message="We couldn't retrieve your file for processing. Please try uploading again.",
        status_code=500,
        retryable=True,
        suggested_action="Try uploading the file again",
    ),
    JobErrorCode.PARSING_ERROR: JobErrorInfo(
        message="Failed to parse spreadsheet file",
        user_message="We couldn't read your spreadsheet. Please check the file format.",
        status_code=400,
        retryable=True,
        suggested_action="Ensure the file is a valid Excel or CSV file",
    ),
    JobErrorCode.OCR_FAILED: JobErrorInfo(
        message="OCR processing failed",
        user_message="We couldn't extract text from your document. Please try a clearer image or PDF.",
        status_code=500,
        retryable=True,
        suggested_action="Try uploading a clearer image or PDF",
    ),
    JobErrorCode.TIMEOUT: JobErrorInfo(
        message="Processing timeout",
        user_message="Processing took too long. Please try again with a smaller file.",
        status_code=504,
        retryable=True,
        suggested_action="Try uploading a smaller file or split into multiple files",
    ),
    JobErrorCode.UNKNOWN_ERROR: JobErrorInfo(
        message="An unexpected error occurred",
        user_message="Something went wrong. Please try again or contact support if the problem persists.",
        status_code=500,
        retryable=True,
        suggested_action="Try again in a few moments",
    ),
    JobErrorCode.DUPLICATE_FILE: JobErrorInfo(
        message="File already exists",
        user_message="This file has already been uploaded. Please upload a different file.",
        status_code=409,
        retryable=False,
        suggested_action="Upload a different file, delete the existing one first, or force the upload",
    ),
    JobErrorCode.STORAGE_ERROR: JobErrorInfo(
        message="Storage service error",
        user_message="We couldn't access storage. Please try again.",
        status_code=503,
        retryable=True,
        suggested_action="Try again in a few moments",
    ),
    JobErrorCode.STORAGE_BUCKET_MISSING: JobErrorInfo(
        message="Storage bucket not found",
        user_message="Storage is not set up yet (missing bucket). Please contact your administrator.",
        status_code=500,
        retryable=False,
        suggested_action="Create the configured S3 bucket and try again",
    ),
    JobErrorCode.AUTHENTICATION_ERROR: JobErrorInfo(
        message="Authentication failed",
        user_message="Your session has expired. Please log in again.",
        status_code=401,
        retryable=False,
        suggested_action="Please log in and try again",
    ),
}


def describe_error(code: JobErrorCode | str) -> JobErrorInfo:
    """Return the error metadata for a code, falling back to UNKNOWN_ERROR."""
    try:
        return JOB_ERRORS[JobErrorCode(code)]
    except ValueError:
        return JOB_ERRORS[JobErrorCode.UNKNOWN_ERROR]


class IngestError(Exception):
    """Base class for engine errors."""


class ValidationError(IngestError):
    """Bad file type/size or malformed request, rejected before any job exists."""

    def __init__(self, message: str, *, code: JobErrorCode = JobErrorCode.INVALID_FILE_TYPE) -> None:
        super().__init__(message)
        self.code = code


class DuplicateDetected(IngestError):
    """Upload matched an earlier ingestion; requires an explicit force override."""

    def __init__(self, candidate: DuplicateCandidate) -> None:
        super().__init__(f"Duplicate upload ({candidate.match_type.value})")
        self.candidate = candidate


class ExtractionError(IngestError):
    """Adapter threw or returned unusable data."""

    def __init__(self, message: str, *, code: JobErrorCode | None = None) -> None:
        super().__init__(message)
        self.code = code


class NotFoundError(IngestError):
    """Unknown job, transaction or document id (for this owner)."""

    def __init__(self, resource: str, resource_id: Any = None) -> None:
        super().__init__(f"{resource} not found")
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(IngestError):
    """State changed underneath the caller; safe to re-read and retry."""


_KEYWORD_CODES: list[tuple[tuple[str, ...], JobErrorCode]] = [
    (("bucket not found", "nosuchbucket"), JobErrorCode.STORAGE_BUCKET_MISSING),
    (("too large", "exceeds", "file size"), JobErrorCode.FILE_TOO_LARGE),
    (("timeout", "timed out"), JobErrorCode.TIMEOUT),
    (("unsupported", "file type"), JobErrorCode.INVALID_FILE_TYPE),
    (("upload", "save"), JobErrorCode.UPLOAD_FAILED),
    (("download", "retrieve", "fetch"), JobErrorCode.DOWNLOAD_FAILED),
    (("parse", "read", "invalid format", "no columns"), JobErrorCode.PARSING_ERROR),
    (("ocr", "extract", "vision"), JobErrorCode.OCR_FAILED),
    (("storage", "s3"), JobErrorCode.STORAGE_ERROR),
    (("auth", "credential", "token"), JobErrorCode.AUTHENTICATION_ERROR),
]


def map_error_to_code(exc: BaseException) -> JobErrorCode:
    """Classify an exception into a job error code.

    An explicit ``code`` attribute wins, then the exception type, then message keywords.
    """
    code = getattr(exc, "code", None)
    if isinstance(code, JobErrorCode):
        return code

    if isinstance(exc, TimeoutError):
        return JobErrorCode.TIMEOUT

    from docportal.services.storage import StorageError

    message = str(exc).lower()
    if isinstance(exc, StorageError):
        if "bucket" in message and ("not found" in message or "missing" in message):
            return JobErrorCode.STORAGE_BUCKET_MISSING
        return JobErrorCode.STORAGE_ERROR

    for keywords, mapped in _KEYWORD_CODES:
        if any(keyword in message for keyword in keywords):
            return mapped

    if isinstance(exc, ExtractionError):
        return JobErrorCode.PROCESSING_FAILED
    return JobErrorCode.UNKNOWN_ERROR
