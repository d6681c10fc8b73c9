from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern, Tuple


class QueueErrorType(str, Enum):
    # transient: redelivered by the queue
    DB_CONNECTION_ERROR = "db_connection_error"
    SERVICE_BINDING_TIMEOUT = "service_binding_timeout"
    STORAGE_THROTTLE = "storage_throttle"
    # permanent: acked and failed
    INVALID_PDF = "invalid_pdf"
    MALFORMED_RESPONSE = "malformed_response"
    SERVICE_NOT_AVAILABLE = "service_not_available"
    FILE_NOT_FOUND = "file_not_found"
    PARSE_VALIDATION_ERROR = "parse_validation_error"
    JOB_NOT_FOUND = "job_not_found"
    UNKNOWN = "unknown"


TRANSIENT_ERROR_TYPES = frozenset({
    QueueErrorType.DB_CONNECTION_ERROR,
    QueueErrorType.SERVICE_BINDING_TIMEOUT,
    QueueErrorType.STORAGE_THROTTLE,
})

# Types that a user retry cannot fix. UNKNOWN is deliberately absent.
PERMANENT_ERROR_TYPES = frozenset({
    QueueErrorType.INVALID_PDF.value,
    QueueErrorType.MALFORMED_RESPONSE.value,
    QueueErrorType.SERVICE_NOT_AVAILABLE.value,
    QueueErrorType.FILE_NOT_FOUND.value,
    QueueErrorType.PARSE_VALIDATION_ERROR.value,
})


def is_permanent_error_type(error_type: Optional[str]) -> bool:
    return bool(error_type) and error_type in PERMANENT_ERROR_TYPES


class QueueError(Exception):
    def __init__(self, error_type: QueueErrorType, message: str, original: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.original = original

    def is_retryable(self) -> bool:
        return self.error_type in TRANSIENT_ERROR_TYPES

    def to_dict(self) -> Dict[str, Any]:
        original = None
        if self.original is not None:
            original = {"name": type(self.original).__name__, "message": str(self.original)}
        return {
            "name": "QueueError",
            "type": self.error_type.value,
            "message": self.message,
            "is_retryable": self.is_retryable(),
            "original_error": original,
        }


class ExtractionFailed(Exception):
    """Extraction exhausted every strategy; carries the raw diagnostic."""

    def __init__(self, message: str, raw_response: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw_response = raw_response


class JobNotFound(LookupError):
    pass


class ClaimError(Exception):
    def __init__(self, code: str, message: str, http_status: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "status": self.http_status}


class RetryRejected(Exception):
    def __init__(self, code: str, message: str, http_status: int = 400) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "status": self.http_status}


# Order matters: first match wins
_QUEUE_PATTERNS: List[Tuple[Pattern[str], QueueErrorType]] = [
    (re.compile(r"database.*connection|connection.*refused|SQLITE_BUSY|database.*locked", re.I),
     QueueErrorType.DB_CONNECTION_ERROR),
    (re.compile(r"database.*unavailable|db.*timeout|transaction.*failed|OperationalError", re.I),
     QueueErrorType.DB_CONNECTION_ERROR),
    (re.compile(r"timeout|timed?\s*out|deadline.*exceeded|worker.*timeout", re.I),
     QueueErrorType.SERVICE_BINDING_TIMEOUT),
    (re.compile(r"request.*took.*too.*long|exceeded.*time.*limit", re.I),
     QueueErrorType.SERVICE_BINDING_TIMEOUT),
    (re.compile(r"storage.*throttl|slow\s*down|rate.*limit|too.*many.*requests|\b429\b", re.I),
     QueueErrorType.STORAGE_THROTTLE),
    (re.compile(r"storage.*temporarily.*unavailable|storage.*service.*unavailable", re.I),
     QueueErrorType.STORAGE_THROTTLE),
    (re.compile(r"invalid.*pdf|corrupt.*pdf|pdf.*corrupt|pdf.*invalid|malformed.*pdf", re.I),
     QueueErrorType.INVALID_PDF),
    (re.compile(r"not.*a.*pdf|pdf.*extraction.*failed|cannot.*parse.*pdf", re.I),
     QueueErrorType.INVALID_PDF),
    (re.compile(r"encrypted.*pdf|password.*protected|pdf.*encrypted|encrypted", re.I),
     QueueErrorType.INVALID_PDF),
    (re.compile(r"extracted.*resume.*text.*is.*empty", re.I),
     QueueErrorType.INVALID_PDF),
    (re.compile(r"invalid.*json|json.*parse|unexpected.*token|malformed.*response", re.I),
     QueueErrorType.MALFORMED_RESPONSE),
    (re.compile(r"ai.*parsing.*failed|parsing.*failed|extraction.*failed", re.I),
     QueueErrorType.MALFORMED_RESPONSE),
    (re.compile(r"capability.*not.*(available|configured)|service.*not.*found|binding.*not.*available", re.I),
     QueueErrorType.SERVICE_NOT_AVAILABLE),
    (re.compile(r"job.*not.*found", re.I),
     QueueErrorType.JOB_NOT_FOUND),
    (re.compile(r"file.*not.*found|object.*not.*found|key.*not.*found|no.*such.*key|\b404\b", re.I),
     QueueErrorType.FILE_NOT_FOUND),
    (re.compile(r"validation.*error|schema.*validation|required.*field.*missing|invalid.*field|type.*mismatch", re.I),
     QueueErrorType.PARSE_VALIDATION_ERROR),
]


def error_message(exc: Any) -> str:
    """Message of an exception including its cause chain."""
    if isinstance(exc, BaseException):
        msg = str(exc) or type(exc).__name__
        cause = exc.__cause__ or exc.__context__
        if cause is not None and cause is not exc:
            msg = f"{msg} (cause: {error_message(cause)})"
        return msg
    if isinstance(exc, str):
        return exc
    if isinstance(exc, dict):
        for key in ("message", "error"):
            if isinstance(exc.get(key), str):
                return exc[key]
        if isinstance(exc.get("status"), int):
            return f"HTTP {exc['status']}"
    return "Unknown error"


def classify_queue_error(exc: Any) -> QueueError:
    if isinstance(exc, QueueError):
        return exc
    original = exc if isinstance(exc, BaseException) else None
    if isinstance(exc, JobNotFound):
        return QueueError(QueueErrorType.JOB_NOT_FOUND, error_message(exc), original)
    message = error_message(exc)
    for pattern, error_type in _QUEUE_PATTERNS:
        if pattern.search(message):
            return QueueError(error_type, message, original)
    return QueueError(QueueErrorType.UNKNOWN, message, original)


# --- User-facing messages ----------------------------------------------------

class UserErrorCategory(str, Enum):
    PROTECTED_DOCUMENT = "protected_document"
    EMPTY_TEXT = "empty_text"
    OVERSIZED = "oversized"
    SCHEMA_VALIDATION = "schema_validation"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


USER_MESSAGES: Dict[UserErrorCategory, str] = {
    UserErrorCategory.PROTECTED_DOCUMENT: (
        "Your PDF appears to be password-protected or corrupted. "
        "Please upload an unlocked copy of your resume."
    ),
    UserErrorCategory.EMPTY_TEXT: (
        "We couldn't read any text from your PDF. It may be a scanned image; "
        "please upload a text-based PDF."
    ),
    UserErrorCategory.OVERSIZED: (
        "Your resume is too large to process. Please upload a shorter document (max 10MB)."
    ),
    UserErrorCategory.SCHEMA_VALIDATION: (
        "We couldn't structure the information in your resume. "
        "Please check that your name and sections are clearly visible and try again."
    ),
    UserErrorCategory.TIMEOUT: (
        "Processing your resume took too long. Please try again in a few minutes."
    ),
    UserErrorCategory.UNKNOWN: (
        "Something went wrong while processing your resume. Please try again."
    ),
}

_USER_PATTERNS: List[Tuple[Pattern[str], UserErrorCategory]] = [
    (re.compile(r"password|encrypt|protected|corrupt|invalid.*pdf|not.*a.*pdf", re.I),
     UserErrorCategory.PROTECTED_DOCUMENT),
    (re.compile(r"text.*is.*empty|no.*text|empty.*text", re.I),
     UserErrorCategory.EMPTY_TEXT),
    (re.compile(r"too.*large|oversized|exceeds.*size|too.*long.*document|max.*size", re.I),
     UserErrorCategory.OVERSIZED),
    (re.compile(r"timeout|timed?\s*out|deadline.*exceeded", re.I),
     UserErrorCategory.TIMEOUT),
    (re.compile(r"validation|schema|required|invalid.*(email|url|field)|parsing.*failed|invalid.*json|malformed", re.I),
     UserErrorCategory.SCHEMA_VALIDATION),
]

_REQUIRED_FIELD_RE = re.compile(
    r"(?:^|[;:]\s*)([a-z_]+)(?:\.[\w.]+)?: (?:Field required|String should have at least 1 character)", re.I
)


def _field_specific_message(raw: str) -> Optional[str]:
    if "Invalid email" in raw:
        return (
            "We couldn't extract a valid email from your resume. "
            "Please ensure your email address is complete and clearly visible."
        )
    if "contact.linkedin" in raw:
        return "The LinkedIn URL in your resume couldn't be parsed correctly. Please ensure it's a complete URL."
    if "contact.github" in raw:
        return "The GitHub URL in your resume couldn't be parsed correctly. Please ensure it's a complete URL."
    match = _REQUIRED_FIELD_RE.search(raw)
    if match:
        field = match.group(1).replace("_", " ").lower()
        return f"We couldn't find the {field} in your resume. Please ensure it's clearly visible."
    return None


def classify_user_error(raw: Optional[str]) -> Tuple[UserErrorCategory, str]:
    """Map a raw diagnostic onto a short, actionable message for the owner."""
    text = raw or ""
    for pattern, category in _USER_PATTERNS:
        if pattern.search(text):
            if category is UserErrorCategory.SCHEMA_VALIDATION:
                specific = _field_specific_message(text)
                if specific:
                    return category, specific
            return category, USER_MESSAGES[category]
    return UserErrorCategory.UNKNOWN, USER_MESSAGES[UserErrorCategory.UNKNOWN]
