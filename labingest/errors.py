"""Tagged error taxonomy for the ingestion pipeline."""

from __future__ import annotations

import re

MAX_ERROR_MESSAGE_LENGTH = 300

_SENSITIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"bearer\s+[a-zA-Z0-9\-._~+/]+=*", re.IGNORECASE), "[redacted]"),
    (re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"), "[redacted]"),
    (re.compile(r"(api[_\s-]*key|token|secret|password)s?\s*[:=]\s*[^\s,}]+", re.IGNORECASE), r"\1=[redacted]"),
    (re.compile(r"[?&]key=[^\s&]+", re.IGNORECASE), "?key=[redacted]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[email]"),
    (re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"), "[ip]"),
    (re.compile(r"[A-Za-z]:\\(?:[^\\\s]+\\)*[^\\\s]*"), "[path]"),
    (re.compile(r"(?<![\w.])/(?:[\w.\-]+/)+[\w.\-]*"), "[path]"),
]


class LabIngestError(Exception):
    """Base class for errors that end up in an HTTP response or an experiment record."""

    kind = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailure(LabIngestError):
    kind = "validation"


class UploadTooLarge(ValidationFailure):
    kind = "size"


class SecurityViolation(LabIngestError):
    kind = "security"

    def __init__(self, message: str, threat_category: str):
        super().__init__(message)
        self.threat_category = threat_category


class ParseError(LabIngestError):
    kind = "parse"

    def __init__(self, format_name: str, detail: str):
        super().__init__(f"Failed to parse {format_name} file: {detail}")
        self.format_name = format_name
        self.detail = detail


class AnalysisError(LabIngestError):
    kind = "external"


class StorageError(LabIngestError):
    kind = "storage"


class PipelineBusy(LabIngestError):
    kind = "capacity"


class AccessDenied(LabIngestError):
    kind = "access"


class AuthenticationRequired(LabIngestError):
    kind = "authentication"


class InvalidTransition(RuntimeError):
    """Raised when code tries to move an experiment out of a terminal state."""


def sanitize_error_message(message: str) -> str:
    """Strip paths, credentials and addresses from a user-visible error message."""

    cleaned = str(message or "").replace("\x00", "")
    cleaned = re.sub(r"[\r\n\t]+", " ", cleaned)
    for pattern, replacement in _SENSITIVE_PATTERNS:
        cleaned = pattern.sub(replacement, cleaned)
    cleaned = re.sub(r"\s{2,}", " ", cleaned).strip()
    if len(cleaned) > MAX_ERROR_MESSAGE_LENGTH:
        cleaned = cleaned[: MAX_ERROR_MESSAGE_LENGTH - 3].rstrip() + "..."
    return cleaned or "Processing failed."


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, LabIngestError):
        return exc.kind
    return "internal"
