"""Exceptions raised by the scan pipeline."""

from enum import Enum


class ErrorCode(str, Enum):
    """Codes carried by error events."""
    INVALID_REQUEST = "invalid_request"
    SCAN_FAILED = "scan_failed"


class ScanError(Exception):
    """Raised when a scan cannot continue. Reported as an error event."""

    code = ErrorCode.SCAN_FAILED.value


class InvalidRequestError(ScanError):
    """Raised when start arguments cannot be turned into a ScanRequest."""

    code = ErrorCode.INVALID_REQUEST.value


class DocumentOpenError(ScanError):
    """Raised when the source document is missing or cannot be opened."""

    pass


class ExtractionError(ScanError):
    """Raised when the text extractor fails on a page or image."""

    pass


class ScanCancelled(Exception):
    """Raised at a checkpoint once cancellation has been requested."""

    pass
