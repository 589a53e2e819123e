"""Custom exceptions for the OpenNote data layer.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Store failures also carry an
HTTP-like ``status`` so callers can branch on 404/409 the same way
they would against a CouchDB endpoint.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Document errors (1xxx)
    DOCUMENT_NOT_FOUND = 1001
    DOCUMENT_CONFLICT = 1002
    DOCUMENT_INVALID = 1003

    # Tag index errors (3xxx)
    TAG_INDEX_CONFLICT = 3001

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORAGE_CONNECTION_FAILED = 4004

    # Import errors (45xx)
    IMPORT_INVALID = 4501

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001
    CONFIG_MISSING = 6002

    # Sync errors (8xxx)
    SYNC_NOT_CONFIGURED = 8001
    SYNC_REMOTE_FAILED = 8002
    SYNC_DENIED = 8003


class OpenNoteError(Exception):
    """Base exception for all OpenNote errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    status = 500

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "status": self.status,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class DocumentNotFoundError(OpenNoteError):
    """Raised when a document (or view) is absent or deleted."""

    status = 404

    def __init__(self, doc_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Document '{doc_id}' not found",
            code=ErrorCode.DOCUMENT_NOT_FOUND,
            details={"doc_id": doc_id},
        )
        self.doc_id = doc_id


class DocumentConflictError(OpenNoteError):
    """Raised when a write does not match the document's current revision."""

    status = 409

    def __init__(
        self,
        doc_id: str,
        expected_rev: Optional[str] = None,
        actual_rev: Optional[str] = None,
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.DOCUMENT_CONFLICT,
    ):
        details: Dict[str, Any] = {"doc_id": doc_id}
        if expected_rev:
            details["expected_rev"] = expected_rev
        if actual_rev:
            details["actual_rev"] = actual_rev
        super().__init__(
            message or f"Document update conflict on '{doc_id}'",
            code=code,
            details=details,
        )
        self.doc_id = doc_id
        self.expected_rev = expected_rev
        self.actual_rev = actual_rev


class InvalidDocumentError(OpenNoteError):
    """Raised when a document cannot be stored as given."""

    status = 400

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(message, code=ErrorCode.DOCUMENT_INVALID, details=details)
        self.field = field


class StorageError(OpenNoteError):
    """Raised for unexpected storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class ConfigurationError(OpenNoteError):
    """Raised for configuration-related errors."""

    status = 400

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key


class SyncError(OpenNoteError):
    """Raised when talking to a replication peer fails."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.SYNC_REMOTE_FAILED,
        status: Optional[int] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if status is not None:
            details["http_status"] = status
        super().__init__(message, code=code, details=details)
        self.operation = operation
        if status is not None:
            self.status = status


class BackupFormatError(OpenNoteError):
    """Raised when a backup file is structurally unusable.

    Per-document failures are never raised; they are reported as
    ``ImportOutcome`` entries instead.
    """

    status = 400

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        details = {"problems": problems[:10]} if problems else {}
        super().__init__(message, code=ErrorCode.IMPORT_INVALID, details=details)
        self.problems: List[str] = list(problems) if problems else []
