"""
Custom exceptions for the statement audit engine.

Provides a hierarchy of exceptions with error codes for consistent error handling.
Malformed statement *data* is reported as audit issues, never raised; these
exceptions cover malformed calls, bad payloads and infrastructure failures.
"""
from typing import Optional, Dict, Any


class StatementAuditError(Exception):
    """
    Base exception for all statement audit errors.

    Attributes:
        error_code: Unique error code (e.g., SAE-001)
        message: Human-readable error message
        details: Additional error context
    """
    error_code: str = "SAE-000"
    http_status: int = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# Statement Errors (SAE-1XX)
class InvalidStatementError(StatementAuditError):
    """Audit engine was called without a usable statement."""
    error_code = "SAE-100"
    http_status = 400

    def __init__(self, message: str = "A statement is required for auditing", **kwargs):
        super().__init__(message, **kwargs)


class StatementPayloadError(StatementAuditError):
    """Extraction payload could not be turned into a statement."""
    error_code = "SAE-101"
    http_status = 422

    def __init__(self, message: str = "Invalid statement payload", errors: list = None, **kwargs):
        details = kwargs.pop("details", {})
        details["errors"] = errors or []
        super().__init__(message, details=details, **kwargs)


# Profile Errors (SAE-2XX)
class UnknownProfileError(StatementAuditError):
    """No bank profile registered under the requested id."""
    error_code = "SAE-200"
    http_status = 404

    def __init__(self, institution_id: str, **kwargs):
        message = f"Bank profile {institution_id} not found"
        super().__init__(message, details={"institution_id": institution_id}, **kwargs)


class ProfileLoadError(StatementAuditError):
    """Bank profile table is missing or malformed."""
    error_code = "SAE-201"
    http_status = 500

    def __init__(self, path: str, reason: str, **kwargs):
        message = f"Failed to load bank profiles from {path}"
        super().__init__(message, details={"path": path, "reason": reason}, **kwargs)


# Learning Errors (SAE-3XX)
class InvalidCorrectionError(StatementAuditError):
    """Correction references a field that cannot be learned from."""
    error_code = "SAE-300"
    http_status = 400

    def __init__(self, field: str, allowed: list, **kwargs):
        message = f"Cannot record a correction for field '{field}'"
        super().__init__(message, details={"field": field, "allowed": allowed}, **kwargs)


# Persistence Errors (SAE-4XX)
class PersistenceError(StatementAuditError):
    """Storage operation failed."""
    error_code = "SAE-400"
    http_status = 503

    def __init__(self, operation: str, message: str = None, **kwargs):
        msg = message or f"Storage operation '{operation}' failed"
        super().__init__(msg, details={"operation": operation}, **kwargs)


# Export Errors (SAE-5XX)
class ExportError(StatementAuditError):
    """Transactions could not be exported."""
    error_code = "SAE-500"
    http_status = 400

    def __init__(self, message: str = "Failed to export transactions", **kwargs):
        super().__init__(message, **kwargs)
