# ==============================================================================
# CUSTOM EXCEPTIONS - Data Access Error Hierarchy
# ==============================================================================
# Structured exception classes shared by every adapter and compiler
# Each exception carries a machine-readable code and a details dictionary
# ==============================================================================

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional


class PolystoreError(Exception):
    """
    Base exception for all polystore errors.

    Provides a consistent interface for error handling with:
    - Error code for programmatic identification
    - Detailed message and optional context

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable error identifier
        details: Additional context dictionary

    Example:
        >>> raise PolystoreError(
        ...     message="Something went wrong",
        ...     error_code="INTERNAL_ERROR",
        ... )
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary format.

        Returns:
            Dictionary containing error details
        """
        return {
            "success": False,
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details,
            }
        }

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message='{self.message}', "
            f"error_code='{self.error_code}')"
        )


# ==============================================================================
# CONFIGURATION & REGISTRY EXCEPTIONS
# ==============================================================================

class ConfigError(PolystoreError):
    """
    Raised when a connection configuration is invalid.

    Attributes:
        missing_fields: Every required field absent from the config
    """

    def __init__(
        self,
        message: str = "Invalid configuration",
        missing_fields: Optional[Iterable[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.missing_fields = list(missing_fields or [])
        _details = details or {}
        if self.missing_fields:
            _details["missing_fields"] = self.missing_fields
        super().__init__(
            message=message,
            error_code="CONFIG_ERROR",
            details=_details,
        )


class UnsupportedTypeError(PolystoreError):
    """Raised when no adapter is registered for a database type."""

    def __init__(self, db_type: str) -> None:
        super().__init__(
            message=f"Unsupported database type: {db_type}",
            error_code="UNSUPPORTED_TYPE",
            details={"db_type": db_type},
        )
        self.db_type = db_type


# ==============================================================================
# QUERY COMPILATION EXCEPTIONS
# ==============================================================================

class QueryCompileError(PolystoreError):
    """
    Raised when a predicate or update expression is malformed.

    Covers unknown operator keys, wrong operand shapes, invalid
    field names and conflicting update targets.
    """

    def __init__(
        self,
        message: str = "Query compilation failed",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message=message,
            error_code="QUERY_COMPILE_ERROR",
            details=details,
        )


class UnsupportedOperatorError(QueryCompileError):
    """Raised when a known operator has no translation on a backend."""

    def __init__(
        self,
        operator: str,
        backend: str,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(
            message=message or f"Operator '{operator}' is not supported by {backend}",
            details={"operator": operator, "backend": backend},
        )
        self.error_code = "UNSUPPORTED_OPERATOR"
        self.operator = operator
        self.backend = backend


class UnsupportedOperationError(PolystoreError):
    """
    Raised when a backend has no primitive for a requested operation.

    Examples: aggregation on a key-value store, atomic list mutation
    on a backend without native arrays.
    """

    def __init__(
        self,
        operation: str,
        backend: str,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(
            message=message or f"Operation '{operation}' is not supported by {backend}",
            error_code="UNSUPPORTED_OPERATION",
            details={"operation": operation, "backend": backend},
        )
        self.operation = operation
        self.backend = backend


class AdapterNotImplementedError(PolystoreError, NotImplementedError):
    """Raised when an adapter has not implemented a contract capability."""

    def __init__(self, operation: str, backend: str) -> None:
        super().__init__(
            message=f"{backend} adapter does not implement '{operation}'",
            error_code="NOT_IMPLEMENTED",
            details={"operation": operation, "backend": backend},
        )
        self.operation = operation
        self.backend = backend


# ==============================================================================
# DATA EXCEPTIONS
# ==============================================================================

class ValidationError(PolystoreError):
    """
    Raised when record data violates its model schema.

    Contains field-level validation errors.
    """

    def __init__(
        self,
        message: str = "Validation error",
        errors: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            details={"validation_errors": errors or {}},
        )
        self.errors = errors or {}


class DuplicateKeyError(PolystoreError):
    """Raised when a write violates a unique constraint."""

    def __init__(
        self,
        message: str = "Duplicate key",
        model: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        _details = details or {}
        if model:
            _details["model"] = model
        super().__init__(
            message=message,
            error_code="DUPLICATE_KEY",
            details=_details,
        )
        self.model = model


class NotFoundError(PolystoreError):
    """
    Raised when a requested model or record does not exist.

    Attributes:
        resource_type: Type of resource that was not found
        resource_id: Identifier of the missing resource
    """

    def __init__(
        self,
        message: str = "Resource not found",
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
    ) -> None:
        details = {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id is not None:
            details["resource_id"] = str(resource_id)

        super().__init__(
            message=message,
            error_code="NOT_FOUND",
            details=details,
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


# ==============================================================================
# DATABASE EXCEPTIONS
# ==============================================================================

class DatabaseError(PolystoreError):
    """
    Base exception for native driver failures.

    Raised at the adapter boundary with the failing operation name;
    the driver exception is chained as ``__cause__``.
    """

    def __init__(
        self,
        message: str = "Database operation failed",
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        _details = details or {}
        if operation:
            _details["operation"] = operation
        super().__init__(
            message=message,
            error_code="DATABASE_ERROR",
            details=_details,
        )
        self.operation = operation


class ConnectionError(DatabaseError):
    """
    Raised when a database connection cannot be established or is not ready.
    """

    def __init__(
        self,
        message: str = "Failed to connect to database",
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, operation=operation, details=details)
        self.error_code = "DATABASE_CONNECTION_ERROR"


class TransactionError(DatabaseError):
    """
    Raised when a transaction fails.

    Indicates that the transaction did not commit and a rollback
    was attempted. The triggering error is chained as ``__cause__``.
    """

    def __init__(
        self,
        message: str = "Transaction failed",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, operation="transaction", details=details)
        self.error_code = "TRANSACTION_ERROR"


class TransactionRollbackError(TransactionError):
    """
    Raised when the rollback that followed a failed transaction also failed.

    Attributes:
        original_error: The error that caused the rollback
        rollback_error: The error raised by the rollback itself
    """

    def __init__(
        self,
        original_error: BaseException,
        rollback_error: BaseException,
    ) -> None:
        super().__init__(
            message=(
                f"Rollback failed ({rollback_error}) after transaction "
                f"error: {original_error}"
            ),
            details={
                "original_error": repr(original_error),
                "rollback_error": repr(rollback_error),
            },
        )
        self.error_code = "TRANSACTION_ROLLBACK_ERROR"
        self.original_error = original_error
        self.rollback_error = rollback_error


class CloseAllError(DatabaseError):
    """
    Raised when one or more adapters failed to close.

    Attributes:
        errors: Mapping of connection key to the close() failure
    """

    def __init__(self, errors: Mapping[str, BaseException]) -> None:
        self.errors = dict(errors)
        super().__init__(
            message=(
                f"{len(self.errors)} connection(s) failed to close: "
                + "; ".join(f"{key}: {exc}" for key, exc in self.errors.items())
            ),
            operation="close_all",
            details={"failed": list(self.errors)},
        )
        self.error_code = "CLOSE_ALL_ERROR"
