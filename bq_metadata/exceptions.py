"""
Custom exceptions for BigQuery Metadata API
Provides specific error types for better error handling and logging
"""

from typing import Optional, Dict, Any
from fastapi import HTTPException


class BigQueryAPIException(HTTPException):
    """Base exception for BigQuery Metadata API errors"""

    def __init__(
        self,
        status_code: int,
        detail: str,
        code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.code = code or "BIGQUERY_ERROR"


class AuthenticationError(BigQueryAPIException):
    """Authentication related errors"""

    def __init__(
        self,
        detail: str = "Authentication failed",
        code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            status_code=401,
            detail=detail,
            code=code or "AUTH_ERROR",
            headers=headers
        )


class ValidationError(BigQueryAPIException):
    """Request validation errors"""

    def __init__(
        self,
        detail: str = "Invalid request data",
        code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            status_code=400,
            detail=detail,
            code=code or "VALIDATION_ERROR",
            headers=headers
        )


class BigQueryError(BigQueryAPIException):
    """BigQuery service specific errors"""

    def __init__(
        self,
        detail: str = "BigQuery operation failed",
        code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
        status_code: int = 500
    ):
        super().__init__(
            status_code=status_code,
            detail=detail,
            code=code or "BIGQUERY_OPERATION_ERROR",
            headers=headers
        )


class ConfigurationError(BigQueryAPIException):
    """Configuration related errors"""

    def __init__(
        self,
        detail: str = "Service configuration error",
        code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            status_code=500,
            detail=detail,
            code=code or "CONFIGURATION_ERROR",
            headers=headers
        )


# Specific error instances for common scenarios
class InvalidTokenError(AuthenticationError):
    """Invalid or expired token"""

    def __init__(self):
        super().__init__(
            detail="Invalid or expired authentication token",
            code="INVALID_TOKEN"
        )


class MissingTokenError(AuthenticationError):
    """Missing authentication token"""

    def __init__(self):
        super().__init__(
            detail="Authentication token not provided",
            code="MISSING_TOKEN"
        )


class MissingParameterError(ValidationError):
    """Required request parameter is missing or blank"""

    def __init__(self, name: str):
        super().__init__(
            detail=f"Parameter '{name}' must not be blank",
            code="MISSING_PARAMETER"
        )
        self.parameter = name


class InvalidIdentifierError(ValidationError):
    """Project or dataset identifier cannot be safely used in SQL"""

    def __init__(self, kind: str, value: str):
        super().__init__(
            detail=f"Invalid {kind} identifier: {value!r}",
            code="INVALID_IDENTIFIER"
        )


class InvalidCredentialFormatError(ValidationError):
    """Uploaded key is not a usable service account credential"""

    def __init__(self, details: str = ""):
        super().__init__(
            detail=f"Invalid service account key{': ' + details if details else ''}",
            code="INVALID_CREDENTIAL_FORMAT"
        )


class MetadataFetchError(BigQueryError):
    """
    Any failure while fetching metadata from BigQuery.

    The original exception is chained as ``__cause__`` so it shows up in logs,
    while callers only see a single opaque failure.
    """

    def __init__(self, operation: str, details: str = ""):
        super().__init__(
            detail=f"Failed to {operation}{': ' + details if details else ''}",
            code="METADATA_FETCH_ERROR"
        )
        self.operation = operation

