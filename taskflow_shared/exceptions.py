"""
Exception hierarchy for the TaskFlow session client.

This module defines structured exceptions with error codes, context information,
and recovery suggestions for consistent error handling across the client.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorCode(Enum):
    """Standardized error codes for the TaskFlow session client."""

    # Authentication and Session Errors (1000-1099)
    AUTH_INVALID_CREDENTIALS = "AUTH_1001"
    AUTH_TOKEN_EXPIRED = "AUTH_1002"
    AUTH_REGISTRATION_FAILED = "AUTH_1003"
    AUTH_REFRESH_REJECTED = "AUTH_1004"
    AUTH_NO_REFRESH_TOKEN = "AUTH_1005"
    AUTH_NOT_AUTHENTICATED = "AUTH_1006"
    AUTH_IDENTITY_UPDATE_FAILED = "AUTH_1007"
    AUTH_PASSWORD_CHANGE_FAILED = "AUTH_1008"
    AUTH_SESSION_ENDED = "AUTH_1009"
    AUTH_INVALID_STATE_TRANSITION = "AUTH_1010"

    # Network and Communication Errors (2000-2099)
    NETWORK_CONNECTION_FAILED = "NETWORK_2001"
    NETWORK_TIMEOUT = "NETWORK_2002"

    # Storage Errors (3000-3099)
    STORAGE_UNAVAILABLE = "STORAGE_3001"
    STORAGE_WRITE_FAILED = "STORAGE_3002"
    STORAGE_READ_FAILED = "STORAGE_3003"
    STORAGE_CORRUPT_RECORD = "STORAGE_3004"

    # Validation Errors (4000-4099)
    VALIDATION_INVALID_INPUT = "VALIDATION_4001"
    VALIDATION_MISSING_REQUIRED_FIELD = "VALIDATION_4002"
    VALIDATION_INVALID_FORMAT = "VALIDATION_4003"

    # API Errors (5000-5099)
    API_UNAUTHORIZED = "API_5001"
    API_FORBIDDEN = "API_5002"
    API_NOT_FOUND = "API_5003"
    API_REQUEST_FAILED = "API_5004"
    API_SERVER_ERROR = "API_5005"
    API_MALFORMED_RESPONSE = "API_5006"

    # Configuration Errors (8000-8099)
    CONFIG_FILE_NOT_FOUND = "CONFIG_8001"
    CONFIG_INVALID_FORMAT = "CONFIG_8002"
    CONFIG_INVALID_VALUE = "CONFIG_8004"

    # Internal Errors (9000-9099)
    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    RECONNECT = "reconnect"
    REFRESH_TOKEN = "refresh_token"
    RELOGIN = "relogin"
    USER_INTERVENTION = "user_intervention"
    IGNORE = "ignore"


class TaskflowError(Exception):
    """
    Base exception class for all TaskFlow session client errors.

    Provides structured error information including error codes, context,
    and recovery suggestions for consistent error handling.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }


# Specific exception classes for different error categories

class AuthenticationError(TaskflowError):
    """Login failures: bad input, rejected credentials, or an unreachable server."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.AUTH_INVALID_CREDENTIALS, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.MEDIUM)
        kwargs.setdefault('recovery_actions', [RecoveryAction.USER_INTERVENTION])
        super().__init__(message=message, error_code=error_code, **kwargs)


class RegistrationError(TaskflowError):
    """Registration failures. Same shape as AuthenticationError."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.AUTH_REGISTRATION_FAILED, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.MEDIUM)
        kwargs.setdefault('recovery_actions', [RecoveryAction.USER_INTERVENTION])
        super().__init__(message=message, error_code=error_code, **kwargs)


class RenewalError(TaskflowError):
    """
    Credential renewal failed.

    Not recoverable locally: the refresh credential is dead, so the whole
    session is terminated for every pending and future request.
    """

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.AUTH_REFRESH_REJECTED, **kwargs):
        kwargs.setdefault('user_message', "Session expired. Please log in again.")
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.RELOGIN],
            **kwargs
        )


class IdentityUpdateError(TaskflowError):
    """Profile, preference or password updates that the server refused."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.AUTH_IDENTITY_UPDATE_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class StorageError(TaskflowError):
    """
    Persistence backend unavailable or unusable.

    Raised by storage backends only; the credential store absorbs it and
    degrades to memory-only operation.
    """

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.STORAGE_UNAVAILABLE, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.IGNORE],
            **kwargs
        )


class NetworkError(TaskflowError):
    """Network and communication related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.NETWORK_CONNECTION_FAILED, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY_WITH_BACKOFF, RecoveryAction.RECONNECT],
            **kwargs
        )


class APIError(TaskflowError):
    """Non-success HTTP response from the TaskFlow API."""

    def __init__(
        self,
        message: str,
        status_code: int,
        error_code: Optional[ErrorCode] = None,
        server_code: Optional[str] = None,
        details: Optional[Any] = None,
        **kwargs
    ):
        context = kwargs.pop('context', {})
        context['status_code'] = status_code
        if server_code:
            context['server_code'] = server_code

        super().__init__(
            message=message,
            error_code=error_code or self.code_for_status(status_code),
            severity=ErrorSeverity.HIGH if status_code >= 500 else ErrorSeverity.MEDIUM,
            context=context,
            **kwargs
        )
        self.status_code = status_code
        self.server_code = server_code
        self.details = details

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401

    @staticmethod
    def code_for_status(status_code: int) -> ErrorCode:
        """Map an HTTP status to an error code."""
        code_mapping = {
            401: ErrorCode.API_UNAUTHORIZED,
            403: ErrorCode.API_FORBIDDEN,
            404: ErrorCode.API_NOT_FOUND,
        }
        if status_code >= 500:
            return ErrorCode.API_SERVER_ERROR
        return code_mapping.get(status_code, ErrorCode.API_REQUEST_FAILED)


class ValidationError(TaskflowError):
    """Input validation related errors."""

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if field_name:
            context['field_name'] = field_name

        error_code = kwargs.pop('error_code', ErrorCode.VALIDATION_INVALID_INPUT)
        severity = kwargs.pop('severity', ErrorSeverity.LOW)
        recovery_actions = kwargs.pop('recovery_actions', [RecoveryAction.USER_INTERVENTION])

        super().__init__(
            message=message,
            error_code=error_code,
            severity=severity,
            recovery_actions=recovery_actions,
            context=context,
            **kwargs
        )


class ConfigurationError(TaskflowError):
    """Configuration related errors."""

    def __init__(self, message: str, error_code: ErrorCode, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


class SessionStateError(TaskflowError):
    """Illegal session state transition."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_INVALID_STATE_TRANSITION,
            severity=ErrorSeverity.HIGH,
            **kwargs
        )


def handle_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    default_error_code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED_ERROR
) -> TaskflowError:
    """
    Convert a generic exception to a structured TaskflowError.

    Args:
        exception: The original exception
        context: Additional context information
        default_error_code: Default error code if specific mapping not found

    Returns:
        Structured TaskflowError
    """
    if isinstance(exception, TaskflowError):
        return exception

    exception_mapping = {
        ConnectionError: (ErrorCode.NETWORK_CONNECTION_FAILED, NetworkError),
        TimeoutError: (ErrorCode.NETWORK_TIMEOUT, NetworkError),
        PermissionError: (ErrorCode.STORAGE_UNAVAILABLE, StorageError),
        ValueError: (ErrorCode.VALIDATION_INVALID_INPUT, ValidationError),
    }

    error_code, error_class = exception_mapping.get(
        type(exception),
        (default_error_code, TaskflowError)
    )

    return error_class(
        message=str(exception),
        error_code=error_code,
        context=context,
        cause=exception
    )
