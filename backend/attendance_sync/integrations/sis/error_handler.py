"""
Error taxonomy and logging utilities for the SIS attendance integration.

Transient upstream failures (rate limits, network trouble) are retryable;
persistent ones (authentication, not-found) are not. Configuration and
repository errors are fatal to a sync run.
"""

import logging
import traceback
from datetime import datetime
from typing import Dict, Any, List, Optional, Union, TYPE_CHECKING

from attendance_sync.core.circuit_breaker import CircuitOpenError

if TYPE_CHECKING:
    from attendance_sync.schemas.sync import SyncResult


# Configure SIS-specific logger
sis_logger = logging.getLogger('sis_integration')


class SISErrorSeverity:
    """Error severity levels for SIS operations."""
    LOW = "low"           # Minor issues, sync continues
    MEDIUM = "medium"     # A record or page is affected
    HIGH = "high"         # A unit of work is lost
    CRITICAL = "critical" # The run cannot continue


class SISErrorCategory:
    """Error categories for better classification."""
    AUTHENTICATION = "authentication"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    DATA_VALIDATION = "data_validation"
    RATE_LIMITING = "rate_limiting"
    CONFIGURATION = "configuration"
    DATABASE_ERROR = "database_error"
    TIMEOUT = "timeout"
    SYNC = "sync"
    UNKNOWN = "unknown"


class SISError(Exception):
    """Base exception for SIS integration errors with enhanced metadata."""

    def __init__(
        self,
        message: str,
        category: str = SISErrorCategory.UNKNOWN,
        severity: str = SISErrorSeverity.MEDIUM,
        school_code: Optional[str] = None,
        operation_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = True,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.school_code = school_code
        self.operation_type = operation_type
        self.details = details or {}
        self.retryable = retryable
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/storage."""
        return {
            'message': self.message,
            'error_type': type(self).__name__,
            'category': self.category,
            'severity': self.severity,
            'school_code': self.school_code,
            'operation_type': self.operation_type,
            'details': self.details,
            'retryable': self.retryable,
            'timestamp': self.timestamp.isoformat(),
            'original_exception': repr(self.original_exception) if self.original_exception else None
        }


class SISAuthenticationError(SISError):
    """Credentials rejected or expired; needs an operator to fix."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=SISErrorCategory.AUTHENTICATION,
            severity=SISErrorSeverity.HIGH,
            retryable=False,
            **kwargs
        )


class SISNotFoundError(SISError):
    """The requested school or resource does not exist upstream."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=SISErrorCategory.NOT_FOUND,
            severity=SISErrorSeverity.HIGH,
            retryable=False,
            **kwargs
        )


class SISNetworkError(SISError):
    """Network-related errors, timeouts and upstream 5xx responses."""

    def __init__(self, message: str, timeout: bool = False, **kwargs):
        super().__init__(
            message,
            category=SISErrorCategory.TIMEOUT if timeout else SISErrorCategory.NETWORK,
            severity=SISErrorSeverity.MEDIUM,
            retryable=True,
            **kwargs
        )


class SISRateLimitError(SISError):
    """Rate limiting errors."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        details = kwargs.pop('details', None) or {}
        details['retry_after'] = retry_after
        self.retry_after = retry_after

        super().__init__(
            message,
            category=SISErrorCategory.RATE_LIMITING,
            severity=SISErrorSeverity.LOW,
            retryable=True,
            details=details,
            **kwargs
        )


class SISDataValidationError(SISError):
    """Data validation errors."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=SISErrorCategory.DATA_VALIDATION,
            severity=SISErrorSeverity.MEDIUM,
            retryable=False,
            **kwargs
        )


class SISConfigurationError(SISError):
    """Malformed sync configuration. Raised before any I/O happens."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=SISErrorCategory.CONFIGURATION,
            severity=SISErrorSeverity.HIGH,
            retryable=False,
            **kwargs
        )


ConfigurationError = SISConfigurationError


class RepositoryError(SISError):
    """Local persistence failure (attendance upsert or checkpoint write)."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=SISErrorCategory.DATABASE_ERROR,
            severity=SISErrorSeverity.CRITICAL,
            retryable=False,
            **kwargs
        )


class SyncExecutionError(SISError):
    """
    Fatal sync failure.

    Carries the unit of work that failed and the partial result of the run so
    the caller can decide whether to resume from the last checkpoint.
    """

    def __init__(
        self,
        message: str,
        school_code: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        attempts: int = 0,
        result: Optional["SyncResult"] = None,
        **kwargs
    ):
        details = kwargs.pop('details', None) or {}
        details.update({
            'start_date': start_date,
            'end_date': end_date,
            'attempts': attempts,
        })
        super().__init__(
            message,
            category=SISErrorCategory.SYNC,
            severity=SISErrorSeverity.CRITICAL,
            school_code=school_code,
            details=details,
            retryable=False,
            **kwargs
        )
        self.start_date = start_date
        self.end_date = end_date
        self.attempts = attempts
        self.result = result


def is_retryable_error(error: BaseException) -> bool:
    """Default retry predicate for upstream calls."""
    if isinstance(error, SISError):
        return error.retryable
    if isinstance(error, CircuitOpenError):
        return False
    return True


class SISErrorHandler:
    """Central error handler for SIS operations."""

    def __init__(self, max_log_entries: int = 1000):
        self._error_log: List[Dict[str, Any]] = []
        self._max_log_entries = max_log_entries

    def log_error(
        self,
        error: Union[SISError, Exception],
        context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Log an error with full context.

        Args:
            error: The error to log
            context: Additional context information

        Returns:
            The error entry that was stored
        """
        if isinstance(error, SISError):
            error_dict = error.to_dict()
        else:
            error_dict = {
                'message': str(error),
                'error_type': type(error).__name__,
                'category': SISErrorCategory.UNKNOWN,
                'severity': SISErrorSeverity.MEDIUM,
                'timestamp': datetime.utcnow().isoformat(),
                'traceback': ''.join(traceback.format_exception(type(error), error, error.__traceback__))
            }

        if context:
            error_dict.update(context)

        # Log to appropriate level based on severity
        severity = error_dict.get('severity', SISErrorSeverity.MEDIUM)
        log_message = f"SIS Error [{severity.upper()}]: {error_dict['message']}"
        extra = {'sis_error': error_dict}

        if severity == SISErrorSeverity.CRITICAL:
            sis_logger.critical(log_message, extra=extra)
        elif severity == SISErrorSeverity.HIGH:
            sis_logger.error(log_message, extra=extra)
        elif severity == SISErrorSeverity.MEDIUM:
            sis_logger.warning(log_message, extra=extra)
        else:
            sis_logger.info(log_message, extra=extra)

        # Keep a bounded in-memory log for the recent errors API
        self._error_log.append(error_dict)
        if len(self._error_log) > self._max_log_entries:
            self._error_log.pop(0)

        return error_dict

    def get_recent_errors(
        self,
        limit: int = 50,
        severity_filter: Optional[str] = None,
        category_filter: Optional[str] = None,
        school_filter: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Get recent errors with optional filtering."""
        filtered_errors = self._error_log.copy()

        if severity_filter:
            filtered_errors = [e for e in filtered_errors if e.get('severity') == severity_filter]

        if category_filter:
            filtered_errors = [e for e in filtered_errors if e.get('category') == category_filter]

        if school_filter:
            filtered_errors = [e for e in filtered_errors if e.get('school_code') == school_filter]

        return filtered_errors[-limit:]

    def clear(self):
        self._error_log.clear()


# Global error handler instance
global_error_handler = SISErrorHandler()
