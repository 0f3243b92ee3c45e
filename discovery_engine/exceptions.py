"""
Standardized exception hierarchy for the discovery engine
Provides rich context, consistent logging, and user-friendly error messages
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from uuid import uuid4
import logging

logger = logging.getLogger(__name__)


class DiscoveryEngineError(Exception):
    """
    Base exception for all discovery engine errors

    Provides:
    - Automatic timestamping
    - Request ID for tracing
    - User-friendly messages
    - Structured context
    - Automatic logging

    Example:
        raise DiscoveryEngineError(
            message="Failed to merge discoveries",
            user_id="a1b2c3",
            operation="merge_discoveries",
            context={"discoveries": 12}
        )
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        user_id: Optional[str] = None,
        request_id: Optional[str] = None,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.user_id = user_id
        self.request_id = request_id or str(uuid4())
        self.operation = operation
        self.context = context or {}
        self.cause = cause
        self.user_message = user_message or "An error occurred. Please try again."
        self.timestamp = datetime.now(timezone.utc)

        # Auto-log on creation
        self._log_error()

    def _log_error(self) -> None:
        """Log error with full context"""
        log_data = {
            "error_type": self.__class__.__name__,
            "error_message": self.message,  # Avoid conflict with logging's 'message' field
            "request_id": self.request_id,
            "user_id": self.user_id,
            "operation": self.operation,
            "error_context": self.context,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat()
        }

        if self.cause:
            log_data["cause"] = str(self.cause)
            logger.error(f"{self.__class__.__name__}: {self.message}", extra=log_data, exc_info=self.cause)
        else:
            logger.error(f"{self.__class__.__name__}: {self.message}", extra=log_data)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for API responses"""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "user_message": self.user_message,
            "request_id": self.request_id,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat()
        }


# ==========================================
# Validation Errors (Caller Input)
# ==========================================

class ValidationError(DiscoveryEngineError):
    """
    Raised when caller input fails validation

    Examples:
    - Unknown discovery status filter
    - Confidence threshold outside [0, 1]

    Example:
        raise ValidationError(
            message="Unknown status 'maybe'",
            field="status",
            value="maybe",
            user_id="a1b2c3"
        )
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs
    ):
        self.field = field
        self.value = value
        super().__init__(
            message=message,
            user_message=f"Invalid {field}: {message}" if field else message,
            context={"field": field, "value": value},
            **kwargs
        )


# ==========================================
# Store Errors
# ==========================================

class DatabaseError(DiscoveryEngineError):
    """
    Base class for event store and discovery store errors
    """
    pass


class StoreUnavailableError(DatabaseError):
    """Event store or discovery store could not be reached in time"""

    retryable = True

    def __init__(
        self,
        message: str = "Store unavailable",
        store: Optional[str] = None,
        **kwargs
    ):
        self.store = store
        context = kwargs.pop("context", None) or {}
        context.setdefault("store", store)
        super().__init__(
            message=message,
            user_message="We're having trouble reaching your health history. Please try again in a moment.",
            context=context,
            **kwargs
        )


class QueryError(DatabaseError):
    """Store query execution failed"""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        **kwargs
    ):
        self.query = query
        context = kwargs.pop("context", None) or {}
        context.setdefault("query", query)
        super().__init__(
            message=message,
            user_message="We encountered an issue saving your discoveries. Please try again.",
            context=context,
            **kwargs
        )


class RecordNotFoundError(DatabaseError):
    """Requested record does not exist"""

    def __init__(
        self,
        message: str,
        record_type: Optional[str] = None,
        record_id: Optional[str] = None,
        **kwargs
    ):
        self.record_type = record_type
        self.record_id = record_id
        super().__init__(
            message=message,
            user_message=f"{record_type or 'Record'} not found.",
            context={"record_type": record_type, "record_id": record_id},
            **kwargs
        )


# ==========================================
# Configuration Errors
# ==========================================

class ConfigurationError(DiscoveryEngineError):
    """System configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        self.config_key = config_key
        super().__init__(
            message=message,
            user_message="The system is not properly configured. Please contact support.",
            context={"config_key": config_key},
            **kwargs
        )


# ==========================================
# Helper Functions
# ==========================================

def wrap_external_exception(
    error: BaseException,
    operation: str,
    user_id: Optional[str] = None,
    store: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None
) -> DiscoveryEngineError:
    """
    Wrap external exceptions (psycopg, timeouts, etc.) into our exception hierarchy

    Args:
        error: Original exception
        operation: What operation was being performed
        user_id: User ID if applicable
        store: Which store was being called ("events" or "discoveries")
        context: Additional context

    Returns:
        Appropriate DiscoveryEngineError subclass

    Example:
        try:
            await cur.execute(query)
        except psycopg.Error as e:
            raise wrap_external_exception(
                e,
                operation="merge_discoveries",
                user_id="a1b2c3",
                store="discoveries"
            )
    """
    import psycopg
    import psycopg_pool

    if isinstance(error, DiscoveryEngineError):
        return error

    # Timeouts and connectivity are retryable
    if isinstance(error, (asyncio.TimeoutError, psycopg_pool.PoolTimeout)):
        return StoreUnavailableError(
            message=f"{operation} timed out",
            store=store,
            user_id=user_id,
            operation=operation,
            context=context,
            cause=error
        )
    if isinstance(error, (psycopg.OperationalError, psycopg.InterfaceError, OSError)):
        return StoreUnavailableError(
            message=f"Store connection failed: {str(error)}",
            store=store,
            user_id=user_id,
            operation=operation,
            context=context,
            cause=error
        )
    if isinstance(error, psycopg.Error):
        return QueryError(
            message=f"Store query failed: {str(error)}",
            user_id=user_id,
            operation=operation,
            context=context,
            cause=error
        )

    # Generic fallback
    return DiscoveryEngineError(
        message=f"{operation} failed: {str(error)}",
        user_id=user_id,
        operation=operation,
        context=context,
        cause=error
    )
