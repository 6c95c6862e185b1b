# activitybot/core/errors.py
"""
Centralized error handling for the activity engine and its cogs.

Store and cache failures are wrapped in BotError subclasses so they carry a
category and severity; `error_handler` counts them and logs by severity.
"""

import inspect
import logging
from collections import deque
from enum import Enum
from typing import Any, Callable
from functools import wraps
from datetime import datetime, timezone

logger = logging.getLogger("activitybot.error_handler")


class ErrorSeverity(Enum):
    """Error severity levels for monitoring."""
    LOW = "low"  # Expected errors (bad input, missing config)
    MEDIUM = "medium"  # Recoverable, e.g. cache down
    HIGH = "high"  # Data at risk until the next retry
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories for error classification."""
    USER_INPUT = "user_input"
    DATABASE = "database"
    CACHE = "cache"
    CONFIG = "config"
    INTERNAL = "internal"


class BotError(Exception):
    """Base exception carrying an operator-facing message and the wrapped cause."""

    def __init__(
            self,
            user_message: str,
            log_message: str = None,
            category: ErrorCategory = ErrorCategory.INTERNAL,
            severity: ErrorSeverity = ErrorSeverity.MEDIUM,
            original_error: Exception = None
    ):
        self.user_message = user_message
        self.log_message = log_message or user_message
        self.category = category
        self.severity = severity
        self.original_error = original_error
        super().__init__(self.log_message)


class UserInputError(BotError):
    """Rejected input, e.g. a negative threshold."""

    def __init__(self, user_message: str, log_message: str = None):
        super().__init__(user_message, log_message, ErrorCategory.USER_INPUT, ErrorSeverity.LOW)


class ValidationError(UserInputError):
    pass


class DatabaseError(BotError):
    """A durable store transaction failed and was rolled back."""

    def __init__(self, user_message: str, log_message: str = None, original_error: Exception = None):
        super().__init__(user_message, log_message, ErrorCategory.DATABASE, ErrorSeverity.HIGH, original_error)


class CacheError(BotError):
    """The session cache is unreachable. Never fatal."""

    def __init__(self, user_message: str, log_message: str = None, original_error: Exception = None):
        super().__init__(user_message, log_message, ErrorCategory.CACHE, ErrorSeverity.MEDIUM, original_error)


class ErrorHandler:
    """Records errors by category and logs them by severity."""

    def __init__(self, max_error_history: int = 100):
        self.error_count = 0
        self.errors_by_category = {}
        self.last_errors = deque(maxlen=max_error_history)

    def log_error(
            self,
            error: Exception,
            context: dict = None,
            severity: ErrorSeverity = ErrorSeverity.MEDIUM,
            category: ErrorCategory = ErrorCategory.INTERNAL
    ):
        """
        Record and log an error.

        A BotError's own severity and category take precedence over the
        arguments.
        """
        if isinstance(error, BotError):
            severity = error.severity
            category = error.category

        self.error_count += 1
        self.errors_by_category[category.value] = self.errors_by_category.get(category.value, 0) + 1

        cause = getattr(error, "original_error", None)
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "error_type": type(error).__name__,
            "severity": severity.value,
            "category": category.value,
            "message": str(error),
        }
        if cause is not None:
            entry["cause"] = f"{type(cause).__name__}: {cause}"
        if context:
            entry["context"] = context
        self.last_errors.append(entry)

        message = f"[{category.value}] {type(error).__name__}: {error}"
        if cause is not None:
            message += f" (caused by {entry['cause']})"
        if context:
            message += f" | context={context}"

        if severity in (ErrorSeverity.CRITICAL, ErrorSeverity.HIGH):
            level = logging.CRITICAL if severity == ErrorSeverity.CRITICAL else logging.ERROR
            logger.log(level, message, exc_info=(type(error), error, error.__traceback__))
        elif severity == ErrorSeverity.MEDIUM:
            logger.error(message)
        else:
            logger.warning(message)

    def get_stats(self) -> dict:
        return {
            "total_errors": self.error_count,
            "by_category": self.errors_by_category.copy(),
            "recent_errors": list(self.last_errors)[-10:],
        }

    def reset(self):
        """Forget recorded errors."""
        self.error_count = 0
        self.errors_by_category = {}
        self.last_errors.clear()


# Global error handler instance
error_handler = ErrorHandler()


def safe_operation(
        fallback_value: Any = None,
        log_message: str = None,
        severity: ErrorSeverity = ErrorSeverity.LOW,
        category: ErrorCategory = ErrorCategory.INTERNAL
):
    """
    Decorator for background coroutines that must not kill their task loop.

    Usage:
        @safe_operation(fallback_value=[], log_message="Failed to expire AFK status")
        async def _expire_afk(self, now):
            ...
    """

    def decorator(func: Callable) -> Callable:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"safe_operation expects a coroutine function, got {func.__name__}")

        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                error_handler.log_error(
                    e,
                    context={"function": func.__name__, "message": log_message},
                    severity=severity,
                    category=category
                )
                return fallback_value

        return wrapper

    return decorator
