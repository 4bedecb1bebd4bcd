"""Utility modules for Secure Key Vault."""

from .logging_utils import (
    RequestLoggingMiddleware,
    log_application_lifecycle,
    log_auth_failure,
    log_auth_success,
    log_database_operation,
    log_error_with_context,
    log_performance,
    log_security_event,
)

__all__ = [
    "log_performance",
    "log_database_operation",
    "log_security_event",
    "log_auth_success",
    "log_auth_failure",
    "RequestLoggingMiddleware",
    "log_application_lifecycle",
    "log_error_with_context",
]
