"""Logging utilities for the key vault.

Decorators, middleware, and helpers that add timing, security-event and
error context to the application logs. WebAuthn material (public keys,
signatures, client data, attestation objects, user handles) and bearer tokens
are redacted before anything reaches a handler, however deeply they are nested
in the logged payload.
"""

from datetime import datetime, timezone
import functools
import os
import time
import traceback
from typing import Any, Awaitable, Callable, Dict, Optional
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from secure_key_vault.config import settings
from secure_key_vault.managers.logging_manager import get_logger

REDACTED = "<REDACTED>"

# Matched case-insensitively as substrings of the field name
SENSITIVE_KEYS = (
    "password",
    "token",
    "secret",
    "signature",
    "private_key",
    "public_key",
    "publickey",
    "client_data",
    "clientdatajson",
    "attestation_object",
    "attestationobject",
    "authenticator_data",
    "authenticatordata",
    "user_handle",
    "userhandle",
    "authorization",
)

MAX_LOGGED_VALUE_LENGTH = 100
SLOW_OPERATION_SECONDS = 2.0
SLOW_DB_OPERATION_SECONDS = 1.0
SLOW_REQUEST_SECONDS = 1.0
REQUEST_ID_HEADER = "X-Request-ID"

security_logger = get_logger(prefix="[SECURITY]")
performance_logger = get_logger(prefix="[PERFORMANCE]")
db_logger = get_logger(prefix="[DATABASE]")
error_logger = get_logger(prefix="[ERROR]")
lifecycle_logger = get_logger(prefix="[LIFECYCLE]")


def _is_sensitive(name: str) -> bool:
    lowered = str(name).lower()
    return any(key in lowered for key in SENSITIVE_KEYS)


def _truncate(value: Any) -> str:
    text = str(value)
    if len(text) > MAX_LOGGED_VALUE_LENGTH:
        return text[:MAX_LOGGED_VALUE_LENGTH] + "..."
    return text


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with sensitive mapping entries replaced by ``<REDACTED>``."""
    if isinstance(value, dict):
        return {key: REDACTED if _is_sensitive(key) else redact(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def _describe_call(args: tuple, kwargs: dict) -> Dict[str, Any]:
    described: Dict[str, Any] = {}
    if args:
        described["args"] = [_truncate(arg) for arg in args]
    if kwargs:
        described["kwargs"] = {
            key: REDACTED if _is_sensitive(key) else _truncate(redact(value)) for key, value in kwargs.items()
        }
    return described


def _operation_id() -> str:
    return uuid.uuid4().hex[:8]


def log_security_event(
    event_type: str,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    success: bool = True,
    details: Optional[Dict[str, Any]] = None,
):
    """
    Log a security-relevant event as one structured record.

    Failures are logged at WARNING so they stand out in Loki queries.

    Args:
        event_type: e.g. key_registered, key_authentication, key_clone_suspected
        user_id: Acting or affected user, if known
        ip_address: Client address, if known
        success: Outcome of the event
        details: Extra fields; sensitive entries are redacted
    """
    event_data = {
        "event": "security_event",
        "event_type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "status": "SUCCESS" if success else "FAILURE",
        "user_id": user_id or "anonymous",
        "ip_address": ip_address or "unknown",
        "process": os.getpid(),
        "app": settings.APP_NAME,
        "env": settings.ENV,
    }
    if details:
        event_data["details"] = redact(details)

    if success:
        security_logger.info(event_data)
    else:
        security_logger.warning(event_data)


def log_auth_success(
    event_type: str,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
):
    log_security_event(event_type, user_id=user_id, ip_address=ip_address, success=True, details=details)


def log_auth_failure(
    event_type: str,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
):
    log_security_event(event_type, user_id=user_id, ip_address=ip_address, success=False, details=details)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs each request and its response with timing and client address.

    Every response carries an ``X-Request-ID`` header; a caller-supplied one
    is reused so a ceremony's begin and complete calls can be correlated.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.logger = get_logger(prefix="[REQUEST]")

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or _operation_id()
        started = time.perf_counter()
        summary = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "client_ip": self._client_ip(request),
        }
        self.logger.info({"event": "request_received", **summary})

        try:
            response = await call_next(request)
        except Exception as e:
            self.logger.error(
                {
                    "event": "request_error",
                    **summary,
                    "duration": round(time.perf_counter() - started, 4),
                    "exception": type(e).__name__,
                    "stack_trace": traceback.format_exc(),
                }
            )
            raise

        duration = time.perf_counter() - started
        response.headers[REQUEST_ID_HEADER] = request_id
        record = {"event": "response_sent", **summary, "status_code": response.status_code, "duration": round(duration, 4)}
        if duration > SLOW_REQUEST_SECONDS:
            self.logger.warning({**record, "event": "slow_request"})
        else:
            self.logger.info(record)
        return response

    @staticmethod
    def _client_ip(request: Request) -> str:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        return request.headers.get("x-real-ip") or getattr(request.client, "host", "unknown")


def log_performance(operation_name: str, log_args: bool = False):
    """
    Decorator timing an async function or method.

    Completion is logged at DEBUG, anything slower than
    SLOW_OPERATION_SECONDS at WARNING. Exceptions are logged and re-raised.

    Args:
        operation_name: Name shown in the log records
        log_args: Also log the (redacted, truncated) call arguments
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            operation_id = _operation_id()
            if log_args:
                performance_logger.debug(
                    "[%s] Starting %s with %s", operation_id, operation_name, _describe_call(args, kwargs)
                )
            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                performance_logger.info(
                    "[%s] %s failed after %.3fs: %s",
                    operation_id,
                    operation_name,
                    time.perf_counter() - started,
                    type(e).__name__,
                )
                raise
            duration = time.perf_counter() - started
            if duration > SLOW_OPERATION_SECONDS:
                performance_logger.warning("[%s] SLOW OPERATION: %s took %.3fs", operation_id, operation_name, duration)
            else:
                performance_logger.debug("[%s] %s completed in %.3fs", operation_id, operation_name, duration)
            return result

        return wrapper

    return decorator


def log_database_operation(collection_name: str, operation_type: str):
    """Decorator timing an async MongoDB operation on ``collection_name``."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            operation_id = _operation_id()
            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                db_logger.error(
                    "[%s] %s.%s failed after %.3fs: %s",
                    operation_id,
                    collection_name,
                    operation_type,
                    time.perf_counter() - started,
                    e,
                )
                raise
            duration = time.perf_counter() - started
            if duration > SLOW_DB_OPERATION_SECONDS:
                db_logger.warning(
                    "[%s] SLOW DB OPERATION: %s.%s took %.3fs", operation_id, collection_name, operation_type, duration
                )
            else:
                db_logger.debug("[%s] %s.%s in %.3fs", operation_id, collection_name, operation_type, duration)
            return result

        return wrapper

    return decorator


def log_application_lifecycle(event: str, details: Optional[Dict[str, Any]] = None):
    """Log startup/shutdown milestones."""
    event_data = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    if details:
        event_data.update(details)
    lifecycle_logger.info("APPLICATION LIFECYCLE: %s - %s", event, event_data)


def log_error_with_context(error: Exception, context: Optional[Dict[str, Any]] = None, operation: Optional[str] = None):
    """
    Log an exception with its stack trace and (redacted) context.

    Args:
        error: The exception that occurred
        context: Identifiers that help locate the failing record
        operation: Name of the operation that failed
    """
    error_data = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "stack_trace": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
    }
    if operation:
        error_data["operation"] = operation
    if context:
        error_data["context"] = redact(context)
    error_logger.error("ERROR OCCURRED: %s", error_data)
