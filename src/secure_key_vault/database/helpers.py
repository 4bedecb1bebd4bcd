"""Small helpers shared by the Mongo-backed repositories."""

import functools
from typing import Any, Callable, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError, PyMongoError

from secure_key_vault.exceptions import StoreUnavailableError
from secure_key_vault.managers.logging_manager import get_logger

logger = get_logger(prefix="[DATABASE]")


def new_id() -> str:
    return str(ObjectId())


def to_object_id(value: str) -> Optional[ObjectId]:
    """Parse a storage id; None for anything that is not a valid ObjectId."""
    if value is None:
        return None
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def duplicate_key_field(error: DuplicateKeyError) -> Optional[str]:
    """Name the field whose unique index rejected a write."""
    details = error.details or {}
    key_pattern = details.get("keyPattern") or {}
    if key_pattern:
        return next(iter(key_pattern))
    message = str(error)
    for field in ("serial_number", "credential_id", "key_id", "email"):
        if field in message:
            return field
    return None


def translate_store_errors(operation: str) -> Callable:
    """Re-raise driver failures (other than duplicate keys) as StoreUnavailableError."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return await func(*args, **kwargs)
            except DuplicateKeyError:
                raise
            except PyMongoError as e:
                logger.error("MongoDB failure during %s: %s", operation, e)
                raise StoreUnavailableError(
                    f"Database unavailable during {operation}", context={"operation": operation}
                ) from e

        return wrapper

    return decorator
