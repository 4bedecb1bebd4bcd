"""
Access control gate.

Turns a bearer token into a CallerIdentity and checks roles. Admin login
itself (password + TOTP) happens elsewhere; this module only issues the
access token after a successful key authentication and validates tokens.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt

from secure_key_vault.config import settings
from secure_key_vault.exceptions import InvalidTokenError, PermissionDeniedError
from secure_key_vault.managers.logging_manager import get_logger
from secure_key_vault.models.key_models import CallerIdentity, UserIdentity
from secure_key_vault.utils.logging_utils import log_security_event

logger = get_logger(prefix="[Access Control]")

ROLE_ADMIN = "admin"


def _secret_key() -> str:
    return settings.SECRET_KEY.get_secret_value()


def create_access_token(user: UserIdentity, expires_minutes: Optional[int] = None) -> str:
    """
    Create a JWT access token for a user who just authenticated with a key.

    Args:
        user: The authenticated user.
        expires_minutes: Overrides ACCESS_TOKEN_EXPIRE_MINUTES.

    Returns:
        str: Encoded JWT.
    """
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {
        "sub": user.user_id,
        "role": user.role,
        "email": user.email,
        "iat": now,
        "exp": expire,
        "type": "access",
    }
    token = jwt.encode(claims, _secret_key(), algorithm=settings.ALGORITHM)
    logger.debug("JWT access token created for user: %s", user.user_id)
    return token


def decode_access_token(token: str) -> CallerIdentity:
    """
    Validate a bearer token.

    Raises:
        InvalidTokenError: expired, tampered, or missing claims.
    """
    try:
        payload = jwt.decode(token, _secret_key(), algorithms=[settings.ALGORITHM])
    except ExpiredSignatureError as e:
        logger.info("Token has expired")
        raise InvalidTokenError("Token has expired") from e
    except JWTError as e:
        logger.warning("Invalid token: %s", e)
        raise InvalidTokenError("Invalid token") from e

    caller_id = payload.get("sub")
    role = payload.get("role")
    if not caller_id or not role:
        logger.warning("JWT payload missing 'sub' or 'role' claim")
        raise InvalidTokenError("Token is missing required claims")
    return CallerIdentity(caller_id=caller_id, role=role)


def require_role(caller: CallerIdentity, *roles: str) -> CallerIdentity:
    if caller.role not in roles:
        log_security_event(
            event_type="access_denied",
            user_id=caller.caller_id,
            success=False,
            details={"role": caller.role, "required": list(roles)},
        )
        raise PermissionDeniedError(
            f"Role '{caller.role}' may not perform this operation", context={"required_roles": list(roles)}
        )
    return caller


def require_admin(caller: CallerIdentity) -> CallerIdentity:
    return require_role(caller, ROLE_ADMIN)


def require_self_or_admin(caller: CallerIdentity, user_id: str) -> CallerIdentity:
    """Registration is allowed for the user themself or an admin acting for them."""
    if caller.caller_id == user_id:
        return caller
    return require_role(caller, ROLE_ADMIN)
