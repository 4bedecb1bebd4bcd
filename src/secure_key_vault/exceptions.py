"""
Secure Key Vault exception hierarchy.

Every domain failure derives from KeyVaultError and belongs to exactly one
category of the taxonomy:

- NotFoundError: a challenge, credential, key or user does not exist (404).
- ConflictError: the key's assignment state forbids the transition (409).
- VerificationFailureError: attestation/assertion or ownership checks failed.
  Reported to callers as a generic 401 without the specific reason.
- MalformedInputError: the client payload cannot be decoded (400).
- PermissionDeniedError: the caller's role forbids the operation (403).
- StoreUnavailableError: Redis or MongoDB is unreachable. Reported as an
  opaque 500; details only reach the server logs.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class KeyVaultError(Exception):
    """
    Base exception for all key vault errors.

    Carries an error code, a user-facing message and context for audit and
    debugging.
    """

    http_status: int = 500
    default_user_message: str = "An error occurred while processing your request. Please try again."

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
    ):
        """
        Initialize the error.

        Args:
            message: Technical error message for logging
            error_code: Unique error code for categorization
            context: Additional context information
            user_message: User-friendly error message
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__.upper()
        self.context = context or {}
        self.user_message = user_message or self.default_user_message
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and audit details."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        return f"{self.__class__.__name__}: {self.message}"


# --- Taxonomy ---


class NotFoundError(KeyVaultError):
    http_status = 404
    default_user_message = "The requested resource was not found."


class ConflictError(KeyVaultError):
    http_status = 409
    default_user_message = "The key is not in a state that allows this operation."
    retryable: bool = False


class VerificationFailureError(KeyVaultError):
    http_status = 401
    default_user_message = "Verification failed."


class MalformedInputError(KeyVaultError):
    http_status = 400
    default_user_message = "The request payload is malformed."


class PermissionDeniedError(KeyVaultError):
    http_status = 403
    default_user_message = "You do not have permission to perform this operation."


class StoreUnavailableError(KeyVaultError):
    http_status = 500
    default_user_message = "Internal server error."


# --- Challenges ---


class ChallengeExpiredOrMissingError(NotFoundError):
    """No live challenge for the (user, ceremony) pair, or the response was signed over a superseded one."""

    default_user_message = "The challenge has expired or is missing. Please start again."


# --- Credentials and keys ---


class CredentialNotFoundError(NotFoundError):
    default_user_message = "Security key not recognised."


class KeyNotFoundError(NotFoundError):
    default_user_message = "Security key not found."


class UserNotFoundError(NotFoundError):
    default_user_message = "User not found."


class NoCredentialsAssignedError(NotFoundError):
    default_user_message = "No security keys are assigned to this user."


class KeyNotAvailableError(ConflictError):
    default_user_message = "Key is not available for assignment."


class KeyNotAssignedError(ConflictError):
    default_user_message = "Key is not currently assigned."


class DuplicateCredentialError(ConflictError):
    default_user_message = "This security key is already registered."


class SerialNumberCollisionError(ConflictError):
    """Serial number generation kept colliding. Safe to retry the whole registration."""

    retryable = True
    default_user_message = "Could not allocate a serial number. Please retry."


# --- Ceremony input and verification ---


class MalformedAttestationError(MalformedInputError):
    pass


class MalformedAssertionError(MalformedInputError):
    pass


class AttestationVerificationFailedError(VerificationFailureError):
    def __init__(self, detail: str, **kwargs: Any):
        super().__init__(f"Attestation verification failed: {detail}", **kwargs)
        self.detail = detail


class AssertionVerificationFailedError(VerificationFailureError):
    def __init__(self, detail: str, **kwargs: Any):
        super().__init__(f"Assertion verification failed: {detail}", **kwargs)
        self.detail = detail


class CredentialNotOwnedByUserError(VerificationFailureError):
    pass


class InvalidTokenError(VerificationFailureError):
    default_user_message = "Could not validate credentials."


class SignatureCounterRegressionError(VerificationFailureError):
    """The asserted signature counter did not advance past the stored one; the key may be cloned."""

    def __init__(self, stored_count: int, asserted_count: int, **kwargs: Any):
        super().__init__(
            f"Signature counter regression: stored={stored_count} asserted={asserted_count}",
            **kwargs,
        )
        self.stored_count = stored_count
        self.asserted_count = asserted_count


class AuthenticationFailedError(VerificationFailureError):
    """
    Generic authentication failure returned to callers.

    The specific cause is kept on `reason` for logs and audit only, so a
    caller cannot learn whether a credential exists or which check failed.
    """

    default_user_message = "Authentication failed."

    def __init__(self, reason: KeyVaultError, **kwargs: Any):
        super().__init__("Authentication failed", context={"reason": reason.error_code}, **kwargs)
        self.reason = reason
