"""
Data models for Secure Key Vault.

Domain models live in key_models; HTTP request/response models in api_models.
"""

from .key_models import (
    AssignmentStatus,
    AuditAction,
    AuditRecord,
    AuthenticationResult,
    CallerIdentity,
    CeremonyType,
    ChallengeRecord,
    CredentialStatus,
    InventoryReport,
    KeyAssignment,
    KeyDetails,
    KeySearchFilters,
    SecurityKeyCredential,
    UserIdentity,
    utc_now,
)

__all__ = [
    "AssignmentStatus",
    "AuditAction",
    "AuditRecord",
    "AuthenticationResult",
    "CallerIdentity",
    "CeremonyType",
    "ChallengeRecord",
    "CredentialStatus",
    "InventoryReport",
    "KeyAssignment",
    "KeyDetails",
    "KeySearchFilters",
    "SecurityKeyCredential",
    "UserIdentity",
    "utc_now",
]
