"""
Domain models for security key custody.

A SecurityKeyCredential is one physical FIDO2 key. A KeyAssignment binds a key
to a user; at most one assignment per key is active. A ChallengeRecord is the
single live challenge for a (user, ceremony type) pair.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CeremonyType(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


class CredentialStatus(str, Enum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"


class AssignmentStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class AuditAction(str, Enum):
    KEY_REGISTERED = "KEY_REGISTERED"
    KEY_ASSIGNED = "KEY_ASSIGNED"
    KEY_REVOKED = "KEY_REVOKED"
    KEY_AUTHENTICATED = "KEY_AUTHENTICATED"
    KEY_CLONE_SUSPECTED = "KEY_CLONE_SUSPECTED"


class SecurityKeyCredential(BaseModel):
    """A registered physical security key."""

    id: str = Field(..., description="Storage id of the key")
    serial_number: str = Field(..., description="Human readable, unique, immutable serial number")
    credential_id: str = Field(..., description="WebAuthn credential id, base64url without padding")
    public_key: str = Field(..., description="COSE public key, base64url without padding")
    aaguid: Optional[str] = Field(None, description="Authenticator model id, 32 lowercase hex characters")
    sign_count: int = Field(0, ge=0)
    status: CredentialStatus = CredentialStatus.AVAILABLE
    current_assignment_id: Optional[str] = None
    user_handle: Optional[str] = None
    transports: List[str] = Field(default_factory=list)
    device_name: str = "Security Key"
    attestation_format: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    last_used: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    @model_validator(mode="after")
    def check_assignment_consistency(self):
        assigned = self.status == CredentialStatus.ASSIGNED
        if assigned != (self.current_assignment_id is not None):
            raise ValueError("status must be 'assigned' exactly when current_assignment_id is set")
        return self

    def is_available_for_assignment(self) -> bool:
        return self.status == CredentialStatus.AVAILABLE and self.current_assignment_id is None


class KeyAssignment(BaseModel):
    """Binding of a key to a user."""

    id: str
    key_id: str
    user_id: str
    assigned_by: str
    assigned_at: datetime = Field(default_factory=utc_now)
    status: AssignmentStatus = AssignmentStatus.ACTIVE
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None


class ChallengeRecord(BaseModel):
    """The live challenge for one (user, ceremony type) pair."""

    user_id: str
    ceremony_type: CeremonyType
    value: str = Field(..., description="base64url challenge, at least 32 bytes of entropy")
    created_at: datetime

    def is_expired(self, now: datetime, ttl_seconds: int) -> bool:
        return now - self.created_at > timedelta(seconds=ttl_seconds)


class AuditRecord(BaseModel):
    action: AuditAction
    performed_by: str
    resource_id: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class UserIdentity(BaseModel):
    """A user as seen by the key vault; owned by the external user directory."""

    user_id: str
    email: Optional[str] = None
    name: str
    display_name: str
    role: str = "user"
    status: str = "active"


class CallerIdentity(BaseModel):
    """Authenticated caller supplied by the access control gate."""

    caller_id: str
    role: str


class AuthenticationResult(BaseModel):
    success: bool = True
    user_id: str
    key_id: str
    credential_id: str
    serial_number: str
    sign_count: int
    authenticated_at: datetime


class KeyDetails(BaseModel):
    """A key with its assignment history, newest first."""

    key: SecurityKeyCredential
    current_assignment: Optional[KeyAssignment] = None
    history: List[KeyAssignment] = Field(default_factory=list)


class KeySearchFilters(BaseModel):
    status: Optional[CredentialStatus] = None
    search: Optional[str] = Field(None, max_length=100, description="Matches serial number or device name")
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None


class InventoryReport(BaseModel):
    total: int
    by_status: Dict[str, int]
    last_updated: datetime
