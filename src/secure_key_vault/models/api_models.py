"""Request/response models for the HTTP surface. Shape checks only."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from secure_key_vault.models.key_models import (
    AssignmentStatus,
    CredentialStatus,
    KeyAssignment,
    SecurityKeyCredential,
)


class RegistrationBeginRequest(BaseModel):
    user_id: str = Field(..., min_length=1, description="User the key will be registered for")


class RegistrationCompleteRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    attestation_response: Dict[str, Any] = Field(..., description="PublicKeyCredential JSON from navigator.credentials.create")

    @field_validator("attestation_response")
    @classmethod
    def validate_attestation_shape(cls, v):
        response = v.get("response")
        if not isinstance(response, dict) or "attestationObject" not in response or "clientDataJSON" not in response:
            raise ValueError("attestation_response.response must contain clientDataJSON and attestationObject")
        return v


class LoginBeginRequest(BaseModel):
    email: EmailStr


class LoginCompleteRequest(BaseModel):
    email: EmailStr
    assertion_response: Dict[str, Any] = Field(..., description="PublicKeyCredential JSON from navigator.credentials.get")

    @field_validator("assertion_response")
    @classmethod
    def validate_assertion_shape(cls, v):
        response = v.get("response")
        required = ("clientDataJSON", "authenticatorData", "signature")
        if not isinstance(response, dict) or any(name not in response for name in required):
            raise ValueError("assertion_response.response must contain clientDataJSON, authenticatorData and signature")
        return v


class CeremonyOptionsResponse(BaseModel):
    options: Dict[str, Any]
    user_id: str


class RegisteredKeyResponse(BaseModel):
    key_id: str
    credential_id: str
    serial_number: str
    status: CredentialStatus


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    email: Optional[str] = None
    role: str
    serial_number: str


class AssignKeyRequest(BaseModel):
    key_id: str = Field(..., min_length=1)
    email: EmailStr


class RevokeKeyRequest(BaseModel):
    key_id: str = Field(..., min_length=1)


class KeySummary(BaseModel):
    id: str
    serial_number: str
    credential_id: str
    aaguid: Optional[str] = None
    status: CredentialStatus
    device_name: str
    sign_count: int
    created_at: datetime
    last_used: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    @classmethod
    def from_credential(cls, credential: SecurityKeyCredential) -> "KeySummary":
        return cls(**credential.model_dump(include=set(cls.model_fields)))


class KeyListResponse(BaseModel):
    keys: List[KeySummary]
    total: int
    limit: int
    skip: int


class AssignmentResponse(BaseModel):
    id: str
    key_id: str
    user_id: str
    assigned_by: str
    assigned_at: datetime
    status: AssignmentStatus
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None

    @classmethod
    def from_assignment(cls, assignment: KeyAssignment) -> "AssignmentResponse":
        return cls(**assignment.model_dump())


class KeyDetailsResponse(BaseModel):
    key: KeySummary
    current_assignment: Optional[AssignmentResponse] = None
    history: List[AssignmentResponse]
