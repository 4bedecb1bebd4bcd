"""
FastAPI dependencies: service wiring and the bearer-token gate.

Services are built once per process from the global database and Redis
managers. Tests replace them through ``app.dependency_overrides``.
"""

from functools import lru_cache

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer

from secure_key_vault.config import settings
from secure_key_vault.database import db_manager
from secure_key_vault.managers.redis_manager import redis_manager
from secure_key_vault.models.key_models import CallerIdentity
from secure_key_vault.services.access_control import decode_access_token, require_admin
from secure_key_vault.services.assignment_ledger import AssignmentLedger, MongoAssignmentLedger
from secure_key_vault.services.audit import AuditSink, MongoAuditSink
from secure_key_vault.services.ceremony.engine import CeremonyEngine
from secure_key_vault.services.challenge_store import ChallengeStore
from secure_key_vault.services.credential_repository import CredentialRepository, MongoCredentialRepository
from secure_key_vault.services.key_admin import KeyAdministrationService
from secure_key_vault.services.key_assignment import KeyAssignmentService
from secure_key_vault.services.user_directory import MongoUserDirectory, UserDirectory

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/fido/login/complete")


@lru_cache
def get_challenge_store() -> ChallengeStore:
    return ChallengeStore(redis_manager, ttl_seconds=settings.WEBAUTHN_CHALLENGE_TTL_SECONDS)


@lru_cache
def get_credential_repository() -> CredentialRepository:
    return MongoCredentialRepository(db_manager)


@lru_cache
def get_assignment_ledger() -> AssignmentLedger:
    return MongoAssignmentLedger(db_manager)


@lru_cache
def get_audit_sink() -> AuditSink:
    return MongoAuditSink(db_manager)


@lru_cache
def get_user_directory() -> UserDirectory:
    return MongoUserDirectory(db_manager)


@lru_cache
def get_key_assignment_service() -> KeyAssignmentService:
    return KeyAssignmentService(get_credential_repository(), get_assignment_ledger())


@lru_cache
def get_ceremony_engine() -> CeremonyEngine:
    return CeremonyEngine(
        config=settings.ceremony_config(),
        challenges=get_challenge_store(),
        credentials=get_credential_repository(),
        ledger=get_assignment_ledger(),
        assignments=get_key_assignment_service(),
        audit=get_audit_sink(),
    )


@lru_cache
def get_key_admin_service() -> KeyAdministrationService:
    return KeyAdministrationService(
        credentials=get_credential_repository(),
        ledger=get_assignment_ledger(),
        assignments=get_key_assignment_service(),
        users=get_user_directory(),
        audit=get_audit_sink(),
    )


async def get_current_caller(token: str = Depends(oauth2_scheme)) -> CallerIdentity:
    return decode_access_token(token)


async def get_admin_caller(caller: CallerIdentity = Depends(get_current_caller)) -> CallerIdentity:
    return require_admin(caller)
