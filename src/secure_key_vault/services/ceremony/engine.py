"""
Ceremony engine.

Single entry point for both FIDO2 ceremonies. The relying party
configuration arrives as a CeremonyConfig; the engine never reads settings.
"""

from datetime import datetime
from typing import Any, Callable, Dict

from secure_key_vault.config import CeremonyConfig
from secure_key_vault.models.key_models import AuthenticationResult, SecurityKeyCredential, UserIdentity, utc_now
from secure_key_vault.services.assignment_ledger import AssignmentLedger
from secure_key_vault.services.audit import AuditSink
from secure_key_vault.services.ceremony.authentication import AuthenticationCeremony
from secure_key_vault.services.ceremony.registration import RegistrationCeremony
from secure_key_vault.services.challenge_store import ChallengeStore
from secure_key_vault.services.credential_repository import CredentialRepository
from secure_key_vault.services.key_assignment import KeyAssignmentService


class CeremonyEngine:
    def __init__(
        self,
        config: CeremonyConfig,
        challenges: ChallengeStore,
        credentials: CredentialRepository,
        ledger: AssignmentLedger,
        assignments: KeyAssignmentService,
        audit: AuditSink,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.registration = RegistrationCeremony(config, challenges, credentials, ledger, assignments, audit, clock)
        self.authentication = AuthenticationCeremony(config, challenges, credentials, ledger, audit, clock)

    async def begin_registration(self, user: UserIdentity) -> Dict[str, Any]:
        return await self.registration.begin(user)

    async def complete_registration(self, attestation_response: Dict[str, Any], user_id: str) -> SecurityKeyCredential:
        return await self.registration.complete(attestation_response, user_id)

    async def begin_authentication(self, user_id: str) -> Dict[str, Any]:
        return await self.authentication.begin(user_id)

    async def complete_authentication(self, assertion_response: Dict[str, Any], user_id: str) -> AuthenticationResult:
        return await self.authentication.complete(assertion_response, user_id)
