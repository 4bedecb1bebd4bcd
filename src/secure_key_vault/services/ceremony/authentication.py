"""
Authentication ceremony.

A user may only authenticate with a key whose active assignment is theirs.
Every failure leaves the ceremony as AuthenticationFailedError: callers learn
that authentication failed, never which check failed. The specific cause is
kept on the error for logs and audit.
"""

from datetime import datetime
import json
from typing import Any, Callable, Dict, List

from webauthn import generate_authentication_options, options_to_json, verify_authentication_response
from webauthn.authentication.verify_authentication_response import VerifiedAuthentication
from webauthn.helpers import base64url_to_bytes, parse_authenticator_data
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AuthenticationCredential,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    UserVerificationRequirement,
)

from secure_key_vault.config import CeremonyConfig
from secure_key_vault.exceptions import (
    AssertionVerificationFailedError,
    AuthenticationFailedError,
    CredentialNotFoundError,
    CredentialNotOwnedByUserError,
    KeyVaultError,
    MalformedAssertionError,
    NoCredentialsAssignedError,
    SignatureCounterRegressionError,
    StoreUnavailableError,
)
from secure_key_vault.managers.logging_manager import get_logger
from secure_key_vault.models.key_models import (
    AssignmentStatus,
    AuditAction,
    AuthenticationResult,
    CeremonyType,
    CredentialStatus,
    SecurityKeyCredential,
    utc_now,
)
from secure_key_vault.services.assignment_ledger import AssignmentLedger
from secure_key_vault.services.audit import AuditSink, emit_audit
from secure_key_vault.services.ceremony.base import CeremonyBase, CeremonyState
from secure_key_vault.services.ceremony.encoding import (
    PayloadDecodeError,
    canonical_credential_id,
    client_data_challenge,
    decode_authentication_response,
    parse_transports,
)
from secure_key_vault.services.challenge_store import ChallengeStore
from secure_key_vault.services.credential_repository import CredentialRepository
from secure_key_vault.utils.logging_utils import log_auth_failure, log_auth_success, log_performance

logger = get_logger(prefix="[Authentication Ceremony]")


def counter_regressed(stored: int, asserted: int) -> bool:
    """Counters of 0 on both sides mean the authenticator does not implement one."""
    return (stored > 0 or asserted > 0) and asserted <= stored


class AuthenticationCeremony(CeremonyBase):
    ceremony_type = CeremonyType.AUTHENTICATION

    def __init__(
        self,
        config: CeremonyConfig,
        challenges: ChallengeStore,
        credentials: CredentialRepository,
        ledger: AssignmentLedger,
        audit: AuditSink,
        clock: Callable[[], datetime] = utc_now,
    ):
        super().__init__(config, challenges, clock)
        self.credentials = credentials
        self.ledger = ledger
        self.audit = audit

    @log_performance("authentication_begin")
    async def begin(self, user_id: str) -> Dict[str, Any]:
        """
        Issue an authentication challenge restricted to the user's assigned keys.

        Raises:
            NoCredentialsAssignedError: The user holds no key.
        """
        active = await self.ledger.active_for_user(user_id)
        held = {a.id for a in active}
        keys = [
            key
            for key in await self.credentials.list_by_ids([a.key_id for a in active])
            if key.status == CredentialStatus.ASSIGNED and key.current_assignment_id in held
        ]
        if not keys:
            raise NoCredentialsAssignedError("No keys assigned", context={"user_id": user_id})

        challenge = await self.challenges.issue(user_id, self.ceremony_type)
        options = generate_authentication_options(
            rp_id=self.config.rp_id,
            challenge=base64url_to_bytes(challenge),
            timeout=self.config.timeout_ms,
            allow_credentials=[
                PublicKeyCredentialDescriptor(
                    id=base64url_to_bytes(key.credential_id), transports=self._transports_for(key)
                )
                for key in keys
            ],
            user_verification=UserVerificationRequirement(self.config.user_verification),
        )
        self._transition(user_id, CeremonyState.IDLE, CeremonyState.OPTIONS_ISSUED)
        return json.loads(options_to_json(options))

    def _transports_for(self, key: SecurityKeyCredential) -> List[AuthenticatorTransport]:
        """Transports the key reported at registration, else the configured default."""
        return parse_transports(key.transports) or parse_transports(self.config.allowed_transports)

    @log_performance("authentication_complete")
    async def complete(self, assertion_response: Dict[str, Any], user_id: str) -> AuthenticationResult:
        """
        Verify an assertion from one of the user's assigned keys.

        Returns:
            AuthenticationResult: On success.

        Raises:
            AuthenticationFailedError: Any verification, ownership or challenge failure.
            StoreUnavailableError: Redis or MongoDB could not be reached.
        """
        try:
            result = await self._complete(assertion_response, user_id)
        except StoreUnavailableError:
            raise
        except KeyVaultError as e:
            self._transition(user_id, CeremonyState.OPTIONS_ISSUED, CeremonyState.FAILED)
            log_auth_failure(
                event_type="key_authentication",
                user_id=user_id,
                details={"reason": e.error_code, "message": e.message},
            )
            raise AuthenticationFailedError(reason=e) from e

        self._transition(user_id, CeremonyState.OPTIONS_ISSUED, CeremonyState.VERIFIED)
        log_auth_success(
            event_type="key_authentication",
            user_id=user_id,
            details={"key_id": result.key_id, "serial_number": result.serial_number},
        )
        return result

    async def _complete(self, assertion_response: Dict[str, Any], user_id: str) -> AuthenticationResult:
        record = await self._live_challenge(user_id)

        try:
            credential_id = canonical_credential_id(assertion_response)
        except PayloadDecodeError as e:
            raise MalformedAssertionError(str(e), context={"user_id": user_id}) from e

        key = await self.credentials.get_by_credential_id(credential_id)
        if key is None or key.status != CredentialStatus.ASSIGNED or key.current_assignment_id is None:
            raise CredentialNotFoundError("Credential not found or not assigned", context={"credential_id": credential_id})

        assignment = await self.ledger.get(key.current_assignment_id)
        if assignment is None or assignment.status != AssignmentStatus.ACTIVE:
            raise CredentialNotFoundError("Credential has no active assignment", context={"key_id": key.id})
        if assignment.user_id != user_id:
            raise CredentialNotOwnedByUserError(
                "Credential is assigned to another user", context={"key_id": key.id, "user_id": user_id}
            )

        try:
            auth_credential = decode_authentication_response(assertion_response)
            signed_challenge = client_data_challenge(auth_credential.response.client_data_json)
            asserted_count = parse_authenticator_data(auth_credential.response.authenticator_data).sign_count
        except (PayloadDecodeError, WebAuthnException) as e:
            raise MalformedAssertionError(str(e), context={"user_id": user_id}) from e
        self._require_same_challenge(record, signed_challenge)

        try:
            verification = self._verify(auth_credential, record.value, key, key.sign_count)
        except WebAuthnException as e:
            if counter_regressed(key.sign_count, asserted_count):
                # Only a validly signed assertion is evidence of a clone
                try:
                    self._verify(auth_credential, record.value, key, 0)
                except WebAuthnException as forged:
                    raise AssertionVerificationFailedError(str(forged), context={"key_id": key.id}) from forged
                await self._report_possible_clone(key, user_id, asserted_count)
                raise SignatureCounterRegressionError(
                    key.sign_count, asserted_count, context={"key_id": key.id}
                ) from e
            raise AssertionVerificationFailedError(str(e), context={"key_id": key.id}) from e

        await self._recheck_live(record)

        now = self.clock()
        await self.credentials.record_usage(key.id, verification.new_sign_count, now)
        await self.challenges.delete(user_id, self.ceremony_type)
        await emit_audit(
            self.audit,
            AuditAction.KEY_AUTHENTICATED,
            performed_by=user_id,
            resource_id=key.id,
            details={"serial_number": key.serial_number, "sign_count": verification.new_sign_count},
        )
        return AuthenticationResult(
            user_id=user_id,
            key_id=key.id,
            credential_id=key.credential_id,
            serial_number=key.serial_number,
            sign_count=verification.new_sign_count,
            authenticated_at=now,
        )

    def _verify(
        self, auth_credential: AuthenticationCredential, challenge: str, key: SecurityKeyCredential, sign_count: int
    ) -> VerifiedAuthentication:
        return verify_authentication_response(
            credential=auth_credential,
            expected_challenge=base64url_to_bytes(challenge),
            expected_rp_id=self.config.rp_id,
            expected_origin=self.config.origin,
            credential_public_key=base64url_to_bytes(key.public_key),
            credential_current_sign_count=sign_count,
            require_user_verification=False,
        )

    async def _report_possible_clone(self, key: SecurityKeyCredential, user_id: str, asserted_count: int) -> None:
        logger.warning(
            "Signature counter did not advance for key %s (stored=%d, asserted=%d); possible cloned authenticator",
            key.id,
            key.sign_count,
            asserted_count,
        )
        await emit_audit(
            self.audit,
            AuditAction.KEY_CLONE_SUSPECTED,
            performed_by=user_id,
            resource_id=key.id,
            details={"serial_number": key.serial_number, "stored_count": key.sign_count, "asserted_count": asserted_count},
            success=False,
        )
