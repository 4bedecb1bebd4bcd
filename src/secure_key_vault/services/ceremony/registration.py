"""
Registration ceremony.

begin_registration issues a registration challenge and returns
PublicKeyCredentialCreationOptions as JSON-ready dict. complete_registration
verifies the attestation, stores the key as a new credential and assigns it to
the registering user. Both writes happen only after verification succeeds, and
a failed self-assignment removes the stored credential again.
"""

from datetime import datetime
import json
import secrets
from typing import Any, Callable, Dict, List

from webauthn import generate_registration_options, options_to_json, verify_registration_response
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)
from webauthn.helpers.cose import COSEAlgorithmIdentifier

from secure_key_vault.config import CeremonyConfig
from secure_key_vault.database.helpers import new_id
from secure_key_vault.exceptions import (
    AttestationVerificationFailedError,
    KeyVaultError,
    MalformedAttestationError,
    SerialNumberCollisionError,
)
from secure_key_vault.managers.logging_manager import get_logger
from secure_key_vault.models.key_models import (
    AuditAction,
    CeremonyType,
    CredentialStatus,
    SecurityKeyCredential,
    UserIdentity,
    utc_now,
)
from secure_key_vault.services.assignment_ledger import AssignmentLedger
from secure_key_vault.services.audit import AuditSink, emit_audit
from secure_key_vault.services.ceremony.base import CeremonyBase, CeremonyState
from secure_key_vault.services.ceremony.encoding import (
    PayloadDecodeError,
    client_data_challenge,
    decode_registration_response,
    normalize_aaguid,
)
from secure_key_vault.services.challenge_store import ChallengeStore
from secure_key_vault.services.credential_repository import CredentialRepository
from secure_key_vault.services.key_assignment import KeyAssignmentService
from secure_key_vault.utils.logging_utils import log_error_with_context, log_performance

logger = get_logger(prefix="[Registration Ceremony]")


def generate_serial_number(prefix: str) -> str:
    return f"{prefix}{secrets.token_hex(8).upper()}"


class RegistrationCeremony(CeremonyBase):
    ceremony_type = CeremonyType.REGISTRATION

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
        super().__init__(config, challenges, clock)
        self.credentials = credentials
        self.ledger = ledger
        self.assignments = assignments
        self.audit = audit

    async def _assigned_descriptors(self, user_id: str) -> List[PublicKeyCredentialDescriptor]:
        active = await self.ledger.active_for_user(user_id)
        keys = await self.credentials.list_by_ids([a.key_id for a in active])
        return [
            PublicKeyCredentialDescriptor(id=base64url_to_bytes(key.credential_id))
            for key in keys
            if key.status == CredentialStatus.ASSIGNED
        ]

    @log_performance("registration_begin")
    async def begin(self, user: UserIdentity) -> Dict[str, Any]:
        """
        Issue a registration challenge and build creation options.

        Args:
            user: The user the key will be registered for.

        Returns:
            Dict[str, Any]: PublicKeyCredentialCreationOptions, binary fields base64url.
        """
        exclude = await self._assigned_descriptors(user.user_id)
        challenge = await self.challenges.issue(user.user_id, self.ceremony_type)

        attachment = self.config.authenticator_attachment
        options = generate_registration_options(
            rp_id=self.config.rp_id,
            rp_name=self.config.rp_name,
            user_id=user.user_id.encode("utf-8"),
            user_name=user.name,
            user_display_name=user.display_name,
            challenge=base64url_to_bytes(challenge),
            timeout=self.config.timeout_ms,
            attestation=AttestationConveyancePreference(self.config.attestation),
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment(attachment) if attachment else None,
                resident_key=ResidentKeyRequirement.DISCOURAGED,
                user_verification=UserVerificationRequirement(self.config.user_verification),
            ),
            exclude_credentials=exclude,
            supported_pub_key_algs=[COSEAlgorithmIdentifier(alg) for alg in self.config.supported_algorithms],
        )
        self._transition(user.user_id, CeremonyState.IDLE, CeremonyState.OPTIONS_ISSUED)
        return json.loads(options_to_json(options))

    @log_performance("registration_complete")
    async def complete(self, attestation_response: Dict[str, Any], user_id: str) -> SecurityKeyCredential:
        """
        Verify an attestation and register the key for ``user_id``.

        Args:
            attestation_response: PublicKeyCredential JSON from the client.
            user_id: The user who started the ceremony.

        Returns:
            SecurityKeyCredential: The stored key, assigned to the user.

        Raises:
            ChallengeExpiredOrMissingError: No live challenge, or a superseded one was signed.
            MalformedAttestationError: Binary fields could not be decoded.
            AttestationVerificationFailedError: The attestation was rejected.
            SerialNumberCollisionError: Serial allocation kept colliding; retryable.
            DuplicateCredentialError: The credential id is already registered.
        """
        try:
            credential = await self._complete(attestation_response, user_id)
        except KeyVaultError as e:
            self._transition(user_id, CeremonyState.OPTIONS_ISSUED, CeremonyState.FAILED)
            logger.info("Registration failed for user %s: %s", user_id, e)
            raise
        self._transition(user_id, CeremonyState.OPTIONS_ISSUED, CeremonyState.VERIFIED)
        return credential

    async def _complete(self, attestation_response: Dict[str, Any], user_id: str) -> SecurityKeyCredential:
        record = await self._live_challenge(user_id)

        try:
            registration_credential = decode_registration_response(attestation_response)
            signed_challenge = client_data_challenge(registration_credential.response.client_data_json)
        except PayloadDecodeError as e:
            raise MalformedAttestationError(str(e), context={"user_id": user_id}) from e
        self._require_same_challenge(record, signed_challenge)

        try:
            verification = verify_registration_response(
                credential=registration_credential,
                expected_challenge=base64url_to_bytes(record.value),
                expected_rp_id=self.config.rp_id,
                expected_origin=self.config.origin,
                require_user_verification=False,
                supported_pub_key_algs=[COSEAlgorithmIdentifier(alg) for alg in self.config.supported_algorithms],
            )
        except WebAuthnException as e:
            raise AttestationVerificationFailedError(str(e), context={"user_id": user_id}) from e

        await self._recheck_live(record)

        stored = await self._store_credential(
            credential_id=bytes_to_base64url(verification.credential_id),
            public_key=bytes_to_base64url(verification.credential_public_key),
            sign_count=verification.sign_count or 0,
            aaguid=normalize_aaguid(verification.aaguid) if verification.aaguid else None,
            transports=[t.value for t in registration_credential.response.transports or []],
            attestation_format=getattr(verification.fmt, "value", str(verification.fmt)),
        )

        try:
            assignment = await self.assignments.assign(stored.id, user_id, assigned_by=user_id)
        except Exception as e:
            log_error_with_context(e, context={"key_id": stored.id, "user_id": user_id}, operation="registration_self_assign")
            await self.credentials.delete_unassigned(stored.id)
            raise

        await self.challenges.delete(user_id, self.ceremony_type)

        await emit_audit(
            self.audit,
            AuditAction.KEY_REGISTERED,
            performed_by=user_id,
            resource_id=stored.id,
            details={"serial_number": stored.serial_number, "credential_id": stored.credential_id, "aaguid": stored.aaguid},
        )
        await emit_audit(
            self.audit,
            AuditAction.KEY_ASSIGNED,
            performed_by=user_id,
            resource_id=stored.id,
            details={"assignment_id": assignment.id, "target_user_id": user_id},
        )

        registered = await self.credentials.get(stored.id)
        return registered or stored

    async def _store_credential(self, **fields: Any) -> SecurityKeyCredential:
        """Insert the verified key as available, retrying on serial number collisions."""
        last_error = None
        for attempt in range(self.config.serial_max_attempts):
            candidate = SecurityKeyCredential(
                id=new_id(),
                serial_number=generate_serial_number(self.config.serial_prefix),
                status=CredentialStatus.AVAILABLE,
                created_at=self.clock(),
                **fields,
            )
            try:
                return await self.credentials.insert(candidate)
            except SerialNumberCollisionError as e:
                logger.warning("Serial number collision on attempt %d: %s", attempt + 1, candidate.serial_number)
                last_error = e
        raise SerialNumberCollisionError(
            "Could not allocate a unique serial number",
            context={"attempts": self.config.serial_max_attempts},
        ) from last_error
