"""
Key assignment lifecycle.

    available --assign--> assigned --revoke--> available

assign opens the ledger row before claiming the key, so an assigned key
always has a resolvable active assignment. Concurrent assigns of one key are
decided by the ledger's unique active index and the compare-and-set claim:
exactly one caller wins, every other caller gets KeyNotAvailableError. A
claim that fails with a store error removes its ledger row again.
"""

from datetime import datetime
from typing import Callable

from secure_key_vault.database.helpers import new_id
from secure_key_vault.exceptions import KeyNotAssignedError, KeyNotAvailableError, KeyNotFoundError
from secure_key_vault.managers.logging_manager import get_logger
from secure_key_vault.models.key_models import AssignmentStatus, KeyAssignment, utc_now
from secure_key_vault.services.assignment_ledger import AssignmentLedger
from secure_key_vault.services.ceremony.encoding import encode_user_handle
from secure_key_vault.services.credential_repository import CredentialRepository
from secure_key_vault.utils.logging_utils import log_error_with_context, log_performance

logger = get_logger(prefix="[Key Assignment]")


class KeyAssignmentService:
    def __init__(
        self,
        credentials: CredentialRepository,
        ledger: AssignmentLedger,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.credentials = credentials
        self.ledger = ledger
        self.clock = clock

    @log_performance("key_assign")
    async def assign(self, key_id: str, user_id: str, assigned_by: str) -> KeyAssignment:
        """
        Bind an available key to a user.

        Args:
            key_id: Storage id of the key.
            user_id: Holder to be.
            assigned_by: Caller performing the assignment.

        Returns:
            KeyAssignment: The new active assignment.

        Raises:
            KeyNotFoundError: No such key.
            KeyNotAvailableError: The key is assigned, or another assign won the race.
        """
        credential = await self.credentials.get(key_id)
        if credential is None:
            raise KeyNotFoundError("Key not found", context={"key_id": key_id})
        if not credential.is_available_for_assignment():
            raise KeyNotAvailableError("Key is already assigned", context={"key_id": key_id})

        assignment = KeyAssignment(
            id=new_id(),
            key_id=key_id,
            user_id=user_id,
            assigned_by=assigned_by,
            assigned_at=self.clock(),
            status=AssignmentStatus.ACTIVE,
        )
        await self.ledger.open(assignment)

        try:
            claimed = await self.credentials.mark_assigned(key_id, assignment.id, encode_user_handle(user_id))
        except Exception:
            await self._discard_orphan(assignment.id, key_id)
            raise
        if not claimed:
            await self.ledger.discard(assignment.id)
            logger.info("Lost assignment race for key %s", key_id)
            raise KeyNotAvailableError("Key was assigned concurrently", context={"key_id": key_id})

        logger.info("Assigned key %s to user %s (by %s)", key_id, user_id, assigned_by)
        return assignment

    @log_performance("key_revoke")
    async def revoke(self, key_id: str, revoked_by: str) -> KeyAssignment:
        """
        End the key's current assignment and return the key to the pool.

        Returns:
            KeyAssignment: The assignment, now revoked.

        Raises:
            KeyNotFoundError: No such key.
            KeyNotAssignedError: The key has no current assignment. Nothing is changed.

        A revoke that closed the assignment but failed to release the key is
        completed by the next call instead of being rejected.
        """
        credential = await self.credentials.get(key_id)
        if credential is None:
            raise KeyNotFoundError("Key not found", context={"key_id": key_id})
        assignment_id = credential.current_assignment_id
        if assignment_id is None:
            raise KeyNotAssignedError("Key has no current assignment", context={"key_id": key_id})

        assignment = await self.ledger.get(assignment_id)
        if assignment is None:
            raise KeyNotAssignedError("Current assignment does not exist", context={"key_id": key_id})

        if assignment.status == AssignmentStatus.ACTIVE:
            revoked_at = self.clock()
            if await self.ledger.close(assignment_id, revoked_by, revoked_at):
                assignment = assignment.model_copy(
                    update={"status": AssignmentStatus.REVOKED, "revoked_at": revoked_at, "revoked_by": revoked_by}
                )
            else:
                assignment = await self.ledger.get(assignment_id)
                if assignment is None or assignment.status != AssignmentStatus.REVOKED:
                    raise KeyNotAssignedError("Assignment could not be closed", context={"key_id": key_id})
        else:
            # Closed earlier but the key was never released
            logger.warning("Completing interrupted revoke of key %s (assignment %s)", key_id, assignment_id)

        if not await self.credentials.mark_available(key_id, assignment_id, assignment.revoked_by, assignment.revoked_at):
            raise KeyNotAssignedError("Key is not held by its current assignment", context={"key_id": key_id})

        logger.info("Revoked key %s from assignment %s (by %s)", key_id, assignment_id, assignment.revoked_by)
        return assignment

    async def _discard_orphan(self, assignment_id: str, key_id: str) -> None:
        """Remove a ledger row whose claim failed, unless the claim was in fact applied."""
        try:
            credential = await self.credentials.get(key_id)
            if credential is not None and credential.current_assignment_id == assignment_id:
                logger.warning("Claim of key %s reported an error but was applied", key_id)
                return
            await self.ledger.discard(assignment_id)
        except Exception as e:
            log_error_with_context(
                e, {"key_id": key_id, "assignment_id": assignment_id}, operation="assignment_rollback"
            )
