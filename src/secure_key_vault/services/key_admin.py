"""Administrative key operations: inventory queries and audited assign/revoke."""

from typing import List, Tuple

from secure_key_vault.exceptions import KeyNotFoundError, UserNotFoundError
from secure_key_vault.managers.logging_manager import get_logger
from secure_key_vault.models.key_models import (
    AuditAction,
    CallerIdentity,
    InventoryReport,
    KeyAssignment,
    KeyDetails,
    KeySearchFilters,
    SecurityKeyCredential,
)
from secure_key_vault.services.access_control import require_admin
from secure_key_vault.services.assignment_ledger import AssignmentLedger
from secure_key_vault.services.audit import AuditSink, emit_audit
from secure_key_vault.services.credential_repository import CredentialRepository
from secure_key_vault.services.key_assignment import KeyAssignmentService
from secure_key_vault.services.user_directory import UserDirectory

logger = get_logger(prefix="[Key Admin]")

MAX_PAGE_SIZE = 200


class KeyAdministrationService:
    def __init__(
        self,
        credentials: CredentialRepository,
        ledger: AssignmentLedger,
        assignments: KeyAssignmentService,
        users: UserDirectory,
        audit: AuditSink,
    ):
        self.credentials = credentials
        self.ledger = ledger
        self.assignments = assignments
        self.users = users
        self.audit = audit

    async def search_keys(
        self, caller: CallerIdentity, filters: KeySearchFilters, limit: int = 50, skip: int = 0
    ) -> Tuple[List[SecurityKeyCredential], int]:
        require_admin(caller)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        skip = max(0, skip)
        keys = await self.credentials.search(filters, limit=limit, skip=skip)
        total = await self.credentials.count(filters)
        return keys, total

    async def count_keys(self, caller: CallerIdentity, filters: KeySearchFilters) -> int:
        require_admin(caller)
        return await self.credentials.count(filters)

    async def key_details(self, caller: CallerIdentity, key_id: str) -> KeyDetails:
        require_admin(caller)
        key = await self.credentials.get(key_id)
        if key is None:
            raise KeyNotFoundError("Key not found", context={"key_id": key_id})
        history = await self.ledger.history_for_key(key_id)
        current = next((a for a in history if a.id == key.current_assignment_id), None)
        return KeyDetails(key=key, current_assignment=current, history=history)

    async def assign_key(self, caller: CallerIdentity, key_id: str, email: str) -> KeyAssignment:
        require_admin(caller)
        user = await self.users.find_by_email(email)
        if user is None:
            raise UserNotFoundError("User not found", context={"email": email})

        assignment = await self.assignments.assign(key_id, user.user_id, assigned_by=caller.caller_id)
        await emit_audit(
            self.audit,
            AuditAction.KEY_ASSIGNED,
            performed_by=caller.caller_id,
            resource_id=key_id,
            details={"assignment_id": assignment.id, "target_user_id": user.user_id},
        )
        return assignment

    async def revoke_key(self, caller: CallerIdentity, key_id: str) -> KeyAssignment:
        require_admin(caller)
        assignment = await self.assignments.revoke(key_id, revoked_by=caller.caller_id)
        await emit_audit(
            self.audit,
            AuditAction.KEY_REVOKED,
            performed_by=caller.caller_id,
            resource_id=key_id,
            details={"assignment_id": assignment.id, "target_user_id": assignment.user_id},
        )
        return assignment

    async def inventory_report(self, caller: CallerIdentity) -> InventoryReport:
        require_admin(caller)
        report = await self.credentials.inventory()
        logger.info("Inventory report generated: %s", report.by_status)
        return report
