"""
Audit sink.

Audit emission is fire-and-forget: a failing sink is logged and never undoes
the state change that produced the event.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from secure_key_vault.config import settings
from secure_key_vault.database.helpers import translate_store_errors
from secure_key_vault.managers.logging_manager import get_logger
from secure_key_vault.models.key_models import AuditAction, AuditRecord
from secure_key_vault.utils.logging_utils import log_error_with_context, log_security_event

logger = get_logger(prefix="[Audit]")


class AuditSink(ABC):
    @abstractmethod
    async def record(self, entry: AuditRecord) -> None: ...


class MongoAuditSink(AuditSink):
    def __init__(self, db_manager, collection_name: str = settings.AUDIT_LOG_COLLECTION):
        self.db_manager = db_manager
        self.collection_name = collection_name

    @translate_store_errors("audit write")
    async def record(self, entry: AuditRecord) -> None:
        doc = entry.model_dump(mode="python")
        doc["action"] = entry.action.value
        await self.db_manager.get_collection(self.collection_name).insert_one(doc)


async def emit_audit(
    sink: AuditSink,
    action: AuditAction,
    performed_by: str,
    resource_id: str,
    details: Optional[Dict[str, Any]] = None,
    success: bool = True,
) -> bool:
    """
    Record an audit event and mirror it to the security log.

    Returns:
        bool: False if the sink rejected the event.
    """
    entry = AuditRecord(action=action, performed_by=performed_by, resource_id=resource_id, details=details or {})
    log_security_event(
        event_type=action.value.lower(),
        user_id=performed_by,
        success=success,
        details={"resource_id": resource_id, **entry.details},
    )
    try:
        await sink.record(entry)
    except Exception as e:
        log_error_with_context(
            e,
            context={"action": action.value, "resource_id": resource_id, "performed_by": performed_by},
            operation="audit_emit",
        )
        return False
    return True
