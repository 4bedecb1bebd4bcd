"""
Assignment ledger.

Append-mostly record of which user holds which key. A row is created active
by assign and moved to revoked by revoke; nothing else mutates it. The Mongo
implementation relies on the partial unique index
``one_active_assignment_per_key`` so two active rows for one key cannot exist.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from secure_key_vault.config import settings
from secure_key_vault.database.helpers import to_object_id, translate_store_errors
from secure_key_vault.exceptions import KeyNotAvailableError
from secure_key_vault.managers.logging_manager import get_logger
from secure_key_vault.models.key_models import AssignmentStatus, KeyAssignment
from secure_key_vault.utils.logging_utils import log_database_operation

logger = get_logger(prefix="[Assignment Ledger]")


class AssignmentLedger(ABC):
    @abstractmethod
    async def open(self, assignment: KeyAssignment) -> KeyAssignment:
        """
        Record a new active assignment.

        Raises:
            KeyNotAvailableError: the key already has an active assignment.
        """

    @abstractmethod
    async def get(self, assignment_id: str) -> Optional[KeyAssignment]: ...

    @abstractmethod
    async def close(self, assignment_id: str, revoked_by: str, revoked_at: datetime) -> bool:
        """Move an active assignment to revoked. False if it was not active."""

    @abstractmethod
    async def discard(self, assignment_id: str) -> bool:
        """Delete an active assignment that never took effect."""

    @abstractmethod
    async def active_for_user(self, user_id: str) -> List[KeyAssignment]: ...

    @abstractmethod
    async def history_for_key(self, key_id: str) -> List[KeyAssignment]:
        """All assignments of a key, newest first."""


class MongoAssignmentLedger(AssignmentLedger):
    def __init__(self, db_manager, collection_name: str = settings.ASSIGNMENTS_COLLECTION):
        self.db_manager = db_manager
        self.collection_name = collection_name

    @property
    def collection(self):
        return self.db_manager.get_collection(self.collection_name)

    @staticmethod
    def _to_model(doc: Dict[str, Any]) -> KeyAssignment:
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return KeyAssignment(**data)

    @log_database_operation("key_assignments", "insert")
    @translate_store_errors("assignment open")
    async def open(self, assignment: KeyAssignment) -> KeyAssignment:
        doc = assignment.model_dump(mode="python", exclude={"id"})
        doc["_id"] = to_object_id(assignment.id)
        doc["status"] = assignment.status.value
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError as e:
            logger.info("Key %s already has an active assignment", assignment.key_id)
            raise KeyNotAvailableError(
                "Key already has an active assignment", context={"key_id": assignment.key_id}
            ) from e
        return assignment

    @translate_store_errors("assignment lookup")
    async def get(self, assignment_id: str) -> Optional[KeyAssignment]:
        oid = to_object_id(assignment_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        return self._to_model(doc) if doc else None

    @log_database_operation("key_assignments", "update")
    @translate_store_errors("assignment close")
    async def close(self, assignment_id: str, revoked_by: str, revoked_at: datetime) -> bool:
        oid = to_object_id(assignment_id)
        if oid is None:
            return False
        result = await self.collection.update_one(
            {"_id": oid, "status": AssignmentStatus.ACTIVE.value},
            {"$set": {"status": AssignmentStatus.REVOKED.value, "revoked_by": revoked_by, "revoked_at": revoked_at}},
        )
        return result.modified_count == 1

    @log_database_operation("key_assignments", "delete")
    @translate_store_errors("assignment discard")
    async def discard(self, assignment_id: str) -> bool:
        oid = to_object_id(assignment_id)
        if oid is None:
            return False
        result = await self.collection.delete_one({"_id": oid, "status": AssignmentStatus.ACTIVE.value})
        return result.deleted_count == 1

    @translate_store_errors("assignment lookup")
    async def active_for_user(self, user_id: str) -> List[KeyAssignment]:
        docs = await self.collection.find({"user_id": user_id, "status": AssignmentStatus.ACTIVE.value}).to_list(
            length=None
        )
        return [self._to_model(doc) for doc in docs]

    @translate_store_errors("assignment history")
    async def history_for_key(self, key_id: str) -> List[KeyAssignment]:
        cursor = self.collection.find({"key_id": key_id}).sort("assigned_at", DESCENDING)
        return [self._to_model(doc) for doc in await cursor.to_list(length=None)]
