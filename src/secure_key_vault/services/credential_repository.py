"""
Credential repository.

Stores one document per physical security key. Status transitions are
compare-and-set updates: a key moves to ``assigned`` only while it is
``available`` with no current assignment, and back to ``available`` only from
the exact assignment being revoked. Every write keeps ``status`` and
``current_assignment_id`` consistent.
"""

from abc import ABC, abstractmethod
from datetime import datetime
import re
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from secure_key_vault.config import settings
from secure_key_vault.database.helpers import duplicate_key_field, to_object_id, translate_store_errors
from secure_key_vault.exceptions import DuplicateCredentialError, SerialNumberCollisionError
from secure_key_vault.managers.logging_manager import get_logger
from secure_key_vault.models.key_models import (
    CredentialStatus,
    InventoryReport,
    KeySearchFilters,
    SecurityKeyCredential,
    utc_now,
)
from secure_key_vault.utils.logging_utils import log_database_operation

logger = get_logger(prefix="[Credential Repository]")


class CredentialRepository(ABC):
    """Persistence interface for security key credentials."""

    @abstractmethod
    async def insert(self, credential: SecurityKeyCredential) -> SecurityKeyCredential:
        """
        Persist a new credential.

        Raises:
            SerialNumberCollisionError: serial number already taken.
            DuplicateCredentialError: credential id already registered.
        """

    @abstractmethod
    async def get(self, key_id: str) -> Optional[SecurityKeyCredential]: ...

    @abstractmethod
    async def get_by_credential_id(self, credential_id: str) -> Optional[SecurityKeyCredential]: ...

    @abstractmethod
    async def list_by_ids(self, key_ids: List[str]) -> List[SecurityKeyCredential]: ...

    @abstractmethod
    async def delete_unassigned(self, key_id: str) -> bool:
        """Remove a credential that is still available. Used to undo a failed registration."""

    @abstractmethod
    async def mark_assigned(self, key_id: str, assignment_id: str, user_handle: str) -> bool:
        """Claim an available key for an assignment. False if the key was not available."""

    @abstractmethod
    async def mark_available(self, key_id: str, assignment_id: str, revoked_by: str, revoked_at: datetime) -> bool:
        """Release a key held by ``assignment_id``. False if it is not held by that assignment."""

    @abstractmethod
    async def record_usage(self, key_id: str, sign_count: int, used_at: datetime) -> bool:
        """Persist a new signature counter; never lowers the stored one."""

    @abstractmethod
    async def search(self, filters: KeySearchFilters, limit: int = 50, skip: int = 0) -> List[SecurityKeyCredential]: ...

    @abstractmethod
    async def count(self, filters: KeySearchFilters) -> int: ...

    @abstractmethod
    async def inventory(self) -> InventoryReport: ...


def build_search_query(filters: KeySearchFilters) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if filters.status is not None:
        query["status"] = filters.status.value
    if filters.search:
        pattern = {"$regex": re.escape(filters.search.strip()), "$options": "i"}
        query["$or"] = [{"serial_number": pattern}, {"device_name": pattern}]
    if filters.created_after or filters.created_before:
        created: Dict[str, datetime] = {}
        if filters.created_after:
            created["$gte"] = filters.created_after
        if filters.created_before:
            created["$lte"] = filters.created_before
        query["created_at"] = created
    return query


def build_inventory_report(groups: List[Dict[str, Any]]) -> InventoryReport:
    by_status = {status.value: 0 for status in CredentialStatus}
    for group in groups:
        by_status[str(group["_id"])] = group["count"]
    return InventoryReport(total=sum(by_status.values()), by_status=by_status, last_updated=utc_now())


class MongoCredentialRepository(CredentialRepository):
    def __init__(self, db_manager, collection_name: str = settings.CREDENTIALS_COLLECTION):
        self.db_manager = db_manager
        self.collection_name = collection_name

    @property
    def collection(self):
        return self.db_manager.get_collection(self.collection_name)

    @staticmethod
    def _to_model(doc: Dict[str, Any]) -> SecurityKeyCredential:
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return SecurityKeyCredential(**data)

    @staticmethod
    def _to_document(credential: SecurityKeyCredential) -> Dict[str, Any]:
        doc = credential.model_dump(mode="python", exclude={"id"})
        doc["_id"] = to_object_id(credential.id)
        doc["status"] = credential.status.value
        return doc

    @log_database_operation("security_keys", "insert")
    @translate_store_errors("credential insert")
    async def insert(self, credential: SecurityKeyCredential) -> SecurityKeyCredential:
        try:
            await self.collection.insert_one(self._to_document(credential))
        except DuplicateKeyError as e:
            field = duplicate_key_field(e)
            if field == "serial_number":
                raise SerialNumberCollisionError(
                    "Serial number already exists", context={"serial_number": credential.serial_number}
                ) from e
            raise DuplicateCredentialError(
                "Credential already registered", context={"credential_id": credential.credential_id}
            ) from e
        logger.info("Stored credential %s (serial %s)", credential.id, credential.serial_number)
        return credential

    @translate_store_errors("credential lookup")
    async def get(self, key_id: str) -> Optional[SecurityKeyCredential]:
        oid = to_object_id(key_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        return self._to_model(doc) if doc else None

    @translate_store_errors("credential lookup")
    async def get_by_credential_id(self, credential_id: str) -> Optional[SecurityKeyCredential]:
        doc = await self.collection.find_one({"credential_id": credential_id})
        return self._to_model(doc) if doc else None

    @translate_store_errors("credential lookup")
    async def list_by_ids(self, key_ids: List[str]) -> List[SecurityKeyCredential]:
        oids = [oid for oid in (to_object_id(key_id) for key_id in key_ids) if oid is not None]
        if not oids:
            return []
        docs = await self.collection.find({"_id": {"$in": oids}}).to_list(length=None)
        return [self._to_model(doc) for doc in docs]

    @log_database_operation("security_keys", "delete")
    @translate_store_errors("credential delete")
    async def delete_unassigned(self, key_id: str) -> bool:
        oid = to_object_id(key_id)
        if oid is None:
            return False
        result = await self.collection.delete_one(
            {"_id": oid, "status": CredentialStatus.AVAILABLE.value, "current_assignment_id": None}
        )
        return result.deleted_count == 1

    @log_database_operation("security_keys", "update")
    @translate_store_errors("credential assign")
    async def mark_assigned(self, key_id: str, assignment_id: str, user_handle: str) -> bool:
        oid = to_object_id(key_id)
        if oid is None:
            return False
        result = await self.collection.update_one(
            {"_id": oid, "status": CredentialStatus.AVAILABLE.value, "current_assignment_id": None},
            {
                "$set": {
                    "status": CredentialStatus.ASSIGNED.value,
                    "current_assignment_id": assignment_id,
                    "user_handle": user_handle,
                    "revoked_at": None,
                    "revoked_by": None,
                }
            },
        )
        return result.modified_count == 1

    @log_database_operation("security_keys", "update")
    @translate_store_errors("credential release")
    async def mark_available(self, key_id: str, assignment_id: str, revoked_by: str, revoked_at: datetime) -> bool:
        oid = to_object_id(key_id)
        if oid is None:
            return False
        result = await self.collection.update_one(
            {"_id": oid, "status": CredentialStatus.ASSIGNED.value, "current_assignment_id": assignment_id},
            {
                "$set": {
                    "status": CredentialStatus.AVAILABLE.value,
                    "current_assignment_id": None,
                    "user_handle": None,
                    "revoked_at": revoked_at,
                    "revoked_by": revoked_by,
                }
            },
        )
        return result.modified_count == 1

    @translate_store_errors("credential usage")
    async def record_usage(self, key_id: str, sign_count: int, used_at: datetime) -> bool:
        oid = to_object_id(key_id)
        if oid is None:
            return False
        result = await self.collection.update_one(
            {"_id": oid, "sign_count": {"$lte": sign_count}},
            {"$set": {"sign_count": sign_count, "last_used": used_at}},
        )
        return result.modified_count == 1

    @translate_store_errors("credential search")
    async def search(self, filters: KeySearchFilters, limit: int = 50, skip: int = 0) -> List[SecurityKeyCredential]:
        cursor = (
            self.collection.find(build_search_query(filters))
            .sort("created_at", DESCENDING)
            .skip(skip)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        return [self._to_model(doc) for doc in docs]

    @translate_store_errors("credential count")
    async def count(self, filters: KeySearchFilters) -> int:
        return await self.collection.count_documents(build_search_query(filters))

    @translate_store_errors("inventory report")
    async def inventory(self) -> InventoryReport:
        groups = await self.collection.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}]).to_list(
            length=None
        )
        return build_inventory_report(groups)
