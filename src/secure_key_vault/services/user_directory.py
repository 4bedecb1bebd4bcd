"""Read-mostly view of the users collection; user CRUD lives outside this service."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from secure_key_vault.config import settings
from secure_key_vault.database.helpers import to_object_id, translate_store_errors
from secure_key_vault.managers.logging_manager import get_logger
from secure_key_vault.models.key_models import UserIdentity

logger = get_logger(prefix="[User Directory]")


class UserDirectory(ABC):
    @abstractmethod
    async def get(self, user_id: str) -> Optional[UserIdentity]: ...

    @abstractmethod
    async def find_by_email(self, email: str) -> Optional[UserIdentity]: ...

    @abstractmethod
    async def mark_fido_registered(self, user_id: str) -> None: ...

    @abstractmethod
    async def record_login(self, user_id: str, at: datetime) -> None: ...


class MongoUserDirectory(UserDirectory):
    def __init__(self, db_manager, collection_name: str = settings.USERS_COLLECTION):
        self.db_manager = db_manager
        self.collection_name = collection_name

    @property
    def collection(self):
        return self.db_manager.get_collection(self.collection_name)

    @staticmethod
    def _to_identity(doc: Dict[str, Any]) -> UserIdentity:
        email = doc.get("email")
        name = doc.get("username") or email or str(doc["_id"])
        full_name = " ".join(part for part in (doc.get("first_name"), doc.get("last_name")) if part)
        return UserIdentity(
            user_id=str(doc["_id"]),
            email=email,
            name=name,
            display_name=doc.get("display_name") or full_name or name,
            role=doc.get("role", "user"),
            status="active" if doc.get("is_active", True) else "inactive",
        )

    @translate_store_errors("user lookup")
    async def get(self, user_id: str) -> Optional[UserIdentity]:
        oid = to_object_id(user_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        return self._to_identity(doc) if doc else None

    @translate_store_errors("user lookup")
    async def find_by_email(self, email: str) -> Optional[UserIdentity]:
        doc = await self.collection.find_one({"email": email.strip().lower()})
        return self._to_identity(doc) if doc else None

    @translate_store_errors("user update")
    async def mark_fido_registered(self, user_id: str) -> None:
        oid = to_object_id(user_id)
        if oid is not None:
            await self.collection.update_one({"_id": oid}, {"$set": {"fido_registered": True}})

    @translate_store_errors("user update")
    async def record_login(self, user_id: str, at: datetime) -> None:
        oid = to_object_id(user_id)
        if oid is not None:
            await self.collection.update_one({"_id": oid}, {"$set": {"last_login": at}})
