"""
In-memory stand-ins for the MongoDB repositories and Redis.

They enforce the same uniqueness and compare-and-set rules as the Mongo
implementations, and yield to the event loop between read and write so
concurrent tests actually interleave.
"""

import asyncio
from datetime import datetime, timedelta, timezone
import fnmatch
from typing import Dict, List, Optional

from redis.exceptions import ConnectionError as RedisConnectionError

from secure_key_vault.exceptions import (
    DuplicateCredentialError,
    KeyNotAvailableError,
    SerialNumberCollisionError,
)
from secure_key_vault.models.key_models import (
    AssignmentStatus,
    AuditRecord,
    CredentialStatus,
    KeyAssignment,
    KeySearchFilters,
    SecurityKeyCredential,
    UserIdentity,
)
from secure_key_vault.services.assignment_ledger import AssignmentLedger
from secure_key_vault.services.audit import AuditSink
from secure_key_vault.services.credential_repository import CredentialRepository, build_inventory_report
from secure_key_vault.services.user_directory import UserDirectory


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeRedis:
    def __init__(self):
        self.data: Dict[str, str] = {}
        self.expiries: Dict[str, int] = {}
        self.down = False

    def _check(self):
        if self.down:
            raise RedisConnectionError("Connection refused")

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        if ex is not None:
            self.expiries[key] = ex
        return True

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def eval(self, script, numkeys, *keys_and_args):
        """Runs the compare-and-delete script, the only one the store uses."""
        self._check()
        if "DEL" not in script or numkeys != 1:
            raise NotImplementedError(script)
        key, expected = keys_and_args
        if self.data.get(key) != expected:
            return 0
        del self.data[key]
        return 1

    async def scan_iter(self, match="*"):
        self._check()
        for key in list(self.data):
            if fnmatch.fnmatch(key, match):
                yield key

    async def ping(self):
        self._check()
        return True


class FakeRedisManager:
    def __init__(self):
        self.redis = FakeRedis()

    async def get_redis(self):
        return self.redis

    async def health_check(self) -> bool:
        return not self.redis.down


class InMemoryCredentialRepository(CredentialRepository):
    def __init__(self):
        self.keys: Dict[str, SecurityKeyCredential] = {}

    async def insert(self, credential):
        if any(k.serial_number == credential.serial_number for k in self.keys.values()):
            raise SerialNumberCollisionError("Serial number already exists")
        if any(k.credential_id == credential.credential_id for k in self.keys.values()):
            raise DuplicateCredentialError("Credential already registered")
        self.keys[credential.id] = credential.model_copy()
        return credential

    async def get(self, key_id):
        key = self.keys.get(key_id)
        await asyncio.sleep(0)
        return key.model_copy() if key else None

    async def get_by_credential_id(self, credential_id):
        for key in self.keys.values():
            if key.credential_id == credential_id:
                return key.model_copy()
        return None

    async def list_by_ids(self, key_ids):
        return [self.keys[key_id].model_copy() for key_id in key_ids if key_id in self.keys]

    async def delete_unassigned(self, key_id):
        key = self.keys.get(key_id)
        if key is None or not key.is_available_for_assignment():
            return False
        del self.keys[key_id]
        return True

    async def mark_assigned(self, key_id, assignment_id, user_handle):
        key = self.keys.get(key_id)
        if key is None or not key.is_available_for_assignment():
            return False
        self.keys[key_id] = key.model_copy(
            update={
                "status": CredentialStatus.ASSIGNED,
                "current_assignment_id": assignment_id,
                "user_handle": user_handle,
                "revoked_at": None,
                "revoked_by": None,
            }
        )
        return True

    async def mark_available(self, key_id, assignment_id, revoked_by, revoked_at):
        key = self.keys.get(key_id)
        if key is None or key.status != CredentialStatus.ASSIGNED or key.current_assignment_id != assignment_id:
            return False
        self.keys[key_id] = key.model_copy(
            update={
                "status": CredentialStatus.AVAILABLE,
                "current_assignment_id": None,
                "user_handle": None,
                "revoked_at": revoked_at,
                "revoked_by": revoked_by,
            }
        )
        return True

    async def record_usage(self, key_id, sign_count, used_at):
        key = self.keys.get(key_id)
        if key is None or key.sign_count > sign_count:
            return False
        self.keys[key_id] = key.model_copy(update={"sign_count": sign_count, "last_used": used_at})
        return True

    def _matching(self, filters: KeySearchFilters) -> List[SecurityKeyCredential]:
        matches = []
        for key in self.keys.values():
            if filters.status is not None and key.status != filters.status:
                continue
            if filters.search:
                needle = filters.search.strip().lower()
                if needle not in key.serial_number.lower() and needle not in key.device_name.lower():
                    continue
            matches.append(key)
        return sorted(matches, key=lambda k: k.created_at, reverse=True)

    async def search(self, filters, limit=50, skip=0):
        return [k.model_copy() for k in self._matching(filters)[skip : skip + limit]]

    async def count(self, filters):
        return len(self._matching(filters))

    async def inventory(self):
        counts: Dict[str, int] = {}
        for key in self.keys.values():
            counts[key.status.value] = counts.get(key.status.value, 0) + 1
        return build_inventory_report([{"_id": status, "count": n} for status, n in counts.items()])


class InMemoryAssignmentLedger(AssignmentLedger):
    def __init__(self):
        self.rows: Dict[str, KeyAssignment] = {}

    async def open(self, assignment):
        if any(
            row.key_id == assignment.key_id and row.status == AssignmentStatus.ACTIVE for row in self.rows.values()
        ):
            raise KeyNotAvailableError("Key already has an active assignment")
        self.rows[assignment.id] = assignment.model_copy()
        return assignment

    async def get(self, assignment_id):
        row = self.rows.get(assignment_id)
        return row.model_copy() if row else None

    async def close(self, assignment_id, revoked_by, revoked_at):
        row = self.rows.get(assignment_id)
        if row is None or row.status != AssignmentStatus.ACTIVE:
            return False
        self.rows[assignment_id] = row.model_copy(
            update={"status": AssignmentStatus.REVOKED, "revoked_by": revoked_by, "revoked_at": revoked_at}
        )
        return True

    async def discard(self, assignment_id):
        row = self.rows.get(assignment_id)
        if row is None or row.status != AssignmentStatus.ACTIVE:
            return False
        del self.rows[assignment_id]
        return True

    async def active_for_user(self, user_id):
        return [r.model_copy() for r in self.rows.values() if r.user_id == user_id and r.status == AssignmentStatus.ACTIVE]

    async def history_for_key(self, key_id):
        rows = [r.model_copy() for r in self.rows.values() if r.key_id == key_id]
        return sorted(rows, key=lambda r: r.assigned_at, reverse=True)

    def active_for_key(self, key_id) -> List[KeyAssignment]:
        return [r for r in self.rows.values() if r.key_id == key_id and r.status == AssignmentStatus.ACTIVE]


class InMemoryAuditSink(AuditSink):
    def __init__(self):
        self.entries: List[AuditRecord] = []

    async def record(self, entry):
        self.entries.append(entry)

    def actions(self) -> List[str]:
        return [e.action.value for e in self.entries]


class FailingAuditSink(AuditSink):
    async def record(self, entry):
        raise RuntimeError("audit store offline")


class InMemoryUserDirectory(UserDirectory):
    def __init__(self, users: List[UserIdentity]):
        self.users = {u.user_id: u for u in users}
        self.fido_registered: set = set()
        self.last_login: Dict[str, datetime] = {}

    async def get(self, user_id):
        return self.users.get(user_id)

    async def find_by_email(self, email):
        email = email.strip().lower()
        return next((u for u in self.users.values() if u.email == email), None)

    async def mark_fido_registered(self, user_id):
        self.fido_registered.add(user_id)

    async def record_login(self, user_id, at):
        self.last_login[user_id] = at
