"""
Tests for administrative key operations.
"""

import pytest

from secure_key_vault.database.helpers import new_id
from secure_key_vault.exceptions import (
    KeyNotAssignedError,
    KeyNotAvailableError,
    KeyNotFoundError,
    PermissionDeniedError,
    UserNotFoundError,
)
from secure_key_vault.models.key_models import (
    AssignmentStatus,
    CallerIdentity,
    CredentialStatus,
    KeySearchFilters,
    SecurityKeyCredential,
)

ADMIN = CallerIdentity(caller_id="652f1c0b9d1e8a0012a3b4c1", role="admin")
USER = CallerIdentity(caller_id="652f1c0b9d1e8a0012a3b4c2", role="user")


async def stock_keys(credentials, clock, count=3):
    keys = []
    for i in range(count):
        key = SecurityKeyCredential(
            id=new_id(),
            serial_number=f"FT-{i:04d}",
            credential_id=f"cred-{i}",
            public_key="pk",
            device_name="YubiKey 5 NFC" if i % 2 == 0 else "Titan",
            created_at=clock(),
        )
        keys.append(await credentials.insert(key))
        clock.advance(1)
    return keys


class TestPermissions:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "call",
        [
            lambda s: s.search_keys(USER, KeySearchFilters()),
            lambda s: s.count_keys(USER, KeySearchFilters()),
            lambda s: s.key_details(USER, "k"),
            lambda s: s.assign_key(USER, "k", "bob@example.com"),
            lambda s: s.revoke_key(USER, "k"),
            lambda s: s.inventory_report(USER),
        ],
    )
    async def test_non_admin_is_denied(self, key_admin, call):
        with pytest.raises(PermissionDeniedError):
            await call(key_admin)


class TestAssignAndRevoke:
    @pytest.mark.asyncio
    async def test_assign_by_email(self, key_admin, credentials, clock, bob, audit_sink):
        (key,) = await stock_keys(credentials, clock, count=1)

        assignment = await key_admin.assign_key(ADMIN, key.id, "bob@example.com")

        assert assignment.user_id == bob.user_id
        assert assignment.assigned_by == ADMIN.caller_id
        assert (await credentials.get(key.id)).status == CredentialStatus.ASSIGNED
        (entry,) = audit_sink.entries
        assert entry.action.value == "KEY_ASSIGNED"
        assert entry.performed_by == ADMIN.caller_id
        assert entry.resource_id == key.id
        assert entry.details["target_user_id"] == bob.user_id

    @pytest.mark.asyncio
    async def test_assign_unknown_email(self, key_admin, credentials, clock):
        (key,) = await stock_keys(credentials, clock, count=1)

        with pytest.raises(UserNotFoundError):
            await key_admin.assign_key(ADMIN, key.id, "nobody@example.com")

        assert (await credentials.get(key.id)).status == CredentialStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_assign_taken_key(self, key_admin, credentials, clock, audit_sink):
        (key,) = await stock_keys(credentials, clock, count=1)
        await key_admin.assign_key(ADMIN, key.id, "bob@example.com")

        with pytest.raises(KeyNotAvailableError):
            await key_admin.assign_key(ADMIN, key.id, "alice@example.com")

        assert len(audit_sink.entries) == 1

    @pytest.mark.asyncio
    async def test_revoke(self, key_admin, credentials, clock, bob, audit_sink):
        (key,) = await stock_keys(credentials, clock, count=1)
        await key_admin.assign_key(ADMIN, key.id, "bob@example.com")

        revoked = await key_admin.revoke_key(ADMIN, key.id)

        assert revoked.status == AssignmentStatus.REVOKED
        assert revoked.revoked_by == ADMIN.caller_id
        assert (await credentials.get(key.id)).status == CredentialStatus.AVAILABLE
        assert audit_sink.actions() == ["KEY_ASSIGNED", "KEY_REVOKED"]
        assert audit_sink.entries[-1].details["target_user_id"] == bob.user_id

    @pytest.mark.asyncio
    async def test_revoke_unassigned(self, key_admin, credentials, clock, audit_sink):
        (key,) = await stock_keys(credentials, clock, count=1)

        with pytest.raises(KeyNotAssignedError):
            await key_admin.revoke_key(ADMIN, key.id)

        assert audit_sink.entries == []


class TestInventory:
    @pytest.mark.asyncio
    async def test_search_filters_and_total(self, key_admin, credentials, clock):
        await stock_keys(credentials, clock, count=5)

        keys, total = await key_admin.search_keys(ADMIN, KeySearchFilters(search="yubikey"), limit=2)

        assert total == 3
        assert len(keys) == 2
        assert all(k.device_name == "YubiKey 5 NFC" for k in keys)

    @pytest.mark.asyncio
    async def test_search_newest_first(self, key_admin, credentials, clock):
        keys = await stock_keys(credentials, clock, count=3)

        found, _ = await key_admin.search_keys(ADMIN, KeySearchFilters())

        assert [k.id for k in found] == [k.id for k in reversed(keys)]

    @pytest.mark.asyncio
    async def test_search_clamps_page_size(self, key_admin, credentials, clock):
        await stock_keys(credentials, clock, count=3)

        keys, total = await key_admin.search_keys(ADMIN, KeySearchFilters(), limit=0, skip=-5)

        assert len(keys) == 1
        assert total == 3

    @pytest.mark.asyncio
    async def test_count_by_status(self, key_admin, credentials, clock):
        keys = await stock_keys(credentials, clock, count=3)
        await key_admin.assign_key(ADMIN, keys[0].id, "bob@example.com")

        assert await key_admin.count_keys(ADMIN, KeySearchFilters(status=CredentialStatus.ASSIGNED)) == 1
        assert await key_admin.count_keys(ADMIN, KeySearchFilters(status=CredentialStatus.AVAILABLE)) == 2

    @pytest.mark.asyncio
    async def test_key_details_with_history(self, key_admin, credentials, clock, alice, bob):
        (key,) = await stock_keys(credentials, clock, count=1)
        await key_admin.assign_key(ADMIN, key.id, "bob@example.com")
        clock.advance(60)
        await key_admin.revoke_key(ADMIN, key.id)
        clock.advance(60)
        current = await key_admin.assign_key(ADMIN, key.id, "alice@example.com")

        details = await key_admin.key_details(ADMIN, key.id)

        assert details.key.id == key.id
        assert details.current_assignment.id == current.id
        assert [a.user_id for a in details.history] == [alice.user_id, bob.user_id]

    @pytest.mark.asyncio
    async def test_key_details_unknown(self, key_admin):
        with pytest.raises(KeyNotFoundError):
            await key_admin.key_details(ADMIN, new_id())

    @pytest.mark.asyncio
    async def test_inventory_report(self, key_admin, credentials, clock):
        keys = await stock_keys(credentials, clock, count=4)
        await key_admin.assign_key(ADMIN, keys[1].id, "bob@example.com")

        report = await key_admin.inventory_report(ADMIN)

        assert report.total == 4
        assert report.by_status == {"available": 3, "assigned": 1}
