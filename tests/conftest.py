"""
Pytest configuration for Secure Key Vault tests.

Sets a test environment before the application modules are imported and
provides in-memory stand-ins for MongoDB and Redis, so every test runs
without external services.
"""

import os
import sys

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

os.environ.setdefault("SECRET_KEY", "test-signing-key-for-the-key-vault-suite")
os.environ.setdefault("MONGODB_URL", "mongodb://localhost:27017")
os.environ.setdefault("WEBAUTHN_RP_ID", "localhost")
os.environ.setdefault("WEBAUTHN_ORIGIN", "http://localhost:3000")
os.environ.setdefault("LOG_FILE_ENABLED", "false")
os.environ.setdefault("LOKI_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from fakes import (  # noqa: E402
    FakeClock,
    FakeRedisManager,
    InMemoryAssignmentLedger,
    InMemoryAuditSink,
    InMemoryCredentialRepository,
    InMemoryUserDirectory,
)
from soft_authenticator import ORIGIN, RP_ID  # noqa: E402

from secure_key_vault.config import CeremonyConfig  # noqa: E402
from secure_key_vault.models.key_models import UserIdentity  # noqa: E402
from secure_key_vault.services.ceremony.engine import CeremonyEngine  # noqa: E402
from secure_key_vault.services.challenge_store import ChallengeStore  # noqa: E402
from secure_key_vault.services.key_admin import KeyAdministrationService  # noqa: E402
from secure_key_vault.services.key_assignment import KeyAssignmentService  # noqa: E402


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_manager():
    return FakeRedisManager()


@pytest.fixture
def ceremony_config():
    return CeremonyConfig(rp_id=RP_ID, rp_name="Secure Key Vault Test", origin=ORIGIN)


@pytest.fixture
def challenge_store(redis_manager, clock, ceremony_config):
    return ChallengeStore(redis_manager, ttl_seconds=ceremony_config.challenge_ttl_seconds, clock=clock)


@pytest.fixture
def credentials():
    return InMemoryCredentialRepository()


@pytest.fixture
def ledger():
    return InMemoryAssignmentLedger()


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest.fixture
def alice():
    return UserIdentity(
        user_id="652f1c0b9d1e8a0012a3b4c1", email="alice@example.com", name="alice", display_name="Alice Admin", role="admin"
    )


@pytest.fixture
def bob():
    return UserIdentity(
        user_id="652f1c0b9d1e8a0012a3b4c2", email="bob@example.com", name="bob", display_name="Bob Builder"
    )


@pytest.fixture
def users(alice, bob):
    return InMemoryUserDirectory([alice, bob])


@pytest.fixture
def assignment_service(credentials, ledger, clock):
    return KeyAssignmentService(credentials, ledger, clock=clock)


@pytest.fixture
def engine(ceremony_config, challenge_store, credentials, ledger, assignment_service, audit_sink, clock):
    return CeremonyEngine(
        config=ceremony_config,
        challenges=challenge_store,
        credentials=credentials,
        ledger=ledger,
        assignments=assignment_service,
        audit=audit_sink,
        clock=clock,
    )


@pytest.fixture
def key_admin(credentials, ledger, assignment_service, users, audit_sink):
    return KeyAdministrationService(
        credentials=credentials,
        ledger=ledger,
        assignments=assignment_service,
        users=users,
        audit=audit_sink,
    )
