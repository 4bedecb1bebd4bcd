"""
HTTP tests for the FIDO2 and admin routers.

Services are swapped for in-memory ones through ``app.dependency_overrides``;
the lifespan (MongoDB, sweeper) is not started.
"""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient
import pytest

from soft_authenticator import SoftAuthenticator
from secure_key_vault import main
from secure_key_vault.database.helpers import new_id
from secure_key_vault.main import app
from secure_key_vault.models.key_models import SecurityKeyCredential
from secure_key_vault.routes.dependencies import get_ceremony_engine, get_key_admin_service, get_user_directory
from secure_key_vault.services.access_control import create_access_token, decode_access_token


@pytest.fixture
def client(engine, key_admin, users):
    app.dependency_overrides[get_ceremony_engine] = lambda: engine
    app.dependency_overrides[get_key_admin_service] = lambda: key_admin
    app.dependency_overrides[get_user_directory] = lambda: users
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers(alice):
    return {"Authorization": f"Bearer {create_access_token(alice)}"}


@pytest.fixture
def bob_headers(bob):
    return {"Authorization": f"Bearer {create_access_token(bob)}"}


def stock_key(credentials, serial="FT-STOCK1") -> SecurityKeyCredential:
    key = SecurityKeyCredential(id=new_id(), serial_number=serial, credential_id=f"c-{serial}", public_key="pk")
    credentials.keys[key.id] = key
    return key


def register_over_http(client, user, headers, authenticator):
    begin = client.post("/fido/register/begin", json={"user_id": user.user_id}, headers=headers)
    assert begin.status_code == 200
    payload = authenticator.register(begin.json()["options"]["challenge"])
    return client.post(
        "/fido/register/complete",
        json={"user_id": user.user_id, "attestation_response": payload},
        headers=headers,
    )


class TestFidoRoutes:
    def test_register_and_login(self, client, bob, bob_headers, users):
        authenticator = SoftAuthenticator()

        registered = register_over_http(client, bob, bob_headers, authenticator)

        assert registered.status_code == 200
        body = registered.json()
        assert body["status"] == "assigned"
        assert body["credential_id"] == authenticator.credential_id_b64
        assert body["serial_number"].startswith("FT-")
        assert bob.user_id in users.fido_registered

        begin = client.post("/fido/login/begin", json={"email": bob.email})
        assert begin.status_code == 200
        challenge = begin.json()["options"]["challenge"]

        login = client.post(
            "/fido/login/complete",
            json={"email": bob.email, "assertion_response": authenticator.authenticate(challenge)},
        )

        assert login.status_code == 200
        token_body = login.json()
        assert token_body["token_type"] == "bearer"
        assert token_body["serial_number"] == body["serial_number"]
        assert decode_access_token(token_body["access_token"]).caller_id == bob.user_id
        assert bob.user_id in users.last_login

    def test_register_requires_token(self, client, bob):
        response = client.post("/fido/register/begin", json={"user_id": bob.user_id})

        assert response.status_code == 401

    def test_register_for_someone_else_is_forbidden(self, client, alice, bob_headers):
        response = client.post("/fido/register/begin", json={"user_id": alice.user_id}, headers=bob_headers)

        assert response.status_code == 403

    def test_admin_registers_for_user(self, client, bob, admin_headers):
        response = register_over_http(client, bob, admin_headers, SoftAuthenticator())

        assert response.status_code == 200

    def test_register_unknown_user(self, client, admin_headers):
        response = client.post("/fido/register/begin", json={"user_id": new_id()}, headers=admin_headers)

        assert response.status_code == 404

    def test_register_complete_shape_is_validated(self, client, bob, bob_headers):
        response = client.post(
            "/fido/register/complete",
            json={"user_id": bob.user_id, "attestation_response": {"id": "x", "response": {}}},
            headers=bob_headers,
        )

        assert response.status_code == 422

    def test_login_begin_without_keys(self, client, bob):
        response = client.post("/fido/login/begin", json={"email": bob.email})

        assert response.status_code == 404
        assert response.json() == {"detail": "No security keys are assigned to this user."}

    def test_login_failures_share_one_response(self, client, alice, bob, bob_headers, admin_headers):
        alice_key = SoftAuthenticator()
        register_over_http(client, alice, admin_headers, alice_key)
        register_over_http(client, bob, bob_headers, SoftAuthenticator())

        challenge = client.post("/fido/login/begin", json={"email": bob.email}).json()["options"]["challenge"]
        wrong_owner = client.post(
            "/fido/login/complete",
            json={"email": bob.email, "assertion_response": alice_key.authenticate(challenge)},
        )
        unknown_user = client.post(
            "/fido/login/complete",
            json={"email": "ghost@example.com", "assertion_response": alice_key.authenticate(challenge)},
        )

        assert wrong_owner.status_code == unknown_user.status_code == 401
        assert wrong_owner.json() == unknown_user.json() == {"detail": "Authentication failed."}
        assert wrong_owner.headers["www-authenticate"] == "Bearer"

    def test_store_outage_is_opaque(self, client, bob, bob_headers, redis_manager):
        redis_manager.redis.down = True

        response = client.post("/fido/register/begin", json={"user_id": bob.user_id}, headers=bob_headers)

        assert response.status_code == 500
        assert response.json() == {"detail": "Internal server error."}

    def test_serial_collision_is_reported_as_retryable(self, client, bob, bob_headers, credentials):
        stock_key(credentials, serial="FT-TAKEN")

        with patch(
            "secure_key_vault.services.ceremony.registration.generate_serial_number", return_value="FT-TAKEN"
        ):
            response = register_over_http(client, bob, bob_headers, SoftAuthenticator())

        assert response.status_code == 409
        assert response.json() == {
            "detail": "Could not allocate a serial number. Please retry.",
            "retryable": True,
        }


class TestAdminRoutes:
    def test_requires_token(self, client):
        assert client.get("/admin/keys").status_code == 401

    def test_rejects_garbage_token(self, client):
        response = client.get("/admin/keys", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401

    def test_requires_admin(self, client, bob_headers):
        response = client.get("/admin/keys", headers=bob_headers)

        assert response.status_code == 403

    def test_assign_and_revoke(self, client, credentials, bob, admin_headers):
        key = stock_key(credentials)

        assigned = client.post("/admin/keys/assign", json={"key_id": key.id, "email": bob.email}, headers=admin_headers)
        assert assigned.status_code == 200
        assert assigned.json()["user_id"] == bob.user_id
        assert assigned.json()["status"] == "active"

        revoked = client.post("/admin/keys/revoke", json={"key_id": key.id}, headers=admin_headers)
        assert revoked.status_code == 200
        assert revoked.json()["status"] == "revoked"

        again = client.post("/admin/keys/revoke", json={"key_id": key.id}, headers=admin_headers)
        assert again.status_code == 409
        assert again.json() == {"detail": "Key is not currently assigned."}

    def test_assign_taken_key_conflicts(self, client, credentials, alice, bob, admin_headers):
        key = stock_key(credentials)
        client.post("/admin/keys/assign", json={"key_id": key.id, "email": bob.email}, headers=admin_headers)

        response = client.post(
            "/admin/keys/assign", json={"key_id": key.id, "email": alice.email}, headers=admin_headers
        )

        assert response.status_code == 409

    def test_list_count_and_details(self, client, credentials, bob, admin_headers):
        key = stock_key(credentials, "FT-AAA")
        stock_key(credentials, "FT-BBB")
        client.post("/admin/keys/assign", json={"key_id": key.id, "email": bob.email}, headers=admin_headers)

        listing = client.get("/admin/keys", params={"status": "assigned"}, headers=admin_headers)
        assert listing.status_code == 200
        assert listing.json()["total"] == 1
        assert listing.json()["keys"][0]["serial_number"] == "FT-AAA"

        count = client.get("/admin/keys/count", params={"search": "ft-b"}, headers=admin_headers)
        assert count.json() == {"count": 1}

        details = client.get(f"/admin/keys/{key.id}", headers=admin_headers)
        assert details.status_code == 200
        assert details.json()["current_assignment"]["user_id"] == bob.user_id
        assert len(details.json()["history"]) == 1

    def test_unknown_key_details(self, client, admin_headers):
        response = client.get(f"/admin/keys/{new_id()}", headers=admin_headers)

        assert response.status_code == 404

    def test_inventory(self, client, credentials, admin_headers):
        stock_key(credentials, "FT-AAA")
        stock_key(credentials, "FT-BBB")

        response = client.get("/admin/reports/inventory", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["total"] == 2
        assert response.json()["by_status"] == {"available": 2, "assigned": 0}


class TestHealth:
    def test_healthy(self, client):
        with patch.object(main.db_manager, "health_check", AsyncMock(return_value=True)), patch.object(
            main.redis_manager, "health_check", AsyncMock(return_value=True)
        ):
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_database_down(self, client):
        with patch.object(main.db_manager, "health_check", AsyncMock(return_value=False)), patch.object(
            main.redis_manager, "health_check", AsyncMock(return_value=True)
        ):
            response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["database"] == "unavailable"
