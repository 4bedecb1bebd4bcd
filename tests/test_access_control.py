"""
Tests for JWT issuance/validation and role checks.
"""

from jose import jwt
import pytest

from secure_key_vault.config import settings
from secure_key_vault.exceptions import InvalidTokenError, PermissionDeniedError
from secure_key_vault.models.key_models import CallerIdentity
from secure_key_vault.services.access_control import (
    create_access_token,
    decode_access_token,
    require_admin,
    require_role,
    require_self_or_admin,
)


class TestAccessTokens:
    def test_round_trip(self, bob):
        caller = decode_access_token(create_access_token(bob))

        assert caller == CallerIdentity(caller_id=bob.user_id, role="user")

    def test_claims(self, alice):
        token = create_access_token(alice)

        payload = jwt.decode(token, settings.SECRET_KEY.get_secret_value(), algorithms=[settings.ALGORITHM])
        assert payload["sub"] == alice.user_id
        assert payload["role"] == "admin"
        assert payload["email"] == alice.email
        assert payload["type"] == "access"

    def test_expired_token(self, bob):
        token = create_access_token(bob, expires_minutes=-1)

        with pytest.raises(InvalidTokenError, match="expired"):
            decode_access_token(token)

    def test_tampered_token(self, bob):
        token = create_access_token(bob)
        header, payload, signature = token.split(".")
        forged = f"{header}.{payload}.{signature[::-1]}"

        with pytest.raises(InvalidTokenError):
            decode_access_token(forged)

    def test_token_signed_with_other_key(self, bob):
        token = jwt.encode({"sub": bob.user_id, "role": "admin"}, "another-key", algorithm="HS256")

        with pytest.raises(InvalidTokenError):
            decode_access_token(token)

    def test_token_without_role(self):
        token = jwt.encode({"sub": "u1"}, settings.SECRET_KEY.get_secret_value(), algorithm=settings.ALGORITHM)

        with pytest.raises(InvalidTokenError, match="claims"):
            decode_access_token(token)


class TestRoles:
    def test_admin_passes(self):
        caller = CallerIdentity(caller_id="a1", role="admin")
        assert require_admin(caller) is caller

    def test_user_denied(self):
        with pytest.raises(PermissionDeniedError):
            require_admin(CallerIdentity(caller_id="u1", role="user"))

    def test_require_role_any_of(self):
        caller = CallerIdentity(caller_id="m1", role="manager")
        assert require_role(caller, "admin", "manager") is caller

    def test_self_registration_allowed(self):
        caller = CallerIdentity(caller_id="u1", role="user")
        assert require_self_or_admin(caller, "u1") is caller

    def test_admin_may_act_for_others(self):
        caller = CallerIdentity(caller_id="a1", role="admin")
        assert require_self_or_admin(caller, "u1") is caller

    def test_user_may_not_act_for_others(self):
        with pytest.raises(PermissionDeniedError):
            require_self_or_admin(CallerIdentity(caller_id="u1", role="user"), "u2")
