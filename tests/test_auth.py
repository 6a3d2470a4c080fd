"""
Unit tests for authentication primitives and the protect/restrict guard.
"""

import hashlib
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from bson import ObjectId
from jose import jwt

from tour_service.auth import (
    changed_password_after,
    create_access_token,
    create_password_reset_token,
    decode_access_token,
    hash_password,
    hash_reset_token,
    verify_password,
)
from tour_service.config import settings
from tour_service.dependencies import AuthenticatedUser, authorize, restrict_to, verify_session
from tour_service.errors import Forbidden, InvalidToken, StalePassword, Unauthenticated, UserGone, ValidationError


def stored_user(role="user", password_changed_at=None):
    user = {"_id": ObjectId(), "name": "Guard User", "email": "guard@example.com", "role": role,
            "password": "hashed", "active": True}
    if password_changed_at is not None:
        user["passwordChangedAt"] = password_changed_at
    return user


# ============================================================================
# Hashing
# ============================================================================

class TestPasswordHashing:

    def test_hash_and_verify(self):
        hashed = hash_password("password123")
        assert hashed != "password123"
        assert hashed.startswith("$2")
        assert verify_password("password123", hashed)
        assert not verify_password("wrong-password", hashed)

    def test_hash_is_salted(self):
        assert hash_password("password123") != hash_password("password123")


class TestResetTokens:

    def test_token_hash_is_sha256_fingerprint(self):
        raw, token_hash, _ = create_password_reset_token()
        assert token_hash == hashlib.sha256(raw.encode()).hexdigest()
        assert hash_reset_token(raw) == token_hash

    def test_expiry_is_ten_minutes(self):
        before = datetime.now(timezone.utc)
        _, _, expires_at = create_password_reset_token()
        delta = expires_at - before
        assert timedelta(minutes=9, seconds=59) <= delta <= timedelta(minutes=10, seconds=1)

    def test_tokens_are_unique(self):
        assert create_password_reset_token()[0] != create_password_reset_token()[0]


# ============================================================================
# Session tokens
# ============================================================================

class TestSessionTokens:

    def test_round_trip_claims(self):
        token = create_access_token("abc123")
        payload = decode_access_token(token)
        assert payload["id"] == "abc123"
        assert payload["exp"] > time.time() + (settings.JWT_EXPIRES_IN_DAYS - 1) * 86400
        assert abs(payload["iat"] - time.time()) < 5

    def test_expired_token_rejected(self):
        token = create_access_token("abc123", expires_delta=timedelta(seconds=-10))
        assert decode_access_token(token) is None

    def test_wrong_secret_rejected(self):
        token = jwt.encode({"id": "abc123", "iat": time.time()}, "another-secret-key-of-at-least-32-chars", algorithm="HS256")
        assert decode_access_token(token) is None

    def test_token_without_id_rejected(self):
        token = jwt.encode({"iat": time.time()}, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
        assert decode_access_token(token) is None


class TestChangedPasswordAfter:

    def test_never_changed(self):
        assert changed_password_after(None, time.time()) is False

    def test_changed_after_issue(self):
        issued_at = time.time() - 60
        assert changed_password_after(datetime.now(timezone.utc), issued_at) is True

    def test_changed_before_issue(self):
        changed_at = datetime.now(timezone.utc) - timedelta(minutes=5)
        assert changed_password_after(changed_at, time.time()) is False

    def test_naive_datetimes_treated_as_utc(self):
        changed_at = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(seconds=30)
        assert changed_password_after(changed_at, time.time()) is True


# ============================================================================
# Verify (protect)
# ============================================================================

@pytest.mark.asyncio
class TestVerifySession:

    async def test_missing_token_is_unauthenticated(self):
        with pytest.raises(Unauthenticated) as exc_info:
            await verify_session(None)
        assert type(exc_info.value) is Unauthenticated
        assert exc_info.value.status_code == 401

    async def test_bad_signature_is_invalid_token(self):
        with pytest.raises(InvalidToken):
            await verify_session("not.a.token")

    async def test_expired_token_is_invalid_token(self):
        token = create_access_token(str(ObjectId()), expires_delta=timedelta(seconds=-1))
        with pytest.raises(InvalidToken):
            await verify_session(token)

    async def test_missing_user_is_user_gone(self):
        token = create_access_token(str(ObjectId()))
        with patch("tour_service.dependencies.select_user", new_callable=AsyncMock, return_value=None):
            with pytest.raises(UserGone):
                await verify_session(token)

    async def test_malformed_id_claim_is_invalid_token(self):
        token = create_access_token("not-an-object-id")
        with patch("tour_service.dependencies.select_user", new_callable=AsyncMock,
                   side_effect=ValidationError("Invalid _id: not-an-object-id.")):
            with pytest.raises(InvalidToken):
                await verify_session(token)

    async def test_password_changed_after_issue_is_stale(self):
        token = create_access_token(str(ObjectId()))
        user = stored_user(password_changed_at=datetime.now(timezone.utc) + timedelta(seconds=1))
        with patch("tour_service.dependencies.select_user", new_callable=AsyncMock, return_value=user):
            with pytest.raises(StalePassword):
                await verify_session(token)

    async def test_valid_token_produces_proof(self):
        user = stored_user(password_changed_at=datetime.now(timezone.utc) - timedelta(days=1))
        token = create_access_token(str(user["_id"]))
        with patch("tour_service.dependencies.select_user", new_callable=AsyncMock, return_value=user) as mock_select:
            principal = await verify_session(token)

        mock_select.assert_awaited_once_with(str(user["_id"]))
        assert isinstance(principal, AuthenticatedUser)
        assert principal.id == user["_id"]
        assert principal.role == "user"


# ============================================================================
# Authorize (restrictTo)
# ============================================================================

class TestAuthorize:

    def test_proof_cannot_be_forged(self):
        with pytest.raises(TypeError):
            AuthenticatedUser(user=stored_user(role="admin"))

    def test_authorize_requires_proof(self):
        with pytest.raises(TypeError):
            authorize(stored_user(role="admin"), ("admin",))

    @pytest.mark.asyncio
    async def test_restrict_to_admin(self):
        admin_only = restrict_to("admin")
        for role, allowed in (("guide", False), ("admin", True)):
            user = stored_user(role=role)
            token = create_access_token(str(user["_id"]))
            with patch("tour_service.dependencies.select_user", new_callable=AsyncMock, return_value=user):
                principal = await verify_session(token)
            if allowed:
                assert await admin_only(principal) is principal
            else:
                with pytest.raises(Forbidden) as exc_info:
                    await admin_only(principal)
                assert exc_info.value.status_code == 403

    def test_restrict_to_rejects_unknown_role(self):
        with pytest.raises(ValueError):
            restrict_to("superuser")
