"""Unit tests for the auth service.

Tests for:
- Password hashing and verification
- Registration and duplicate handling
- Login rules (credentials, bans, deactivation, verification)
- OTP issue and verification
- Password reset flow
- Refresh rotation, logout and account deletion
"""

import threading
from dataclasses import replace
from datetime import timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from muxic.api.schemas import ResetPasswordRequest
from muxic.config import Settings
from muxic.service.auth import PASSWORD_MIN_LENGTH, AuthService, UnverifiedAccountError
from muxic.service.errors import (
    AuthenticationError,
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from muxic.service.tokens import TokenIssuer
from muxic.storage.errors import ConstraintViolation
from muxic.storage.memory import MemoryStore
from muxic.storage.models import Room, RoomParticipant, SyncSession, utcnow

PASSWORD = "TestPassword123!"


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def tokens(memory_store, settings):
    return TokenIssuer(memory_store, settings)


@pytest.fixture
def auth_service(memory_store, tokens, settings):
    return AuthService(memory_store, tokens, settings)


@pytest.fixture
def registered(auth_service):
    """An unverified user and the plaintext code issued at registration."""
    return auth_service.register("test@example.com", PASSWORD, "tester_one", "Test User")


@pytest.fixture
def verified_user(auth_service, registered):
    user, code = registered
    return auth_service.verify_otp(user.id, code)


def _expire_otp(store, user_id):
    store.update_user(user_id, otp_expires_at=utcnow() - timedelta(seconds=1))


class TestPasswordHashing:
    """argon2id hashing."""

    def test_hash_is_not_plaintext(self, auth_service):
        pwd_hash, algo = auth_service._hash_password(PASSWORD)

        assert algo == "argon2id"
        assert pwd_hash != PASSWORD
        assert pwd_hash.startswith("$argon2id$")

    def test_same_password_produces_different_hashes(self, auth_service):
        first, _ = auth_service._hash_password(PASSWORD)
        second, _ = auth_service._hash_password(PASSWORD)
        assert first != second

    def test_registered_hash_verifies_plaintext(self, auth_service, registered):
        user, _ = registered

        assert user.password_hash != PASSWORD
        assert auth_service.verify_password(user, PASSWORD)
        assert not auth_service.verify_password(user, "WrongPassword1!")

    def test_oauth_only_user_has_no_password(self, auth_service, memory_store):
        user = memory_store.create_user(
            "g@example.com", "guser", "G User", google_id="g-1", is_verified=True
        )
        assert not auth_service.verify_password(user, PASSWORD)

    def test_unknown_algorithm_never_verifies(self, auth_service, registered):
        user, _ = registered
        assert not auth_service.verify_password(replace(user, password_algo="md5"), PASSWORD)


class TestRegistration:
    """register() validation and side effects."""

    def test_register_creates_unverified_user_with_stats(
        self, auth_service, memory_store, registered
    ):
        user, code = registered

        assert user.is_verified is False
        assert user.email == "test@example.com"
        assert len(code) == 6 and code.isdigit()
        assert 100000 <= int(code) <= 999999
        assert memory_store.get_user_stats(user.id) is not None

    def test_otp_is_stored_hashed(self, memory_store, registered):
        user, code = registered
        stored = memory_store.get_user(user.id)

        assert stored.otp_hash and stored.otp_hash != code
        assert code not in stored.otp_hash
        assert stored.otp_expires_at > utcnow()

    def test_duplicate_email_is_case_insensitive(self, auth_service, registered):
        with pytest.raises(ConflictError) as excinfo:
            auth_service.register("TEST@example.com", PASSWORD, "someone_else", "Other")
        assert excinfo.value.message == "Email already registered"
        assert excinfo.value.status_code == 409

    def test_duplicate_username(self, auth_service, registered):
        with pytest.raises(ConflictError) as excinfo:
            auth_service.register("other@example.com", PASSWORD, "tester_one", "Other")
        assert excinfo.value.message == "Username already taken"

    def test_store_race_maps_to_field_conflict(self, auth_service, monkeypatch):
        def _racing_create(*args, **kwargs):
            raise ConstraintViolation("username already exists", {"field": "username"})

        monkeypatch.setattr(auth_service.store, "create_user", _racing_create)
        with pytest.raises(ConflictError) as excinfo:
            auth_service.register("race@example.com", PASSWORD, "racer_one", "Racer")
        assert excinfo.value.message == "Username already taken"
        assert excinfo.value.detail == {"field": "username"}

    def test_concurrent_registrations_yield_one_winner(self, auth_service):
        outcomes: list = []
        barrier = threading.Barrier(4)

        def _register(i):
            barrier.wait()
            try:
                auth_service.register(
                    "same@example.com", PASSWORD, f"user_race{i}", "Racer"
                )
                outcomes.append("ok")
            except ConflictError as exc:
                outcomes.append(exc.message)

        threads = [threading.Thread(target=_register, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("Email already registered") == 3


class TestLogin:
    """authenticate() outcomes."""

    def test_login_by_email_and_username(self, auth_service, verified_user):
        by_email = auth_service.authenticate("test@example.com", PASSWORD)
        by_username = auth_service.authenticate("tester_one", PASSWORD)

        assert by_email.id == by_username.id == verified_user.id
        assert by_email.last_login is not None

    def test_wrong_password_and_unknown_user_share_message(
        self, auth_service, verified_user
    ):
        for identifier, password in (
            ("test@example.com", "WrongPassword1!"),
            ("nobody@example.com", PASSWORD),
        ):
            with pytest.raises(AuthenticationError) as excinfo:
                auth_service.authenticate(identifier, password)
            assert excinfo.value.message == "Invalid credentials"
            assert excinfo.value.status_code == 401

    def test_banned_user_sees_reason(self, auth_service, verified_user):
        auth_service.set_ban(verified_user.id, True, "spamming rooms")

        with pytest.raises(ForbiddenError) as excinfo:
            auth_service.authenticate("tester_one", PASSWORD)
        assert excinfo.value.message == "Account suspended: spamming rooms"
        assert excinfo.value.status_code == 403

    def test_banned_without_reason(self, auth_service, verified_user):
        auth_service.set_ban(verified_user.id, True)
        with pytest.raises(ForbiddenError, match="^Account suspended$"):
            auth_service.authenticate("tester_one", PASSWORD)

    def test_deactivated_user_is_refused(self, auth_service, verified_user):
        auth_service.set_active(verified_user.id, False)
        with pytest.raises(ForbiddenError) as excinfo:
            auth_service.authenticate("tester_one", PASSWORD)
        assert excinfo.value.message == "Account deactivated. Please contact support."

    def test_unverified_login_reissues_code(self, auth_service, memory_store, registered):
        user, old_code = registered
        old_hash = memory_store.get_user(user.id).otp_hash

        with pytest.raises(UnverifiedAccountError) as excinfo:
            auth_service.authenticate("tester_one", PASSWORD)

        exc = excinfo.value
        assert exc.status_code == 403
        assert exc.error_code == "unverified"
        assert exc.detail["userId"] == user.id
        assert exc.otp_code.isdigit() and len(exc.otp_code) == 6
        assert memory_store.get_user(user.id).otp_hash != old_hash
        # the new code verifies
        assert auth_service.verify_otp(user.id, exc.otp_code).is_verified


class TestOtpVerification:
    """verify_otp() ordering and single application."""

    def test_correct_code_verifies_once(self, auth_service, memory_store, registered):
        user, code = registered

        verified = auth_service.verify_otp(user.id, code)
        assert verified.is_verified is True
        assert verified.otp_hash is None and verified.otp_expires_at is None

        with pytest.raises(ValidationError, match="Account already verified"):
            auth_service.verify_otp(user.id, code)
        assert memory_store.get_user(user.id).updated_at == verified.updated_at

    def test_wrong_code(self, auth_service, registered):
        user, code = registered
        wrong = "000000" if code != "000000" else "111111"
        with pytest.raises(ValidationError, match="Invalid OTP code"):
            auth_service.verify_otp(user.id, wrong)

    def test_expired_code_is_rejected_even_when_matching(
        self, auth_service, memory_store, registered
    ):
        user, code = registered
        _expire_otp(memory_store, user.id)

        with pytest.raises(ExpiredError) as excinfo:
            auth_service.verify_otp(user.id, code)
        assert excinfo.value.status_code == 410
        assert excinfo.value.error_code == "expired"
        assert memory_store.get_user(user.id).is_verified is False

    def test_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            auth_service.verify_otp("missing-user", "123456")

    def test_reissue_invalidates_previous_code(self, auth_service, registered):
        user, first = registered
        _, second, _ = auth_service.resend_otp(user.id)

        if first != second:
            with pytest.raises(ValidationError, match="Invalid OTP code"):
                auth_service.verify_otp(user.id, first)
        assert auth_service.verify_otp(user.id, second).is_verified

    def test_resend_for_verified_user_is_rejected(self, auth_service, verified_user):
        with pytest.raises(ValidationError, match="Account already verified"):
            auth_service.resend_otp(verified_user.id)

    def test_concurrent_verifies_apply_once(self, auth_service, registered):
        user, code = registered
        results: list = []
        barrier = threading.Barrier(5)

        def _verify():
            barrier.wait()
            try:
                auth_service.verify_otp(user.id, code)
                results.append("verified")
            except ValidationError as exc:
                results.append(exc.message)

        threads = [threading.Thread(target=_verify) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("verified") == 1
        assert results.count("Account already verified") == 4


class TestPasswordReset:
    """Reset token issue and single use."""

    def test_unknown_email_returns_none(self, auth_service):
        assert auth_service.request_password_reset("ghost@example.com") is None

    def test_token_is_stored_hashed(self, auth_service, memory_store, verified_user):
        user, token = auth_service.request_password_reset("test@example.com")
        stored = memory_store.get_user(user.id)

        assert len(token) == 64
        assert stored.reset_token_hash == AuthService.hash_reset_token(token)
        assert stored.reset_token_hash != token

    def test_reset_changes_password_and_revokes_sessions(
        self, auth_service, memory_store, verified_user
    ):
        auth_service.issue_session(verified_user)
        _, token = auth_service.request_password_reset("test@example.com")

        auth_service.reset_password(token, "BrandNewPass456!")

        assert auth_service.authenticate("tester_one", "BrandNewPass456!")
        with pytest.raises(AuthenticationError):
            auth_service.authenticate("tester_one", PASSWORD)
        assert memory_store.list_user_refresh_tokens(verified_user.id) == []

    def test_reset_token_is_single_use(self, auth_service, verified_user):
        _, token = auth_service.request_password_reset("test@example.com")
        auth_service.reset_password(token, "BrandNewPass456!")

        with pytest.raises(ValidationError, match="Invalid or expired reset token"):
            auth_service.reset_password(token, "AnotherPass789!")

    def test_expired_reset_token(self, auth_service, memory_store, verified_user):
        _, token = auth_service.request_password_reset("test@example.com")
        memory_store.update_user(
            verified_user.id, reset_expires_at=utcnow() - timedelta(minutes=1)
        )
        with pytest.raises(ValidationError, match="Invalid or expired reset token"):
            auth_service.reset_password(token, "BrandNewPass456!")

    def test_short_password_is_rejected_before_consuming(
        self, auth_service, verified_user
    ):
        _, token = auth_service.request_password_reset("test@example.com")
        with pytest.raises(ValidationError, match="at least 8 characters"):
            auth_service.reset_password(token, "short")
        # token still usable
        auth_service.reset_password(token, "LongEnough123!")

    def test_request_schema_and_service_share_the_minimum(
        self, auth_service, verified_user
    ):
        short = "x" * (PASSWORD_MIN_LENGTH - 1)
        with pytest.raises(PydanticValidationError) as schema_exc:
            ResetPasswordRequest(token="t" * 64, password=short)
        _, token = auth_service.request_password_reset("test@example.com")
        with pytest.raises(ValidationError) as service_exc:
            auth_service.reset_password(token, short)

        assert service_exc.value.message in str(schema_exc.value)
        ResetPasswordRequest(token="t" * 64, password="x" * PASSWORD_MIN_LENGTH)


class TestSessions:
    """Refresh rotation, access resolution and logout."""

    def test_rotation_is_single_use(self, auth_service, verified_user):
        pair = auth_service.issue_session(verified_user)

        user, rotated = auth_service.rotate_refresh(pair.refresh_token)
        assert user.id == verified_user.id
        assert rotated.refresh_token != pair.refresh_token

        with pytest.raises(ForbiddenError, match="Invalid or expired refresh token"):
            auth_service.rotate_refresh(pair.refresh_token)

    def test_missing_refresh_token(self, auth_service):
        with pytest.raises(AuthenticationError, match="Refresh token missing"):
            auth_service.rotate_refresh(None)

    def test_banned_user_cannot_rotate(self, auth_service, memory_store, verified_user):
        pair = auth_service.issue_session(verified_user)
        memory_store.update_user(verified_user.id, is_banned=True)

        with pytest.raises(ForbiddenError):
            auth_service.rotate_refresh(pair.refresh_token)

    def test_resolve_access_token(self, auth_service, verified_user):
        pair = auth_service.issue_session(verified_user)
        assert auth_service.resolve_access_token(pair.access_token).id == verified_user.id

        with pytest.raises(AuthenticationError, match="Authentication token missing"):
            auth_service.resolve_access_token(None)
        with pytest.raises(AuthenticationError, match="Invalid or expired token"):
            auth_service.resolve_access_token("garbage")

    def test_logout_revokes_refresh_token(self, auth_service, verified_user):
        pair = auth_service.issue_session(verified_user)
        auth_service.logout(pair.refresh_token)
        auth_service.logout(pair.refresh_token)

        with pytest.raises(ForbiddenError):
            auth_service.rotate_refresh(pair.refresh_token)


class TestAccountDeletion:
    """delete_account() cascade."""

    def test_cascade_removes_owned_and_shared_data(
        self, auth_service, memory_store, verified_user
    ):
        other = memory_store.create_user("other@example.com", "other_user", "Other")
        owned = memory_store.create_room(
            Room(
                id="room-owned",
                room_code="OWN123",
                name="Mine",
                created_by=verified_user.id,
                admins=[verified_user.id],
                participants=[RoomParticipant(user_id=verified_user.id, role="admin")],
            )
        )
        shared = memory_store.create_room(
            Room(
                id="room-shared",
                room_code="SHR123",
                name="Theirs",
                created_by=other.id,
                admins=[other.id, verified_user.id],
                participants=[
                    RoomParticipant(user_id=other.id, role="admin"),
                    RoomParticipant(user_id=verified_user.id),
                ],
            )
        )
        memory_store.create_sync_session(SyncSession.new(owned.id, "ABCD1234"))
        memory_store.upsert_device(verified_user.id, "phone-1", device_name="Phone")
        auth_service.issue_session(verified_user)

        auth_service.delete_account(verified_user.id)

        assert memory_store.get_user(verified_user.id) is None
        assert memory_store.get_room(owned.id) is None
        assert memory_store.sync_sessions == {}
        assert memory_store.list_devices(verified_user.id) == []
        assert memory_store.get_user_stats(verified_user.id) is None
        assert memory_store.list_user_refresh_tokens(verified_user.id) == []
        remaining = memory_store.get_room(shared.id)
        assert [p.user_id for p in remaining.participants] == [other.id]
        assert remaining.admins == [other.id]

    def test_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            auth_service.delete_account("missing")

    def test_store_failure_is_masked(self, auth_service, verified_user, monkeypatch):
        def _boom(user_id):
            raise RuntimeError("connection reset by peer at 10.0.0.5")

        monkeypatch.setattr(auth_service.store, "delete_user_cascade", _boom)
        with pytest.raises(ServerError) as excinfo:
            auth_service.delete_account(verified_user.id)
        assert excinfo.value.message == "Failed to delete user account data."
        assert excinfo.value.status_code == 500


