from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from muxic.config import Settings
from muxic.logging import get_logger
from muxic.service.errors import (
    AuthenticationError,
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from muxic.service.tokens import TokenIssuer, TokenPair
from muxic.storage.errors import ConstraintViolation
from muxic.storage.models import User, UserStats

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_ALGO = "argon2id"

_CONFLICT_MESSAGES = {
    "email": "Email already registered",
    "username": "Username already taken",
}


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        username: str,
        full_name: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        google_id: Optional[str] = None,
        avatar: Optional[str] = None,
        is_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_google_id(self, google_id: str) -> Optional[User]: ...

    def username_exists(self, username: str) -> bool: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def mark_verified_if_unverified(self, user_id: str) -> bool: ...

    def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[User]: ...

    def delete_user_cascade(self, user_id: str) -> bool: ...

    def init_user_stats(self, user_id: str) -> UserStats: ...


class UnverifiedAccountError(ForbiddenError):
    """Login rejection for accounts that have not confirmed their email.

    Carries the freshly issued code so the route can schedule the re-send.
    """

    error_code = "unverified"

    def __init__(self, user: User, otp_code: str, expires_at: datetime) -> None:
        super().__init__(
            "Account not verified. A new verification code has been sent to your email.",
            detail={"userId": user.id, "otpExpiresAt": expires_at.isoformat()},
        )
        self.user = user
        self.otp_code = otp_code


class AuthService:
    """Credential store, OTP issuer, password reset and session lifecycle.

    Passwords are hashed with argon2id. OTP codes are kept as an HMAC keyed by
    the server secret and reset tokens as a SHA-256 digest, so a leaked store
    does not leak usable one-time credentials. Session tokens come from the
    shared ``TokenIssuer``.
    """

    def __init__(
        self, store: AuthStore, tokens: TokenIssuer, settings: Settings
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # hashing helpers
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            return False
        if user.password_algo != PASSWORD_ALGO:
            logger.warning(
                "password_algo_mismatch", user_id=user.id, algo=user.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _hash_otp(self, user_id: str, code: str) -> str:
        return hmac.new(
            self.settings.jwt_secret.encode(),
            f"otp:{user_id}:{code}".encode(),
            hashlib.sha256,
        ).hexdigest()

    @staticmethod
    def hash_reset_token(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    # registration
    def _conflict_from(self, exc: ConstraintViolation) -> ConflictError:
        field = exc.detail.get("field", "email")
        message = _CONFLICT_MESSAGES.get(field, "Account already exists")
        return ConflictError(message, detail={"field": field})

    def register(
        self, email: str, password: str, username: str, full_name: str
    ) -> Tuple[User, str]:
        """Create an unverified account; returns the user and the plaintext OTP."""
        if self.store.get_user_by_email(email):
            raise ConflictError(_CONFLICT_MESSAGES["email"], detail={"field": "email"})
        if self.store.get_user_by_username(username):
            raise ConflictError(
                _CONFLICT_MESSAGES["username"], detail={"field": "username"}
            )
        pwd_hash, algo = self._hash_password(password)
        try:
            user = self.store.create_user(
                email,
                username,
                full_name,
                password_hash=pwd_hash,
                password_algo=algo,
            )
        except ConstraintViolation as exc:
            # a concurrent registration won between the checks and the insert
            raise self._conflict_from(exc) from exc
        self.store.init_user_stats(user.id)
        code, _ = self.issue_otp(user.id)
        logger.info("user_registered", user_id=user.id)
        return self.store.get_user(user.id) or user, code

    # login
    def find_by_identifier(self, identifier: str) -> Optional[User]:
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        user = self.store.get_user_by_email(identifier)
        if user:
            return user
        return self.store.get_user_by_username(identifier)

    def ensure_allowed(self, user: User) -> None:
        if user.is_banned:
            message = (
                f"Account suspended: {user.ban_reason}"
                if user.ban_reason
                else "Account suspended"
            )
            raise ForbiddenError(message)
        if not user.is_active:
            raise ForbiddenError("Account deactivated. Please contact support.")

    def authenticate(self, identifier: str, password: str) -> User:
        user = self.find_by_identifier(identifier)
        if not user or not self.verify_password(user, password):
            logger.info("login_failed", reason="invalid_credentials")
            raise AuthenticationError("Invalid credentials")
        self.ensure_allowed(user)
        if not user.is_verified:
            code, expires_at = self.issue_otp(user.id)
            logger.info("login_blocked_unverified", user_id=user.id)
            raise UnverifiedAccountError(user, code, expires_at)
        updated = self.store.update_user(user.id, last_login=self._now()) or user
        logger.info("login_succeeded", user_id=user.id)
        return updated

    # OTP
    def issue_otp(self, user_id: str) -> Tuple[str, datetime]:
        code = str(100000 + secrets.randbelow(900000))
        expires_at = self._now() + timedelta(minutes=self.settings.otp_ttl_minutes)
        updated = self.store.update_user(
            user_id, otp_hash=self._hash_otp(user_id, code), otp_expires_at=expires_at
        )
        if not updated:
            raise NotFoundError("User not found")
        logger.info("otp_issued", user_id=user_id)
        return code, expires_at

    def resend_otp(self, user_id: str) -> Tuple[User, str, datetime]:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        if user.is_verified:
            raise ValidationError("Account already verified")
        code, expires_at = self.issue_otp(user_id)
        return user, code, expires_at

    def verify_otp(self, user_id: str, code: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        if user.is_verified:
            raise ValidationError("Account already verified")
        if not user.otp_hash or not hmac.compare_digest(
            user.otp_hash, self._hash_otp(user_id, code or "")
        ):
            logger.info("otp_rejected", user_id=user_id, reason="mismatch")
            raise ValidationError("Invalid OTP code")
        if user.otp_expires_at is None or user.otp_expires_at <= self._now():
            logger.info("otp_rejected", user_id=user_id, reason="expired")
            raise ExpiredError("OTP code has expired. Please request a new one.")
        if not self.store.mark_verified_if_unverified(user_id):
            # lost a race with a concurrent verify of the same code
            raise ValidationError("Account already verified")
        verified = self.store.get_user(user_id)
        if not verified:
            raise NotFoundError("User not found")
        logger.info("otp_verified", user_id=user_id)
        return verified

    # password reset
    def request_password_reset(self, email: str) -> Optional[Tuple[User, str]]:
        """Store a hashed reset token; returns None when the account is unknown."""
        user = self.store.get_user_by_email(email)
        if not user:
            logger.info("password_reset_requested", known=False)
            return None
        token = secrets.token_hex(32)
        self.store.update_user(
            user.id,
            reset_token_hash=self.hash_reset_token(token),
            reset_expires_at=self._now()
            + timedelta(minutes=self.settings.reset_token_ttl_minutes),
        )
        logger.info("password_reset_requested", known=True, user_id=user.id)
        return user, token

    def reset_password(self, token: str, new_password: str) -> User:
        if not new_password or len(new_password) < PASSWORD_MIN_LENGTH:
            raise ValidationError(
                f"Password must be at least {PASSWORD_MIN_LENGTH} characters long"
            )
        user = (
            self.store.consume_reset_token(self.hash_reset_token(token), self._now())
            if token
            else None
        )
        if not user:
            logger.info("password_reset_rejected")
            raise ValidationError("Invalid or expired reset token")
        pwd_hash, algo = self._hash_password(new_password)
        updated = self.store.update_user(
            user.id, password_hash=pwd_hash, password_algo=algo
        )
        self.tokens.revoke_all(user.id)
        logger.info("password_reset_completed", user_id=user.id)
        return updated or user

    # sessions
    def issue_session(
        self, user: User, claims: Optional[dict[str, Any]] = None
    ) -> TokenPair:
        return self.tokens.issue_pair(user, claims)

    def rotate_refresh(self, refresh_token: Optional[str]) -> Tuple[User, TokenPair]:
        if not refresh_token:
            raise AuthenticationError("Refresh token missing")
        record = self.tokens.consume_refresh_token(refresh_token)
        if not record:
            logger.warning("refresh_rejected", reason="unknown_or_expired")
            raise ForbiddenError("Invalid or expired refresh token")
        user = self.store.get_user(record.user_id)
        if not user or user.is_banned or not user.is_active:
            logger.warning("refresh_rejected", reason="account_unavailable")
            raise ForbiddenError("Invalid or expired refresh token")
        pair = self.tokens.issue_pair(user)
        logger.info("refresh_rotated", user_id=user.id)
        return user, pair

    def logout(self, refresh_token: Optional[str]) -> None:
        self.tokens.revoke(refresh_token)

    def resolve_access_token(self, token: Optional[str]) -> User:
        """Map an access token to an allowed user; 401 for anything unusable."""
        if not token:
            raise AuthenticationError("Authentication token missing")
        payload = self.tokens.decode_access_token(token)
        if not payload:
            raise AuthenticationError("Invalid or expired token")
        user = self.store.get_user(str(payload["sub"]))
        if not user:
            raise AuthenticationError("Invalid or expired token")
        self.ensure_allowed(user)
        return user

    def delete_account(self, user_id: str) -> None:
        if not self.store.get_user(user_id):
            raise NotFoundError("User not found")
        try:
            deleted = self.store.delete_user_cascade(user_id)
        except Exception as exc:
            logger.exception("account_delete_failed", user_id=user_id)
            raise ServerError("Failed to delete user account data.") from exc
        if not deleted:
            raise NotFoundError("User not found")
        logger.info("account_deleted", user_id=user_id)

    # moderation
    def set_ban(self, user_id: str, banned: bool, reason: Optional[str] = None) -> User:
        updated = self.store.update_user(
            user_id, is_banned=banned, ban_reason=reason if banned else None
        )
        if not updated:
            raise NotFoundError("User not found")
        if banned:
            self.tokens.revoke_all(user_id)
        logger.info("user_ban_updated", user_id=user_id, banned=banned)
        return updated

    def set_active(self, user_id: str, active: bool) -> User:
        updated = self.store.update_user(user_id, is_active=active)
        if not updated:
            raise NotFoundError("User not found")
        if not active:
            self.tokens.revoke_all(user_id)
        logger.info("user_active_updated", user_id=user_id, active=active)
        return updated

    # OAuth account resolution
    def create_oauth_user(
        self,
        *,
        email: str,
        full_name: str,
        google_id: str,
        avatar: Optional[str],
        username_for: Callable[[], str],
        attempts: int = 5,
    ) -> User:
        """Create a verified OAuth user, retrying when the username races."""
        last_exc: Optional[ConstraintViolation] = None
        for _ in range(attempts):
            try:
                user = self.store.create_user(
                    email,
                    username_for(),
                    full_name,
                    google_id=google_id,
                    avatar=avatar,
                    is_verified=True,
                )
            except ConstraintViolation as exc:
                if exc.detail.get("field") != "username":
                    raise
                last_exc = exc
                continue
            self.store.init_user_stats(user.id)
            return user
        raise ConflictError(
            "Could not allocate a unique username", detail={"field": "username"}
        ) from last_exc
