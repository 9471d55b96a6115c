from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from muxic.config import Settings
from muxic.logging import get_logger
from muxic.storage.models import RefreshToken, User

logger = get_logger(__name__)

# Allowance for small clock skew across nodes
CLOCK_SKEW_LEEWAY = timedelta(seconds=120)
# Minimum gap between opportunistic purges of expired refresh tokens
PURGE_INTERVAL_MINUTES = 5


class RefreshTokenStore(Protocol):
    def save_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def consume_refresh_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token_hash: str) -> bool: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def profile_claims(user: User) -> dict[str, Any]:
    """Profile fields embedded in access tokens issued by the OAuth flow."""
    return {
        "email": user.email,
        "username": user.username,
        "fullName": user.full_name,
        "avatar": user.avatar,
        "verified": user.is_verified,
        "bio": user.bio,
    }


class TokenIssuer:
    """HS256 access tokens plus opaque, server-side refresh tokens.

    Access tokens are self-contained JWTs verified with ``JWT_SECRET``.
    Refresh tokens are random 64-byte hex strings; only their SHA-256 digest is
    stored, and each one can be exchanged exactly once.
    """

    def __init__(self, store: RefreshTokenStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._last_purge = datetime.fromtimestamp(0, tz=timezone.utc)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_access_token(
        self, user: User, claims: Optional[dict[str, Any]] = None
    ) -> tuple[str, datetime]:
        now = self._now()
        expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload: dict[str, Any] = dict(claims or {})
        # registered claims always win over caller-supplied profile claims
        payload.update(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": user.id,
                "jti": str(uuid.uuid4()),
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
                "token_type": "access",
            }
        )
        return self._encode_jwt(payload), expires_at

    def decode_access_token(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        """Return the verified payload, or None for any malformed or invalid token."""
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        try:
            if not hmac.compare_digest(expected_sig, sig_b64):
                return None
        except TypeError:
            # non-ASCII signature segment
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        if payload.get("token_type") != "access" or not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - CLOCK_SKEW_LEEWAY.total_seconds():
            return None
        return payload

    def issue_refresh_token(self, user_id: str) -> tuple[str, datetime]:
        token = secrets.token_hex(64)
        record = RefreshToken.new(
            hash_refresh_token(token),
            user_id,
            self.settings.refresh_token_ttl_minutes,
        )
        self.store.save_refresh_token(record)
        return token, record.expires_at

    def issue_pair(
        self, user: User, claims: Optional[dict[str, Any]] = None
    ) -> TokenPair:
        self.maybe_purge_expired()
        access, access_exp = self.issue_access_token(user, claims)
        refresh, refresh_exp = self.issue_refresh_token(user.id)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def consume_refresh_token(self, token: str) -> Optional[RefreshToken]:
        """Find-and-delete the presented token; None if unknown, replayed or expired."""
        if not token:
            return None
        record = self.store.consume_refresh_token(hash_refresh_token(token), self._now())
        self.maybe_purge_expired()
        return record

    def revoke(self, token: Optional[str]) -> bool:
        if not token:
            return False
        return self.store.delete_refresh_token(hash_refresh_token(token))

    def revoke_all(self, user_id: str) -> int:
        removed = self.store.delete_user_refresh_tokens(user_id)
        if removed:
            logger.info("refresh_tokens_revoked", user_id=user_id, count=removed)
        return removed

    def purge_expired(self) -> int:
        now = self._now()
        removed = self.store.purge_expired_refresh_tokens(now)
        self._last_purge = now
        if removed:
            logger.info("refresh_tokens_purged", count=removed)
        return removed

    def maybe_purge_expired(self, interval_minutes: int = PURGE_INTERVAL_MINUTES) -> int:
        """Purge expired refresh tokens unless a purge ran within ``interval_minutes``."""
        if (self._now() - self._last_purge).total_seconds() < interval_minutes * 60:
            return 0
        return self.purge_expired()
