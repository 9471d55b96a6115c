"""Unit tests for the token issuer.

Covers:
- Access token claims and verification
- Rejection of tampered, expired and foreign tokens
- Refresh token persistence, single use and revocation
- Periodic sweeping of expired refresh tokens
"""

import base64
import json
import time
from datetime import timedelta

import pytest

from muxic.config import Settings
from muxic.service.tokens import (
    PURGE_INTERVAL_MINUTES,
    TokenIssuer,
    hash_refresh_token,
    profile_claims,
)
from muxic.storage.memory import MemoryStore
from muxic.storage.models import RefreshToken, utcnow


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Token-Test-Secret_for-Automation-Only-123456789!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def issuer(store, settings):
    return TokenIssuer(store, settings)


@pytest.fixture
def user(store):
    return store.create_user("listener@example.com", "listener", "Lis Tener")


def _save_expired(store, user, *tokens):
    past = utcnow() - timedelta(hours=2)
    for token in tokens:
        store.save_refresh_token(
            RefreshToken(
                token_hash=hash_refresh_token(token),
                user_id=user.id,
                created_at=past,
                expires_at=past + timedelta(minutes=30),
            )
        )


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestAccessTokens:
    """HS256 access token issue and decode."""

    def test_round_trip_carries_registered_claims(self, issuer, user, settings):
        token, expires_at = issuer.issue_access_token(user)
        payload = issuer.decode_access_token(token)

        assert payload is not None
        assert payload["sub"] == user.id
        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == settings.jwt_audience
        assert payload["token_type"] == "access"
        assert payload["jti"]
        assert payload["exp"] == int(expires_at.timestamp())

    def test_profile_claims_are_embedded(self, issuer, user):
        token, _ = issuer.issue_access_token(user, profile_claims(user))
        payload = issuer.decode_access_token(token)

        assert payload["username"] == "listener"
        assert payload["fullName"] == "Lis Tener"
        assert payload["verified"] is False

    def test_profile_claims_cannot_override_subject(self, issuer, user):
        token, _ = issuer.issue_access_token(user, {"sub": "someone-else"})
        assert issuer.decode_access_token(token)["sub"] == user.id

    def test_tampered_payload_is_rejected(self, issuer, user):
        token, _ = issuer.issue_access_token(user)
        header, _, signature = token.split(".")
        forged = _segment({"sub": "attacker", "token_type": "access"})
        assert issuer.decode_access_token(f"{header}.{forged}.{signature}") is None

    def test_other_secret_is_rejected(self, store, user, settings):
        other = TokenIssuer(
            store, settings.model_copy(update={"jwt_secret": "x" * 48})
        )
        token, _ = other.issue_access_token(user)
        assert TokenIssuer(store, settings).decode_access_token(token) is None

    def test_none_algorithm_is_rejected(self, issuer, user):
        token, _ = issuer.issue_access_token(user)
        _, payload, _ = token.split(".")
        unsigned = f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{payload}."
        assert issuer.decode_access_token(unsigned) is None

    @pytest.mark.parametrize(
        "token", ["", "not-a-jwt", "a.b", "a.b.c.d", "###.###.###", "a.b.é"]
    )
    def test_malformed_tokens_return_none(self, issuer, token):
        assert issuer.decode_access_token(token) is None

    def test_expired_token_beyond_leeway_is_rejected(self, store, user, settings):
        expired = TokenIssuer(
            store, settings.model_copy(update={"access_token_ttl_minutes": -10})
        )
        token, _ = expired.issue_access_token(user)
        assert expired.decode_access_token(token) is None

    def test_recently_expired_token_within_leeway_is_accepted(
        self, store, user, settings
    ):
        issuer = TokenIssuer(
            store, settings.model_copy(update={"access_token_ttl_minutes": -1})
        )
        token, _ = issuer.issue_access_token(user)
        assert issuer.decode_access_token(token) is not None

    def test_wrong_audience_is_rejected(self, store, user, settings):
        other = TokenIssuer(
            store, settings.model_copy(update={"jwt_audience": "another-app"})
        )
        token, _ = other.issue_access_token(user)
        assert TokenIssuer(store, settings).decode_access_token(token) is None


class TestRefreshTokens:
    """Opaque refresh tokens stored as digests."""

    def test_refresh_token_is_stored_hashed(self, issuer, store, user):
        token, _ = issuer.issue_refresh_token(user.id)

        assert len(token) == 128
        records = store.list_user_refresh_tokens(user.id)
        assert [r.token_hash for r in records] == [hash_refresh_token(token)]
        assert token not in store.refresh_tokens

    def test_refresh_token_is_single_use(self, issuer, user):
        token, _ = issuer.issue_refresh_token(user.id)

        first = issuer.consume_refresh_token(token)
        second = issuer.consume_refresh_token(token)

        assert first is not None and first.user_id == user.id
        assert second is None

    def test_expired_refresh_token_is_not_consumable(self, issuer, store, user):
        past = utcnow() - timedelta(days=2)
        store.save_refresh_token(
            RefreshToken(
                token_hash=hash_refresh_token("stale"),
                user_id=user.id,
                created_at=past,
                expires_at=past + timedelta(minutes=5),
            )
        )
        assert issuer.consume_refresh_token("stale") is None
        assert store.list_user_refresh_tokens(user.id) == []

    def test_revoke_is_idempotent(self, issuer, user):
        token, _ = issuer.issue_refresh_token(user.id)

        assert issuer.revoke(token) is True
        assert issuer.revoke(token) is False
        assert issuer.revoke(None) is False
        assert issuer.revoke("") is False

    def test_revoke_all_removes_every_token(self, issuer, store, user):
        for _ in range(3):
            issuer.issue_refresh_token(user.id)

        assert issuer.revoke_all(user.id) == 3
        assert store.list_user_refresh_tokens(user.id) == []

    def test_purge_expired_keeps_live_tokens(self, issuer, store, user):
        live, _ = issuer.issue_refresh_token(user.id)
        past = utcnow() - timedelta(hours=3)
        store.save_refresh_token(
            RefreshToken(
                token_hash=hash_refresh_token("old"),
                user_id=user.id,
                created_at=past,
                expires_at=past + timedelta(hours=1),
            )
        )

        assert issuer.purge_expired() == 1
        assert [r.token_hash for r in store.list_user_refresh_tokens(user.id)] == [
            hash_refresh_token(live)
        ]

    def test_rotation_sweeps_expired_rows(self, issuer, store, user):
        pair = issuer.issue_pair(user)
        _save_expired(store, user, "a", "b", "c")
        issuer._last_purge -= timedelta(minutes=PURGE_INTERVAL_MINUTES + 1)

        assert issuer.consume_refresh_token(pair.refresh_token) is not None
        rotated = issuer.issue_pair(user)

        assert [r.token_hash for r in store.list_user_refresh_tokens(user.id)] == [
            hash_refresh_token(rotated.refresh_token)
        ]

    def test_sweep_is_throttled_between_intervals(self, issuer, store, user):
        issuer.issue_pair(user)
        _save_expired(store, user, "late")

        assert issuer.maybe_purge_expired() == 0
        assert len(store.list_user_refresh_tokens(user.id)) == 2

        issuer._last_purge -= timedelta(minutes=PURGE_INTERVAL_MINUTES)
        assert issuer.maybe_purge_expired() == 1

    def test_issue_pair_expiries_follow_settings(self, issuer, user):
        before = time.time()
        pair = issuer.issue_pair(user)

        assert pair.access_expires_at.timestamp() == pytest.approx(before + 15 * 60, abs=5)
        assert pair.refresh_expires_at.timestamp() == pytest.approx(before + 60 * 60, abs=5)
