"""Tests for the Google OAuth bridge.

The provider is simulated with ``httpx.MockTransport`` so the full callback
state machine runs without network access.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from muxic.config import Settings
from muxic.service.auth import AuthService
from muxic.service.errors import ServerError
from muxic.service.oauth import (
    GOOGLE_TOKEN_URL,
    GOOGLE_USERINFO_URL,
    MAX_CODE_LENGTH,
    MAX_STATE_LENGTH,
    GoogleOAuthBridge,
    OAuthState,
)
from muxic.service.tokens import TokenIssuer
from muxic.storage.memory import MemoryStore

STATE = "6f1c2f8e-0d7b-4c55-9a43-3a0d1c4e5b6a"


class FakeGoogle:
    """Records requests and answers the token and userinfo endpoints."""

    def __init__(self, *, token_status=200, userinfo=None, userinfo_status=200):
        self.calls: list[httpx.Request] = []
        self.token_status = token_status
        self.userinfo_status = userinfo_status
        self.userinfo = userinfo or {
            "id": "google-123",
            "email": "Jane.Doe@Example.com",
            "name": "Jane Doe",
            "picture": "https://example.com/jane.png",
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        url = str(request.url)
        if url.startswith(GOOGLE_TOKEN_URL):
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "server_error"})
            return httpx.Response(200, json={"access_token": "ya29.fake-access"})
        if url.startswith(GOOGLE_USERINFO_URL):
            assert request.headers["Authorization"] == "Bearer ya29.fake-access"
            return httpx.Response(self.userinfo_status, json=self.userinfo)
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="OAuth-Test-Secret_for-Automation-Only-123456789!",
        client_url="http://client.test",
        google_client_id="client-id.apps.googleusercontent.com",
        google_client_secret="client-secret",
        google_redirect_uri="http://api.test/auth/google/callback",
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def auth(store, settings):
    return AuthService(store, TokenIssuer(store, settings), settings)


@pytest.fixture
def google():
    return FakeGoogle()


@pytest.fixture
def bridge(auth, settings, google):
    return GoogleOAuthBridge(auth, settings, transport=google.transport)


def _query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestInitiate:
    """Authorization redirect construction."""

    def test_authorization_url_carries_state(self, bridge, settings):
        start = bridge.initiate()
        params = _query(start.authorization_url)

        assert start.authorization_url.startswith("https://accounts.google.com/")
        assert params["state"] == start.state
        assert params["client_id"] == settings.google_client_id
        assert params["redirect_uri"] == settings.google_redirect_uri
        assert params["scope"] == "profile email"
        assert params["response_type"] == "code"

    def test_each_flow_gets_a_fresh_state(self, bridge):
        assert bridge.initiate().state != bridge.initiate().state

    def test_unconfigured_provider_is_refused(self, auth, settings):
        bridge = GoogleOAuthBridge(
            auth, settings.model_copy(update={"google_client_id": None})
        )
        assert bridge.is_configured is False
        with pytest.raises(ServerError, match="Google login is unavailable"):
            bridge.initiate()


class TestCallbackRejections:
    """Failures end in FAILED with an error redirect and no exception."""

    @pytest.mark.asyncio
    async def test_state_mismatch_makes_no_network_call(self, bridge, google):
        outcome = await bridge.callback(
            code="auth-code", state=STATE, cookie_state="something-else"
        )

        assert outcome.state == OAuthState.FAILED
        assert outcome.succeeded is False
        assert google.calls == []
        assert outcome.redirect_url.startswith("http://client.test/auth/error?")
        assert _query(outcome.redirect_url)["message"] == "Invalid OAuth state"

    @pytest.mark.asyncio
    async def test_missing_cookie_or_code(self, bridge, google):
        no_cookie = await bridge.callback(code="auth-code", state=STATE, cookie_state=None)
        no_code = await bridge.callback(code=None, state=STATE, cookie_state=STATE)

        assert no_cookie.state == no_code.state == OAuthState.FAILED
        assert google.calls == []

    @pytest.mark.asyncio
    async def test_provider_error_parameter(self, bridge, google):
        outcome = await bridge.callback(
            code=None, state=STATE, cookie_state=STATE, error="access_denied"
        )
        assert outcome.error == "Authentication failed"
        assert google.calls == []

    @pytest.mark.asyncio
    async def test_token_exchange_failure(self, auth, settings, store):
        google = FakeGoogle(token_status=500)
        bridge = GoogleOAuthBridge(auth, settings, transport=google.transport)

        outcome = await bridge.callback(code="auth-code", state=STATE, cookie_state=STATE)

        assert outcome.state == OAuthState.FAILED
        assert _query(outcome.redirect_url)["message"] == "Authentication failed"
        assert len(google.calls) == 1
        assert store.users == {}

    @pytest.mark.asyncio
    async def test_profile_without_email(self, auth, settings):
        google = FakeGoogle(userinfo={"id": "google-9", "name": "No Mail"})
        bridge = GoogleOAuthBridge(auth, settings, transport=google.transport)

        outcome = await bridge.callback(code="auth-code", state=STATE, cookie_state=STATE)

        assert outcome.error == "Google did not return an email address"

    @pytest.mark.asyncio
    async def test_network_error_is_upstream_failure(self, auth, settings):
        def _refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        bridge = GoogleOAuthBridge(auth, settings, transport=httpx.MockTransport(_refuse))
        outcome = await bridge.callback(code="auth-code", state=STATE, cookie_state=STATE)

        assert outcome.state == OAuthState.FAILED
        assert outcome.error == "Authentication failed"

    @pytest.mark.asyncio
    async def test_read_timeout_fails_the_flow(self, auth, settings, store):
        def _stall(request):
            raise httpx.ReadTimeout("timed out", request=request)

        bridge = GoogleOAuthBridge(auth, settings, transport=httpx.MockTransport(_stall))
        outcome = await bridge.callback(code="auth-code", state=STATE, cookie_state=STATE)

        assert outcome.state == OAuthState.FAILED
        assert outcome.tokens is None
        assert outcome.redirect_url.startswith("http://client.test/auth/error?")
        assert _query(outcome.redirect_url)["message"] == "Authentication failed"
        assert store.users == {}

    @pytest.mark.asyncio
    async def test_outbound_calls_carry_timeouts(self, auth, settings, google):
        tuned = settings.model_copy(update={"oauth_http_timeout_seconds": 7.5})
        bridge = GoogleOAuthBridge(auth, tuned, transport=google.transport)

        await bridge.callback(code="auth-code", state=STATE, cookie_state=STATE)

        expected = {"connect": 5.0, "read": 7.5, "write": 7.5, "pool": 7.5}
        assert [call.extensions["timeout"] for call in google.calls] == [expected, expected]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "code,state",
        [("auth-code", "s" * (MAX_STATE_LENGTH + 1)), ("c" * (MAX_CODE_LENGTH + 1), STATE)],
    )
    async def test_oversized_parameters_fail_before_network(self, bridge, google, code, state):
        outcome = await bridge.callback(code=code, state=state, cookie_state=state)

        assert outcome.state == OAuthState.FAILED
        assert _query(outcome.redirect_url)["message"] == "Invalid OAuth state"
        assert google.calls == []

    @pytest.mark.asyncio
    async def test_banned_account_is_refused(self, bridge, auth, store):
        user = store.create_user(
            "jane.doe@example.com", "jane_doe", "Jane Doe", google_id="google-123",
            is_verified=True,
        )
        auth.set_ban(user.id, True, "abuse")

        outcome = await bridge.callback(code="auth-code", state=STATE, cookie_state=STATE)

        assert outcome.state == OAuthState.FAILED
        assert outcome.tokens is None
        assert _query(outcome.redirect_url)["message"] == "Account suspended: abuse"


class TestCallbackSuccess:
    """Account resolution and session issue."""

    @pytest.mark.asyncio
    async def test_new_account_is_created_verified(self, bridge, store, google):
        outcome = await bridge.callback(code="auth-code", state=STATE, cookie_state=STATE)

        assert outcome.succeeded
        assert outcome.created is True
        user = store.get_user(outcome.user.id)
        assert user.email == "jane.doe@example.com"
        assert user.google_id == "google-123"
        assert user.is_verified is True
        assert user.password_hash is None
        assert user.username == "janedoe"
        assert user.avatar == "https://example.com/jane.png"
        assert store.get_user_stats(user.id) is not None
        assert len(google.calls) == 2

        token_request = google.calls[0]
        form = parse_qs(token_request.content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["auth-code"]

    @pytest.mark.asyncio
    async def test_success_redirect_carries_access_token(self, bridge):
        outcome = await bridge.callback(code="auth-code", state=STATE, cookie_state=STATE)

        assert outcome.redirect_url.startswith("http://client.test/auth/success")
        assert _query(outcome.redirect_url)["token"] == outcome.tokens.access_token
        assert outcome.tokens.refresh_token

    @pytest.mark.asyncio
    async def test_token_can_be_kept_out_of_redirect(self, auth, settings, google):
        bridge = GoogleOAuthBridge(
            auth,
            settings.model_copy(update={"oauth_token_in_redirect": False}),
            transport=google.transport,
        )
        outcome = await bridge.callback(code="auth-code", state=STATE, cookie_state=STATE)

        assert outcome.redirect_url == "http://client.test/auth/success"

    @pytest.mark.asyncio
    async def test_existing_email_account_is_linked(self, bridge, auth, store):
        user, _ = auth.register("jane.doe@example.com", "Password123!", "jane_d", "Jane")

        outcome = await bridge.callback(code="auth-code", state=STATE, cookie_state=STATE)

        assert outcome.succeeded
        assert outcome.created is False
        assert outcome.user.id == user.id
        linked = store.get_user(user.id)
        assert linked.google_id == "google-123"
        assert linked.is_verified is True
        assert linked.avatar == "https://example.com/jane.png"
        assert len(store.users) == 1

    @pytest.mark.asyncio
    async def test_returning_google_user_is_found_by_google_id(self, bridge, store):
        first = await bridge.callback(code="auth-code", state=STATE, cookie_state=STATE)
        second = await bridge.callback(code="auth-code-2", state=STATE, cookie_state=STATE)

        assert second.created is False
        assert second.user.id == first.user.id
        assert len(store.users) == 1

    @pytest.mark.asyncio
    async def test_taken_username_gets_suffix(self, bridge, store):
        store.create_user("someone@example.com", "janedoe", "Someone Else")

        outcome = await bridge.callback(code="auth-code", state=STATE, cookie_state=STATE)

        assert outcome.user.username == "janedoe1"
