from __future__ import annotations

import hmac
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from muxic.config import Settings
from muxic.logging import get_logger, sanitize_error_message
from muxic.service.auth import AuthService
from muxic.service.errors import (
    AuthenticationError,
    ServerError,
    ServiceError,
    UpstreamError,
)
from muxic.service.tokens import TokenPair, profile_claims
from muxic.service.usernames import generate_unique_username
from muxic.storage.errors import ConstraintViolation
from muxic.storage.models import User

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPE = "profile email"

OAUTH_STATE_COOKIE = "oauth_state"
OAUTH_STATE_TTL_SECONDS = 5 * 60

# Callback query limits; longer values fail the flow
MAX_CODE_LENGTH = 2048
MAX_STATE_LENGTH = 256
MAX_ERROR_LENGTH = 256


class OAuthState(str, Enum):
    INITIATED = "initiated"
    CODE_RECEIVED = "code_received"
    TOKEN_EXCHANGED = "token_exchanged"
    PROFILE_FETCHED = "profile_fetched"
    USER_RESOLVED = "user_resolved"
    SESSION_ISSUED = "session_issued"
    FAILED = "failed"


@dataclass
class OAuthStart:
    authorization_url: str
    state: str


@dataclass
class GoogleProfile:
    google_id: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None


@dataclass
class OAuthOutcome:
    state: OAuthState
    redirect_url: str
    user: Optional[User] = None
    tokens: Optional[TokenPair] = None
    created: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == OAuthState.SESSION_ISSUED


class GoogleOAuthBridge:
    """Maps a Google authorization code to a local account and session.

    The callback walks INITIATED -> CODE_RECEIVED -> TOKEN_EXCHANGED ->
    PROFILE_FETCHED -> USER_RESOLVED -> SESSION_ISSUED, or drops to FAILED at
    any step. Every transition is logged as ``oauth_transition``. Failures
    never produce JSON; the caller redirects to the client error page.
    """

    def __init__(
        self,
        auth: AuthService,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.auth = auth
        self.settings = settings
        # tests swap in httpx.MockTransport
        self.transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.google_client_id and self.settings.google_redirect_uri)

    def _transition(self, flow_id: str, state: OAuthState, **fields: Any) -> None:
        logger.info("oauth_transition", flow_id=flow_id, state=state.value, **fields)

    def success_url(self, access_token: str) -> str:
        if self.settings.oauth_token_in_redirect:
            return f"{self.settings.client_url}/auth/success?{urlencode({'token': access_token})}"
        return f"{self.settings.client_url}/auth/success"

    def error_url(self, message: str) -> str:
        safe = sanitize_error_message(message)
        return f"{self.settings.client_url}/auth/error?{urlencode({'message': safe})}"

    def initiate(self) -> OAuthStart:
        if not self.is_configured:
            logger.warning("oauth_not_configured", provider="google")
            raise ServerError("Google login is unavailable")
        state = str(uuid.uuid4())
        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": self.settings.google_redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_SCOPE,
            "prompt": "select_account",
            "state": state,
        }
        self._transition(state[:8], OAuthState.INITIATED)
        return OAuthStart(
            authorization_url=f"{GOOGLE_AUTH_URL}?{urlencode(params)}", state=state
        )

    @staticmethod
    def _state_matches(state: Optional[str], cookie_state: Optional[str]) -> bool:
        if not state or not cookie_state:
            return False
        return hmac.compare_digest(state.encode(), cookie_state.encode())

    async def callback(
        self,
        *,
        code: Optional[str],
        state: Optional[str],
        cookie_state: Optional[str],
        error: Optional[str] = None,
    ) -> OAuthOutcome:
        flow_id = (cookie_state or uuid.uuid4().hex)[:8]
        try:
            if error:
                logger.info(
                    "oauth_provider_error",
                    flow_id=flow_id,
                    provider_error=error[:MAX_ERROR_LENGTH],
                )
                raise AuthenticationError("Authentication failed")
            # checked before any network call
            if (
                not code
                or len(code) > MAX_CODE_LENGTH
                or len(state or "") > MAX_STATE_LENGTH
                or not self._state_matches(state, cookie_state)
            ):
                raise AuthenticationError("Invalid OAuth state")
            self._transition(flow_id, OAuthState.CODE_RECEIVED)

            profile = await self._fetch_profile(flow_id, code)
            user, created = self._resolve_user(profile)
            self._transition(flow_id, OAuthState.USER_RESOLVED, user_id=user.id)

            self.auth.ensure_allowed(user)
            tokens = self.auth.issue_session(user, profile_claims(user))
        except ServiceError as exc:
            self._transition(
                flow_id, OAuthState.FAILED, error_code=exc.error_code, reason=exc.message
            )
            return OAuthOutcome(
                state=OAuthState.FAILED,
                redirect_url=self.error_url(exc.message),
                error=exc.message,
            )
        self._transition(flow_id, OAuthState.SESSION_ISSUED, user_id=user.id)
        return OAuthOutcome(
            state=OAuthState.SESSION_ISSUED,
            redirect_url=self.success_url(tokens.access_token),
            user=user,
            tokens=tokens,
            created=created,
        )

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.settings.oauth_http_timeout_seconds, connect=5.0)

    async def _fetch_profile(self, flow_id: str, code: str) -> GoogleProfile:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout(),
                transport=self.transport,
                follow_redirects=False,
            ) as client:
                token_response = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self.settings.google_client_id,
                        "client_secret": self.settings.google_client_secret,
                        "code": code,
                        "redirect_uri": self.settings.google_redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_body = token_response.json()
                access_token = (
                    token_body.get("access_token") if isinstance(token_body, dict) else None
                )
                if not access_token:
                    raise UpstreamError("Authentication failed")
                self._transition(flow_id, OAuthState.TOKEN_EXCHANGED)

                profile_response = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                profile_response.raise_for_status()
                userinfo = profile_response.json()
        except httpx.TimeoutException as exc:
            logger.warning("oauth_exchange_timeout", flow_id=flow_id, error=str(exc))
            raise UpstreamError("Authentication failed") from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "oauth_exchange_http_error",
                flow_id=flow_id,
                status_code=exc.response.status_code,
            )
            raise UpstreamError("Authentication failed") from exc
        except httpx.HTTPError as exc:
            logger.warning("oauth_exchange_error", flow_id=flow_id, error=str(exc))
            raise UpstreamError("Authentication failed") from exc
        except ValueError as exc:
            logger.warning("oauth_payload_invalid", flow_id=flow_id, error=str(exc))
            raise UpstreamError("Authentication failed") from exc

        if not isinstance(userinfo, dict) or not userinfo.get("id"):
            raise UpstreamError("Authentication failed")
        email = (userinfo.get("email") or "").strip().lower()
        if not email:
            raise UpstreamError("Google did not return an email address")
        self._transition(flow_id, OAuthState.PROFILE_FETCHED)
        return GoogleProfile(
            google_id=str(userinfo["id"]),
            email=email,
            name=userinfo.get("name"),
            picture=userinfo.get("picture"),
        )

    def _resolve_user(self, profile: GoogleProfile) -> tuple[User, bool]:
        """Find by google id, else link by email, else create; returns (user, created)."""
        store = self.auth.store
        now = self.auth._now()

        existing = store.get_user_by_google_id(profile.google_id)
        if existing:
            return store.update_user(existing.id, last_login=now) or existing, False

        by_email = store.get_user_by_email(profile.email)
        if by_email:
            fields: dict[str, Any] = {
                "google_id": profile.google_id,
                "is_verified": True,
                "last_login": now,
            }
            if not by_email.avatar and profile.picture:
                fields["avatar"] = profile.picture
            try:
                linked = store.update_user(by_email.id, **fields)
            except ConstraintViolation as exc:
                raise UpstreamError("Authentication failed") from exc
            logger.info("oauth_account_linked", user_id=by_email.id)
            return linked or by_email, False

        base = profile.name or profile.email.split("@")[0]
        try:
            user = self.auth.create_oauth_user(
                email=profile.email,
                full_name=(profile.name or profile.email.split("@")[0])[:50],
                google_id=profile.google_id,
                avatar=profile.picture,
                username_for=lambda: generate_unique_username(base, store.username_exists),
            )
        except ConstraintViolation as exc:
            # a concurrent callback for the same Google account created it first
            winner = store.get_user_by_google_id(profile.google_id)
            if not winner:
                raise UpstreamError("Authentication failed") from exc
            return winner, False
        logger.info("oauth_user_created", user_id=user.id)
        return store.update_user(user.id, last_login=now) or user, True
