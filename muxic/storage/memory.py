from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from muxic.logging import get_logger
from muxic.storage.common import (
    device_from_document,
    device_to_document,
    generate_uuid,
    MUTABLE_USER_FIELDS,
    normalize_email,
    refresh_token_from_document,
    refresh_token_to_document,
    room_from_document,
    room_to_document,
    stats_from_document,
    stats_to_document,
    sync_session_from_document,
    sync_session_to_document,
    user_from_document,
    user_to_document,
)
from muxic.storage.errors import ConstraintViolation
from muxic.storage.models import (
    Device,
    RefreshToken,
    Room,
    SyncEvent,
    SyncSession,
    User,
    UserStats,
    utcnow,
)


class MemoryStore:
    """In-process document store persisted to a JSON state file.

    Every read and mutation runs under a single re-entrant lock, so uniqueness
    checks and check-then-set sequences (verification, refresh rotation) are
    atomic with respect to other request threads.
    """

    def __init__(self, fs_root: str = "/tmp/muxic") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.stats: Dict[str, UserStats] = {}
        self.rooms: Dict[str, Room] = {}
        self.devices: Dict[str, Device] = {}
        self.sync_sessions: Dict[str, SyncSession] = {}
        # RLock so helpers can call each other while holding the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        self._state_path()

    # users
    def _check_user_unique(
        self,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        google_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if email is not None and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username is not None and existing.username == username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if google_id and existing.google_id == google_id:
                raise ConstraintViolation(
                    "google account already linked", {"field": "google_id"}
                )

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
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            self._check_user_unique(
                email=normalized, username=username, google_id=google_id
            )
            user = User(
                id=generate_uuid(),
                email=normalized,
                username=username,
                full_name=full_name,
                password_hash=password_hash,
                password_algo=password_algo,
                google_id=google_id,
                avatar=avatar,
                is_verified=is_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.username == username), None
            )

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        if not google_id:
            return None
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.google_id == google_id), None
            )

    def get_user_by_reset_token_hash(self, token_hash: str) -> Optional[User]:
        if not token_hash:
            return None
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.reset_token_hash == token_hash),
                None,
            )

    def username_exists(self, username: str) -> bool:
        return self.get_user_by_username(username) is not None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self._check_user_unique(
                email=fields.get("email"),
                username=fields.get("username"),
                google_id=fields.get("google_id"),
                exclude_id=user_id,
            )
            updated = replace(user, **fields, updated_at=utcnow())
            self.users[user_id] = updated
            self._persist_state()
            return updated

    def mark_verified_if_unverified(self, user_id: str) -> bool:
        """Flip ``is_verified`` and clear the OTP; False if already verified."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.is_verified:
                return False
            self.users[user_id] = replace(
                user,
                is_verified=True,
                otp_hash=None,
                otp_expires_at=None,
                updated_at=utcnow(),
            )
            self._persist_state()
            return True

    def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[User]:
        """Clear a matching, unexpired reset token and return its owner."""
        with self._data_lock:
            user = self.get_user_by_reset_token_hash(token_hash)
            if not user:
                return None
            cleared = replace(
                user, reset_token_hash=None, reset_expires_at=None, updated_at=utcnow()
            )
            self.users[user.id] = cleared
            self._persist_state()
            if user.reset_expires_at is None or user.reset_expires_at <= now:
                return None
            return cleared

    def delete_user_cascade(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            for dev_id, device in list(self.devices.items()):
                if device.user_id == user_id:
                    self.devices.pop(dev_id, None)
            owned_rooms = {
                room_id
                for room_id, room in self.rooms.items()
                if room.created_by == user_id
            }
            for room_id in owned_rooms:
                self.rooms.pop(room_id, None)
            for sess_id, sess in list(self.sync_sessions.items()):
                if sess.room_id in owned_rooms:
                    self.sync_sessions.pop(sess_id, None)
            for room in self.rooms.values():
                room.participants = [
                    p for p in room.participants if p.user_id != user_id
                ]
                room.admins = [a for a in room.admins if a != user_id]
            self.stats.pop(user_id, None)
            for token_hash, record in list(self.refresh_tokens.items()):
                if record.user_id == user_id:
                    self.refresh_tokens.pop(token_hash, None)
            self.users.pop(user_id, None)
            self._persist_state()
            return True

    # refresh tokens
    def save_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "token_hash"}
                )
            self.refresh_tokens[record.token_hash] = record
            self._persist_state()
            return record

    def consume_refresh_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        """Atomically remove and return an unexpired refresh token record."""
        with self._data_lock:
            record = self.refresh_tokens.pop(token_hash, None)
            if record is None:
                return None
            self._persist_state()
            if record.is_expired(now):
                return None
            record.last_used = now or utcnow()
            return record

    def delete_refresh_token(self, token_hash: str) -> bool:
        with self._data_lock:
            removed = self.refresh_tokens.pop(token_hash, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [
                token_hash
                for token_hash, record in self.refresh_tokens.items()
                if record.user_id == user_id
            ]
            for token_hash in doomed:
                self.refresh_tokens.pop(token_hash, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    def list_user_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            return [r for r in self.refresh_tokens.values() if r.user_id == user_id]

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            expired = [
                token_hash
                for token_hash, record in self.refresh_tokens.items()
                if record.is_expired(now)
            ]
            for token_hash in expired:
                self.refresh_tokens.pop(token_hash, None)
            if expired:
                self._persist_state()
            return len(expired)

    # stats
    def init_user_stats(self, user_id: str) -> UserStats:
        with self._data_lock:
            existing = self.stats.get(user_id)
            if existing:
                return existing
            stats = UserStats(user_id=user_id)
            self.stats[user_id] = stats
            self._persist_state()
            return stats

    def get_user_stats(self, user_id: str) -> Optional[UserStats]:
        with self._data_lock:
            return self.stats.get(user_id)

    def update_user_stats(
        self, user_id: str, mutate: Callable[[UserStats], None]
    ) -> Optional[UserStats]:
        with self._data_lock:
            stats = self.stats.get(user_id)
            if not stats:
                return None
            mutate(stats)
            stats.updated_at = utcnow()
            self._persist_state()
            return stats

    # rooms
    def create_room(self, room: Room) -> Room:
        with self._data_lock:
            if any(r.room_code == room.room_code for r in self.rooms.values()):
                raise ConstraintViolation(
                    "room code already exists", {"field": "room_code"}
                )
            self.rooms[room.id] = room
            self._persist_state()
            return room

    def get_room(self, room_id: str) -> Optional[Room]:
        with self._data_lock:
            return self.rooms.get(room_id)

    def room_code_exists(self, room_code: str) -> bool:
        with self._data_lock:
            return any(r.room_code == room_code for r in self.rooms.values())

    def update_room(
        self, room_id: str, mutate: Callable[[Room], None]
    ) -> Optional[Room]:
        """Apply ``mutate`` to a room under the store lock and persist it."""
        with self._data_lock:
            room = self.rooms.get(room_id)
            if not room:
                return None
            mutate(room)
            self._persist_state()
            return room

    def list_public_rooms(self, limit: int = 20) -> List[Room]:
        with self._data_lock:
            rooms = [
                r for r in self.rooms.values() if r.is_active and r.settings.is_public
            ]
            rooms.sort(key=lambda r: r.last_activity, reverse=True)
            return rooms[:limit]

    def list_user_rooms(self, user_id: str) -> List[Room]:
        with self._data_lock:
            rooms = [
                r
                for r in self.rooms.values()
                if r.is_active
                and (r.created_by == user_id or r.participant(user_id) is not None)
            ]
            rooms.sort(key=lambda r: r.last_activity, reverse=True)
            return rooms

    # devices
    def upsert_device(
        self,
        user_id: str,
        device_id: str,
        *,
        device_name: str,
        device_type: str = "other",
        platform: Optional[str] = None,
        is_online: bool = True,
    ) -> Device:
        with self._data_lock:
            existing = next(
                (
                    d
                    for d in self.devices.values()
                    if d.user_id == user_id and d.device_id == device_id
                ),
                None,
            )
            now = utcnow()
            if existing:
                existing.device_name = device_name
                existing.device_type = device_type
                existing.platform = platform
                existing.is_online = is_online
                existing.last_active = now
                device = existing
            else:
                device = Device(
                    id=generate_uuid(),
                    user_id=user_id,
                    device_id=device_id,
                    device_name=device_name,
                    device_type=device_type,
                    platform=platform,
                    is_online=is_online,
                    last_active=now,
                    created_at=now,
                )
                self.devices[device.id] = device
            self._persist_state()
            return device

    def set_device_status(
        self, user_id: str, device_id: str, is_online: bool
    ) -> Optional[Device]:
        with self._data_lock:
            for device in self.devices.values():
                if device.user_id == user_id and device.device_id == device_id:
                    device.is_online = is_online
                    device.last_active = utcnow()
                    self._persist_state()
                    return device
            return None

    def list_devices(self, user_id: str, online_only: bool = False) -> List[Device]:
        with self._data_lock:
            devices = [
                d
                for d in self.devices.values()
                if d.user_id == user_id and (d.is_online or not online_only)
            ]
            devices.sort(key=lambda d: d.last_active, reverse=True)
            return devices

    # sync sessions
    def create_sync_session(self, session: SyncSession) -> SyncSession:
        with self._data_lock:
            self.sync_sessions[session.id] = session
            self._persist_state()
            return session

    def get_sync_session(self, session_id: str) -> Optional[SyncSession]:
        with self._data_lock:
            return self.sync_sessions.get(session_id)

    def append_sync_event(
        self, session_id: str, event: SyncEvent
    ) -> Optional[SyncSession]:
        with self._data_lock:
            session = self.sync_sessions.get(session_id)
            if not session:
                return None
            session.events.append(event)
            self._persist_state()
            return session

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [user_to_document(u) for u in self.users.values()],
            "refresh_tokens": [
                refresh_token_to_document(r) for r in self.refresh_tokens.values()
            ],
            "stats": [stats_to_document(s) for s in self.stats.values()],
            "rooms": [room_to_document(r) for r in self.rooms.values()],
            "devices": [device_to_document(d) for d in self.devices.values()],
            "sync_sessions": [
                sync_session_to_document(s) for s in self.sync_sessions.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {
            u["id"]: user_from_document(u) for u in data.get("users", [])
        }
        self.refresh_tokens = {
            r["token_hash"]: refresh_token_from_document(r)
            for r in data.get("refresh_tokens", [])
        }
        self.stats = {
            s["user_id"]: stats_from_document(s) for s in data.get("stats", [])
        }
        self.rooms = {r["id"]: room_from_document(r) for r in data.get("rooms", [])}
        self.devices = {
            d["id"]: device_from_document(d) for d in data.get("devices", [])
        }
        self.sync_sessions = {
            s["id"]: sync_session_from_document(s)
            for s in data.get("sync_sessions", [])
        }
        return True
