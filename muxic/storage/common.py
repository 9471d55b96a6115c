"""Document encoding shared between the memory and postgres stores.

Both backends keep records as JSON documents: the memory store in its state
file, postgres in JSONB columns. These helpers convert the dataclass records
to and from plain dicts so both backends agree on the on-disk shape.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from muxic.storage.models import (
    Device,
    ListeningStats,
    PlaybackState,
    PrivacySettings,
    QueuedTrack,
    RefreshToken,
    Room,
    RoomParticipant,
    RoomSettings,
    SocialStats,
    SyncEvent,
    SyncSession,
    User,
    UserStats,
)


# Fields update_user may touch; id and created_at are immutable
MUTABLE_USER_FIELDS = frozenset(
    {
        "email",
        "username",
        "full_name",
        "password_hash",
        "password_algo",
        "avatar",
        "bio",
        "google_id",
        "is_verified",
        "otp_hash",
        "otp_expires_at",
        "reset_token_hash",
        "reset_expires_at",
        "privacy",
        "is_active",
        "is_banned",
        "ban_reason",
        "last_login",
    }
)


def generate_uuid() -> str:
    return str(uuid.uuid4())


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def dump_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat()


def load_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        parsed = raw
    else:
        parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require_datetime(raw: Any) -> datetime:
    parsed = load_datetime(raw)
    if parsed is None:
        return datetime.now(timezone.utc)
    return parsed


# ============================================================================
# USERS
# ============================================================================


def user_to_document(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "full_name": user.full_name,
        "password_hash": user.password_hash,
        "password_algo": user.password_algo,
        "avatar": user.avatar,
        "bio": user.bio,
        "google_id": user.google_id,
        "is_verified": user.is_verified,
        "otp_hash": user.otp_hash,
        "otp_expires_at": dump_datetime(user.otp_expires_at),
        "reset_token_hash": user.reset_token_hash,
        "reset_expires_at": dump_datetime(user.reset_expires_at),
        "privacy": asdict(user.privacy),
        "is_active": user.is_active,
        "is_banned": user.is_banned,
        "ban_reason": user.ban_reason,
        "last_login": dump_datetime(user.last_login),
        "created_at": dump_datetime(user.created_at),
        "updated_at": dump_datetime(user.updated_at),
    }


def user_from_document(data: Dict[str, Any]) -> User:
    privacy = data.get("privacy") or {}
    return User(
        id=str(data["id"]),
        email=data["email"],
        username=data["username"],
        full_name=data.get("full_name") or data["username"],
        password_hash=data.get("password_hash"),
        password_algo=data.get("password_algo"),
        avatar=data.get("avatar"),
        bio=data.get("bio") or "",
        google_id=data.get("google_id"),
        is_verified=bool(data.get("is_verified", False)),
        otp_hash=data.get("otp_hash"),
        otp_expires_at=load_datetime(data.get("otp_expires_at")),
        reset_token_hash=data.get("reset_token_hash"),
        reset_expires_at=load_datetime(data.get("reset_expires_at")),
        privacy=PrivacySettings(
            profile_visibility=privacy.get("profile_visibility", "public"),
            show_online_status=privacy.get("show_online_status", True),
        ),
        is_active=data.get("is_active", True),
        is_banned=data.get("is_banned", False),
        ban_reason=data.get("ban_reason"),
        last_login=load_datetime(data.get("last_login")),
        created_at=_require_datetime(data.get("created_at")),
        updated_at=_require_datetime(data.get("updated_at")),
    )


# ============================================================================
# REFRESH TOKENS
# ============================================================================


def refresh_token_to_document(record: RefreshToken) -> Dict[str, Any]:
    return {
        "token_hash": record.token_hash,
        "user_id": record.user_id,
        "created_at": dump_datetime(record.created_at),
        "expires_at": dump_datetime(record.expires_at),
        "last_used": dump_datetime(record.last_used),
    }


def refresh_token_from_document(data: Dict[str, Any]) -> RefreshToken:
    return RefreshToken(
        token_hash=data["token_hash"],
        user_id=str(data["user_id"]),
        created_at=_require_datetime(data.get("created_at")),
        expires_at=_require_datetime(data.get("expires_at")),
        last_used=load_datetime(data.get("last_used")),
    )


# ============================================================================
# STATS
# ============================================================================


def stats_to_document(stats: UserStats) -> Dict[str, Any]:
    return {
        "user_id": stats.user_id,
        "listening": asdict(stats.listening),
        "social": asdict(stats.social),
        # entries carry ISO timestamps already
        "recent_rooms": [dict(entry) for entry in stats.recent_rooms],
        "updated_at": dump_datetime(stats.updated_at),
    }


def stats_from_document(data: Dict[str, Any]) -> UserStats:
    return UserStats(
        user_id=str(data["user_id"]),
        listening=ListeningStats(**(data.get("listening") or {})),
        social=SocialStats(**(data.get("social") or {})),
        recent_rooms=list(data.get("recent_rooms") or []),
        updated_at=_require_datetime(data.get("updated_at")),
    )


# ============================================================================
# ROOMS
# ============================================================================


def room_to_document(room: Room) -> Dict[str, Any]:
    return {
        "id": room.id,
        "room_code": room.room_code,
        "name": room.name,
        "description": room.description,
        "created_by": room.created_by,
        "admins": list(room.admins),
        "settings": asdict(room.settings),
        "current_track": room.current_track,
        "playback": {
            "is_playing": room.playback.is_playing,
            "current_time": room.playback.current_time,
            "volume": room.playback.volume,
            "last_updated": dump_datetime(room.playback.last_updated),
        },
        "queue": [
            {
                "track": item.track,
                "added_by": item.added_by,
                "added_at": dump_datetime(item.added_at),
            }
            for item in room.queue
        ],
        "participants": [
            {
                "user_id": p.user_id,
                "joined_at": dump_datetime(p.joined_at),
                "role": p.role,
                "is_online": p.is_online,
                "device_ids": list(p.device_ids),
            }
            for p in room.participants
        ],
        "is_active": room.is_active,
        "last_activity": dump_datetime(room.last_activity),
        "created_at": dump_datetime(room.created_at),
    }


def room_from_document(data: Dict[str, Any]) -> Room:
    playback = data.get("playback") or {}
    return Room(
        id=str(data["id"]),
        room_code=data["room_code"],
        name=data["name"],
        created_by=str(data["created_by"]),
        description=data.get("description") or "",
        admins=list(data.get("admins") or []),
        settings=RoomSettings(**(data.get("settings") or {})),
        current_track=data.get("current_track"),
        playback=PlaybackState(
            is_playing=playback.get("is_playing", False),
            current_time=playback.get("current_time", 0.0),
            volume=playback.get("volume", 50),
            last_updated=_require_datetime(playback.get("last_updated")),
        ),
        queue=[
            QueuedTrack(
                track=item.get("track") or {},
                added_by=item.get("added_by", ""),
                added_at=_require_datetime(item.get("added_at")),
            )
            for item in data.get("queue") or []
        ],
        participants=[
            RoomParticipant(
                user_id=str(p["user_id"]),
                joined_at=_require_datetime(p.get("joined_at")),
                role=p.get("role", "participant"),
                is_online=p.get("is_online", True),
                device_ids=list(p.get("device_ids") or []),
            )
            for p in data.get("participants") or []
        ],
        is_active=data.get("is_active", True),
        last_activity=_require_datetime(data.get("last_activity")),
        created_at=_require_datetime(data.get("created_at")),
    )


# ============================================================================
# DEVICES & SYNC SESSIONS
# ============================================================================


def device_to_document(device: Device) -> Dict[str, Any]:
    return {
        "id": device.id,
        "user_id": device.user_id,
        "device_id": device.device_id,
        "device_name": device.device_name,
        "device_type": device.device_type,
        "platform": device.platform,
        "is_online": device.is_online,
        "last_active": dump_datetime(device.last_active),
        "created_at": dump_datetime(device.created_at),
    }


def device_from_document(data: Dict[str, Any]) -> Device:
    return Device(
        id=str(data["id"]),
        user_id=str(data["user_id"]),
        device_id=data["device_id"],
        device_name=data.get("device_name") or data["device_id"],
        device_type=data.get("device_type", "other"),
        platform=data.get("platform"),
        is_online=data.get("is_online", True),
        last_active=_require_datetime(data.get("last_active")),
        created_at=_require_datetime(data.get("created_at")),
    )


def sync_session_to_document(session: SyncSession) -> Dict[str, Any]:
    return {
        "id": session.id,
        "room_id": session.room_id,
        "session_code": session.session_code,
        "events": [
            {
                "type": evt.type,
                "user_id": evt.user_id,
                "data": evt.data,
                "timestamp": dump_datetime(evt.timestamp),
            }
            for evt in session.events
        ],
        "created_at": dump_datetime(session.created_at),
    }


def sync_session_from_document(data: Dict[str, Any]) -> SyncSession:
    return SyncSession(
        id=str(data["id"]),
        room_id=str(data["room_id"]),
        session_code=data["session_code"],
        events=[
            SyncEvent(
                type=evt["type"],
                user_id=evt.get("user_id"),
                data=evt.get("data") or {},
                timestamp=_require_datetime(evt.get("timestamp")),
            )
            for evt in data.get("events") or []
        ],
        created_at=_require_datetime(data.get("created_at")),
    )
