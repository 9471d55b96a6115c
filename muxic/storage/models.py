from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

PROFILE_VISIBILITY = ("public", "friends", "private")
DEVICE_TYPES = ("mobile", "desktop", "tablet", "smart_speaker", "web", "other")
PARTICIPANT_ROLES = ("admin", "participant")
SYNC_EVENT_TYPES = (
    "play",
    "pause",
    "seek",
    "volume_change",
    "track_change",
    "user_join",
    "user_leave",
    "queue_add",
    "queue_remove",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PrivacySettings:
    profile_visibility: str = "public"
    show_online_status: bool = True


@dataclass
class User:
    id: str
    email: str
    username: str
    full_name: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    avatar: Optional[str] = None
    bio: str = ""
    google_id: Optional[str] = None
    is_verified: bool = False
    # OTP and reset secrets are stored hashed and never leave the service layer
    otp_hash: Optional[str] = None
    otp_expires_at: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_expires_at: Optional[datetime] = None
    privacy: PrivacySettings = field(default_factory=PrivacySettings)
    is_active: bool = True
    is_banned: bool = False
    ban_reason: Optional[str] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass
class RefreshToken:
    token_hash: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_used: Optional[datetime] = None

    @classmethod
    def new(cls, token_hash: str, user_id: str, ttl_minutes: int) -> "RefreshToken":
        now = utcnow()
        return cls(
            token_hash=token_hash,
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class ListeningStats:
    total_time: int = 0
    sessions_joined: int = 0
    rooms_created: int = 0
    tracks_played: int = 0
    current_streak: int = 0
    longest_streak: int = 0


@dataclass
class SocialStats:
    friends_count: int = 0
    rooms_shared: int = 0
    invites_sent: int = 0
    invites_received: int = 0
    collaborative_rooms: int = 0


@dataclass
class UserStats:
    user_id: str
    listening: ListeningStats = field(default_factory=ListeningStats)
    social: SocialStats = field(default_factory=SocialStats)
    recent_rooms: List[Dict] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RoomSettings:
    is_public: bool = True
    max_participants: int = 10
    allow_guest_control: bool = False
    auto_play: bool = True


@dataclass
class PlaybackState:
    is_playing: bool = False
    current_time: float = 0.0
    volume: int = 50
    last_updated: datetime = field(default_factory=utcnow)


@dataclass
class QueuedTrack:
    track: Dict
    added_by: str
    added_at: datetime = field(default_factory=utcnow)


@dataclass
class RoomParticipant:
    user_id: str
    joined_at: datetime = field(default_factory=utcnow)
    role: str = "participant"
    is_online: bool = True
    device_ids: List[str] = field(default_factory=list)


@dataclass
class Room:
    id: str
    room_code: str
    name: str
    created_by: str
    description: str = ""
    admins: List[str] = field(default_factory=list)
    settings: RoomSettings = field(default_factory=RoomSettings)
    current_track: Optional[Dict] = None
    playback: PlaybackState = field(default_factory=PlaybackState)
    queue: List[QueuedTrack] = field(default_factory=list)
    participants: List[RoomParticipant] = field(default_factory=list)
    is_active: bool = True
    last_activity: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    def participant(self, user_id: str) -> Optional[RoomParticipant]:
        return next((p for p in self.participants if p.user_id == user_id), None)


@dataclass
class Device:
    id: str
    user_id: str
    device_id: str
    device_name: str
    device_type: str = "other"
    platform: Optional[str] = None
    is_online: bool = True
    last_active: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SyncEvent:
    type: str
    user_id: Optional[str] = None
    data: Dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class SyncSession:
    id: str
    room_id: str
    session_code: str
    events: List[SyncEvent] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, room_id: str, session_code: str) -> "SyncSession":
        return cls(id=str(uuid.uuid4()), room_id=room_id, session_code=session_code)
