from __future__ import annotations

import secrets
import string
from typing import Any, Callable, Dict, List, Optional

from muxic.logging import get_logger
from muxic.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from muxic.storage.common import generate_uuid
from muxic.storage.errors import ConstraintViolation
from muxic.storage.models import (
    DEVICE_TYPES,
    SYNC_EVENT_TYPES,
    Device,
    QueuedTrack,
    Room,
    RoomParticipant,
    RoomSettings,
    SyncEvent,
    SyncSession,
    UserStats,
    utcnow,
)

logger = get_logger(__name__)

ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits
ROOM_CODE_LENGTH = 6
ROOM_NAME_MAX = 50
ROOM_DESCRIPTION_MAX = 200
MIN_PARTICIPANTS = 2
MAX_PARTICIPANTS = 50
RECENT_ROOMS_LIMIT = 10


def generate_room_code(length: int = ROOM_CODE_LENGTH) -> str:
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(length))


def _record_recent_room(stats: UserStats, room_id: str) -> None:
    entries = [e for e in stats.recent_rooms if e.get("room_id") != room_id]
    entries.insert(0, {"room_id": room_id, "joined_at": utcnow().isoformat()})
    stats.recent_rooms = entries[:RECENT_ROOMS_LIMIT]


class RoomService:
    """Room, device, sync-session and stats bookkeeping.

    Plain CRUD over the store; playback state is recorded, never pushed to
    clients. Counters in ``UserStats`` are bumped as a side effect of the
    room operations that own them.
    """

    def __init__(self, store: Any, *, code_attempts: int = 10) -> None:
        self.store = store
        self.code_attempts = code_attempts

    def _bump_stats(self, user_id: str, mutate: Callable[[UserStats], None]) -> None:
        if self.store.get_user_stats(user_id) is None:
            self.store.init_user_stats(user_id)
        self.store.update_user_stats(user_id, mutate)

    def _require_room(self, room_id: str) -> Room:
        room = self.store.get_room(room_id)
        if not room or not room.is_active:
            raise NotFoundError("Room not found")
        return room

    def _mutate_room(self, room_id: str, mutate: Callable[[Room], None]) -> Room:
        def _apply(room: Room) -> None:
            if not room.is_active:
                raise NotFoundError("Room not found")
            mutate(room)
            room.last_activity = utcnow()

        room = self.store.update_room(room_id, _apply)
        if room is None:
            raise NotFoundError("Room not found")
        return room

    # rooms
    def create_room(
        self,
        owner_id: str,
        name: str,
        *,
        description: str = "",
        is_public: bool = True,
        max_participants: int = 10,
        allow_guest_control: bool = False,
        auto_play: bool = True,
    ) -> Room:
        name = (name or "").strip()
        if not name or len(name) > ROOM_NAME_MAX:
            raise ValidationError(f"Room name must be 1-{ROOM_NAME_MAX} characters")
        if len(description or "") > ROOM_DESCRIPTION_MAX:
            raise ValidationError(
                f"Description must be at most {ROOM_DESCRIPTION_MAX} characters"
            )
        if not MIN_PARTICIPANTS <= max_participants <= MAX_PARTICIPANTS:
            raise ValidationError(
                f"max_participants must be between {MIN_PARTICIPANTS} and {MAX_PARTICIPANTS}"
            )
        if not self.store.get_user(owner_id):
            raise NotFoundError("User not found")

        settings = RoomSettings(
            is_public=is_public,
            max_participants=max_participants,
            allow_guest_control=allow_guest_control,
            auto_play=auto_play,
        )
        for _ in range(self.code_attempts):
            code = generate_room_code()
            if self.store.room_code_exists(code):
                continue
            room = Room(
                id=generate_uuid(),
                room_code=code,
                name=name,
                created_by=owner_id,
                description=description or "",
                admins=[owner_id],
                settings=settings,
                participants=[RoomParticipant(user_id=owner_id, role="admin")],
            )
            try:
                created = self.store.create_room(room)
            except ConstraintViolation:
                continue
            break
        else:
            raise ServerError("Could not allocate a room code")

        def _count(stats: UserStats) -> None:
            stats.listening.rooms_created += 1
            _record_recent_room(stats, created.id)

        self._bump_stats(owner_id, _count)
        logger.info("room_created", room_id=created.id, user_id=owner_id)
        return created

    def get_room(self, room_id: str) -> Room:
        return self._require_room(room_id)

    def join_room(
        self, room_id: str, user_id: str, device_ids: Optional[List[str]] = None
    ) -> Room:
        devices = list(device_ids or [])

        def _join(room: Room) -> None:
            existing = room.participant(user_id)
            if existing:
                existing.is_online = True
                for device_id in devices:
                    if device_id not in existing.device_ids:
                        existing.device_ids.append(device_id)
                return
            if len(room.participants) >= room.settings.max_participants:
                raise ConflictError("Room is full")
            room.participants.append(
                RoomParticipant(user_id=user_id, device_ids=devices)
            )

        room = self._mutate_room(room_id, _join)

        def _count(stats: UserStats) -> None:
            stats.listening.sessions_joined += 1
            _record_recent_room(stats, room_id)

        self._bump_stats(user_id, _count)
        logger.info("room_joined", room_id=room_id, user_id=user_id)
        return room

    def leave_room(self, room_id: str, user_id: str) -> Room:
        def _leave(room: Room) -> None:
            room.participants = [p for p in room.participants if p.user_id != user_id]
            if user_id != room.created_by:
                room.admins = [a for a in room.admins if a != user_id]

        room = self._mutate_room(room_id, _leave)
        logger.info("room_left", room_id=room_id, user_id=user_id)
        return room

    # queue and playback
    def add_to_queue(self, room_id: str, track: Dict[str, Any], user_id: str) -> Room:
        if not track:
            raise ValidationError("Track is required")

        def _add(room: Room) -> None:
            if room.participant(user_id) is None:
                raise ForbiddenError("Not a participant in this room")
            room.queue.append(QueuedTrack(track=dict(track), added_by=user_id))

        return self._mutate_room(room_id, _add)

    def remove_from_queue(self, room_id: str, index: int) -> Room:
        def _remove(room: Room) -> None:
            if 0 <= index < len(room.queue):
                room.queue.pop(index)

        return self._mutate_room(room_id, _remove)

    def next_track(self, room_id: str) -> Room:
        advanced: List[bool] = []

        def _advance(room: Room) -> None:
            if room.queue:
                room.current_track = room.queue.pop(0).track
                advanced.append(True)
            else:
                room.current_track = None
                room.playback.is_playing = False
            room.playback.current_time = 0.0
            room.playback.last_updated = utcnow()

        room = self._mutate_room(room_id, _advance)
        if advanced:

            def _count(stats: UserStats) -> None:
                stats.listening.tracks_played += 1

            self._bump_stats(room.created_by, _count)
        return room

    def update_playback(
        self,
        room_id: str,
        *,
        is_playing: Optional[bool] = None,
        current_time: Optional[float] = None,
        volume: Optional[int] = None,
    ) -> Room:
        def _update(room: Room) -> None:
            if is_playing is not None:
                room.playback.is_playing = is_playing
            if current_time is not None:
                room.playback.current_time = max(0.0, float(current_time))
            if volume is not None:
                room.playback.volume = max(0, min(100, int(volume)))
            room.playback.last_updated = utcnow()

        return self._mutate_room(room_id, _update)

    def list_public_rooms(self, limit: int = 20) -> List[Room]:
        return self.store.list_public_rooms(limit=max(1, limit))

    def list_user_rooms(self, user_id: str) -> List[Room]:
        return self.store.list_user_rooms(user_id)

    # devices
    def register_device(
        self,
        user_id: str,
        device_id: str,
        device_name: str,
        device_type: str = "other",
        platform: Optional[str] = None,
    ) -> Device:
        if device_type not in DEVICE_TYPES:
            raise ValidationError(
                f"device_type must be one of {', '.join(DEVICE_TYPES)}",
                detail={"field": "device_type"},
            )
        if not device_id or not device_name:
            raise ValidationError("device_id and device_name are required")
        device = self.store.upsert_device(
            user_id,
            device_id,
            device_name=device_name,
            device_type=device_type,
            platform=platform,
            is_online=True,
        )
        logger.info("device_registered", user_id=user_id, device_type=device_type)
        return device

    def set_device_online(self, user_id: str, device_id: str, is_online: bool) -> Device:
        device = self.store.set_device_status(user_id, device_id, is_online)
        if not device:
            raise NotFoundError("Device not found")
        return device

    def list_devices(self, user_id: str, online_only: bool = False) -> List[Device]:
        return self.store.list_devices(user_id, online_only=online_only)

    # sync sessions
    def start_sync_session(self, room_id: str) -> SyncSession:
        self._require_room(room_id)
        session = SyncSession.new(room_id, secrets.token_hex(4).upper())
        return self.store.create_sync_session(session)

    def log_sync_event(
        self,
        session_id: str,
        event_type: str,
        user_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> SyncEvent:
        if event_type not in SYNC_EVENT_TYPES:
            raise ValidationError(
                f"Unknown sync event type: {event_type}", detail={"field": "type"}
            )
        event = SyncEvent(type=event_type, user_id=user_id, data=dict(data or {}))
        if self.store.append_sync_event(session_id, event) is None:
            raise NotFoundError("Sync session not found")
        return event

    # stats
    def get_stats(self, user_id: str) -> UserStats:
        stats = self.store.get_user_stats(user_id)
        if stats is None:
            raise NotFoundError("Stats not found")
        return stats
