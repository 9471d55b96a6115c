from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from muxic.logging import get_logger
from muxic.storage.common import (
    device_from_document,
    device_to_document,
    dump_datetime,
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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS muxic_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT NOT NULL,
        google_id TEXT,
        reset_token_hash TEXT,
        doc JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT muxic_user_email_key UNIQUE (email),
        CONSTRAINT muxic_user_username_key UNIQUE (username),
        CONSTRAINT muxic_user_google_id_key UNIQUE (google_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS muxic_user_reset_idx ON muxic_user (reset_token_hash)",
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token_hash TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        doc JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS user_stats (
        user_id TEXT PRIMARY KEY,
        doc JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS room (
        id TEXT PRIMARY KEY,
        room_code TEXT NOT NULL UNIQUE,
        created_by TEXT NOT NULL,
        is_public BOOLEAN NOT NULL DEFAULT TRUE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_activity TIMESTAMPTZ NOT NULL DEFAULT now(),
        doc JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS device (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        device_id TEXT NOT NULL,
        doc JSONB NOT NULL,
        CONSTRAINT device_user_device_key UNIQUE (user_id, device_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_session (
        id TEXT PRIMARY KEY,
        room_id TEXT NOT NULL,
        doc JSONB NOT NULL
    )
    """,
)

# constraint name fragment -> user-facing field
_CONSTRAINT_FIELDS = (
    ("email", "email"),
    ("username", "username"),
    ("google_id", "google_id"),
    ("room_code", "room_code"),
    ("pkey", "id"),
)


def _constraint_field(exc: errors.UniqueViolation) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    name = (getattr(diag, "constraint_name", None) or "").lower()
    for fragment, field in _CONSTRAINT_FIELDS:
        if fragment in name:
            return field
    return None


class PostgresStore:
    """Postgres-backed store keeping each record as a JSONB document.

    Uniqueness lives in indexed key columns next to the document, so racing
    inserts are resolved by the database and surface as ``ConstraintViolation``.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the document tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def _write_user(self, conn, user: User, *, insert: bool) -> None:
        doc = json.dumps(user_to_document(user))
        try:
            if insert:
                conn.execute(
                    """
                    INSERT INTO muxic_user (id, email, username, google_id, reset_token_hash, doc, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.username,
                        user.google_id,
                        user.reset_token_hash,
                        doc,
                        user.created_at,
                    ),
                )
            else:
                conn.execute(
                    """
                    UPDATE muxic_user
                    SET email = %s, username = %s, google_id = %s, reset_token_hash = %s, doc = %s
                    WHERE id = %s
                    """,
                    (
                        user.email,
                        user.username,
                        user.google_id,
                        user.reset_token_hash,
                        doc,
                        user.id,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc) or "email"
            raise ConstraintViolation(
                f"{field} already exists", {"field": field}
            ) from exc

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
        user = User(
            id=generate_uuid(),
            email=normalize_email(email),
            username=username,
            full_name=full_name,
            password_hash=password_hash,
            password_algo=password_algo,
            google_id=google_id,
            avatar=avatar,
            is_verified=is_verified,
        )
        with self._connect() as conn:
            self._write_user(conn, user, insert=True)
        return user

    def _fetch_user(self, where: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT doc FROM muxic_user WHERE {where} = %s", (value,)
            ).fetchone()
        if not row:
            return None
        return user_from_document(row["doc"])

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", normalize_email(email))

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username", username)

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        if not google_id:
            return None
        return self._fetch_user("google_id", google_id)

    def get_user_by_reset_token_hash(self, token_hash: str) -> Optional[User]:
        if not token_hash:
            return None
        return self._fetch_user("reset_token_hash", token_hash)

    def username_exists(self, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM muxic_user WHERE username = %s", (username,)
            ).fetchone()
        return row is not None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc FROM muxic_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not row:
                return None
            updated = replace(
                user_from_document(row["doc"]), **fields, updated_at=utcnow()
            )
            self._write_user(conn, updated, insert=False)
        return updated

    def mark_verified_if_unverified(self, user_id: str) -> bool:
        patch = json.dumps(
            {
                "is_verified": True,
                "otp_hash": None,
                "otp_expires_at": None,
                "updated_at": dump_datetime(utcnow()),
            }
        )
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE muxic_user
                SET doc = doc || %s::jsonb
                WHERE id = %s AND NOT COALESCE((doc->>'is_verified')::boolean, false)
                RETURNING id
                """,
                (patch, user_id),
            ).fetchone()
        return row is not None

    def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[User]:
        patch = json.dumps({"reset_token_hash": None, "reset_expires_at": None})
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH target AS (
                    SELECT id, doc FROM muxic_user WHERE reset_token_hash = %s FOR UPDATE
                )
                UPDATE muxic_user u
                SET reset_token_hash = NULL, doc = u.doc || %s::jsonb
                FROM target
                WHERE u.id = target.id
                RETURNING target.doc AS previous, u.doc AS current
                """,
                (token_hash, patch),
            ).fetchone()
        if not row:
            return None
        previous = user_from_document(row["previous"])
        if previous.reset_expires_at is None or previous.reset_expires_at <= now:
            return None
        return user_from_document(row["current"])

    def delete_user_cascade(self, user_id: str) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                exists = conn.execute(
                    "SELECT 1 FROM muxic_user WHERE id = %s FOR UPDATE", (user_id,)
                ).fetchone()
                if not exists:
                    return False
                conn.execute("DELETE FROM device WHERE user_id = %s", (user_id,))
                owned = conn.execute(
                    "DELETE FROM room WHERE created_by = %s RETURNING id", (user_id,)
                ).fetchall()
                owned_ids = [r["id"] for r in owned]
                if owned_ids:
                    conn.execute(
                        "DELETE FROM sync_session WHERE room_id = ANY(%s)",
                        (owned_ids,),
                    )
                member_rows = conn.execute(
                    """
                    SELECT doc FROM room
                    WHERE doc->'participants' @> %s::jsonb OR doc->'admins' ? %s
                    FOR UPDATE
                    """,
                    (json.dumps([{"user_id": user_id}]), user_id),
                ).fetchall()
                for row in member_rows:
                    room = room_from_document(row["doc"])
                    room.participants = [
                        p for p in room.participants if p.user_id != user_id
                    ]
                    room.admins = [a for a in room.admins if a != user_id]
                    self._write_room(conn, room)
                conn.execute("DELETE FROM user_stats WHERE user_id = %s", (user_id,))
                conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
                conn.execute("DELETE FROM muxic_user WHERE id = %s", (user_id,))
        return True

    # refresh tokens
    def save_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (token_hash, user_id, expires_at, doc)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (
                        record.token_hash,
                        record.user_id,
                        record.expires_at,
                        json.dumps(refresh_token_to_document(record)),
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "token_hash"}
            ) from exc
        return record

    def consume_refresh_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        """Single-statement find-and-delete; concurrent callers see one winner."""
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_token WHERE token_hash = %s RETURNING doc",
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        record = refresh_token_from_document(row["doc"])
        if record.is_expired(now):
            return None
        record.last_used = now or utcnow()
        return record

    def delete_refresh_token(self, token_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE token_hash = %s", (token_hash,)
            )
            return result.rowcount > 0

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def list_user_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT doc FROM refresh_token WHERE user_id = %s", (user_id,)
            ).fetchall()
        return [refresh_token_from_document(r["doc"]) for r in rows]

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount

    # stats
    def init_user_stats(self, user_id: str) -> UserStats:
        stats = UserStats(user_id=user_id)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_stats (user_id, doc) VALUES (%s, %s)
                ON CONFLICT (user_id) DO NOTHING
                """,
                (user_id, json.dumps(stats_to_document(stats))),
            )
        return self.get_user_stats(user_id) or stats

    def get_user_stats(self, user_id: str) -> Optional[UserStats]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc FROM user_stats WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return stats_from_document(row["doc"])

    def update_user_stats(
        self, user_id: str, mutate: Callable[[UserStats], None]
    ) -> Optional[UserStats]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc FROM user_stats WHERE user_id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not row:
                return None
            stats = stats_from_document(row["doc"])
            mutate(stats)
            stats.updated_at = utcnow()
            conn.execute(
                "UPDATE user_stats SET doc = %s WHERE user_id = %s",
                (json.dumps(stats_to_document(stats)), user_id),
            )
        return stats

    # rooms
    def _write_room(self, conn, room: Room) -> None:
        conn.execute(
            """
            UPDATE room
            SET is_public = %s, is_active = %s, last_activity = %s, doc = %s
            WHERE id = %s
            """,
            (
                room.settings.is_public,
                room.is_active,
                room.last_activity,
                json.dumps(room_to_document(room)),
                room.id,
            ),
        )

    def create_room(self, room: Room) -> Room:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO room (id, room_code, created_by, is_public, is_active, last_activity, doc)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        room.id,
                        room.room_code,
                        room.created_by,
                        room.settings.is_public,
                        room.is_active,
                        room.last_activity,
                        json.dumps(room_to_document(room)),
                    ),
                )
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc) or "room_code"
            raise ConstraintViolation(
                f"{field} already exists", {"field": field}
            ) from exc
        return room

    def get_room(self, room_id: str) -> Optional[Room]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc FROM room WHERE id = %s", (room_id,)
            ).fetchone()
        if not row:
            return None
        return room_from_document(row["doc"])

    def room_code_exists(self, room_code: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM room WHERE room_code = %s", (room_code,)
            ).fetchone()
        return row is not None

    def update_room(
        self, room_id: str, mutate: Callable[[Room], None]
    ) -> Optional[Room]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc FROM room WHERE id = %s FOR UPDATE", (room_id,)
            ).fetchone()
            if not row:
                return None
            room = room_from_document(row["doc"])
            mutate(room)
            self._write_room(conn, room)
        return room

    def list_public_rooms(self, limit: int = 20) -> List[Room]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT doc FROM room
                WHERE is_active AND is_public
                ORDER BY last_activity DESC
                LIMIT %s
                """,
                (limit,),
            ).fetchall()
        return [room_from_document(r["doc"]) for r in rows]

    def list_user_rooms(self, user_id: str) -> List[Room]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT doc FROM room
                WHERE is_active
                  AND (created_by = %s OR doc->'participants' @> %s::jsonb)
                ORDER BY last_activity DESC
                """,
                (user_id, json.dumps([{"user_id": user_id}])),
            ).fetchall()
        return [room_from_document(r["doc"]) for r in rows]

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
        now = utcnow()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc FROM device WHERE user_id = %s AND device_id = %s FOR UPDATE",
                (user_id, device_id),
            ).fetchone()
            if row:
                device = device_from_document(row["doc"])
                device.device_name = device_name
                device.device_type = device_type
                device.platform = platform
                device.is_online = is_online
                device.last_active = now
                conn.execute(
                    "UPDATE device SET doc = %s WHERE id = %s",
                    (json.dumps(device_to_document(device)), device.id),
                )
                return device
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
            conn.execute(
                """
                INSERT INTO device (id, user_id, device_id, doc) VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id, device_id) DO UPDATE SET doc = EXCLUDED.doc
                """,
                (device.id, user_id, device_id, json.dumps(device_to_document(device))),
            )
        return device

    def set_device_status(
        self, user_id: str, device_id: str, is_online: bool
    ) -> Optional[Device]:
        patch: Dict[str, Any] = {
            "is_online": is_online,
            "last_active": dump_datetime(utcnow()),
        }
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE device SET doc = doc || %s::jsonb
                WHERE user_id = %s AND device_id = %s
                RETURNING doc
                """,
                (json.dumps(patch), user_id, device_id),
            ).fetchone()
        if not row:
            return None
        return device_from_document(row["doc"])

    def list_devices(self, user_id: str, online_only: bool = False) -> List[Device]:
        query = "SELECT doc FROM device WHERE user_id = %s"
        if online_only:
            query += " AND COALESCE((doc->>'is_online')::boolean, false)"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        devices = [device_from_document(r["doc"]) for r in rows]
        devices.sort(key=lambda d: d.last_active, reverse=True)
        return devices

    # sync sessions
    def create_sync_session(self, session: SyncSession) -> SyncSession:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO sync_session (id, room_id, doc) VALUES (%s, %s, %s)",
                (
                    session.id,
                    session.room_id,
                    json.dumps(sync_session_to_document(session)),
                ),
            )
        return session

    def get_sync_session(self, session_id: str) -> Optional[SyncSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT doc FROM sync_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return sync_session_from_document(row["doc"])

    def append_sync_event(
        self, session_id: str, event: SyncEvent
    ) -> Optional[SyncSession]:
        event_doc = {
            "type": event.type,
            "user_id": event.user_id,
            "data": event.data,
            "timestamp": dump_datetime(event.timestamp),
        }
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sync_session
                SET doc = jsonb_set(doc, '{events}', COALESCE(doc->'events', '[]'::jsonb) || %s::jsonb)
                WHERE id = %s
                RETURNING doc
                """,
                (json.dumps([event_doc]), session_id),
            ).fetchone()
        if not row:
            return None
        return sync_session_from_document(row["doc"])
