from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from istream.logging import get_logger
from istream.storage.errors import ConstraintViolation
from istream.storage.models import (
    AuthProvider,
    OtpChallenge,
    ReactionCounts,
    ReactionType,
    Role,
    SubscriptionEdge,
    User,
    UserSnapshot,
    Video,
    ViewResult,
    utcnow,
)

_USER_COLUMNS = (
    "id, username, email, full_name, avatar, cover_image, description, role, "
    "auth_provider, google_id, is_verified, otp_code, otp_expires_at, watch_history, "
    "created_at, updated_at"
)

_VIDEO_COLUMNS = "id, owner_id, title, description, video_url, thumbnail, views, created_at"

_UPDATABLE_USER_FIELDS = {
    "full_name",
    "email",
    "username",
    "description",
    "avatar",
    "cover_image",
}

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        full_name TEXT NOT NULL,
        avatar TEXT NOT NULL,
        cover_image TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'user',
        auth_provider TEXT NOT NULL DEFAULT 'local',
        google_id TEXT,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        otp_code TEXT,
        otp_expires_at TIMESTAMPTZ,
        password_hash TEXT,
        refresh_token_hash TEXT,
        watch_history TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_key ON app_user (lower(username))",
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (email)",
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_google_id_key ON app_user (google_id) "
    "WHERE google_id IS NOT NULL",
    """
    CREATE TABLE IF NOT EXISTS video (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        video_url TEXT NOT NULL DEFAULT '',
        thumbnail TEXT NOT NULL DEFAULT '',
        views BIGINT NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "ALTER TABLE video ADD COLUMN IF NOT EXISTS description TEXT NOT NULL DEFAULT ''",
    "ALTER TABLE video ADD COLUMN IF NOT EXISTS video_url TEXT NOT NULL DEFAULT ''",
    "ALTER TABLE video ADD COLUMN IF NOT EXISTS thumbnail TEXT NOT NULL DEFAULT ''",
    """
    CREATE TABLE IF NOT EXISTS subscription (
        id TEXT PRIMARY KEY,
        subscriber_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        subscriber_username TEXT NOT NULL,
        subscriber_avatar TEXT NOT NULL,
        channel_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        channel_username TEXT NOT NULL,
        channel_avatar TEXT NOT NULL,
        channel_cover_image TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT subscription_pair_key UNIQUE (subscriber_id, channel_id),
        CONSTRAINT subscription_not_self CHECK (subscriber_id <> channel_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reaction (
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        video_id TEXT NOT NULL REFERENCES video(id) ON DELETE CASCADE,
        type TEXT NOT NULL CHECK (type IN ('like', 'dislike')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, video_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_state (
        state TEXT PRIMARY KEY,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
)


def _constraint_field(exc: errors.UniqueViolation) -> str:
    name = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    for field in ("username", "email", "google_id"):
        if field in name:
            return field
    if name.startswith("subscription"):
        return "subscription"
    return "unknown"


class PostgresStore:
    """Postgres-backed store; every conditional write is a single SQL statement or transaction."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        """Create tables and unique indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    @staticmethod
    def _user_from_row(row: dict) -> User:
        otp = None
        if row.get("otp_code"):
            otp = OtpChallenge(code=row["otp_code"], expires_at=row["otp_expires_at"])
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            full_name=row.get("full_name") or "",
            avatar=row.get("avatar") or "",
            cover_image=row.get("cover_image") or "",
            description=row.get("description") or "",
            role=Role(row.get("role") or "user"),
            auth_provider=AuthProvider(row.get("auth_provider") or "local"),
            google_id=row.get("google_id"),
            is_verified=bool(row.get("is_verified")),
            otp=otp,
            watch_history=list(row.get("watch_history") or []),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _video_from_row(row: dict) -> Video:
        return Video(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            title=row.get("title") or "",
            description=row.get("description") or "",
            video_url=row.get("video_url") or "",
            thumbnail=row.get("thumbnail") or "",
            views=int(row.get("views") or 0),
            created_at=row["created_at"],
        )

    @staticmethod
    def _edge_from_row(row: dict) -> SubscriptionEdge:
        return SubscriptionEdge(
            id=str(row["id"]),
            subscriber=UserSnapshot(
                id=str(row["subscriber_id"]),
                username=row["subscriber_username"],
                avatar=row["subscriber_avatar"],
            ),
            channel=UserSnapshot(
                id=str(row["channel_id"]),
                username=row["channel_username"],
                avatar=row["channel_avatar"],
                cover_image=row.get("channel_cover_image"),
            ),
            created_at=row["created_at"],
        )

    # -- users -------------------------------------------------------------

    def create_user(self, user: User, password_hash: Optional[str] = None) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, full_name, avatar, cover_image,
                        description, role, auth_provider, google_id, is_verified, otp_code,
                        otp_expires_at, password_hash, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        user.full_name,
                        user.avatar,
                        user.cover_image,
                        user.description,
                        user.role.value,
                        user.auth_provider.value,
                        user.google_id,
                        user.is_verified,
                        user.otp.code if user.otp else None,
                        user.otp.expires_at if user.otp else None,
                        password_hash,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return user

    def _get_user_where(self, clause: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {clause}", params
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._get_user_where("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._get_user_where("email = %s", (email.strip().lower(),))

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._get_user_where("lower(username) = %s", (username.strip().lower(),))

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        normalized = identifier.strip().lower()
        return self._get_user_where(
            "lower(username) = %s OR email = %s LIMIT 1", (normalized, normalized)
        )

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        return self._get_user_where("google_id = %s", (google_id,))

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        assignments = ", ".join(f"{name} = %s" for name in fields)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE app_user SET {assignments}, updated_at = %s
                    WHERE id = %s
                    RETURNING {_USER_COLUMNS}
                    """,
                    (*fields.values(), utcnow(), user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row) if row else None

    def link_google_identity(self, user_id: str, google_id: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE app_user
                    SET google_id = %s, auth_provider = 'google', updated_at = %s
                    WHERE id = %s AND (google_id IS NULL OR google_id = %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (google_id, utcnow(), user_id, google_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("google_id already exists", {"field": "google_id"})
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM app_user WHERE id = %s RETURNING id", (user_id,)
            ).fetchone()
        return row is not None

    # -- credentials -------------------------------------------------------

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = %s WHERE id = %s RETURNING id",
                (password_hash, utcnow(), user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return row["password_hash"] if row else None

    def set_otp(self, user_id: str, challenge: OtpChallenge) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET otp_code = %s, otp_expires_at = %s, updated_at = %s
                WHERE id = %s RETURNING id
                """,
                (challenge.code, challenge.expires_at, utcnow(), user_id),
            ).fetchone()
        return row is not None

    def consume_otp(self, user_id: str, code: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET is_verified = TRUE, otp_code = NULL, otp_expires_at = NULL, updated_at = %s
                WHERE id = %s AND otp_code = %s AND otp_expires_at >= %s
                RETURNING id
                """,
                (now, user_id, code, now),
            ).fetchone()
        return row is not None

    def set_refresh_digest(self, user_id: str, digest: Optional[str]) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET refresh_token_hash = %s WHERE id = %s RETURNING id",
                (digest, user_id),
            ).fetchone()
        return row is not None

    def swap_refresh_digest(self, user_id: str, expected: str, new: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET refresh_token_hash = %s
                WHERE id = %s AND refresh_token_hash = %s
                RETURNING id
                """,
                (new, user_id, expected),
            ).fetchone()
        return row is not None

    def get_refresh_digest(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT refresh_token_hash FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return row["refresh_token_hash"] if row else None

    # -- oauth state -------------------------------------------------------

    def save_oauth_state(self, state: str, expires_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM oauth_state WHERE expires_at <= now()")
            conn.execute(
                "INSERT INTO oauth_state (state, expires_at) VALUES (%s, %s)",
                (state, expires_at),
            )

    def consume_oauth_state(self, state: str, now: datetime) -> bool:
        """Delete ``state`` in one statement; only the first caller gets the row back."""
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM oauth_state WHERE state = %s RETURNING expires_at",
                (state,),
            ).fetchone()
        return bool(row) and row["expires_at"] > now

    # -- videos ------------------------------------------------------------

    def create_video(
        self,
        owner_id: str,
        title: str,
        *,
        description: str = "",
        video_url: str = "",
        thumbnail: str = "",
    ) -> Video:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO video
                        (id, owner_id, title, description, video_url, thumbnail, views, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, 0, %s)
                    RETURNING {_VIDEO_COLUMNS}
                    """,
                    (
                        str(uuid.uuid4()),
                        owner_id,
                        title,
                        description,
                        video_url,
                        thumbnail,
                        utcnow(),
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "video owner does not exist", {"field": "owner_id"}
            ) from exc
        return self._video_from_row(row)

    def get_video(self, video_id: str) -> Optional[Video]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_VIDEO_COLUMNS} FROM video WHERE id = %s",
                (video_id,),
            ).fetchone()
        return self._video_from_row(row) if row else None

    def get_videos(self, video_ids: List[str]) -> List[Video]:
        if not video_ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_VIDEO_COLUMNS} FROM video WHERE id = ANY(%s)",
                (list(video_ids),),
            ).fetchall()
        by_id = {str(row["id"]): self._video_from_row(row) for row in rows}
        return [by_id[vid] for vid in video_ids if vid in by_id]

    def record_view(self, video_id: str, user_id: Optional[str] = None) -> Optional[ViewResult]:
        with self._connect() as conn:
            with conn.transaction():
                counted = True
                if user_id is not None:
                    user_row = conn.execute(
                        "SELECT watch_history FROM app_user WHERE id = %s FOR UPDATE",
                        (user_id,),
                    ).fetchone()
                    if not user_row:
                        return None
                    counted = video_id not in (user_row["watch_history"] or [])
                row = conn.execute(
                    "UPDATE video SET views = views + %s WHERE id = %s RETURNING views",
                    (1 if counted else 0, video_id),
                ).fetchone()
                if not row:
                    return None
                if user_id is not None:
                    conn.execute(
                        """
                        UPDATE app_user
                        SET watch_history = array_prepend(%s, array_remove(watch_history, %s))
                        WHERE id = %s
                        """,
                        (video_id, video_id, user_id),
                    )
        return ViewResult(views=int(row["views"]), counted=counted)

    def get_watch_history(self, user_id: str) -> Optional[List[str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT watch_history FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return list(row["watch_history"] or []) if row else None

    def clear_watch_history(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET watch_history = '{}' WHERE id = %s RETURNING id",
                (user_id,),
            ).fetchone()
        return row is not None

    def remove_from_watch_history(self, user_id: str, video_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET watch_history = array_remove(watch_history, %s)
                WHERE id = %s RETURNING id
                """,
                (video_id, user_id),
            ).fetchone()
        return row is not None

    # -- subscriptions -----------------------------------------------------

    def create_subscription(self, edge: SubscriptionEdge) -> SubscriptionEdge:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO subscription (id, subscriber_id, subscriber_username,
                        subscriber_avatar, channel_id, channel_username, channel_avatar,
                        channel_cover_image, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        edge.id,
                        edge.subscriber.id,
                        edge.subscriber.username,
                        edge.subscriber.avatar,
                        edge.channel.id,
                        edge.channel.username,
                        edge.channel.avatar,
                        edge.channel.cover_image,
                        edge.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "subscription already exists",
                {"subscriber_id": edge.subscriber.id, "channel_id": edge.channel.id},
            )
        return edge

    def get_subscription(
        self, subscriber_id: str, channel_id: str
    ) -> Optional[SubscriptionEdge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM subscription WHERE subscriber_id = %s AND channel_id = %s",
                (subscriber_id, channel_id),
            ).fetchone()
        return self._edge_from_row(row) if row else None

    def delete_subscription(self, subscriber_id: str, channel_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM subscription WHERE subscriber_id = %s AND channel_id = %s
                RETURNING id
                """,
                (subscriber_id, channel_id),
            ).fetchone()
        return row is not None

    def _list_edges(
        self, column: str, value: str, offset: int, limit: int
    ) -> Tuple[List[SubscriptionEdge], int]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM subscription WHERE {column} = %s
                ORDER BY created_at DESC, id DESC
                OFFSET %s LIMIT %s
                """,
                (value, offset, limit),
            ).fetchall()
            total = conn.execute(
                f"SELECT COUNT(*) AS c FROM subscription WHERE {column} = %s", (value,)
            ).fetchone()
        return [self._edge_from_row(r) for r in rows], int(total["c"]) if total else 0

    def list_subscriptions(
        self, subscriber_id: str, *, offset: int = 0, limit: int = 10
    ) -> Tuple[List[SubscriptionEdge], int]:
        return self._list_edges("subscriber_id", subscriber_id, offset, limit)

    def list_subscribers(
        self, channel_id: str, *, offset: int = 0, limit: int = 10
    ) -> Tuple[List[SubscriptionEdge], int]:
        return self._list_edges("channel_id", channel_id, offset, limit)

    def count_subscribers(self, channel_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM subscription WHERE channel_id = %s", (channel_id,)
            ).fetchone()
        return int(row["c"]) if row else 0

    def count_subscriptions(self, subscriber_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS c FROM subscription WHERE subscriber_id = %s",
                (subscriber_id,),
            ).fetchone()
        return int(row["c"]) if row else 0

    # -- reactions ---------------------------------------------------------

    def get_reaction(self, user_id: str, video_id: str) -> Optional[ReactionType]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT type FROM reaction WHERE user_id = %s AND video_id = %s",
                (user_id, video_id),
            ).fetchone()
        return ReactionType(row["type"]) if row else None

    def apply_reaction(
        self, user_id: str, video_id: str, action: ReactionType
    ) -> Optional[ReactionType]:
        now = utcnow()
        with self._connect() as conn:
            with conn.transaction():
                # Inserts or flips the row; a repeat of the same reaction matches no
                # row here but still locks it for the delete below.
                row = conn.execute(
                    """
                    INSERT INTO reaction (user_id, video_id, type, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, video_id) DO UPDATE
                    SET type = EXCLUDED.type, updated_at = EXCLUDED.updated_at
                    WHERE reaction.type <> EXCLUDED.type
                    RETURNING type
                    """,
                    (user_id, video_id, action.value, now, now),
                ).fetchone()
                if row:
                    return ReactionType(row["type"])
                conn.execute(
                    "DELETE FROM reaction WHERE user_id = %s AND video_id = %s AND type = %s",
                    (user_id, video_id, action.value),
                )
        return None

    def count_reactions(self, video_id: str) -> ReactionCounts:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT type, COUNT(*) AS c FROM reaction WHERE video_id = %s GROUP BY type",
                (video_id,),
            ).fetchall()
        counts = ReactionCounts()
        for row in rows:
            if row["type"] == ReactionType.LIKE.value:
                counts.likes = int(row["c"])
            else:
                counts.dislikes = int(row["c"])
        return counts

    def list_liked_videos(
        self, user_id: str, *, offset: int = 0, limit: int = 10
    ) -> Tuple[List[Video], int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT v.id, v.owner_id, v.title, v.description, v.video_url, v.thumbnail,
                       v.views, v.created_at
                FROM reaction r JOIN video v ON v.id = r.video_id
                WHERE r.user_id = %s AND r.type = 'like'
                ORDER BY r.updated_at DESC
                OFFSET %s LIMIT %s
                """,
                (user_id, offset, limit),
            ).fetchall()
            total = conn.execute(
                "SELECT COUNT(*) AS c FROM reaction WHERE user_id = %s AND type = 'like'",
                (user_id,),
            ).fetchone()
        return [self._video_from_row(r) for r in rows], int(total["c"]) if total else 0
