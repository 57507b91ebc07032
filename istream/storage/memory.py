from __future__ import annotations

import dataclasses
import hmac
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from istream.logging import get_logger
from istream.storage.errors import ConstraintViolation
from istream.storage.models import (
    AuthProvider,
    OtpChallenge,
    Reaction,
    ReactionCounts,
    ReactionType,
    Role,
    SubscriptionEdge,
    User,
    UserSnapshot,
    Video,
    ViewResult,
    next_reaction,
    utcnow,
)

_UPDATABLE_USER_FIELDS = {
    "full_name",
    "email",
    "username",
    "description",
    "avatar",
    "cover_image",
}


class MemoryStore:
    """In-process backing store with JSON snapshots under ``fs_root/state``.

    Every read and write happens under a single re-entrant lock, so each
    conditional write (refresh swap, OTP consume, edge insert, reaction apply,
    view record) is one critical section.
    """

    def __init__(self, fs_root: str = "/tmp/istream") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self.refresh_digests: Dict[str, str] = {}
        self.videos: Dict[str, Video] = {}
        # Insertion order is creation order; listings walk it backwards
        self.subscriptions: List[SubscriptionEdge] = []
        self.reactions: Dict[Tuple[str, str], Reaction] = {}
        self.oauth_states: Dict[str, datetime] = {}
        # RLock so helpers can re-enter from within a locked operation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    @staticmethod
    def _copy_user(user: Optional[User]) -> Optional[User]:
        if user is None:
            return None
        return dataclasses.replace(
            user,
            watch_history=list(user.watch_history),
            otp=dataclasses.replace(user.otp) if user.otp else None,
        )

    # -- users -------------------------------------------------------------

    def _unique_conflict(
        self,
        *,
        exclude_id: Optional[str] = None,
        username: Optional[str] = None,
        email: Optional[str] = None,
        google_id: Optional[str] = None,
    ) -> Optional[str]:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if username is not None and existing.username == username:
                return "username"
            if email is not None and existing.email == email:
                return "email"
            if google_id is not None and existing.google_id == google_id:
                return "google_id"
        return None

    def create_user(self, user: User, password_hash: Optional[str] = None) -> User:
        with self._data_lock:
            field = self._unique_conflict(
                username=user.username, email=user.email, google_id=user.google_id
            )
            if field:
                raise ConstraintViolation(f"{field} already exists", {"field": field})
            self.users[user.id] = self._copy_user(user)
            if password_hash:
                self.credentials[user.id] = password_hash
            self._persist_state()
            return self._copy_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._copy_user(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        with self._data_lock:
            return self._copy_user(
                next((u for u in self.users.values() if u.email == email), None)
            )

    def get_user_by_username(self, username: str) -> Optional[User]:
        username = username.strip().lower()
        with self._data_lock:
            return self._copy_user(
                next((u for u in self.users.values() if u.username == username), None)
            )

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        """Match a login identifier against username or email."""
        normalized = identifier.strip().lower()
        with self._data_lock:
            return self._copy_user(
                next(
                    (
                        u
                        for u in self.users.values()
                        if u.username == normalized or u.email == normalized
                    ),
                    None,
                )
            )

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._data_lock:
            return self._copy_user(
                next((u for u in self.users.values() if u.google_id == google_id), None)
            )

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            field = self._unique_conflict(
                exclude_id=user_id,
                username=fields.get("username"),
                email=fields.get("email"),
            )
            if field:
                raise ConstraintViolation(f"{field} already exists", {"field": field})
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return self._copy_user(user)

    def link_google_identity(self, user_id: str, google_id: str) -> Optional[User]:
        """Attach ``google_id`` unless the user already carries a different one."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.google_id not in (None, google_id):
                return None
            if self._unique_conflict(exclude_id=user_id, google_id=google_id):
                raise ConstraintViolation(
                    "google_id already exists", {"field": "google_id"}
                )
            user.google_id = google_id
            user.auth_provider = AuthProvider.GOOGLE
            user.updated_at = utcnow()
            self._persist_state()
            return self._copy_user(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self.refresh_digests.pop(user_id, None)
            self.subscriptions = [
                edge
                for edge in self.subscriptions
                if user_id not in (edge.subscriber.id, edge.channel.id)
            ]
            for key in [k for k in self.reactions if k[0] == user_id]:
                self.reactions.pop(key, None)
            self._persist_state()
            return True

    # -- credentials -------------------------------------------------------

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = password_hash
            self._persist_state()

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def set_otp(self, user_id: str, challenge: OtpChallenge) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.otp = dataclasses.replace(challenge)
            user.updated_at = utcnow()
            self._persist_state()
            return True

    def consume_otp(self, user_id: str, code: str, now: datetime) -> bool:
        """Mark the user verified if ``code`` matches the pending, unexpired OTP."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.otp:
                return False
            if not hmac.compare_digest(user.otp.code.encode(), code.encode()):
                return False
            if now > user.otp.expires_at:
                return False
            user.otp = None
            user.is_verified = True
            user.updated_at = now
            self._persist_state()
            return True

    def set_refresh_digest(self, user_id: str, digest: Optional[str]) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            if digest is None:
                self.refresh_digests.pop(user_id, None)
            else:
                self.refresh_digests[user_id] = digest
            self._persist_state()
            return True

    def swap_refresh_digest(self, user_id: str, expected: str, new: str) -> bool:
        with self._data_lock:
            current = self.refresh_digests.get(user_id)
            if current is None or not hmac.compare_digest(current, expected):
                return False
            self.refresh_digests[user_id] = new
            self._persist_state()
            return True

    def get_refresh_digest(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.refresh_digests.get(user_id)

    # -- oauth state -------------------------------------------------------

    def save_oauth_state(self, state: str, expires_at: datetime) -> None:
        with self._data_lock:
            now = utcnow()
            for stale in [s for s, exp in self.oauth_states.items() if exp <= now]:
                self.oauth_states.pop(stale, None)
            self.oauth_states[state] = expires_at
            self._persist_state()

    def consume_oauth_state(self, state: str, now: datetime) -> bool:
        """Delete ``state`` and report whether it was live; a state is accepted once."""
        with self._data_lock:
            expires_at = self.oauth_states.pop(state, None)
            if expires_at is None:
                return False
            self._persist_state()
            return expires_at > now

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
        with self._data_lock:
            if owner_id not in self.users:
                raise ConstraintViolation("video owner does not exist", {"field": "owner_id"})
            video = Video(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                title=title,
                description=description,
                video_url=video_url,
                thumbnail=thumbnail,
            )
            self.videos[video.id] = video
            self._persist_state()
            return dataclasses.replace(video)

    def get_video(self, video_id: str) -> Optional[Video]:
        with self._data_lock:
            video = self.videos.get(video_id)
            return dataclasses.replace(video) if video else None

    def get_videos(self, video_ids: List[str]) -> List[Video]:
        """Videos for ``video_ids`` in the given order, skipping deleted ones."""
        with self._data_lock:
            return [
                dataclasses.replace(self.videos[vid])
                for vid in video_ids
                if vid in self.videos
            ]

    def record_view(self, video_id: str, user_id: Optional[str] = None) -> Optional[ViewResult]:
        with self._data_lock:
            video = self.videos.get(video_id)
            if not video:
                return None
            if user_id is None:
                video.views += 1
                self._persist_state()
                return ViewResult(views=video.views, counted=True)
            user = self.users.get(user_id)
            if not user:
                return None
            counted = video_id not in user.watch_history
            if counted:
                video.views += 1
            user.watch_history = [video_id] + [
                vid for vid in user.watch_history if vid != video_id
            ]
            self._persist_state()
            return ViewResult(views=video.views, counted=counted)

    def get_watch_history(self, user_id: str) -> Optional[List[str]]:
        with self._data_lock:
            user = self.users.get(user_id)
            return list(user.watch_history) if user else None

    def clear_watch_history(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.watch_history = []
            self._persist_state()
            return True

    def remove_from_watch_history(self, user_id: str, video_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.watch_history = [vid for vid in user.watch_history if vid != video_id]
            self._persist_state()
            return True

    # -- subscriptions -----------------------------------------------------

    def create_subscription(self, edge: SubscriptionEdge) -> SubscriptionEdge:
        with self._data_lock:
            if self._find_subscription(edge.subscriber.id, edge.channel.id):
                raise ConstraintViolation(
                    "subscription already exists",
                    {"subscriber_id": edge.subscriber.id, "channel_id": edge.channel.id},
                )
            self.subscriptions.append(edge)
            self._persist_state()
            return edge

    def _find_subscription(
        self, subscriber_id: str, channel_id: str
    ) -> Optional[SubscriptionEdge]:
        return next(
            (
                edge
                for edge in self.subscriptions
                if edge.subscriber.id == subscriber_id and edge.channel.id == channel_id
            ),
            None,
        )

    def get_subscription(
        self, subscriber_id: str, channel_id: str
    ) -> Optional[SubscriptionEdge]:
        with self._data_lock:
            return self._find_subscription(subscriber_id, channel_id)

    def delete_subscription(self, subscriber_id: str, channel_id: str) -> bool:
        with self._data_lock:
            edge = self._find_subscription(subscriber_id, channel_id)
            if not edge:
                return False
            self.subscriptions.remove(edge)
            self._persist_state()
            return True

    def list_subscriptions(
        self, subscriber_id: str, *, offset: int = 0, limit: int = 10
    ) -> Tuple[List[SubscriptionEdge], int]:
        with self._data_lock:
            matches = [
                e for e in reversed(self.subscriptions) if e.subscriber.id == subscriber_id
            ]
            return matches[offset : offset + limit], len(matches)

    def list_subscribers(
        self, channel_id: str, *, offset: int = 0, limit: int = 10
    ) -> Tuple[List[SubscriptionEdge], int]:
        with self._data_lock:
            matches = [e for e in reversed(self.subscriptions) if e.channel.id == channel_id]
            return matches[offset : offset + limit], len(matches)

    def count_subscribers(self, channel_id: str) -> int:
        with self._data_lock:
            return sum(1 for e in self.subscriptions if e.channel.id == channel_id)

    def count_subscriptions(self, subscriber_id: str) -> int:
        with self._data_lock:
            return sum(1 for e in self.subscriptions if e.subscriber.id == subscriber_id)

    # -- reactions ---------------------------------------------------------

    def get_reaction(self, user_id: str, video_id: str) -> Optional[ReactionType]:
        with self._data_lock:
            reaction = self.reactions.get((user_id, video_id))
            return reaction.type if reaction else None

    def apply_reaction(
        self, user_id: str, video_id: str, action: ReactionType
    ) -> Optional[ReactionType]:
        """Apply a like/dislike toggle and return the resulting state."""
        with self._data_lock:
            key = (user_id, video_id)
            existing = self.reactions.get(key)
            target = next_reaction(existing.type if existing else None, action)
            now = utcnow()
            if target is None:
                self.reactions.pop(key, None)
            elif existing:
                existing.type = target
                existing.updated_at = now
            else:
                self.reactions[key] = Reaction(
                    user_id=user_id, video_id=video_id, type=target, created_at=now, updated_at=now
                )
            self._persist_state()
            return target

    def count_reactions(self, video_id: str) -> ReactionCounts:
        with self._data_lock:
            counts = ReactionCounts()
            for (_, vid), reaction in self.reactions.items():
                if vid != video_id:
                    continue
                if reaction.type == ReactionType.LIKE:
                    counts.likes += 1
                else:
                    counts.dislikes += 1
            return counts

    def list_liked_videos(
        self, user_id: str, *, offset: int = 0, limit: int = 10
    ) -> Tuple[List[Video], int]:
        with self._data_lock:
            matches = [
                r
                for r in self.reactions.values()
                if r.user_id == user_id and r.type == ReactionType.LIKE
            ]
            # ties on updated_at fall back to insertion order
            likes = [
                r
                for _, r in sorted(
                    enumerate(matches),
                    key=lambda pair: (pair[1].updated_at, pair[0]),
                    reverse=True,
                )
            ]
            window = likes[offset : offset + limit]
            return self.get_videos([r.video_id for r in window]), len(likes)

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": password_hash}
                for user_id, password_hash in self.credentials.items()
            ],
            "refresh_digests": [
                {"user_id": user_id, "digest": digest}
                for user_id, digest in self.refresh_digests.items()
            ],
            "videos": [self._serialize_video(v) for v in self.videos.values()],
            "subscriptions": [self._serialize_edge(e) for e in self.subscriptions],
            "reactions": [self._serialize_reaction(r) for r in self.reactions.values()],
            "oauth_states": [
                {"state": state, "expires_at": self._serialize_datetime(expires_at)}
                for state, expires_at in self.oauth_states.items()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: entry["password_hash"]
            for entry in data.get("credentials", [])
        }
        self.refresh_digests = {
            entry["user_id"]: entry["digest"] for entry in data.get("refresh_digests", [])
        }
        self.videos = {v["id"]: self._deserialize_video(v) for v in data.get("videos", [])}
        self.subscriptions = [
            self._deserialize_edge(e) for e in data.get("subscriptions", [])
        ]
        self.reactions = {}
        for entry in data.get("reactions", []):
            reaction = self._deserialize_reaction(entry)
            self.reactions[(reaction.user_id, reaction.video_id)] = reaction
        self.oauth_states = {
            entry["state"]: self._deserialize_datetime(entry["expires_at"])
            for entry in data.get("oauth_states", [])
        }
        self.logger.info(
            "memory_store_loaded", users=len(self.users), videos=len(self.videos)
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "full_name": user.full_name,
            "avatar": user.avatar,
            "cover_image": user.cover_image,
            "description": user.description,
            "role": user.role.value,
            "auth_provider": user.auth_provider.value,
            "google_id": user.google_id,
            "is_verified": user.is_verified,
            "otp": (
                {
                    "code": user.otp.code,
                    "expires_at": self._serialize_datetime(user.otp.expires_at),
                }
                if user.otp
                else None
            ),
            "watch_history": list(user.watch_history),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        otp = data.get("otp")
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            full_name=data.get("full_name", ""),
            avatar=data.get("avatar", ""),
            cover_image=data.get("cover_image") or "",
            description=data.get("description") or "",
            role=Role(data.get("role", "user")),
            auth_provider=AuthProvider(data.get("auth_provider", "local")),
            google_id=data.get("google_id"),
            is_verified=data.get("is_verified", False),
            otp=(
                OtpChallenge(
                    code=otp["code"],
                    expires_at=self._deserialize_datetime(otp["expires_at"]),
                )
                if otp
                else None
            ),
            watch_history=list(data.get("watch_history", [])),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_video(self, video: Video) -> dict:
        return {
            "id": video.id,
            "owner_id": video.owner_id,
            "title": video.title,
            "description": video.description,
            "video_url": video.video_url,
            "thumbnail": video.thumbnail,
            "views": video.views,
            "created_at": self._serialize_datetime(video.created_at),
        }

    def _deserialize_video(self, data: dict) -> Video:
        return Video(
            id=data["id"],
            owner_id=data["owner_id"],
            title=data.get("title", ""),
            description=data.get("description") or "",
            video_url=data.get("video_url") or "",
            thumbnail=data.get("thumbnail") or "",
            views=int(data.get("views", 0)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_edge(self, edge: SubscriptionEdge) -> dict:
        return {
            "id": edge.id,
            "subscriber": dataclasses.asdict(edge.subscriber),
            "channel": dataclasses.asdict(edge.channel),
            "created_at": self._serialize_datetime(edge.created_at),
        }

    def _deserialize_edge(self, data: dict) -> SubscriptionEdge:
        return SubscriptionEdge(
            id=data["id"],
            subscriber=UserSnapshot(**data["subscriber"]),
            channel=UserSnapshot(**data["channel"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_reaction(self, reaction: Reaction) -> dict:
        return {
            "user_id": reaction.user_id,
            "video_id": reaction.video_id,
            "type": reaction.type.value,
            "created_at": self._serialize_datetime(reaction.created_at),
            "updated_at": self._serialize_datetime(reaction.updated_at),
        }

    def _deserialize_reaction(self, data: dict) -> Reaction:
        return Reaction(
            user_id=data["user_id"],
            video_id=data["video_id"],
            type=ReactionType(data["type"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )
