from __future__ import annotations

import json
import sqlite3
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .config import EngineConfig
from .errors import DuplicateInvitation, InvitationNotFound, MessageNotFound, PermissionDenied, RoomNotFound
from .limits import FixedWindowRateLimiter
from .models import (
    MESSAGE_ID_PREFIX,
    REACTION_EMOJIS,
    STATUS_ACCEPTED,
    STATUS_DECLINED,
    STATUS_PENDING,
    THREAD_DM,
    Connection,
    EventRoom,
    Invitation,
    Message,
    Reaction,
    ThreadKey,
    UserProfile,
    _now_ms,
    new_id,
    pair_key,
)
from .sqlite_backend import SQLiteBackend
from .store import EVENT_ID_PREFIX, INVITATION_ID_PREFIX, _validate_invitation_request, validate_content

_INVITATION_COLUMNS = "invitation_id, sender_id, receiver_id, activity, status, created_at_ms, resolved_at_ms"
_ROOM_COLUMNS = "event_id, title, category, host_id, created_at_ms, starts_at_ms, duration_minutes, is_private"
_MESSAGE_COLUMNS = "message_id, thread_type, thread_id, sender_id, content, created_at_ms, client_token"
_REACTION_COLUMNS = "message_id, thread_type, thread_id, user_id, emoji, created_at_ms"


def _invitation_from_row(row: sqlite3.Row) -> Invitation:
    return Invitation(
        invitation_id=row["invitation_id"],
        sender_id=row["sender_id"],
        receiver_id=row["receiver_id"],
        activity=row["activity"],
        status=row["status"],
        created_at_ms=row["created_at_ms"],
        resolved_at_ms=row["resolved_at_ms"],
    )


def _room_from_row(row: sqlite3.Row) -> EventRoom:
    return EventRoom(
        event_id=row["event_id"],
        title=row["title"],
        category=row["category"],
        host_id=row["host_id"],
        created_at_ms=row["created_at_ms"],
        starts_at_ms=row["starts_at_ms"],
        duration_minutes=row["duration_minutes"],
        is_private=bool(row["is_private"]),
    )


def _message_from_row(row: sqlite3.Row) -> Message:
    return Message(
        thread=ThreadKey(row["thread_type"], row["thread_id"]),
        sender_id=row["sender_id"],
        content=row["content"],
        created_at_ms=row["created_at_ms"],
        message_id=row["message_id"],
        client_token=row["client_token"],
    )


def _reaction_from_row(row: sqlite3.Row) -> Reaction:
    return Reaction(
        thread=ThreadKey(row["thread_type"], row["thread_id"]),
        message_id=row["message_id"],
        user_id=row["user_id"],
        emoji=row["emoji"],
        created_at_ms=row["created_at_ms"],
    )


class SQLiteRowStore:
    """Durable row store; same contract as :class:`InMemoryRowStore`."""

    def __init__(
        self,
        backend: SQLiteBackend,
        config: EngineConfig | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._backend = backend
        self.config = config or EngineConfig()
        self._now = now_func
        self._accept_limits = FixedWindowRateLimiter(self.config.accepts_per_min)
        self._invite_limits = FixedWindowRateLimiter(self.config.invites_per_min)

    def now_ms(self) -> int:
        return self._now()

    # profiles

    def put_profile(self, profile: UserProfile) -> None:
        avatar_json = json.dumps(profile.avatar) if profile.avatar is not None else None
        with self._backend.lock:
            self._backend.connection.execute(
                """
                INSERT INTO profiles (user_id, display_name, avatar_json) VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET display_name=excluded.display_name, avatar_json=excluded.avatar_json
                """,
                (profile.user_id, profile.display_name, avatar_json),
            )

    def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"SELECT user_id, display_name, avatar_json FROM profiles WHERE user_id IN ({placeholders})",
                ids,
            ).fetchall()
        return {
            row["user_id"]: UserProfile(
                user_id=row["user_id"],
                display_name=row["display_name"],
                avatar=json.loads(row["avatar_json"]) if row["avatar_json"] else None,
            )
            for row in rows
        }

    # invitations

    def create_invitation(self, sender_id: str, receiver_id: str, activity: str) -> Invitation:
        _validate_invitation_request(sender_id, receiver_id, activity)
        now_ms = self._now()
        invitation = Invitation(
            invitation_id=new_id(INVITATION_ID_PREFIX),
            sender_id=sender_id,
            receiver_id=receiver_id,
            activity=activity.strip(),
            status=STATUS_PENDING,
            created_at_ms=now_ms,
        )
        lo, hi = pair_key(sender_id, receiver_id)
        with self._backend.lock:
            self._invite_limits.check(sender_id, now_ms, "invitation")
            try:
                self._backend.connection.execute(
                    """
                    INSERT INTO invitations
                        (invitation_id, sender_id, receiver_id, pair_lo, pair_hi, activity, status, created_at_ms)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        invitation.invitation_id,
                        sender_id,
                        receiver_id,
                        lo,
                        hi,
                        invitation.activity,
                        STATUS_PENDING,
                        now_ms,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateInvitation("a pending or active connection already exists") from exc
        return invitation

    def get_invitation(self, invitation_id: str) -> Invitation:
        with self._backend.lock:
            row = self._select_invitation(invitation_id)
        if row is None:
            raise InvitationNotFound(invitation_id)
        return _invitation_from_row(row)

    def _select_invitation(self, invitation_id: str) -> Optional[sqlite3.Row]:
        return self._backend.connection.execute(
            f"SELECT {_INVITATION_COLUMNS} FROM invitations WHERE invitation_id=?",
            (invitation_id,),
        ).fetchone()

    def list_pending_invitations(self, receiver_id: str) -> List[Invitation]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT {_INVITATION_COLUMNS} FROM invitations
                WHERE receiver_id=? AND status=?
                ORDER BY created_at_ms DESC, invitation_id ASC
                """,
                (receiver_id, STATUS_PENDING),
            ).fetchall()
        return [_invitation_from_row(row) for row in rows]

    def accept_invitation(self, invitation_id: str, actor_id: str) -> Invitation:
        now_ms = self._now()
        with self._backend.lock:
            self._accept_limits.check(actor_id, now_ms, "accept")
            return self._resolve(invitation_id, actor_id, STATUS_ACCEPTED, now_ms)

    def decline_invitation(self, invitation_id: str, actor_id: str) -> Invitation:
        with self._backend.lock:
            return self._resolve(invitation_id, actor_id, STATUS_DECLINED, self._now())

    def _resolve(self, invitation_id: str, actor_id: str, status: str, now_ms: int) -> Invitation:
        conn = self._backend.connection
        cursor = conn.cursor()
        try:
            cursor.execute("BEGIN IMMEDIATE")
            row = cursor.execute(
                f"SELECT {_INVITATION_COLUMNS} FROM invitations WHERE invitation_id=?",
                (invitation_id,),
            ).fetchone()
            if row is None:
                raise InvitationNotFound(invitation_id)
            invitation = _invitation_from_row(row)
            if invitation.receiver_id != actor_id:
                raise PermissionDenied("only the receiver can resolve an invitation")
            resolved = invitation.transition(status, now_ms)
            cursor.execute(
                "UPDATE invitations SET status=?, resolved_at_ms=? WHERE invitation_id=? AND status=?",
                (status, now_ms, invitation_id, STATUS_PENDING),
            )
            conn.commit()
            return resolved
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()

    # connections

    def list_connections(self, user_id: str) -> List[Connection]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT {_INVITATION_COLUMNS} FROM invitations
                WHERE status=? AND (sender_id=? OR receiver_id=?)
                ORDER BY invitation_id ASC
                """,
                (STATUS_ACCEPTED, user_id, user_id),
            ).fetchall()
        return [Connection.from_invitation(_invitation_from_row(row), user_id) for row in rows]

    def remove_connection(self, invitation_id: str, actor_id: str) -> Invitation:
        with self._backend.lock:
            row = self._select_invitation(invitation_id)
            if row is None:
                raise InvitationNotFound(invitation_id)
            invitation = _invitation_from_row(row)
            if not invitation.involves(actor_id):
                raise PermissionDenied("not a party to this connection")
            self._backend.connection.execute("DELETE FROM invitations WHERE invitation_id=?", (invitation_id,))
        return invitation

    # event rooms

    def create_event_room(
        self,
        host_id: str,
        title: str,
        category: str,
        *,
        duration_minutes: int = 60,
        starts_at_ms: Optional[int] = None,
        is_private: bool = False,
    ) -> EventRoom:
        now_ms = self._now()
        room = EventRoom(
            event_id=new_id(EVENT_ID_PREFIX),
            title=title,
            category=category,
            host_id=host_id,
            created_at_ms=now_ms,
            starts_at_ms=now_ms if starts_at_ms is None else starts_at_ms,
            duration_minutes=duration_minutes,
            is_private=is_private,
        )
        with self._backend.lock:
            self._backend.connection.execute(
                f"INSERT INTO event_rooms ({_ROOM_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    room.event_id,
                    room.title,
                    room.category,
                    room.host_id,
                    room.created_at_ms,
                    room.starts_at_ms,
                    room.duration_minutes,
                    int(room.is_private),
                ),
            )
        return room

    def join_event_room(self, event_id: str, user_id: str) -> None:
        with self._backend.lock:
            conn = self._backend.connection
            if conn.execute("SELECT 1 FROM event_rooms WHERE event_id=?", (event_id,)).fetchone() is None:
                raise RoomNotFound(event_id)
            if self._banned(event_id, user_id):
                raise PermissionDenied(f"{user_id} is banned from {event_id}")
            conn.execute(
                "INSERT OR IGNORE INTO room_members (event_id, user_id) VALUES (?, ?)",
                (event_id, user_id),
            )

    def leave_event_room(self, event_id: str, user_id: str) -> None:
        with self._backend.lock:
            conn = self._backend.connection
            if conn.execute("SELECT 1 FROM event_rooms WHERE event_id=?", (event_id,)).fetchone() is None:
                raise RoomNotFound(event_id)
            conn.execute(
                "DELETE FROM room_members WHERE event_id=? AND user_id=?",
                (event_id, user_id),
            )

    def _banned(self, event_id: str, user_id: str) -> bool:
        row = self._backend.connection.execute(
            "SELECT 1 FROM room_bans WHERE event_id=? AND user_id=?", (event_id, user_id)
        ).fetchone()
        return row is not None

    def _require_host(self, event_id: str, host_id: str) -> str:
        row = self._backend.connection.execute(
            "SELECT host_id FROM event_rooms WHERE event_id=?", (event_id,)
        ).fetchone()
        if row is None:
            raise RoomNotFound(event_id)
        if row["host_id"] != host_id:
            raise PermissionDenied("only the host can manage bans")
        return row["host_id"]

    def ban_user(self, event_id: str, host_id: str, user_id: str) -> None:
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                if user_id == self._require_host(event_id, host_id):
                    raise ValueError("the host cannot be banned")
                cursor.execute("DELETE FROM room_members WHERE event_id=? AND user_id=?", (event_id, user_id))
                cursor.execute(
                    "INSERT OR IGNORE INTO room_bans (event_id, user_id, banned_at_ms) VALUES (?, ?, ?)",
                    (event_id, user_id, self._now()),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def unban_user(self, event_id: str, host_id: str, user_id: str) -> bool:
        with self._backend.lock:
            self._require_host(event_id, host_id)
            cursor = self._backend.connection.execute(
                "DELETE FROM room_bans WHERE event_id=? AND user_id=?", (event_id, user_id)
            )
            return cursor.rowcount > 0

    def list_bans(self, event_id: str, host_id: str) -> List[str]:
        with self._backend.lock:
            self._require_host(event_id, host_id)
            rows = self._backend.connection.execute(
                "SELECT user_id FROM room_bans WHERE event_id=? ORDER BY banned_at_ms ASC, user_id ASC",
                (event_id,),
            ).fetchall()
        return [row["user_id"] for row in rows]

    def is_banned(self, event_id: str, user_id: str) -> bool:
        with self._backend.lock:
            return self._banned(event_id, user_id)

    def list_event_rooms(self, user_id: str, now_ms: Optional[int] = None) -> List[EventRoom]:
        now_ms = self._now() if now_ms is None else now_ms
        columns = ", ".join(f"r.{name.strip()}" for name in _ROOM_COLUMNS.split(","))
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT DISTINCT {columns} FROM event_rooms r
                LEFT JOIN room_members m ON m.event_id = r.event_id AND m.user_id = ?
                WHERE r.is_private = 0
                  AND r.starts_at_ms + r.duration_minutes * 60000 > ?
                  AND (r.host_id = ? OR m.user_id IS NOT NULL)
                ORDER BY r.event_id ASC
                """,
                (user_id, now_ms, user_id),
            ).fetchall()
        return [_room_from_row(row) for row in rows]

    # messages

    def thread_participants(self, thread: ThreadKey) -> List[str]:
        with self._backend.lock:
            return self._participants(thread)

    def _participants(self, thread: ThreadKey) -> List[str]:
        conn = self._backend.connection
        if thread.thread_type == THREAD_DM:
            row = conn.execute(
                "SELECT sender_id, receiver_id FROM invitations WHERE invitation_id=? AND status=?",
                (thread.thread_id, STATUS_ACCEPTED),
            ).fetchone()
            if row is None:
                return []
            return sorted((row["sender_id"], row["receiver_id"]))
        row = conn.execute("SELECT host_id FROM event_rooms WHERE event_id=?", (thread.thread_id,)).fetchone()
        if row is None:
            return []
        members = {
            member["user_id"]
            for member in conn.execute(
                "SELECT user_id FROM room_members WHERE event_id=?", (thread.thread_id,)
            ).fetchall()
        }
        members.add(row["host_id"])
        banned = {
            ban["user_id"]
            for ban in conn.execute("SELECT user_id FROM room_bans WHERE event_id=?", (thread.thread_id,)).fetchall()
        }
        return sorted(members - banned)

    def _require_access(self, thread: ThreadKey, user_id: str) -> None:
        if user_id not in self._participants(thread):
            raise PermissionDenied(f"no access to thread {thread}")

    def create_message(
        self, thread: ThreadKey, sender_id: str, content: str, client_token: Optional[str] = None
    ) -> Message:
        content = validate_content(content, self.config.max_message_length)
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                self._require_access(thread, sender_id)
                if client_token is not None:
                    row = cursor.execute(
                        f"""
                        SELECT {_MESSAGE_COLUMNS} FROM messages
                        WHERE thread_type=? AND thread_id=? AND client_token=?
                        """,
                        (thread.thread_type, thread.thread_id, client_token),
                    ).fetchone()
                    if row is not None:
                        conn.commit()
                        return _message_from_row(row)
                message = Message(
                    thread=thread,
                    sender_id=sender_id,
                    content=content,
                    created_at_ms=self._now(),
                    message_id=new_id(MESSAGE_ID_PREFIX),
                    client_token=client_token,
                )
                cursor.execute(
                    f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        message.message_id,
                        thread.thread_type,
                        thread.thread_id,
                        sender_id,
                        content,
                        message.created_at_ms,
                        client_token,
                    ),
                )
                conn.commit()
                return message
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def list_messages(self, thread: ThreadKey, viewer_id: str) -> List[Message]:
        with self._backend.lock:
            self._require_access(thread, viewer_id)
            rows = self._backend.connection.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE thread_type=? AND thread_id=?
                ORDER BY created_at_ms ASC, message_id ASC
                """,
                (thread.thread_type, thread.thread_id),
            ).fetchall()
        return [_message_from_row(row) for row in rows]

    def latest_message(self, thread: ThreadKey) -> Optional[Message]:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE thread_type=? AND thread_id=?
                ORDER BY created_at_ms DESC, message_id DESC
                LIMIT 1
                """,
                (thread.thread_type, thread.thread_id),
            ).fetchone()
        return _message_from_row(row) if row is not None else None

    # reactions

    def toggle_reaction(self, thread: ThreadKey, message_id: str, user_id: str, emoji: str) -> Tuple[Reaction, bool]:
        if emoji not in REACTION_EMOJIS:
            raise ValueError(f"unsupported reaction {emoji!r}")
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                self._require_access(thread, user_id)
                found = cursor.execute(
                    "SELECT 1 FROM messages WHERE message_id=? AND thread_type=? AND thread_id=?",
                    (message_id, thread.thread_type, thread.thread_id),
                ).fetchone()
                if found is None:
                    raise MessageNotFound(message_id)
                row = cursor.execute(
                    f"SELECT {_REACTION_COLUMNS} FROM message_reactions WHERE message_id=? AND user_id=? AND emoji=?",
                    (message_id, user_id, emoji),
                ).fetchone()
                if row is not None:
                    cursor.execute(
                        "DELETE FROM message_reactions WHERE message_id=? AND user_id=? AND emoji=?",
                        (message_id, user_id, emoji),
                    )
                    conn.commit()
                    return _reaction_from_row(row), False
                reaction = Reaction(thread, message_id, user_id, emoji, self._now())
                cursor.execute(
                    f"INSERT INTO message_reactions ({_REACTION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                    (message_id, thread.thread_type, thread.thread_id, user_id, emoji, reaction.created_at_ms),
                )
                conn.commit()
                return reaction, True
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def list_reactions(self, thread: ThreadKey, viewer_id: str) -> List[Reaction]:
        with self._backend.lock:
            self._require_access(thread, viewer_id)
            rows = self._backend.connection.execute(
                f"""
                SELECT {_REACTION_COLUMNS} FROM message_reactions
                WHERE thread_type=? AND thread_id=?
                ORDER BY created_at_ms ASC, message_id ASC, user_id ASC, emoji ASC
                """,
                (thread.thread_type, thread.thread_id),
            ).fetchall()
        return [_reaction_from_row(row) for row in rows]

    # read marks

    def mark_read(self, thread: ThreadKey, user_id: str, at_ms: Optional[int] = None) -> None:
        at_ms = self._now() if at_ms is None else at_ms
        with self._backend.lock:
            self._backend.connection.execute(
                """
                INSERT INTO read_marks (user_id, thread_type, thread_id, read_at_ms) VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, thread_type, thread_id)
                DO UPDATE SET read_at_ms=MAX(read_at_ms, excluded.read_at_ms)
                """,
                (user_id, thread.thread_type, thread.thread_id, at_ms),
            )

    def unread_message_ids(self, thread: ThreadKey, user_id: str) -> List[str]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                """
                SELECT message_id FROM messages
                WHERE thread_type=? AND thread_id=? AND sender_id<>?
                  AND created_at_ms > COALESCE(
                      (SELECT read_at_ms FROM read_marks WHERE user_id=? AND thread_type=? AND thread_id=?), 0)
                ORDER BY created_at_ms ASC, message_id ASC
                """,
                (thread.thread_type, thread.thread_id, user_id, user_id, thread.thread_type, thread.thread_id),
            ).fetchall()
        return [row["message_id"] for row in rows]

    def count_unread(self, thread: ThreadKey, user_id: str) -> int:
        with self._backend.lock:
            row = self._backend.connection.execute(
                """
                SELECT COUNT(*) FROM messages
                WHERE thread_type=? AND thread_id=? AND sender_id<>?
                  AND created_at_ms > COALESCE(
                      (SELECT read_at_ms FROM read_marks WHERE user_id=? AND thread_type=? AND thread_id=?), 0)
                """,
                (thread.thread_type, thread.thread_id, user_id, user_id, thread.thread_type, thread.thread_id),
            ).fetchone()
        return int(row[0])

    # mutes

    def list_mutes(self, user_id: str) -> Set[ThreadKey]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                "SELECT thread_type, thread_id FROM mutes WHERE user_id=?", (user_id,)
            ).fetchall()
        return {ThreadKey(row["thread_type"], row["thread_id"]) for row in rows}

    def set_mute(self, user_id: str, thread: ThreadKey, muted: bool) -> None:
        with self._backend.lock:
            if muted:
                self._backend.connection.execute(
                    "INSERT OR IGNORE INTO mutes (user_id, thread_type, thread_id) VALUES (?, ?, ?)",
                    (user_id, thread.thread_type, thread.thread_id),
                )
            else:
                self._backend.connection.execute(
                    "DELETE FROM mutes WHERE user_id=? AND thread_type=? AND thread_id=?",
                    (user_id, thread.thread_type, thread.thread_id),
                )
