"""
CRUD operations for ChatRelay.
All functions are async and receive the aiosqlite connection from the caller.
"""
import uuid
import secrets
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from chatrelay.db.models import (
    Channel, DirectChannel, Group, GroupChannel, Message, Room, UserIdentity,
)
from chatrelay.config import HISTORY_DEFAULT_LIMIT, HISTORY_MAX_LIMIT

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


# ─────────────────────────────────────────────
# Sequence counter (global)
# ─────────────────────────────────────────────

async def next_seq(db: aiosqlite.Connection) -> int:
    """Atomically increment and return the next global sequence number.

    NOTE: This function commits internally. That is safe with the single
    shared connection; a message whose insert later fails just leaves a
    gap in the sequence, which history ordering tolerates.
    """
    async with db.execute(
        "UPDATE seq_counter SET val = val + 1 WHERE id = 1 RETURNING val"
    ) as cur:
        row = await cur.fetchone()
    await db.commit()
    return row["val"]


# ─────────────────────────────────────────────
# User directory
# ─────────────────────────────────────────────

async def user_create(
    db: aiosqlite.Connection,
    display_name: str,
    organization_id: str,
) -> tuple[UserIdentity, str]:
    """Create a user and return it with a fresh bearer token."""
    display_name = display_name.strip()
    organization_id = organization_id.strip()
    if not display_name:
        raise ValueError("display_name must not be empty")
    if not organization_id:
        raise ValueError("organization_id must not be empty")

    uid = str(uuid.uuid4())
    token = secrets.token_hex(32)
    await db.execute(
        "INSERT INTO users (id, display_name, organization_id, token, created_at) VALUES (?, ?, ?, ?, ?)",
        (uid, display_name, organization_id, token, _now()),
    )
    await db.commit()
    logger.info(f"User created: {uid} '{display_name}' org={organization_id}")
    return UserIdentity(id=uid, display_name=display_name, organization_id=organization_id), token


async def user_get(db: aiosqlite.Connection, user_id: str) -> Optional[UserIdentity]:
    async with db.execute("SELECT * FROM users WHERE id = ?", (user_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_user(row)


async def resolve_identity(db: aiosqlite.Connection, token: str) -> Optional[UserIdentity]:
    if not token:
        return None
    async with db.execute("SELECT * FROM users WHERE token = ?", (token,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_user(row)


async def contact_add(db: aiosqlite.Connection, user_id: str, contact_id: str) -> None:
    """Link two users as contacts in both directions (idempotent)."""
    if user_id == contact_id:
        raise ValueError("A user cannot be their own contact")
    for uid in (user_id, contact_id):
        if await user_get(db, uid) is None:
            raise ValueError(f"Unknown user '{uid}'")
    now = _now()
    await db.executemany(
        "INSERT OR IGNORE INTO user_contacts (user_id, contact_id, created_at) VALUES (?, ?, ?)",
        [(user_id, contact_id, now), (contact_id, user_id, now)],
    )
    await db.commit()


async def list_contacts(db: aiosqlite.Connection, user_id: str) -> list[UserIdentity]:
    """Explicit contacts plus every other user of the same organization."""
    async with db.execute(
        """
        SELECT u.* FROM users u
        WHERE u.id != ?
          AND (u.organization_id = (SELECT organization_id FROM users WHERE id = ?)
               OR u.id IN (SELECT contact_id FROM user_contacts WHERE user_id = ?))
        ORDER BY u.display_name ASC
        """,
        (user_id, user_id, user_id),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_user(r) for r in rows]


def _row_to_user(row: aiosqlite.Row) -> UserIdentity:
    return UserIdentity(
        id=row["id"],
        display_name=row["display_name"],
        organization_id=row["organization_id"],
    )


# ─────────────────────────────────────────────
# Groups
# ─────────────────────────────────────────────

async def group_create(
    db: aiosqlite.Connection,
    name: str,
    created_by: str,
    member_ids: Optional[list[str]] = None,
) -> Group:
    """Create a group in the creator's organization. The creator becomes an admin member."""
    name = name.strip()
    if not name:
        raise ValueError("Group name must not be empty")
    creator = await user_get(db, created_by)
    if creator is None:
        raise ValueError(f"Unknown user '{created_by}'")

    gid = str(uuid.uuid4())
    now = _now()
    await db.execute(
        "INSERT INTO chat_groups (id, name, organization_id, created_by, created_at) VALUES (?, ?, ?, ?, ?)",
        (gid, name, creator.organization_id, created_by, now),
    )
    await db.execute(
        "INSERT INTO group_members (group_id, user_id, is_admin, joined_at) VALUES (?, ?, 1, ?)",
        (gid, created_by, now),
    )
    await db.commit()
    for uid in member_ids or []:
        if uid != created_by:
            await group_add_member(db, gid, uid)
    logger.info(f"Group created: {gid} '{name}' by {created_by}")
    return Group(id=gid, name=name, organization_id=creator.organization_id,
                 created_by=created_by, created_at=_parse_dt(now))


async def group_get(db: aiosqlite.Connection, group_id: str) -> Optional[Group]:
    async with db.execute("SELECT * FROM chat_groups WHERE id = ?", (group_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return Group(
        id=row["id"],
        name=row["name"],
        organization_id=row["organization_id"],
        created_by=row["created_by"],
        created_at=_parse_dt(row["created_at"]),
    )


async def group_add_member(
    db: aiosqlite.Connection,
    group_id: str,
    user_id: str,
    is_admin: bool = False,
) -> None:
    if await group_get(db, group_id) is None:
        raise ValueError(f"Unknown group '{group_id}'")
    if await user_get(db, user_id) is None:
        raise ValueError(f"Unknown user '{user_id}'")
    await db.execute(
        "INSERT OR IGNORE INTO group_members (group_id, user_id, is_admin, joined_at) VALUES (?, ?, ?, ?)",
        (group_id, user_id, int(is_admin), _now()),
    )
    if is_admin:
        await db.execute(
            "UPDATE group_members SET is_admin = 1 WHERE group_id = ? AND user_id = ?",
            (group_id, user_id),
        )
    await db.commit()


async def list_group_members(db: aiosqlite.Connection, group_id: str) -> list[UserIdentity]:
    async with db.execute(
        """
        SELECT u.* FROM group_members gm
        JOIN users u ON u.id = gm.user_id
        WHERE gm.group_id = ?
        ORDER BY gm.joined_at ASC
        """,
        (group_id,),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_user(r) for r in rows]


async def list_group_admins(db: aiosqlite.Connection, group_id: str) -> list[UserIdentity]:
    async with db.execute(
        """
        SELECT u.* FROM group_members gm
        JOIN users u ON u.id = gm.user_id
        WHERE gm.group_id = ? AND gm.is_admin = 1
        ORDER BY gm.joined_at ASC
        """,
        (group_id,),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_user(r) for r in rows]


async def is_group_member(db: aiosqlite.Connection, group_id: str, user_id: str) -> bool:
    async with db.execute(
        "SELECT 1 FROM group_members WHERE group_id = ? AND user_id = ?",
        (group_id, user_id),
    ) as cur:
        row = await cur.fetchone()
    return row is not None


async def can_read_channel(db: aiosqlite.Connection, user_id: str, channel: Channel) -> bool:
    """History access check for the request/response surfaces. Rooms are open."""
    if isinstance(channel, DirectChannel):
        return user_id in (channel.user_a, channel.user_b)
    if isinstance(channel, GroupChannel):
        return await is_group_member(db, channel.group_id, user_id)
    return True


# ─────────────────────────────────────────────
# Message CRUD
# ─────────────────────────────────────────────

async def insert_message(db: aiosqlite.Connection, message: Message) -> str:
    """Persist a message and return its id.

    A retried send carrying the same (sender, client_message_id) is stored
    once; the id of the existing row is returned instead.
    """
    # Strategy: try INSERT first, if the UNIQUE index rejects it then SELECT the existing row.
    seq = await next_seq(db)
    try:
        await db.execute(
            "INSERT INTO chat_messages (id, kind, sender_id, receiver_id, group_id, room, body, message_type, "
            "client_message_id, seq, created_at, is_delivered, is_read, read_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                message.id, message.kind, message.sender_id, message.receiver_id, message.group_id,
                message.room, message.body, message.message_type, message.client_message_id, seq,
                message.created_at.isoformat(), int(message.is_delivered), int(message.is_read),
                message.read_at.isoformat() if message.read_at else None,
            ),
        )
        await db.commit()
    except sqlite3.IntegrityError:
        if not message.client_message_id:
            raise
        async with db.execute(
            "SELECT id FROM chat_messages WHERE sender_id = ? AND client_message_id = ?",
            (message.sender_id, message.client_message_id),
        ) as cur:
            row = await cur.fetchone()
        if row is None:
            raise
        logger.info(f"Duplicate send {message.client_message_id} from {message.sender_id}, keeping {row['id']}")
        return row["id"]
    message.seq = seq
    logger.debug(f"Message stored: seq={seq} id={message.id} kind={message.kind} sender={message.sender_id}")
    return message.id


async def get_message(db: aiosqlite.Connection, message_id: str) -> Optional[Message]:
    async with db.execute(
        "SELECT m.*, u.display_name AS sender_name FROM chat_messages m "
        "LEFT JOIN users u ON u.id = m.sender_id WHERE m.id = ?",
        (message_id,),
    ) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_message(row)


async def update_delivery_flags(
    db: aiosqlite.Connection,
    message_id: str,
    delivered: bool,
    read: bool,
    read_at: Optional[datetime] = None,
) -> bool:
    """Raise the delivered/read flags of a message.

    Flags only move from false to true and `read_at` keeps its first value,
    so calling this repeatedly converges on the same row.
    Returns False if the message does not exist.
    """
    if read and read_at is None:
        read_at = datetime.now(timezone.utc)
    async with db.execute(
        "UPDATE chat_messages SET is_delivered = MAX(is_delivered, ?), is_read = MAX(is_read, ?), "
        "read_at = COALESCE(read_at, ?) WHERE id = ?",
        (int(delivered), int(read), read_at.isoformat() if read and read_at else None, message_id),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    return updated > 0


def _channel_filter(channel: Channel) -> tuple[str, tuple]:
    if isinstance(channel, DirectChannel):
        return (
            "m.kind = 'direct' AND ((m.sender_id = ? AND m.receiver_id = ?) OR (m.sender_id = ? AND m.receiver_id = ?))",
            (channel.user_a, channel.user_b, channel.user_b, channel.user_a),
        )
    if isinstance(channel, GroupChannel):
        return "m.kind = 'group' AND m.group_id = ?", (channel.group_id,)
    if isinstance(channel, Room):
        return "m.kind = 'room' AND m.room = ?", (channel.name,)
    raise ValueError(f"Unsupported channel {channel!r}")


async def fetch_history(
    db: aiosqlite.Connection,
    channel: Channel,
    limit: int = HISTORY_DEFAULT_LIMIT,
    offset: int = 0,
) -> list[Message]:
    """Return one page of a channel's history, oldest first.

    Pages are counted from the newest message backwards: offset=0 is the
    most recent page.
    """
    limit = max(1, min(int(limit), HISTORY_MAX_LIMIT))
    offset = max(0, int(offset))
    where, params = _channel_filter(channel)
    async with db.execute(
        f"SELECT m.*, u.display_name AS sender_name FROM chat_messages m "
        f"LEFT JOIN users u ON u.id = m.sender_id WHERE {where} "
        f"ORDER BY m.seq DESC LIMIT ? OFFSET ?",
        (*params, limit, offset),
    ) as cur:
        rows = await cur.fetchall()
    msgs = [_row_to_message(r) for r in rows]
    msgs.reverse()
    return msgs


async def mark_channel_read(
    db: aiosqlite.Connection,
    channel: Channel,
    reader_id: str,
    read_at: Optional[datetime] = None,
) -> list[tuple[str, str]]:
    """Mark every message addressed to `reader_id` in the channel delivered and read.

    Returns (message_id, sender_id) for each row that changed.
    """
    read_at = read_at or datetime.now(timezone.utc)
    if isinstance(channel, DirectChannel):
        where = "kind = 'direct' AND sender_id = ? AND receiver_id = ?"
        params = (channel.peer_of(reader_id), reader_id)
    elif isinstance(channel, GroupChannel):
        where = "kind = 'group' AND group_id = ? AND sender_id != ?"
        params = (channel.group_id, reader_id)
    elif isinstance(channel, Room):
        where = "kind = 'room' AND room = ? AND sender_id != ?"
        params = (channel.name, reader_id)
    else:
        raise ValueError(f"Unsupported channel {channel!r}")

    async with db.execute(
        f"UPDATE chat_messages SET is_delivered = 1, is_read = 1, read_at = COALESCE(read_at, ?) "
        f"WHERE {where} AND (is_delivered = 0 OR is_read = 0) RETURNING id, sender_id",
        (read_at.isoformat(), *params),
    ) as cur:
        rows = await cur.fetchall()
    await db.commit()
    changed = [(r["id"], r["sender_id"]) for r in rows]
    logger.debug(f"mark_channel_read: {len(changed)} message(s) in {channel.key} read by {reader_id}")
    return changed


def _row_to_message(row: aiosqlite.Row) -> Message:
    sender_name = row["sender_name"] if "sender_name" in row.keys() else None
    return Message(
        id=row["id"],
        kind=row["kind"],
        sender_id=row["sender_id"],
        receiver_id=row["receiver_id"],
        group_id=row["group_id"],
        room=row["room"],
        body=row["body"],
        message_type=row["message_type"],
        client_message_id=row["client_message_id"],
        seq=row["seq"],
        created_at=_parse_dt(row["created_at"]),
        is_delivered=bool(row["is_delivered"]),
        is_read=bool(row["is_read"]),
        read_at=_parse_dt(row["read_at"]) if row["read_at"] else None,
        sender_name=sender_name,
    )
