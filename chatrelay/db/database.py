"""
SQLite database connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
from pathlib import Path

from chatrelay.config import DB_PATH

logger = logging.getLogger(__name__)

# Module-level connection (single shared connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
                _db = await aiosqlite.connect(DB_PATH)
                _db.row_factory = aiosqlite.Row
                # WAL mode: allows concurrent reads while writing
                await _db.execute("PRAGMA journal_mode=WAL")
                await _db.execute("PRAGMA foreign_keys=ON")
                await init_schema(_db)
                logger.info(f"Database initialized at {DB_PATH}")
    return _db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- User directory
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS users (
            id               TEXT PRIMARY KEY,
            display_name     TEXT NOT NULL,
            organization_id  TEXT NOT NULL,
            token            TEXT NOT NULL UNIQUE,
            created_at       TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_users_org
            ON users(organization_id);

        CREATE TABLE IF NOT EXISTS user_contacts (
            user_id     TEXT NOT NULL REFERENCES users(id),
            contact_id  TEXT NOT NULL REFERENCES users(id),
            created_at  TEXT NOT NULL,
            UNIQUE(user_id, contact_id)
        );

        -- ----------------------------------------------------------------
        -- Chat groups and their rosters
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS chat_groups (
            id               TEXT PRIMARY KEY,
            name             TEXT NOT NULL,
            organization_id  TEXT NOT NULL,
            created_by       TEXT NOT NULL REFERENCES users(id),
            created_at       TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS group_members (
            group_id   TEXT NOT NULL REFERENCES chat_groups(id),
            user_id    TEXT NOT NULL REFERENCES users(id),
            is_admin   INTEGER NOT NULL DEFAULT 0,
            joined_at  TEXT NOT NULL,
            UNIQUE(group_id, user_id)
        );

        -- ----------------------------------------------------------------
        -- Messages: direct (sender/receiver), group (group_id) or room.
        -- No foreign keys on the channel columns: room senders and
        -- receivers are not required to exist in the directory.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS chat_messages (
            id                 TEXT PRIMARY KEY,
            kind               TEXT NOT NULL CHECK (kind IN ('direct', 'group', 'room')),
            sender_id          TEXT NOT NULL,
            receiver_id        TEXT,
            group_id           TEXT,
            room               TEXT,
            body               TEXT NOT NULL,
            message_type       TEXT NOT NULL DEFAULT 'text',
            client_message_id  TEXT,
            seq                INTEGER NOT NULL,
            created_at         TEXT NOT NULL,
            is_delivered       INTEGER NOT NULL DEFAULT 0,
            is_read            INTEGER NOT NULL DEFAULT 0,
            read_at            TEXT
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_client_id
            ON chat_messages(sender_id, client_message_id);
        CREATE INDEX IF NOT EXISTS idx_messages_direct
            ON chat_messages(sender_id, receiver_id, seq);
        CREATE INDEX IF NOT EXISTS idx_messages_group
            ON chat_messages(group_id, seq);
        CREATE INDEX IF NOT EXISTS idx_messages_room
            ON chat_messages(room, seq);

        -- ----------------------------------------------------------------
        -- Sequence counter: single-row table for history ordering
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS seq_counter (
            id  INTEGER PRIMARY KEY CHECK (id = 1),
            val INTEGER NOT NULL DEFAULT 0
        );
        INSERT OR IGNORE INTO seq_counter (id, val) VALUES (1, 0);
    """)
    await db.commit()
    logger.info("Schema initialized.")
