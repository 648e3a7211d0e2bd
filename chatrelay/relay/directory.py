"""
Store adapters used by the relay.

Both wrap the CRUD functions around the shared aiosqlite connection and turn
any sqlite failure into StoreUnavailable, so the relay only has to deal with
its own error taxonomy.
"""
import functools
import logging
import sqlite3
from datetime import datetime
from typing import Optional

import aiosqlite

from chatrelay.db import crud
from chatrelay.db.models import Channel, Message, UserIdentity
from chatrelay.relay.errors import StoreUnavailable

logger = logging.getLogger(__name__)


def _guarded(fn):
    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        # aiosqlite raises ValueError once its connection is closed.
        try:
            return await fn(self, *args, **kwargs)
        except (sqlite3.Error, ValueError) as exc:
            logger.error(f"{type(self).__name__}.{fn.__name__} failed: {type(exc).__name__}: {exc}")
            raise StoreUnavailable(f"{fn.__name__}: {exc}") from exc
    return wrapper


class UserDirectory:
    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    @_guarded
    async def resolve_identity(self, token: str) -> Optional[UserIdentity]:
        return await crud.resolve_identity(self._db, token)

    @_guarded
    async def get_user(self, user_id: str) -> Optional[UserIdentity]:
        return await crud.user_get(self._db, user_id)

    @_guarded
    async def list_contacts(self, user_id: str) -> list[UserIdentity]:
        return await crud.list_contacts(self._db, user_id)

    @_guarded
    async def list_group_members(self, group_id: str) -> list[UserIdentity]:
        return await crud.list_group_members(self._db, group_id)

    @_guarded
    async def is_group_member(self, group_id: str, user_id: str) -> bool:
        return await crud.is_group_member(self._db, group_id, user_id)


class MessageStore:
    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    @_guarded
    async def insert_message(self, message: Message) -> str:
        return await crud.insert_message(self._db, message)

    @_guarded
    async def get_message(self, message_id: str) -> Optional[Message]:
        return await crud.get_message(self._db, message_id)

    @_guarded
    async def update_delivery_flags(
        self,
        message_id: str,
        delivered: bool,
        read: bool,
        read_at: Optional[datetime] = None,
    ) -> bool:
        return await crud.update_delivery_flags(self._db, message_id, delivered, read, read_at)

    @_guarded
    async def fetch_history(self, channel: Channel, limit: int, offset: int = 0) -> list[Message]:
        return await crud.fetch_history(self._db, channel, limit=limit, offset=offset)

    @_guarded
    async def mark_channel_read(
        self,
        channel: Channel,
        reader_id: str,
        read_at: Optional[datetime] = None,
    ) -> list[tuple[str, str]]:
        return await crud.mark_channel_read(self._db, channel, reader_id, read_at=read_at)
