"""
Tool handlers for the ChatRelay MCP server.
Every handler takes the shared db connection and the raw tool arguments and
returns JSON-encoded TextContent. Errors are reported as {"error": ...}.
"""
import json
import logging
from typing import Any

import mcp.types as types

from chatrelay.config import HOST, PORT, RELAY_VERSION, HISTORY_DEFAULT_LIMIT, get_config_dict
from chatrelay.db import crud
from chatrelay.db.models import UserIdentity
from chatrelay.relay.errors import MalformedEvent
from chatrelay.relay.protocol import MessagePayload, parse_channel_ref

logger = logging.getLogger(__name__)


def _text(payload: Any) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(payload))]


def _error(message: str) -> list[types.TextContent]:
    return _text({"error": message})


async def _caller(db, arguments: dict[str, Any]) -> UserIdentity | None:
    return await crud.resolve_identity(db, arguments.get("token") or "")


async def handle_relay_get_config(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    return _text({
        **get_config_dict(),
        "relay_name": "ChatRelay",
        "version": RELAY_VERSION,
        "endpoint": f"http://{HOST}:{PORT}",
        "websocket": f"ws://{HOST}:{PORT}/ws",
    })


async def handle_chat_history(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    user = await _caller(db, arguments)
    if user is None:
        return _error("Invalid token")
    try:
        channel = parse_channel_ref(arguments.get("channel")).resolve(user.id)
    except MalformedEvent as e:
        return _error(str(e))
    if not await crud.can_read_channel(db, user.id, channel):
        return _error(f"No access to {channel.key}")
    msgs = await crud.fetch_history(
        db, channel,
        limit=arguments.get("limit", HISTORY_DEFAULT_LIMIT),
        offset=arguments.get("offset", 0),
    )
    return _text([MessagePayload.from_message(m).model_dump(mode="json") for m in msgs])


async def handle_chat_mark_read(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    user = await _caller(db, arguments)
    if user is None:
        return _error("Invalid token")
    try:
        channel = parse_channel_ref(arguments.get("channel")).resolve(user.id)
    except MalformedEvent as e:
        return _error(str(e))
    if not await crud.can_read_channel(db, user.id, channel):
        return _error(f"No access to {channel.key}")
    changed = await crud.mark_channel_read(db, channel, user.id)
    return _text({"ok": True, "message_ids": [mid for mid, _ in changed]})


async def handle_contacts_list(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    user = await _caller(db, arguments)
    if user is None:
        return _error("Invalid token")
    contacts = await crud.list_contacts(db, user.id)
    return _text([
        {"id": c.id, "display_name": c.display_name, "organization_id": c.organization_id}
        for c in contacts
    ])


async def handle_group_members(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    user = await _caller(db, arguments)
    if user is None:
        return _error("Invalid token")
    group_id = arguments.get("group_id", "")
    if not await crud.is_group_member(db, group_id, user.id):
        return _error(f"Not a member of group '{group_id}'")
    admin_ids = {a.id for a in await crud.list_group_admins(db, group_id)}
    members = await crud.list_group_members(db, group_id)
    return _text([
        {"id": m.id, "display_name": m.display_name, "is_admin": m.id in admin_ids}
        for m in members
    ])


TOOLS_DISPATCH = {
    "relay_get_config": handle_relay_get_config,
    "chat_history": handle_chat_history,
    "chat_mark_read": handle_chat_mark_read,
    "contacts_list": handle_contacts_list,
    "group_members": handle_group_members,
}


async def dispatch_tool(db, name: str, arguments: dict[str, Any]) -> list[types.Content]:
    handler = TOOLS_DISPATCH.get(name)
    if handler:
        return await handler(db, arguments or {})
    logger.warning(f"Unknown tool requested: {name}")
    return _error(f"Unknown tool: {name}")
