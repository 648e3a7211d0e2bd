"""
MCP Server for ChatRelay.

Exposes the store-backed history, mark-read and directory operations as
Tools. Mounted onto the FastAPI app via SSE transport.
"""
import logging
from typing import Any

import mcp.types as types
from mcp.server import Server

from chatrelay.db.database import get_db
from chatrelay.tools.dispatch import dispatch_tool

logger = logging.getLogger(__name__)

# Create the MCP server instance
server = Server("ChatRelay")

_TOKEN = {"type": "string", "description": "Bearer token returned when the user was created."}
_CHANNEL = {
    "type": "object",
    "description": 'Exactly one of {"direct": peer_user_id}, {"group": group_id}, {"room": name}.',
    "properties": {
        "direct": {"type": "string"},
        "group": {"type": "string"},
        "room": {"type": "string"},
    },
}


# ═════════════════════════════════════════════
# TOOLS
# ═════════════════════════════════════════════

@server.list_tools()
async def list_tools() -> list[types.Tool]:
    return [
        types.Tool(
            name="relay_get_config",
            description="Get the relay's public configuration (endpoint, typing timeout, presence scope, history limits).",
            inputSchema={"type": "object", "properties": {}},
        ),

        # ── History ───────────────────────────
        types.Tool(
            name="chat_history",
            description=(
                "Fetch one page of a channel's message history, oldest first. "
                "offset=0 is the most recent page."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "token":   _TOKEN,
                    "channel": _CHANNEL,
                    "limit":   {"type": "integer", "default": 50, "description": "Page size (clamped to the server maximum)."},
                    "offset":  {"type": "integer", "default": 0},
                },
                "required": ["token", "channel"],
            },
        ),
        types.Tool(
            name="chat_mark_read",
            description="Mark every message addressed to the caller in a channel as delivered and read.",
            inputSchema={
                "type": "object",
                "properties": {"token": _TOKEN, "channel": _CHANNEL},
                "required": ["token", "channel"],
            },
        ),

        # ── Directory ─────────────────────────
        types.Tool(
            name="contacts_list",
            description="List the caller's contacts (explicit contacts plus everyone in the same organization).",
            inputSchema={
                "type": "object",
                "properties": {"token": _TOKEN},
                "required": ["token"],
            },
        ),
        types.Tool(
            name="group_members",
            description="List the members of a group the caller belongs to, with their admin flag.",
            inputSchema={
                "type": "object",
                "properties": {"token": _TOKEN, "group_id": {"type": "string"}},
                "required": ["token", "group_id"],
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.Content]:
    db = await get_db()
    return await dispatch_tool(db, name, arguments)
