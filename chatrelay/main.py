"""
ChatRelay main entry point.

Starts a FastAPI HTTP server that:
  1. Serves the live relay over a WebSocket at /ws
  2. Provides the request/response API (directory, history, mark-read) under /api
  3. Mounts the MCP Server (SSE + JSON-RPC) at /mcp
"""
import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from mcp.server.sse import SseServerTransport
from pydantic import BaseModel

from chatrelay.config import HOST, PORT, RELAY_VERSION, HISTORY_DEFAULT_LIMIT
from chatrelay.db.database import get_db, close_db
from chatrelay.db import crud
from chatrelay.db.models import Channel, DirectChannel, GroupChannel, Room, UserIdentity
from chatrelay.mcp_server import server as mcp_server
from chatrelay.relay.connection import Connection
from chatrelay.relay.dispatcher import EventDispatcher
from chatrelay.relay.errors import MalformedEvent, StoreUnavailable
from chatrelay.relay.protocol import GroupCreatedNotice, MessagePayload, parse_channel_ref
from chatrelay.relay.ratelimit import RateLimitExceeded
from chatrelay.relay.state import RelayState

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("chatrelay")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: initialize DB and the relay state bound to it
    db = await get_db()
    app.state.relay = RelayState(db)
    app.state.dispatcher = EventDispatcher(app.state.relay)
    logger.info(f"ChatRelay running at http://{HOST}:{PORT}")
    yield
    # Shutdown: drop live connections, then close DB
    relay: RelayState = app.state.relay
    for conn in relay.registry:
        relay.disconnect(conn)
    await close_db()


app = FastAPI(
    title="ChatRelay",
    description="Presence, message routing and delivery/read receipts over WebSockets.",
    version=RELAY_VERSION,
    lifespan=lifespan,
)


# ─────────────────────────────────────────────
# Live relay (WebSocket)
# ─────────────────────────────────────────────

async def _pump(websocket: WebSocket, conn: Connection) -> None:
    """Write queued notices to the socket until the connection is closed."""
    while True:
        frame = await conn.outbox.get()
        if frame is None:
            return
        try:
            await websocket.send_json(frame)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.debug(f"Writer for {conn.id} stopped: {type(exc).__name__}: {exc}")
            return


@app.websocket("/ws")
async def relay_socket(websocket: WebSocket, token: str | None = None):
    relay: RelayState = websocket.app.state.relay
    dispatcher: EventDispatcher = websocket.app.state.dispatcher
    host = websocket.client.host if websocket.client else "unknown"

    try:
        relay.handshakes.check(host)
    except RateLimitExceeded as e:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION,
                              reason=f"Rate limit exceeded, retry after {e.retry_after}s")
        return

    authenticated = None
    if token:
        try:
            authenticated = await relay.directory.resolve_identity(token)
        except StoreUnavailable:
            authenticated = None
        if authenticated is None:
            logger.warning(f"Rejected WebSocket handshake from {host}: unknown token")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
            return

    await websocket.accept()
    conn = relay.connect(client_host=host)
    conn.authenticated = authenticated
    logger.info(f"Connection opened: {conn.id} from {host}"
                + (f" as {authenticated.id}" if authenticated else ""))

    writer = asyncio.create_task(_pump(websocket, conn))
    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000), frame.get("reason"))
            # Text and binary frames both carry JSON.
            raw = frame.get("text")
            if raw is None:
                raw = frame.get("bytes") or b""
            await dispatcher.handle(conn, raw)
    except WebSocketDisconnect:
        pass
    finally:
        relay.disconnect(conn)
        await writer


# ─────────────────────────────────────────────
# MCP SSE Transport (mounted at /mcp)
# ─────────────────────────────────────────────

sse_transport = SseServerTransport("/mcp/messages")


class _SseCompletedResponse:
    """
    Sentinel returned from mcp_sse_endpoint after connect_sse() exits.

    The SSE transport has already sent the full HTTP response through
    request._send; returning a real Response would make FastAPI emit a
    second http.response.start, which uvicorn rejects.
    """
    async def __call__(self, scope, receive, send):
        pass


@app.get("/mcp/sse")
async def mcp_sse_endpoint(request: Request):
    """MCP SSE endpoint consumed by MCP clients."""
    try:
        async with sse_transport.connect_sse(
            request.scope, request.receive, request._send
        ) as streams:
            await mcp_server.run(
                streams[0], streams[1],
                mcp_server.create_initialization_options(),
            )
    except Exception as exc:
        # Mostly normal disconnects (anyio.ClosedResourceError, CancelledError...).
        logger.debug("MCP SSE session ended: %s: %s", type(exc).__name__, exc)
    return _SseCompletedResponse()


# Raw ASGI app, not a FastAPI route: the transport sends its own 202 Accepted.
app.mount("/mcp/messages/", app=sse_transport.handle_post_message)


class _AsgiDisconnectFilter(logging.Filter):
    """Drops uvicorn 'Exception in ASGI application' noise from MCP client disconnects."""
    _NOISE = (
        "Unexpected ASGI message 'http.response.start'",
        "Expected ASGI message 'http.response.body'",
    )
    def filter(self, record: logging.LogRecord) -> bool:
        return not any(n in record.getMessage() for n in self._NOISE)

for _ln in ("uvicorn.error", "uvicorn"):
    logging.getLogger(_ln).addFilter(_AsgiDisconnectFilter())


# ─────────────────────────────────────────────
# Auth helpers
# ─────────────────────────────────────────────

async def current_user(authorization: str | None = Header(default=None)) -> UserIdentity:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    db = await get_db()
    user = await crud.resolve_identity(db, authorization[7:].strip())
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user


def _user_dict(u: UserIdentity, relay: RelayState | None = None) -> dict:
    d = {"id": u.id, "display_name": u.display_name, "organization_id": u.organization_id}
    if relay is not None:
        d["is_online"] = relay.presence.is_online(u.id)
    return d


# ─────────────────────────────────────────────
# Directory REST API
# ─────────────────────────────────────────────

class UserCreate(BaseModel):
    display_name: str
    organization_id: str

class ContactAdd(BaseModel):
    contact_id: str

class GroupCreate(BaseModel):
    name: str
    member_ids: list[str] = []

class GroupMemberAdd(BaseModel):
    user_id: str
    is_admin: bool = False


@app.post("/api/users", status_code=201)
async def api_create_user(body: UserCreate):
    db = await get_db()
    try:
        user, token = await crud.user_create(db, body.display_name, body.organization_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {**_user_dict(user), "token": token}


@app.post("/api/contacts", status_code=201)
async def api_add_contact(body: ContactAdd, user: UserIdentity = Depends(current_user)):
    db = await get_db()
    try:
        await crud.contact_add(db, user.id, body.contact_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True}


@app.get("/api/users/{user_id}/contacts")
async def api_contacts(user_id: str, request: Request, user: UserIdentity = Depends(current_user)):
    if user_id != user.id:
        raise HTTPException(status_code=403, detail="Contacts are only visible to their owner")
    db = await get_db()
    contacts = await crud.list_contacts(db, user.id)
    return [_user_dict(c, request.app.state.relay) for c in contacts]


@app.post("/api/groups", status_code=201)
async def api_create_group(body: GroupCreate, request: Request, user: UserIdentity = Depends(current_user)):
    db = await get_db()
    try:
        g = await crud.group_create(db, body.name, user.id, body.member_ids)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    # Push to every live connection of each member.
    relay: RelayState = request.app.state.relay
    notice = GroupCreatedNotice(group_id=g.id, name=g.name, created_by=g.created_by)
    for member in await crud.list_group_members(db, g.id):
        for conn in relay.presence.connections_of(member.id):
            conn.send(notice)
    return {"id": g.id, "name": g.name, "organization_id": g.organization_id,
            "created_by": g.created_by, "created_at": g.created_at.isoformat()}


@app.post("/api/groups/{group_id}/members", status_code=201)
async def api_add_group_member(group_id: str, body: GroupMemberAdd,
                               user: UserIdentity = Depends(current_user)):
    db = await get_db()
    if await crud.group_get(db, group_id) is None:
        raise HTTPException(status_code=404, detail="Group not found")
    admins = await crud.list_group_admins(db, group_id)
    if not any(a.id == user.id for a in admins):
        raise HTTPException(status_code=403, detail="Only group admins can add members")
    try:
        await crud.group_add_member(db, group_id, body.user_id, body.is_admin)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True}


@app.get("/api/groups/{group_id}/members")
async def api_group_members(group_id: str, request: Request, user: UserIdentity = Depends(current_user)):
    db = await get_db()
    if await crud.group_get(db, group_id) is None:
        raise HTTPException(status_code=404, detail="Group not found")
    if not await crud.is_group_member(db, group_id, user.id):
        raise HTTPException(status_code=403, detail="Not a member of this group")
    admin_ids = {a.id for a in await crud.list_group_admins(db, group_id)}
    members = await crud.list_group_members(db, group_id)
    return [{**_user_dict(m, request.app.state.relay), "is_admin": m.id in admin_ids} for m in members]


# ─────────────────────────────────────────────
# History and mark-read (decoupled from the live relay)
# ─────────────────────────────────────────────

async def _history(user: UserIdentity, channel: Channel, limit: int, offset: int) -> list[dict]:
    db = await get_db()
    if not await crud.can_read_channel(db, user.id, channel):
        raise HTTPException(status_code=403, detail=f"No access to {channel.key}")
    msgs = await crud.fetch_history(db, channel, limit=limit, offset=offset)
    return [MessagePayload.from_message(m).model_dump(mode="json") for m in msgs]


@app.get("/api/chat/direct/{peer_id}/messages")
async def api_direct_messages(peer_id: str, limit: int = HISTORY_DEFAULT_LIMIT, offset: int = 0,
                              user: UserIdentity = Depends(current_user)):
    return await _history(user, DirectChannel.between(user.id, peer_id), limit, offset)


@app.get("/api/chat/groups/{group_id}/messages")
async def api_group_messages(group_id: str, limit: int = HISTORY_DEFAULT_LIMIT, offset: int = 0,
                             user: UserIdentity = Depends(current_user)):
    return await _history(user, GroupChannel(group_id), limit, offset)


@app.get("/api/chat/rooms/{room}/messages")
async def api_room_messages(room: str, limit: int = HISTORY_DEFAULT_LIMIT, offset: int = 0,
                            user: UserIdentity = Depends(current_user)):
    return await _history(user, Room(room), limit, offset)


class MarkRead(BaseModel):
    channel: dict


@app.post("/api/chat/mark-read")
async def api_mark_read(body: MarkRead, user: UserIdentity = Depends(current_user)):
    try:
        channel = parse_channel_ref(body.channel).resolve(user.id)
    except MalformedEvent as e:
        raise HTTPException(status_code=400, detail=str(e))
    db = await get_db()
    if not await crud.can_read_channel(db, user.id, channel):
        raise HTTPException(status_code=403, detail=f"No access to {channel.key}")
    changed = await crud.mark_channel_read(db, channel, user.id)
    return {"ok": True, "message_ids": [mid for mid, _ in changed]}


# ─────────────────────────────────────────────
# Live state
# ─────────────────────────────────────────────

@app.get("/api/chat/rooms/{room}/users")
async def api_room_users(room: str, request: Request):
    relay: RelayState = request.app.state.relay
    users = {}
    for conn in relay.router.connections_in(Room(room)):
        if conn.user is not None:
            users[conn.user.id] = {"id": conn.user.id, "display_name": conn.user.display_name}
    return list(users.values())


@app.get("/api/presence/{user_id}")
async def api_presence(user_id: str, request: Request):
    relay: RelayState = request.app.state.relay
    return {
        "user_id": user_id,
        "is_online": relay.presence.is_online(user_id),
        "connections": len(relay.presence.connections_of(user_id)),
    }


@app.get("/health")
async def health(request: Request):
    relay: RelayState = request.app.state.relay
    return {
        "status": "ok",
        "service": "ChatRelay",
        "version": RELAY_VERSION,
        "connections": len(relay.registry),
        "online_users": len(relay.presence.online_users()),
    }


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("chatrelay.main:app", host=HOST, port=PORT, reload=True)
