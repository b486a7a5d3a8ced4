"""REST API and WebSocket endpoints for meshlink."""

import asyncio
from typing import Any, Awaitable, Optional, List
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, HTTPException, Query
from pydantic import BaseModel

from ..database import db
from ..errors import DeviceUnavailable, InvalidAddress, MeshLinkError, NotConnected
from ..mesh.base import ChannelRole, MessageRecord, NodeRecord, SessionStatus
from ..mesh.client import MeshClient
from ..mesh.selection import DeviceCandidate

logger = logging.getLogger(__name__)

api_router = APIRouter(prefix="/api")


# Pydantic models for API
class ConnectRequest(BaseModel):
    kind: str
    address: Optional[str] = None


class SendMessageRequest(BaseModel):
    text: str
    destination: Optional[int] = None
    channel: int = 0


class ReactionRequest(BaseModel):
    emoji: str
    reply_id: int
    channel: int = 0


class ChannelRequest(BaseModel):
    name: str = ""
    role: str = "secondary"
    psk: Optional[str] = None  # hex


class PowerRequest(BaseModel):
    seconds: int = 2


class SelectRequest(BaseModel):
    id: str


class StatusResponse(BaseModel):
    status: str
    connected: bool
    kind: Optional[str]
    address: Optional[str]
    generation: int
    my_node_num: int
    reconnect_attempt: int
    node_count: int
    message_count: int


# WebSocket connection manager
class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"WebSocket connected. Total: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.info(f"WebSocket disconnected. Total: {len(self.active_connections)}")

    async def broadcast(self, message: dict):
        """Broadcast a message to all connected clients."""
        disconnected = []
        for connection in self.active_connections:
            try:
                await connection.send_json(message)
            except Exception:
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn)


manager = ConnectionManager()


def get_client() -> MeshClient:
    from ..main import app_state

    if app_state.client is None:
        raise HTTPException(status_code=503, detail="Mesh client not started")
    return app_state.client


async def run_command(awaitable: Awaitable) -> Any:
    """Await a client call, mapping client errors to HTTP errors."""
    try:
        return await awaitable
    except NotConnected as e:
        raise HTTPException(status_code=503, detail=str(e))
    except InvalidAddress as e:
        raise HTTPException(status_code=400, detail=str(e))
    except DeviceUnavailable as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MeshLinkError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# REST API endpoints
@api_router.get("/status", response_model=StatusResponse)
async def get_status():
    """Get current session status."""
    client = get_client()
    params = client.connection
    return StatusResponse(
        status=client.status.value,
        connected=client.is_connected(),
        kind=params.kind.value if params else None,
        address=params.address if params else None,
        generation=client.generation,
        my_node_num=client.my_node_num,
        reconnect_attempt=client.supervisor.attempt,
        node_count=len(client.nodes),
        message_count=len(client.messages),
    )


@api_router.get("/nodes")
async def get_nodes():
    client = get_client()
    nodes = sorted(client.nodes, key=lambda n: n.last_heard, reverse=True)
    return [
        {**n.to_dict(), "name": client.node_name(n.node_id), "label": client.node_label(n.node_id)}
        for n in nodes
    ]


@api_router.get("/messages")
async def get_messages(
    limit: int = Query(default=100, le=500),
    channel: Optional[int] = None
):
    """Get recent messages, oldest first."""
    messages = get_client().messages
    if channel is not None:
        messages = [m for m in messages if m.channel == channel]
    return [m.to_dict() for m in messages[-limit:]]


@api_router.get("/channels")
async def get_channels():
    return get_client().channels


@api_router.get("/channels/config")
async def get_channel_configs():
    return [c.to_dict() for c in get_client().channel_configs]


@api_router.get("/telemetry")
async def get_telemetry():
    return [p.to_dict() for p in get_client().telemetry]


@api_router.post("/connect")
async def connect(request: ConnectRequest):
    client = get_client()
    await run_command(client.connect(request.kind, request.address))
    return {"status": client.status.value}


@api_router.post("/disconnect")
async def disconnect():
    client = get_client()
    await client.disconnect()
    return {"status": client.status.value}


@api_router.post("/send")
async def send_message(request: SendMessageRequest):
    """Send a message to the mesh."""
    client = get_client()
    record = await run_command(
        client.send_message(request.text, channel=request.channel, destination=request.destination)
    )
    return record.to_dict()


@api_router.post("/react")
async def send_reaction(request: ReactionRequest):
    client = get_client()
    record = await run_command(
        client.send_reaction(request.emoji, request.reply_id, channel=request.channel)
    )
    return record.to_dict()


@api_router.post("/refresh")
async def request_refresh():
    await run_command(get_client().request_refresh())
    return {"success": True}


@api_router.post("/nodes/{node_id}/position")
async def request_position(node_id: int):
    await run_command(get_client().request_position(node_id))
    return {"success": True}


@api_router.post("/nodes/{node_id}/traceroute")
async def trace_route(node_id: int):
    await run_command(get_client().trace_route(node_id))
    return {"success": True}


@api_router.delete("/messages")
async def clear_messages():
    """Clear message history in memory and in the database."""
    get_client().clear_messages()
    await db.clear_messages()
    await manager.broadcast({"type": "messages_cleared"})
    return {"success": True}


@api_router.delete("/nodes")
async def clear_nodes():
    client = get_client()
    client.clear_nodes()
    await db.clear_nodes()
    # The local node stays known; store it again
    for node in client.nodes:
        await db.save_node(node)
    await manager.broadcast({"type": "nodes_cleared"})
    return {"success": True}


@api_router.delete("/nodes/{node_id}")
async def remove_node(node_id: int):
    await run_command(get_client().remove_node(node_id))
    return {"success": True}


@api_router.post("/config/begin")
async def begin_edit():
    await run_command(get_client().begin_edit())
    return {"success": True}


@api_router.post("/config/commit")
async def commit_config():
    await run_command(get_client().commit_config())
    return {"success": True}


@api_router.post("/config/{section}")
async def set_config(section: str, values: dict):
    await run_command(get_client().set_config(section, values))
    return {"success": True}


@api_router.put("/channels/{index}")
async def set_channel(index: int, request: ChannelRequest):
    try:
        role = ChannelRole[request.role.upper()]
        psk = bytes.fromhex(request.psk) if request.psk is not None else None
    except (KeyError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid channel role or psk")
    channel = await run_command(
        get_client().set_channel(index, name=request.name, role=role, psk=psk)
    )
    return channel.to_dict()


@api_router.delete("/channels/{index}")
async def clear_channel(index: int):
    channel = await run_command(get_client().clear_channel(index))
    return channel.to_dict()


@api_router.post("/admin/reboot")
async def reboot(request: PowerRequest = PowerRequest()):
    await run_command(get_client().reboot(request.seconds))
    return {"success": True}


@api_router.post("/admin/shutdown")
async def shutdown(request: PowerRequest = PowerRequest()):
    await run_command(get_client().shutdown(request.seconds))
    return {"success": True}


@api_router.post("/admin/factory-reset")
async def factory_reset():
    await run_command(get_client().factory_reset())
    return {"success": True}


@api_router.post("/admin/reset-nodedb")
async def reset_node_db():
    await run_command(get_client().reset_node_db())
    return {"success": True}


@api_router.get("/devices/candidates")
async def get_candidates():
    selector = get_client().selector
    return {"pending": selector.pending, "candidates": [c.to_dict() for c in selector.candidates]}


@api_router.post("/devices/select")
async def select_device(request: SelectRequest):
    if not get_client().selector.select(request.id):
        raise HTTPException(status_code=404, detail="No pending selection for that device")
    return {"success": True}


@api_router.post("/devices/cancel")
async def cancel_selection():
    get_client().selector.cancel()
    return {"success": True}


@api_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for real-time updates."""
    await manager.connect(websocket)

    try:
        from ..main import app_state

        client = app_state.client
        await websocket.send_json({
            "type": "status",
            "data": {"status": client.status.value if client else SessionStatus.DISCONNECTED.value}
        })

        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_json(),
                    timeout=30.0
                )
                if data.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})

            except asyncio.TimeoutError:
                await websocket.send_json({"type": "keepalive"})

    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        manager.disconnect(websocket)


# Push helpers wired to client callbacks
async def broadcast_status(status: SessionStatus):
    await manager.broadcast({"type": "status", "data": {"status": status.value}})


async def broadcast_message(record: MessageRecord):
    await manager.broadcast({"type": "new_message", "data": record.to_dict()})


async def broadcast_message_status(record: MessageRecord):
    await manager.broadcast({"type": "message_status", "data": record.to_dict()})


async def broadcast_node_update(node: NodeRecord):
    await manager.broadcast({"type": "node_update", "data": node.to_dict()})


async def broadcast_node_removed(node_id: int):
    await manager.broadcast({"type": "node_removed", "data": {"node_id": node_id}})


async def broadcast_candidates(candidates: List[DeviceCandidate]):
    await manager.broadcast({
        "type": "device_candidates",
        "data": [c.to_dict() for c in candidates]
    })
