"""FastAPI web surface with WebSocket streaming for the provisioner.

Runs on the controller's I/O loop (uvicorn is served from the same loop),
so every intent goes straight into the controller's single-flight path.
Broadcasts log lines, status changes and newly commissioned nodes as they
happen.
"""

import json
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from mesh_provisioner.constants import GROUP_ADDRESS


# --- WebSocket Manager ---

class ConnectionManager:
    """Manages WebSocket connections and broadcasts."""

    def __init__(self):
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: dict):
        """Send JSON message to all connected WebSocket clients."""
        if not self.active_connections:
            return
        data = json.dumps(message)
        disconnected = []
        for conn in self.active_connections:
            try:
                await conn.send_text(data)
            except (WebSocketDisconnect, RuntimeError):
                disconnected.append(conn)
        for conn in disconnected:
            self.disconnect(conn)


# --- FastAPI App ---

app = FastAPI(title="Mesh Shell Provisioner")
manager = ConnectionManager()

# Reference to the controller (set by cli.py at startup)
_controller = None


def set_controller(controller):
    """Called by cli.py to inject the MeshProvisioner reference."""
    global _controller
    _controller = controller


def _require_controller():
    if _controller is None:
        raise HTTPException(status_code=503, detail="Provisioner not initialized")
    return _controller


def _parse_address(text: str) -> int:
    try:
        return int(text, 16)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid address: {text}")


@app.get("/")
async def index():
    return {
        "message": "Mesh Shell Provisioner API",
        "docs": "/docs",
        "endpoints": {
            "state": "GET /api/state",
            "node": "GET /api/nodes/{address}",
            "discover": "POST /api/discover",
            "init": "POST /api/init",
            "output": "POST /api/output",
            "broadcast": "POST /api/broadcast",
            "sendto": "POST /api/sendto",
            "command": "POST /api/command",
            "websocket": "ws://<host>/ws",
        },
    }


# --- WebSocket Endpoint ---

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await manager.connect(websocket)
    try:
        # Send initial state on connect (always, even if controller not ready)
        await websocket.send_text(json.dumps({"type": "state", "data": _build_state()}))
        # Keep the socket open; browser messages are ignored, intents go via REST
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)


# --- REST API ---

class OutputRequest(BaseModel):
    on: bool


class SendToRequest(BaseModel):
    address: str
    text: str


class CommandRequest(BaseModel):
    command: str


@app.get("/api/state")
async def get_state():
    """Return registry and controller state."""
    return _build_state()


@app.get("/api/nodes/{address}")
async def get_node(address: str):
    """Node detail (display only, nothing is sent to the gateway)."""
    ctl = _require_controller()
    addr = _parse_address(address)
    node = ctl.registry.lookup(addr)
    if node is None:
        raise HTTPException(status_code=404, detail=f"Node 0x{addr:04x} not registered")
    return {"address": node.address_text, "identifier": node.identifier,
            "detail": ctl.node_detail(addr)}


@app.post("/api/discover")
async def post_discover():
    return {"status": await _require_controller().discover()}


@app.post("/api/init")
async def post_init():
    return {"status": await _require_controller().initialize()}


@app.post("/api/output")
async def post_output(req: OutputRequest):
    return {"status": await _require_controller().set_local_output(req.on)}


@app.post("/api/broadcast")
async def post_broadcast(req: OutputRequest):
    return {"status": await _require_controller().broadcast_output(req.on)}


@app.post("/api/sendto")
async def post_sendto(req: SendToRequest):
    ctl = _require_controller()
    return {"status": await ctl.send_to(_parse_address(req.address), req.text)}


@app.post("/api/subscribe/{address}")
async def post_subscribe(address: str, group: Optional[str] = None, remove: bool = False):
    ctl = _require_controller()
    grp = _parse_address(group) if group else GROUP_ADDRESS
    return {"status": await ctl.subscribe(_parse_address(address), grp, remove=remove)}


@app.post("/api/command")
async def post_command(req: CommandRequest):
    """Send a raw shell command to the gateway."""
    return {"status": await _require_controller().send_raw(req.command)}


# --- State Builder ---

def _build_state() -> dict:
    if _controller is None:
        return {"error": "Provisioner not initialized"}
    state = _controller.snapshot()
    state["timestamp"] = time.time()
    return state


# --- Broadcast Helpers (called by controller hooks) ---

async def broadcast_node_added(address: str, identifier: str):
    await manager.broadcast({
        "type": "node_added",
        "data": {"address": address, "identifier": identifier},
        "timestamp": time.time(),
    })


async def broadcast_status(status: str):
    await manager.broadcast({
        "type": "status",
        "status": status,
        "timestamp": time.time(),
    })


async def broadcast_log(text: str):
    """Called on every controller log message for console streaming."""
    await manager.broadcast({
        "type": "log",
        "text": text,
        "timestamp": time.time(),
    })
