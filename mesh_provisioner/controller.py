"""Host-side provisioning controller for a Zephyr mesh shell gateway.

Owns the serial transport, the command dispatcher, the node registry and
the provisioning sequencer, and exposes the intents the surfaces (TUI, web,
plain CLI) trigger: discovery, provisioner init, local/broadcast output,
unicast messages, group subscriptions and node detail.

Intents are single-flight. One that arrives while another is still running
is rejected with a "busy" status instead of interleaving commands on the
shared serial line. Errors never escape an intent; they end up in
``status`` and in the log.
"""

import asyncio
import threading
from typing import Optional

from mesh_provisioner import db
from mesh_provisioner.constants import (
    CMD_LEDS,
    CMD_SENDTO,
    CMD_SUB_ADD,
    CMD_SUB_DEL,
    DEFAULT_BAUD,
    GROUP_ADDRESS,
    INIT_COMMANDS,
    LOCAL_ADDRESS,
    LOCAL_UUID,
    MAX_UNICAST,
    ONOFF_SRV_MODEL,
    SENDTO_MAX_LEN,
)
from mesh_provisioner.dispatcher import CommandDispatcher, Response
from mesh_provisioner.exceptions import (
    ResponseTimeout,
    TransactionInProgress,
    TransportUnavailable,
)
from mesh_provisioner.node_state import Node, NodeRegistry
from mesh_provisioner.parser import AddressReport, LineReassembler, extract_events
from mesh_provisioner.sequencer import ProvisioningSequencer, SequencerState
from mesh_provisioner.transport import SerialTransport, Transport

# Check for textual availability (needed for log routing)
_HAS_TEXTUAL = False
try:
    from textual.app import App
    _HAS_TEXTUAL = True
except ImportError:
    pass


class MeshProvisioner:
    INIT_PAUSE = 0.1   # Seconds between provisioner init commands

    def __init__(self, registry: Optional[NodeRegistry] = None,
                 response_timeout: Optional[float] = None,
                 acknowledged: bool = False, reassemble: bool = False):
        self.registry = registry if registry is not None else NodeRegistry()
        self.transport: Optional[Transport] = None
        self.port: Optional[str] = None
        self.dispatcher = CommandDispatcher(None, timeout=response_timeout,
                                            on_traffic=self._on_traffic)
        self.sequencer = ProvisioningSequencer(
            self.dispatcher, self.registry, log=self.log,
            acknowledged=acknowledged,
            reassembler=LineReassembler() if reassemble else None,
        )
        self.sequencer.on_response = self._harvest_addresses
        self.sequencer.on_node_added = self._node_added
        self.status = "Not running."
        self.reported_addresses: list[str] = []   # Display only, never provisioned from
        self.running = True
        self.app = None          # Reference to TUI app (set by ProvisionerApp)
        self.io_thread = None    # IoThread instance (set by TUI app / web-only mode)
        self._web_enabled = False  # Set True by cli.py when --web is used
        self._db_enabled = False   # Set True by start(persist=True)
        self._lock = asyncio.Lock()

    # ---- Logging ----

    def log(self, text: str, style: str = "", _from_thread: Optional[bool] = None,
            _debug: bool = False):
        """Post a log message to the TUI, or print() if no TUI.

        Args:
            _from_thread: True when called off the Textual thread (always the
                         case on the I/O loop). Detected when left as None.
            _debug: If True, only show when debug_mode is on (F2 / 'debug').
        """
        if _debug:
            if self.app and _HAS_TEXTUAL:
                if not getattr(self.app, 'debug_mode', False):
                    return
            else:
                return  # CLI: suppress debug logs
        if _from_thread is None:
            _from_thread = threading.current_thread() is not threading.main_thread()
        if self.app and _HAS_TEXTUAL:
            self._post(self.app.LogMsg(text, style), _from_thread)
        else:
            print(f"  {text}")

        # Web console streaming (skip debug messages to reduce noise)
        if self._web_enabled and not _debug:
            self._web("broadcast_log", text)

    def _post(self, msg, from_thread: bool):
        try:
            if from_thread:
                self.app.call_from_thread(self.app.post_message, msg)
            else:
                self.app.post_message(msg)
        except RuntimeError as e:
            print(f"  [post error: {e}]")

    def _web(self, name: str, *args):
        """Schedule web_server.<name>(*args) on the I/O loop."""
        from mesh_provisioner import web_server
        loop = self.io_thread.loop if self.io_thread else None
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
        asyncio.run_coroutine_threadsafe(getattr(web_server, name)(*args), loop)

    def _set_status(self, status: str, style: str = ""):
        self.status = status
        self.log(f"Status: {status}", style=style)
        if self.app and _HAS_TEXTUAL:
            self._post(self.app.StatusMsg(status),
                       threading.current_thread() is not threading.main_thread())
        if self._web_enabled:
            self._web("broadcast_status", status)

    # ---- Lifecycle ----

    def start(self, persist: bool = False):
        """Seed the registry with the local node and restore persisted nodes."""
        self.registry.register(LOCAL_ADDRESS, LOCAL_UUID)
        if persist:
            self._db_enabled = True
            db.init_db()
            self.registry.restore(db.load_nodes(), db.load_provisioned())
            self.log(f"Restored {len(self.registry) - 1} node(s), "
                     f"next address 0x{self.registry.next_address:04x}")

    def attach(self, transport: Transport):
        """Route ``transport``'s bytes into the dispatcher."""
        self.transport = transport
        self.dispatcher.transport = transport
        transport.set_receiver(self.dispatcher.bytes_arrived)

    async def connect(self, port: str, baud: int = DEFAULT_BAUD) -> bool:
        """Open ``port`` and attach it. Blocking open runs in an executor."""
        loop = asyncio.get_running_loop()
        transport = SerialTransport(port, baud)
        transport.on_lost = self._transport_lost
        try:
            await loop.run_in_executor(None, transport.open, loop)
        except TransportUnavailable as e:
            self._set_status(f"Failed to initialize port {port}: {e.reason}", style="bold red")
            return False
        self.port = port
        self.attach(transport)
        self._set_status(f"Initialized, connected to port {port}.", style="bold green")
        return True

    async def disconnect(self):
        if self.transport is not None:
            self.dispatcher.abort(TransportUnavailable("disconnected"))
            self.transport.close()
            self.log("Disconnected")
        self.transport = None
        self.dispatcher.transport = None
        self.sequencer.state = SequencerState.IDLE

    def _transport_lost(self, exc: Exception):
        self.dispatcher.abort(TransportUnavailable(str(exc)))
        self._set_status(f"Connection lost: {exc}", style="bold red")

    # ---- Intents ----

    async def discover(self) -> str:
        """Start discovery / refresh: one read cycle, commission if new."""
        async def _run():
            self.log("Listening for unprovisioned beacons...")
            result = await self.sequencer.discover()
            return result.status
        return await self._intent(_run)

    async def initialize(self) -> str:
        """Bring the gateway up as provisioner (mesh init, cdb, local address)."""
        async def _run():
            for cmd in INIT_COMMANDS:
                await self._command(cmd)
                await asyncio.sleep(self.INIT_PAUSE)
            return "Mesh commands sent."
        return await self._intent(_run)

    async def set_local_output(self, on: bool) -> str:
        async def _run():
            await self._command(CMD_LEDS.format(value=1 if on else 0))
            return f"Local LED set to: {'on' if on else 'off'}"
        return await self._intent(_run)

    async def broadcast_output(self, on: bool) -> str:
        """Send the output command to every registered node except the local one."""
        async def _run():
            targets = self.registry.addresses(exclude=[LOCAL_ADDRESS])
            if not targets:
                return "No registered nodes."
            for address in targets:
                await self._command(self._sendto_command(address, f"leds {1 if on else 0}"))
            return f"All LEDs turned {'on' if on else 'off'} ({len(targets)} node(s))."
        return await self._intent(_run)

    async def send_to(self, address: int, text: str) -> str:
        async def _run():
            await self._command(self._sendto_command(address, text))
            return f"Sent to 0x{address:04x}: {text}"
        return await self._intent(_run)

    async def subscribe(self, address: int, group: int = GROUP_ADDRESS,
                        model: int = ONOFF_SRV_MODEL, remove: bool = False) -> str:
        """Add (or remove) a group subscription on a node's model."""
        async def _run():
            template = CMD_SUB_DEL if remove else CMD_SUB_ADD
            await self._command(template.format(
                node=f"{address:04x}", elem=f"{address:04x}",
                group=f"{group:04x}", model=f"{model:04x}"))
            verb = "removed from" if remove else "added to"
            return f"0x{address:04x} {verb} group 0x{group:04x}"
        return await self._intent(_run)

    async def send_raw(self, command: str) -> str:
        async def _run():
            response = await self._command(command)
            return f"'{command}' -> {len(response.text) if response else 0} byte(s)"
        return await self._intent(_run)

    def node_detail(self, address: int) -> str:
        """Display-only detail for a node (no protocol I/O)."""
        node = self.registry.lookup(address)
        if node is None:
            return f"Address: 0x{address:04x}\nNot registered."
        role = " (local provisioner)" if node.address == LOCAL_ADDRESS else ""
        return (f"Address: {node.address_text}{role}\n"
                f"UUID: {node.identifier or 'unknown'}")

    def snapshot(self) -> dict:
        """Registry and controller state for the web surface."""
        return {
            "port": self.port,
            "connected": self.transport is not None and self.transport.is_open,
            "state": self.sequencer.state.value,
            "status": self.status,
            "busy": self._lock.locked(),
            "next_address": f"0x{self.registry.next_address:04x}",
            "nodes": [{"address": n.address_text, "identifier": n.identifier}
                      for n in self.registry],
            "provisioned": sorted(self.registry.provisioned),
            "reported_addresses": list(self.reported_addresses),
        }

    # ---- Internal ----

    async def _intent(self, fn) -> str:
        if self._lock.locked():
            self._set_status("busy, another operation is running", style="yellow")
            return self.status
        async with self._lock:
            try:
                status = await fn()
                style = ""
            except TransportUnavailable as e:
                self.sequencer.state = SequencerState.IDLE
                status, style = f"Serial port not open ({e.reason}).", "bold red"
            except TransactionInProgress as e:
                status, style = f"busy, waiting for '{e.pending}'", "yellow"
            except ValueError as e:
                status, style = f"Invalid request: {e}", "yellow"
        self._set_status(status, style=style)
        return status

    async def _command(self, command: str) -> Optional[Response]:
        """One serialized transaction; silence is not an error here."""
        self.log(f"-> {command}", _debug=True)
        try:
            response = await self.dispatcher.request(command)
        except ResponseTimeout:
            self.log(f"No response to '{command}'", _debug=True)
            return None
        self._harvest_addresses(response)
        return response

    @staticmethod
    def _sendto_command(address: int, text: str) -> str:
        if not 0 < address <= MAX_UNICAST:
            raise ValueError(f"0x{address:04x} is not a unicast address")
        text = text.strip()
        if not text:
            raise ValueError("message cannot be empty")
        if len(text) > SENDTO_MAX_LEN:
            raise ValueError(f"message too long (max {SENDTO_MAX_LEN} chars)")
        return CMD_SENDTO.format(addr=f"{address:04x}", text=text)

    def _harvest_addresses(self, response: Response):
        for event in extract_events(response.text):
            if isinstance(event, AddressReport) and event.token not in self.reported_addresses:
                self.reported_addresses.append(event.token)
                self.log(f"Address: {event.token}")

    def _on_traffic(self, chunk: bytes):
        self.log(chunk.decode("utf-8", errors="replace").rstrip(), style="dim", _debug=True)

    def _node_added(self, node: Node):
        if self._db_enabled:
            db.save_node(node)
        if self.app and _HAS_TEXTUAL:
            self._post(self.app.NodeAddedMsg(node.address, node.identifier),
                       threading.current_thread() is not threading.main_thread())
        if self._web_enabled:
            self._web("broadcast_node_added", node.address_text, node.identifier)
