"""Discovery and commissioning state machine.

One discovery request runs one read cycle:

    Idle -> Listening -> IdentifierFound -> Provisioning -> Binding -> Listening

Remote steps are only loosely acknowledged by the gateway, so the default
policy is time based: the provisioning command is followed by a fixed
delay, each binding command by a short wait for any bytes and a short
settle pause. No step output is checked for success; a silent step is
treated the same as a successful one. Every step is an explicit Step with
its own deadline, so an acknowledgement-based policy only changes the
``until`` predicate (see ``acknowledged``), never the shape of the machine.

Discovery is not re-armed after a commission: one device per request.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TYPE_CHECKING

from mesh_provisioner.constants import (
    APP_IDX,
    BIND_MODELS,
    CMD_APP_BIND,
    CMD_APPKEY_ADD,
    CMD_BEACON_LISTEN,
    CMD_PROVISION,
    CMD_TARGET,
    NET_IDX,
    PROV_TIMEOUT_S,
    PROVISIONED_RE,
)
from mesh_provisioner.exceptions import ProvisionerError, ResponseTimeout
from mesh_provisioner.node_state import Node, NodeRegistry
from mesh_provisioner.parser import (
    BeaconReport,
    extract_events,
    has_beacon,
    normalize_identifier,
    prompt_seen,
)

if TYPE_CHECKING:
    from mesh_provisioner.dispatcher import CommandDispatcher, Response
    from mesh_provisioner.parser import LineReassembler


class SequencerState(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    IDENTIFIER_FOUND = "identifier found"
    PROVISIONING = "provisioning"
    BINDING = "binding"


@dataclass(frozen=True)
class Step:
    """One command of the sequence and how long to give it."""
    state: SequencerState
    command: str
    wait: float                                       # Transaction deadline (s)
    settle: float = 0.0                               # Pause after completion (s)
    until: Optional[Callable[[str], bool]] = prompt_seen


@dataclass
class DiscoveryResult:
    status: str
    raw_identifier: Optional[str] = None
    identifier: Optional[str] = None     # Normalized
    node: Optional[Node] = None


def format_address(address: int) -> str:
    return f"0x{address:04x}"


class ProvisioningSequencer:
    """Drives a discovered device from beacon to provisioned-and-bound."""

    PROVISION_DELAY = 5.0   # Seconds to let remote provisioning finish
    STEP_WAIT = 0.3         # Best-effort wait for a binding step's reply
    STEP_SETTLE = 0.2       # Pause between binding steps
    LISTEN_WINDOW = 10.0    # Seconds a discovery read cycle listens for beacons

    STATUS_NO_NODES = "no nodes discovered"
    STATUS_DUPLICATE = "already provisioned"

    def __init__(self, dispatcher: CommandDispatcher, registry: NodeRegistry,
                 log: Optional[Callable[..., None]] = None,
                 acknowledged: bool = False,
                 reassembler: Optional[LineReassembler] = None):
        self.dispatcher = dispatcher
        self.registry = registry
        self.acknowledged = acknowledged
        self.reassembler = reassembler
        self.state = SequencerState.IDLE
        self._log = log or (lambda text, **kw: None)
        self.on_response: Optional[Callable[[Response], None]] = None
        self.on_node_added: Optional[Callable[[Node], None]] = None

    # ---- Step policy ----

    def listen_step(self) -> Step:
        return Step(SequencerState.LISTENING, CMD_BEACON_LISTEN,
                    wait=self.LISTEN_WINDOW, until=has_beacon)

    def provision_step(self, identifier: str, address: int) -> Step:
        cmd = CMD_PROVISION.format(uuid=identifier, net_idx=NET_IDX,
                                   addr=format_address(address),
                                   timeout=PROV_TIMEOUT_S)
        # Fixed delay unless told to stop at the gateway's completion line
        until = (lambda text: PROVISIONED_RE.search(text) is not None) \
            if self.acknowledged else None
        return Step(SequencerState.PROVISIONING, cmd,
                    wait=self.PROVISION_DELAY, until=until)

    def bind_steps(self, address: int) -> list[Step]:
        addr = format_address(address)
        commands = [
            CMD_TARGET.format(addr=addr),
            CMD_APPKEY_ADD.format(net_idx=NET_IDX, app_idx=APP_IDX),
        ] + [
            CMD_APP_BIND.format(addr=addr, app_idx=APP_IDX, model=f"0x{model:04x}")
            for model in BIND_MODELS
        ]
        return [Step(SequencerState.BINDING, cmd,
                     wait=self.STEP_WAIT, settle=self.STEP_SETTLE)
                for cmd in commands]

    # ---- Public API ----

    async def discover(self) -> DiscoveryResult:
        """Run one discovery cycle and commission the device it finds, if new.

        Raises TransportUnavailable / TransactionInProgress; the registry is
        left untouched when that happens.
        """
        try:
            self.state = SequencerState.LISTENING
            response = await self._run_step(self.listen_step())
            text = response.text if response else ""
            if self.reassembler:
                text = self.reassembler.feed(text)

            beacon = next((ev for ev in extract_events(text)
                           if isinstance(ev, BeaconReport)), None)
            if beacon is None:
                self._log(f"[DISCOVERY] {self.STATUS_NO_NODES}")
                return DiscoveryResult(self.STATUS_NO_NODES)

            self.state = SequencerState.IDENTIFIER_FOUND
            identifier = normalize_identifier(beacon.identifier)
            self._log(f"[DISCOVERY] Beacon {beacon.identifier} -> {identifier}")

            if self.registry.is_provisioned(identifier):
                self.state = SequencerState.LISTENING
                self._log(f"[DISCOVERY] {identifier} {self.STATUS_DUPLICATE}",
                          style="yellow")
                return DiscoveryResult(self.STATUS_DUPLICATE,
                                       raw_identifier=beacon.identifier,
                                       identifier=identifier)

            node = await self.commission(identifier)
            return DiscoveryResult(f"provisioned {node.address_text}",
                                   raw_identifier=beacon.identifier,
                                   identifier=identifier, node=node)
        except (ProvisionerError, ValueError):
            self.state = SequencerState.IDLE
            raise

    async def commission(self, identifier: str) -> Node:
        """Provision ``identifier`` at a fresh address, bind models, register.

        No cancellation: once provisioning starts it runs to the end of
        binding. Step failures are not detected (see module docstring).
        """
        address = self.registry.allocate_address()
        addr = format_address(address)

        self.state = SequencerState.PROVISIONING
        self._log(f"[PROV] {identifier} -> {addr}")
        await self._run_step(self.provision_step(identifier, address))

        self.state = SequencerState.BINDING
        for step in self.bind_steps(address):
            await self._run_step(step)

        node = self.registry.register(address, identifier)
        self.state = SequencerState.LISTENING
        self._log(f"[PROV] Node {addr} provisioned and bound", style="bold green")
        if self.on_node_added:
            self.on_node_added(node)
        return node

    # ---- Internal ----

    async def _run_step(self, step: Step) -> Optional[Response]:
        """Send one step; silence is logged and treated as success."""
        self._log(f"-> {step.command}", _debug=True)
        try:
            response = await self.dispatcher.request(
                step.command, timeout=step.wait, until=step.until)
        except ResponseTimeout:
            self._log(f"[{step.state.value}] no reply to '{step.command}'", _debug=True)
            response = None
        if response is not None and self.on_response:
            self.on_response(response)
        if step.settle:
            await asyncio.sleep(step.settle)
        return response
