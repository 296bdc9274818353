"""Shared fixtures: a scripted in-memory gateway and zero-delay sequencing."""

from __future__ import annotations

import asyncio

import pytest

from mesh_provisioner.controller import MeshProvisioner
from mesh_provisioner.dispatcher import CommandDispatcher
from mesh_provisioner.exceptions import TransportUnavailable
from mesh_provisioner.node_state import NodeRegistry
from mesh_provisioner.sequencer import ProvisioningSequencer
from mesh_provisioner.transport import Transport

PROMPT = "\r\n\x1b[1;32muart:~$ \x1b[m"
UUID_TRAILING_ZERO = "AABBCCDDEEFF0011223344556677AA00"


class FakeGateway(Transport):
    """Transport double that answers commands with canned shell output.

    ``replies`` maps a command prefix to the text the gateway prints; the
    text arrives on the next loop iteration, like a serial chunk would.
    """

    def __init__(self, replies: dict[str, str] | None = None):
        super().__init__()
        self.open = True
        self.written: list[str] = []
        self.replies = dict(replies or {})

    @property
    def is_open(self) -> bool:
        return self.open

    def write(self, data: bytes):
        if not self.open:
            raise TransportUnavailable()
        line = data.decode("utf-8")
        assert line.endswith("\r\n")
        line = line[:-2]
        self.written.append(line)
        for prefix, reply in self.replies.items():
            if line.startswith(prefix):
                if reply:
                    asyncio.get_running_loop().call_soon(self.feed, reply)
                break

    def feed(self, text: str):
        self._receiver(text.encode("utf-8"))


def beacon_reply(uuid: str) -> str:
    return (f"mesh prov beacon-listen on{PROMPT}"
            f"\r\nPB-ADV UUID {uuid}, OOB Info 0x0000, URI Hash 0x0\r\n")


def zero_delays(sequencer: ProvisioningSequencer) -> ProvisioningSequencer:
    sequencer.PROVISION_DELAY = 0.0
    sequencer.STEP_WAIT = 0.0
    sequencer.STEP_SETTLE = 0.0
    sequencer.LISTEN_WINDOW = 0.05
    return sequencer


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def registry() -> NodeRegistry:
    return NodeRegistry()


@pytest.fixture
def dispatcher(gateway) -> CommandDispatcher:
    dispatcher = CommandDispatcher(gateway, timeout=0.05)
    gateway.set_receiver(dispatcher.bytes_arrived)
    return dispatcher


@pytest.fixture
def sequencer(dispatcher, registry) -> ProvisioningSequencer:
    return zero_delays(ProvisioningSequencer(dispatcher, registry))


@pytest.fixture
def controller(gateway) -> MeshProvisioner:
    ctl = MeshProvisioner(response_timeout=0.02)
    zero_delays(ctl.sequencer)
    ctl.INIT_PAUSE = 0.0
    ctl.start()
    ctl.attach(gateway)
    return ctl
