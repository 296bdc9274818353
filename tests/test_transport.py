"""Tests for the pyserial transport, using pyserial's loop:// port."""

from __future__ import annotations

import asyncio

import pytest
import serial

from mesh_provisioner.exceptions import TransportUnavailable
from mesh_provisioner.transport import SerialTransport


@pytest.fixture
def loop_port():
    transport = SerialTransport("loop://")
    transport.RESET_PULSE = 0.0
    transport.BOOT_WAIT = 0.0
    yield transport
    transport.close()


@pytest.mark.asyncio
async def test_chunks_delivered_on_event_loop(loop_port) -> None:
    """Echoed bytes come back through the receiver on the loop thread."""

    received: asyncio.Queue = asyncio.Queue()
    loop_port.set_receiver(received.put_nowait)
    loop_port.open(asyncio.get_running_loop())
    assert loop_port.is_open

    loop_port.write(b"leds 1\r\n")
    data = b""
    while b"leds 1\r\n" not in data:
        data += await asyncio.wait_for(received.get(), timeout=2.0)

    # Wake-up newline written on open arrives first
    assert data.startswith(b"\n")


def test_write_before_open_raises() -> None:
    with pytest.raises(TransportUnavailable):
        SerialTransport("loop://").write(b"leds 1\r\n")


@pytest.mark.asyncio
async def test_open_missing_port_raises() -> None:
    transport = SerialTransport("/dev/does-not-exist-mesh")

    with pytest.raises(TransportUnavailable) as err:
        transport.open(asyncio.get_running_loop())
    assert "can't open" in err.value.reason
    assert not transport.is_open


def test_close_is_idempotent(loop_port) -> None:
    loop_port.close()
    loop_port.close()

    assert not loop_port.is_open


class _DeadPort:
    """Port that opens but fails on the first write."""

    dtr = rts = True

    def __init__(self):
        self.closed = False

    def write(self, data):
        raise serial.SerialException("device disconnected")

    def flush(self):
        pass

    def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_failure_after_open_closes_port(monkeypatch) -> None:
    port = _DeadPort()
    monkeypatch.setattr(serial, "serial_for_url", lambda *args, **kwargs: port)
    transport = SerialTransport("/dev/ttyACM0")
    transport.RESET_PULSE = 0.0
    transport.BOOT_WAIT = 0.0

    with pytest.raises(TransportUnavailable) as err:
        transport.open(asyncio.get_running_loop())

    assert "device disconnected" in err.value.reason
    assert port.closed
    assert not transport.is_open
