"""Tests for the serialized command dispatcher."""

from __future__ import annotations

import asyncio

import pytest

from mesh_provisioner.dispatcher import CommandDispatcher
from mesh_provisioner.exceptions import (
    ResponseTimeout,
    TransactionInProgress,
    TransportUnavailable,
)

from .conftest import PROMPT, FakeGateway


@pytest.mark.asyncio
async def test_second_send_while_pending_fails_then_times_out(dispatcher, gateway) -> None:
    """A pending transaction blocks the next command and times out empty."""

    tx = dispatcher.send("cmd")
    with pytest.raises(TransactionInProgress) as err:
        dispatcher.send("cmd2")
    assert err.value.pending == "cmd"
    assert gateway.written == ["cmd"]

    with pytest.raises(ResponseTimeout) as timeout:
        await tx.wait()
    assert timeout.value.response.text == ""
    assert timeout.value.response.timed_out
    assert not dispatcher.busy


@pytest.mark.asyncio
async def test_completes_when_prompt_returns(dispatcher, gateway) -> None:
    gateway.replies["leds"] = f"leds 1\r\nLED set to: on{PROMPT}"

    response = await dispatcher.request("leds 1", timeout=5.0)

    assert not response.timed_out
    assert "LED set to: on" in response.text
    assert dispatcher.transaction_count == 1


@pytest.mark.asyncio
async def test_partial_buffer_on_deadline(dispatcher, gateway) -> None:
    gateway.replies["mesh"] = "no prompt here\r\n"

    response = await dispatcher.request("mesh init")

    assert response.timed_out
    assert response.text == "no prompt here\r\n"


@pytest.mark.asyncio
async def test_hold_until_deadline(dispatcher, gateway) -> None:
    """until=None keeps the transaction open even after the prompt."""

    gateway.replies["mesh prov"] = f"ok{PROMPT}"
    loop = asyncio.get_running_loop()
    started = loop.time()

    response = await dispatcher.request("mesh prov remote-adv x", timeout=0.1, until=None)

    assert response.timed_out
    assert loop.time() - started >= 0.09
    assert response.text.startswith("ok")


@pytest.mark.asyncio
async def test_bytes_between_transactions_belong_to_next_read(dispatcher, gateway) -> None:
    gateway.feed(f"Received message from 0x0003: hi{PROMPT}")
    gateway.replies["leds"] = f"leds 0{PROMPT}"

    response = await dispatcher.request("leds 0", timeout=5.0)

    # Stale prompt did not complete it early; both chunks are handed over
    assert response.text.startswith("Received message from 0x0003")
    assert response.text.rstrip().endswith("\x1b[m")
    assert "leds 0" in response.text


@pytest.mark.asyncio
async def test_buffer_reset_after_completion(dispatcher, gateway) -> None:
    gateway.replies["a"] = f"first{PROMPT}"
    gateway.replies["b"] = f"second{PROMPT}"

    first = await dispatcher.request("a", timeout=5.0)
    second = await dispatcher.request("b", timeout=5.0)

    assert "first" in first.text
    assert "first" not in second.text


@pytest.mark.asyncio
async def test_idle_traffic_is_capped_to_whole_lines(dispatcher, gateway) -> None:
    """Unsolicited output between transactions keeps only the newest lines."""

    dispatcher.CARRY_LIMIT = 64
    for n in range(20):
        gateway.feed(f"line {n:02d}\r\n")
    gateway.replies["leds"] = f"leds 1{PROMPT}"

    response = await dispatcher.request("leds 1", timeout=5.0)

    carried = response.text.split("leds 1")[0]
    assert len(carried) <= 64
    assert carried.startswith("line ")
    assert "line 00" not in carried
    assert carried.endswith("line 19\r\n")


@pytest.mark.asyncio
async def test_closed_transport_raises() -> None:
    gateway = FakeGateway()
    gateway.open = False
    dispatcher = CommandDispatcher(gateway)

    with pytest.raises(TransportUnavailable):
        dispatcher.send("leds 1")
    assert not dispatcher.busy


@pytest.mark.asyncio
async def test_no_transport_raises() -> None:
    with pytest.raises(TransportUnavailable):
        CommandDispatcher(None).send("leds 1")


@pytest.mark.asyncio
async def test_multiline_command_rejected(dispatcher, gateway) -> None:
    with pytest.raises(ValueError):
        dispatcher.send("leds 1\nleds 0")
    assert gateway.written == []


@pytest.mark.asyncio
async def test_abort_fails_waiter(dispatcher) -> None:
    tx = dispatcher.send("mesh init")
    dispatcher.abort(TransportUnavailable("gone"))

    with pytest.raises(TransportUnavailable):
        await tx.wait()
    assert not dispatcher.busy


@pytest.mark.asyncio
async def test_traffic_hook_sees_every_chunk(gateway) -> None:
    chunks = []
    dispatcher = CommandDispatcher(gateway, timeout=0.05, on_traffic=chunks.append)
    gateway.set_receiver(dispatcher.bytes_arrived)
    gateway.replies["leds"] = f"LED set to: on{PROMPT}"

    await dispatcher.request("leds 1", timeout=5.0)

    assert chunks == [f"LED set to: on{PROMPT}".encode()]
