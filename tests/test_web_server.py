"""Tests for the FastAPI surface."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from mesh_provisioner import web_server


@pytest.fixture
def client(controller):
    web_server.set_controller(controller)
    yield TestClient(web_server.app)
    web_server.set_controller(None)


def test_state(client, controller) -> None:
    controller.registry.register(0x0002, "abcd")

    data = client.get("/api/state").json()

    assert data["nodes"][1]["address"] == "0x0002"
    assert data["next_address"] == "0x0002"


def test_state_without_controller() -> None:
    web_server.set_controller(None)

    data = TestClient(web_server.app).get("/api/state").json()

    assert data == {"error": "Provisioner not initialized"}


def test_node_detail(client, controller) -> None:
    controller.registry.register(0x0002, "abcd")

    data = client.get("/api/nodes/0002").json()

    assert data["identifier"] == "abcd"
    assert data["detail"] == "Address: 0x0002\nUUID: abcd"


def test_unknown_node_is_404(client) -> None:
    assert client.get("/api/nodes/0x0042").status_code == 404


def test_bad_address_is_400(client) -> None:
    assert client.get("/api/nodes/zz").status_code == 400


def test_output_intent(client, gateway) -> None:
    data = client.post("/api/output", json={"on": True}).json()

    assert gateway.written == ["leds 1"]
    assert data["status"] == "Local LED set to: on"


def test_sendto_intent(client, gateway) -> None:
    client.post("/api/sendto", json={"address": "0x0002", "text": "leds 0"})

    assert gateway.written == ["sendto 0002 leds 0"]


def test_websocket_sends_initial_state(client) -> None:
    with client.websocket_connect("/ws") as ws:
        msg = ws.receive_json()

    assert msg["type"] == "state"
    assert msg["data"]["state"] == "idle"
