"""Tests for the Textual command line, driven headless with run_test()."""

from __future__ import annotations

import pytest

from mesh_provisioner.controller import MeshProvisioner
from mesh_provisioner.tui_app import ProvisionerApp


@pytest.mark.asyncio
async def test_d_runs_discovery_like_the_plain_cli() -> None:
    controller = MeshProvisioner()
    controller.start()
    app = ProvisionerApp(controller)

    async with app.run_test() as pilot:
        app.dispatch_command("d")
        await app.workers.wait_for_complete()
        await pilot.pause()

        assert "Serial port not open" in controller.status
        assert app.debug_mode is False


@pytest.mark.asyncio
async def test_debug_toggles_raw_traffic() -> None:
    controller = MeshProvisioner()
    controller.start()
    app = ProvisionerApp(controller)

    async with app.run_test() as pilot:
        app.dispatch_command("debug")
        await app.workers.wait_for_complete()
        await pilot.pause()

        assert app.debug_mode is True
