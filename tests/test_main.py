"""Unit tests for main.py - Application wiring."""

import os

import pytest
from unittest.mock import AsyncMock, patch

from config import reset_config
from plugins.registry import reset_registry


@pytest.fixture(autouse=True)
def clean_globals():
    reset_config()
    reset_registry()
    yield
    reset_config()
    reset_registry()


@pytest.mark.asyncio
class TestApplication:
    """Tests for Application.initialize and stop."""

    async def test_initialize_wires_components(self):
        env = {
            "MACHINE_NAMESPACE": "default",
            "LB_PROVIDER": "aws_elb",
            "LB_POOL_ID": "test-load-balancer",
            "CONTROL_PLANE_LABEL": "master",
            "RESYNC_INTERVAL": "15",
            "ENABLED_INPUT_PLUGINS": "http",
            "KUBE_TOKEN_FILE": "/nonexistent/token",
        }
        with patch.dict(os.environ, env, clear=True), patch(
            "plugins.balancers.aws._common.build_client"
        ) as mock_build, patch("plugins.registry.entry_points", return_value=[]):
            from main import Application

            app = Application()
            await app.initialize()

        mock_build.assert_called_once()
        assert app.controller.list_scopes() == ["default"]
        assert app.controller.resync_interval == 15
        status = app.controller.get_status("default")
        assert status["pool_id"] == "test-load-balancer"
        assert [p.name for p in app.input_plugins] == ["http"]
        assert app.input_plugins[0]._controller is app.controller
        assert app.input_plugins[0]._event_bus is app.event_bus

    async def test_unknown_provider_fails(self):
        env = {"LB_PROVIDER": "azure_lb", "KUBE_TOKEN_FILE": "/nonexistent/token"}
        with patch.dict(os.environ, env, clear=True), patch(
            "plugins.registry.entry_points", return_value=[]
        ):
            from main import Application

            app = Application()
            with pytest.raises(ValueError, match="Unknown balancer plugin"):
                await app.initialize()

    async def test_stop_stops_controller_and_plugins(self):
        from main import Application

        app = Application()
        app.running = True
        app.controller = AsyncMock()
        plugin = AsyncMock()
        app.input_plugins = [plugin]

        await app.stop()

        app.controller.stop.assert_awaited_once()
        plugin.stop.assert_awaited_once()
        assert app.running is False
