"""
Main entry point for the membership operator.

This module wires configuration, plugins, the reconciler and the controller
together and runs them until a shutdown signal arrives.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from config import get_config
from controller import Controller, ControllerConfig
from events import EventBus
from plugins.inputs.base import InputPlugin
from plugins.registry import get_registry, register_builtin_plugins
from reconciler import MembershipReconciler, ReconcilerSettings, Trigger

logging.basicConfig(
    level=get_config().api.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller and plugins."""

    def __init__(self):
        self.config = get_config()
        self.controller: Optional[Controller] = None
        self.event_bus: Optional[EventBus] = None
        self.input_plugins: List[InputPlugin] = []
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing membership operator")

        register_builtin_plugins()
        registry = get_registry()

        kube_config = self.config.kubernetes
        lb_config = self.config.load_balancer
        ctrl_config = self.config.controller

        # Plugin configs come from the registry (env-loaded) with
        # PLUGIN_CONFIGS overrides
        source_config = registry.get_source_plugin_config("kubernetes")
        source_config.update(self.config.plugins.get_plugin_config("kubernetes"))
        source = await registry.get_source_plugin("kubernetes", source_config)

        balancer_config = registry.get_balancer_plugin_config(lb_config.provider)
        balancer_config.update(self.config.plugins.get_plugin_config(lb_config.provider))
        membership = await registry.get_balancer_plugin(
            lb_config.provider, balancer_config
        )

        if not lb_config.pool_id:
            logger.warning(
                "LB_POOL_ID is not set; reconciliation will halt until it is "
                "configured"
            )

        reconciler = MembershipReconciler(
            source,
            membership,
            ReconcilerSettings(
                scope_key=kube_config.namespace,
                pool_id=lb_config.pool_id,
                control_plane_label=ctrl_config.control_plane_label,
                call_timeout=ctrl_config.call_timeout,
                pass_timeout=ctrl_config.pass_timeout,
                missing_instance_grace=ctrl_config.missing_instance_grace,
            ),
        )

        self.event_bus = EventBus()

        controller_config = ControllerConfig(
            resync_interval=ctrl_config.resync_interval,
            max_concurrent_reconciles=ctrl_config.max_concurrent_reconciles,
            backoff_base_delay=ctrl_config.backoff_base_delay,
            backoff_max_delay=ctrl_config.backoff_max_delay,
            backoff_jitter_factor=ctrl_config.backoff_jitter_factor,
        )
        self.controller = Controller(
            [reconciler],
            config=controller_config,
            event_bus=self.event_bus,
        )

        # Determine which input plugins to load
        enabled_inputs = self.config.plugins.enabled_input_plugins
        if not enabled_inputs:
            enabled_inputs = registry.list_input_plugins()

        for plugin_name in enabled_inputs:
            if not registry.has_input_plugin(plugin_name):
                logger.warning(f"Input plugin '{plugin_name}' not found, skipping")
                continue

            plugin_config = registry.get_input_plugin_config(plugin_name)
            plugin_config.update(self.config.plugins.get_plugin_config(plugin_name))

            plugin = await registry.get_input_plugin(plugin_name, plugin_config)
            plugin.set_controller(self.controller)
            plugin.set_event_bus(self.event_bus)
            self.input_plugins.append(plugin)

        logger.info(
            f"All components initialized: scope={kube_config.namespace}, "
            f"provider={lb_config.provider}, pool={lb_config.pool_id or '<unset>'}"
        )

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting membership operator")

        async def on_trigger(trigger: Trigger) -> bool:
            return self.controller.enqueue(trigger)

        tasks = [asyncio.create_task(self.controller.start())]
        for plugin in self.input_plugins:
            tasks.append(asyncio.create_task(plugin.start(on_trigger)))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping membership operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        for plugin in self.input_plugins:
            await plugin.stop()

        logger.info("Membership operator stopped")


async def main():
    """Main entry point."""
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
