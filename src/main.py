"""
Main entry point for the secretsync operator.

This module wires the database, the plugin registry, the event bus, the
controller and the status API together and runs them until a shutdown
signal arrives.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from config import Config, get_config
from controller import Controller
from db import DatabaseManager
from events import EventBus
from plugins.inputs.base import InputPlugin
from plugins.inputs.http import HTTPInputPlugin
from plugins.registry import PluginRegistry, get_registry, register_builtin_plugins

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller and plugins."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.db: Optional[DatabaseManager] = None
        self.registry: Optional[PluginRegistry] = None
        self.controller: Optional[Controller] = None
        self.event_bus: Optional[EventBus] = None
        self.input_plugins: List[InputPlugin] = []
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing secretsync operator")

        register_builtin_plugins()
        self.registry = get_registry()

        # Initialize the enabled provider plugins up front so configuration
        # errors surface at start-up rather than on the first reconcile
        for plugin_name in self.registry.list_provider_plugins():
            if not self.config.plugins.is_provider_enabled(plugin_name):
                continue
            await self.registry.get_provider_plugin(
                plugin_name, self.config.plugins.get_plugin_config(plugin_name)
            )

        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        self.event_bus = EventBus()
        self.db.set_event_bus(self.event_bus)

        self.controller = Controller(
            db_manager=self.db,
            registry=self.registry,
            config=self.config.controller,
            event_bus=self.event_bus,
            logger=logging.getLogger("secretsync.controller"),
            plugin_config=self.config.plugins,
        )

        if self.config.api.enabled:
            api_config = self.config.api
            plugin = HTTPInputPlugin()
            await plugin.initialize(
                {
                    "host": api_config.host,
                    "port": api_config.port,
                    "log_level": api_config.log_level,
                    "cors_enabled": api_config.cors_enabled,
                    "cors_origins": api_config.cors_origins,
                }
            )
            plugin.set_db_manager(self.db)
            plugin.set_event_bus(self.event_bus)
            plugin.set_controller(self.controller)
            plugin.set_registry(self.registry)
            self.input_plugins.append(plugin)
            logger.info(f"Initialized input plugin: {plugin.name}")

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting secretsync operator")

        tasks = [asyncio.create_task(self.controller.start())]
        for plugin in self.input_plugins:
            tasks.append(asyncio.create_task(plugin.start()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping secretsync operator")
        self.running = False

        if self.controller:
            await self.controller.stop()

        for plugin in self.input_plugins:
            await plugin.stop()

        if self.db:
            await self.db.close()

        logger.info("secretsync operator stopped")


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
