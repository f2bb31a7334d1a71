"""Main agent implementation."""

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Optional

from watchfiles import awatch

from berth.agent.config import ConfigManager
from berth.agent.engine import ReconciliationController
from berth.agent.server import AgentServer
from berth.providers import ProviderRegistry
from berth.utils.logging import setup_logging


logger = logging.getLogger(__name__)


class BerthAgent:
    """Main agent orchestrating the owned containers."""

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize the agent."""
        self.config_dir = config_dir or Path("./configs")
        self.state_dir = Path("./state")
        self.config_manager: Optional[ConfigManager] = None
        self.controller: Optional[ReconciliationController] = None
        self.server: Optional[AgentServer] = None
        self.shutdown_event = asyncio.Event()
        self.ready_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    async def initialize(self):
        """Initialize agent components."""
        self.config_manager = ConfigManager(self.config_dir)
        await self.config_manager.load()

        config = self.config_manager.config
        setup_logging(config.agent.log_level)

        self.state_dir = Path(config.agent.state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

        registry = ProviderRegistry()
        provider = await registry.initialize(config, docker_api=self.config_manager.docker_api)

        self.controller = ReconciliationController(
            provider=provider,
            configs=self.config_manager.containers,
            owner=config.owner,
            monitor_interval=config.agent.monitor_interval,
        )

        socket_path = Path(config.agent.socket_path)
        if not socket_path.is_absolute():
            socket_path = self.state_dir / socket_path.name

        self.server = AgentServer(
            socket_path=socket_path,
            controller=self.controller,
            config_manager=self.config_manager,
            ready_event=self.ready_event,
        )

        if not self.needs_ready_signal():
            self.ready_event.set()

        logger.info("Agent initialized successfully")

    def needs_ready_signal(self) -> bool:
        """Whether any enabled container asks to wait for the ready command."""
        return any(
            config.iob_enabled and config.iob_wait_for_ready
            for config in self.controller.configs
        )

    async def run(self):
        """Run the agent main loop."""
        await self.initialize()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.shutdown)

        try:
            server_task = asyncio.create_task(self.server.start())
            self._tasks.append(server_task)

            self._tasks.append(asyncio.create_task(self._initial_reconciliation()))

            if self.config_manager.config.agent.watch:
                self._tasks.append(asyncio.create_task(self._config_watch_loop()))

            logger.info("Agent started, waiting for shutdown signal")
            await self.shutdown_event.wait()

        finally:
            await self._cleanup()

    async def _initial_reconciliation(self):
        """Run the first pass once the readiness gate is open."""
        if not self.ready_event.is_set():
            logger.info("Waiting for the ready command before the first reconciliation")
            await self.ready_event.wait()

        try:
            await self.controller.reconcile_all()
        except Exception as e:
            logger.error(f"Reconciliation error: {e}", exc_info=True)

    async def reload(self):
        """Reload configuration and reconcile the new desired state."""
        await self.config_manager.load()
        await self.controller.update_configs(self.config_manager.containers)
        if self.ready_event.is_set():
            await self.controller.reconcile_all()

    async def _config_watch_loop(self):
        """Watch for configuration changes."""
        logger.info(f"Starting config watcher on {self.config_manager.config_dir}")
        try:
            async for changes in awatch(self.config_manager.config_dir, stop_event=self.shutdown_event):
                if not await self.config_manager.watch_for_changes():
                    logger.debug("Watched files touched without content change")
                    continue
                logger.info("Configuration changed, reloading")
                try:
                    await self.reload()
                except Exception as e:
                    logger.error(f"Failed to reload configuration: {e}")
        except Exception as e:
            if not self.shutdown_event.is_set():
                logger.error(f"Config watch error: {e}", exc_info=True)

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self.shutdown_event.set()

    async def _cleanup(self):
        """Clean up resources."""
        logger.info("Cleaning up agent resources")

        for task in self._tasks:
            if not task.done():
                task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.controller:
            await self.controller.shutdown()

        if self.server:
            await self.server.stop()

        logger.info("Agent cleanup completed")


async def run_agent():
    """Run the agent."""
    # Allow config dir override from environment
    config_dir = os.environ.get("BERTH_CONFIG_DIR")
    agent = BerthAgent(config_dir=Path(config_dir) if config_dir else None)
    await agent.run()
