"""HTTP command server for agent communication."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from aiohttp import web

from berth.agent.config import ConfigManager
from berth.agent.engine import ReconciliationController
from berth.models.container import ContainerConfig


logger = logging.getLogger(__name__)


class AgentServer:
    """Agent command server bound to a Unix socket."""

    def __init__(
        self,
        socket_path: Path,
        controller: ReconciliationController,
        config_manager: ConfigManager,
        ready_event: Optional[asyncio.Event] = None,
    ):
        """Initialize server."""
        self.socket_path = Path(socket_path)
        self.controller = controller
        self.config_manager = config_manager
        self.ready_event = ready_event or asyncio.Event()
        self.app = web.Application()
        self.runner: Optional[web.AppRunner] = None
        self._setup_routes()

    def _setup_routes(self):
        """Setup API routes."""
        self.app.router.add_post('/api/v1/command', self._handle_command)

    async def start(self):
        """Start the server."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        if self.socket_path.exists():
            self.socket_path.unlink()
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)

        site = web.UnixSite(self.runner, str(self.socket_path))
        await site.start()
        os.chmod(self.socket_path, 0o666)
        logger.info(f"Agent listening on unix:{self.socket_path}")

    async def stop(self):
        """Stop the server."""
        if self.runner:
            await self.runner.cleanup()
        if self.socket_path.exists():
            self.socket_path.unlink()
        logger.info("Agent server stopped")

    async def _handle_command(self, request: web.Request) -> web.Response:
        """Handle a command request."""
        try:
            data = await request.json()
            command = data.get("command")
            args = data.get("args") or {}

            response_data = await self._process_command(command, args)
            return web.json_response({"success": True, "data": response_data})

        except Exception as e:
            logger.error(f"Command error: {e}", exc_info=True)
            return web.json_response({"success": False, "error": str(e)}, status=500)

    async def _process_command(self, command: str, args: Dict[str, Any]) -> Any:
        """Dispatch a command to its handler."""
        handlers = {
            "status": self._handle_status,
            "stats": self._handle_stats,
            "reconcile": self._handle_reconcile,
            "reload": self._handle_reload,
            "add": self._handle_add,
            "modify": self._handle_modify,
            "remove": self._handle_remove,
            "ready": self._handle_ready,
        }

        handler = handlers.get(command)
        if not handler:
            raise ValueError(f"Unknown command: {command}")

        return await handler(args)

    async def _handle_status(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """Handle status request."""
        container_name = args.get("container")

        if container_name:
            status = await self.controller.get_container_status(container_name)
            if not status:
                raise ValueError(f"Container {container_name} not found")
            return {"containers": {status["name"]: status}}

        containers = await self.controller.get_all_container_statuses()
        last = self.controller.last_reconciliation
        return {
            "agent": {
                "running": True,
                "ready": self.ready_event.is_set(),
                "monitoring": self.controller.monitoring,
                "last_reconciliation": last.isoformat() if last else None,
            },
            "containers": containers,
        }

    async def _handle_stats(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """Handle stats request."""
        return {
            name: status.model_dump(mode="json")
            for name, status in self.controller.get_stats().items()
        }

    async def _handle_reconcile(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """Handle reconcile request."""
        states = await self.controller.reconcile_all()
        return {"reconciled": True, "states": {name: state.value for name, state in states.items()}}

    async def _handle_reload(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """Handle reload configuration request."""
        await self.config_manager.load()
        await self.controller.update_configs(self.config_manager.containers)
        return {"reloaded": True, "containers": len(self.config_manager.containers)}

    async def _handle_add(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """Handle add container request."""
        if not args.get("config"):
            raise ValueError("Container config required")
        config = ContainerConfig.model_validate(args["config"])
        state = await self.controller.add_container(config)
        return {"container": config.name, "added": state is not None, "state": state.value if state else None}

    async def _handle_modify(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """Handle modify container request."""
        container_name = args.get("name")
        if not container_name:
            raise ValueError("Container name required")
        state = await self.controller.modify_container(container_name, args.get("changes") or {})
        return {"container": container_name, "modified": True, "state": state.value}

    async def _handle_remove(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """Handle remove request."""
        container_name = args.get("name")
        if not container_name:
            raise ValueError("Container name required")

        await self.controller.remove_container(container_name)
        return {"container": container_name, "removed": True}

    async def _handle_ready(self, args: Dict[str, Any]) -> Dict[str, Any]:
        """Release the readiness gate in front of the first reconciliation."""
        already = self.ready_event.is_set()
        self.ready_event.set()
        return {"ready": True, "already_ready": already}
