"""Reconciliation of owned containers against their desired configs."""

import asyncio
import logging
import os
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from berth.agent.drift import diff_configs
from berth.errors import ConfigConflictError, ContainerRuntimeError, VerificationError
from berth.models.config import OwnerConfig
from berth.models.container import ContainerConfig
from berth.models.runtime import ContainerStatus
from berth.providers.base import RuntimeProvider, split_image_reference
from berth.providers.inspect import inspect_to_config
from berth.utils.structures import merge_dicts


logger = logging.getLogger(__name__)


BUILTIN_NETWORKS = ("bridge", "host", "none")
SHARED_NETWORK = "iobroker"
OWNER_LABEL = "iobroker"
BACKUP_LABEL = "iob_backup"


class ContainerState(Enum):
    """Per-container reconciliation state."""
    ABSENT = "absent"
    MATCHING = "matching"
    DRIFTED = "drifted"
    DISABLED = "disabled"
    ERROR = "error"


def prefixed_name(name: Any, prefix: str) -> str:
    """Apply the owner prefix to a resource name.

    ``True``, ``"true"`` and empty names stand for the bare prefix.
    """
    if name is True or name == "true" or not name:
        return prefix
    if name == prefix or name.startswith(f"{prefix}_"):
        return name
    return f"{prefix}_{name}"


def is_custom_network(name: Optional[str]) -> bool:
    return bool(name) and name not in BUILTIN_NETWORKS and not name.startswith("container:")


def _network_name(name: str, prefix: str) -> str:
    if name != "true" and (not is_custom_network(name) or name == SHARED_NETWORK):
        return name
    return prefixed_name(name, prefix)


def enforce_naming(
    config: ContainerConfig,
    prefix: str,
    namespace: str,
    base_dir: Optional[str] = None,
) -> ContainerConfig:
    """Derive the enforced config from a declared one.

    The declared config is left untouched. Applying this twice gives the
    same result as applying it once.
    """
    data = config.model_dump(exclude_none=True)

    data["name"] = prefixed_name(data["name"], prefix)

    image = data["image"]
    _, tag = split_image_reference(image)
    if not tag and "@" not in image:
        data["image"] = f"{image}:latest"

    if data.get("network_mode"):
        data["network_mode"] = _network_name(data["network_mode"], prefix)
    for network in data.get("networks") or []:
        network["name"] = _network_name(network["name"], prefix)

    backups: List[str] = []
    for mount in data.get("mounts") or []:
        source = mount.get("source")
        if mount.get("type") == "volume" and source:
            mount["source"] = prefixed_name(source, prefix)
            if mount.get("iob_backup"):
                backups.append(mount["source"])
        elif mount.get("type") == "bind" and source and base_dir and not os.path.isabs(source):
            mount["source"] = os.path.normpath(os.path.join(base_dir, source))
        copy_from = mount.get("iob_auto_copy_from")
        if copy_from and base_dir and not os.path.isabs(copy_from):
            mount["iob_auto_copy_from"] = os.path.normpath(os.path.join(base_dir, copy_from))

    labels = dict(data.get("labels") or {})
    labels[OWNER_LABEL] = namespace
    if backups:
        listed = [v.strip() for v in labels.get(BACKUP_LABEL, "").split(",") if v.strip()]
        for volume in backups:
            if volume not in listed:
                listed.append(volume)
        labels[BACKUP_LABEL] = ",".join(listed)
    data["labels"] = labels

    return ContainerConfig.model_validate(data)


class ReconciliationController:
    """Drives owned containers towards their desired configs.

    Containers are processed one at a time in declaration order. A failure
    in one container is logged and recorded, and the pass moves on.
    """

    def __init__(
        self,
        provider: RuntimeProvider,
        configs: Optional[List[ContainerConfig]] = None,
        owner: Optional[OwnerConfig] = None,
        monitor_interval: int = 60,
    ):
        """Initialize reconciliation controller."""
        self.provider = provider
        self.owner = owner or OwnerConfig()
        self.monitor_interval = monitor_interval
        self.last_reconciliation: Optional[datetime] = None

        self._reconciliation_lock = asyncio.Lock()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._declared: Dict[str, ContainerConfig] = {}
        self._configs: Dict[str, ContainerConfig] = {}
        self._states: Dict[str, ContainerState] = {}
        self._stats: Dict[str, ContainerStatus] = {}
        self._monitor_task: Optional[asyncio.Task] = None

        self._replace_configs(configs or [])

    @property
    def prefix(self) -> str:
        return self.owner.prefix

    @property
    def configs(self) -> List[ContainerConfig]:
        """Enforced configs in declaration order."""
        return list(self._configs.values())

    @property
    def monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    def get_config(self, name: str) -> Optional[ContainerConfig]:
        return self._configs.get(prefixed_name(name, self.prefix))

    def _enforce(self, config: ContainerConfig) -> ContainerConfig:
        return enforce_naming(config, self.prefix, self.owner.namespace, self.owner.base_dir)

    def _index(self, configs: List[ContainerConfig]) -> Dict[str, tuple]:
        indexed: Dict[str, tuple] = {}
        for config in configs:
            enforced = self._enforce(config)
            if enforced.name in indexed:
                raise ConfigConflictError(f"Container {enforced.name} is declared more than once")
            indexed[enforced.name] = (config, enforced)
        return indexed

    def _replace_configs(self, configs: List[ContainerConfig]) -> List[str]:
        indexed = self._index(configs)
        dropped = [name for name in self._configs if name not in indexed]

        self._declared = {name: declared for name, (declared, _) in indexed.items()}
        self._configs = {name: enforced for name, (_, enforced) in indexed.items()}
        for name in dropped:
            self._states.pop(name, None)
            self._stats.pop(name, None)
        for name, config in self._configs.items():
            if not config.iob_enabled:
                self._states[name] = ContainerState.DISABLED
        return dropped

    def _lock_for(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    def _has_monitored(self) -> bool:
        return any(c.iob_enabled and c.iob_monitoring_enabled for c in self._configs.values())

    # -- Reconciliation --

    async def reconcile_all(self) -> Dict[str, ContainerState]:
        """Run one full reconciliation pass over every owned container.

        Containers removed or modified while the pass runs are skipped or
        left to the call that changed them.
        """
        async with self._reconciliation_lock:
            start_time = datetime.now()
            logger.info("Starting reconciliation pass")

            checked_networks: Set[str] = set()
            any_monitored = False
            for name, config in list(self._configs.items()):
                if await self._reconcile_one(name, checked_networks, config):
                    any_monitored = any_monitored or config.iob_monitoring_enabled

            self.last_reconciliation = datetime.now()
            duration = (self.last_reconciliation - start_time).total_seconds()
            logger.info(f"Reconciliation pass completed in {duration:.2f}s")

        if any_monitored:
            self.start_monitor()
        return dict(self._states)

    def _is_current(self, name: str, config: ContainerConfig) -> bool:
        return self._configs.get(name) is config

    async def _reconcile_one(
        self,
        name: str,
        checked_networks: Optional[Set[str]] = None,
        config: Optional[ContainerConfig] = None,
    ) -> bool:
        config = config or self._configs.get(name)
        if config is None or not self._is_current(name, config):
            return False
        if not config.iob_enabled:
            logger.debug(f"Container {name} is disabled, skipping")
            self._states[name] = ContainerState.DISABLED
            return False

        async with self._lock_for(name):
            if not self._is_current(name, config):
                logger.debug(f"Container {name} changed while waiting, skipping")
                return False
            try:
                await self._reconcile_container(config, checked_networks if checked_networks is not None else set())
            except Exception as e:
                logger.error(f"Failed to reconcile container {name}: {e}")
                if self._is_current(name, config):
                    self._states[name] = ContainerState.ERROR
                return False
            if self._is_current(name, config):
                self._states[name] = ContainerState.MATCHING
            return True

    async def _reconcile_container(self, config: ContainerConfig, checked_networks: Set[str]):
        await self._provision_networks(config, checked_networks)
        await self._provision_volumes(config)

        container = await self.provider.find_container(config.name)
        image_present = await self.provider.has_image(config.image)

        if config.iob_auto_image_update:
            if await self.provider.update_image(config.image):
                logger.info(f"Image {config.image} for container {config.name} was updated")
                if container is not None:
                    await self.provider.remove_container(config.name, force=True)
                    container = None
            image_present = True

        if not image_present:
            logger.info(f"Pulling image {config.image} for container {config.name}")
            await self.provider.pull_image(config.image)
            if not await self.provider.has_image(config.image):
                raise VerificationError(f"Image {config.image} not found after pull")

        if container is None:
            logger.info(f"Creating and starting container {config.name}")
            await self._create_and_start(config)
            return

        differences = await self.diff(config)
        if differences is None:
            logger.info(f"Container {config.name} disappeared, creating it again")
            await self._create_and_start(config)
        elif differences:
            logger.info(
                f"Configuration of container {config.name} has changed: "
                f"{', '.join(differences)}. Recreating container"
            )
            self._states[config.name] = ContainerState.DRIFTED
            await self._recreate(config)
        else:
            logger.debug(f"Configuration of container {config.name} is up to date")
            container = await self.provider.find_container(config.name)
            if container is not None and not container.is_running:
                logger.info(f"Starting container {config.name}")
                await self.provider.start_container(config.name)

    async def diff(self, config: ContainerConfig) -> Optional[List[str]]:
        """Compare a config with the runtime; None when the container is absent."""
        inspect = await self.provider.inspect_container(config.name)
        if inspect is None:
            return None
        return diff_configs(config, inspect_to_config(inspect))

    async def _create_and_start(self, config: ContainerConfig):
        await self.provider.create_container(config)
        await self.provider.start_container(config.name)

    async def _recreate(self, config: ContainerConfig):
        container = await self.provider.find_container(config.name)
        if container is not None and container.is_running:
            await self.provider.stop_container(config.name)
        await self.provider.remove_container(config.name)
        await self._create_and_start(config)

    async def _provision_networks(self, config: ContainerConfig, checked: Set[str]):
        names = []
        if is_custom_network(config.network_mode):
            names.append(config.network_mode)
        if not config.network_mode:
            names += [n.name for n in config.networks or [] if is_custom_network(n.name)]

        for name in names:
            if name in checked:
                continue
            if not await self.provider.has_network(name):
                logger.info(f"Creating network {name}")
                await self.provider.create_network(name)
            checked.add(name)

    async def _provision_volumes(self, config: ContainerConfig):
        mounts = [m for m in config.mounts or [] if m.type == "volume" and m.source]
        if not mounts:
            return

        existing = {volume.name for volume in await self.provider.list_volumes()}
        for mount in mounts:
            if mount.source not in existing:
                logger.info(f"Creating volume {mount.source}")
                await self.provider.create_volume(mount.source)
                existing.add(mount.source)
                if mount.iob_auto_copy_from:
                    await self.provider.copy_to_volume(mount.source, mount.iob_auto_copy_from)
            elif mount.iob_auto_copy_from_force and mount.iob_auto_copy_from:
                await self.provider.copy_to_volume(mount.source, mount.iob_auto_copy_from)

    # -- Owned container management --

    async def add_container(self, config: ContainerConfig) -> Optional[ContainerState]:
        """Take a new container under management and reconcile it."""
        enforced = self._enforce(config)
        if not enforced.iob_enabled:
            logger.info(f"Ignoring disabled container {enforced.name}")
            return None
        if enforced.name in self._configs:
            raise ConfigConflictError(f"Container {enforced.name} already exists")

        self._declared[enforced.name] = config
        self._configs[enforced.name] = enforced
        await self._reconcile_one(enforced.name)
        if enforced.iob_monitoring_enabled and self._states.get(enforced.name) == ContainerState.MATCHING:
            self.start_monitor()
        return self._states.get(enforced.name)

    async def modify_container(self, name: str, changes: Dict[str, Any]) -> ContainerState:
        """Deep-merge partial changes into a managed config and reconcile it."""
        name = prefixed_name(name, self.prefix)
        if name not in self._configs:
            raise ValueError(f"Container {name} not found")

        async with self._lock_for(name):
            if name not in self._configs:
                raise ValueError(f"Container {name} not found")

            merged = merge_dicts(self._declared[name].model_dump(exclude_none=True), changes)
            declared = ContainerConfig.model_validate(merged)
            enforced = self._enforce(declared)
            if enforced.name != name:
                if enforced.name in self._configs:
                    raise ConfigConflictError(f"Container {enforced.name} already exists")
                logger.warning(f"Container {name} renamed to {enforced.name}, the old container is left in place")

            self._declared = {
                (enforced.name if key == name else key): (declared if key == name else value)
                for key, value in self._declared.items()
            }
            self._configs = {
                (enforced.name if key == name else key): (enforced if key == name else value)
                for key, value in self._configs.items()
            }
            if enforced.name != name:
                self._states.pop(name, None)
                self._stats.pop(name, None)

        await self._reconcile_one(enforced.name, config=enforced)
        if enforced.iob_monitoring_enabled and self._states.get(enforced.name) == ContainerState.MATCHING:
            self.start_monitor()
        return self._states.get(enforced.name, ContainerState.ABSENT)

    async def remove_container(self, name: str):
        """Stop managing a container and remove it from the runtime.

        Waits for any work in progress on the same container. A network or
        volume named exactly like the container is removed too, unless the
        runtime refuses because something else still uses it.
        """
        name = prefixed_name(name, self.prefix)
        if name not in self._configs:
            raise ValueError(f"Container {name} not found")

        async with self._lock_for(name):
            if name not in self._configs:
                raise ValueError(f"Container {name} not found")

            del self._configs[name]
            self._declared.pop(name, None)
            self._states.pop(name, None)
            self._stats.pop(name, None)

            if await self.provider.find_container(name) is not None:
                await self.provider.remove_container(name, force=True)

            if name.startswith(f"{self.prefix}_"):
                try:
                    if await self.provider.has_network(name):
                        await self.provider.remove_network(name)
                except ContainerRuntimeError as e:
                    logger.debug(f"Network {name} kept: {e}")
                try:
                    if await self.provider.has_volume(name):
                        await self.provider.remove_volume(name)
                except ContainerRuntimeError as e:
                    logger.debug(f"Volume {name} kept: {e}")

        self._locks.pop(name, None)
        if not self._has_monitored():
            await self.stop_monitor()

    async def update_configs(self, configs: List[ContainerConfig]):
        """Replace the managed set after a configuration reload."""
        async with self._reconciliation_lock:
            dropped = self._replace_configs(configs)
        for name in dropped:
            logger.warning(f"Container {name} is no longer declared, leaving it in place unmanaged")
        if not self._has_monitored():
            await self.stop_monitor()

    # -- Monitoring --

    def start_monitor(self):
        """Start the periodic monitor if it is not running yet."""
        if self.monitoring:
            return
        logger.info(f"Starting container monitor (interval {self.monitor_interval}s)")
        self._monitor_task = asyncio.create_task(self._monitor_loop())

    async def stop_monitor(self):
        if self._monitor_task is None:
            return
        task, self._monitor_task = self._monitor_task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Container monitor stopped")

    async def _monitor_loop(self):
        while True:
            await asyncio.sleep(self.monitor_interval)
            try:
                await self.monitor_tick()
            except Exception as e:
                logger.error(f"Container monitor tick failed: {e}")

    async def monitor_tick(self):
        """Restart stopped monitored containers and sample their stats."""
        listed = {info.name: info for info in await self.provider.list_containers(all=True)}

        for name, config in list(self._configs.items()):
            if not (config.iob_enabled and config.iob_monitoring_enabled):
                continue

            info = listed.get(name)
            status = info.status if info else "unknown"
            async with self._lock_for(name):
                if not self._is_current(name, config):
                    continue
                if info is None or not info.is_running:
                    logger.warning(f"Container {name} is not running. Restarting")
                    try:
                        await self.provider.start_container(name)
                    except ContainerRuntimeError as e:
                        logger.warning(f"Cannot start container {name}: {e}")
                        self._record_status(name, status)
                        continue
                    status = "running"

                try:
                    stats = await self.provider.container_stats(name)
                except ContainerRuntimeError as e:
                    logger.warning(f"Cannot read stats of container {name}: {e}")
                    stats = None

                data = stats.model_dump() if stats else {}
                self._stats[name] = ContainerStatus(**data, status=status, status_ts=datetime.now())

    def _record_status(self, name: str, status: str):
        previous = self._stats.get(name)
        data = previous.model_dump() if previous else {}
        data.update(status=status, status_ts=datetime.now())
        self._stats[name] = ContainerStatus(**data)

    def get_stats(self) -> Dict[str, ContainerStatus]:
        """Last recorded status and resource usage per monitored container."""
        return dict(self._stats)

    # -- Status --

    async def get_container_status(self, name: str) -> Optional[Dict[str, Any]]:
        """Get detailed status for a specific container."""
        config = self.get_config(name)
        if config is None:
            return None

        info = await self.provider.find_container(config.name)
        state = self._states.get(config.name)
        if state is None:
            if not config.iob_enabled:
                state = ContainerState.DISABLED
            elif info is None:
                state = ContainerState.ABSENT
            else:
                differences = await self.diff(config)
                state = ContainerState.DRIFTED if differences else ContainerState.MATCHING

        return {
            "name": config.name,
            "image": config.image,
            "enabled": config.iob_enabled,
            "exists": info is not None,
            "running": info.is_running if info else False,
            "status": info.status if info else "absent",
            "state": state.value,
            "monitoring": config.iob_monitoring_enabled,
        }

    async def get_all_container_statuses(self) -> Dict[str, Dict[str, Any]]:
        """Get status for all containers."""
        statuses = {}
        for name in list(self._configs):
            try:
                status = await self.get_container_status(name)
            except ContainerRuntimeError as e:
                logger.error(f"Failed to get status of container {name}: {e}")
                status = {"name": name, "state": ContainerState.ERROR.value, "error": str(e)}
            if status:
                statuses[name] = status
        return statuses

    async def shutdown(self):
        """Stop monitoring and every container flagged to stop on unload."""
        await self.stop_monitor()
        for name, config in self._configs.items():
            if not (config.iob_enabled and config.iob_stop_on_unload):
                continue
            try:
                async with self._lock_for(name):
                    info = await self.provider.find_container(name)
                    if info is not None and info.is_running:
                        logger.info(f"Stopping container {name} on shutdown")
                        await self.provider.stop_container(name)
            except ContainerRuntimeError as e:
                logger.warning(f"Cannot stop container {name} on shutdown: {e}")
