"""Configuration management for the agent."""

import asyncio
import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError
from ruamel.yaml import YAML

from berth.errors import BerthError
from berth.manifest import load_manifest, map_service
from berth.models.config import BerthConfig
from berth.models.container import ContainerConfig
from berth.models.manifest import ComposeManifest
from berth.utils.templates import resolve_templates


logger = logging.getLogger(__name__)


YAML_SUFFIXES = (".yaml", ".yml")
JSON_SUFFIXES = (".json",)


class ConfigManager:
    """Loads the agent config, template values and manifests."""

    def __init__(self, config_dir: Union[str, Path]):
        """Initialize configuration manager."""
        self.config_dir = Path(config_dir)
        self.yaml = YAML(typ="safe", pure=True)
        self.config: Optional[BerthConfig] = None
        self.values: Dict[str, Any] = {}
        self.manifests: Dict[str, ComposeManifest] = {}
        self.containers: List[ContainerConfig] = []
        self._config_hashes: Dict[str, str] = {}

    @property
    def base_dir(self) -> Path:
        """Directory that relative manifest paths are resolved against."""
        if self.config and self.config.owner.base_dir:
            base = Path(self.config.owner.base_dir)
            return base if base.is_absolute() else (self.config_dir / base).resolve()
        return self.config_dir.resolve()

    @property
    def docker_api(self) -> Union[str, Dict[str, Any], None]:
        """First ``iobDockerApi`` selection found across loaded manifests."""
        for manifest in self.manifests.values():
            if manifest.docker_api:
                return manifest.docker_api
        return None

    async def load(self):
        """Load all configuration files."""
        logger.info(f"Loading configuration from {self.config_dir}")
        self._config_hashes.clear()

        await self._load_main_config()
        await self._load_values()
        await self._load_manifests()

        logger.info(f"Configuration loaded: {len(self.containers)} container(s)")

    async def _load_main_config(self):
        """Load main configuration file."""
        config_file = self.config_dir / "config.yaml"
        if not config_file.exists():
            raise FileNotFoundError(f"Main config not found: {config_file}")

        try:
            data = await self._read_yaml(config_file)
            self.config = BerthConfig(**(data or {}))
            logger.debug(f"Loaded main config: {config_file}")
        except ValidationError as e:
            logger.error(f"Invalid main config: {e}")
            raise

    async def _load_values(self):
        """Load the values tree that manifest placeholders are resolved from."""
        self.values = {}
        values_file = self.config.owner.values_file
        if not values_file:
            return

        path = self._resolve_path(values_file)
        if not path.exists():
            logger.warning(f"Values file not found: {path}")
            return

        try:
            data = await self._read_document(path)
        except Exception as e:
            logger.error(f"Error loading {path}: {e}")
            return
        if data is not None and not isinstance(data, dict):
            logger.error(f"Values file {path} must contain a mapping")
            return
        self.values = data or {}

    async def _load_manifests(self):
        """Load, resolve, normalize and map every configured manifest."""
        self.manifests.clear()
        containers: List[ContainerConfig] = []
        owner = self.config.owner

        for entry in owner.manifests:
            path = self._resolve_path(entry)
            if not path.exists():
                logger.warning(f"Manifest not found: {path}")
                continue

            try:
                raw = await self._read_document(path)
            except Exception as e:
                logger.error(f"Error loading {path}: {e}")
                continue
            if raw is None:
                continue

            try:
                resolved = resolve_templates(
                    raw,
                    self.values,
                    {"instance": owner.instance},
                    strict=owner.strict_templates,
                )
                manifest = load_manifest(resolved)
            except BerthError as e:
                logger.error(f"Error loading {path}: {e}")
                continue

            self.manifests[str(path)] = manifest
            containers.extend(self._map_services(manifest, path))
            logger.debug(f"Loaded manifest {path}")

        self.containers = containers

    def _map_services(self, manifest: ComposeManifest, path: Path) -> List[ContainerConfig]:
        configs = []
        for name in manifest.services:
            try:
                configs.append(map_service(name, manifest, self.base_dir))
            except BerthError as e:
                logger.error(f"Skipping service {name} in {path}: {e}")
        return configs

    def _resolve_path(self, entry: str) -> Path:
        path = Path(entry)
        return path if path.is_absolute() else self.config_dir / path

    async def _read_document(self, file_path: Path) -> Any:
        """Read a YAML or JSON document, dispatching on the file extension."""
        suffix = file_path.suffix.lower()
        if suffix in YAML_SUFFIXES:
            return await self._read_yaml(file_path)
        if suffix in JSON_SUFFIXES:
            return await self._read_json(file_path)
        logger.warning(f"Unsupported file type, skipping: {file_path}")
        return None

    def _read_text(self, file_path: Path) -> str:
        content = file_path.read_text()
        # Store hash for change detection
        self._config_hashes[str(file_path)] = hashlib.md5(content.encode()).hexdigest()
        return content

    async def _read_yaml(self, file_path: Path) -> Any:
        """Read and parse YAML file."""
        return await asyncio.to_thread(lambda: self.yaml.load(self._read_text(file_path)))

    async def _read_json(self, file_path: Path) -> Any:
        """Read and parse JSON file."""
        return await asyncio.to_thread(lambda: json.loads(self._read_text(file_path)))

    def has_changed(self) -> bool:
        """Check whether any loaded file changed on disk since the last load."""
        for path, known_hash in self._config_hashes.items():
            file_path = Path(path)
            if not file_path.exists():
                return True
            if hashlib.md5(file_path.read_bytes()).hexdigest() != known_hash:
                return True
        return False

    async def watch_for_changes(self) -> bool:
        """Check if configuration files have changed."""
        return await asyncio.to_thread(self.has_changed)

    def get_container_config(self, name: str) -> Optional[ContainerConfig]:
        """Get a declared container config by name."""
        for config in self.containers:
            if config.name == name:
                return config
        return None

    def render(self) -> List[Dict[str, Any]]:
        """Mapped configs as plain data, for offline inspection."""
        return [config.model_dump(mode="json", exclude_none=True) for config in self.containers]
