"""Configuration models."""

import re
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AgentConfig(BaseModel):
    """Agent configuration."""
    socket_path: str = Field(default="./state/berth-agent.sock")
    monitor_interval: int = Field(default=60, ge=5)
    log_level: str = Field(default="INFO")
    config_dir: str = Field(default="./configs")
    state_dir: str = Field(default="./state")
    watch: bool = True

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class OwnerConfig(BaseModel):
    """The configuration instance that owns the managed containers."""
    namespace: str = Field(default="berth.0", min_length=1)
    name_prefix: str = Field(default="iob", min_length=1)
    base_dir: Optional[str] = None
    manifests: List[str] = Field(default_factory=lambda: ["docker-compose.yaml"])
    values_file: Optional[str] = "values.yaml"
    strict_templates: bool = False

    @property
    def instance(self) -> int:
        """Instance ordinal taken from a ``name.N`` namespace."""
        _, _, suffix = self.namespace.rpartition(".")
        return int(suffix) if suffix.isdigit() else 0

    @property
    def prefix(self) -> str:
        """Naming prefix applied to every owned runtime resource."""
        return f"{self.name_prefix}_{re.sub(r'[-.]', '_', self.namespace)}"


class RuntimeConfig(BaseModel):
    """Container runtime driver settings."""
    driver: Literal["cli", "api"] = "cli"
    binary: str = "docker"
    use_sudo: bool = False
    base_url: Optional[str] = None
    hosts: Dict[str, str] = Field(default_factory=dict)
    timeout: int = Field(default=600, ge=1)
    helper_image: str = "alpine:latest"


class BerthConfig(BaseModel):
    """Main configuration model."""
    model_config = ConfigDict(extra="ignore")

    agent: AgentConfig = Field(default_factory=AgentConfig)
    owner: OwnerConfig = Field(default_factory=OwnerConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
