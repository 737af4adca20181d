"""
Configuration Manager
---------------------
Loads gatekeeper configuration from YAML with environment overrides.

Rules:
- Secrets never in the file (audit key comes from the environment)
- GATEKEEPER_<KEY> environment variables override scalar keys
- Invalid configuration is a hard error, not a silent default
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
import os

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.errors import ConfigError
from infra.logging import get_logger

ENV_PREFIX = "GATEKEEPER_"
DEFAULT_CONFIG_PATH = "gatekeeper.yaml"


class BashMode(str, Enum):
    """Legacy per-agent bash enforcement mode."""
    BYPASS = "bypass"
    ALLOWLIST = "allowlist"
    DENYLIST = "denylist"


class BashConfig(BaseModel):
    """Per-agent executable policy (legacy, non-relational path)."""
    mode: BashMode = BashMode.BYPASS
    allowlist: List[str] = Field(default_factory=list)
    denylist: List[str] = Field(default_factory=list)


class AgentConfig(BaseModel):
    """Agent definition as far as permissions are concerned."""
    id: str
    contact_scope: Optional[str] = None  # "all", "own", "tagged:<tag>"
    allowed_sessions: Optional[List[str]] = None
    allowed_tools: Optional[List[str]] = None
    bash: Optional[BashConfig] = None

    @field_validator("contact_scope")
    @classmethod
    def _check_contact_scope(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value in ("all", "own"):
            return value
        if value.startswith("tagged:") and len(value) > len("tagged:"):
            return value
        raise ValueError(f"invalid contact_scope {value!r}, expected all, own or tagged:<tag>")


class AuditSettings(BaseModel):
    """Audit side-channel settings."""
    enabled: bool = True
    db_path: Optional[str] = None  # Defaults to the relation database
    event_bus_url: Optional[str] = None
    max_in_flight: int = 256
    flush_timeout_seconds: float = 5.0


class GatekeeperConfig(BaseModel):
    """Top-level configuration."""
    database_path: str = "gatekeeper.db"
    log_dir: str = "logs"
    log_level: str = "INFO"
    platform_cli: str = "agentctl"
    superadmin_agent: str = "main"
    audit: AuditSettings = Field(default_factory=AuditSettings)
    agents: List[AgentConfig] = Field(default_factory=list)

    def get_agent(self, agent_id: Optional[str]) -> Optional[AgentConfig]:
        """Find an agent by id."""
        if agent_id is None:
            return None
        for agent in self.agents:
            if agent.id == agent_id:
                return agent
        return None


class ConfigManager:
    """
    Centralized configuration management.
    Loads configuration from YAML with environment variable overrides.
    """

    def __init__(self, config_path: Optional[str] = None):
        self._config_path = Path(
            config_path or os.getenv(f"{ENV_PREFIX}CONFIG") or DEFAULT_CONFIG_PATH
        )
        self._raw: Dict[str, Any] = {}
        self._config: Optional[GatekeeperConfig] = None
        self._logger = get_logger("infra.config")

        self._load_config()

    @property
    def path(self) -> Path:
        return self._config_path

    @property
    def config(self) -> GatekeeperConfig:
        return self._config

    def _load_config(self) -> None:
        """Load configuration from file, then apply environment overrides."""
        if self._config_path.exists():
            try:
                with open(self._config_path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {self._config_path}: {e}") from e
            if not isinstance(self._raw, dict):
                raise ConfigError(f"Config root must be a mapping: {self._config_path}")
            self._logger.info(f"Loaded config from {self._config_path}")
        else:
            self._raw = {}
            self._logger.warning(f"Config file not found: {self._config_path}, using defaults")

        data = dict(self._raw)
        self._apply_env_overrides(data)

        try:
            self._config = GatekeeperConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {self._config_path}: {e}") from e

    def _apply_env_overrides(self, data: Dict[str, Any]) -> None:
        """Override scalar keys from GATEKEEPER_<KEY> (dots become underscores)."""
        scalar_keys = [
            "database_path", "log_dir", "log_level", "platform_cli", "superadmin_agent",
            "audit.enabled", "audit.db_path", "audit.event_bus_url",
            "audit.max_in_flight", "audit.flush_timeout_seconds",
        ]
        for key in scalar_keys:
            env_value = os.getenv(f"{ENV_PREFIX}{key.upper().replace('.', '_')}")
            if env_value is None:
                continue
            parts = key.split(".")
            target = data
            for part in parts[:-1]:
                section = target.get(part)
                if not isinstance(section, dict):
                    section = {}
                    target[part] = section
                target = section
            target[parts[-1]] = env_value

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.
        Supports dot notation: 'audit.event_bus_url'
        """
        value: Any = self._config.model_dump()
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    def reload(self) -> None:
        """Reload configuration from file."""
        self._load_config()


def load_config(config_path: Optional[str] = None) -> GatekeeperConfig:
    """Load and validate the configuration file."""
    return ConfigManager(config_path).config
