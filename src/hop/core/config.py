"""Configuration management using Pydantic.

Provides:
- Typed configuration models with validation
- YAML file loading with defaults
- Environment variable overrides
- Configuration initialization and display
"""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from hop.core.exceptions import ConfigurationError
from hop.core.validation import validate_port


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/hop/config.yaml")
DEFAULT_LOG_DIR = Path("/var/log/hop")

# Default hopping range and proxy listen port
DEFAULT_HOP_START = 35000
DEFAULT_HOP_END = 36000
DEFAULT_TARGET_PORT = 443

VALID_FAMILIES = ("ipv4", "ipv6", "both")
VALID_PERSISTENCE = ("auto", "netfilter-persistent", "service", "openrc", "none")


class PortHoppingConfig(BaseModel):
    """UDP port-hopping range redirected to the proxy listen port."""

    start: int = DEFAULT_HOP_START
    end: int = DEFAULT_HOP_END
    target_port: int = DEFAULT_TARGET_PORT
    families: str = "both"

    @field_validator("start", "end", "target_port")
    @classmethod
    def validate_ports(cls, v: int) -> int:
        return validate_port(v)

    @field_validator("families")
    @classmethod
    def validate_families(cls, v: str) -> str:
        v = v.lower()
        if v not in VALID_FAMILIES:
            raise ValueError(f"families must be one of: {list(VALID_FAMILIES)}")
        return v

    @model_validator(mode="after")
    def validate_range(self) -> "PortHoppingConfig":
        if self.start > self.end:
            raise ValueError(
                f"start ({self.start}) must not be greater than end ({self.end})"
            )
        return self


class FirewallConfig(BaseModel):
    """Packet-filter controller settings."""

    persistence: str = "auto"
    max_delete_iterations: int = 50
    command_timeout: int = 30
    iptables: str = "iptables"
    ip6tables: str = "ip6tables"

    @field_validator("persistence")
    @classmethod
    def validate_persistence(cls, v: str) -> str:
        v = v.lower()
        if v not in VALID_PERSISTENCE:
            raise ValueError(f"persistence must be one of: {list(VALID_PERSISTENCE)}")
        return v

    @field_validator("max_delete_iterations", "command_timeout")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


class HopConfig(BaseModel):
    """Root configuration model.

    This is the configuration loaded from /etc/hop/config.yaml.
    """

    port_hopping: PortHoppingConfig = Field(default_factory=PortHoppingConfig)
    firewall: FirewallConfig = Field(default_factory=FirewallConfig)

    @classmethod
    def load(cls, path: Path) -> "HopConfig":
        """Load configuration from YAML file.

        Args:
            path: Path to configuration file

        Returns:
            Loaded configuration

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                hint="Create it with: hop config init",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read configuration file: {path}",
                hint="Check file permissions or run with sudo",
            )

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Invalid configuration file: {path}",
                hint="The top level must be a mapping",
            )

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigurationError(
                f"Invalid configuration: {e}",
                details=[str(e)],
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "HopConfig":
        """Load configuration, falling back to defaults if file doesn't exist."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if path.exists():
            return cls.load(path)
        return cls()

    def to_yaml(self) -> str:
        """Convert configuration to YAML string."""
        data = self.model_dump(exclude_none=True)
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


class EnvSettings(BaseSettings):
    """Overrides loaded from environment variables."""

    hop_config: Optional[Path] = Field(None, alias="HOP_CONFIG")
    hop_iptables: Optional[str] = Field(None, alias="HOP_IPTABLES")
    hop_ip6tables: Optional[str] = Field(None, alias="HOP_IP6TABLES")
    hop_persistence: Optional[str] = Field(None, alias="HOP_PERSISTENCE")

    class Config:
        extra = "ignore"


class AppConfig:
    """Application configuration combining config file and environment.

    This is the main interface for accessing configuration throughout the app.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[HopConfig] = None,
        env: Optional[EnvSettings] = None,
    ) -> None:
        self._env = env or EnvSettings()
        self.config_path = config_path or self._env.hop_config or DEFAULT_CONFIG_PATH
        self._config = config or HopConfig.load_or_default(self.config_path)
        self._apply_env_overrides()

    def _apply_env_overrides(self) -> None:
        firewall = self._config.firewall
        updates = {}
        if self._env.hop_iptables:
            updates["iptables"] = self._env.hop_iptables
        if self._env.hop_ip6tables:
            updates["ip6tables"] = self._env.hop_ip6tables
        if self._env.hop_persistence:
            updates["persistence"] = self._env.hop_persistence
        if updates:
            try:
                merged = FirewallConfig(**{**firewall.model_dump(), **updates})
            except Exception as e:
                raise ConfigurationError(
                    f"Invalid environment override: {e}",
                    details=[str(e)],
                ) from e
            self._config = self._config.model_copy(update={"firewall": merged})

    @property
    def config(self) -> HopConfig:
        """Get the loaded configuration."""
        return self._config

    @property
    def env(self) -> EnvSettings:
        """Get the environment overrides."""
        return self._env

    @property
    def port_hopping(self) -> PortHoppingConfig:
        """Shortcut to port-hopping config."""
        return self._config.port_hopping

    @property
    def firewall(self) -> FirewallConfig:
        """Shortcut to firewall config."""
        return self._config.firewall

    @property
    def log_dir(self) -> Path:
        """Get log directory."""
        return DEFAULT_LOG_DIR


def get_example_config() -> str:
    """Generate example configuration file content."""
    return """# Port hopping configuration
# UDP traffic to any port in [start, end] is redirected to target_port

port_hopping:
  start: 35000
  end: 36000
  target_port: 443      # proxy listen port
  families: both        # ipv4, ipv6, both

firewall:
  persistence: auto     # auto, netfilter-persistent, service, openrc, none
  max_delete_iterations: 50
  command_timeout: 30   # seconds per iptables invocation
  iptables: iptables
  ip6tables: ip6tables
"""


def init_config(path: Path, force: bool = False) -> None:
    """Initialize a new configuration file.

    Args:
        path: Path to create config file
        force: Overwrite if exists

    Raises:
        ConfigurationError: If file exists and force is False
    """
    if path.exists() and not force:
        raise ConfigurationError(
            f"Configuration file already exists: {path}",
            hint="Use --force to overwrite",
        )

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_example_config())
    os.chmod(path, 0o644)
