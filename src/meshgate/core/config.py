"""Gateway configuration.

Settings come from, highest precedence first: CLI flags, a YAML or TOML
config file, ``MESHGATE_*`` environment variables (or ``.env``), defaults.
Example: ``MESHGATE_STATUS_PORT=9090`` enables the status API on port 9090.

The resulting :class:`GatewayConfig` is frozen; it is built once at startup
and handed down to every component.
"""

from __future__ import annotations

import tomllib
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from meshgate.core.exceptions import ConfigError

DEFAULT_LOCALAPI_SOCKET = Path("/var/run/tailscale/tailscaled.sock")
SPAWNED_SOCKET_NAME = "tailscaled.sock"

# Flattened config-file keys that do not match a field name.
_FILE_KEY_ALIASES = {
    "proxy_port": "port",
    "proxy_mode": "mode",
    "proxy_host": "listen_host",
    "listen": "listen_host",
    "overlay_hostname": "hostname",
    "overlay_auth_key": "auth_key",
    "overlay_authkey": "auth_key",
    "authkey": "auth_key",
    "overlay_control_url": "control_url",
    "coordserver": "control_url",
    "overlay_state_dir": "state_dir",
    "statedir": "state_dir",
    "overlay_socket": "socket_path",
    "overlay_socket_path": "socket_path",
    "overlay_tailscaled": "tailscaled_path",
    "overlay_tailscaled_path": "tailscaled_path",
    "overlay_startup_timeout": "startup_timeout",
    "timeouts_startup": "startup_timeout",
    "timeouts_tunnel_dial": "tunnel_dial_timeout",
    "timeouts_http_connect": "http_connect_timeout",
    "statusport": "status_port",
}


class ProxyMode(str, Enum):
    """Which protocol the proxy listener speaks."""

    HTTP = "http"
    SOCKS5 = "socks5"


class EventFormat(str, Enum):
    """Line format for lifecycle events sent to a governing process."""

    JSON = "json"
    SENTINEL = "sentinel"
    NONE = "none"


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


class GatewayConfig(BaseSettings):
    """Process-wide gateway settings.

    Only one of the two proxy modes runs per process. The status API is
    optional and binds a second socket on ``listen_host`` when
    ``status_port`` is set.
    """

    model_config = SettingsConfigDict(
        env_prefix="MESHGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    auth_key: str | None = Field(
        default=None,
        repr=False,
        description="Auth key used to log the overlay node in.",
    )
    control_url: str | None = Field(
        default=None,
        description="Coordination server URL. None uses the overlay default.",
    )
    hostname: str = Field(
        default="ts-proxy",
        description="Hostname of this node in the tailnet.",
    )
    listen_host: str = Field(
        default="127.0.0.1",
        description="Host the proxy and status listeners bind to.",
    )
    port: int = Field(
        default=8080,
        ge=0,
        le=65535,
        description="Proxy listener port.",
    )
    status_port: int | None = Field(
        default=None,
        ge=0,
        le=65535,
        description="Status API port. None disables the status API.",
    )
    mode: ProxyMode = Field(
        default=ProxyMode.HTTP,
        description="Proxy mode: 'http' or 'socks5'.",
    )
    state_dir: Path | None = Field(
        default=None,
        description="Overlay state directory. Defaults to the current working directory.",
    )
    socket_path: Path | None = Field(
        default=None,
        description="tailscaled LocalAPI socket.",
    )
    tailscaled_path: str | None = Field(
        default=None,
        description="Path to a tailscaled binary to spawn in userspace-networking mode.",
    )
    startup_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Deadline for the overlay node to come up (seconds).",
    )
    tunnel_dial_timeout: float | None = Field(
        default=30.0,
        description="Dial timeout for CONNECT and SOCKS5 tunnels (seconds). None or 0 for indefinite.",
    )
    http_connect_timeout: float | None = Field(
        default=30.0,
        description="Dial timeout for forwarded HTTP requests (seconds). None or 0 for indefinite.",
    )
    events: EventFormat = Field(
        default=EventFormat.JSON,
        description="Format of lifecycle event lines written to stdout.",
    )

    @field_validator("tunnel_dial_timeout", "http_connect_timeout")
    @classmethod
    def _zero_means_indefinite(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            return None
        return value

    def resolved_state_dir(self) -> Path:
        """State directory, falling back to the current working directory."""
        return self.state_dir or Path.cwd()

    def resolved_socket_path(self) -> Path:
        """LocalAPI socket of the daemon this gateway talks to."""
        if self.socket_path is not None:
            return self.socket_path
        if self.tailscaled_path:
            return self.resolved_state_dir() / SPAWNED_SOCKET_NAME
        return DEFAULT_LOCALAPI_SOCKET

    @property
    def proxy_address(self) -> str:
        return f"{self.listen_host}:{self.port}"

    @property
    def status_address(self) -> str | None:
        if self.status_port is None:
            return None
        return f"{self.listen_host}:{self.status_port}"

    def to_display_dict(self) -> dict[str, Any]:
        """Export configuration for display, with secrets masked."""
        data = self.model_dump(mode="json")
        if data.get("auth_key"):
            data["auth_key"] = "********"
        return data


def normalize_file_config(file_config: dict[str, Any]) -> dict[str, Any]:
    """Map a flattened config file onto GatewayConfig field names."""
    fields = GatewayConfig.model_fields
    result: dict[str, Any] = {}
    for key, value in file_config.items():
        key = key.lower().replace("-", "_")
        target = _FILE_KEY_ALIASES.get(key, key)
        if target not in fields:
            continue
        result[target] = value
    return result


def build_config(
    overrides: dict[str, Any] | None = None,
    config_file: str | Path | None = None,
) -> GatewayConfig:
    """Build the frozen gateway configuration.

    Args:
        overrides: Values given explicitly (CLI flags). ``None`` values are ignored.
        config_file: Optional YAML or TOML file.

    Raises:
        ConfigError: If the file cannot be read or a value is invalid.
    """
    values: dict[str, Any] = {}
    if config_file:
        try:
            raw_config = load_config_from_file(config_file)
        except (FileNotFoundError, ValueError) as e:
            raise ConfigError(f"Failed to load config: {e}") from e
        values.update(normalize_file_config(flatten_config(raw_config)))

    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value

    try:
        return GatewayConfig(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
