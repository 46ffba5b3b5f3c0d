"""Options shared by the fleet manager and the services it forks.

Defaults come from ``config/gridfleet.yaml`` (when present) and are then
overridden by ``GRIDFLEET_*`` environment variables.  Per-spawn overrides are
deep-merged on top with :meth:`Options.merge`.
"""

from __future__ import annotations

import copy
import os
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "config/gridfleet.yaml"


class GridMode(str, Enum):
    """How an Instance uses the Dispatcher grid it belongs to."""

    BALANCE = "balance"
    AGGREGATE = "aggregate"


class RPCOptions(BaseModel):
    """Where a service listens and how clients talk to it.

    Attributes:
        server_address: Hostname the service binds to.
        server_port: TCP port; ``None`` means "pick a free one".
        server_socket: Unix socket path; takes precedence over address/port.
        client_timeout: Seconds before a single remote call gives up.
    """

    server_address: Optional[str] = Field(default="localhost")
    server_port: Optional[int] = Field(default=None, ge=1, le=65535)
    server_socket: Optional[str] = Field(default=None)
    client_timeout: float = Field(default=10.0, gt=0)


class DispatcherOptions(BaseModel):
    """Grid membership and pool sizing for Dispatchers and their Instances."""

    url: Optional[str] = Field(default=None, description="Dispatcher that owns this process")
    neighbour: Optional[str] = Field(default=None, description="Previous node in the grid")
    pipe_id: Optional[str] = Field(default=None, description="Inter-node channel pairing id")
    pool_size: int = Field(default=5, ge=0)
    grid_size: int = Field(default=3, ge=1)
    grid_mode: GridMode = Field(default=GridMode.BALANCE)


class Options(BaseModel):
    """Full option set handed to a forked service."""

    rpc: RPCOptions = Field(default_factory=RPCOptions)
    dispatcher: DispatcherOptions = Field(default_factory=DispatcherOptions)
    spawns: int = Field(default=0, ge=0, description="Helper Instances to start")
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="text")

    def merge(self, overrides: Optional[dict[str, Any]] = None) -> "Options":
        """Return a new Options with *overrides* deep-merged over this one."""
        data = self.model_dump(mode="json")
        deep_merge(data, overrides or {})
        return Options.model_validate(data)

    @property
    def url(self) -> Optional[str]:
        """Address clients use to reach a service started with these options."""
        if self.rpc.server_socket:
            return self.rpc.server_socket
        if self.rpc.server_port is None:
            return None
        return f"{self.rpc.server_address}:{self.rpc.server_port}"


def deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *overrides* into *base* in place and return it.

    ``None`` values in *overrides* are applied as-is so callers can clear a
    field (e.g. drop ``server_port`` when switching to a socket).
    """
    for key, value in overrides.items():
        if isinstance(value, Enum):
            value = value.value
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base


_ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "GRIDFLEET_RPC_ADDRESS": ("rpc", "server_address"),
    "GRIDFLEET_RPC_CLIENT_TIMEOUT": ("rpc", "client_timeout"),
    "GRIDFLEET_POOL_SIZE": ("dispatcher", "pool_size"),
    "GRIDFLEET_GRID_SIZE": ("dispatcher", "grid_size"),
    "GRIDFLEET_LOG_LEVEL": ("log_level",),
    "GRIDFLEET_LOG_FORMAT": ("log_format",),
}


def load_options(config_path: str = DEFAULT_CONFIG_PATH) -> Options:
    """Load default options from YAML, then apply environment overrides.

    Args:
        config_path: Path to the YAML config file.  Missing files fall back
            to built-in defaults.

    Returns:
        Validated Options.
    """
    data: dict[str, Any] = {}
    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file) as f:
            data = yaml.safe_load(f) or {}
        logger.debug("options_loaded", path=str(config_file))

    for env_key, path in _ENV_OVERRIDES.items():
        value = os.getenv(env_key)
        if value is None:
            continue
        target = data
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = value

    return Options.model_validate(data)
