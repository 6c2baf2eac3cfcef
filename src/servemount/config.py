"""
Configuration for scoped mounts.

Values come from a YAML file when one is available and fall back to the
defaults below. Command-line flags override whatever the file says.

.. code-block:: yaml

    ready_timeout: 30
    stop_timeout: 15
    teardown_phases: 3
    placeholder: MOUNTPOINT
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from . import CONFIG_ENV, DEFAULT_CONFIG_PATH

logger = logging.getLogger("servemount.config")


class ConfigurationError(ValueError):
    """Raised for invalid configuration or arguments, before anything is spawned."""


class MountConfig(BaseModel):
    """Tunable policy for one mount lifecycle.

    Args:
        ready_timeout: Seconds to wait for the mount to become ready.
        stop_timeout: Seconds the whole teardown ladder may take.
        poll_interval: Seconds between readiness/liveness checks.
        mount_check_timeout: Seconds a single mount check may take before
            the path is treated as not mounted for that check.
        teardown_phases: 3 for clean -> retry -> force, 2 for clean -> force.
        placeholder: Argument in the mount command replaced by the mount path.
        allow_empty: Accept a mount whose directory has no entries.
        process_group: Track and signal the whole process group of the
            mount command instead of only its pid.
        temp_prefix: Prefix for temporary mount directories.
    """

    ready_timeout: float = Field(default=10, ge=0)
    stop_timeout: float = Field(default=10, ge=0)
    poll_interval: float = Field(default=0.1, gt=0)
    mount_check_timeout: float = Field(default=3, gt=0)
    teardown_phases: int = Field(default=3, ge=2, le=3)
    placeholder: str = Field(default="MOUNTPOINT", min_length=1)
    allow_empty: bool = False
    process_group: bool = True
    temp_prefix: str = "servemount-"

    @property
    def phase_timeout(self) -> float:
        """Time budget of a single teardown phase."""
        return self.stop_timeout / self.teardown_phases


def _resolve_config_path(path: Optional[Path]) -> Optional[Path]:
    """Pick the config file to read.

    An explicit path or ``$SERVEMOUNT_CONFIG`` must exist; the default
    location is only used when present.

    Raises:
        ConfigurationError: If an explicitly requested file does not exist.
    """
    if path is None and os.environ.get(CONFIG_ENV):
        path = Path(os.environ[CONFIG_ENV])

    if path is not None:
        path = path.expanduser()
        if not path.is_file():
            raise ConfigurationError(f"config file not found: {path}")
        return path

    default = Path(DEFAULT_CONFIG_PATH).expanduser()
    return default if default.is_file() else None


def load_config(path: Optional[Path] = None, **overrides: Any) -> MountConfig:
    """Load the mount configuration.

    Args:
        path: YAML file to read. Defaults to ``$SERVEMOUNT_CONFIG`` or
            ``~/.config/servemount/config.yaml``.
        **overrides: Field values that win over the file. ``None`` values
            are ignored so unset CLI flags can be passed straight through.

    Returns:
        MountConfig: The validated configuration.

    Raises:
        ConfigurationError: If the file is missing, unreadable, not a
            mapping, or contains invalid values.
    """
    raw: dict[str, Any] = {}
    config_path = _resolve_config_path(path)
    if config_path is not None:
        try:
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"cannot read config {config_path}: {exc}") from exc
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"config {config_path} must be a mapping")
        raw.update(data)
        logger.debug("Loaded config from %s", config_path)

    raw.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return MountConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid configuration: {exc}") from exc
