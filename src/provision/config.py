# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Configuration for provision.

Two sources:
- Settings file (YAML): engine policy such as retries, timeouts and
  redaction patterns. Defaults to ~/.provision/config.yaml.
- Environment file (KEY=value): values consumed by step actions. Parsed
  with python-dotenv, exposed to steps as a read-only mapping.
"""

import hashlib
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from dotenv import dotenv_values

from provision.errors import ConfigError, UsageError
from provision.schemas import DEFAULT_TIMEOUTS, StepKind

DEFAULT_REDACT_PATTERNS = ["SECRET", "KEY", "TOKEN", "PASSWORD", "PASSWD", "CREDENTIAL"]


def provision_home() -> Path:
    """Get the provision home directory ($PROVISION_HOME or ~/.provision)."""
    env_dir = os.environ.get("PROVISION_HOME")
    if env_dir:
        return Path(env_dir).expanduser()
    return Path("~/.provision").expanduser()


def target_key(target: Union[str, Path]) -> str:
    """Stable, readable directory name for a target root.

    Example: /root/farscape -> root-farscape-1a2b3c4d
    """
    resolved = str(Path(target).expanduser().resolve())
    slug = re.sub(r"[^A-Za-z0-9]+", "-", resolved).strip("-") or "root"
    digest = hashlib.sha256(resolved.encode()).hexdigest()[:8]
    return f"{slug[-48:]}-{digest}"


def target_dir(target: Union[str, Path]) -> Path:
    """Directory holding state, lock, logs and snapshots for a target."""
    return provision_home() / "targets" / target_key(target)


@dataclass
class ProvisionSettings:
    """Engine policy loaded from the settings file."""

    max_retries: int = 3
    retry_backoff: float = 2.0
    timeouts: Dict[StepKind, float] = field(default_factory=lambda: dict(DEFAULT_TIMEOUTS))
    redact_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_REDACT_PATTERNS))
    log_level: str = "INFO"
    source: Optional[Path] = None

    def timeout_for(self, kind: StepKind, override: Optional[float] = None) -> float:
        if override is not None:
            return override
        return self.timeouts.get(kind, DEFAULT_TIMEOUTS[kind])


def _default_config_path() -> Path:
    env_path = os.environ.get("PROVISION_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return provision_home() / "config.yaml"


def load_settings(config_path: Optional[Union[str, Path]] = None) -> ProvisionSettings:
    """
    Load engine settings.

    Args:
        config_path: Explicit settings file. Must exist when given.

    Returns:
        ProvisionSettings (defaults when no file is found at the default path)

    Raises:
        FileNotFoundError: If an explicit config_path does not exist
        ConfigError: If the file is not valid YAML or has invalid values
    """
    if config_path is not None:
        path = Path(config_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
    else:
        path = _default_config_path()
        if not path.exists():
            return ProvisionSettings()

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")

    settings = ProvisionSettings(source=path)
    try:
        if "max_retries" in data:
            settings.max_retries = int(data["max_retries"])
            if settings.max_retries < 0:
                raise ConfigError(f"max_retries must be >= 0, got: {settings.max_retries}")
        if "retry_backoff" in data:
            settings.retry_backoff = float(data["retry_backoff"])
            if settings.retry_backoff < 0:
                raise ConfigError(f"retry_backoff must be >= 0, got: {settings.retry_backoff}")
        timeouts = data.get("timeouts") or {}
        if not isinstance(timeouts, dict):
            raise ConfigError("timeouts must be a mapping of step kind to seconds")
        for kind_name, seconds in timeouts.items():
            settings.timeouts[StepKind(kind_name)] = float(seconds)
        if "redact_patterns" in data:
            patterns = data["redact_patterns"]
            if not isinstance(patterns, list):
                raise ConfigError("redact_patterns must be a list of strings")
            settings.redact_patterns = [str(p) for p in patterns]
        if "log_level" in data:
            settings.log_level = str(data["log_level"]).upper()
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value in {path}: {e}") from e

    return settings


def load_env_file(env_file: Optional[Union[str, Path]]) -> Mapping[str, Any]:
    """
    Load a flat KEY=value environment file into a read-only mapping.

    Args:
        env_file: Path to the file, or None for an empty configuration

    Raises:
        UsageError: If the file does not exist
    """
    if env_file is None:
        return MappingProxyType({})
    path = Path(env_file).expanduser()
    if not path.is_file():
        raise UsageError(f"Env file not found: {path}")
    values = dotenv_values(path)
    return MappingProxyType({k: v for k, v in values.items() if k})


def is_secret_key(key: str, patterns: Optional[List[str]] = None) -> bool:
    """True if a config key looks like it holds a secret."""
    upper = key.upper()
    return any(p.upper() in upper for p in (patterns or DEFAULT_REDACT_PATTERNS))
