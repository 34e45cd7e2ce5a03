# pipewrap/config_loader.py
# Loads settings from an optional YAML file, PIPEWRAP_* environment variables (.env supported) and CLI overrides,
# then validates them before any capture resource is acquired.
import os
import shlex
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from pipewrap.capture.utils import mb_to_bytes
from pipewrap.errors import ConfigError

ENV_PREFIX = "PIPEWRAP_"
MAX_SNAPLEN = 262144
LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")


@dataclass
class CaptureConfig:
    command: Optional[str] = None
    interface: Optional[str] = None
    bpf_filter: Optional[str] = None
    log_dir: str = "./"
    count: Optional[int] = None
    log_dir_threshold: int = 100
    snaplen: int = 65535
    promisc: bool = False
    echo: bool = False
    channel_capacity: int = 100
    log_level: str = "INFO"

    @property
    def backend(self) -> str:
        return "process" if self.command else "interface"

    @property
    def argv(self) -> List[str]:
        return shlex.split(self.command) if self.command else []

    @property
    def max_dir_bytes(self) -> int:
        return mb_to_bytes(self.log_dir_threshold)

    def validate(self) -> "CaptureConfig":
        if self.command and self.interface:
            raise ConfigError("Choose one capture source: a command or an interface, not both")
        if not self.command and not self.interface:
            raise ConfigError("Nothing to capture: set a command (--cmd) or an interface (-i)")
        if self.command is not None:
            try:
                argv = self.argv
            except ValueError as e:
                raise ConfigError(f"Cannot parse command {self.command!r}: {e}") from e
            if not argv:
                raise ConfigError("Command is empty")
        if self.bpf_filter and self.backend != "interface":
            raise ConfigError("A capture filter only applies to interface capture")
        if self.echo and self.backend != "process":
            raise ConfigError("Echo only applies to command capture")
        if not Path(self.log_dir).is_dir():
            raise ConfigError(f"log-dir doesn't exist: {self.log_dir}")
        if self.count is None:
            raise ConfigError("Records per file (--count) is required")
        if self.count < 1:
            raise ConfigError(f"Records per file must be at least 1, got {self.count}")
        if self.log_dir_threshold < 1:
            raise ConfigError(f"log-dir-threshold must be at least 1 MB, got {self.log_dir_threshold}")
        if not 1 <= self.snaplen <= MAX_SNAPLEN:
            raise ConfigError(f"snaplen must be between 1 and {MAX_SNAPLEN}, got {self.snaplen}")
        if self.channel_capacity < 1:
            raise ConfigError(f"channel-capacity must be at least 1, got {self.channel_capacity}")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"log-level must be one of {', '.join(LOG_LEVELS)}, got {self.log_level}")
        return self

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


_TYPES = {f.name: f.type for f in fields(CaptureConfig)}
_INT_KEYS = {"count", "log_dir_threshold", "snaplen", "channel_capacity"}
_BOOL_KEYS = {"promisc", "echo"}


def _coerce(key: str, value):
    if value is None:
        return None
    if key in _BOOL_KEYS:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off", ""):
            return False
        raise ConfigError(f"{key}: expected a boolean, got {value!r}")
    if key in _INT_KEYS:
        if isinstance(value, bool):
            raise ConfigError(f"{key}: expected an integer, got {value!r}")
        try:
            return int(str(value).strip())
        except ValueError:
            raise ConfigError(f"{key}: expected an integer, got {value!r}") from None
    if key == "command" and isinstance(value, (list, tuple)):
        return shlex.join(str(v) for v in value)
    return str(value)


def _read_yaml(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config not found: {path}")
    try:
        with p.open() as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    unknown = sorted(set(data) - set(_TYPES))
    if unknown:
        raise ConfigError(f"{path}: unknown settings {', '.join(unknown)}")
    return data


def _read_env() -> Dict[str, Any]:
    load_dotenv()
    values = {}
    for key in _TYPES:
        raw = os.getenv(ENV_PREFIX + key.upper())
        if raw is not None:
            values[key] = raw
    return values


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> CaptureConfig:
    """
    Defaults < YAML file < PIPEWRAP_* environment < overrides. None values in overrides are ignored
    so unset CLI flags do not mask lower layers.
    """
    merged: Dict[str, Any] = {}
    if path:
        merged.update(_read_yaml(path))
    merged.update(_read_env())
    for key, value in (overrides or {}).items():
        if key not in _TYPES:
            raise ConfigError(f"Unknown setting: {key}")
        if value is not None:
            merged[key] = value
    values = {k: _coerce(k, v) for k, v in merged.items() if v is not None}
    return CaptureConfig(**values).validate()
