"""Queue configuration values and config.yaml loading."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable

import yaml

from .models import DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT

CONFIG_FILE_NAME = "config.yaml"
DEFAULT_QUEUE_DIR = Path("queue")


@dataclass(slots=True, frozen=True)
class QueueConfig:
    max_queue_size: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    default_timeout: int = DEFAULT_TIMEOUT
    lock_timeout: float = 30.0
    lock_max_age: float = 300.0
    cache_ttl: float = 300.0
    backup_retention_days: int = 30
    auto_cleanup_days: int = 7
    backup_on_save: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


SETTING_NAMES = tuple(f.name for f in fields(QueueConfig))

# Lower bound per numeric setting; a value below it is rejected.
_MINIMUMS: dict[str, float] = {
    "max_queue_size": 0,
    "max_retries": 0,
    "default_timeout": 1,
    "lock_timeout": 0,
    "lock_max_age": 1,
    "cache_ttl": 0,
    "backup_retention_days": 0,
    "auto_cleanup_days": 0,
}


def config_path(queue_dir: Path) -> Path:
    return queue_dir / CONFIG_FILE_NAME


def default_config(config: QueueConfig | None = None) -> dict[str, Any]:
    return {"settings": (config or QueueConfig()).to_dict()}


def write_default_config_if_missing(queue_dir: Path, config: QueueConfig | None = None) -> bool:
    path = config_path(queue_dir)
    if path.exists():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = yaml.safe_dump(default_config(config), sort_keys=False, default_flow_style=False)
    path.write_text(payload, encoding="utf-8")
    return True


def read_config(queue_dir: Path, warn: Callable[[str], None] | None = None) -> dict[str, Any]:
    path = config_path(queue_dir)
    if not path.exists():
        return {}
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError):
        if warn is not None:
            warn(f"Unable to parse config at {path}. Falling back to defaults.")
        return {}
    if not isinstance(payload, dict):
        if warn is not None:
            warn(f"Invalid config format at {path}. Falling back to defaults.")
        return {}
    return payload


def _coerce_setting(name: str, value: Any) -> Any:
    default = getattr(QueueConfig(), name)
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ValueError("expected true or false")
        return value
    # bool is an int subclass; never accept it for numeric settings
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("expected a number")
    if isinstance(default, int) and not float(value).is_integer():
        raise ValueError("expected a whole number")
    if value < _MINIMUMS[name]:
        raise ValueError(f"must be >= {_MINIMUMS[name]:g}")
    return type(default)(value)


def resolve_config(queue_dir: Path, warn: Callable[[str], None] | None = None) -> QueueConfig:
    data = read_config(queue_dir, warn=warn)
    path = config_path(queue_dir)
    for key in data.keys():
        if key != "settings" and warn is not None:
            warn(f"Unsupported config key '{key}' in {path}. Ignoring.")

    settings = data.get("settings", {})
    if settings is None:
        settings = {}
    if not isinstance(settings, dict):
        if warn is not None:
            warn(f"Invalid settings section in {path}. Using defaults.")
        return QueueConfig()

    overrides: dict[str, Any] = {}
    for key, value in settings.items():
        if key not in SETTING_NAMES:
            if warn is not None:
                warn(f"Unsupported settings key '{key}' in {path}. Ignoring.")
            continue
        try:
            overrides[key] = _coerce_setting(key, value)
        except ValueError as exc:
            if warn is not None:
                default = getattr(QueueConfig(), key)
                warn(f"Invalid settings.{key} in {path} ({exc}). Using default '{default}'.")
    return replace(QueueConfig(), **overrides)
