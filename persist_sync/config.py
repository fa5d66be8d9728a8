"""Configuration management for Persist Watcher.

Stores and retrieves the target list and daemon settings from a JSON
config file in the platform-appropriate application data directory.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from persist_sync.models import DEFAULT_MODE, ErrorKind, WatchTarget
from persist_sync.platform_utils import (
    get_config_dir as _platform_config_dir,
)
from persist_sync.platform_utils import (
    get_log_path as _platform_log_path,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    # Each entry: {"name": ..., "source": ..., "target": ..., "mode": "0600",
    #              "preserve_ownership": false}
    "targets": [],
    "debounce_ms": 300,
    # ---- verification ----
    "verify_restores": True,  # SHA-256 checksum after restore
    # ---- notification channel recovery ----
    "resubscribe_initial_delay_seconds": 1,
    "resubscribe_max_delay_seconds": 60,
    # ---- logging ----
    "log_level": "INFO",
    "log_to_file": True,
    "max_log_size_mb": 10,  # rotate log when it exceeds this size
    "log_backup_count": 3,  # number of rotated log files to keep
}


_INT_SETTINGS = ("debounce_ms", "max_log_size_mb", "log_backup_count")
_NUMBER_SETTINGS = ("resubscribe_initial_delay_seconds", "resubscribe_max_delay_seconds")
_BOOL_SETTINGS = ("verify_restores", "log_to_file")


class ConfigError(RuntimeError):
    """Raised when a configuration file cannot be parsed or validated."""


class PathInvalidError(ConfigError):
    """Raised when a target's source/target paths are unusable."""

    kind = ErrorKind.PATH_INVALID


def get_config_dir() -> Path:
    """Return the platform-appropriate application config directory."""
    return _platform_config_dir()


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    return get_config_dir() / "config.json"


def get_log_path() -> Path:
    """Return the path to the log file."""
    return _platform_log_path()


def _expand_path(raw: str) -> Path:
    return Path(os.path.expandvars(str(raw))).expanduser()


def parse_mode(raw: Any) -> int:
    """Parse a permission value given as an int or an octal string."""
    if isinstance(raw, bool):
        raise PathInvalidError(f"Invalid mode {raw!r}")
    if isinstance(raw, int):
        mode = raw
    else:
        text = str(raw).strip().lower()
        if text.startswith("0o"):
            text = text[2:]
        try:
            mode = int(text, 8)
        except ValueError as exc:
            raise PathInvalidError(f"Invalid mode {raw!r}; expected an octal value such as '0600'") from exc
    if not 0 <= mode <= 0o7777:
        raise PathInvalidError(f"Mode {oct(mode)} is out of range")
    return mode


def check_settings(data: dict[str, Any], source: Path | str = "configuration") -> None:
    """Reject daemon settings whose type the accessors cannot convert."""
    for key in _INT_SETTINGS:
        value = data.get(key)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{source}: '{key}' must be an integer, got {value!r}")
    for key in _NUMBER_SETTINGS:
        value = data.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{source}: '{key}' must be a number, got {value!r}")
    for key in _BOOL_SETTINGS:
        value = data.get(key)
        if not isinstance(value, bool):
            raise ConfigError(f"{source}: '{key}' must be true or false, got {value!r}")
    level = data.get("log_level")
    if not isinstance(level, str) or not isinstance(logging.getLevelName(level.upper()), int):
        raise ConfigError(f"{source}: 'log_level' must be a logging level name, got {level!r}")


def build_target(raw: dict[str, Any], index: int = 0) -> WatchTarget:
    """Validate one raw target entry and return the immutable ``WatchTarget``."""
    source_raw = raw.get("source")
    target_raw = raw.get("target")
    if not source_raw or not target_raw:
        raise PathInvalidError(f"Target #{index + 1} must define both 'source' and 'target'")

    source = _expand_path(source_raw)
    target = _expand_path(target_raw)
    name = str(raw.get("name") or target.name)

    for label, path in (("source", source), ("target", target)):
        if not path.is_absolute():
            raise PathInvalidError(f"Target '{name}': {label} path '{path}' must be absolute")

    if os.path.normpath(source) == os.path.normpath(target):
        raise PathInvalidError(f"Target '{name}': source and target are the same path ({source})")

    return WatchTarget(
        name=name,
        source_path=Path(os.path.normpath(source)),
        target_path=Path(os.path.normpath(target)),
        desired_mode=parse_mode(raw.get("mode", DEFAULT_MODE)),
        preserve_ownership=bool(raw.get("preserve_ownership", False)),
    )


def build_targets(entries: list[dict[str, Any]]) -> tuple[WatchTarget, ...]:
    """Validate every entry and reject duplicate names or target paths."""
    if not isinstance(entries, list):
        raise ConfigError("'targets' must be a list")

    targets: list[WatchTarget] = []
    seen_paths: dict[Path, str] = {}
    seen_names: set[str] = set()
    for index, raw in enumerate(entries):
        if not isinstance(raw, dict):
            raise ConfigError(f"Target #{index + 1} must be an object")
        target = build_target(raw, index)
        if target.target_path in seen_paths:
            raise PathInvalidError(
                f"Target '{target.name}' restores onto {target.target_path}, "
                f"already used by '{seen_paths[target.target_path]}'"
            )
        if target.name in seen_names:
            raise ConfigError(f"Duplicate target name '{target.name}'")
        seen_paths[target.target_path] = target.name
        seen_names.add(target.name)
        targets.append(target)
    return tuple(targets)


class Config:
    """Configuration manager backed by a JSON file."""

    def __init__(self, path: Path | None = None):
        """Load config from *path*, falling back to the platform default."""
        self._path = Path(path) if path else get_config_path()
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        self._targets: tuple[WatchTarget, ...] = ()
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    # ---- persistence ----

    def load(self) -> None:
        """Load configuration from disk, applying defaults for missing keys.

        Raises ``ConfigError`` for unreadable or malformed files and
        ``PathInvalidError`` for unusable target paths.
        """
        if self._path.exists():
            try:
                with open(self._path, encoding="utf-8") as fh:
                    stored = json.load(fh)
            except json.JSONDecodeError as exc:
                raise ConfigError(f"Configuration '{self._path}' is not valid JSON: {exc}") from exc
            except OSError as exc:
                raise ConfigError(f"Could not read configuration '{self._path}': {exc}") from exc
            if not isinstance(stored, dict):
                raise ConfigError(f"Configuration '{self._path}' must contain a JSON object")
            # Merge stored values over defaults so new keys get defaults
            self._data = {**DEFAULT_CONFIG, **stored}
            logger.info("Configuration loaded from %s", self._path)
        else:
            self._data = dict(DEFAULT_CONFIG)
            self.save()
            logger.info("Created default configuration at %s", self._path)

        check_settings(self._data, self._path)
        self._targets = build_targets(self._data.get("targets") or [])

    def save(self) -> None:
        """Persist the current configuration to disk."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, indent=2)
            logger.info("Configuration saved.")
        except OSError as exc:
            logger.error("Failed to save configuration: %s", exc)

    # ---- accessors ----

    @property
    def targets(self) -> tuple[WatchTarget, ...]:
        """Return the validated, immutable target list."""
        return self._targets

    @property
    def debounce_seconds(self) -> float:
        """Return the coalescing window in seconds."""
        return max(0, int(self._data.get("debounce_ms", 300))) / 1000.0

    @property
    def verify_restores(self) -> bool:
        """Return whether SHA-256 verification is enabled."""
        return bool(self._data.get("verify_restores", True))

    @property
    def resubscribe_initial_delay(self) -> float:
        """Return the first backoff delay after a lost subscription."""
        return max(0.1, float(self._data.get("resubscribe_initial_delay_seconds", 1)))

    @property
    def resubscribe_max_delay(self) -> float:
        """Return the backoff ceiling (never below the initial delay)."""
        value = float(self._data.get("resubscribe_max_delay_seconds", 60))
        return max(self.resubscribe_initial_delay, value)

    @property
    def log_level(self) -> str:
        """Return the current logging level name."""
        return self._data.get("log_level", "INFO")

    @log_level.setter
    def log_level(self, value: str) -> None:
        """Set the logging level name."""
        self._data["log_level"] = value

    @property
    def log_to_file(self) -> bool:
        return bool(self._data.get("log_to_file", True))

    # ---- log rotation ----

    @property
    def max_log_size_mb(self) -> int:
        """Return the maximum log file size in MB before rotation."""
        return max(1, int(self._data.get("max_log_size_mb", 10)))

    @property
    def log_backup_count(self) -> int:
        """Return the number of rotated log backups to keep."""
        return max(0, int(self._data.get("log_backup_count", 3)))

    # ---- convenience ----

    def is_configured(self) -> bool:
        """Return True when at least one target is defined."""
        return bool(self._targets)
