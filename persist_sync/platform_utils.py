"""
Cross-platform utilities for Persist Watcher.

Centralises all OS-detection logic so every other module can import
a single canonical set of helpers rather than scattering ``sys.platform``
checks throughout the codebase.
"""

from __future__ import annotations

import logging
import os
import stat
import sys
from pathlib import Path

logger = logging.getLogger(__name__)

# ---- platform flags ----------------------------------------------------

IS_WINDOWS: bool = sys.platform == "win32"
IS_MACOS: bool = sys.platform == "darwin"
IS_LINUX: bool = sys.platform.startswith("linux")

# Windows only honours the read-only bit, so mode comparisons are skipped there
SUPPORTS_POSIX_MODES: bool = not IS_WINDOWS
SUPPORTS_CHOWN: bool = hasattr(os, "chown")

_APP_DIR_NAME = "PersistWatcher"

# ---- directories -------------------------------------------------------


def get_config_dir() -> Path:
    """
    Return the application config directory, created if needed.

    - Windows : ``%APPDATA%\\PersistWatcher``
    - macOS   : ``~/Library/Application Support/PersistWatcher``
    - Linux   : ``$XDG_CONFIG_HOME/PersistWatcher`` (default ``~/.config``)
    """
    if IS_WINDOWS:
        base = os.environ.get("APPDATA", str(Path.home()))
    elif IS_MACOS:
        base = str(Path.home() / "Library" / "Application Support")
    else:
        base = os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))

    config_dir = Path(base) / _APP_DIR_NAME
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_log_path() -> Path:
    """Return the path to the log file (inside the config directory)."""
    return get_config_dir() / "persist_watcher.log"


# ---- file metadata -----------------------------------------------------


def mode_matches(st: os.stat_result, desired_mode: int) -> bool:
    """Return True when *st* carries *desired_mode* (always True on Windows)."""
    if not SUPPORTS_POSIX_MODES:
        return True
    return stat.S_IMODE(st.st_mode) == desired_mode


def owner_matches(st: os.stat_result, reference: os.stat_result) -> bool:
    """Return True when *st* has the same uid/gid as *reference*."""
    if not SUPPORTS_CHOWN:
        return True
    return (st.st_uid, st.st_gid) == (reference.st_uid, reference.st_gid)
