"""
Headless daemon support for Persist Watcher.

Runs the restore engine (restorer + watch loop) in the foreground until
SIGINT/SIGTERM, or performs a single one-shot restore of every target.
Start it from whatever service manager the host uses.
"""

from __future__ import annotations

import logging
import logging.handlers
import signal
import sys
import threading
from pathlib import Path

from persist_sync import __app_name__, __version__
from persist_sync.config import Config, ConfigError, get_log_path
from persist_sync.models import RestoreOutcome, TargetState
from persist_sync.notifier import Notifier, WatchdogNotifier
from persist_sync.restorer import Restorer
from persist_sync.watcher import WatchLoop

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(cfg: Config, level_override: str | None = None, log_path: Path | None = None) -> None:
    """Configure rotating file log and stderr handler."""
    level_name = (level_override or cfg.log_level).upper()
    level = getattr(logging, level_name, logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    fmt = logging.Formatter(_LOG_FORMAT)

    if cfg.log_to_file:
        max_bytes = cfg.max_log_size_mb * 1024 * 1024
        fh = logging.handlers.RotatingFileHandler(
            str(log_path or get_log_path()),
            maxBytes=max_bytes,
            backupCount=cfg.log_backup_count,
            encoding="utf-8",
        )
        fh.setLevel(level)
        fh.setFormatter(fmt)
        root_logger.addHandler(fh)

    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root_logger.addHandler(sh)


def load_config(path: Path | None) -> Config:
    """Load and validate the configuration; ConfigError is fatal for every command."""
    cfg = Config(path)
    if not cfg.is_configured():
        raise ConfigError(f"No targets configured in {cfg.path}")
    return cfg


def build_engine(
    cfg: Config,
    notifier: Notifier | None = None,
) -> tuple[Restorer, WatchLoop]:
    """Create the restorer and watch loop described by *cfg*."""
    restorer = Restorer(verify=cfg.verify_restores)
    loop = WatchLoop(
        cfg.targets,
        restorer,
        notifier=notifier,
        debounce_seconds=cfg.debounce_seconds,
        resubscribe_initial_delay=cfg.resubscribe_initial_delay,
        resubscribe_max_delay=cfg.resubscribe_max_delay,
    )
    return restorer, loop


def run_foreground(cfg: Config, stop_event: threading.Event | None = None) -> int:
    """Run the watch loop until SIGINT/SIGTERM (or *stop_event*) and return the exit code."""
    stop = stop_event or threading.Event()
    notifier = WatchdogNotifier()
    _, loop = build_engine(cfg, notifier)

    def _handler(sig, frame):
        logger.info("Received signal %s; shutting down…", sig)
        stop.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)

    logger.info("%s %s starting with %d target(s).", __app_name__, __version__, len(cfg.targets))
    try:
        loop.run(stop)
    finally:
        notifier.close()
    logger.info("%s stopped.", __app_name__)
    return EXIT_OK


def run_once(cfg: Config) -> tuple[int, list[RestoreOutcome]]:
    """Restore every target once; exit code is non-zero if any restore failed."""
    restorer = Restorer(verify=cfg.verify_restores)
    outcomes = restorer.restore_all(cfg.targets)
    failed = [o for o in outcomes if not o.success]
    for outcome in failed:
        logger.error("Restore of %s failed: %s", outcome.target.name, outcome.message)
    return (EXIT_FAILURE if failed else EXIT_OK), outcomes


def check(cfg: Config) -> tuple[int, dict[str, TargetState]]:
    """Report each target's state; exit code is non-zero unless all are in sync."""
    restorer = Restorer(verify=cfg.verify_restores)
    states = {target.name: restorer.inspect(target) for target in cfg.targets}
    healthy = all(state is TargetState.IN_SYNC for state in states.values())
    return (EXIT_OK if healthy else EXIT_FAILURE), states
