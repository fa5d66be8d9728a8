"""Entry point for Persist Watcher.

Usage:
    python -m persist_sync start     Watch all targets until Ctrl-C / SIGTERM
    python -m persist_sync restore   Restore every target once and exit
    python -m persist_sync check     Validate the config and report target state

Options:
    --config PATH      Use PATH instead of the platform config file
    --log-level LEVEL  Override the configured log level
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from persist_sync import __app_name__, __version__


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="persist-watcher",
        description=f"{__app_name__}: restore target files from persistent copies.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", "-c", type=Path, default=None, help="Path to config.json")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    parser.add_argument("command", choices=("start", "restore", "check"))
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, dispatch the command and return the process exit code."""
    args = _build_parser().parse_args(argv)

    from persist_sync import service
    from persist_sync.config import ConfigError

    try:
        cfg = service.load_config(args.config)
    except ConfigError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return service.EXIT_FAILURE

    service.setup_logging(cfg, level_override=args.log_level)

    if args.command == "start":
        print(f"{__app_name__} running (press Ctrl-C to stop)…")
        code = service.run_foreground(cfg)
        print(f"{__app_name__} stopped.")
        return code

    if args.command == "restore":
        code, outcomes = service.run_once(cfg)
        for outcome in outcomes:
            detail = f" ({outcome.message})" if outcome.message and not outcome.success else ""
            print(f"{outcome.target.name}: {outcome.action.value}{detail}")
        return code

    code, states = service.check(cfg)
    for name, state in states.items():
        print(f"{name}: {state.value}")
    return code


if __name__ == "__main__":
    sys.exit(main())
