"""
Restore engine for Persist Watcher.

Copies a persistent source file onto its target path using a
write-temp-then-rename protocol, so readers of the target only ever see
the previous content or the complete new content. Applies the desired
permission bits (and optionally the source's ownership) before the
rename, verifies the result with SHA-256, and reports one
``RestoreOutcome`` per attempt.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from persist_sync.models import (
    ErrorKind,
    RestoreAction,
    RestoreOutcome,
    TargetState,
    Trigger,
    WatchTarget,
)
from persist_sync.platform_utils import SUPPORTS_CHOWN, mode_matches, owner_matches

logger = logging.getLogger(__name__)

_PARENT_DIR_MODE = 0o700
_HISTORY_LIMIT = 1000


def _sha256(data: bytes) -> str:
    """Return the hex SHA-256 digest of *data*."""
    return hashlib.sha256(data).hexdigest()


def _read_source(path: Path) -> bytes:
    with open(path, "rb") as fh:
        return fh.read()


def _read_if_file(path: Path) -> bytes | None:
    """Return the content of *path*, or None if it is absent or unreadable."""
    try:
        with open(path, "rb") as fh:
            return fh.read()
    except OSError:
        return None


@dataclass
class RestoreStats:
    """Aggregated restore statistics."""

    total_restored: int = 0
    total_in_sync: int = 0
    total_source_missing: int = 0
    total_failed: int = 0
    total_bytes: int = 0
    last_restored_target: str = ""
    history: list[RestoreOutcome] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, outcome: RestoreOutcome) -> None:
        with self._lock:
            self.history.append(outcome)
            if outcome.action is RestoreAction.RESTORED:
                self.total_restored += 1
                self.total_bytes += outcome.bytes_copied
                self.last_restored_target = str(outcome.target.target_path)
            elif outcome.action is RestoreAction.IN_SYNC:
                self.total_in_sync += 1
            elif outcome.action is RestoreAction.SOURCE_MISSING:
                self.total_source_missing += 1
            else:
                self.total_failed += 1
            if len(self.history) > _HISTORY_LIMIT:
                self.history = self.history[-_HISTORY_LIMIT:]

    @property
    def total_attempts(self) -> int:
        with self._lock:
            return len(self.history)


class Restorer:
    """
    Restores targets from their persistent sources.

    Parameters
    ----------
    on_outcome : callable, optional
        Callback invoked after each attempt with the RestoreOutcome.
    verify : bool
        If True, compare the SHA-256 of the written target with the source data.
    """

    def __init__(
        self,
        on_outcome: Callable[[RestoreOutcome], None] | None = None,
        verify: bool = True,
    ):
        self._on_outcome = on_outcome
        self._verify = verify
        self.stats = RestoreStats()
        # target_path -> lock; guarded by _locks_guard
        self._locks: dict[Path, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # target name -> checksum of the last successful restore
        self._last_checksum: dict[str, str] = {}

    def _lock_for(self, target: WatchTarget) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(target.target_path)
            if lock is None:
                lock = self._locks[target.target_path] = threading.Lock()
            return lock

    def last_checksum(self, target: WatchTarget) -> str | None:
        """Return the SHA-256 recorded by the last successful restore of *target*."""
        return self._last_checksum.get(target.name)

    # ---- public API ----

    def restore(self, target: WatchTarget, trigger: Trigger = Trigger.INITIAL) -> RestoreOutcome:
        """Bring *target* back in line with its source. Never raises for I/O errors."""
        outcome = RestoreOutcome(target=target, trigger=trigger, started=time.time())
        try:
            with self._lock_for(target):
                self._do_restore(target, outcome)
        except Exception as exc:
            outcome.success = False
            outcome.action = RestoreAction.FAILED
            outcome.error = outcome.error or ErrorKind.TARGET_WRITE_FAILED
            outcome.message = str(exc)
            logger.exception("Unexpected error restoring %s", target.name)
        finally:
            outcome.finished = time.time()
            self._report(outcome)
        return outcome

    def restore_all(self, targets: list[WatchTarget] | tuple[WatchTarget, ...]) -> list[RestoreOutcome]:
        """Restore every target once, in order."""
        return [self.restore(target, Trigger.INITIAL) for target in targets]

    def inspect(self, target: WatchTarget) -> TargetState:
        """Report how *target* compares with its source without changing anything."""
        try:
            target.source_path.stat()
        except FileNotFoundError:
            return TargetState.SOURCE_MISSING
        except OSError:
            # Present but unreadable: the target cannot be confirmed in sync
            return TargetState.DRIFTED
        if not target.target_path.exists():
            return TargetState.TARGET_MISSING
        try:
            data = _read_source(target.source_path)
        except OSError:
            return TargetState.DRIFTED
        return TargetState.IN_SYNC if self._is_in_sync(target, data) else TargetState.DRIFTED

    # ---- internals ----

    def _do_restore(self, target: WatchTarget, outcome: RestoreOutcome) -> None:
        source = target.source_path
        try:
            source.stat()
        except FileNotFoundError:
            outcome.success = True
            outcome.action = RestoreAction.SOURCE_MISSING
            outcome.message = "Source does not exist; nothing to restore"
            return
        except OSError as exc:
            outcome.error = ErrorKind.SOURCE_READ_FAILED
            outcome.message = str(exc)
            return

        try:
            data = _read_source(source)
        except OSError as exc:
            outcome.error = ErrorKind.SOURCE_READ_FAILED
            outcome.message = str(exc)
            return

        outcome.checksum = _sha256(data)

        if self._is_in_sync(target, data):
            outcome.success = True
            outcome.action = RestoreAction.IN_SYNC
            self._last_checksum[target.name] = outcome.checksum
            return

        try:
            self._write_atomic(target, data)
        except OSError as exc:
            outcome.error = ErrorKind.TARGET_WRITE_FAILED
            outcome.message = str(exc)
            return

        # ---- post-restore verification ----
        if self._verify:
            written = _read_if_file(target.target_path)
            written_hash = _sha256(written) if written is not None else ""
            if written_hash != outcome.checksum:
                outcome.error = ErrorKind.TARGET_WRITE_FAILED
                outcome.message = (
                    f"Verification failed: SHA-256 mismatch "
                    f"(src={outcome.checksum[:12]} dst={written_hash[:12] or 'missing'})"
                )
                return

        outcome.success = True
        outcome.action = RestoreAction.RESTORED
        outcome.bytes_copied = len(data)
        self._last_checksum[target.name] = outcome.checksum

    def _is_in_sync(self, target: WatchTarget, data: bytes) -> bool:
        dest = target.target_path
        if dest.is_symlink() or not dest.is_file():
            return False
        try:
            st = dest.stat()
        except OSError:
            return False
        if st.st_size != len(data) or not mode_matches(st, target.desired_mode):
            return False
        if target.preserve_ownership:
            try:
                if not owner_matches(st, target.source_path.stat()):
                    return False
            except OSError:
                return False
        return _read_if_file(dest) == data

    def _write_atomic(self, target: WatchTarget, data: bytes) -> None:
        dest = target.target_path
        parent = dest.parent
        if not parent.is_dir():
            parent.mkdir(parents=True, exist_ok=True, mode=_PARENT_DIR_MODE)
            logger.info("Created missing directory %s", parent)

        fd, tmp_name = tempfile.mkstemp(dir=parent, prefix=f".{dest.name}.", suffix=".tmp")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_path, target.desired_mode)
            if target.preserve_ownership and SUPPORTS_CHOWN:
                src_stat = target.source_path.stat()
                os.chown(tmp_path, src_stat.st_uid, src_stat.st_gid)
            os.replace(tmp_path, dest)
        except BaseException:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Could not remove temporary file %s", tmp_path)
            raise

    def _report(self, outcome: RestoreOutcome) -> None:
        self.stats.record(outcome)
        level = logging.INFO if outcome.success else logging.ERROR
        if outcome.action is RestoreAction.IN_SYNC:
            level = logging.DEBUG
        logger.log(
            level,
            "restore target=%s trigger=%s action=%s success=%s bytes=%d error=%s duration=%.3fs%s",
            outcome.target.name,
            outcome.trigger.value,
            outcome.action.value,
            outcome.success,
            outcome.bytes_copied,
            outcome.error.value if outcome.error else "-",
            outcome.duration,
            f" message={outcome.message!r}" if outcome.message and not outcome.success else "",
        )
        if self._on_outcome:
            try:
                self._on_outcome(outcome)
            except Exception:
                logger.exception("Error in on_outcome callback")
