"""Shared data types for Persist Watcher."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

DEFAULT_MODE = 0o600


class Trigger(str, Enum):
    """What caused a restore attempt."""

    INITIAL = "initial"
    MODIFIED = "modified"
    DELETED = "deleted"
    CREATED = "created"


class ErrorKind(str, Enum):
    PATH_INVALID = "PathInvalid"
    SOURCE_READ_FAILED = "SourceReadFailed"
    TARGET_WRITE_FAILED = "TargetWriteFailed"
    SUBSCRIPTION_LOST = "SubscriptionLost"


class RestoreAction(str, Enum):
    RESTORED = "restored"
    IN_SYNC = "in_sync"
    SOURCE_MISSING = "source_missing"
    FAILED = "failed"


class TargetState(str, Enum):
    """Read-only view of a target, as reported by ``Restorer.inspect``."""

    IN_SYNC = "in_sync"
    DRIFTED = "drifted"
    TARGET_MISSING = "target_missing"
    SOURCE_MISSING = "source_missing"


@dataclass(frozen=True)
class WatchTarget:
    """A persistent source file and the target path it is restored onto."""

    name: str
    source_path: Path
    target_path: Path
    desired_mode: int = DEFAULT_MODE
    preserve_ownership: bool = False


@dataclass(frozen=True)
class RestoreEvent:
    """A single change notification for a watched target."""

    target: WatchTarget
    trigger: Trigger
    timestamp: float = field(default_factory=time.time)


@dataclass
class RestoreOutcome:
    """Record of a single restore attempt."""

    target: WatchTarget
    trigger: Trigger = Trigger.INITIAL
    success: bool = False
    action: RestoreAction = RestoreAction.FAILED
    bytes_copied: int = 0
    error: ErrorKind | None = None
    message: str = ""
    checksum: str = ""
    started: float = 0.0
    finished: float = 0.0

    @property
    def duration(self) -> float:
        if self.finished and self.started:
            return self.finished - self.started
        return 0.0

    @property
    def timestamp_str(self) -> str:
        """Human-readable timestamp of when the restore finished."""
        if self.finished:
            return datetime.fromtimestamp(self.finished).strftime("%Y-%m-%d %H:%M:%S")
        return ""
