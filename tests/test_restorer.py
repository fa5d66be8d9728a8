from __future__ import annotations

import hashlib
import os
import stat
import threading
from pathlib import Path

import pytest

from persist_sync.models import ErrorKind, RestoreAction, TargetState, Trigger
from persist_sync.platform_utils import IS_WINDOWS
from persist_sync.restorer import Restorer

posix_only = pytest.mark.skipif(IS_WINDOWS, reason="POSIX permission bits")


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


def _leftover_temp_files(directory: Path) -> list[Path]:
    return [p for p in directory.iterdir() if p.name.endswith(".tmp")]


@posix_only
def test_restore_creates_missing_target_with_mode(make_target) -> None:
    target = make_target()

    outcome = Restorer().restore(target)

    assert outcome.success
    assert outcome.action is RestoreAction.RESTORED
    assert outcome.bytes_copied == len(b'{"key":"v1"}')
    assert outcome.checksum == hashlib.sha256(b'{"key":"v1"}').hexdigest()
    assert target.target_path.read_bytes() == b'{"key":"v1"}'
    assert _mode(target.target_path) == 0o600


@posix_only
def test_restore_creates_parent_directory_restrictively(make_target) -> None:
    target = make_target()
    assert not target.target_path.parent.exists()

    Restorer().restore(target)

    assert _mode(target.target_path.parent) == 0o700


@posix_only
def test_restore_is_idempotent(make_target) -> None:
    target = make_target(mode=0o640)
    restorer = Restorer()

    first = restorer.restore(target)
    content_first, mode_first = target.target_path.read_bytes(), _mode(target.target_path)
    second = restorer.restore(target)

    assert first.success and second.success
    assert second.action is RestoreAction.IN_SYNC
    assert second.bytes_copied == 0
    assert target.target_path.read_bytes() == content_first
    assert _mode(target.target_path) == mode_first == 0o640
    assert restorer.last_checksum(target) == first.checksum == second.checksum


def test_restore_without_source_is_noop(make_target) -> None:
    target = make_target(content=None)
    target.target_path.parent.mkdir(parents=True)
    target.target_path.write_text('{"tampered":true}')

    outcome = Restorer().restore(target, Trigger.MODIFIED)

    assert outcome.success
    assert outcome.action is RestoreAction.SOURCE_MISSING
    assert outcome.bytes_copied == 0
    assert outcome.error is None
    assert target.target_path.read_text() == '{"tampered":true}'


def test_restore_without_source_leaves_absent_target_absent(make_target) -> None:
    target = make_target(content=None)

    outcome = Restorer().restore(target)

    assert outcome.success
    assert not target.target_path.exists()
    assert not target.target_path.parent.exists()


def test_restore_overwrites_tampered_target(make_target) -> None:
    target = make_target()
    target.target_path.parent.mkdir(parents=True)
    target.target_path.write_text('{"tampered":true}')

    outcome = Restorer().restore(target, Trigger.MODIFIED)

    assert outcome.action is RestoreAction.RESTORED
    assert outcome.trigger is Trigger.MODIFIED
    assert target.target_path.read_bytes() == b'{"key":"v1"}'
    assert _leftover_temp_files(target.target_path.parent) == []


@posix_only
def test_restore_repairs_mode_when_content_matches(make_target) -> None:
    target = make_target()
    target.target_path.parent.mkdir(parents=True)
    target.target_path.write_bytes(b'{"key":"v1"}')
    os.chmod(target.target_path, 0o644)

    outcome = Restorer().restore(target)

    assert outcome.action is RestoreAction.RESTORED
    assert _mode(target.target_path) == 0o600


def test_failure_before_rename_keeps_previous_content(make_target, monkeypatch: pytest.MonkeyPatch) -> None:
    target = make_target()
    target.target_path.parent.mkdir(parents=True)
    target.target_path.write_text("previous")

    def _fail_replace(src, dst):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr("persist_sync.restorer.os.replace", _fail_replace)
    outcome = Restorer().restore(target)

    assert not outcome.success
    assert outcome.action is RestoreAction.FAILED
    assert outcome.error is ErrorKind.TARGET_WRITE_FAILED
    assert "No space left" in outcome.message
    assert target.target_path.read_text() == "previous"
    assert _leftover_temp_files(target.target_path.parent) == []


def test_failure_mid_write_keeps_target_absent(make_target, monkeypatch: pytest.MonkeyPatch) -> None:
    target = make_target()

    def _fail_fsync(fd):
        raise OSError(5, "Input/output error")

    monkeypatch.setattr("persist_sync.restorer.os.fsync", _fail_fsync)
    outcome = Restorer().restore(target)

    assert outcome.error is ErrorKind.TARGET_WRITE_FAILED
    assert not target.target_path.exists()
    assert _leftover_temp_files(target.target_path.parent) == []


def test_interrupt_before_rename_propagates_and_keeps_target(make_target, monkeypatch: pytest.MonkeyPatch) -> None:
    target = make_target()
    target.target_path.parent.mkdir(parents=True)
    target.target_path.write_text("previous")

    def _interrupt(src, dst):
        raise KeyboardInterrupt

    monkeypatch.setattr("persist_sync.restorer.os.replace", _interrupt)
    restorer = Restorer()
    with pytest.raises(KeyboardInterrupt):
        restorer.restore(target)

    assert target.target_path.read_text() == "previous"
    assert _leftover_temp_files(target.target_path.parent) == []


def test_source_read_failure_is_reported(make_target, monkeypatch: pytest.MonkeyPatch) -> None:
    target = make_target()
    target.target_path.parent.mkdir(parents=True)
    target.target_path.write_text("untouched")

    def _deny(path):
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr("persist_sync.restorer._read_source", _deny)
    outcome = Restorer().restore(target)

    assert not outcome.success
    assert outcome.error is ErrorKind.SOURCE_READ_FAILED
    assert target.target_path.read_text() == "untouched"


def test_untraversable_source_is_a_read_failure_not_missing(make_target, monkeypatch: pytest.MonkeyPatch) -> None:
    target = make_target()
    target.target_path.parent.mkdir(parents=True)
    target.target_path.write_text("untouched")
    real_stat = Path.stat

    def _stat(self, *args, **kwargs):
        if self == target.source_path:
            raise PermissionError(13, "Permission denied", str(self))
        return real_stat(self, *args, **kwargs)

    monkeypatch.setattr(Path, "stat", _stat)
    restorer = Restorer()
    outcome = restorer.restore(target)

    assert not outcome.success
    assert outcome.action is RestoreAction.FAILED
    assert outcome.error is ErrorKind.SOURCE_READ_FAILED
    assert "Permission denied" in outcome.message
    assert target.target_path.read_text() == "untouched"
    assert restorer.inspect(target) is TargetState.DRIFTED


def test_verification_mismatch_is_a_write_failure(make_target, monkeypatch: pytest.MonkeyPatch) -> None:
    target = make_target()

    def _corrupting_replace(src, dst):
        Path(dst).write_bytes(b"garbage")
        Path(src).unlink()

    monkeypatch.setattr("persist_sync.restorer.os.replace", _corrupting_replace)
    outcome = Restorer(verify=True).restore(target)

    assert not outcome.success
    assert outcome.error is ErrorKind.TARGET_WRITE_FAILED
    assert "SHA-256 mismatch" in outcome.message


def test_outcomes_reach_callback_and_stats(make_target) -> None:
    seen = []
    target = make_target()
    restorer = Restorer(on_outcome=seen.append)

    restorer.restore(target)
    restorer.restore(target)

    assert [o.action for o in seen] == [RestoreAction.RESTORED, RestoreAction.IN_SYNC]
    assert restorer.stats.total_restored == 1
    assert restorer.stats.total_in_sync == 1
    assert restorer.stats.total_bytes == len(b'{"key":"v1"}')
    assert restorer.stats.last_restored_target == str(target.target_path)
    assert restorer.stats.total_attempts == 2


def test_failing_callback_does_not_break_restore(make_target) -> None:
    def _boom(outcome):
        raise RuntimeError("observer failed")

    target = make_target()
    outcome = Restorer(on_outcome=_boom).restore(target)

    assert outcome.success
    assert target.target_path.exists()


def test_restoring_one_target_leaves_another_alone(make_target) -> None:
    a = make_target("a", content="a-v1")
    b = make_target("b", content="b-v1")
    restorer = Restorer()
    restorer.restore_all([a, b])

    b.source_path.write_text("b-v2")
    restorer.restore(a, Trigger.MODIFIED)

    assert a.target_path.read_text() == "a-v1"
    assert b.target_path.read_text() == "b-v1"


def test_concurrent_restores_of_different_targets(make_target) -> None:
    targets = [make_target(f"t{i}", content=f"content-{i}" * 100) for i in range(4)]
    restorer = Restorer()

    def _hammer(target):
        for _ in range(20):
            restorer.restore(target, Trigger.MODIFIED)

    threads = [threading.Thread(target=_hammer, args=(t,)) for t in targets]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    for i, target in enumerate(targets):
        assert target.target_path.read_text() == f"content-{i}" * 100
    assert restorer.stats.total_failed == 0


def test_concurrent_restores_of_same_target_are_serialized(make_target) -> None:
    target = make_target(content=b"x" * 65536)
    restorer = Restorer()
    results = []

    def _restore():
        results.append(restorer.restore(target, Trigger.MODIFIED))

    threads = [threading.Thread(target=_restore) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(o.success for o in results)
    assert sum(o.action is RestoreAction.RESTORED for o in results) == 1
    assert target.target_path.read_bytes() == b"x" * 65536
    assert _leftover_temp_files(target.target_path.parent) == []


def test_inspect_reports_target_state(make_target) -> None:
    restorer = Restorer()
    target = make_target()
    assert restorer.inspect(target) is TargetState.TARGET_MISSING

    restorer.restore(target)
    assert restorer.inspect(target) is TargetState.IN_SYNC

    target.target_path.write_text("drift")
    assert restorer.inspect(target) is TargetState.DRIFTED

    target.source_path.unlink()
    assert restorer.inspect(target) is TargetState.SOURCE_MISSING


@pytest.mark.skipif(not hasattr(os, "chown"), reason="requires os.chown")
def test_preserve_ownership_copies_source_owner(make_target) -> None:
    target = make_target(preserve_ownership=True)

    outcome = Restorer().restore(target)

    assert outcome.success
    src, dst = target.source_path.stat(), target.target_path.stat()
    assert (dst.st_uid, dst.st_gid) == (src.st_uid, src.st_gid)
