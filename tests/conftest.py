from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable

import pytest

from persist_sync.models import Trigger, WatchTarget
from persist_sync.notifier import QueueSubscription, SubscriptionLost


class FakeNotifier:
    """In-memory notifier: tests push events and drop channels by hand."""

    def __init__(self) -> None:
        self.subscriptions: dict[str, list[QueueSubscription]] = defaultdict(list)
        self.failures_remaining = 0
        self.subscribe_calls = 0
        self.closed = False
        self._lock = threading.Lock()

    def subscribe(self, target: WatchTarget) -> QueueSubscription:
        with self._lock:
            self.subscribe_calls += 1
            if self.failures_remaining > 0:
                self.failures_remaining -= 1
                raise SubscriptionLost("simulated subscribe failure")
            subscription = QueueSubscription(target)
            self.subscriptions[target.name].append(subscription)
            return subscription

    def current(self, target: WatchTarget) -> QueueSubscription:
        with self._lock:
            return self.subscriptions[target.name][-1]

    def emit(self, target: WatchTarget, trigger: Trigger = Trigger.MODIFIED) -> None:
        self.current(target).push(trigger)

    def lose(self, target: WatchTarget) -> None:
        self.current(target).mark_lost()

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def config_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.setenv("APPDATA", str(home / "AppData"))
    return home


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


@pytest.fixture
def fake_notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def make_target(tmp_path: Path) -> Callable[..., WatchTarget]:
    def _make(
        name: str = "app",
        content: bytes | str | None = b'{"key":"v1"}',
        mode: int = 0o600,
        preserve_ownership: bool = False,
    ) -> WatchTarget:
        source = tmp_path / "persist" / name / "config.json"
        target = tmp_path / "live" / name / "config.json"
        if content is not None:
            source.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, str):
                content = content.encode()
            source.write_bytes(content)
        return WatchTarget(
            name=name,
            source_path=source,
            target_path=target,
            desired_mode=mode,
            preserve_ownership=preserve_ownership,
        )

    return _make


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[..., Path]:
    def _write(data: Any, name: str = "config.json") -> Path:
        path = tmp_path / name
        if isinstance(data, str):
            path.write_text(data)
        else:
            path.write_text(json.dumps(data))
        return path

    return _write


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    def _wait(predicate: Callable[[], bool], timeout: float = 3.0, interval: float = 0.02) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait
