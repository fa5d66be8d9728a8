"""Change-notification channel for Persist Watcher.

The watch loop only needs a ``subscribe(target)`` primitive that hands
back a cancellable, lazily consumed stream of ``RestoreEvent`` objects.
``WatchdogNotifier`` provides it on top of the watchdog library: one
shared observer, one non-recursive watch per target directory, and a
handler per subscription that filters events down to the exact target
path.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Protocol

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from persist_sync.models import RestoreEvent, Trigger, WatchTarget

logger = logging.getLogger(__name__)

# Sentinel pushed into a subscription queue when the channel drops
_LOST = object()
_CLOSED = object()


class SubscriptionLost(RuntimeError):
    """The notification channel for a target dropped and must be re-established."""


class Subscription(Protocol):
    def get(self, timeout: float | None = None) -> RestoreEvent | None: ...

    def close(self) -> None: ...

    def __iter__(self) -> Iterator[RestoreEvent]: ...


class Notifier(Protocol):
    def subscribe(self, target: WatchTarget) -> Subscription: ...

    def close(self) -> None: ...


class QueueSubscription:
    """A subscription fed through a thread-safe queue.

    ``get`` returns the next event, ``None`` on timeout, and raises
    ``SubscriptionLost`` once the producer reports a dropped channel.
    """

    def __init__(self, target: WatchTarget, on_close: Any = None):
        self.target = target
        self._queue: queue.Queue = queue.Queue()
        self._on_close = on_close
        self._closed = threading.Event()
        self._lost = False

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def push(self, trigger: Trigger) -> None:
        if not self.closed:
            self._queue.put(RestoreEvent(target=self.target, trigger=trigger))

    def mark_lost(self) -> None:
        if not self.closed:
            self._queue.put(_LOST)

    def get(self, timeout: float | None = None) -> RestoreEvent | None:
        if self._lost:
            raise SubscriptionLost(f"Notification channel for {self.target.target_path} was lost")
        if self.closed:
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        if item is _LOST:
            self._lost = True
            raise SubscriptionLost(f"Notification channel for {self.target.target_path} was lost")
        return item

    def __iter__(self) -> Iterator[RestoreEvent]:
        while not self.closed:
            event = self.get(timeout=0.5)
            if event is not None:
                yield event

    def close(self) -> None:
        if self.closed:
            return
        self._closed.set()
        self._queue.put(_CLOSED)
        if self._on_close:
            self._on_close(self)


class _TargetEventHandler(FileSystemEventHandler):
    """Watchdog handler that turns events on one target path into triggers."""

    def __init__(self, subscription: QueueSubscription, on_directory_lost: Any = None):
        super().__init__()
        self._subscription = subscription
        self._on_directory_lost = on_directory_lost
        self._target = os.path.normpath(str(subscription.target.target_path))
        self._directory = os.path.dirname(self._target)

    def on_any_event(self, event: FileSystemEvent) -> None:
        src = os.path.normpath(os.fsdecode(event.src_path))

        if event.event_type == EVENT_TYPE_DELETED and src == self._directory:
            logger.warning("Watched directory %s was removed", self._directory)
            if self._on_directory_lost:
                self._on_directory_lost(self._directory)
            self._subscription.mark_lost()
            return

        if event.is_directory:
            return

        trigger = None
        if event.event_type == EVENT_TYPE_MOVED:
            dest = os.path.normpath(os.fsdecode(getattr(event, "dest_path", "") or ""))
            if dest == self._target:
                trigger = Trigger.CREATED
            elif src == self._target:
                trigger = Trigger.DELETED
        elif src == self._target:
            trigger = {
                EVENT_TYPE_CREATED: Trigger.CREATED,
                EVENT_TYPE_MODIFIED: Trigger.MODIFIED,
                EVENT_TYPE_DELETED: Trigger.DELETED,
            }.get(event.event_type)

        if trigger is not None:
            logger.debug("Event %s on %s", trigger.value, self._target)
            self._subscription.push(trigger)


class WatchdogNotifier:
    """Notifier backed by a single watchdog ``Observer``.

    Usage:
        notifier = WatchdogNotifier()
        sub = notifier.subscribe(target)
        event = sub.get(timeout=0.3)
        ...
        sub.close()
        notifier.close()
    """

    def __init__(self, observer_factory: Any = Observer):
        self._observer_factory = observer_factory
        self._observer: Any | None = None
        self._lock = threading.Lock()
        # directory -> [ObservedWatch, handler count]
        self._watches: dict[str, list[Any]] = {}
        # subscription -> (handler, observer, watch) it was scheduled with
        self._handlers: dict[QueueSubscription, tuple[_TargetEventHandler, Any, Any]] = {}
        # directories whose emitter died with the directory itself; written
        # from the observer thread, so _stale_lock is never held across
        # observer calls
        self._stale: set[str] = set()
        self._stale_lock = threading.Lock()

    # ---- lifecycle ----

    def _ensure_observer(self) -> Any:
        if self._observer is None or not self._observer.is_alive():
            if self._observer is not None:
                logger.warning("File observer stopped unexpectedly; starting a new one.")
            observer = self._observer_factory()
            observer.start()
            self._observer = observer
            self._watches.clear()
            with self._stale_lock:
                self._stale.clear()
        return self._observer

    def _directory_lost(self, directory: str) -> None:
        # Called from the observer thread; cleanup happens on the next subscribe
        with self._stale_lock:
            self._stale.add(directory)

    def _drop_stale_watch(self, observer: Any, directory: str) -> None:
        with self._stale_lock:
            if directory not in self._stale:
                return
            self._stale.discard(directory)
        entry = self._watches.pop(directory, None)
        if entry is not None:
            try:
                observer.unschedule(entry[0])
            except (KeyError, OSError) as exc:
                logger.debug("Stale watch for %s was already gone: %s", directory, exc)
            else:
                logger.debug("Dropped stale watch for %s", directory)

    def subscribe(self, target: WatchTarget) -> Subscription:
        """Start delivering change events for *target*'s target path.

        Raises ``SubscriptionLost`` if the target directory cannot be watched.
        """
        directory = os.path.dirname(os.path.normpath(str(target.target_path)))
        subscription = QueueSubscription(target, on_close=self._release)
        handler = _TargetEventHandler(subscription, on_directory_lost=self._directory_lost)

        error: OSError | None = None
        with self._lock:
            try:
                observer = self._ensure_observer()
                self._drop_stale_watch(observer, directory)
                watch = observer.schedule(handler, directory, recursive=False)
            except OSError as exc:
                error = exc
            else:
                entry = self._watches.get(directory)
                if entry is None:
                    entry = self._watches[directory] = [watch, 0]
                entry[1] += 1
                self._handlers[subscription] = (handler, observer, entry[0])

        if error is not None:
            # watchdog may keep the handler registered; a closed queue ignores it
            subscription.close()
            raise SubscriptionLost(f"Cannot watch {directory}: {error}") from error

        logger.info("Watching '%s' for changes to %s", directory, Path(target.target_path).name)
        return _ObservedSubscription(subscription, observer)

    def _release(self, subscription: QueueSubscription) -> None:
        directory = os.path.dirname(os.path.normpath(str(subscription.target.target_path)))
        with self._lock:
            handler, observer, watch = self._handlers.pop(subscription, (None, None, None))
            entry = self._watches.get(directory)
            # Watches on a replaced observer or a dropped watch are already gone
            if handler is None or entry is None or observer is not self._observer or entry[0] is not watch:
                return
            try:
                if entry[1] <= 1:
                    observer.unschedule(watch)
                    del self._watches[directory]
                else:
                    observer.remove_handler_for_watch(handler, watch)
                    entry[1] -= 1
            except (KeyError, ValueError, OSError):
                self._watches.pop(directory, None)
                logger.debug("Watch for %s was already gone", directory)

    def close(self) -> None:
        """Stop the observer and release all watches."""
        with self._lock:
            observer, self._observer = self._observer, None
            self._watches.clear()
            self._handlers.clear()
            with self._stale_lock:
                self._stale.clear()
        if observer is not None:
            observer.stop()
            observer.join(timeout=5)
            logger.info("File observer stopped.")


class _ObservedSubscription:
    """Wraps a queue subscription so a dead observer is reported as lost."""

    def __init__(self, inner: QueueSubscription, observer: Any):
        self._inner = inner
        self._observer = observer
        self.target = inner.target

    def get(self, timeout: float | None = None) -> RestoreEvent | None:
        event = self._inner.get(timeout=timeout)
        if event is None and not self._inner.closed and not self._observer.is_alive():
            raise SubscriptionLost("File observer is no longer running")
        return event

    def __iter__(self) -> Iterator[RestoreEvent]:
        while not self._inner.closed:
            event = self.get(timeout=0.5)
            if event is not None:
                yield event

    def close(self) -> None:
        self._inner.close()
