"""Watch loop for Persist Watcher.

Each target gets its own worker thread that restores it once at
startup, subscribes to change notifications for the target path, and
collapses bursts of events into a single restore once the debounce
window has been quiet.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from enum import Enum

from persist_sync.models import RestoreAction, RestoreEvent, TargetState, Trigger, WatchTarget
from persist_sync.notifier import Notifier, Subscription, SubscriptionLost, WatchdogNotifier
from persist_sync.restorer import Restorer

logger = logging.getLogger(__name__)

_MAX_POLL_SECONDS = 0.5
_MIN_POLL_SECONDS = 0.05


class WatchState(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    RESTORING = "restoring"


class _Debouncer:
    """Collapses change events until the window has been quiet.

    Idle -> Debouncing on the first event; every further event restarts
    the window; Debouncing -> Restoring once it elapses; Restoring -> Idle
    when the caller reports completion.
    """

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic):
        self._window = max(0.0, window)
        self._clock = clock
        self._state = WatchState.IDLE
        self._pending: RestoreEvent | None = None
        self._deadline = 0.0
        self._coalesced = 0
        self._lock = threading.Lock()

    @property
    def state(self) -> WatchState:
        with self._lock:
            return self._state

    @property
    def window(self) -> float:
        return self._window

    def poke(self, event: RestoreEvent) -> None:
        """Register an event and restart the window."""
        with self._lock:
            self._pending = event
            self._deadline = self._clock() + self._window
            self._coalesced += 1
            self._state = WatchState.DEBOUNCING

    def time_until_due(self) -> float | None:
        """Seconds until the pending restore is due, or None when nothing is pending."""
        with self._lock:
            if self._state is not WatchState.DEBOUNCING:
                return None
            return max(0.0, self._deadline - self._clock())

    def take_due(self) -> tuple[RestoreEvent, int] | None:
        """Return the latest event and how many were coalesced, once the window elapsed."""
        with self._lock:
            if self._state is not WatchState.DEBOUNCING or self._clock() < self._deadline:
                return None
            event, count = self._pending, self._coalesced
            self._pending = None
            self._coalesced = 0
            self._state = WatchState.RESTORING
            return event, count

    def begin_restore(self) -> None:
        with self._lock:
            self._state = WatchState.RESTORING

    def finish(self) -> None:
        with self._lock:
            self._state = WatchState.IDLE

    def abandon(self) -> int:
        """Drop any pending event; return how many events were discarded."""
        with self._lock:
            dropped = self._coalesced if self._state is WatchState.DEBOUNCING else 0
            self._pending = None
            self._coalesced = 0
            self._state = WatchState.IDLE
            return dropped


class TargetWatcher:
    """Restore-on-change worker for a single target."""

    def __init__(
        self,
        target: WatchTarget,
        restorer: Restorer,
        notifier: Notifier,
        debounce_seconds: float = 0.3,
        resubscribe_initial_delay: float = 1.0,
        resubscribe_max_delay: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.target = target
        self._restorer = restorer
        self._notifier = notifier
        self._debouncer = _Debouncer(debounce_seconds, clock)
        self._poll = max(_MIN_POLL_SECONDS, min(debounce_seconds, _MAX_POLL_SECONDS))
        self._initial_delay = resubscribe_initial_delay
        self._max_delay = max(resubscribe_initial_delay, resubscribe_max_delay)
        self._stop = threading.Event()
        self._ready = threading.Event()
        self._subscription: Subscription | None = None
        self._sub_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        # Set after a restore that renamed onto the target; the next
        # notification is usually that rename coming back to us
        self._echo_pending = False
        self.subscribe_count = 0

    # ---- lifecycle ----

    def start(self) -> None:
        self._stop.clear()
        self._ready.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name=f"Watch-{self.target.name}"
        )
        self._thread.start()

    def stop(self) -> None:
        """Request shutdown; wakes the worker if it is waiting for events."""
        self._stop.set()
        with self._sub_lock:
            subscription = self._subscription
        if subscription is not None:
            subscription.close()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def wait_ready(self, timeout: float | None = None) -> bool:
        """Block until the initial restore is done and notifications are flowing."""
        return self._ready.wait(timeout=timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def state(self) -> WatchState:
        return self._debouncer.state

    # ---- worker ----

    def _run(self) -> None:
        self._restore(Trigger.INITIAL)
        subscription = self._subscribe()
        if subscription is not None:
            self._ready.set()
        try:
            while subscription is not None and not self._stop.is_set():
                try:
                    self._step(subscription)
                except SubscriptionLost as exc:
                    logger.warning("%s: %s", self.target.name, exc)
                    self._debouncer.abandon()
                    subscription.close()
                    # Recreates a removed target directory so it can be watched again
                    self._restore(Trigger.INITIAL)
                    subscription = self._subscribe()
                    if subscription is not None:
                        # Changes may have been missed while the channel was down
                        self._restore(Trigger.INITIAL)
                except Exception:
                    logger.exception("Unexpected error watching %s", self.target.name)
                    self._stop.wait(self._poll)
        finally:
            dropped = self._debouncer.abandon()
            if dropped:
                logger.info("%s: abandoned %d pending event(s) on shutdown", self.target.name, dropped)
            if subscription is not None:
                subscription.close()
            with self._sub_lock:
                self._subscription = None

    def _step(self, subscription: Subscription) -> None:
        due = self._debouncer.take_due()
        if due is not None:
            event, count = due
            logger.debug("%s: %d event(s) coalesced into one restore", self.target.name, count)
            self._restore(event.trigger, already_restoring=True)
            return

        until_due = self._debouncer.time_until_due()
        timeout = self._poll if until_due is None else min(until_due, self._poll)
        event = subscription.get(timeout=timeout)
        if event is None or self._stop.is_set():
            return
        if self._is_own_echo(event):
            logger.debug("%s: ignoring notification of our own restore", self.target.name)
            return
        self._debouncer.poke(event)

    def _is_own_echo(self, event: RestoreEvent) -> bool:
        """Return True for the rename event produced by the last restore."""
        if not self._echo_pending:
            return False
        self._echo_pending = False
        return (
            event.trigger is Trigger.CREATED
            and self._restorer.inspect(self.target) is TargetState.IN_SYNC
        )

    def _subscribe(self) -> Subscription | None:
        """Subscribe with exponential backoff; None if stopped first."""
        delay = self._initial_delay
        while not self._stop.is_set():
            try:
                subscription = self._notifier.subscribe(self.target)
            except SubscriptionLost as exc:
                logger.warning(
                    "%s: cannot subscribe (%s); retrying in %.1fs", self.target.name, exc, delay
                )
                if self._stop.wait(delay):
                    break
                delay = min(delay * 2, self._max_delay)
                continue
            self.subscribe_count += 1
            with self._sub_lock:
                self._subscription = subscription
            if self._stop.is_set():
                subscription.close()
                return None
            return subscription
        return None

    def _restore(self, trigger: Trigger, already_restoring: bool = False) -> None:
        if not already_restoring:
            self._debouncer.begin_restore()
        try:
            outcome = self._restorer.restore(self.target, trigger)
            self._echo_pending = outcome.action is RestoreAction.RESTORED
        finally:
            self._debouncer.finish()


class WatchLoop:
    """High-level watcher that runs one ``TargetWatcher`` per target.

    Usage:
        loop = WatchLoop(targets, restorer, debounce_seconds=0.3)
        loop.start()
        ...
        loop.stop()
    """

    def __init__(
        self,
        targets: Sequence[WatchTarget],
        restorer: Restorer,
        notifier: Notifier | None = None,
        debounce_seconds: float = 0.3,
        resubscribe_initial_delay: float = 1.0,
        resubscribe_max_delay: float = 60.0,
    ):
        self._owns_notifier = notifier is None
        self._notifier: Notifier = notifier if notifier is not None else WatchdogNotifier()
        self.debounce_seconds = debounce_seconds
        self.watchers = [
            TargetWatcher(
                target,
                restorer,
                self._notifier,
                debounce_seconds=debounce_seconds,
                resubscribe_initial_delay=resubscribe_initial_delay,
                resubscribe_max_delay=resubscribe_max_delay,
            )
            for target in targets
        ]

    # ---- lifecycle ----

    def start(self) -> None:
        """Start one worker per target."""
        for watcher in self.watchers:
            watcher.start()
        logger.info(
            "Watching %d target(s) (debounce=%.0fms)",
            len(self.watchers),
            self.debounce_seconds * 1000,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Stop all workers; in-flight restores complete first."""
        for watcher in self.watchers:
            watcher.stop()
        for watcher in self.watchers:
            watcher.join(timeout=timeout)
        if self._owns_notifier:
            self._notifier.close()
        logger.info("Watcher stopped.")

    def run(self, stop_event: threading.Event) -> None:
        """Watch until *stop_event* is set, then shut down cleanly."""
        self.start()
        try:
            stop_event.wait()
        finally:
            self.stop()

    def wait_ready(self, timeout: float | None = None) -> bool:
        """Block until every target has been restored once and subscribed."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for watcher in self.watchers:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not watcher.wait_ready(remaining):
                return False
        return True

    @property
    def is_running(self) -> bool:
        """Return whether any worker is still active."""
        return any(watcher.is_running for watcher in self.watchers)
