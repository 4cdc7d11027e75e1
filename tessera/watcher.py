"""Watch mode for Tessera.

Filesystem events from watchdog are debounced per path, folded into
settled ``created`` / ``modified`` / ``deleted`` changes, and handed to a
single coordinating thread that owns the BuildScheduler (and with it the
dependency graph). The watcher never blocks on a build: changes that arrive
while a pass is running wait in the queue and are coalesced into the next
pass.

Key classes:
- Debouncer: Per-path quiet-window debouncing with change folding.
- WatchSession: Coordinating thread running the build passes.
- WatchHandle: Running handle returned by ``watch``.
"""

from __future__ import annotations

import os
import queue
import threading
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .build import BuildResult, BuildScheduler, Change, ChangeKind
from .config import BuildConfig
from .errors import TesseraError
from .logging import get_logger
from .utils import relative_to

logger = get_logger("watcher")

_WAKE = object()
_STOP = object()


def fold(previous: ChangeKind | None, current: ChangeKind) -> ChangeKind | None:
    """Combine two changes to the same path into one, or None if they cancel."""
    if previous is None:
        return current
    if previous is ChangeKind.CREATED:
        if current is ChangeKind.DELETED:
            return None
        return ChangeKind.CREATED
    if previous is ChangeKind.DELETED and current is not ChangeKind.DELETED:
        return ChangeKind.MODIFIED
    return current


def merge_changes(changes: Iterable[Change]) -> list[Change]:
    """Fold a sequence of changes into at most one change per path."""
    kinds: dict[Path, ChangeKind | None] = {}
    for change in changes:
        kinds[change.path] = fold(kinds.get(change.path), change.kind)
    return [Change(kind, path) for path, kind in sorted(kinds.items()) if kind is not None]


class Debouncer:
    """Holds changes until their path has been quiet for ``window`` seconds.

    Editors tend to save with a burst of events (truncate, write, chmod,
    rename). Every event on a path restarts that path's window; only the
    folded result is released.

    Args:
        window: Quiet time in seconds before a change is released.
        clock: Monotonic time source; injectable for tests.
    """

    def __init__(self, window: float, clock: Callable[[], float] = time.monotonic):
        self.window = window
        self.clock = clock
        self._pending: dict[Path, tuple[ChangeKind | None, float]] = {}
        self._lock = threading.Lock()

    def push(self, kind: ChangeKind, path: Path, now: float | None = None) -> None:
        now = self.clock() if now is None else now
        with self._lock:
            previous = self._pending.get(path, (None, now))[0]
            self._pending[path] = (fold(previous, kind), now)

    def settle(self, now: float | None = None) -> list[Change]:
        """Release every change whose path has been quiet long enough."""
        now = self.clock() if now is None else now
        with self._lock:
            due = [
                path
                for path, (_, stamp) in self._pending.items()
                if now - stamp >= self.window
            ]
            released = [(path, self._pending.pop(path)[0]) for path in due]
        return [Change(kind, path) for path, kind in sorted(released) if kind is not None]

    def flush(self) -> list[Change]:
        """Release everything still pending, quiet or not."""
        with self._lock:
            pending, self._pending = self._pending, {}
        return [
            Change(kind, path) for path, (kind, _) in sorted(pending.items()) if kind is not None
        ]

    def time_until_due(self, now: float | None = None) -> float | None:
        """Seconds until the next pending change settles, or None if idle."""
        now = self.clock() if now is None else now
        with self._lock:
            if not self._pending:
                return None
            oldest = min(stamp for _, stamp in self._pending.values())
        return max(0.0, oldest + self.window - now)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class _ChangeHandler(FileSystemEventHandler):
    """Feeds watchdog file events into a Debouncer."""

    _KINDS = {
        "created": ChangeKind.CREATED,
        "modified": ChangeKind.MODIFIED,
        "deleted": ChangeKind.DELETED,
    }

    def __init__(self, session: WatchSession):
        super().__init__()
        self.session = session

    def on_any_event(self, event):
        if event.is_directory:
            return
        if event.event_type == "moved":
            self._push(ChangeKind.DELETED, event.src_path)
            self._push(ChangeKind.CREATED, event.dest_path)
        elif event.event_type in self._KINDS:
            self._push(self._KINDS[event.event_type], event.src_path)
        else:
            return
        self.session.wake()

    def _push(self, kind: ChangeKind, raw_path) -> None:
        path = Path(os.fsdecode(raw_path)).resolve()
        name = path.name
        if name.startswith(".") or name.endswith("~"):
            return
        # Skip our own writes
        if relative_to(path, self.session.config.output_root) is not None:
            return
        self.session.debouncer.push(kind, path)


class WatchSession:
    """The coordinating thread of watch mode.

    Args:
        config: Build configuration for the session.
        on_batch: Called with the BuildResult of every pass.
        scheduler: Scheduler to drive; a new one is created if omitted.
        reload_config: Called when the configuration file changes; returns
            the new BuildConfig.
        clock: Time source for the debouncer.
    """

    def __init__(
        self,
        config: BuildConfig,
        on_batch: Callable[[BuildResult], None],
        scheduler: BuildScheduler | None = None,
        reload_config: Callable[[], BuildConfig] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.on_batch = on_batch
        self.scheduler = scheduler or BuildScheduler(config)
        self.reload_config = reload_config
        self.debouncer = Debouncer(config.debounce, clock)
        self.error: BaseException | None = None
        self.passes = 0
        self._queue: queue.Queue = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="tessera-watch", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def submit(self, changes: Iterable[Change]) -> None:
        """Queue a batch of settled changes for the next pass."""
        self._queue.put(list(changes))

    def wake(self) -> None:
        self._queue.put(_WAKE)

    def stop(self) -> None:
        self._queue.put(_STOP)

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        try:
            self._finish_pass(self.scheduler.build_all())
            stopping = False
            while not stopping:
                batch, stopping = self._next_batch()
                if batch:
                    self._pass(batch)
        except Exception as exc:
            self.error = exc
            logger.exception("Watch loop stopped")

    def _next_batch(self) -> tuple[list[Change], bool]:
        """Wait for work, then drain everything already queued."""
        try:
            item = self._queue.get(timeout=self.debouncer.time_until_due())
        except queue.Empty:
            item = _WAKE
        changes: list[Change] = []
        stopping = False
        while True:
            if item is _STOP:
                stopping = True
            elif item is not _WAKE:
                changes.extend(item)
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
        changes.extend(self.debouncer.flush() if stopping else self.debouncer.settle())
        return merge_changes(changes), stopping

    def _pass(self, changes: list[Change]) -> None:
        config_path = self.scheduler.config.config_path
        if config_path is not None and any(c.path == config_path for c in changes):
            result = self._reconfigure()
            if result is not None:
                self._finish_pass(result)
                return
        logger.info("Rebuilding for %d change(s)", len(changes))
        self._finish_pass(self.scheduler.build_incremental(changes))

    def _reconfigure(self) -> BuildResult | None:
        if self.reload_config is None:
            return None
        try:
            config = self.reload_config()
        except TesseraError as exc:
            logger.error("Configuration reload failed: %s", exc)
            return BuildResult(fatal=exc, incremental=True)
        logger.info("Configuration reloaded; running a full build")
        self.scheduler.reconfigure(config)
        self.config = config
        return self.scheduler.build_all()

    def _finish_pass(self, result: BuildResult) -> None:
        self.passes += 1
        self.on_batch(result)


class WatchHandle:
    """Handle to a running watch session."""

    def __init__(self, session: WatchSession, observer=None):
        self.session = session
        self.observer = observer

    @property
    def running(self) -> bool:
        return self.session.running

    @property
    def scheduler(self) -> BuildScheduler:
        return self.session.scheduler

    def submit(self, changes: Iterable[Change]) -> None:
        self.session.submit(changes)

    def stop(self) -> None:
        """Stop observing and let the session finish its queued work."""
        if self.observer is not None:
            self.observer.stop()
            self.observer.join()
            self.observer = None
        self.session.stop()

    def join(self, timeout: float | None = None) -> None:
        """Wait for the session thread; re-raise an error that killed it."""
        self.session.join(timeout)
        if self.session.error is not None:
            raise self.session.error


def watch_paths(config: BuildConfig) -> list[tuple[Path, bool]]:
    """Return ``(directory, recursive)`` pairs to observe for *config*."""
    paths = [
        (root, True)
        for root in (config.content_root, config.template_root, config.asset_root)
        if root.is_dir()
    ]
    if config.config_path is not None:
        paths.append((config.config_path.parent, False))
    return paths


def watch(
    config: BuildConfig,
    on_batch: Callable[[BuildResult], None],
    scheduler: BuildScheduler | None = None,
    reload_config: Callable[[], BuildConfig] | None = None,
    observer_factory: Callable[[], Observer] | None = Observer,
) -> WatchHandle:
    """Build the site, then rebuild incrementally whenever sources change.

    Args:
        config: Build configuration.
        on_batch: Called with the result of the initial full build and of
            every later pass, on the session thread.
        scheduler: Scheduler to drive; a new one is created if omitted.
        reload_config: Called when the configuration file changes.
        observer_factory: Creates the watchdog observer. Pass None to drive
            the session only through ``WatchHandle.submit``.

    Returns:
        A running WatchHandle.
    """
    session = WatchSession(config, on_batch, scheduler, reload_config)
    observer = None
    if observer_factory is not None:
        observer = observer_factory()
        handler = _ChangeHandler(session)
        for path, recursive in watch_paths(config):
            observer.schedule(handler, str(path), recursive=recursive)
        observer.start()
    session.start()
    return WatchHandle(session, observer)
