"""Change notification for the encrypted session file.

Uses watchdog to observe the directory holding the session file and
calls back, debounced, whenever the file is written, replaced or
deleted (including by other processes).
"""

from __future__ import annotations

import logging
import threading

from pathlib import Path
from typing import TYPE_CHECKING, Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer


if TYPE_CHECKING:
    from collections.abc import Callable


logger = logging.getLogger("gcpauth.store")


class StoreWatcher:
    """Watch one file and invoke ``callback`` after it changes.

    Parameters
    ----------
    path : str or Path
        File to watch. Its directory must exist when ``start`` is called.
    callback : callable
        Called with no arguments on a timer thread.
    debounce_ms : int, optional
        Changes within this window are batched into one callback.
    """

    def __init__(
        self,
        path: str | Path,
        callback: Callable[[], None],
        debounce_ms: int = 200,
    ) -> None:
        self._path = Path(path).expanduser().resolve()
        self._callback = callback
        self._debounce_sec = max(10, debounce_ms) / 1000.0
        self._observer: Any = None
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        """Start observing the file's directory."""
        if self._observer is not None:
            return
        directory = self._path.parent
        directory.mkdir(parents=True, exist_ok=True)
        observer = Observer()
        observer.schedule(_StoreEventHandler(self), str(directory), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.debug("Watching session file %s", self._path)

    def stop(self) -> None:
        """Stop observing and drop any pending callback."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join(timeout=2.0)
            logger.debug("Stopped watching session file %s", self._path)

    def _on_change(self, src_path: Any) -> None:
        if isinstance(src_path, bytes):
            src_path = src_path.decode()
        if Path(src_path).resolve() != self._path:
            return

        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._debounce_sec, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
        try:
            self._callback()
        except Exception as exc:
            logger.warning("Error in session file watch callback: %s", exc)


class _StoreEventHandler(FileSystemEventHandler):
    """Watchdog event handler that forwards to StoreWatcher."""

    def __init__(self, watcher: StoreWatcher) -> None:
        super().__init__()
        self._watcher = watcher

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher._on_change(event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher._on_change(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher._on_change(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic replace lands as a move onto the watched path
        if not event.is_directory:
            self._watcher._on_change(event.dest_path)
