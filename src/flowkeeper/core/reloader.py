"""Restart the workflow when its program file changes."""

from __future__ import annotations

import asyncio
import inspect
import os
from pathlib import Path
from typing import Any, Awaitable, Callable

from loguru import logger
from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

DEFAULT_DEBOUNCE_SECONDS = 2.0

_RELOAD_EVENTS = {EVENT_TYPE_MODIFIED, EVENT_TYPE_CREATED, EVENT_TYPE_MOVED}


def debounce_fire_time(last_event: float, delay: float) -> float:
    """When a debounce timer fires, given the time of the last event."""
    return last_event + delay


class DebounceTimer:
    """A single cancellable timer that every trigger pushes back."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        delay: float,
        callback: Callable[[], Any],
    ):
        self._loop = loop
        self.delay = delay
        self._callback = callback
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self.fire_at: float | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> float:
        """(Re)start the timer from now. Returns the scheduled fire time."""
        self.cancel()
        self.fire_at = debounce_fire_time(self._loop.time(), self.delay)
        self._handle = self._loop.call_at(self.fire_at, self._fire)
        return self.fire_at

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def cancel_all(self) -> None:
        """Cancel the timer and a callback still running from an earlier fire."""
        self.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _fire(self) -> None:
        self._handle = None
        result = self._callback()
        if inspect.isawaitable(result):
            self._task = asyncio.ensure_future(result, loop=self._loop)


class ProgramChangeHandler(FileSystemEventHandler):
    """Forwards change events for one file to the event loop."""

    def __init__(self, path: Path, loop: asyncio.AbstractEventLoop, on_change: Callable[[], None]):
        super().__init__()
        self._path = path
        self._loop = loop
        self._on_change = on_change

    def _matches(self, raw_path: Any) -> bool:
        if not raw_path:
            return False
        return Path(os.fsdecode(raw_path)).resolve() == self._path

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _RELOAD_EVENTS:
            return
        if self._matches(event.src_path) or self._matches(getattr(event, "dest_path", None)):
            self._loop.call_soon_threadsafe(self._on_change)


class FileWatchReloader:
    """Watches the program file and fires ``on_reload`` once edits settle.

    N edits within the debounce window produce a single reload, timed from
    the last edit.
    """

    def __init__(
        self,
        path: Path,
        on_reload: Callable[[], Awaitable[None]],
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        self.path = Path(path).resolve()
        self._on_reload = on_reload
        self.debounce = debounce
        self._observer: Observer | None = None
        self._timer: DebounceTimer | None = None
        self._running = False

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> bool:
        """Start watching. A failure is logged and leaves reloading disabled."""
        loop = loop or asyncio.get_running_loop()
        self._timer = DebounceTimer(loop, self.debounce, self._fire)
        logger.info(f"Starting file watcher for {self.path}")

        try:
            observer = Observer()
            handler = ProgramChangeHandler(self.path, loop, self.notify_change)
            observer.schedule(handler, str(self.path.parent), recursive=False)
            observer.start()
        except Exception as e:
            logger.error(f"Failed to start file watcher: {e}")
            return False

        self._observer = observer
        self._running = True
        logger.info("File watcher started successfully")
        return True

    def notify_change(self) -> None:
        """Record a change of the program file. Must run on the event loop."""
        if self._timer is None:
            return
        logger.info(f"File change detected on {self.path}")
        self._timer.trigger()

    async def _fire(self) -> None:
        logger.info("Debounce completed, restarting workflow due to file change...")
        try:
            await self._on_reload()
        except Exception:
            logger.exception("Reload after file change failed")

    @property
    def pending(self) -> bool:
        return self._timer is not None and self._timer.pending

    def stop(self) -> None:
        """Stop watching and cancel any pending reload."""
        if self._timer is not None:
            self._timer.cancel_all()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.info("File watcher stopped")
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running
