"""Tests for the program file watcher and its debounce timer."""

import asyncio
from unittest.mock import MagicMock

import pytest
from watchdog.events import DirModifiedEvent, FileModifiedEvent, FileMovedEvent

from flowkeeper.core.reloader import (
    DebounceTimer,
    FileWatchReloader,
    ProgramChangeHandler,
    debounce_fire_time,
)


class FakeHandle:
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    """Just enough of an event loop for DebounceTimer, with a manual clock."""

    def __init__(self):
        self.now = 0.0
        self.handles = []

    def time(self):
        return self.now

    def call_at(self, when, callback):
        handle = FakeHandle(when, callback)
        self.handles.append(handle)
        return handle

    def advance(self, seconds):
        self.now += seconds
        for handle in list(self.handles):
            if not handle.cancelled and handle.when <= self.now:
                self.handles.remove(handle)
                handle.callback()


class TestDebounceTimer:
    def test_fire_time(self):
        assert debounce_fire_time(10.0, 2.0) == 12.0

    def test_edits_collapse_into_one_fire(self):
        loop = FakeLoop()
        fired = []
        timer = DebounceTimer(loop, 2.0, lambda: fired.append(loop.now))

        timer.trigger()
        loop.advance(0.3)
        timer.trigger()
        loop.advance(0.3)
        fire_at = timer.trigger()

        assert fire_at == pytest.approx(2.6)
        assert timer.pending is True

        loop.advance(1.9)
        assert fired == []

        loop.advance(0.2)
        assert fired == [pytest.approx(2.7)]
        assert timer.pending is False

    def test_cancel(self):
        loop = FakeLoop()
        fired = []
        timer = DebounceTimer(loop, 1.0, lambda: fired.append(True))

        timer.trigger()
        timer.cancel()
        loop.advance(5)

        assert fired == []
        assert timer.pending is False


class TestProgramChangeHandler:
    @pytest.fixture
    def program(self, tmp_path):
        path = tmp_path / "workflow.py"
        path.write_text("print('hi')\n")
        return path.resolve()

    def test_matching_events(self, program):
        loop = MagicMock()
        callback = MagicMock()
        handler = ProgramChangeHandler(program, loop, callback)

        handler.on_any_event(FileModifiedEvent(str(program)))
        handler.on_any_event(FileMovedEvent(str(program.parent / ".workflow.py.swp"), str(program)))

        assert loop.call_soon_threadsafe.call_count == 2

    def test_ignored_events(self, program):
        loop = MagicMock()
        handler = ProgramChangeHandler(program, loop, MagicMock())

        handler.on_any_event(FileModifiedEvent(str(program.parent / "other.py")))
        handler.on_any_event(DirModifiedEvent(str(program.parent)))

        loop.call_soon_threadsafe.assert_not_called()


class TestFileWatchReloader:
    @pytest.mark.asyncio
    async def test_three_edits_one_reload(self, tmp_path):
        program = tmp_path / "workflow.py"
        program.write_text("x = 1\n")
        reloads = []

        async def on_reload():
            reloads.append(asyncio.get_running_loop().time())

        reloader = FileWatchReloader(program, on_reload, debounce=0.2)
        assert reloader.start() is True
        try:
            loop = asyncio.get_running_loop()
            for _ in range(3):
                reloader.notify_change()
                last_edit = loop.time()
                await asyncio.sleep(0.03)

            assert reloads == []
            await asyncio.sleep(0.4)
        finally:
            reloader.stop()

        assert len(reloads) == 1
        assert reloads[0] - last_edit >= 0.2 - 0.01

    @pytest.mark.asyncio
    async def test_real_file_edits(self, tmp_path):
        program = tmp_path / "workflow.py"
        program.write_text("x = 1\n")
        reloads = []

        async def on_reload():
            reloads.append(True)

        reloader = FileWatchReloader(program, on_reload, debounce=0.3)
        reloader.start()
        try:
            for i in range(3):
                program.write_text(f"x = {i + 2}\n")
                await asyncio.sleep(0.05)
            await asyncio.sleep(1.0)
        finally:
            reloader.stop()

        assert len(reloads) == 1

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_reload(self, tmp_path):
        program = tmp_path / "workflow.py"
        program.write_text("x = 1\n")
        reloads = []

        async def on_reload():
            reloads.append(True)

        reloader = FileWatchReloader(program, on_reload, debounce=0.1)
        reloader.start()
        reloader.notify_change()
        assert reloader.pending is True

        reloader.stop()
        await asyncio.sleep(0.2)

        assert reloads == []
        assert reloader.is_running is False

    @pytest.mark.asyncio
    async def test_reload_error_is_logged(self, tmp_path):
        program = tmp_path / "workflow.py"
        program.write_text("x = 1\n")

        async def on_reload():
            raise RuntimeError("relaunch failed")

        reloader = FileWatchReloader(program, on_reload, debounce=0.01)
        reloader.start()
        try:
            reloader.notify_change()
            await asyncio.sleep(0.1)
        finally:
            reloader.stop()

        assert reloader.pending is False
