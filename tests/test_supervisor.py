"""Tests for the supervisor lifecycle, driven with fake child processes."""

import asyncio
import os

import pytest

from flowkeeper.core.process import ProcessError, ProcessExit
from flowkeeper.core.recovery import RecoveryState
from flowkeeper.core.supervisor import Supervisor, SupervisorAlreadyRunning
from flowkeeper.models import RecoveryPhase
from flowkeeper.notify import EventType, Notifier
from flowkeeper.pid import PidRegistry


class FakeProcess:
    """Stands in for ProcessHandle; exits when told to."""

    _next_pid = 50000

    def __init__(self, name: str):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.name = name
        self.intentional = False
        self.returncode = None
        self._done = asyncio.Event()

    def is_running(self):
        return self.returncode is None

    def mark_intentional(self):
        self.intentional = True

    def exit(self, returncode):
        if self.returncode is None:
            self.returncode = returncode
            self._done.set()

    def terminate(self):
        self.exit(-15)

    def kill(self):
        self.exit(-9)

    async def wait(self):
        await self._done.wait()
        return ProcessExit(self.returncode, self.intentional)


class FakeLauncher:
    def __init__(self, failures: int = 0):
        self.children = []
        self.companions = []
        self.failures = failures
        self.attempts = 0

    async def launch(self, config):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ProcessError("spawn failed")
        child = FakeProcess("workflow")
        self.children.append(child)
        return child

    async def launch_companion(self, config):
        companion = FakeProcess("companion")
        self.companions.append(companion)
        return companion


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    async def notify(self, event):
        self.events.append(event)

    @property
    def types(self):
        return [e.type for e in self.events]


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


def refuse_signal():
    raise ProcessError("Operation not permitted")


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def sleep():
    return FakeSleep()


@pytest.fixture
def make_supervisor(config, program, store, launcher, notifier, sleep):
    created = []

    def factory(**kwargs):
        options = dict(
            store=store,
            launcher=launcher,
            notifier=notifier,
            pid_registry=PidRegistry(),
            sleep=sleep,
            reload_debounce=0.05,
            stop_grace_period=1.0,
        )
        options.update(kwargs)
        supervisor = Supervisor(config, **options)
        created.append(supervisor)
        return supervisor

    yield factory

    for supervisor in created:
        supervisor.reloader.stop()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, make_supervisor, launcher, config):
        supervisor = make_supervisor()

        await supervisor.start()

        assert supervisor.is_running is True
        assert len(launcher.children) == 1
        assert config.pid_path.read_text() == str(os.getpid())

        child = launcher.children[0]
        await supervisor.stop()

        assert child.intentional is True
        assert child.is_running() is False
        assert not config.pid_path.exists()
        assert len(launcher.children) == 1

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, make_supervisor):
        supervisor = make_supervisor()
        await supervisor.start()

        await supervisor.stop()
        await supervisor.stop()

        assert supervisor.is_running is False

    @pytest.mark.asyncio
    async def test_refuses_second_supervisor(self, make_supervisor, config):
        PidRegistry().write(config.pid_path, os.getppid())
        supervisor = make_supervisor()

        with pytest.raises(SupervisorAlreadyRunning):
            await supervisor.start()

    @pytest.mark.asyncio
    async def test_stale_pid_file_is_replaced(self, make_supervisor, config):
        PidRegistry().write(config.pid_path, 2**22 + 12345)
        supervisor = make_supervisor()

        await supervisor.start()
        try:
            assert config.pid_path.read_text() == str(os.getpid())
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_run_until_shutdown_requested(self, make_supervisor, launcher, config):
        supervisor = make_supervisor()

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: config.pid_path.exists())
        supervisor.request_shutdown()
        await asyncio.wait_for(task, timeout=2)

        assert not config.pid_path.exists()
        assert launcher.children[0].is_running() is False

    @pytest.mark.asyncio
    async def test_snapshot(self, make_supervisor, launcher):
        supervisor = make_supervisor()
        await supervisor.start()
        try:
            snapshot = supervisor.snapshot()
            assert snapshot["worktree"] == "main"
            assert snapshot["child_pid"] == launcher.children[0].pid
            assert snapshot["phase"] == "running"
            assert snapshot["recovering"] is False
        finally:
            await supervisor.stop()


class TestCrashHandling:
    @pytest.mark.asyncio
    async def test_crash_relaunches_after_backoff(self, make_supervisor, launcher, sleep):
        supervisor = make_supervisor()
        await supervisor.start()
        try:
            launcher.children[0].exit(1)
            await wait_until(lambda: len(launcher.children) == 2)

            assert sleep.delays == [5]
            assert supervisor.recovery.state.restart_attempts == 1
            assert supervisor.child is launcher.children[1]
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_initial_launch_failure_enters_recovery(self, config, program, store, notifier, sleep):
        launcher = FakeLauncher(failures=1)
        supervisor = Supervisor(
            config,
            store=store,
            launcher=launcher,
            notifier=notifier,
            sleep=sleep,
            stop_grace_period=1.0,
        )
        await supervisor.start()
        try:
            await wait_until(lambda: len(launcher.children) == 1)
            assert launcher.attempts == 2
            assert sleep.delays == [5]
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_hang_kill_leads_to_one_restart(self, make_supervisor, launcher, notifier):
        supervisor = make_supervisor()
        await supervisor.start()
        try:
            # No heartbeat has ever been written, so the workflow counts as hung
            result = await supervisor.health.check_once()
            assert result.healthy is False
            await wait_until(lambda: len(launcher.children) == 2)

            assert launcher.children[0].returncode == -9
            assert supervisor.recovery.is_handling_hang is False
            assert notifier.types.count(EventType.HANG) == 1
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_restart_preempts_backoff(self, make_supervisor, launcher):
        blocked = asyncio.Event()

        async def endless_sleep(delay):
            await blocked.wait()

        supervisor = make_supervisor(sleep=endless_sleep)
        await supervisor.start()
        try:
            launcher.children[0].exit(1)
            await wait_until(
                lambda: supervisor.recovery.state.phase == RecoveryPhase.RECOVERING_BACKOFF
            )

            supervisor.request_restart()
            await wait_until(lambda: len(launcher.children) == 2)

            assert supervisor.recovery.state.restart_attempts == 0
            assert supervisor.snapshot()["recovering"] is False
        finally:
            await supervisor.stop()


class TestControl:
    @pytest.mark.asyncio
    async def test_restart_resets_counters(self, make_supervisor, launcher):
        supervisor = make_supervisor()
        await supervisor.start()
        try:
            supervisor.recovery.state = RecoveryState(restart_attempts=3, autoheal_attempts=2)
            first = launcher.children[0]

            await supervisor.restart()

            assert first.intentional is True
            assert len(launcher.children) == 2
            assert supervisor.recovery.state.restart_attempts == 0
            assert supervisor.recovery.state.autoheal_attempts == 0
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_restart_skipped_when_old_child_survives(self, make_supervisor, launcher):
        supervisor = make_supervisor()
        await supervisor.start()
        try:
            first = launcher.children[0]
            first.terminate = refuse_signal

            assert await supervisor.restart() is False

            assert len(launcher.children) == 1
            assert supervisor.child is first
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_reload_skipped_when_old_child_survives(self, make_supervisor, launcher, notifier):
        supervisor = make_supervisor()
        await supervisor.start()
        try:
            launcher.children[0].terminate = refuse_signal

            await supervisor._reload_after_change()

            assert len(launcher.children) == 1
            assert EventType.RELOAD not in notifier.types
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_pause_keeps_child_and_suppresses_restart(
        self, make_supervisor, launcher, store, notifier, sleep
    ):
        supervisor = make_supervisor()
        await supervisor.start()
        try:
            await supervisor.pause()

            assert store.is_paused() is True
            assert launcher.children[0].is_running() is True

            launcher.children[0].exit(1)
            await asyncio.sleep(0.1)

            assert len(launcher.children) == 1
            assert sleep.delays == []
            assert supervisor.recovery.state.phase == RecoveryPhase.PAUSED

            await supervisor.resume()

            assert store.is_paused() is False
            assert len(launcher.children) == 2
            assert EventType.PAUSE in notifier.types
            assert EventType.RESUME in notifier.types
        finally:
            await supervisor.stop()

    @pytest.mark.asyncio
    async def test_file_change_reloads(self, make_supervisor, launcher, notifier):
        supervisor = make_supervisor()
        await supervisor.start()
        try:
            supervisor.reloader.notify_change()
            supervisor.reloader.notify_change()
            await wait_until(lambda: EventType.RELOAD in notifier.types)

            assert len(launcher.children) == 2
            assert launcher.children[0].intentional is True
        finally:
            await supervisor.stop()


class TestCompanion:
    @pytest.mark.asyncio
    async def test_companion_stopped_with_supervisor(self, make_supervisor, launcher, config):
        config.companion.enabled = True
        supervisor = make_supervisor()
        await supervisor.start()

        await supervisor.stop()

        assert launcher.companions[0].is_running() is False

    @pytest.mark.asyncio
    async def test_keep_companion(self, make_supervisor, launcher, config):
        config.companion.enabled = True
        supervisor = make_supervisor()
        await supervisor.start()

        await supervisor.stop(keep_companion=True)

        assert launcher.companions[0].is_running() is True
        assert launcher.children[0].is_running() is False

    @pytest.mark.asyncio
    async def test_dry_run_skips_companion(self, make_supervisor, launcher, config):
        config.companion.enabled = True
        supervisor = make_supervisor(dry_run=True)
        await supervisor.start()
        await supervisor.stop()

        assert launcher.companions == []
