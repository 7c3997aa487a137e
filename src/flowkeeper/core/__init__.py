"""flowkeeper core components."""

from flowkeeper.core.health import HealthCheckResult, HealthMonitor
from flowkeeper.core.process import ProcessError, ProcessExit, ProcessHandle, ProcessLauncher
from flowkeeper.core.recovery import CrashRecoveryEngine, RecoveryDecision, RecoveryState
from flowkeeper.core.reloader import DebounceTimer, FileWatchReloader
from flowkeeper.core.supervisor import Supervisor, SupervisorAlreadyRunning

__all__ = [
    "CrashRecoveryEngine",
    "DebounceTimer",
    "FileWatchReloader",
    "HealthCheckResult",
    "HealthMonitor",
    "ProcessError",
    "ProcessExit",
    "ProcessHandle",
    "ProcessLauncher",
    "RecoveryDecision",
    "RecoveryState",
    "Supervisor",
    "SupervisorAlreadyRunning",
]
