"""
Crash supervision for the daemon worker.

The supervisor spawns `python -m voxd worker`, waits, and restarts it after
crashes, unless it crashed more than MAX_RESTARTS times within the rolling
window. Then it records a terminal error in the state file and gives up.
"""

import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .errors import ErrorCode
from .metrics import MetricsWriter
from .state import atomic_write_json, read_json


WORKER_ENV = "VOXD_DAEMON_WORKER"
MAX_RESTARTS = 3
WINDOW_SECONDS = 300.0
RESTART_DELAY_SECONDS = 1.0


def worker_command() -> List[str]:
    return [sys.executable, "-m", "voxd", "worker"]


@dataclass
class RestartWindow:
    """Crash counter that resets when a crash lands outside the window."""
    count: int = 0
    window_start: Optional[float] = None

    def record_crash(self, now: float, window_seconds: float = WINDOW_SECONDS) -> int:
        """Count a crash at `now`; returns the count within the current window."""
        if self.window_start is None or now - self.window_start > window_seconds:
            self.count = 1
            self.window_start = now
        else:
            self.count += 1
        return self.count


class Supervisor:
    """
    Usage:
        supervisor = Supervisor(worker_command(), config.state_file, config.pid_file, notify=notifier)
        exit_code = supervisor.run()   # blocks
    """

    def __init__(
        self,
        command: Sequence[str],
        state_file: Path,
        pid_file: Path,
        notify: Optional[Callable[[str, str, str], None]] = None,
        metrics: Optional[MetricsWriter] = None,
        max_restarts: int = MAX_RESTARTS,
        window_seconds: float = WINDOW_SECONDS,
        restart_delay: float = RESTART_DELAY_SECONDS,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.command = list(command)
        self.state_file = Path(state_file)
        self.pid_file = Path(pid_file)
        self.notify = notify
        self.metrics = metrics
        self.max_restarts = max_restarts
        self.window_seconds = window_seconds
        self.restart_delay = restart_delay
        self._popen = popen
        self._clock = clock

        self.window = RestartWindow()
        self._stop_requested = threading.Event()
        self._child: Optional[subprocess.Popen] = None

    def run(self) -> int:
        """Supervise until a clean exit, a stop request or the crash limit."""
        while not self._stop_requested.is_set():
            print("[Supervisor] Spawning daemon worker...")
            env = {**os.environ, WORKER_ENV: "1"}
            child = self._popen(self.command, env=env)
            self._child = child
            code = child.wait()
            self._child = None

            if self._stop_requested.is_set() or code == 0:
                print(f"[Supervisor] Worker exited cleanly (code: {code})")
                return 0

            count = self.window.record_crash(self._clock(), self.window_seconds)
            print(f"[Supervisor] Worker crashed (code: {code}), crash {count} in window")
            if self.metrics:
                self.metrics.log("crash", exit_code=code, crash_count=count)

            if count > self.max_restarts:
                self._handle_fatal_crash()
                return 1

            print(f"[Supervisor] Restarting worker ({count}/{self.max_restarts})...")
            if self._stop_requested.wait(self.restart_delay):
                break

        return 0

    def _handle_fatal_crash(self) -> None:
        minutes = self.window_seconds / 60
        message = f"Daemon crashed {self.max_restarts} times in {minutes:.0f} minutes. Stopping."
        print(f"[Supervisor] {message}")
        if self.metrics:
            self.metrics.log("crash_limit", code=ErrorCode.CRASH_LIMIT_REACHED.value, message=message)

        state = read_json(self.state_file)
        if not isinstance(state, dict):
            state = {}
        state["status"] = "error"
        state["lastError"] = message
        try:
            atomic_write_json(self.state_file, state)
        except OSError as e:
            print(f"[Supervisor] Failed to write crash state: {e}")

        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            print(f"[Supervisor] Failed to remove PID file: {e}")

        if self.notify:
            self.notify("Daemon Critical Failure", message, "error")

    def stop(self) -> None:
        """Stop supervising; the worker gets SIGTERM."""
        self._stop_requested.set()
        self.forward_signal(signal.SIGTERM)

    def forward_signal(self, signum: int) -> None:
        child = self._child
        if child is not None and child.poll() is None:
            child.send_signal(signum)

    def install_signal_handlers(self) -> None:
        """SIGTERM/SIGINT stop supervision; SIGUSR1 toggles recording in the worker."""
        def handle_stop(signum, frame):
            print(f"[Supervisor] Received signal {signum}, stopping")
            self.stop()

        def handle_toggle(signum, frame):
            self.forward_signal(signal.SIGUSR1)

        signal.signal(signal.SIGTERM, handle_stop)
        signal.signal(signal.SIGINT, handle_stop)
        signal.signal(signal.SIGUSR1, handle_toggle)
