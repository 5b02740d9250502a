"""
Process control helpers: PID file, liveness, signals, state file.

Used by `python -m voxd stop|status|toggle` to talk to a running worker.
"""

import os
import signal
import time
from pathlib import Path
from typing import Optional

from .state import read_json


def read_pid(pid_file: Path) -> Optional[int]:
    try:
        return int(Path(pid_file).read_text().strip())
    except (OSError, ValueError):
        return None


def is_running(pid: int) -> bool:
    """Probe a PID with signal 0."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Exists, owned by someone else
    return True


def running_pid(pid_file: Path) -> Optional[int]:
    """PID of a live worker, or None (stale PID files count as not running)."""
    pid = read_pid(pid_file)
    if pid is None or not is_running(pid):
        return None
    return pid


def send_signal(pid_file: Path, signum: int = signal.SIGUSR1) -> bool:
    """Signal the running worker. False if none is running."""
    pid = running_pid(pid_file)
    if pid is None:
        return False
    os.kill(pid, signum)
    return True


def wait_for_exit(pid: int, timeout: float = 5.0, interval: float = 0.1) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_running(pid):
            return True
        time.sleep(interval)
    return not is_running(pid)


def read_state(state_file: Path) -> Optional[dict]:
    state = read_json(state_file)
    return state if isinstance(state, dict) else None


def format_status(state: Optional[dict], pid: Optional[int]) -> str:
    """Human-readable summary of the state file."""
    if state is None:
        return "Daemon: not running" if pid is None else f"Daemon: running (pid {pid}), no state yet"

    status = state.get("status", "unknown")
    lines = [
        f"Daemon: {'running' if pid else 'not running'}" + (f" (pid {pid})" if pid else ""),
        f"Status: {status}",
        f"Uptime: {state.get('uptimeSeconds', 0)}s",
        f"Transcriptions: {state.get('transcriptionCountToday', 0)} today, "
        f"{state.get('transcriptionCountTotal', 0)} total",
        f"Errors: {state.get('errorCount', 0)}",
    ]
    if state.get("lastTranscription"):
        lines.append(f"Last transcription: {state['lastTranscription'][:80]}")
    if state.get("lastError"):
        lines.append(f"Last error: {state['lastError']}")
    return "\n".join(lines)
