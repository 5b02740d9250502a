"""
Daemon state file with debounced, atomic writes.

Status changes can come in bursts (starting -> recording within a few ms);
writes are coalesced so only the latest snapshot hits the disk.
"""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Optional


DEBOUNCE_SECONDS = 0.05


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON via temp file + replace so readers never see partial files."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2, default=str)
        os.chmod(temp_path, 0o600)
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def read_json(path: Path) -> Optional[Any]:
    """Read a JSON file; None when missing or unreadable."""
    try:
        with open(path) as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        print(f"[State] Failed to read {path}: {e}")
        return None


class StateStore:
    """
    Debounced writer for the daemon state snapshot.

    Usage:
        store = StateStore(config.state_file)
        store.schedule({"status": "recording", ...})
        store.flush()  # on shutdown
    """

    def __init__(self, state_file: Path, debounce_seconds: float = DEBOUNCE_SECONDS):
        self.state_file = Path(state_file)
        self.debounce_seconds = debounce_seconds
        self._lock = threading.Lock()
        self._pending: Optional[dict] = None
        self._timer: Optional[threading.Timer] = None
        self._closed = False

    def schedule(self, snapshot: dict) -> None:
        """Queue a snapshot; the newest one wins when the timer fires."""
        with self._lock:
            if self._closed:
                return
            self._pending = snapshot
            if self._timer is None:
                self._timer = threading.Timer(self.debounce_seconds, self._fire)
                self._timer.daemon = True
                self._timer.start()

    def _fire(self) -> None:
        # Written under the lock so remove() cannot interleave with a write
        with self._lock:
            snapshot = self._pending
            self._pending = None
            self._timer = None
            if snapshot is not None and not self._closed:
                self.write(snapshot)

    def flush(self) -> None:
        """Write any pending snapshot now."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            snapshot = self._pending
            self._pending = None
            if snapshot is not None and not self._closed:
                self.write(snapshot)

    def write(self, snapshot: dict) -> None:
        try:
            atomic_write_json(self.state_file, snapshot)
        except OSError as e:
            print(f"[State] Failed to write state file: {e}")

    def read(self) -> Optional[dict]:
        return read_json(self.state_file)

    def remove(self) -> None:
        """Drop pending writes, refuse later ones, and delete the state file."""
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending = None
        try:
            self.state_file.unlink()
        except FileNotFoundError:
            pass
