"""
Metrics log shared by the supervisor and the worker.

Both processes append JSON lines to the same file; every entry carries
its `source` so the two streams can be told apart. The file is rotated
to `<name>.1` once it grows past `max_bytes`.

Usage:
    metrics = MetricsWriter(config.metrics_file, source="worker")
    metrics.log("status", status="recording")
    metrics.shutdown()
"""

import json
import os
import time
import threading
from queue import Queue, Empty
from pathlib import Path
from typing import Any, List, Optional


MAX_METRICS_BYTES = 5 * 1024 * 1024

_STOP = object()


class MetricsWriter:
    """
    Appends events from any thread; a single writer thread owns the file.
    """

    def __init__(self, metrics_file: Path, source: str = "worker", max_bytes: int = MAX_METRICS_BYTES):
        self.metrics_file = Path(metrics_file)
        self.source = source
        self.max_bytes = max_bytes
        self._queue: Queue = Queue()
        self._closed = False
        self._writer_thread = threading.Thread(target=self._writer_loop, daemon=True)
        self._writer_thread.start()

    def log(self, event: str, **fields: Any) -> None:
        """Queue one event. Never blocks; None-valued fields are left out."""
        if self._closed:
            return
        entry = {"ts": time.time(), "event": event, "source": self.source}
        entry.update({key: value for key, value in fields.items() if value is not None})
        self._queue.put(entry)

    def _writer_loop(self) -> None:
        while True:
            entries = [self._queue.get()]
            while entries[-1] is not _STOP:
                try:
                    entries.append(self._queue.get_nowait())
                except Empty:
                    break

            stop = entries[-1] is _STOP
            if stop:
                entries.pop()
            if entries:
                self._write_entries(entries)
            if stop:
                return

    def _write_entries(self, entries: List[dict]) -> None:
        try:
            self.metrics_file.parent.mkdir(parents=True, exist_ok=True)
            self._rotate_if_needed()
            with open(self.metrics_file, "a") as f:
                f.write("".join(json.dumps(entry, default=str) + "\n" for entry in entries))
        except OSError as e:
            print(f"[Metrics] Failed to write metrics: {e}")

    def _rotate_if_needed(self) -> None:
        try:
            size = self.metrics_file.stat().st_size
        except FileNotFoundError:
            return
        if size >= self.max_bytes:
            os.replace(self.metrics_file, self.metrics_file.with_name(self.metrics_file.name + ".1"))

    def shutdown(self, timeout: float = 2.0) -> None:
        """Write everything queued so far and stop the writer thread."""
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        self._writer_thread.join(timeout=timeout)


# Typed helpers; each takes an optional writer so callers need no None checks

def log_status(metrics: Optional[MetricsWriter], status: str, previous: str, error: Optional[str] = None) -> None:
    """Log a daemon status transition."""
    if metrics:
        metrics.log("status", status=status, previous=previous, error=error)


def log_trigger_ignored(metrics: Optional[MetricsWriter], status: str) -> None:
    """Log a trigger that arrived in a state that does not accept it."""
    if metrics:
        metrics.log("trigger_ignored", status=status)


def log_transcription(
    metrics: Optional[MetricsWriter],
    session_id: str,
    provider: str,
    latency_ms: int,
    text: str,
    error: Optional[str] = None,
) -> None:
    """Log one engine's transcription outcome."""
    if metrics:
        metrics.log(
            "transcription",
            session_id=session_id,
            provider=provider,
            latency_ms=latency_ms,
            text=text[:200],  # Truncate for metrics
            error=error,
        )


def log_merge(
    metrics: Optional[MetricsWriter],
    session_id: str,
    sources_match: bool,
    edit_distance: int,
    confidence: float,
) -> None:
    """Log merge event."""
    if metrics:
        metrics.log(
            "merge",
            session_id=session_id,
            sources_match=sources_match,
            edit_distance=edit_distance,
            confidence=round(confidence, 4),
        )


def log_session_complete(
    metrics: Optional[MetricsWriter],
    session_id: str,
    total_duration_ms: float,
    audio_duration_ms: int,
    final_text: str,
) -> None:
    """Log session_complete event."""
    if metrics:
        metrics.log(
            "session_complete",
            session_id=session_id,
            total_duration_ms=total_duration_ms,
            audio_duration_ms=audio_duration_ms,
            final_text=final_text[:500],  # Truncate for metrics
        )
