"""
Persistent transcription history and usage counters.

history.json keeps the last MAX_HISTORY_ITEMS transcriptions;
stats.json keeps today's and the all-time count, rolling "today" over
when the date changes.
"""

import threading
from dataclasses import asdict, dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Callable, List

from .state import atomic_write_json, read_json


MAX_HISTORY_ITEMS = 1000


@dataclass
class HistoryItem:
    timestamp: str          # ISO 8601
    text: str
    duration_ms: int        # Audio duration
    engine: str             # "merged", "groq", "deepgram", ...
    processing_ms: int


@dataclass
class TranscriptionStats:
    today: int
    total: int
    last_date: str          # YYYY-MM-DD


class TranscriptionHistory:
    """
    Thread-safe history + stats store.

    Usage:
        history = TranscriptionHistory(config.history_file, config.stats_file)
        stats = history.record("hello", duration_ms=2000, engine="merged", processing_ms=900)
    """

    def __init__(
        self,
        history_file: Path,
        stats_file: Path,
        max_items: int = MAX_HISTORY_ITEMS,
        today_fn: Callable[[], date] = date.today,
    ):
        self.history_file = Path(history_file)
        self.stats_file = Path(stats_file)
        self.max_items = max_items
        self._today_fn = today_fn
        self._lock = threading.Lock()

    def record(self, text: str, duration_ms: int, engine: str, processing_ms: int) -> TranscriptionStats:
        """Append one transcription and bump the counters."""
        item = HistoryItem(
            timestamp=datetime.now().isoformat(timespec="seconds"),
            text=text,
            duration_ms=duration_ms,
            engine=engine,
            processing_ms=processing_ms,
        )
        with self._lock:
            self._append(item)
            return self._increment()

    def load(self) -> List[dict]:
        data = read_json(self.history_file)
        return data if isinstance(data, list) else []

    def load_stats(self) -> TranscriptionStats:
        """Current counters; `today` resets when the stored date is stale."""
        today = self._today_fn().isoformat()
        data = read_json(self.stats_file)
        if not isinstance(data, dict):
            return TranscriptionStats(today=0, total=0, last_date=today)

        total = data.get("total") if isinstance(data.get("total"), int) else 0
        count = data.get("today") if isinstance(data.get("today"), int) else 0
        last_date = data.get("lastDate") if isinstance(data.get("lastDate"), str) else today

        if last_date != today:
            return TranscriptionStats(today=0, total=total, last_date=today)
        return TranscriptionStats(today=count, total=total, last_date=last_date)

    def _append(self, item: HistoryItem) -> None:
        history = self.load()
        history.append(asdict(item))
        if len(history) > self.max_items:
            history = history[-self.max_items:]

        try:
            atomic_write_json(self.history_file, history)
        except OSError as e:
            print(f"[History] Failed to append history: {e}")

    def _increment(self) -> TranscriptionStats:
        stats = self.load_stats()
        stats.today += 1
        stats.total += 1

        try:
            atomic_write_json(self.stats_file, {
                "today": stats.today,
                "total": stats.total,
                "lastDate": stats.last_date,
            })
        except OSError as e:
            print(f"[History] Failed to save stats: {e}")
        return stats
