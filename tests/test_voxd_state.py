"""
Tests for voxd state file, history and stats persistence.
"""

import json
import os
import time
from datetime import date


def wait_until(predicate, timeout=2.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class TestAtomicJson:
    """Tests for atomic JSON helpers."""

    def test_write_is_private_and_complete(self, tmp_path):
        from voxd.state import atomic_write_json

        path = tmp_path / "nested" / "daemon.state"
        atomic_write_json(path, {"status": "idle"})

        assert json.loads(path.read_text()) == {"status": "idle"}
        assert os.stat(path).st_mode & 0o777 == 0o600
        assert [p.name for p in path.parent.iterdir()] == ["daemon.state"]

    def test_read_missing_or_corrupt(self, tmp_path):
        from voxd.state import read_json

        assert read_json(tmp_path / "missing.json") is None

        corrupt = tmp_path / "corrupt.json"
        corrupt.write_text("{not json")
        assert read_json(corrupt) is None


class TestStateStore:
    """Tests for debounced state writes."""

    def test_burst_coalesces_to_latest(self, tmp_path):
        from voxd.state import StateStore

        store = StateStore(tmp_path / "daemon.state", debounce_seconds=60)
        store.schedule({"status": "starting"})
        store.schedule({"status": "recording"})

        assert not store.state_file.exists()
        store.flush()

        assert store.read() == {"status": "recording"}

    def test_debounce_timer_writes(self, tmp_path):
        from voxd.state import StateStore

        store = StateStore(tmp_path / "daemon.state", debounce_seconds=0.01)
        store.schedule({"status": "idle", "errorCount": 0})

        assert wait_until(lambda: store.read() == {"status": "idle", "errorCount": 0})

    def test_remove_drops_pending_and_file(self, tmp_path):
        from voxd.state import StateStore

        store = StateStore(tmp_path / "daemon.state", debounce_seconds=60)
        store.write({"status": "idle"})
        store.schedule({"status": "recording"})

        store.remove()
        store.flush()

        assert not store.state_file.exists()

    def test_schedule_after_remove_is_ignored(self, tmp_path):
        """Late transitions after shutdown must not bring the file back."""
        import time

        from voxd.state import StateStore

        store = StateStore(tmp_path / "daemon.state", debounce_seconds=0.01)
        store.remove()

        store.schedule({"status": "idle"})
        time.sleep(0.1)
        store.flush()

        assert not store.state_file.exists()

    def test_timer_firing_after_remove_writes_nothing(self, tmp_path):
        from voxd.state import StateStore

        store = StateStore(tmp_path / "daemon.state", debounce_seconds=60)
        store.schedule({"status": "processing"})
        store.remove()

        store._fire()

        assert not store.state_file.exists()


class TestTranscriptionHistory:
    """Tests for history and stats."""

    def make_history(self, tmp_path, **kwargs):
        from voxd.history import TranscriptionHistory

        return TranscriptionHistory(tmp_path / "history.json", tmp_path / "stats.json", **kwargs)

    def test_record_appends_and_counts(self, tmp_path):
        history = self.make_history(tmp_path, today_fn=lambda: date(2026, 10, 19))

        history.record("first", duration_ms=1000, engine="merged", processing_ms=500)
        stats = history.record("second", duration_ms=2000, engine="groq", processing_ms=700)

        assert (stats.today, stats.total, stats.last_date) == (2, 2, "2026-10-19")
        items = history.load()
        assert [i["text"] for i in items] == ["first", "second"]
        assert items[1]["engine"] == "groq"
        assert json.loads((tmp_path / "stats.json").read_text()) == {
            "today": 2, "total": 2, "lastDate": "2026-10-19",
        }

    def test_history_capped(self, tmp_path):
        history = self.make_history(tmp_path, max_items=3)

        for i in range(5):
            history.record(f"item {i}", duration_ms=1000, engine="merged", processing_ms=1)

        assert [i["text"] for i in history.load()] == ["item 2", "item 3", "item 4"]

    def test_today_rolls_over(self, tmp_path):
        day = {"value": date(2026, 10, 19)}
        history = self.make_history(tmp_path, today_fn=lambda: day["value"])
        history.record("a", 1000, "merged", 1)
        history.record("b", 1000, "merged", 1)

        day["value"] = date(2026, 10, 20)

        stats = history.load_stats()
        assert (stats.today, stats.total, stats.last_date) == (0, 2, "2026-10-20")
        assert history.record("c", 1000, "merged", 1).today == 1

    def test_missing_stats_start_at_zero(self, tmp_path):
        stats = self.make_history(tmp_path).load_stats()

        assert (stats.today, stats.total) == (0, 0)
