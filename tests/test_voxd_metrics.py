"""
Tests for voxd metrics logging.
"""

import json


def read_entries(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestMetricsWriter:
    """Tests for the batched JSONL writer."""

    def test_shutdown_writes_everything_queued(self, tmp_path):
        from voxd.metrics import MetricsWriter

        metrics = MetricsWriter(tmp_path / "metrics.jsonl", source="supervisor")
        for count in range(50):
            metrics.log("crash", exit_code=1, crash_count=count)
        metrics.shutdown()

        entries = read_entries(tmp_path / "metrics.jsonl")
        assert [e["crash_count"] for e in entries] == list(range(50))
        assert all(e["source"] == "supervisor" and e["event"] == "crash" for e in entries)
        assert all(isinstance(e["ts"], float) for e in entries)

    def test_none_fields_left_out(self, tmp_path):
        from voxd.metrics import MetricsWriter, log_status

        metrics = MetricsWriter(tmp_path / "metrics.jsonl")
        log_status(metrics, "idle", "processing")
        metrics.shutdown()

        entry = read_entries(tmp_path / "metrics.jsonl")[0]
        assert entry["status"] == "idle"
        assert entry["previous"] == "processing"
        assert "error" not in entry

    def test_rotates_when_full(self, tmp_path):
        from voxd.metrics import MetricsWriter

        path = tmp_path / "metrics.jsonl"
        path.write_text("x" * 200 + "\n")

        metrics = MetricsWriter(path, max_bytes=100)
        metrics.log("status", status="idle")
        metrics.shutdown()

        assert (tmp_path / "metrics.jsonl.1").read_text().startswith("x" * 200)
        assert [e["event"] for e in read_entries(path)] == ["status"]

    def test_log_after_shutdown_dropped(self, tmp_path):
        from voxd.metrics import MetricsWriter

        metrics = MetricsWriter(tmp_path / "metrics.jsonl")
        metrics.shutdown()
        metrics.log("status", status="idle")
        metrics.shutdown()

        assert not (tmp_path / "metrics.jsonl").exists()

    def test_write_failure_is_logged_not_raised(self, tmp_path, capsys):
        from voxd.metrics import MetricsWriter

        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")

        metrics = MetricsWriter(blocker / "metrics.jsonl")
        metrics.log("status", status="idle")
        metrics.shutdown()

        assert "[Metrics] Failed to write metrics" in capsys.readouterr().out


class TestHelpers:
    def test_helpers_accept_missing_writer(self):
        from voxd.metrics import log_merge, log_status, log_transcription

        log_status(None, "idle", "error")
        log_transcription(None, "s1", "groq", 120, "text")
        log_merge(None, "s1", True, 0, 1.0)

    def test_transcription_text_truncated(self):
        from unittest.mock import Mock

        from voxd.metrics import log_transcription

        metrics = Mock()
        log_transcription(metrics, "s1", "deepgram", 300, "a" * 1000)

        assert len(metrics.log.call_args.kwargs["text"]) == 200
