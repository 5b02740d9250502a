"""
Tests for voxd Recorder and audio helpers.

The Recorder is driven by a fake CaptureSource so that start/stop,
duration limits, silence detection and busy retries run without a
microphone.
"""

import shutil
import threading

import numpy as np
import pytest

from voxd.capture import CaptureSource
from voxd.errors import AppError, ErrorCode


def tone(seconds: float = 1.0, amplitude: int = 3000, sample_rate: int = 16000) -> bytes:
    """16-bit mono square-ish wave, loud enough to not be silent."""
    count = int(seconds * sample_rate)
    samples = np.where(np.arange(count) % 40 < 20, amplitude, -amplitude).astype("<i2")
    return samples.tobytes()


def silence(seconds: float = 1.0, sample_rate: int = 16000) -> bytes:
    return b"\x00\x00" * int(seconds * sample_rate)


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeSource(CaptureSource):
    """Delivers canned chunks (or a canned failure) synchronously on start."""

    name = "fake"

    def __init__(self, chunks=(), failure=None):
        self.chunks = list(chunks)
        self.failure = failure
        self.started = False
        self.stopped = False
        self.on_data = None
        self.on_failure = None

    def check_available(self):
        pass

    def start(self, on_data, on_failure):
        self.started = True
        self.on_data = on_data
        self.on_failure = on_failure
        if self.failure:
            on_failure(self.failure)
            return
        for chunk in self.chunks:
            on_data(chunk)

    def stop(self):
        self.stopped = True


def make_recorder(sources, clock=None, **kwargs):
    """Recorder whose factory hands out `sources` in order."""
    from voxd.audio import Recorder

    queue = list(sources)
    sleeps = []
    recorder = Recorder(
        lambda: queue.pop(0),
        clock=clock or FakeClock(),
        sleep=sleeps.append,
        start_grace_seconds=kwargs.pop("start_grace_seconds", 0.05),
        **kwargs,
    )
    events = []
    recorder.on_event = events.append
    return recorder, events, sleeps


class TestWavHelpers:
    """Tests for header handling and the silence heuristic."""

    def test_strip_wav_header(self):
        """A RIFF/WAVE prefix is removed, raw PCM is untouched."""
        from voxd.audio import strip_wav_header, has_wav_header

        header = b"RIFF" + b"\x00" * 4 + b"WAVE" + b"\x00" * 32
        assert has_wav_header(header + b"\x01\x02")
        assert strip_wav_header(header + b"\x01\x02") == b"\x01\x02"
        assert strip_wav_header(b"\x01\x02\x03\x04") == b"\x01\x02\x03\x04"

    def test_empty_buffer_is_silent(self):
        from voxd.audio import is_silent

        assert is_silent(b"") is True

    def test_zeros_are_silent_tone_is_not(self):
        from voxd.audio import is_silent

        assert is_silent(silence()) is True
        assert is_silent(tone()) is False

    def test_rms_estimate_matches_constant_amplitude(self):
        """A constant-magnitude signal has RMS equal to that magnitude."""
        from voxd.audio import pcm_rms

        assert pcm_rms(tone(amplitude=500)) == pytest.approx(500.0)

    def test_pcm_to_wav_bytes_adds_header(self):
        from voxd.audio import pcm_to_wav_bytes, has_wav_header

        wav = pcm_to_wav_bytes(tone(0.1))
        assert has_wav_header(wav)
        assert len(wav) >= len(tone(0.1)) + 44

    def test_format_offset(self):
        from voxd.audio import _format_offset

        assert _format_offset(240_000) == "4m"
        assert _format_offset(270_000) == "4m 30s"
        assert _format_offset(5_000) == "5s"


class TestConvertAudio:
    """Tests for ffmpeg failure mapping."""

    def test_missing_ffmpeg(self):
        from voxd.audio import convert_audio

        with pytest.raises(AppError) as exc:
            convert_audio(tone(0.1), executable="/nonexistent/ffmpeg")
        assert exc.value.code == ErrorCode.FFMPEG_FAILURE

    def test_nonzero_exit_is_conversion_failure(self):
        from voxd.audio import convert_audio

        false = shutil.which("false")
        if false is None:
            pytest.skip("'false' not available")

        with pytest.raises(AppError) as exc:
            convert_audio(tone(0.1), executable=false)
        assert exc.value.code == ErrorCode.CONVERSION_FAILED


class TestRecorder:
    """Tests for Recorder lifecycle."""

    def test_start_then_stop_emits_started_and_stopped(self):
        """A normal recording yields exactly one Started and one Stopped."""
        from voxd.types import RecordingStarted, RecordingStopped

        clock = FakeClock()
        audio = tone(2.0)
        source = FakeSource([audio])
        recorder, events, _ = make_recorder([source], clock=clock)

        recorder.start()
        assert recorder.is_recording()
        clock.now += 2.0
        result = recorder.stop()

        assert result == audio
        assert source.stopped
        assert not recorder.is_recording()
        assert [type(e) for e in events] == [RecordingStarted, RecordingStopped]
        assert events[0].device == "fake"
        assert events[1].duration_ms == 2000

    def test_chunks_forwarded_to_on_chunk(self):
        chunks = [tone(0.5), tone(0.5)]
        recorder, _, _ = make_recorder([FakeSource(chunks)])
        received = []
        recorder.on_chunk = received.append

        recorder.start()

        assert received == chunks

    def test_too_short_recording_fails(self):
        """Under min_duration_ms: RECORDING_TOO_SHORT, nothing returned."""
        from voxd.types import RecordingFailed, RecordingStopped

        clock = FakeClock()
        recorder, events, _ = make_recorder([FakeSource([tone(0.3)])], clock=clock)

        recorder.start()
        clock.now += 0.3
        result = recorder.stop()

        assert result is None
        failures = [e for e in events if isinstance(e, RecordingFailed)]
        assert len(failures) == 1
        assert failures[0].error.code == ErrorCode.RECORDING_TOO_SHORT
        assert not any(isinstance(e, RecordingStopped) for e in events)

    def test_silent_recording_warns_but_still_stops(self):
        from voxd.types import RecordingStopped, RecordingWarning

        clock = FakeClock()
        recorder, events, _ = make_recorder([FakeSource([silence(1.0)])], clock=clock)

        recorder.start()
        clock.now += 1.0
        recorder.stop()

        warnings = [e for e in events if isinstance(e, RecordingWarning)]
        assert [w.code for w in warnings] == [ErrorCode.SILENT_AUDIO.value]
        assert isinstance(events[-1], RecordingStopped)

    def test_forced_stop_emits_nothing(self):
        """Teardown stops skip checks and events."""
        from voxd.types import RecordingStarted

        clock = FakeClock()
        recorder, events, _ = make_recorder([FakeSource([tone(0.1)])], clock=clock)

        recorder.start()
        clock.now += 0.1
        result = recorder.stop(force=True)

        assert result == tone(0.1)
        assert [type(e) for e in events] == [RecordingStarted]

    def test_stop_when_idle_returns_none(self):
        recorder, events, _ = make_recorder([])

        assert recorder.stop() is None
        assert events == []

    def test_second_start_rejected(self):
        recorder, _, _ = make_recorder([FakeSource([tone(0.1)]), FakeSource([tone(0.1)])])
        recorder.start()

        with pytest.raises(AppError) as exc:
            recorder.start()
        assert exc.value.code == ErrorCode.ALREADY_RECORDING

        recorder.stop(force=True)

    def test_busy_device_is_retried(self):
        """DEVICE_BUSY is retried with a fixed backoff, then succeeds."""
        from voxd.types import RecordingStarted

        busy = "arecord: main:850: audio open error: Device or resource busy"
        sources = [FakeSource(failure=busy), FakeSource(failure=busy), FakeSource([tone(0.1)])]
        recorder, events, sleeps = make_recorder(sources)

        recorder.start()

        assert sleeps == [0.5, 0.5]
        assert isinstance(events[0], RecordingStarted)
        recorder.stop(force=True)

    def test_busy_device_gives_up(self):
        busy = "Device or resource busy"
        sources = [FakeSource(failure=busy) for _ in range(3)]
        recorder, events, sleeps = make_recorder(sources)

        with pytest.raises(AppError) as exc:
            recorder.start()

        assert exc.value.code == ErrorCode.DEVICE_BUSY
        assert len(sleeps) == 2
        assert events == []
        assert not recorder.is_recording()
        assert all(s.stopped for s in sources)

    def test_permission_error_not_retried(self):
        source = FakeSource(failure="arecord: Permission denied")
        recorder, _, sleeps = make_recorder([source])

        with pytest.raises(AppError) as exc:
            recorder.start()

        assert exc.value.code == ErrorCode.PERMISSION_DENIED
        assert sleeps == []

    def test_no_data_within_grace_still_starts(self):
        """Silence from the device is not an error; the grace window just ends."""
        from voxd.types import RecordingStarted

        recorder, events, _ = make_recorder([FakeSource()], start_grace_seconds=0.01)

        recorder.start()

        assert recorder.is_recording()
        assert isinstance(events[0], RecordingStarted)
        recorder.stop(force=True)

    def test_failure_after_start_emits_failed_and_stops(self):
        from voxd.types import RecordingFailed

        source = FakeSource([tone(0.1)])
        recorder, events, _ = make_recorder([source])
        recorder.start()

        source.on_failure("No such file or directory")

        assert isinstance(events[-1], RecordingFailed)
        assert events[-1].error.code == ErrorCode.NO_MICROPHONE
        assert source.stopped
        assert not recorder.is_recording()

    def test_late_chunks_from_stopped_source_ignored(self):
        source = FakeSource([tone(0.1)])
        recorder, _, _ = make_recorder([source])
        received = []
        recorder.on_chunk = received.append
        recorder.start()
        recorder.stop(force=True)

        source.on_data(b"late")

        assert b"late" not in received

    def test_auto_stop_at_max_duration(self):
        """The max-duration timer warns, then stops like a manual stop."""
        from voxd.types import RecordingStopped, RecordingWarning

        done = threading.Event()
        recorder, events, _ = make_recorder(
            [FakeSource([tone(0.5)])],
            min_duration_ms=0,
            max_duration_ms=50,
        )

        def on_event(event):
            events.append(event)
            if isinstance(event, RecordingStopped):
                done.set()

        recorder.on_event = on_event
        recorder.start()

        assert done.wait(2.0)
        warnings = [e for e in events if isinstance(e, RecordingWarning)]
        assert warnings[-1].code == ErrorCode.MAX_DURATION_REACHED.value
        assert not recorder.is_recording()

    def test_limit_warnings_are_scheduled(self):
        """Warning offsets before the limit fire as RecordingWarning."""
        from voxd.types import RecordingWarning

        fired = threading.Event()
        recorder, events, _ = make_recorder(
            [FakeSource([tone(0.5)])],
            warning_offsets_ms=(20,),
            max_duration_ms=60_000,
        )

        def on_event(event):
            events.append(event)
            if isinstance(event, RecordingWarning):
                fired.set()

        recorder.on_event = on_event
        recorder.start()

        assert fired.wait(2.0)
        assert "Recording limit approaching" in [e for e in events if isinstance(e, RecordingWarning)][0].message
        recorder.stop(force=True)


ARECORD_L = """null
    Discard all samples (playback) or generate zero samples (capture)
default
    Playback/recording through the PulseAudio sound server
sysdefault:CARD=PCH
    HDA Intel PCH, ALC257 Analog
    Default Audio Device
hw:CARD=PCH,DEV=0
    HDA Intel PCH, ALC257 Analog
    Direct hardware device without any conversions
"""


class TestListDevices:
    """Tests for microphone listing."""

    def test_parse_arecord_output(self):
        from voxd.capture import parse_arecord_devices

        devices = parse_arecord_devices(ARECORD_L)

        assert [d.id for d in devices] == ["default", "sysdefault:CARD=PCH", "hw:CARD=PCH,DEV=0"]
        assert devices[0].is_default
        assert devices[1].description == "HDA Intel PCH, ALC257 Analog - Default Audio Device"

    def test_parse_empty_output(self):
        from voxd.capture import parse_arecord_devices

        assert parse_arecord_devices("") == []

    def test_list_runs_arecord(self):
        from unittest.mock import Mock, patch

        from voxd.capture import list_devices

        with patch("voxd.capture.shutil.which", return_value="/usr/bin/arecord"), \
                patch("voxd.capture.subprocess.run", return_value=Mock(stdout=ARECORD_L)) as run:
            devices = list_devices("arecord")

        assert run.call_args.args[0] == ["arecord", "-L"]
        assert len(devices) == 3

    def test_list_without_arecord(self):
        from unittest.mock import patch

        from voxd.capture import list_devices

        with patch("voxd.capture.shutil.which", return_value=None):
            with pytest.raises(AppError) as exc:
                list_devices("arecord")
        assert exc.value.code == ErrorCode.AUDIO_BACKEND_MISSING

    def test_sounddevice_inputs_only(self):
        from types import SimpleNamespace
        from unittest.mock import patch

        from voxd.capture import list_devices

        sd = SimpleNamespace(
            query_devices=lambda: [
                {"name": "HDA Intel PCH: ALC257 Analog (hw:0,0)", "max_input_channels": 2, "default_samplerate": 44100.0},
                {"name": "HDMI 0", "max_input_channels": 0, "default_samplerate": 48000.0},
                {"name": "USB Mic", "max_input_channels": 1, "default_samplerate": 16000.0},
            ],
            default=SimpleNamespace(device=[2, 0]),
        )
        with patch("voxd.capture.SounddeviceCaptureSource._import", return_value=sd):
            devices = list_devices("sounddevice")

        assert [d.id for d in devices] == ["HDA Intel PCH: ALC257 Analog (hw:0,0)", "USB Mic"]
        assert devices[1].is_default
        assert devices[1].description == "1 ch, 16000 Hz"
