"""
Recorder with duration limits, timed warnings and silence detection,
plus the helpers that turn its buffer into 16 kHz mono WAV.

The Recorder is backend-agnostic: capture comes from a CaptureSource,
everything else (grace window, busy retries, timers, min duration,
silence heuristic) lives here.
"""

import io
import subprocess
import threading
import time
from typing import Callable, List, Optional, Sequence

import numpy as np
import soundfile as sf

from .capture import CaptureSource, classify_capture_error
from .errors import AppError, ErrorCode
from .types import (
    RecorderEvent, RecordingFailed, RecordingStarted, RecordingStopped, RecordingWarning,
)


# Constants
WAV_HEADER_BYTES = 44
SILENCE_RMS_THRESHOLD = 100  # int16 amplitude
SILENCE_MAX_SAMPLES = 1000
START_GRACE_SECONDS = 0.5
BUSY_RETRIES = 2
BUSY_BACKOFF_SECONDS = 0.5
WARNING_OFFSETS_MS = (240_000, 270_000)
CONVERT_TIMEOUT_SECONDS = 30.0


def has_wav_header(buffer: bytes) -> bool:
    """Check for the RIFF/WAVE marker."""
    return len(buffer) >= 12 and buffer[:4] == b"RIFF" and buffer[8:12] == b"WAVE"


def strip_wav_header(buffer: bytes) -> bytes:
    """Return PCM payload, skipping a 44-byte WAV header when present."""
    if has_wav_header(buffer):
        return buffer[WAV_HEADER_BYTES:]
    return buffer


def pcm_rms(buffer: bytes, max_samples: int = SILENCE_MAX_SAMPLES) -> float:
    """
    RMS amplitude of 16-bit LE PCM, estimated from ~max_samples points.

    A stride spreads the points evenly across the whole buffer, so long
    recordings cost the same as short ones.
    """
    data = strip_wav_header(buffer)
    sample_count = len(data) // 2
    if sample_count == 0:
        return 0.0

    samples = np.frombuffer(data[:sample_count * 2], dtype="<i2")
    stride = max(1, sample_count // max_samples)
    picked = samples[::stride].astype(np.float64)
    return float(np.sqrt(np.mean(picked ** 2)))


def is_silent(buffer: bytes, threshold: float = SILENCE_RMS_THRESHOLD) -> bool:
    """Heuristic silence check. Empty buffers are silent."""
    return pcm_rms(buffer) < threshold


def pcm_to_wav_bytes(pcm: bytes, sample_rate: int = 16000) -> bytes:
    """Wrap raw 16-bit mono PCM into a WAV container."""
    usable = len(pcm) - (len(pcm) % 2)
    samples = np.frombuffer(pcm[:usable], dtype="<i2")
    buffer = io.BytesIO()
    sf.write(buffer, samples, sample_rate, format="WAV", subtype="PCM_16")
    buffer.seek(0)
    return buffer.getvalue()


def convert_audio(
    buffer: bytes,
    sample_rate: int = 16000,
    executable: str = "ffmpeg",
    timeout: float = CONVERT_TIMEOUT_SECONDS,
) -> bytes:
    """
    Convert a recorded buffer to 16 kHz mono 16-bit PCM WAV.

    Raw PCM (no RIFF header) is wrapped first so ffmpeg can probe it.

    Raises:
        AppError: FFMPEG_FAILURE if ffmpeg is missing,
            CONVERSION_FAILED if it exits non-zero or times out
    """
    if not has_wav_header(buffer):
        buffer = pcm_to_wav_bytes(buffer, sample_rate)

    command = [
        executable, "-y", "-loglevel", "error",
        "-i", "pipe:0",
        "-ar", str(sample_rate),
        "-ac", "1",
        "-c:a", "pcm_s16le",
        "-f", "wav",
        "pipe:1",
    ]

    try:
        result = subprocess.run(command, input=buffer, capture_output=True, timeout=timeout)
    except FileNotFoundError:
        raise AppError(ErrorCode.FFMPEG_FAILURE, "FFmpeg is not installed")
    except subprocess.TimeoutExpired:
        raise AppError(ErrorCode.CONVERSION_FAILED, f"FFmpeg timed out after {timeout:.0f}s")

    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        print(f"[Audio] Conversion failed: {stderr}")
        raise AppError(
            ErrorCode.CONVERSION_FAILED,
            f"FFmpeg exited with code {result.returncode}",
            {"stderr": stderr[:500]},
        )

    return result.stdout


def _format_offset(ms: int) -> str:
    """240000 -> '4m', 270000 -> '4m 30s'."""
    minutes, seconds = divmod(ms // 1000, 60)
    if minutes and seconds:
        return f"{minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m"
    return f"{seconds}s"


class Recorder:
    """
    Owns one capture source at a time and buffers its chunks.

    Thread-safe: start/stop may be called from any thread; capture
    callbacks and timers run on their own threads.

    Usage:
        recorder = Recorder(lambda: ArecordCaptureSource("default"))
        recorder.on_event = handle_event
        recorder.start()
        # ... user speaks ...
        audio = recorder.stop()
    """

    def __init__(
        self,
        capture_factory: Callable[[], CaptureSource],
        min_duration_ms: int = 600,
        max_duration_ms: int = 300_000,
        warning_offsets_ms: Sequence[int] = WARNING_OFFSETS_MS,
        start_grace_seconds: float = START_GRACE_SECONDS,
        busy_retries: int = BUSY_RETRIES,
        busy_backoff_seconds: float = BUSY_BACKOFF_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.capture_factory = capture_factory
        self.min_duration_ms = min_duration_ms
        self.max_duration_ms = max_duration_ms
        self.warning_offsets_ms = tuple(warning_offsets_ms)
        self.start_grace_seconds = start_grace_seconds
        self.busy_retries = busy_retries
        self.busy_backoff_seconds = busy_backoff_seconds
        self._clock = clock
        self._sleep = sleep

        # Callbacks
        self.on_event: Optional[Callable[[RecorderEvent], None]] = None
        self.on_chunk: Optional[Callable[[bytes], None]] = None

        # State
        self._lock = threading.Lock()
        self._stop_lock = threading.RLock()  # Serializes stops (manual vs auto-stop)
        self._source: Optional[CaptureSource] = None
        self._starting = False
        self._started = False
        self._chunks: List[bytes] = []
        self._start_time = 0.0
        self._settled = threading.Event()
        self._startup_failure: Optional[AppError] = None
        self._timers: List[threading.Timer] = []

    def is_recording(self) -> bool:
        with self._lock:
            return self._source is not None

    def check_backend(self) -> None:
        """Raise AUDIO_BACKEND_MISSING if the capture backend can't run."""
        self.capture_factory().check_available()

    def start(self) -> None:
        """
        Begin capture.

        Returns once a first chunk arrived or the grace window passed with
        no error. Busy devices are retried with a fixed backoff.

        Raises:
            AppError: ALREADY_RECORDING, AUDIO_BACKEND_MISSING or a
                classified device error
        """
        with self._lock:
            if self._source is not None or self._starting:
                raise AppError(ErrorCode.ALREADY_RECORDING, "Already recording")
            self._starting = True

        try:
            attempt = 0
            while True:
                try:
                    self._start_once()
                    return
                except AppError as e:
                    if e.code == ErrorCode.DEVICE_BUSY and attempt < self.busy_retries:
                        attempt += 1
                        print(f"[Recorder] Microphone busy, retrying ({attempt}/{self.busy_retries})...")
                        self._sleep(self.busy_backoff_seconds)
                        continue
                    print(f"[Recorder] Failed to start recording: {e.message}")
                    raise
        finally:
            with self._lock:
                self._starting = False

    def _start_once(self) -> None:
        source = self.capture_factory()
        settled = threading.Event()

        with self._lock:
            self._source = source
            self._chunks = []
            self._started = False
            self._startup_failure = None
            self._settled = settled
            self._start_time = self._clock()

        try:
            source.start(
                lambda data: self._handle_data(source, data),
                lambda diagnostic: self._handle_failure(source, diagnostic),
            )
        except AppError:
            with self._lock:
                if self._source is source:
                    self._source = None
            raise

        settled.wait(self.start_grace_seconds)

        with self._lock:
            failure = self._startup_failure
            if failure is None:
                self._started = True
                self._arm_timers()
            elif self._source is source:
                self._source = None

        if failure is not None:
            source.stop()
            raise failure

        print(f"[Recorder] Recording started ({source.name})")
        self._emit(RecordingStarted(device=source.name))

    def stop(self, force: bool = False) -> Optional[bytes]:
        """
        End capture and return the buffered audio.

        Args:
            force: Teardown stop. Skips duration/silence checks and emits
                no events.

        Returns:
            Concatenated audio, or None when not recording or too short
        """
        with self._stop_lock:
            return self._stop(force)

    def _stop(self, force: bool) -> Optional[bytes]:
        with self._lock:
            source = self._source
            if source is None:
                return None
            self._source = None
            self._started = False
            self._cancel_timers()
            duration_ms = int((self._clock() - self._start_time) * 1000)
            chunks = self._chunks
            self._chunks = []

        source.stop()
        audio = b"".join(chunks)

        if force:
            print(f"[Recorder] Recording discarded ({duration_ms}ms)")
            return audio

        if duration_ms < self.min_duration_ms:
            print(f"[Recorder] Recording too short: {duration_ms}ms")
            self._emit(RecordingFailed(AppError(
                ErrorCode.RECORDING_TOO_SHORT,
                f"Recording too short ({duration_ms}ms)",
                {"duration_ms": duration_ms},
            )))
            return None

        if is_silent(audio):
            print("[Recorder] Silent audio detected")
            self._emit(RecordingWarning("No audio detected", ErrorCode.SILENT_AUDIO.value))

        print(f"[Recorder] Recording stopped. Duration: {duration_ms}ms. Size: {len(audio)} bytes")
        self._emit(RecordingStopped(audio=audio, duration_ms=duration_ms))
        return audio

    def _handle_data(self, source: CaptureSource, data: bytes) -> None:
        with self._lock:
            if source is not self._source:
                return  # Late chunk from a stopped source
            self._chunks.append(data)
            settled = self._settled
            on_chunk = self.on_chunk

        settled.set()
        if on_chunk:
            try:
                on_chunk(data)
            except Exception as e:
                print(f"[Recorder] Chunk consumer error: {e}")

    def _handle_failure(self, source: CaptureSource, diagnostic: str) -> None:
        error = classify_capture_error(diagnostic)

        with self._lock:
            if source is not self._source:
                return
            if not self._started:
                # Still inside start(): surface to the caller instead
                self._startup_failure = error
                self._settled.set()
                return

        print(f"[Recorder] Audio stream error: {error.message}")
        self._emit(RecordingFailed(error))
        self.stop(force=True)

    def _arm_timers(self) -> None:
        """Schedule limit warnings and the auto-stop (lock held)."""
        for offset_ms in self.warning_offsets_ms:
            if offset_ms >= self.max_duration_ms:
                continue
            message = f"Recording limit approaching ({_format_offset(offset_ms)})"
            self._schedule(offset_ms, self._warn, message)

        self._schedule(self.max_duration_ms, self._auto_stop)

    def _schedule(self, offset_ms: int, fn: Callable, *args) -> None:
        timer = threading.Timer(offset_ms / 1000, fn, args=args)
        timer.daemon = True
        timer.start()
        self._timers.append(timer)

    def _cancel_timers(self) -> None:
        """Cancel all pending timers (lock held)."""
        for timer in self._timers:
            timer.cancel()
        self._timers = []

    def _warn(self, message: str) -> None:
        print(f"[Recorder] {message}")
        self._emit(RecordingWarning(message))

    def _auto_stop(self) -> None:
        limit = _format_offset(self.max_duration_ms)
        print(f"[Recorder] Recording limit reached ({limit}). Auto-stopping.")
        self._emit(RecordingWarning(
            f"Recording limit reached ({limit}). Stopping...",
            ErrorCode.MAX_DURATION_REACHED.value,
        ))
        self.stop()

    def _emit(self, event: RecorderEvent) -> None:
        callback = self.on_event
        if callback:
            callback(event)
