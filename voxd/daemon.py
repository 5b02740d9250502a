"""
DaemonService: the push-to-talk state machine.

    idle/error --trigger--> starting --RecordingStarted--> recording
    recording --trigger--> stopping --RecordingStopped--> processing
    processing --> idle (text delivered) | error
    any --RecordingFailed--> error

A trigger during `starting` only marks the session cancelled; the start
sequence checks the flag at fixed checkpoints and unwinds to idle.
Every transition is broadcast to status clients and written (debounced)
to the state file.
"""

import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple
from uuid import UUID, uuid4

from .audio import Recorder, convert_audio
from .config import Config
from .errors import AppError, ErrorCode, format_user_error
from .history import TranscriptionHistory
from .ipc import StatusServer
from .merger import TranscriptMerger
from .metrics import (
    MetricsWriter, log_session_complete, log_status, log_transcription, log_trigger_ignored,
)
from .output import Clipboard
from .providers import Provider, StreamHandle, StreamingProvider
from .state import StateStore
from .types import (
    ConfigSnapshot, DaemonStatus, RecorderEvent,
    RecordingFailed, RecordingStarted, RecordingStopped, RecordingWarning,
)


# Engine-A output shorter than this is dropped when the stream heard nothing
HALLUCINATION_MAX_CHARS = 20


@dataclass
class Session:
    """One record -> transcribe -> merge cycle. Dropped on idle or error."""
    id: UUID
    config: ConfigSnapshot
    started_at: float
    cancelled: bool = False
    stream: Optional[StreamHandle] = None


@dataclass
class EngineOutcome:
    """Result of one engine call; failures are captured, not raised."""
    provider: str
    text: str = ""
    error: Optional[AppError] = None
    finalized_chunks: Optional[int] = None  # Set only for streaming results


def _spawn_thread(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, daemon=True).start()


class DaemonService:
    """
    Owns the Recorder and the active Session; everything else is injected.

    Usage:
        service = DaemonService(config, recorder, groq, deepgram, merger, server=server, ...)
        service.start()
        service.handle_trigger()   # from hotkey or SIGUSR1
        service.stop()
    """

    def __init__(
        self,
        config: Config,
        recorder: Recorder,
        engine_a: Provider,
        engine_b: Provider,
        merger: TranscriptMerger,
        server: Optional[StatusServer] = None,
        state_store: Optional[StateStore] = None,
        clipboard: Optional[Clipboard] = None,
        notify: Optional[Callable[[str, str, str], None]] = None,
        history: Optional[TranscriptionHistory] = None,
        streaming: Optional[StreamingProvider] = None,
        metrics: Optional[MetricsWriter] = None,
        convert: Callable[[bytes], bytes] = convert_audio,
        spawn: Callable[[Callable[[], None]], None] = _spawn_thread,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.recorder = recorder
        self.engine_a = engine_a
        self.engine_b = engine_b
        self.merger = merger
        self.server = server
        self.state_store = state_store
        self.clipboard = clipboard
        self.notify = notify
        self.history = history
        self.streaming = streaming
        self.metrics = metrics
        self.convert = convert
        self._spawn = spawn
        self._clock = clock

        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._outbox: List[Tuple[DaemonStatus, Optional[str], Optional[str]]] = []
        self._status = DaemonStatus.IDLE
        self._session: Optional[Session] = None
        self._last_error: Optional[AppError] = None
        self._last_transcription: Optional[str] = None
        self._error_count = 0
        self._count_today = 0
        self._count_total = 0
        self._started_at = clock()

        self.recorder.on_event = self._on_recorder_event
        self.recorder.on_chunk = self._on_chunk

    # Properties

    @property
    def status(self) -> DaemonStatus:
        with self._lock:
            return self._status

    @property
    def last_error(self) -> Optional[AppError]:
        with self._lock:
            return self._last_error

    @property
    def last_transcription(self) -> Optional[str]:
        with self._lock:
            return self._last_transcription

    @property
    def session(self) -> Optional[Session]:
        with self._lock:
            return self._session

    # Lifecycle

    def start(self) -> None:
        """
        Bring the worker up.

        Raises:
            AppError: AUDIO_BACKEND_MISSING, DAEMON_ALREADY_RUNNING or
                SOCKET_IN_USE. All are fatal to the worker.
        """
        self._started_at = self._clock()
        self.recorder.check_backend()

        if self.history:
            stats = self.history.load_stats()
            self._count_today = stats.today
            self._count_total = stats.total

        if self.server:
            self.server.start()

        self._write_pid_file()
        if self.state_store:
            with self._lock:
                snapshot = self._snapshot()
            self.state_store.write(snapshot)

        print(f"[Daemon] Started (pid {os.getpid()}). Waiting for trigger...")

    def stop(self) -> None:
        """Tear everything down and remove runtime files."""
        print("[Daemon] Stopping...")
        with self._lock:
            session = self._session
            self._session = None
            if session:
                session.cancelled = True

        self.recorder.stop(force=True)
        if session and session.stream:
            session.stream.close()

        if self.server:
            self.server.stop()
        if self.state_store:
            self.state_store.remove()
        self._remove_pid_file()
        print("[Daemon] Stopped")

    def _write_pid_file(self) -> None:
        pid_file = Path(self.config.pid_file)
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()))

    def _remove_pid_file(self) -> None:
        try:
            Path(self.config.pid_file).unlink()
        except FileNotFoundError:
            pass

    # Trigger

    def handle_trigger(self) -> None:
        """Hotkey press or SIGUSR1. Never blocks on I/O."""
        action: Optional[Callable[[], None]] = None

        with self._lock:
            status = self._status
            session = self._session

            if status in (DaemonStatus.IDLE, DaemonStatus.ERROR):
                session = Session(id=uuid4(), config=self.config.snapshot(), started_at=self._clock())
                self._session = session
                self._last_error = None
                self._transition(DaemonStatus.STARTING)
                action = lambda: self._start_session(session)

            elif status == DaemonStatus.RECORDING:
                self._transition(DaemonStatus.STOPPING)
                action = self._stop_recording

            elif status == DaemonStatus.STARTING and session is not None and not session.cancelled:
                session.cancelled = True
                print("[Daemon] Trigger during startup, cancelling")

            else:
                print(f"[Daemon] Trigger ignored in state: {status.value}")
                log_trigger_ignored(self.metrics, status.value)

        self._publish()
        if action:
            self._spawn(action)

    # Starting

    def _start_session(self, session: Session) -> None:
        """Open streaming (optional) and the recorder, honoring cancellation."""
        try:
            if self._unwind_if_cancelled(session):
                return

            if session.config.streaming_enabled and self.streaming:
                try:
                    session.stream = self.streaming.open(session.config.language, session.config.boost_words)
                except Exception as e:
                    print(f"[Daemon] Streaming unavailable, using batch: {e}")
                    session.stream = None

            if self._unwind_if_cancelled(session):
                return

            self.recorder.start()

            if self._unwind_if_cancelled(session, stop_recorder=True):
                return

        except AppError as e:
            if self._unwind_if_cancelled(session):
                return
            self._fail(session, e)
        except Exception as e:
            print(f"[Daemon] Unexpected start failure: {e}")
            self._fail(session, AppError(ErrorCode.UNKNOWN_ERROR, str(e)))

    def _unwind_if_cancelled(self, session: Session, stop_recorder: bool = False) -> bool:
        """Cancellation checkpoint. Returns True if the session was unwound."""
        with self._lock:
            if not session.cancelled:
                return False
            if self._session is session:
                self._session = None
                self._transition(DaemonStatus.IDLE)
            stream = session.stream
            session.stream = None

        self._publish()
        print("[Daemon] Start cancelled")
        if stop_recorder:
            self.recorder.stop(force=True)
        if stream:
            stream.close()
        return True

    # Recorder events

    def _on_chunk(self, chunk: bytes) -> None:
        with self._lock:
            session = self._session
        if session is None:
            return
        if session.stream:
            session.stream.send(chunk)

    def _on_recorder_event(self, event: RecorderEvent) -> None:
        if isinstance(event, RecordingStarted):
            with self._lock:
                session = self._session
                if self._status != DaemonStatus.STARTING or session is None or session.cancelled:
                    return
                self._transition(DaemonStatus.RECORDING)
            self._publish()
            self._notify("Recording Started", "Listening...", "info")

        elif isinstance(event, RecordingStopped):
            with self._lock:
                session = self._session
                # Auto-stop arrives while still recording
                if self._status not in (DaemonStatus.STOPPING, DaemonStatus.RECORDING) or session is None:
                    print(f"[Daemon] Ignoring stop event in state: {self._status.value}")
                    return
                self._transition(DaemonStatus.PROCESSING)
            self._publish()
            self._spawn(lambda: self._process(session, event.audio, event.duration_ms))

        elif isinstance(event, RecordingFailed):
            with self._lock:
                session = self._session
            self._fail(session, event.error)

        elif isinstance(event, RecordingWarning):
            print(f"[Daemon] Recorder warning: {event.message}")
            self._notify("Warning", event.message, "warning")

    def _stop_recording(self) -> None:
        try:
            audio = self.recorder.stop()
        except Exception as e:
            with self._lock:
                session = self._session
            self._fail(session, AppError(ErrorCode.UNKNOWN_ERROR, f"Failed to stop recording: {e}"))
            return

        if audio is None:
            # Too-short recordings already moved us to error via RecordingFailed
            with self._lock:
                if self._status == DaemonStatus.STOPPING:
                    print("[Daemon] Recorder was not running, back to idle")
                    self._session = None
                    self._transition(DaemonStatus.IDLE)
            self._publish()

    # Processing

    def _process(self, session: Session, audio: bytes, duration_ms: int) -> None:
        start = time.perf_counter()
        try:
            wav = self.convert(audio)
            text, engine = self._transcribe_and_merge(session, wav)
        except AppError as e:
            self._fail(session, e)
            return
        except Exception as e:
            print(f"[Daemon] Processing failed: {e}")
            self._fail(session, AppError(ErrorCode.UNKNOWN_ERROR, str(e)))
            return

        processing_ms = int((time.perf_counter() - start) * 1000)
        self._deliver(session, text, engine, duration_ms, processing_ms)

    def _transcribe_and_merge(self, session: Session, wav: bytes) -> Tuple[str, str]:
        """Run both engines concurrently, then pick or merge. Returns (text, engine)."""
        outcome_a, outcome_b = self._transcribe_both(session, wav)

        if outcome_a.error and outcome_b.error:
            raise AppError(
                ErrorCode.BOTH_SERVICES_FAILED,
                "Both transcription services failed",
                {
                    outcome_a.provider: outcome_a.error.code.value,
                    outcome_b.provider: outcome_b.error.code.value,
                },
            )

        text_a = outcome_a.text
        text_b = outcome_b.text

        # Whisper invents short phrases on near-silence; trust the stream's silence
        if outcome_b.finalized_chunks == 0 and text_a and len(text_a.strip()) < HALLUCINATION_MAX_CHARS:
            print(f"[Daemon] Discarding likely hallucination from {outcome_a.provider}: {text_a!r}")
            text_a = ""

        if text_a and text_b:
            result = self.merger.merge(text_a, text_b, str(session.id))
            print(f"[Daemon] Merged (match={result.sources_match}, confidence={result.confidence:.2f})")
            return result.text, "merged"

        text = text_a or text_b
        if not text:
            raise AppError(ErrorCode.NO_SPEECH_DETECTED, "No speech detected")

        engine = outcome_a.provider if text_a else outcome_b.provider
        if outcome_a.error or outcome_b.error:
            failed = outcome_a if outcome_a.error else outcome_b
            print(f"[Daemon] {failed.provider} failed, using {engine} only")
            self._notify("Warning", "One transcription service failed, used fallback", "warning")
        return text, engine

    def _transcribe_both(self, session: Session, wav: bytes) -> Tuple[EngineOutcome, EngineOutcome]:
        with self._lock:
            stream = session.stream
            session.stream = None

        with ThreadPoolExecutor(max_workers=2) as executor:
            future_a = executor.submit(self._run_engine, session, self.engine_a, wav)
            if stream is not None:
                future_b = executor.submit(self._run_stream, session, stream, wav)
            else:
                future_b = executor.submit(self._run_engine, session, self.engine_b, wav)

            return self._outcome(future_a, self.engine_a.name), self._outcome(future_b, self.engine_b.name)

    def _outcome(self, future: Future, provider: str) -> EngineOutcome:
        try:
            return future.result()
        except Exception as e:
            return EngineOutcome(provider=provider, error=AppError(ErrorCode.UNKNOWN_ERROR, str(e)))

    def _run_engine(self, session: Session, engine: Provider, wav: bytes) -> EngineOutcome:
        start = time.perf_counter()
        try:
            text = engine.transcribe(wav, session.config.language, session.config.boost_words)
        except AppError as e:
            outcome = EngineOutcome(provider=engine.name, error=e)
        except Exception as e:
            outcome = EngineOutcome(provider=engine.name, error=AppError(ErrorCode.UNKNOWN_ERROR, str(e)))
        else:
            outcome = EngineOutcome(provider=engine.name, text=text.strip())

        latency_ms = int((time.perf_counter() - start) * 1000)
        error = outcome.error.message if outcome.error else None
        print(f"[Daemon] {engine.name}: {latency_ms/1000:.2f}s -> {outcome.text[:50]!r}" + (f" ({error})" if error else ""))
        log_transcription(self.metrics, str(session.id), engine.name, latency_ms, outcome.text, error)
        return outcome

    def _run_stream(self, session: Session, stream: StreamHandle, wav: bytes) -> EngineOutcome:
        """Finalize the live stream; on failure transcribe the batch way."""
        start = time.perf_counter()
        try:
            text = stream.finalize()
        except Exception as e:
            print(f"[Daemon] Streaming failed ({e}), falling back to {self.engine_b.name}")
            stream.close()
            return self._run_engine(session, self.engine_b, wav)

        latency_ms = int((time.perf_counter() - start) * 1000)
        name = f"{self.engine_b.name}-stream"
        log_transcription(self.metrics, str(session.id), name, latency_ms, text)
        return EngineOutcome(provider=name, text=text.strip(), finalized_chunks=stream.finalized_chunks)

    def _deliver(self, session: Session, text: str, engine: str, duration_ms: int, processing_ms: int) -> None:
        """Clipboard + history exactly once, then idle (or error if the clipboard failed)."""
        with self._lock:
            if self._session is not session:
                print("[Daemon] Session ended before delivery, discarding result")
                return

        clipboard_error: Optional[AppError] = None
        if self.clipboard:
            try:
                self.clipboard.write(text, append=session.config.clipboard_append)
            except AppError as e:
                clipboard_error = e

        stats = None
        if self.history:
            stats = self.history.record(text, duration_ms, engine, processing_ms)

        with self._lock:
            self._last_transcription = text
            if stats:
                self._count_today = stats.today
                self._count_total = stats.total

        log_session_complete(
            self.metrics, str(session.id),
            total_duration_ms=(self._clock() - session.started_at) * 1000,
            audio_duration_ms=duration_ms,
            final_text=text,
        )

        if clipboard_error:
            self._fail(session, clipboard_error)
            return

        with self._lock:
            if self._session is not session:
                print("[Daemon] Session ended during delivery")
                return
            self._session = None
            self._transition(DaemonStatus.IDLE, last_transcription=text)

        self._publish()
        print(f"[Daemon] Done: {text[:80]!r}")
        self._notify("Success", "Transcription copied to clipboard", "success")

    # Errors

    def _fail(self, session: Optional[Session], error: AppError) -> None:
        """Record a terminal session error and move to `error`."""
        with self._lock:
            if session is not None and self._session is not session:
                print(f"[Daemon] Ignoring error from a stale session: {error.message}")
                return
            stream = session.stream if session else None
            if session:
                session.stream = None
            self._session = None
            self._last_error = error
            self._transition(DaemonStatus.ERROR, error=error.message)

        self._publish()
        print(f"[Daemon] Error [{error.code.value}]: {error.message}")
        if stream:
            stream.close()
        self._notify("Error", format_user_error(error.code), "error")

    # Status plumbing

    def _transition(
        self,
        status: DaemonStatus,
        last_transcription: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """
        Set status, queue the broadcast, schedule a state write (lock held).

        Callers run `_publish()` once the lock is released.
        """
        previous = self._status
        self._status = status
        if status == DaemonStatus.ERROR:
            self._error_count += 1

        print(f"[Daemon] {previous.value} -> {status.value}")
        if self.server:
            self._outbox.append((status, last_transcription, error))
        if self.state_store:
            self.state_store.schedule(self._snapshot())
        log_status(self.metrics, status.value, previous.value, error)

    def _publish(self) -> None:
        """
        Send queued status messages in order (lock not held).

        Only one thread sends at a time. A caller that finds a send in
        progress returns at once; the sender re-checks the outbox after
        releasing `_send_lock`, so nothing queued is left behind.
        """
        if self.server is None:
            return
        while True:
            if not self._send_lock.acquire(blocking=False):
                return
            try:
                while True:
                    with self._lock:
                        if not self._outbox:
                            break
                        status, last_transcription, error = self._outbox.pop(0)
                    self.server.broadcast_status(status, last_transcription=last_transcription, error=error)
            finally:
                self._send_lock.release()
            with self._lock:
                if not self._outbox:
                    return

    def _snapshot(self) -> dict:
        """State file contents (lock held)."""
        snapshot = {
            "status": self._status.value,
            "pid": os.getpid(),
            "uptimeSeconds": int(self._clock() - self._started_at),
            "transcriptionCountToday": self._count_today,
            "transcriptionCountTotal": self._count_total,
            "errorCount": self._error_count,
        }
        if self._last_transcription is not None:
            snapshot["lastTranscription"] = self._last_transcription
        if self._last_error is not None:
            snapshot["lastError"] = self._last_error.message
        return snapshot

    def _notify(self, title: str, message: str, kind: str) -> None:
        if self.notify is None:
            return
        try:
            self.notify(title, message, kind)
        except Exception as e:
            print(f"[Daemon] Notification failed: {e}")
