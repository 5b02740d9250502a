"""
Main entry point for voxd.

Run with: python -m voxd [start|worker|stop|status|toggle|devices]

    start   supervise a worker (restarts it after crashes)
    worker  run the daemon itself in the foreground
    stop    SIGTERM the running worker
    status  print the state file
    toggle  start/stop recording (same as the hotkey)
    devices list microphones for the audio_device setting
"""

import signal
import subprocess
import sys
import threading
from typing import Callable

from . import __version__
from .audio import Recorder
from .capture import create_capture_source, list_devices
from .config import Config
from .control import format_status, read_state, running_pid, send_signal, wait_for_exit
from .daemon import DaemonService
from .errors import AppError, format_user_error
from .history import TranscriptionHistory
from .input import HotkeyListener
from .ipc import StatusServer
from .merger import GroqOracle, TranscriptMerger
from .metrics import MetricsWriter
from .output import Clipboard, Notifier
from .providers.deepgram import DeepgramProvider
from .providers.deepgram_stream import DeepgramStreamingProvider
from .providers.groq import GroqProvider
from .state import StateStore
from .supervisor import Supervisor, worker_command


USAGE = "Usage: python -m voxd [start|worker|stop|status|toggle|devices]"


def toggle_handler(trigger: Callable[[], None]) -> Callable:
    """
    SIGUSR1 handler that runs `trigger` on its own thread.

    Signal handlers run on the main thread, which may already hold the
    daemon lock inside `service.stop()`.
    """
    def handle_toggle(signum, frame):
        threading.Thread(target=trigger, daemon=True).start()
    return handle_toggle


def run_worker(config: Config) -> int:
    """Composition root: build every collaborator, run until SIGTERM/SIGINT."""
    print(f"voxd v{__version__} worker starting...")
    print(f"  Capture: {config.capture_backend} ({config.audio_device})")
    print(f"  Streaming: {'on' if config.streaming_enabled else 'off'}")

    metrics = MetricsWriter(config.metrics_file)
    notifier = Notifier(enabled=config.notifications_enabled)

    recorder = Recorder(
        lambda: create_capture_source(config.capture_backend, config.audio_device, config.sample_rate),
        min_duration_ms=config.min_duration_ms,
        max_duration_ms=config.max_duration_ms,
    )

    groq = GroqProvider(config.groq_api_key)
    deepgram = DeepgramProvider(config.deepgram_api_key)
    for provider in (groq, deepgram):
        provider.initialize()

    streaming = DeepgramStreamingProvider(config.deepgram_api_key) if config.streaming_enabled else None
    merger = TranscriptMerger(
        [GroqOracle(config.groq_api_key, model) for model in config.merge_models],
        metrics=metrics,
    )

    service = DaemonService(
        config,
        recorder,
        engine_a=groq,
        engine_b=deepgram,
        merger=merger,
        server=StatusServer(config.socket_path),
        state_store=StateStore(config.state_file),
        clipboard=Clipboard(config.fallback_file),
        notify=notifier,
        history=TranscriptionHistory(config.history_file, config.stats_file),
        streaming=streaming,
        metrics=metrics,
    )

    try:
        service.start()
    except AppError as e:
        print(f"[Daemon] Fatal: [{e.code.value}] {e.message}")
        notifier.notify("Daemon Error", format_user_error(e.code), "error")
        metrics.shutdown()
        return 1

    shutdown_requested = threading.Event()

    def handle_stop(signum, frame):
        print(f"\n[Daemon] Received signal {signum}")
        shutdown_requested.set()

    signal.signal(signal.SIGTERM, handle_stop)
    signal.signal(signal.SIGINT, handle_stop)
    signal.signal(signal.SIGUSR1, toggle_handler(service.handle_trigger))

    hotkey = None
    if config.hotkey_enabled:
        try:
            hotkey = HotkeyListener(config.trigger_key)
            hotkey.on_trigger = service.handle_trigger
            hotkey.start()
        except Exception as e:
            # Wayland or missing permissions; SIGUSR1 still works
            print(f"[Hotkey] Unavailable ({e}). Use 'python -m voxd toggle' instead.")
            notifier.notify("Hotkey Error", "Failed to bind global hotkey. Use 'voxd toggle'.", "warning")
            hotkey = None

    print(f"Ready! Press {config.trigger_key} or run 'python -m voxd toggle' to record.")

    try:
        while not shutdown_requested.wait(1.0):
            pass
    finally:
        if hotkey:
            hotkey.stop()
        service.stop()
        groq.shutdown()
        deepgram.shutdown()
        metrics.shutdown()
        print("Goodbye!")

    return 0


def run_supervisor(config: Config) -> int:
    pid = running_pid(config.pid_file)
    if pid is not None:
        print(f"Daemon is already running (pid {pid})")
        return 1

    metrics = MetricsWriter(config.metrics_file, source="supervisor")
    supervisor = Supervisor(
        worker_command(),
        config.state_file,
        config.pid_file,
        notify=Notifier(enabled=config.notifications_enabled),
        metrics=metrics,
    )
    supervisor.install_signal_handlers()
    try:
        return supervisor.run()
    finally:
        metrics.shutdown()


def stop_daemon(config: Config) -> int:
    pid = running_pid(config.pid_file)
    if pid is None or not send_signal(config.pid_file, signal.SIGTERM):
        print("Daemon is not running")
        return 1
    if wait_for_exit(pid):
        print("Daemon stopped")
        return 0
    print(f"Daemon (pid {pid}) did not exit within 5s")
    return 1


def toggle(config: Config) -> int:
    if not send_signal(config.pid_file, signal.SIGUSR1):
        print("Daemon is not running")
        return 1
    return 0


def show_devices(config: Config) -> int:
    try:
        devices = list_devices(config.capture_backend)
    except (AppError, OSError, subprocess.SubprocessError) as e:
        print(f"Could not list audio devices: {e}")
        return 1

    if not devices:
        print("No input devices found")
        return 1
    print(f"Input devices ({config.capture_backend}):")
    for device in devices:
        marker = "*" if device.id == config.audio_device else " "
        print(f" {marker} {device.id}  {device.description}")
    return 0


def main(argv=None) -> int:
    """Main entry point."""
    argv = sys.argv[1:] if argv is None else argv
    command = argv[0] if argv else "start"

    config = Config.load()

    if command == "start":
        return run_supervisor(config)
    if command == "worker":
        return run_worker(config)
    if command == "stop":
        return stop_daemon(config)
    if command == "status":
        print(format_status(read_state(config.state_file), running_pid(config.pid_file)))
        return 0
    if command == "toggle":
        return toggle(config)
    if command == "devices":
        return show_devices(config)

    print(USAGE)
    return 2


if __name__ == "__main__":
    sys.exit(main())
