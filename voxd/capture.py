"""
Audio capture sources.

A CaptureSource delivers raw 16 kHz mono S16_LE audio in chunks and reports
failures as raw diagnostic text. The Recorder classifies that text and owns
all duration/silence logic, so sources stay small.
"""

import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Optional

from .errors import AppError, ErrorCode
from .retry import with_retry


DataCallback = Callable[[bytes], None]
FailureCallback = Callable[[str], None]

READ_SIZE = 4096
STOP_TIMEOUT_SECONDS = 2.0
LIST_TIMEOUT_SECONDS = 5.0


def classify_capture_error(diagnostic: str) -> AppError:
    """
    Map capture diagnostic output to a device error.

    Examples:
        "arecord: main:850: audio open error: Device or resource busy" -> DEVICE_BUSY
        "ALSA lib ... No such file or directory" -> NO_MICROPHONE
    """
    text = diagnostic.strip()
    context = {"diagnostic": text[:500]}

    if "No such file or directory" in text or "No such device" in text or "Invalid number of channels" in text:
        return AppError(
            ErrorCode.NO_MICROPHONE,
            "No microphone detected. Check that your microphone is connected and configured.",
            context,
        )
    if "Device or resource busy" in text or "Device unavailable" in text:
        return AppError(
            ErrorCode.DEVICE_BUSY,
            "Microphone is busy. Another application might be using it.",
            context,
        )
    if "Permission denied" in text or "audio open error" in text:
        return AppError(
            ErrorCode.PERMISSION_DENIED,
            "Microphone permission denied. Ensure your user is in the 'audio' group.",
            context,
        )
    return AppError(
        ErrorCode.UNKNOWN_ERROR,
        f"Audio capture failed. Details: {text or 'no diagnostic output'}",
        context,
    )


class CaptureSource(ABC):
    """
    Base class for capture backends.

    Subclasses must implement:
    - check_available(): Raise AUDIO_BACKEND_MISSING if unusable
    - start(): Begin delivering chunks to on_data
    - stop(): End capture and release the device
    """

    name: str = "base"

    @abstractmethod
    def check_available(self) -> None:
        """Raise AppError(AUDIO_BACKEND_MISSING) if the backend can't run."""
        pass

    @abstractmethod
    def start(self, on_data: DataCallback, on_failure: FailureCallback) -> None:
        """
        Begin capture.

        Args:
            on_data: Called from a capture thread with each raw chunk
            on_failure: Called once with diagnostic text if capture dies

        Raises:
            AppError: AUDIO_BACKEND_MISSING, or a classified device error
                when the failure is known synchronously
        """
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop capture. Safe to call more than once."""
        pass


class ArecordCaptureSource(CaptureSource):
    """
    ALSA capture through an `arecord` subprocess writing WAV to stdout.

    One subprocess per recording. Diagnostics come from stderr.
    """

    name = "arecord"

    def __init__(self, device: str = "default", sample_rate: int = 16000, executable: str = "arecord"):
        self.device = device
        self.sample_rate = sample_rate
        self.executable = executable
        self._process: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None
        self._stderr_reader: Optional[threading.Thread] = None
        self._stderr_chunks: list[str] = []
        self._stopping = threading.Event()

    def check_available(self) -> None:
        if shutil.which(self.executable) is None:
            raise AppError(
                ErrorCode.AUDIO_BACKEND_MISSING,
                f"Audio recording backend '{self.executable}' is not installed.",
            )

    def _command(self) -> list[str]:
        return [
            self.executable,
            "-q",
            "-f", "S16_LE",
            "-r", str(self.sample_rate),
            "-c", "1",
            "-t", "wav",
            "-D", self.device,
        ]

    def start(self, on_data: DataCallback, on_failure: FailureCallback) -> None:
        self._stopping.clear()
        self._stderr_chunks = []

        try:
            self._process = subprocess.Popen(
                self._command(),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
            )
        except FileNotFoundError:
            raise AppError(
                ErrorCode.AUDIO_BACKEND_MISSING,
                f"Audio recording backend '{self.executable}' is not installed.",
            )
        except OSError as e:
            raise classify_capture_error(str(e))

        process = self._process
        self._stderr_reader = threading.Thread(
            target=self._stderr_loop, args=(process,), daemon=True
        )
        self._stderr_reader.start()
        self._reader = threading.Thread(
            target=self._read_loop, args=(process, on_data, on_failure), daemon=True
        )
        self._reader.start()

    def _stderr_loop(self, process: subprocess.Popen) -> None:
        """Collect diagnostic output until the process exits."""
        for line in iter(process.stderr.readline, b""):
            self._stderr_chunks.append(line.decode("utf-8", errors="replace"))

    def _read_loop(self, process: subprocess.Popen, on_data: DataCallback, on_failure: FailureCallback) -> None:
        """Forward stdout chunks until EOF, then report abnormal exits."""
        while True:
            chunk = process.stdout.read1(READ_SIZE)
            if not chunk:
                break
            on_data(chunk)

        returncode = process.wait()
        if self._stderr_reader:
            self._stderr_reader.join(timeout=1.0)

        if self._stopping.is_set():
            return

        diagnostic = "".join(self._stderr_chunks).strip()
        if returncode != 0 or diagnostic:
            on_failure(diagnostic or f"{self.executable} exited with code {returncode}")
        else:
            on_failure(f"{self.executable} exited unexpectedly")

    def stop(self) -> None:
        self._stopping.set()
        process = self._process
        self._process = None
        if process is None:
            return

        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=STOP_TIMEOUT_SECONDS)
            except subprocess.TimeoutExpired:
                print(f"[Capture] {self.executable} did not exit, killing")
                process.kill()
                process.wait()

        if self._reader and self._reader is not threading.current_thread():
            self._reader.join(timeout=STOP_TIMEOUT_SECONDS)
        self._reader = None


class SounddeviceCaptureSource(CaptureSource):
    """
    In-process capture through PortAudio (sounddevice).

    Emits raw PCM without a WAV header; the converter wraps it.
    """

    name = "sounddevice"

    def __init__(self, device: Optional[str] = None, sample_rate: int = 16000, blocksize: int = 1024):
        self.device = None if device in (None, "", "default") else device
        self.sample_rate = sample_rate
        self.blocksize = blocksize
        self._stream = None

    def _import(self):
        try:
            import sounddevice as sd
        except (ImportError, OSError) as e:
            # OSError: PortAudio library not found
            raise AppError(
                ErrorCode.AUDIO_BACKEND_MISSING,
                f"Audio recording backend 'sounddevice' is unavailable: {e}",
            )
        return sd

    def check_available(self) -> None:
        self._import()

    def start(self, on_data: DataCallback, on_failure: FailureCallback) -> None:
        sd = self._import()

        def callback(indata, frames, time_info, status):
            if status:
                print(f"[Capture] Audio callback status: {status}")
            on_data(bytes(indata))

        try:
            self._stream = sd.RawInputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="int16",
                device=self.device,
                blocksize=self.blocksize,
                callback=callback,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as e:
            self._stream = None
            raise classify_capture_error(_portaudio_diagnostic(str(e)))

    def stop(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            print(f"[Capture] Error closing stream: {e}")


def _portaudio_diagnostic(message: str) -> str:
    """Translate PortAudio wording into the ALSA phrases the classifier knows."""
    lowered = message.lower()
    if "no default input device" in lowered or "no input device" in lowered or "invalid device" in lowered:
        return f"No such device: {message}"
    if "device unavailable" in lowered or "busy" in lowered:
        return f"Device or resource busy: {message}"
    return message


def create_capture_source(backend: str, device: str, sample_rate: int = 16000) -> CaptureSource:
    """Build the configured capture backend."""
    if backend == "sounddevice":
        return SounddeviceCaptureSource(device=device, sample_rate=sample_rate)
    if backend == "arecord":
        return ArecordCaptureSource(device=device, sample_rate=sample_rate)
    raise ValueError(f"Unknown capture backend: {backend}")


# Device listing


@dataclass
class AudioDevice:
    """An input device; `id` is what goes into the `audio_device` setting."""
    id: str
    description: str
    is_default: bool = False


def parse_arecord_devices(output: str) -> List[AudioDevice]:
    """
    Parse `arecord -L`: an unindented PCM name followed by indented
    description lines. The `null` sink is skipped.
    """
    devices: List[AudioDevice] = []
    current: Optional[str] = None
    description: List[str] = []

    def flush():
        if current and current != "null" and description:
            devices.append(AudioDevice(
                id=current,
                description=" - ".join(description),
                is_default=current == "default",
            ))

    for line in output.splitlines():
        if not line.strip():
            continue
        if line[0].isspace():
            description.append(line.strip())
        else:
            flush()
            current = line.strip()
            description = []
    flush()
    return devices


def _list_arecord_devices() -> List[AudioDevice]:
    if shutil.which("arecord") is None:
        raise AppError(
            ErrorCode.AUDIO_BACKEND_MISSING,
            "Audio recording backend 'arecord' not found",
        )

    def run() -> str:
        result = subprocess.run(
            ["arecord", "-L"], capture_output=True, text=True, timeout=LIST_TIMEOUT_SECONDS, check=True,
        )
        return result.stdout

    return parse_arecord_devices(with_retry(run, name="List audio devices"))


def _list_sounddevice_devices() -> List[AudioDevice]:
    sd = SounddeviceCaptureSource()._import()
    devices = sd.query_devices()
    if isinstance(devices, dict):
        devices = [devices]

    default_input = sd.default.device[0]
    result = []
    for index, dev in enumerate(devices):
        if dev.get("max_input_channels", 0) <= 0:
            continue
        name = dev.get("name", f"Device {index}")
        result.append(AudioDevice(
            id=name,
            description=f"{dev.get('max_input_channels')} ch, {int(dev.get('default_samplerate', 0))} Hz",
            is_default=index == default_input,
        ))
    return result


def list_devices(backend: str = "arecord") -> List[AudioDevice]:
    """
    Input devices the given backend can open.

    Raises:
        AppError: AUDIO_BACKEND_MISSING when the backend is not installed
        subprocess.CalledProcessError / TimeoutExpired: arecord failed
    """
    if backend == "sounddevice":
        return _list_sounddevice_devices()
    if backend == "arecord":
        return _list_arecord_devices()
    raise ValueError(f"Unknown capture backend: {backend}")
