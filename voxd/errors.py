"""
Error taxonomy and user-facing error copy.

Every error that can end a session or the worker carries an ErrorCode.
The code selects the notification text shown to the user.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    # Engines
    GROQ_INVALID_KEY = "GROQ_INVALID_KEY"
    DEEPGRAM_INVALID_KEY = "DEEPGRAM_INVALID_KEY"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    TIMEOUT = "TIMEOUT"
    BOTH_SERVICES_FAILED = "BOTH_SERVICES_FAILED"
    NO_SPEECH_DETECTED = "NO_SPEECH_DETECTED"

    # Audio
    RECORDING_TOO_SHORT = "RECORDING_TOO_SHORT"
    MAX_DURATION_REACHED = "MAX_DURATION_REACHED"
    NO_MICROPHONE = "NO_MICROPHONE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    DEVICE_BUSY = "DEVICE_BUSY"
    SILENT_AUDIO = "SILENT_AUDIO"
    FFMPEG_FAILURE = "FFMPEG_FAILURE"
    CONVERSION_FAILED = "CONVERSION_FAILED"
    AUDIO_BACKEND_MISSING = "AUDIO_BACKEND_MISSING"

    # Daemon
    ALREADY_RECORDING = "ALREADY_RECORDING"
    CRASH_LIMIT_REACHED = "CRASH_LIMIT_REACHED"
    DAEMON_ALREADY_RUNNING = "DAEMON_ALREADY_RUNNING"
    SOCKET_IN_USE = "SOCKET_IN_USE"

    # Output
    CLIPBOARD_ACCESS_DENIED = "CLIPBOARD_ACCESS_DENIED"

    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class AppError(Exception):
    """Application error with a stable code and optional context."""

    def __init__(self, code: ErrorCode, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = context or {}

    def __repr__(self) -> str:
        return f"AppError({self.code.value}, {self.message!r})"


class TranscriptionError(AppError):
    """Error raised by a transcription engine after retries are exhausted."""

    def __init__(
        self,
        provider: str,
        code: ErrorCode,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, {**(context or {}), "provider": provider})
        self.provider = provider


# Codes that must never be retried, whatever raised them
NON_RETRYABLE_CODES = {
    ErrorCode.GROQ_INVALID_KEY,
    ErrorCode.DEEPGRAM_INVALID_KEY,
    ErrorCode.RATE_LIMIT_EXCEEDED,
    ErrorCode.AUDIO_BACKEND_MISSING,
    ErrorCode.NO_MICROPHONE,
    ErrorCode.PERMISSION_DENIED,
    ErrorCode.ALREADY_RECORDING,
}

# HTTP statuses that are terminal for the request (auth + rate limit)
NON_RETRYABLE_STATUSES = {401, 403, 429}


def http_status_of(exc: BaseException) -> Optional[int]:
    """
    Extract an HTTP status code from an SDK or requests exception.

    groq raises APIStatusError subclasses with `status_code`;
    requests raises HTTPError carrying `response.status_code`.
    """
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status

    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status

    return None


def is_timeout(exc: BaseException) -> bool:
    """True for timeouts from the stdlib, requests, groq or websockets."""
    if isinstance(exc, TimeoutError):
        return True
    if isinstance(exc, AppError):
        return exc.code == ErrorCode.TIMEOUT
    # requests.Timeout, groq.APITimeoutError, ...
    return "Timeout" in type(exc).__name__


def classify_provider_error(provider: str, exc: BaseException) -> AppError:
    """Map a raw engine failure to a TranscriptionError with a stable code."""
    if isinstance(exc, AppError):
        return exc

    status = http_status_of(exc)
    if status in (401, 403):
        code = ErrorCode.DEEPGRAM_INVALID_KEY if provider.lower() == "deepgram" else ErrorCode.GROQ_INVALID_KEY
        return TranscriptionError(provider, code, f"{provider}: Invalid API Key", {"status": status})
    if status == 429:
        return TranscriptionError(provider, ErrorCode.RATE_LIMIT_EXCEEDED, f"{provider}: Rate limit exceeded")
    if is_timeout(exc):
        return TranscriptionError(provider, ErrorCode.TIMEOUT, f"{provider}: Request timed out")

    return TranscriptionError(
        provider,
        ErrorCode.UNKNOWN_ERROR,
        f"{provider}: {exc}",
        {"status": status} if status else None,
    )


# User-facing copy: (message, action)
ERROR_TEMPLATES: Dict[ErrorCode, tuple] = {
    ErrorCode.GROQ_INVALID_KEY: (
        "Groq API key is invalid or missing.",
        "Check GROQ_API_KEY in ~/.config/voxd/.env. Keys start with 'gsk_'.",
    ),
    ErrorCode.DEEPGRAM_INVALID_KEY: (
        "Deepgram API key is invalid or missing.",
        "Check DEEPGRAM_API_KEY in ~/.config/voxd/.env.",
    ),
    ErrorCode.RATE_LIMIT_EXCEEDED: (
        "Transcription rate limit exceeded.",
        "Wait a moment before trying again or check your API usage limits.",
    ),
    ErrorCode.TIMEOUT: (
        "Transcription request timed out.",
        "Check your internet connection or try again.",
    ),
    ErrorCode.BOTH_SERVICES_FAILED: (
        "Both transcription services failed.",
        "Check your internet connection and both API keys, then try again.",
    ),
    ErrorCode.NO_SPEECH_DETECTED: (
        "No speech was transcribed.",
        "Speak closer to the microphone or check the selected input device.",
    ),
    ErrorCode.RECORDING_TOO_SHORT: (
        "Recording was too short.",
        "Hold the hotkey a bit longer to record your speech.",
    ),
    ErrorCode.MAX_DURATION_REACHED: (
        "Maximum recording duration reached.",
        "Recording stopped automatically. Split long dictation into several recordings.",
    ),
    ErrorCode.NO_MICROPHONE: (
        "No microphone detected or it could not be opened.",
        "Check that the microphone is connected and audio_device in settings.json is correct. "
        "Run 'arecord -l' to list devices.",
    ),
    ErrorCode.PERMISSION_DENIED: (
        "Microphone permission denied.",
        "Add your user to the 'audio' group ('sudo usermod -aG audio $USER') and log in again.",
    ),
    ErrorCode.DEVICE_BUSY: (
        "Microphone is busy or already in use.",
        "Close other applications using the microphone. 'fuser /dev/snd/*' shows which.",
    ),
    ErrorCode.SILENT_AUDIO: (
        "No audio detected in the recording.",
        "Make sure the microphone is not muted and the correct input is selected.",
    ),
    ErrorCode.FFMPEG_FAILURE: (
        "FFmpeg is not installed.",
        "Install it with 'sudo apt install ffmpeg' or 'brew install ffmpeg'.",
    ),
    ErrorCode.CONVERSION_FAILED: (
        "Failed to convert the recorded audio.",
        "Check that FFmpeg works and that /tmp has free space.",
    ),
    ErrorCode.AUDIO_BACKEND_MISSING: (
        "Audio recording backend is not installed.",
        "Install 'alsa-utils' for arecord, or set capture_backend to 'sounddevice'.",
    ),
    ErrorCode.ALREADY_RECORDING: (
        "A recording is already in progress.",
        "Wait for the current recording to finish.",
    ),
    ErrorCode.CRASH_LIMIT_REACHED: (
        "Daemon crashed too many times and will not restart.",
        "Check the worker output for the root cause, then start the daemon manually.",
    ),
    ErrorCode.DAEMON_ALREADY_RUNNING: (
        "Another voxd daemon is already running.",
        "Stop it with 'python -m voxd stop' first.",
    ),
    ErrorCode.SOCKET_IN_USE: (
        "Status socket address is already in use.",
        "Remove ~/.config/voxd/daemon.sock if no daemon is running.",
    ),
    ErrorCode.CLIPBOARD_ACCESS_DENIED: (
        "Could not write to the clipboard.",
        "Install wl-clipboard (Wayland) or xclip (X11). "
        "The text was saved to ~/.config/voxd/transcriptions.txt.",
    ),
    ErrorCode.UNKNOWN_ERROR: (
        "Something went wrong.",
        "Check the daemon output for details.",
    ),
}


def format_user_error(code: ErrorCode) -> str:
    """Render the notification body for an error code."""
    message, action = ERROR_TEMPLATES.get(code, ERROR_TEMPLATES[ErrorCode.UNKNOWN_ERROR])
    return f"{message}\n\nAction: {action}"
