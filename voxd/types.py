"""
Shared type definitions for voxd.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union

from .errors import AppError


class DaemonStatus(str, Enum):
    """Lifecycle status of the daemon. Exactly one is active at a time."""
    IDLE = "idle"
    STARTING = "starting"
    RECORDING = "recording"
    STOPPING = "stopping"
    PROCESSING = "processing"
    ERROR = "error"


@dataclass(frozen=True)
class MergeResult:
    """Outcome of reconciling two transcripts. Never mutated after creation."""
    text: str
    sources_match: bool
    edit_distance: int      # Average normalized distance to both sources, 0-100
    confidence: float       # 0.0 - 1.0


# Recorder events (tagged union delivered to Recorder.on_event)

@dataclass(frozen=True)
class RecordingStarted:
    device: str


@dataclass(frozen=True)
class RecordingStopped:
    audio: bytes
    duration_ms: int


@dataclass(frozen=True)
class RecordingFailed:
    error: AppError


@dataclass(frozen=True)
class RecordingWarning:
    message: str
    code: Optional[str] = None


RecorderEvent = Union[RecordingStarted, RecordingStopped, RecordingFailed, RecordingWarning]


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable snapshot of configuration for a session.
    Ensures config changes mid-session don't cause inconsistency.
    """
    language: str
    boost_words: List[str] = field(default_factory=list)
    streaming_enabled: bool = False
    clipboard_append: bool = False
    notifications_enabled: bool = True
