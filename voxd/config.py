"""
Configuration management with immutable snapshots.

Loads from: environment variables > settings.json > defaults
Provides immutable snapshots for session isolation.
"""

from pathlib import Path
from typing import List, Optional
import json
import os

from .types import ConfigSnapshot


# Defaults
DEFAULT_CONFIG = {
    # Audio
    "audio_device": "default",
    "capture_backend": "arecord",     # "arecord" | "sounddevice"
    "sample_rate": 16000,
    "min_duration_ms": 600,
    "max_duration_ms": 300000,

    # Transcription
    "language": "en",
    "boost_words": [],
    "streaming_enabled": False,
    "merge_models": ["llama-3.3-70b-versatile", "openai/gpt-oss-120b"],

    # Input
    "trigger_key": "ctrl_r",
    "hotkey_enabled": True,

    # Output
    "clipboard_append": False,
    "notifications_enabled": True,
}

ENV_KEYS = ("GROQ_API_KEY", "DEEPGRAM_API_KEY")


def default_data_dir() -> Path:
    """Per-user directory for settings, sockets and state."""
    xdg = os.getenv("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "voxd"


class Config:
    """
    Single source of truth for all settings.

    Usage:
        config = Config.load()
        snapshot = config.snapshot()  # Immutable copy for session
    """

    def __init__(self, data_dir: Optional[Path] = None):
        # Audio
        self.audio_device: str = "default"
        self.capture_backend: str = "arecord"
        self.sample_rate: int = 16000
        self.min_duration_ms: int = 600
        self.max_duration_ms: int = 300000

        # Transcription
        self.language: str = "en"
        self.boost_words: List[str] = []
        self.streaming_enabled: bool = False
        self.merge_models: List[str] = list(DEFAULT_CONFIG["merge_models"])

        # Input
        self.trigger_key: str = "ctrl_r"
        self.hotkey_enabled: bool = True

        # Output
        self.clipboard_append: bool = False
        self.notifications_enabled: bool = True

        # API Keys
        self.groq_api_key: str = ""
        self.deepgram_api_key: str = ""

        # Paths
        self.data_dir: Path = data_dir or default_data_dir()
        self.settings_file: Path = self.data_dir / "settings.json"
        self.env_file: Path = self.data_dir / ".env"
        self.socket_path: Path = self.data_dir / "daemon.sock"
        self.state_file: Path = self.data_dir / "daemon.state"
        self.pid_file: Path = self.data_dir / "daemon.pid"
        self.metrics_file: Path = self.data_dir / "metrics.jsonl"
        self.history_file: Path = self.data_dir / "history.json"
        self.stats_file: Path = self.data_dir / "stats.json"
        self.fallback_file: Path = self.data_dir / "transcriptions.txt"

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "Config":
        """Load configuration from all sources."""
        config = cls(data_dir)
        config._ensure_data_dir()
        config._load_env()
        config._load_settings()
        return config

    def _ensure_data_dir(self) -> None:
        """Create data directory if it doesn't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    def _load_env(self) -> None:
        """Load API keys from .env file and environment."""
        if self.env_file.exists():
            self._parse_env_file(self.env_file)

        # Environment variables override file values
        self.groq_api_key = os.getenv("GROQ_API_KEY", self.groq_api_key)
        self.deepgram_api_key = os.getenv("DEEPGRAM_API_KEY", self.deepgram_api_key)

    def _parse_env_file(self, env_file: Path) -> None:
        """Parse a .env file and extract API keys."""
        try:
            with open(env_file) as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip().strip("'\"")

                    if key == "GROQ_API_KEY":
                        self.groq_api_key = value
                    elif key == "DEEPGRAM_API_KEY":
                        self.deepgram_api_key = value
        except OSError as e:
            print(f"[Config] Error loading {env_file}: {e}")

    def _load_settings(self) -> None:
        """Load settings from settings.json."""
        if self.settings_file.exists():
            self._apply_settings_file(self.settings_file)

    def _apply_settings_file(self, settings_file: Path) -> None:
        """Apply settings from a JSON file."""
        try:
            with open(settings_file) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            print(f"[Config] Error loading {settings_file}: {e}")
            return

        # Apply settings with type coercion to the default's type
        for key, default in DEFAULT_CONFIG.items():
            if key not in data:
                continue
            try:
                if isinstance(default, list):
                    value = [str(v) for v in data[key]]
                else:
                    value = type(default)(data[key])
            except (TypeError, ValueError) as e:
                print(f"[Config] Ignoring invalid value for {key}: {e}")
                continue
            setattr(self, key, value)

    def save_settings(self) -> None:
        """Save current settings to settings.json."""
        data = {key: getattr(self, key) for key in DEFAULT_CONFIG}

        self._ensure_data_dir()
        with open(self.settings_file, "w") as f:
            json.dump(data, f, indent=2)

    def snapshot(self) -> ConfigSnapshot:
        """Return immutable copy for session isolation."""
        return ConfigSnapshot(
            language=self.language,
            boost_words=list(self.boost_words),
            streaming_enabled=self.streaming_enabled,
            clipboard_append=self.clipboard_append,
            notifications_enabled=self.notifications_enabled,
        )
