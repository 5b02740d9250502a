"""
Groq Whisper API provider for cloud transcription.
"""

import io
from typing import Sequence

from . import Provider
from ..errors import TranscriptionError, ErrorCode, classify_provider_error
from ..retry import with_retry


REQUEST_TIMEOUT_SECONDS = 30.0


class GroqProvider(Provider):
    """
    Cloud transcription using Groq's Whisper API.

    Trusted for exact words and technical terms (merge Source A).
    """

    name = "groq"

    def __init__(self, api_key: str, model: str = "whisper-large-v3", timeout: float = REQUEST_TIMEOUT_SECONDS):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.client = None

    def initialize(self) -> None:
        """Create Groq client. Retries are ours, not the SDK's."""
        from groq import Groq

        self.client = Groq(api_key=self.api_key, max_retries=0, timeout=self.timeout)
        print(f"[{self.name}] Initialized")

    def transcribe(self, audio: bytes, language: str = "en", boost_words: Sequence[str] = ()) -> str:
        """
        Transcribe audio using Groq Whisper API.

        Boost words are passed as a "Keywords:" prompt, which Whisper uses
        as spelling context.
        """
        if not self.api_key:
            raise TranscriptionError(self.name, ErrorCode.GROQ_INVALID_KEY, "Groq: API key is not configured")
        if self.client is None:
            self.initialize()

        prompt = f"Keywords: {', '.join(boost_words)}" if boost_words else None

        def call() -> str:
            audio_file = io.BytesIO(audio)
            audio_file.name = "audio.wav"

            kwargs = {
                "file": audio_file,
                "model": self.model,
                "language": language,
                "response_format": "json",
                "temperature": 0.0,
            }
            if prompt:
                kwargs["prompt"] = prompt

            response = self.client.audio.transcriptions.create(**kwargs)
            return (response.text or "").strip()

        try:
            text = with_retry(call, name="Groq transcription")
        except Exception as e:
            error = classify_provider_error("Groq", e)
            print(f"[{self.name}] Transcription error: {error.message}")
            raise error from e

        print(f"[{self.name}] Transcribed {len(text)} chars")
        return text

    def shutdown(self) -> None:
        """Close client."""
        if self.client is not None:
            self.client.close()
        self.client = None
        print(f"[{self.name}] Shutdown")
