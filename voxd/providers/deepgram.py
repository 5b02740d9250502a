"""
Deepgram Nova pre-recorded API provider for cloud transcription.
"""

from typing import List, Sequence, Tuple

import requests

from . import Provider
from ..errors import ErrorCode, TranscriptionError, classify_provider_error
from ..retry import with_retry


DEEPGRAM_URL = "https://api.deepgram.com/v1/listen"
REQUEST_TIMEOUT_SECONDS = 30.0


def keyword_params(model: str, boost_words: Sequence[str]) -> List[Tuple[str, str]]:
    """Nova-3 takes `keyterm`, older models take `keywords`."""
    key = "keyterm" if model.startswith("nova-3") else "keywords"
    return [(key, word) for word in boost_words if word]


def extract_transcript(payload: dict) -> str:
    """Pull the first alternative's transcript out of a listen response."""
    channels = (payload.get("results") or {}).get("channels") or [{}]
    alternatives = channels[0].get("alternatives") or [{}]
    return (alternatives[0].get("transcript") or "").strip()


class DeepgramProvider(Provider):
    """
    Cloud transcription using Deepgram Nova.

    Trusted for punctuation, casing and number formatting (merge Source B).
    Falls back to an older model when the primary model fails for reasons
    other than credentials or rate limits.
    """

    name = "deepgram"

    def __init__(
        self,
        api_key: str,
        model: str = "nova-3",
        fallback_model: str = "nova-2",
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key
        self.model = model
        self.fallback_model = fallback_model
        self.timeout = timeout
        self.session = None

    def initialize(self) -> None:
        """Create a persistent session for connection reuse."""
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Token {self.api_key}",
            "Content-Type": "audio/wav",
        })
        print(f"[{self.name}] Initialized (model: {self.model})")

    def _request(self, model: str, audio: bytes, language: str, boost_words: Sequence[str]) -> str:
        params = [
            ("model", model),
            ("smart_format", "true"),
            ("punctuate", "true"),
            ("language", language),
        ]
        params += keyword_params(model, boost_words)

        response = self.session.post(DEEPGRAM_URL, params=params, data=audio, timeout=self.timeout)
        response.raise_for_status()
        return extract_transcript(response.json())

    def transcribe(self, audio: bytes, language: str = "en", boost_words: Sequence[str] = ()) -> str:
        """Transcribe with the primary model, then the fallback model."""
        if not self.api_key:
            raise TranscriptionError(self.name, ErrorCode.DEEPGRAM_INVALID_KEY, "Deepgram: API key is not configured")
        if self.session is None:
            self.initialize()

        try:
            text = with_retry(
                lambda: self._request(self.model, audio, language, boost_words),
                name=f"Deepgram {self.model}",
            )
            print(f"[{self.name}] Transcribed {len(text)} chars ({self.model})")
            return text
        except Exception as e:
            error = classify_provider_error("Deepgram", e)
            if error.code in (ErrorCode.DEEPGRAM_INVALID_KEY, ErrorCode.RATE_LIMIT_EXCEEDED):
                print(f"[{self.name}] Transcription error: {error.message}")
                raise error from e
            print(f"[{self.name}] {self.model} failed ({error.message}), trying {self.fallback_model}")

        try:
            text = with_retry(
                lambda: self._request(self.fallback_model, audio, language, boost_words),
                name=f"Deepgram {self.fallback_model}",
            )
        except Exception as e:
            error = classify_provider_error("Deepgram", e)
            print(f"[{self.name}] Fallback failed: {error.message}")
            raise error from e

        print(f"[{self.name}] Transcribed {len(text)} chars ({self.fallback_model})")
        return text

    def shutdown(self) -> None:
        """Close session."""
        if self.session is not None:
            self.session.close()
        self.session = None
        print(f"[{self.name}] Shutdown")
