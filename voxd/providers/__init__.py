"""
Transcription providers with lifecycle management.

Each provider holds its own state (HTTP clients, sessions) and provides a
consistent interface for transcription. Batch providers take a complete
16 kHz mono WAV buffer; streaming providers accept audio chunks while the
user is still speaking.
"""

from abc import ABC, abstractmethod
from typing import Sequence


class Provider(ABC):
    """
    Base class for batch transcription providers.

    Subclasses must implement:
    - initialize(): Create HTTP client
    - transcribe(): Transcribe audio to text
    - shutdown(): Free resources
    """

    name: str = "base"

    @abstractmethod
    def initialize(self) -> None:
        """Create the HTTP client."""
        pass

    @abstractmethod
    def transcribe(self, audio: bytes, language: str = "en", boost_words: Sequence[str] = ()) -> str:
        """
        Transcribe audio to text.

        Args:
            audio: WAV bytes (16kHz, mono, 16-bit)
            language: Language code, e.g. "en"
            boost_words: Vocabulary hints for names and jargon

        Returns:
            Transcript, possibly empty when nothing was said

        Raises:
            TranscriptionError: after retries are exhausted
        """
        pass

    @abstractmethod
    def shutdown(self) -> None:
        """Close the HTTP client."""
        pass


class StreamHandle(ABC):
    """
    One live streaming session.

    `finalized_chunks` counts transcript segments the service marked final.
    Zero after finalize() means the stream heard nothing it trusted.
    """

    finalized_chunks: int = 0

    @abstractmethod
    def send(self, chunk: bytes) -> None:
        """Forward a raw audio chunk. Never raises."""
        pass

    @abstractmethod
    def finalize(self) -> str:
        """Flush, close and return the joined final transcript."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Tear down without waiting for results. Safe to call twice."""
        pass


class StreamingProvider(ABC):
    """Base class for providers that transcribe while audio is captured."""

    name: str = "base-stream"

    @abstractmethod
    def open(self, language: str = "en", boost_words: Sequence[str] = ()) -> StreamHandle:
        """
        Open a streaming session.

        Raises:
            TranscriptionError: if the connection can't be established
        """
        pass
