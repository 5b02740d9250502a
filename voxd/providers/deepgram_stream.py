"""
Deepgram live transcription over a WebSocket.

Audio chunks are forwarded while the user speaks; finalize() flushes the
server-side buffer and returns the transcript joined from final segments.
"""

import json
import threading
import urllib.parse
from typing import List, Sequence

from websockets.exceptions import ConnectionClosed
from websockets.sync.client import connect

from . import StreamHandle, StreamingProvider
from .deepgram import keyword_params
from ..audio import has_wav_header, strip_wav_header
from ..errors import ErrorCode, TranscriptionError, classify_provider_error


WS_URL = "wss://api.deepgram.com/v1/listen"
OPEN_TIMEOUT_SECONDS = 5.0
FINALIZE_WAIT_SECONDS = 0.3
CLOSE_WAIT_SECONDS = 2.0


class DeepgramStream(StreamHandle):
    """
    A live Deepgram session.

    A receiver thread collects segments flagged is_final or speech_final.
    send() may be called from the capture thread concurrently.
    """

    def __init__(self, connection):
        self._connection = connection
        self._chunks: List[str] = []
        self._lock = threading.Lock()
        self._first_chunk = True
        self._closed = threading.Event()
        self._got_final = threading.Event()
        self._receiver = threading.Thread(target=self._receive_loop, daemon=True)
        self._receiver.start()

    @property
    def finalized_chunks(self) -> int:
        with self._lock:
            return len(self._chunks)

    def send(self, chunk: bytes) -> None:
        if self._closed.is_set():
            return

        if self._first_chunk:
            self._first_chunk = False
            # arecord prefixes the stream with a WAV header; the socket wants raw PCM
            if has_wav_header(chunk):
                chunk = strip_wav_header(chunk)
        if not chunk:
            return

        try:
            self._connection.send(chunk)
        except Exception as e:
            print(f"[DeepgramStream] Failed to send audio chunk: {e}")

    def finalize(self) -> str:
        if not self._closed.is_set():
            try:
                self._got_final.clear()
                self._connection.send(json.dumps({"type": "Finalize"}))
                self._got_final.wait(FINALIZE_WAIT_SECONDS)
                self._connection.send(json.dumps({"type": "CloseStream"}))
            except Exception as e:
                print(f"[DeepgramStream] Error finishing stream: {e}")

            self._receiver.join(CLOSE_WAIT_SECONDS)
            if self._receiver.is_alive():
                print("[DeepgramStream] Close timeout, proceeding with available transcripts")

        self.close()

        with self._lock:
            count = len(self._chunks)
            text = " ".join(self._chunks).strip()
        print(f"[DeepgramStream] Complete: {count} final chunks, {len(text)} chars")
        return text

    def close(self) -> None:
        self._closed.set()
        try:
            self._connection.close()
        except Exception as e:
            print(f"[DeepgramStream] Error closing connection: {e}")

    def _receive_loop(self) -> None:
        try:
            for message in self._connection:
                if isinstance(message, str):
                    self._handle_message(message)
        except ConnectionClosed as e:
            if not self._closed.is_set():
                print(f"[DeepgramStream] Connection closed: {e}")
        finally:
            self._closed.set()

    def _handle_message(self, raw: str) -> None:
        try:
            event = json.loads(raw)
        except json.JSONDecodeError:
            return

        if event.get("type") != "Results":
            return

        alternatives = (event.get("channel") or {}).get("alternatives") or [{}]
        transcript = (alternatives[0].get("transcript") or "").strip()
        if not transcript:
            return

        if event.get("speech_final") or event.get("is_final"):
            with self._lock:
                self._chunks.append(transcript)
            self._got_final.set()


class DeepgramStreamingProvider(StreamingProvider):
    """Opens DeepgramStream sessions for 16 kHz mono linear16 audio."""

    name = "deepgram-stream"

    def __init__(self, api_key: str, model: str = "nova-3", open_timeout: float = OPEN_TIMEOUT_SECONDS):
        self.api_key = api_key
        self.model = model
        self.open_timeout = open_timeout

    def build_url(self, language: str, boost_words: Sequence[str]) -> str:
        params = [
            ("model", self.model),
            ("encoding", "linear16"),
            ("sample_rate", "16000"),
            ("channels", "1"),
            ("interim_results", "true"),
            ("endpointing", "300"),
            ("vad_events", "true"),
            ("smart_format", "true"),
            ("language", language),
        ]
        params += keyword_params(self.model, boost_words)
        return WS_URL + "?" + urllib.parse.urlencode(params)

    def open(self, language: str = "en", boost_words: Sequence[str] = ()) -> StreamHandle:
        if not self.api_key:
            raise TranscriptionError("Deepgram", ErrorCode.DEEPGRAM_INVALID_KEY, "Deepgram: API key is not configured")

        try:
            connection = connect(
                self.build_url(language, boost_words),
                additional_headers={"Authorization": f"Token {self.api_key}"},
                open_timeout=self.open_timeout,
                max_size=None,
            )
        except Exception as e:
            error = classify_provider_error("Deepgram", e)
            print(f"[DeepgramStream] Failed to open stream: {error.message}")
            raise error from e

        print("[DeepgramStream] Streaming connection opened")
        return DeepgramStream(connection)
