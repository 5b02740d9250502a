"""
voxd - Push-to-talk voice capture to clipboard text.

This package provides:
- A supervised background daemon with a strict recording state machine
- Audio capture through a pluggable backend (arecord or PortAudio)
- Parallel transcription via two engines (Groq Whisper + Deepgram)
- Optional Deepgram streaming with automatic fallback to batch
- LLM reconciliation of the two transcripts with a confidence score
- A newline-delimited JSON status feed over a Unix socket

Main entry point: python -m voxd
"""

__version__ = "1.0.0"
