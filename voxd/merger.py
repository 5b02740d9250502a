"""
Transcript reconciliation.

Two engines hear the same audio. When they agree byte-for-byte the text is
used as-is; otherwise two LLM "oracles" merge them concurrently and one
successful answer is picked at random. Confidence is scored afterwards by
how close the merge stayed to both inputs.
"""

import random
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

from .metrics import MetricsWriter, log_merge
from .retry import with_retry, DEFAULT_BACKOFFS, DEFAULT_MAX_RETRIES
from .types import MergeResult


MERGE_SYSTEM_PROMPT = """You are an expert editor. I will provide two transcripts of the same audio.
Source A (Whisper): Accurate words, proper nouns, technical terms.
Source B (Nova): Good formatting, punctuation, casing.

Your task: Merge them into a single perfect transcript.
Rules:
1. Trust Source A for specific words, spelling, proper nouns and technical terms.
2. Trust Source B for punctuation, casing, and number formatting.
3. Remove any hallucinations (repeated phrases, non-speech, silence).
4. If the speaker self-corrects (e.g., "I mean", "actually", "sorry"), keep only the final corrected version.
5. Remove spelling clarifications (e.g., "with an I", "spelled S-M-I-T-H").
6. Remove false starts and abandoned sentences that the speaker didn't complete.
7. Output ONLY the final merged text. Do not add any preamble or quotes."""

REQUEST_TIMEOUT_SECONDS = 30.0


def build_merge_prompt(text_a: str, text_b: str) -> str:
    return f"Source A:\n{text_a}\n\nSource B:\n{text_b}"


class Oracle(ABC):
    """A text-generation service that can reconcile two transcripts."""

    name: str = "base"

    @abstractmethod
    def complete(self, system_prompt: str, user_prompt: str) -> str:
        pass


class GroqOracle(Oracle):
    """Groq chat completion with deterministic decoding."""

    def __init__(self, api_key: str, model: str, timeout: float = REQUEST_TIMEOUT_SECONDS):
        self.api_key = api_key
        self.model = model
        self.name = model
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        if self._client is None:
            from groq import Groq
            self._client = Groq(api_key=self.api_key, max_retries=0, timeout=self.timeout)
        return self._client

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        completion = self._get_client().chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=0.0,
            max_tokens=4096,
        )
        return (completion.choices[0].message.content or "").strip()


def levenshtein(a: str, b: str) -> int:
    """Edit distance (insert/delete/substitute, unit cost)."""
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,              # deletion
                current[j - 1] + 1,           # insertion
                previous[j - 1] + (ca != cb),  # substitution
            ))
        previous = current
    return previous[-1]


def normalized_distance(a: str, b: str) -> float:
    """Edit distance divided by the longer length (1 when both are empty)."""
    return levenshtein(a, b) / max(len(a), len(b), 1)


def score_merge(merged: str, text_a: str, text_b: str, sources_match: bool = False) -> MergeResult:
    """
    Build a MergeResult scored against both sources.

    confidence = 1 - average normalized distance; edit_distance is that
    average on a 0-100 scale.
    """
    average = (normalized_distance(merged, text_a) + normalized_distance(merged, text_b)) / 2
    return MergeResult(
        text=merged,
        sources_match=sources_match,
        edit_distance=round(average * 100),
        confidence=max(0.0, min(1.0, 1.0 - average)),
    )


class TranscriptMerger:
    """
    Reconcile Source A (word-accurate) and Source B (format-accurate).

    Usage:
        merger = TranscriptMerger([GroqOracle(key, m) for m in models])
        result = merger.merge(groq_text, deepgram_text)
    """

    def __init__(
        self,
        oracles: Sequence[Oracle],
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoffs: Sequence[float] = DEFAULT_BACKOFFS,
        rng: Optional[random.Random] = None,
        metrics: Optional[MetricsWriter] = None,
    ):
        self.oracles = list(oracles)
        self.max_retries = max_retries
        self.backoffs = tuple(backoffs)
        self._rng = rng or random.Random()
        self.metrics = metrics

    def merge(self, text_a: str, text_b: str, session_id: str = "") -> MergeResult:
        if not text_a and not text_b:
            return MergeResult(text="", sources_match=False, edit_distance=0, confidence=0.0)

        if not text_a or not text_b:
            # Only one engine heard anything
            return score_merge(text_a or text_b, text_a, text_b)

        if text_a == text_b:
            print("[Merge] Sources match, skipping oracle")
            result = MergeResult(text=text_a, sources_match=True, edit_distance=0, confidence=1.0)
            log_merge(self.metrics, session_id, True, 0, 1.0)
            return result

        start = time.perf_counter()
        candidates = self._ask_oracles(text_a, text_b)
        elapsed = (time.perf_counter() - start) * 1000

        if candidates:
            merged = self._rng.choice(candidates)
            print(f"[Merge] {len(candidates)}/{len(self.oracles)} oracles succeeded ({elapsed:.0f}ms)")
        else:
            merged = text_b or text_a
            print(f"[Merge] All oracles failed ({elapsed:.0f}ms), using Source B")

        result = score_merge(merged, text_a, text_b)
        log_merge(self.metrics, session_id, result.sources_match, result.edit_distance, result.confidence)
        return result

    def _ask_oracles(self, text_a: str, text_b: str) -> List[str]:
        """Run every oracle concurrently; return the non-empty answers."""
        if not self.oracles:
            return []

        prompt = build_merge_prompt(text_a, text_b)
        with ThreadPoolExecutor(max_workers=len(self.oracles)) as executor:
            futures = [
                executor.submit(self._ask_one, oracle, prompt)
                for oracle in self.oracles
            ]
            answers = [f.result() for f in futures]

        return [answer for answer in answers if answer]

    def _ask_one(self, oracle: Oracle, prompt: str) -> str:
        try:
            return with_retry(
                lambda: oracle.complete(MERGE_SYSTEM_PROMPT, prompt),
                name=f"Merge ({oracle.name})",
                max_retries=self.max_retries,
                backoffs=self.backoffs,
            )
        except Exception as e:
            print(f"[Merge] Oracle {oracle.name} failed: {e}")
            return ""
