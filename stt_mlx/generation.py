# Copyright 2024-2025 Andrew Yates
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Generation session: features -> token events -> transcription result.

One GenerationSession per request. It owns its KV caches, checks a
cancellation token once per decode step and reports telemetry before the
final result. Models are shared read-only between sessions.

Event order for a successful run:
    TokenEvent* -> TelemetryEvent -> ResultEvent
A cancelled run yields its tokens so far, then raises CancellationError.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Union

import mlx.core as mx

from .errors import CancellationError, ConfigurationError, InferenceError, STTError
from .tokenizer import ctc_greedy_decode, render_ids

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle of a generation session."""
    IDLE = "idle"
    PREFILLING = "prefilling"
    DECODING = "decoding"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


_TRANSITIONS = {
    SessionState.IDLE: {SessionState.PREFILLING, SessionState.CANCELLED, SessionState.FAILED},
    SessionState.PREFILLING: {
        SessionState.DECODING, SessionState.CANCELLED, SessionState.FAILED,
    },
    SessionState.DECODING: {SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED},
    SessionState.COMPLETED: set(),
    SessionState.CANCELLED: set(),
    SessionState.FAILED: set(),
}


@dataclass(frozen=True)
class GenerationConfig:
    """Runtime knobs for one session."""
    max_new_tokens: int = 4096
    temperature: float = 0.0  # <= 0 is greedy arg-max
    clear_cache_interval: int = 256  # decode steps between mx.clear_cache()
    seed: int | None = None

    def __post_init__(self):
        if self.max_new_tokens < 1:
            raise ConfigurationError(f"max_new_tokens must be >= 1, got {self.max_new_tokens}")
        if self.clear_cache_interval < 1:
            raise ConfigurationError(
                f"clear_cache_interval must be >= 1, got {self.clear_cache_interval}",
            )


class CancellationToken:
    """Thread-safe cancellation flag shared between a caller and a session."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class GenerationStats:
    prompt_tokens: int
    generation_tokens: int
    prefill_time: float  # seconds
    generation_time: float  # seconds
    prompt_tps: float
    generation_tps: float
    peak_memory_gb: float


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    token_ids: tuple[int, ...]
    prompt_tokens: int
    generation_tokens: int
    total_tokens: int
    prompt_tps: float
    generation_tps: float
    total_time: float
    peak_memory_gb: float


@dataclass(frozen=True)
class TokenEvent:
    token_id: int
    text: str


@dataclass(frozen=True)
class TelemetryEvent:
    stats: GenerationStats


@dataclass(frozen=True)
class ResultEvent:
    result: TranscriptionResult


Event = Union[TokenEvent, TelemetryEvent, ResultEvent]


def sample_token(logits: mx.array, temperature: float = 0.0, key: mx.array | None = None) -> int:
    """
    Pick the next token from the last position's logits.

    temperature <= 0 is exact arg-max; otherwise categorical sampling of
    logits / temperature, drawn from `key` when given and from the global
    MLX generator otherwise.
    """
    logits = logits.reshape(-1, logits.shape[-1])[-1]
    if temperature <= 0:
        return int(mx.argmax(logits).item())
    return int(mx.random.categorical(logits / temperature, key=key).item())


def _peak_memory_gb() -> float:
    return mx.get_peak_memory() / 1e9


class GenerationSession:
    """
    Runs one transcription over pre-computed features.

    Args:
        model: A CTC or autoregressive model (see models.base)
        tokenizer: TekkenTokenizer, CTCVocabulary or None
        config: Generation settings
        cancel_token: Optional token polled once per step
    """

    def __init__(
        self,
        model,
        tokenizer=None,
        config: GenerationConfig | None = None,
        cancel_token: CancellationToken | None = None,
    ):
        self.model = model
        self.tokenizer = tokenizer
        self.config = config or GenerationConfig()
        self.cancel_token = cancel_token or CancellationToken()
        self._state = SessionState.IDLE
        self._cache = None
        self._lock = threading.Lock()
        # Seeded sessions own their PRNG key; the global generator is never reseeded
        self._key = mx.random.key(self.config.seed) if self.config.seed is not None else None

    @property
    def state(self) -> SessionState:
        return self._state

    def _transition(self, new_state: SessionState):
        with self._lock:
            if new_state not in _TRANSITIONS[self._state]:
                raise InferenceError(
                    f"Invalid session transition {self._state.value} -> {new_state.value}",
                )
            logger.debug("Session %s -> %s", self._state.value, new_state.value)
            self._state = new_state

    def _check_cancelled(self):
        if self.cancel_token.cancelled:
            raise CancellationError("Transcription cancelled")

    def _release(self):
        if self._cache is not None:
            for cache in self._cache:
                cache.reset()
            self._cache = None
        mx.clear_cache()

    def _detokenize(self, ids: list[int]) -> str:
        if self.tokenizer is None:
            return render_ids(ids)
        return self.tokenizer.decode(ids)

    def run(self, features: mx.array) -> Iterator[Event]:
        """
        Transcribe features, yielding events as they become available.

        Raises:
            CancellationError: the cancel token was set
            InferenceError: a forward pass failed or produced non-finite logits
        """
        self._transition(SessionState.PREFILLING)
        start = time.perf_counter()
        try:
            if self.model.is_ctc:
                yield from self._run_ctc(features, start)
            else:
                yield from self._run_autoregressive(features, start)
        except CancellationError:
            self._transition(SessionState.CANCELLED)
            logger.debug("Session cancelled")
            raise
        except STTError:
            self._transition(SessionState.FAILED)
            raise
        except (ValueError, RuntimeError, TypeError, IndexError) as err:
            self._transition(SessionState.FAILED)
            raise InferenceError(f"Forward pass failed: {err}") from err
        finally:
            self._release()

    def _check_finite(self, logits: mx.array):
        if not mx.all(mx.isfinite(logits)).item():
            raise InferenceError("Model produced non-finite logits")

    def _sample(self, logits: mx.array) -> int:
        last = logits.reshape(-1, logits.shape[-1])[-1]
        self._check_finite(last)
        key = None
        if self._key is not None and self.config.temperature > 0:
            self._key, key = mx.random.split(self._key)
        return sample_token(last, self.config.temperature, key=key)

    def _run_ctc(self, features: mx.array, start: float) -> Iterator[Event]:
        logits = self.model.ctc_logits(features)
        mx.eval(logits)
        self._check_finite(logits)
        self._check_cancelled()
        labels = ctc_greedy_decode(logits, self.model.blank_id)
        n_frames = logits.shape[-2]
        prefill_time = time.perf_counter() - start

        self._transition(SessionState.DECODING)
        decode_start = time.perf_counter()
        for label in labels:
            self._check_cancelled()
            piece = self.tokenizer.piece(label) if self.tokenizer is not None else render_ids([label])
            yield TokenEvent(token_id=label, text=piece)

        yield from self._finish(labels, n_frames, start, prefill_time, decode_start)

    def _run_autoregressive(self, features: mx.array, start: float) -> Iterator[Event]:
        model = self.model
        audio_embeds = model.encode(features)
        prompt = model.build_prompt(audio_embeds, self.tokenizer)
        self._cache = model.make_cache(audio_embeds)

        logits = model.decode(prompt.embeddings, self._cache)
        mx.eval(logits)
        self._check_cancelled()
        token = self._sample(logits)
        prefill_time = time.perf_counter() - start
        logger.debug("Prefilled %d prompt tokens in %.3fs", len(prompt), prefill_time)

        self._transition(SessionState.DECODING)
        decode_start = time.perf_counter()
        tokens: list[int] = []
        emitted = ""
        step = 0
        while True:
            self._check_cancelled()
            if token in model.eos_token_ids:
                break
            tokens.append(token)

            text = self._detokenize(tokens)
            # A trailing U+FFFD is an incomplete UTF-8 sequence; emit it with a later token
            if text.endswith("\ufffd"):
                piece = ""
            else:
                piece, emitted = text[len(emitted):], text
            yield TokenEvent(token_id=token, text=piece)

            if len(tokens) >= self.config.max_new_tokens:
                break
            embedding = model.step_embedding(token, step, audio_embeds)
            if embedding is None:
                break
            logits = model.decode(embedding, self._cache)
            token = self._sample(logits)
            step += 1
            if step % self.config.clear_cache_interval == 0:
                mx.clear_cache()
                logger.debug("Cleared allocator cache at step %d", step)

        yield from self._finish(tokens, len(prompt), start, prefill_time, decode_start)

    def _finish(
        self,
        tokens: list[int],
        prompt_tokens: int,
        start: float,
        prefill_time: float,
        decode_start: float,
    ) -> Iterator[Event]:
        end = time.perf_counter()
        self._check_cancelled()
        generation_time = end - decode_start
        peak_memory = _peak_memory_gb()
        n_generated = len(tokens)

        stats = GenerationStats(
            prompt_tokens=prompt_tokens,
            generation_tokens=n_generated,
            prefill_time=prefill_time,
            generation_time=generation_time,
            prompt_tps=prompt_tokens / max(prefill_time, 0.001),
            generation_tps=n_generated / generation_time if generation_time > 0 else 0.0,
            peak_memory_gb=peak_memory,
        )
        logger.debug(
            "Generated %d tokens (%.1f tok/s), peak memory %.2f GB",
            n_generated, stats.generation_tps, peak_memory,
        )
        yield TelemetryEvent(stats=stats)

        self._check_cancelled()
        result = TranscriptionResult(
            text=self._detokenize(tokens).strip(),
            token_ids=tuple(tokens),
            prompt_tokens=prompt_tokens,
            generation_tokens=n_generated,
            total_tokens=prompt_tokens + n_generated,
            prompt_tps=stats.prompt_tps,
            generation_tps=stats.generation_tps,
            total_time=end - start,
            peak_memory_gb=peak_memory,
        )
        self._transition(SessionState.COMPLETED)
        yield ResultEvent(result=result)
