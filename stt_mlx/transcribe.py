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
Top-level transcription entry points.

transcribe() runs to completion and returns a TranscriptionResult.
transcribe_stream() yields TokenEvent / TelemetryEvent / ResultEvent as
they are produced; transcribe_stream_async() is the same stream driven
from a worker thread for asyncio callers.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator
from typing import Union

import mlx.core as mx
import mlx.nn as nn
import numpy as np

from .audio import Waveform, extract_features
from .errors import InferenceError
from .generation import (
    CancellationToken,
    Event,
    GenerationConfig,
    GenerationSession,
    ResultEvent,
    TranscriptionResult,
)

logger = logging.getLogger(__name__)

AudioLike = Union[Waveform, np.ndarray, mx.array]


def _unpack(model, tokenizer):
    # Accept either a bare model or a LoadedModel-like object
    if isinstance(model, nn.Module):
        return model, tokenizer
    return model.model, tokenizer if tokenizer is not None else model.tokenizer


def _generation_config(config, max_new_tokens, temperature, seed) -> GenerationConfig:
    if config is not None:
        return config
    kwargs = {}
    if max_new_tokens is not None:
        kwargs["max_new_tokens"] = max_new_tokens
    if temperature is not None:
        kwargs["temperature"] = temperature
    if seed is not None:
        kwargs["seed"] = seed
    return GenerationConfig(**kwargs)


def transcribe_stream(
    model,
    waveform: AudioLike,
    *,
    tokenizer=None,
    config: GenerationConfig | None = None,
    max_new_tokens: int | None = None,
    temperature: float | None = None,
    seed: int | None = None,
    cancel_token: CancellationToken | None = None,
) -> Iterator[Event]:
    """
    Stream a transcription of waveform.

    Args:
        model: Loaded model (or LoadedModel)
        waveform: 16 kHz mono audio
        tokenizer: Overrides the LoadedModel tokenizer
        config: Full GenerationConfig; takes precedence over the keyword knobs
        max_new_tokens: Decode budget for autoregressive models
        temperature: 0 for greedy decoding
        seed: Sampling seed
        cancel_token: Set from another thread to stop at the next step

    Yields:
        TokenEvent per token, then one TelemetryEvent, then one ResultEvent

    Raises:
        AudioInputError, InferenceError, CancellationError
    """
    model, tokenizer = _unpack(model, tokenizer)
    gen_config = _generation_config(config, max_new_tokens, temperature, seed)

    features = extract_features(waveform, model.feature_config)
    logger.debug("Extracted features %s for %s", tuple(features.shape), model.model_type)

    session = GenerationSession(model, tokenizer, gen_config, cancel_token)
    yield from session.run(features)


def transcribe(model, waveform: AudioLike, **kwargs) -> TranscriptionResult:
    """
    Transcribe waveform to text. Keyword arguments as for transcribe_stream().

    Example:
        >>> loaded = load_model("mistralai/Voxtral-Mini-3B-2507")
        >>> transcribe(loaded, audio).text
    """
    for event in transcribe_stream(model, waveform, **kwargs):
        if isinstance(event, ResultEvent):
            return event.result
    raise InferenceError("Transcription ended without a result")


async def transcribe_stream_async(model, waveform: AudioLike, **kwargs) -> AsyncIterator[Event]:
    """
    Async variant of transcribe_stream().

    Each step runs in a worker thread so the event loop stays responsive.
    Cancel through a CancellationToken; closing the iterator early also
    cancels the underlying session.
    """
    cancel_token = kwargs.pop("cancel_token", None) or CancellationToken()
    stream = transcribe_stream(model, waveform, cancel_token=cancel_token, **kwargs)
    done = object()
    try:
        while True:
            event = await asyncio.to_thread(next, stream, done)
            if event is done:
                break
            yield event
    finally:
        cancel_token.cancel()
        # A step still running in the worker thread stops at its next cancel check
        if not stream.gi_running:
            stream.close()
