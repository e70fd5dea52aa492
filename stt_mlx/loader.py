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
Model loading: identifier -> ready-to-run LoadedModel.

Phases (each logged with its duration):
1. Resolve the identifier to a local directory
2. Parse config.json / params.json and build the model
3. Load tokenizer assets (tekken.json, tokenizer.json, or a CTC vocabulary)
4. Load tensors, sanitize, quantize, strict-verify
5. Switch to eval mode

Any failure is fatal for the instance being loaded.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import mlx.core as mx
from mlx.utils import tree_flatten

from .config import QuantizationConfig
from .errors import ConfigurationError, TokenizerAssetError
from .generation import CancellationToken, Event, GenerationConfig, TranscriptionResult
from .models import build_model
from .resolver import CONFIG_FILES, ModelResolver, default_resolver
from .tokenizer import CTCVocabulary, HFTokenizer, TekkenTokenizer
from .transcribe import transcribe, transcribe_stream, transcribe_stream_async
from .weights import is_prequantized, load_safetensors, quantize_weights, verify_and_load

logger = logging.getLogger(__name__)

TEKKEN_FILE = "tekken.json"
CTC_VOCAB_FILES = ("vocab.json", "tokenizer.json")


@dataclass
class LoadedModel:
    """A verified model plus its tokenizer, ready for transcription."""

    model: Any
    tokenizer: Any
    path: Path
    model_type: str
    config_dict: dict = field(default_factory=dict, repr=False)

    @property
    def feature_config(self):
        return self.model.feature_config

    def transcribe(self, waveform, **kwargs) -> TranscriptionResult:
        return transcribe(self, waveform, **kwargs)

    def transcribe_stream(
        self,
        waveform,
        cancel_token: CancellationToken | None = None,
        **kwargs,
    ) -> Iterator[Event]:
        return transcribe_stream(self, waveform, cancel_token=cancel_token, **kwargs)

    def transcribe_stream_async(
        self,
        waveform,
        cancel_token: CancellationToken | None = None,
        **kwargs,
    ) -> AsyncIterator[Event]:
        return transcribe_stream_async(self, waveform, cancel_token=cancel_token, **kwargs)


def read_config(model_dir: Path) -> dict:
    """
    Parse the first model config found in model_dir.

    Raises:
        ConfigurationError: no config file, or invalid JSON
    """
    for name in CONFIG_FILES:
        path = model_dir / name
        if path.is_file():
            try:
                with open(path) as f:
                    config = json.load(f)
            except (OSError, json.JSONDecodeError) as err:
                raise ConfigurationError(f"Cannot parse {path}: {err}") from err
            if not isinstance(config, dict):
                raise ConfigurationError(f"{path} must hold a JSON object")
            return config
    raise ConfigurationError(f"No {' or '.join(CONFIG_FILES)} in {model_dir}")


def load_tokenizer(model_dir: Path, model, unknown_token_policy: str = "drop"):
    """
    Load the tokenizer assets a model needs.

    Autoregressive models require tekken.json, or the tokenizer.json named
    by their tokenizer_file attribute. CTC models use vocab.json or
    tokenizer.json when present and fall back to rendering raw ids.

    Raises:
        TokenizerAssetError: a required asset is missing or malformed
    """
    if model.is_ctc:
        for name in CTC_VOCAB_FILES:
            if (model_dir / name).is_file():
                return CTCVocabulary.from_file(model_dir / name)
        logger.warning("No CTC vocabulary in %s; transcripts will be label ids", model_dir)
        return None

    hf_file = getattr(model, "tokenizer_file", None)
    if hf_file is not None:
        return HFTokenizer.from_file(model_dir / hf_file)

    tekken = model_dir / TEKKEN_FILE
    if not tekken.is_file():
        raise TokenizerAssetError(f"{TEKKEN_FILE} not found in {model_dir}")
    return TekkenTokenizer.from_file(tekken, unknown_token_policy=unknown_token_policy)


def load_model(
    path_or_id: str | Path,
    resolver: ModelResolver | None = None,
    quantize_bits: int | None = None,
    group_size: int = 64,
    dtype: mx.Dtype | None = None,
    unknown_token_policy: str = "drop",
) -> LoadedModel:
    """
    Load a model directory or cached package id.

    Args:
        path_or_id: Local directory or Hugging Face repo id
        resolver: Resolver to use (default: local directory, then hub cache)
        quantize_bits: Post-hoc quantize Linear/Embedding layers to this width
        group_size: Quantization group size
        dtype: Cast floating-point weights to this dtype
        unknown_token_policy: Tekken handling of unmapped BPE groups

    Returns:
        LoadedModel ready for transcribe()/transcribe_stream()

    Raises:
        ModelResolutionError, ConfigurationError, TokenizerAssetError,
        WeightMismatchError
    """
    t_start = time.perf_counter()
    resolver = resolver or default_resolver()
    model_dir = Path(resolver.resolve(str(path_or_id)))
    logger.info("Resolved %s -> %s", path_or_id, model_dir)

    t0 = time.perf_counter()
    config_dict = read_config(model_dir)
    model = build_model(config_dict, identifier=str(path_or_id))
    logger.info("Built %s model in %.2fs", model.model_type, time.perf_counter() - t0)

    t0 = time.perf_counter()
    tokenizer = load_tokenizer(model_dir, model, unknown_token_policy)
    logger.info("Loaded tokenizer in %.2fs", time.perf_counter() - t0)

    t0 = time.perf_counter()
    weights = model.sanitize_rules().sanitize(load_safetensors(model_dir))
    if dtype is not None:
        weights = {
            k: v.astype(dtype) if mx.issubdtype(v.dtype, mx.floating) else v
            for k, v in weights.items()
        }

    quantization = getattr(model.config, "quantization", None)
    if is_prequantized(weights):
        if quantization is None:
            raise ConfigurationError("Checkpoint is quantized but its config has no quantization entry")
        weights = quantize_weights(model, weights, quantization.group_size, quantization.bits)
    elif quantize_bits is not None:
        settings = QuantizationConfig(group_size=group_size, bits=quantize_bits)
        weights = quantize_weights(model, weights, settings.group_size, settings.bits)

    verify_and_load(model, weights)
    model.eval()
    n_params = sum(v.size for _, v in tree_flatten(model.parameters()))
    logger.info(
        "Loaded %d tensors (%.1fM parameters) in %.2fs",
        len(weights), n_params / 1e6, time.perf_counter() - t0,
    )
    logger.info("Model ready in %.2fs", time.perf_counter() - t_start)

    return LoadedModel(
        model=model,
        tokenizer=tokenizer,
        path=model_dir,
        model_type=model.model_type,
        config_dict=config_dict,
    )
