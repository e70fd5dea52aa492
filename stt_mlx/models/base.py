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
Capability interface shared by every model family.

Two kinds of model satisfy it:
- CTC models (is_ctc True) expose ctc_logits() and a blank_id
- Autoregressive models expose build_prompt(), step_embedding(),
  decode(), make_cache() and eos_token_ids. make_cache() receives the
  session's audio embeddings so encoder-decoder models can pin them in
  per-session cross-attention caches

The generation session only talks to models through this interface.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import mlx.core as mx

from ..audio import FeatureConfig
from ..kv_cache import KVCache
from ..weights import WeightRules


@dataclass(frozen=True)
class Prompt:
    """Decoder prefix: token ids and their (possibly audio-mixed) embeddings."""

    token_ids: tuple[int, ...]
    embeddings: mx.array  # (1, len(token_ids), dims)

    def __len__(self) -> int:
        return len(self.token_ids)


@runtime_checkable
class STTModel(Protocol):
    model_type: str
    config: Any
    is_ctc: bool

    @property
    def feature_config(self) -> FeatureConfig: ...

    def encode(self, features: mx.array) -> mx.array: ...

    def sanitize_rules(self) -> WeightRules: ...


@runtime_checkable
class CTCModel(STTModel, Protocol):
    blank_id: int

    def ctc_logits(self, features: mx.array) -> mx.array: ...


@runtime_checkable
class AutoregressiveModel(STTModel, Protocol):
    eos_token_ids: frozenset[int]

    def build_prompt(self, audio_embeds: mx.array, tokenizer) -> Prompt: ...

    def step_embedding(self, token: int, step: int, audio_embeds: mx.array) -> mx.array | None: ...

    def decode(self, embeddings: mx.array, cache: list[KVCache]) -> mx.array: ...

    def make_cache(self, audio_embeds: mx.array | None = None) -> list[KVCache]: ...
