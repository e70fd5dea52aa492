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
Whisper: convolutional audio encoder + cross-attending text decoder.

30 s of audio (3000 log-mel frames) becomes 1500 encoder states. The
decoder starts from <|startoftranscript|> and attends to those states
through cross-attention in every block; their keys/values are projected
once per session and pinned in the session's CrossAttentionCache.

Module names follow the MLX Whisper layout (blocks, attn_ln, query, ...).
Hugging Face checkpoints are renamed onto it in sanitize_rules().
"""

from __future__ import annotations

import logging
import math

import mlx.core as mx
import mlx.nn as nn

from ..attention import create_causal_mask
from ..audio import FeatureConfig
from ..config import WhisperConfig
from ..kv_cache import CrossAttentionCache
from ..weights import WeightRule, WeightRules, transpose_conv_if_ambiguous
from .base import Prompt

logger = logging.getLogger(__name__)

# Offsets of the task tokens from <|startoftranscript|>, used when the
# tokenizer does not name them
TRANSCRIBE_OFFSET = 101
NO_TIMESTAMPS_OFFSET = 105


def sinusoids(length: int, channels: int, max_timescale: float = 10000.0) -> mx.array:
    """Sinusoidal position table, shape (length, channels): [sin | cos]."""
    half = channels // 2
    log_timescale_increment = math.log(max_timescale) / (half - 1)
    inv_timescales = mx.exp(-log_timescale_increment * mx.arange(half, dtype=mx.float32))
    scaled_time = mx.arange(length, dtype=mx.float32)[:, None] * inv_timescales[None, :]
    return mx.concatenate([mx.sin(scaled_time), mx.cos(scaled_time)], axis=1)


def _special_id(tokenizer, token: str, default: int) -> int:
    token_id = tokenizer.token_to_id(token) if tokenizer is not None else None
    return default if token_id is None else token_id


def prompt_token_ids(config: WhisperConfig, tokenizer) -> tuple[int, ...]:
    """
    Decoder task prefix: <|startoftranscript|> [<|transcribe|>] <|notimestamps|>.

    <|transcribe|> is only emitted for multilingual vocabularies. Ids come
    from the tokenizer when it names the tokens, else from the config.
    """
    sot = _special_id(tokenizer, "<|startoftranscript|>", config.sot_token_id)
    ids = [sot]
    if config.is_multilingual:
        ids.append(_special_id(tokenizer, "<|transcribe|>", sot + TRANSCRIBE_OFFSET))
    ids.append(_special_id(tokenizer, "<|notimestamps|>", sot + NO_TIMESTAMPS_OFFSET))
    return tuple(ids)


class WhisperAttention(nn.Module):
    """
    Multi-head attention with Whisper's projection layout.

    query/value/out carry biases, key does not. Self-attention appends to
    the cache; cross-attention (xa given) projects xa once and reuses the
    cache's pinned keys/values afterwards.
    """

    def __init__(self, n_state: int, n_head: int):
        super().__init__()
        self.n_head = n_head
        self.head_dim = n_state // n_head
        # (d ** -0.25) on both q and k
        self.scale = self.head_dim ** -0.5
        self.query = nn.Linear(n_state, n_state)
        self.key = nn.Linear(n_state, n_state, bias=False)
        self.value = nn.Linear(n_state, n_state)
        self.out = nn.Linear(n_state, n_state)

    def _heads(self, x: mx.array) -> mx.array:
        B, L, _ = x.shape
        return x.reshape(B, L, self.n_head, self.head_dim).transpose(0, 2, 1, 3)

    def __call__(
        self,
        x: mx.array,
        xa: mx.array | None = None,
        mask: mx.array | None = None,
        cache: CrossAttentionCache | None = None,
    ) -> mx.array:
        """
        Args:
            x: Query input, shape (batch, seq_len, n_state)
            xa: Encoder states for cross-attention, None for self-attention
            mask: Additive attention mask
            cache: Per-layer session cache, updated in place

        Returns:
            Output, shape (batch, seq_len, n_state)
        """
        B, L, _ = x.shape
        q = self._heads(self.query(x))

        if xa is None:
            k = self._heads(self.key(x))
            v = self._heads(self.value(x))
            if cache is not None:
                k, v = cache.update(k, v)
        elif cache is not None and cache.cross_keys is not None:
            k, v = cache.cross_keys, cache.cross_values
        else:
            k = self._heads(self.key(xa))
            v = self._heads(self.value(xa))
            if cache is not None:
                cache.cross_keys, cache.cross_values = k, v

        out = mx.fast.scaled_dot_product_attention(q, k, v, scale=self.scale, mask=mask)
        return self.out(out.transpose(0, 2, 1, 3).reshape(B, L, -1))


class ResidualAttentionBlock(nn.Module):
    """
    Pre-norm transformer block.

    - Self-attention + residual
    - Cross-attention + residual (decoder only)
    - MLP (4x width, GELU) + residual
    """

    def __init__(self, n_state: int, n_head: int, cross_attention: bool = False):
        super().__init__()
        self.attn = WhisperAttention(n_state, n_head)
        self.attn_ln = nn.LayerNorm(n_state)
        if cross_attention:
            self.cross_attn = WhisperAttention(n_state, n_head)
            self.cross_attn_ln = nn.LayerNorm(n_state)
        self.has_cross_attention = cross_attention

        n_mlp = n_state * 4
        self.mlp1 = nn.Linear(n_state, n_mlp)
        self.mlp2 = nn.Linear(n_mlp, n_state)
        self.mlp_ln = nn.LayerNorm(n_state)

    def __call__(
        self,
        x: mx.array,
        xa: mx.array | None = None,
        mask: mx.array | None = None,
        cache: CrossAttentionCache | None = None,
    ) -> mx.array:
        x = x + self.attn(self.attn_ln(x), mask=mask, cache=cache)
        if self.has_cross_attention:
            x = x + self.cross_attn(self.cross_attn_ln(x), xa=xa, cache=cache)
        return x + self.mlp2(nn.gelu(self.mlp1(self.mlp_ln(x))))


class AudioEncoder(nn.Module):
    """Two GELU convs (second one stride 2), sinusoidal positions, blocks."""

    def __init__(self, config: WhisperConfig):
        super().__init__()
        n_state = config.n_audio_state
        self.conv1 = nn.Conv1d(config.n_mels, n_state, kernel_size=3, padding=1)
        self.conv2 = nn.Conv1d(n_state, n_state, kernel_size=3, stride=2, padding=1)
        self._positional_embedding = sinusoids(config.n_audio_ctx, n_state)
        self.blocks = [ResidualAttentionBlock(n_state, config.n_audio_head) for _ in range(config.n_audio_layer)]
        self.ln_post = nn.LayerNorm(n_state)

    def __call__(self, mel: mx.array) -> mx.array:
        """
        Args:
            mel: Log-mel frames, shape (batch, frames, n_mels)

        Returns:
            Encoder states, shape (batch, frames // 2, n_audio_state)
        """
        x = nn.gelu(self.conv1(mel))
        x = nn.gelu(self.conv2(x))
        n_ctx = x.shape[1]
        if n_ctx > self._positional_embedding.shape[0]:
            raise ValueError(
                f"Audio too long: {n_ctx} encoder frames, max {self._positional_embedding.shape[0]}",
            )
        x = x + self._positional_embedding[:n_ctx].astype(x.dtype)
        for block in self.blocks:
            x = block(x)
        return self.ln_post(x)


class TextDecoder(nn.Module):
    """Token embedding + learned positions, cross-attending blocks, tied logits."""

    def __init__(self, config: WhisperConfig):
        super().__init__()
        n_state = config.n_text_state
        self.token_embedding = nn.Embedding(config.n_vocab, n_state)
        self.positional_embedding = mx.zeros((config.n_text_ctx, n_state))
        self.blocks = [
            ResidualAttentionBlock(n_state, config.n_text_head, cross_attention=True)
            for _ in range(config.n_text_layer)
        ]
        self.ln = nn.LayerNorm(n_state)

    def __call__(self, embeddings: mx.array, cache: list[CrossAttentionCache]) -> mx.array:
        """
        Args:
            embeddings: Token embeddings, shape (batch, seq_len, n_text_state)
            cache: One CrossAttentionCache per block, holding the encoder states

        Returns:
            Logits, shape (batch, seq_len, n_vocab)
        """
        L = embeddings.shape[1]
        offset = cache[0].offset
        if offset + L > self.positional_embedding.shape[0]:
            raise ValueError(
                f"Decoder context exceeded: {offset + L} positions, "
                f"max {self.positional_embedding.shape[0]}",
            )
        xa = cache[0].encoder_states
        if xa is None:
            raise ValueError("Decoder cache holds no encoder states")

        x = embeddings + self.positional_embedding[offset:offset + L].astype(embeddings.dtype)
        mask = create_causal_mask(L, offset, dtype=x.dtype) if L > 1 else None
        for block, layer_cache in zip(self.blocks, cache):
            x = block(x, xa, mask=mask, cache=layer_cache)
        return self.token_embedding.as_linear(self.ln(x))


class WhisperModel(nn.Module):
    """Whisper speech-to-text: audio encoder + text decoder."""

    model_type = "whisper"
    is_ctc = False
    tokenizer_file = "tokenizer.json"

    def __init__(self, config: WhisperConfig):
        super().__init__()
        self.config = config
        self.encoder = AudioEncoder(config)
        self.decoder = TextDecoder(config)
        self.eos_token_ids = frozenset({config.eot_token_id})

    @property
    def feature_config(self) -> FeatureConfig:
        return FeatureConfig(
            n_mels=self.config.n_mels,
            framing="fixed",
            layout="frames_first",
            drop_last_frame=True,
            drop_nyquist_bin=True,
        )

    def encode(self, features: mx.array) -> mx.array:
        """
        Log-mel frames -> encoder states.

        Args:
            features: shape (frames, n_mels) or (1, frames, n_mels)

        Returns:
            Encoder states, shape (n_audio_ctx, n_audio_state)
        """
        if features.ndim == 2:
            features = features[None]
        return self.encoder(features)[0]

    def build_prompt(self, audio_embeds: mx.array, tokenizer) -> Prompt:
        """
        Task prefix only: the audio reaches the decoder through cross-attention.
        """
        token_ids = prompt_token_ids(self.config, tokenizer)
        logger.debug("Whisper task prefix: %s", token_ids)
        embeddings = self.decoder.token_embedding(mx.array(token_ids))[None]
        return Prompt(token_ids=token_ids, embeddings=embeddings)

    def step_embedding(self, token: int, step: int, audio_embeds: mx.array) -> mx.array | None:
        # Whisper samples at most n_text_ctx // 2 tokens per window
        if step + 1 >= self.config.sample_len:
            return None
        return self.decoder.token_embedding(mx.array([[token]]))

    def decode(self, embeddings: mx.array, cache: list[CrossAttentionCache]) -> mx.array:
        return self.decoder(embeddings, cache)

    def make_cache(self, audio_embeds: mx.array | None = None) -> list[CrossAttentionCache]:
        encoder_states = None
        if audio_embeds is not None:
            encoder_states = audio_embeds if audio_embeds.ndim == 3 else audio_embeds[None]
        return [CrossAttentionCache(encoder_states) for _ in range(self.config.n_text_layer)]

    def sanitize_rules(self) -> WeightRules:
        return WeightRules(
            rename=(
                WeightRule(r"^model\.", rename=""),
                WeightRule(r"\.layers\.(\d+)\.", rename=r".blocks.\1."),
                WeightRule(r"\.self_attn_layer_norm\.", rename=".attn_ln."),
                WeightRule(r"\.encoder_attn_layer_norm\.", rename=".cross_attn_ln."),
                WeightRule(r"\.final_layer_norm\.", rename=".mlp_ln."),
                WeightRule(r"\.self_attn\.", rename=".attn."),
                WeightRule(r"\.encoder_attn\.", rename=".cross_attn."),
                WeightRule(r"\.q_proj\.", rename=".query."),
                WeightRule(r"\.k_proj\.", rename=".key."),
                WeightRule(r"\.v_proj\.", rename=".value."),
                WeightRule(r"\.out_proj\.", rename=".out."),
                WeightRule(r"\.fc1\.", rename=".mlp1."),
                WeightRule(r"\.fc2\.", rename=".mlp2."),
                WeightRule(r"^encoder\.layer_norm\.", rename="encoder.ln_post."),
                WeightRule(r"^decoder\.layer_norm\.", rename="decoder.ln."),
                WeightRule(r"^decoder\.embed_tokens\.", rename="decoder.token_embedding."),
                WeightRule(r"^decoder\.embed_positions\.weight$", rename="decoder.positional_embedding"),
            ),
            # Sinusoids are recomputed; the output projection is tied to token_embedding
            drop=(r"^encoder\.embed_positions\.weight$", r"^proj_out\.weight$"),
            transforms=(
                WeightRule(r"^encoder\.conv[12]\.weight$", transform=transpose_conv_if_ambiguous),
            ),
        )
