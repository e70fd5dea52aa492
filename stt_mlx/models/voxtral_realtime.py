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
Voxtral Realtime: streaming causal encoder + time-conditioned decoder.

The audio is padded to whole decoder tokens (1280 samples each), encoded
by a causal Whisper encoder with sliding-window attention, downsampled 4x
and projected into decoder space, giving exactly one audio embedding per
decoder position. Every decoder input is a token embedding plus the audio
embedding at the same position; decoding stops when the audio runs out.

The FFN input of each decoder layer is scaled by an adaptive norm driven
by a sinusoidal embedding of the transcription delay (in tokens).
"""

from __future__ import annotations

import mlx.core as mx
import mlx.nn as nn

from ..attention import Attention
from ..audio import FeatureConfig
from ..config import VoxtralRealtimeConfig, VoxtralRealtimeEncoderConfig
from ..kv_cache import KVCache, make_kv_caches
from ..layers import AdaptiveNorm, CausalConv1d, SwiGLU, time_embedding
from ..weights import WeightRules
from .base import Prompt

# Fixed log-mel ceiling used during training (instead of the per-input max)
GLOBAL_LOG_MEL_MAX = 1.5


# =============================================================================
# Causal encoder
# =============================================================================


class CausalEncoderLayer(nn.Module):
    def __init__(self, config: VoxtralRealtimeEncoderConfig):
        super().__init__()
        self.attn_norm = nn.RMSNorm(config.dim, eps=config.norm_eps)
        self.attention = Attention(
            config.dim,
            config.n_heads,
            head_dim=config.head_dim,
            q_bias=True,
            k_bias=False,
            v_bias=True,
            o_bias=True,
            rope="traditional",
            rope_theta=config.rope_theta,
            causal=True,
            window=config.sliding_window,
        )
        self.ffn_norm = nn.RMSNorm(config.dim, eps=config.norm_eps)
        self.mlp = SwiGLU(config.dim, config.hidden_dim, down_bias=True)

    def __call__(self, x: mx.array) -> mx.array:
        h = x + self.attention(self.attn_norm(x))
        return h + self.mlp(self.ffn_norm(h))


class CausalWhisperEncoder(nn.Module):
    def __init__(self, config: VoxtralRealtimeEncoderConfig):
        super().__init__()
        self.conv1 = CausalConv1d(config.num_mel_bins, config.dim, kernel_size=3, stride=1)
        self.conv2 = CausalConv1d(config.dim, config.dim, kernel_size=3, stride=2)
        self.layers = [CausalEncoderLayer(config) for _ in range(config.n_layers)]
        self.norm = nn.RMSNorm(config.dim, eps=config.norm_eps)

    def __call__(self, mel: mx.array) -> mx.array:
        """
        Args:
            mel: Log-mel frames, shape (batch, frames, n_mels)

        Returns:
            Encoder states, shape (batch, frames // 2, dim)
        """
        x = mel.astype(self.conv1.weight.dtype)
        x = nn.gelu(self.conv1(x))
        x = nn.gelu(self.conv2(x))
        for layer in self.layers:
            x = layer(x)
        return self.norm(x)


class AudioLanguageAdapter(nn.Module):
    def __init__(self, in_dims: int, out_dims: int):
        super().__init__()
        self.w_in = nn.Linear(in_dims, out_dims, bias=False)
        self.w_out = nn.Linear(out_dims, out_dims, bias=False)

    def __call__(self, x: mx.array) -> mx.array:
        return self.w_out(nn.gelu(self.w_in(x)))


# =============================================================================
# Time-conditioned decoder
# =============================================================================


class AdaptiveDecoderLayer(nn.Module):
    def __init__(self, config: VoxtralRealtimeConfig):
        super().__init__()
        self.attn_norm = nn.RMSNorm(config.dim, eps=config.norm_eps)
        self.attention = Attention(
            config.dim,
            config.n_heads,
            config.n_kv_heads,
            head_dim=config.head_dim,
            rope="traditional",
            rope_theta=config.rope_theta,
            causal=True,
        )
        if config.ada_rms_norm_t_cond:
            self.ada_norm = AdaptiveNorm(config.dim, config.ada_rms_norm_t_cond_dim)
        self.ffn_norm = nn.RMSNorm(config.dim, eps=config.norm_eps)
        self.mlp = SwiGLU(config.dim, config.hidden_dim)

    def __call__(self, x: mx.array, t_cond: mx.array, cache: KVCache | None = None) -> mx.array:
        h = x + self.attention(self.attn_norm(x), cache=cache)
        ffn_in = self.ffn_norm(h)
        if "ada_norm" in self:
            ffn_in = ffn_in * (1.0 + self.ada_norm(t_cond))
        return h + self.mlp(ffn_in)


class AdaptiveLanguageModel(nn.Module):
    """embed_tokens -> adaptive decoder layers -> norm -> tied output projection."""

    def __init__(self, config: VoxtralRealtimeConfig):
        super().__init__()
        self.embed_tokens = nn.Embedding(config.vocab_size, config.dim)
        self.layers = [AdaptiveDecoderLayer(config) for _ in range(config.n_layers)]
        self.norm = nn.RMSNorm(config.dim, eps=config.norm_eps)

    def embed(self, token_ids: mx.array) -> mx.array:
        return self.embed_tokens(token_ids)

    def __call__(
        self,
        embeddings: mx.array,
        t_cond: mx.array,
        cache: list[KVCache] | None = None,
    ) -> mx.array:
        h = embeddings
        t_cond = t_cond.astype(h.dtype)
        for i, layer in enumerate(self.layers):
            h = layer(h, t_cond, cache[i] if cache is not None else None)
        return self.embed_tokens.as_linear(self.norm(h))


# =============================================================================
# Full model
# =============================================================================


class VoxtralRealtimeModel(nn.Module):
    """Causal encoder -> downsample + adapter -> adaptive-norm decoder."""

    model_type = "voxtral_realtime"
    is_ctc = False

    def __init__(self, config: VoxtralRealtimeConfig):
        super().__init__()
        self.config = config
        self.encoder = CausalWhisperEncoder(config.encoder)
        self.adapter = AudioLanguageAdapter(config.encoder.dim * config.downsample_factor, config.dim)
        self.language_model = AdaptiveLanguageModel(config)
        self.eos_token_ids = frozenset({config.eos_token_id})
        self._t_cond = time_embedding(float(config.delay_tokens), config.dim)

    @property
    def feature_config(self) -> FeatureConfig:
        return FeatureConfig(
            n_mels=self.config.encoder.num_mel_bins,
            framing="causal",
            layout="mels_first",
            log_mel_max=GLOBAL_LOG_MEL_MAX,
            drop_last_frame=True,
            drop_nyquist_bin=True,
            samples_per_token=self.config.samples_per_token,
            left_pad_tokens=self.config.left_pad_tokens,
            right_pad_tokens=self.config.right_pad_tokens,
        )

    def encode(self, features: mx.array) -> mx.array:
        """
        Mels-first log-mel -> one audio embedding per decoder position.

        Args:
            features: shape (n_mels, frames)

        Returns:
            Audio embeddings, shape (n_audio, dim)
        """
        if features.shape[1] % 2 != 0:
            features = features[:, 1:]
        x = self.encoder(features.T[None])[0]

        factor = self.config.downsample_factor
        remainder = x.shape[0] % factor
        if remainder:
            x = x[remainder:]
        x = x.reshape(x.shape[0] // factor, -1)
        return self.adapter(x)

    def build_prompt(self, audio_embeds: mx.array, tokenizer) -> Prompt:
        """[BOS] + [STREAMING_PAD] * (left_pad + delay), each mixed with its audio embedding."""
        pad_id = self.config.streaming_pad_token_id
        if tokenizer is not None:
            pad_id = tokenizer.token_to_id("[STREAMING_PAD]") or pad_id
        n_prefix = self.config.prefix_length
        token_ids = (self.config.bos_token_id,) + (pad_id,) * (n_prefix - 1)
        if audio_embeds.shape[0] < n_prefix:
            raise ValueError(
                f"Audio yields {audio_embeds.shape[0]} positions, prompt needs {n_prefix}",
            )
        text_embeds = self.language_model.embed(mx.array(token_ids))
        embeddings = (text_embeds + audio_embeds[:n_prefix])[None]
        return Prompt(token_ids=token_ids, embeddings=embeddings)

    def step_embedding(self, token: int, step: int, audio_embeds: mx.array) -> mx.array | None:
        """Token embedding plus the audio embedding at prefix + step; None once audio is exhausted."""
        position = self.config.prefix_length + step
        if position >= audio_embeds.shape[0]:
            return None
        token_embed = self.language_model.embed(mx.array([token]))
        return (token_embed + audio_embeds[position])[None]

    def decode(self, embeddings: mx.array, cache: list[KVCache]) -> mx.array:
        return self.language_model(embeddings, self._t_cond, cache)

    def make_cache(self, audio_embeds: mx.array | None = None) -> list[KVCache]:
        return make_kv_caches(self.config.n_layers, max_size=self.config.decoder_window)

    def sanitize_rules(self) -> WeightRules:
        return WeightRules()
