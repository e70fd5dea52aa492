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
Voxtral: Whisper-style audio tower + projector + Llama decoder.

30 s of audio becomes 1500 encoder frames; every `projector_stack`
consecutive frames are concatenated and projected into one decoder
embedding. Those embeddings replace the [AUDIO] placeholders of a chat
prompt, and the decoder generates the transcript autoregressively.
"""

from __future__ import annotations

import logging

import mlx.core as mx
import mlx.nn as nn

from ..attention import Attention
from ..audio import FeatureConfig
from ..config import VoxtralAudioConfig, VoxtralConfig, VoxtralTextConfig
from ..kv_cache import KVCache, make_kv_caches
from ..layers import SwiGLU
from ..weights import WeightRule, WeightRules, transpose_conv_if_ambiguous
from .base import Prompt

logger = logging.getLogger(__name__)

PROMPT_PREFIX = "<|user|>\n"
PROMPT_SUFFIX = "\nPlease transcribe this audio into text<|assistant|>\n"


# =============================================================================
# Audio tower
# =============================================================================


class VoxtralEncoderLayer(nn.Module):
    def __init__(self, config: VoxtralAudioConfig):
        super().__init__()
        dims = config.hidden_size
        self.self_attn = Attention(
            dims,
            config.num_attention_heads,
            q_bias=True,
            k_bias=False,
            v_bias=True,
            o_bias=True,
            out_name="out_proj",
            scale_queries_before_dot=True,
        )
        self.self_attn_layer_norm = nn.LayerNorm(dims, eps=config.layer_norm_eps)
        self.fc1 = nn.Linear(dims, config.intermediate_size)
        self.fc2 = nn.Linear(config.intermediate_size, dims)
        self.final_layer_norm = nn.LayerNorm(dims, eps=config.layer_norm_eps)

    def __call__(self, x: mx.array) -> mx.array:
        x = x + self.self_attn(self.self_attn_layer_norm(x))
        return x + self.fc2(nn.gelu(self.fc1(self.final_layer_norm(x))))


class VoxtralAudioEncoder(nn.Module):
    """Whisper encoder: two convs, learned positions, pre-norm layers."""

    def __init__(self, config: VoxtralAudioConfig):
        super().__init__()
        dims = config.hidden_size
        self.conv1 = nn.Conv1d(config.num_mel_bins, dims, kernel_size=3, padding=1)
        self.conv2 = nn.Conv1d(dims, dims, kernel_size=3, stride=2, padding=1)
        self.embed_positions = nn.Embedding(config.max_source_positions, dims)
        self.layers = [VoxtralEncoderLayer(config) for _ in range(config.num_hidden_layers)]
        self.layer_norm = nn.LayerNorm(dims, eps=config.layer_norm_eps)

    def __call__(self, mel: mx.array) -> mx.array:
        """
        Args:
            mel: Log-mel frames, shape (batch, frames, n_mels)

        Returns:
            Encoder states, shape (batch, frames // 2, hidden_size)
        """
        x = nn.gelu(self.conv1(mel))
        x = nn.gelu(self.conv2(x))
        n_ctx = x.shape[1]
        if n_ctx > self.embed_positions.weight.shape[0]:
            raise ValueError(
                f"Audio too long: {n_ctx} encoder frames, "
                f"max {self.embed_positions.weight.shape[0]}",
            )
        x = x + self.embed_positions.weight[:n_ctx]
        for layer in self.layers:
            x = layer(x)
        return self.layer_norm(x)


class VoxtralProjector(nn.Module):
    def __init__(self, in_dims: int, out_dims: int):
        super().__init__()
        self.linear_1 = nn.Linear(in_dims, out_dims, bias=False)
        self.linear_2 = nn.Linear(out_dims, out_dims, bias=False)

    def __call__(self, x: mx.array) -> mx.array:
        return self.linear_2(nn.gelu(self.linear_1(x)))


# =============================================================================
# Llama decoder
# =============================================================================


class LlamaDecoderLayer(nn.Module):
    def __init__(self, config: VoxtralTextConfig):
        super().__init__()
        self.self_attn = Attention(
            config.hidden_size,
            config.num_attention_heads,
            config.num_key_value_heads,
            head_dim=config.head_dim,
            rope="traditional" if config.rope_traditional else "rotate_half",
            rope_theta=config.rope_theta,
            causal=True,
        )
        self.mlp = SwiGLU(config.hidden_size, config.intermediate_size)
        self.input_layernorm = nn.RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.post_attention_layernorm = nn.RMSNorm(config.hidden_size, eps=config.rms_norm_eps)

    def __call__(self, x: mx.array, cache: KVCache | None = None) -> mx.array:
        h = x + self.self_attn(self.input_layernorm(x), cache=cache)
        return h + self.mlp(self.post_attention_layernorm(h))


class LlamaModel(nn.Module):
    def __init__(self, config: VoxtralTextConfig):
        super().__init__()
        self.embed_tokens = nn.Embedding(config.vocab_size, config.hidden_size)
        self.layers = [LlamaDecoderLayer(config) for _ in range(config.num_hidden_layers)]
        self.norm = nn.RMSNorm(config.hidden_size, eps=config.rms_norm_eps)

    def __call__(self, embeddings: mx.array, cache: list[KVCache] | None = None) -> mx.array:
        h = embeddings
        for i, layer in enumerate(self.layers):
            h = layer(h, cache[i] if cache is not None else None)
        return self.norm(h)


class LlamaForCausalLM(nn.Module):
    def __init__(self, config: VoxtralTextConfig):
        super().__init__()
        self.tie_word_embeddings = config.tie_word_embeddings
        self.model = LlamaModel(config)
        if not config.tie_word_embeddings:
            self.lm_head = nn.Linear(config.hidden_size, config.vocab_size, bias=False)

    def embed(self, token_ids: mx.array) -> mx.array:
        return self.model.embed_tokens(token_ids)

    def __call__(self, embeddings: mx.array, cache: list[KVCache] | None = None) -> mx.array:
        h = self.model(embeddings, cache)
        if self.tie_word_embeddings:
            return self.model.embed_tokens.as_linear(h)
        return self.lm_head(h)


# =============================================================================
# Full model
# =============================================================================


class VoxtralModel(nn.Module):
    """Voxtral speech-to-text: audio tower, projector, Llama decoder."""

    model_type = "voxtral"
    is_ctc = False

    def __init__(self, config: VoxtralConfig):
        super().__init__()
        self.config = config
        self.audio_tower = VoxtralAudioEncoder(config.audio)
        self.multi_modal_projector = VoxtralProjector(config.projector_input_dim, config.text.hidden_size)
        self.language_model = LlamaForCausalLM(config.text)
        self.eos_token_ids = frozenset({config.text.eos_token_id})

    @property
    def feature_config(self) -> FeatureConfig:
        return FeatureConfig(
            n_mels=self.config.audio.num_mel_bins,
            framing="fixed",
            layout="frames_first",
            drop_last_frame=True,
            drop_nyquist_bin=True,
        )

    def encode(self, features: mx.array) -> mx.array:
        """
        Log-mel frames -> decoder-space audio embeddings.

        Args:
            features: shape (frames, n_mels) or (1, frames, n_mels)

        Returns:
            Audio embeddings, shape (n_audio, text_hidden_size)
        """
        if features.ndim == 2:
            features = features[None]
        x = self.audio_tower(features)
        stack = self.config.projector_stack
        n_frames = (x.shape[1] // stack) * stack
        x = x[:, :n_frames].reshape(-1, self.config.projector_input_dim)
        return self.multi_modal_projector(x)

    def build_prompt(self, audio_embeds: mx.array, tokenizer) -> Prompt:
        """
        Chat prompt with one [AUDIO] placeholder per audio embedding.

        The placeholder embeddings are replaced by the audio embeddings, so
        the decoder sees prefix text, then audio, then the instruction.
        """
        prefix = tokenizer.encode(PROMPT_PREFIX, add_bos=True)
        suffix = tokenizer.encode(PROMPT_SUFFIX)
        n_audio = audio_embeds.shape[0]
        token_ids = tuple(prefix) + (self.config.audio_token_id,) * n_audio + tuple(suffix)

        embed = self.language_model.embed
        parts = [embed(mx.array(prefix)), audio_embeds.astype(self._embedding_dtype)]
        if suffix:
            parts.append(embed(mx.array(suffix)))
        embeddings = mx.concatenate(parts, axis=0)[None]
        return Prompt(token_ids=token_ids, embeddings=embeddings)

    def step_embedding(self, token: int, step: int, audio_embeds: mx.array) -> mx.array | None:
        return self.language_model.embed(mx.array([[token]]))

    def decode(self, embeddings: mx.array, cache: list[KVCache]) -> mx.array:
        return self.language_model(embeddings, cache)

    def make_cache(self, audio_embeds: mx.array | None = None) -> list[KVCache]:
        return make_kv_caches(self.config.text.num_hidden_layers)

    @property
    def _embedding_dtype(self) -> mx.Dtype:
        embed_tokens = self.language_model.model.embed_tokens
        return getattr(embed_tokens, "scales", embed_tokens.weight).dtype

    def sanitize_rules(self) -> WeightRules:
        return WeightRules(
            drop=(r"rotary_emb\.inv_freq$",),
            transforms=(
                WeightRule(r"audio_tower\.conv[12]\.weight$", transform=transpose_conv_if_ambiguous),
            ),
        )
