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
Wav2Vec2 with a CTC head (HuggingFace Wav2Vec2ForCTC checkpoints).

Architecture:
- Feature encoder: strided Conv1d stack over the normalized raw waveform
- Feature projection: LayerNorm + Linear
- Positional conv embedding (weight norm fused at load time)
- Transformer encoder, post-norm or stable (pre-norm) layer norm
- lm_head: per-frame vocabulary logits
"""

from __future__ import annotations

import mlx.core as mx
import mlx.nn as nn

from ..attention import Attention
from ..audio import FeatureConfig
from ..config import Wav2Vec2Config
from ..layers import FeatureEncoder, FeedForward, PositionalConvEmbedding
from ..weights import WeightRule, WeightRules, transpose_conv


class FeatureProjection(nn.Module):
    """Project conv features to transformer dimension."""

    def __init__(self, config: Wav2Vec2Config):
        super().__init__()
        self.layer_norm = nn.LayerNorm(config.conv_dim[-1], eps=config.layer_norm_eps)
        self.projection = nn.Linear(config.conv_dim[-1], config.hidden_size)

    def __call__(self, x: mx.array) -> mx.array:
        return self.projection(self.layer_norm(x))


class Wav2Vec2EncoderLayer(nn.Module):
    """Transformer encoder layer, post-norm or stable (pre-norm)."""

    def __init__(self, config: Wav2Vec2Config):
        super().__init__()
        self.stable_layer_norm = config.do_stable_layer_norm
        self.attention = Attention(
            config.hidden_size,
            config.num_attention_heads,
            q_bias=True,
            k_bias=True,
            v_bias=True,
            o_bias=True,
            out_name="out_proj",
            scale_queries_before_dot=True,
        )
        self.layer_norm = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_eps)
        self.feed_forward = FeedForward(
            config.hidden_size,
            config.intermediate_size,
            activation=config.hidden_act,
            names=("intermediate_dense", "output_dense"),
        )
        self.final_layer_norm = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_eps)

    def __call__(self, x: mx.array) -> mx.array:
        if self.stable_layer_norm:
            x = x + self.attention(self.layer_norm(x))
            return x + self.feed_forward(self.final_layer_norm(x))

        x = self.layer_norm(x + self.attention(x))
        x = x + self.feed_forward(x)
        return self.final_layer_norm(x)


class Wav2Vec2Encoder(nn.Module):
    def __init__(self, config: Wav2Vec2Config):
        super().__init__()
        self.stable_layer_norm = config.do_stable_layer_norm
        self.pos_conv_embed = PositionalConvEmbedding(
            config.hidden_size,
            kernel_size=config.num_conv_pos_embeddings,
            groups=config.num_conv_pos_embedding_groups,
        )
        self.layer_norm = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_eps)
        self.layers = [Wav2Vec2EncoderLayer(config) for _ in range(config.num_hidden_layers)]

    def __call__(self, x: mx.array) -> mx.array:
        x = x + self.pos_conv_embed(x)
        if not self.stable_layer_norm:
            x = self.layer_norm(x)
        for layer in self.layers:
            x = layer(x)
        if self.stable_layer_norm:
            x = self.layer_norm(x)
        return x


class Wav2Vec2ForCTC(nn.Module):
    """
    Wav2Vec2 encoder + lm_head for greedy CTC transcription.

    Input is the zero-mean/unit-variance waveform at 16 kHz; each output
    frame covers config.downsample_factor samples.
    """

    model_type = "wav2vec2"
    is_ctc = True

    def __init__(self, config: Wav2Vec2Config | None = None):
        super().__init__()
        self.config = config or Wav2Vec2Config()
        self.blank_id = self.config.pad_token_id
        self.feature_extractor = FeatureEncoder(
            self.config.conv_dim,
            self.config.conv_kernel,
            self.config.conv_stride,
            conv_bias=self.config.conv_bias,
            feat_extract_norm=self.config.feat_extract_norm,
        )
        self.feature_projection = FeatureProjection(self.config)
        self.encoder = Wav2Vec2Encoder(self.config)
        self.lm_head = nn.Linear(self.config.hidden_size, self.config.vocab_size)

    @property
    def feature_config(self) -> FeatureConfig:
        return FeatureConfig(framing="none", use_mel=False, normalize_waveform=True)

    def encode(self, features: mx.array) -> mx.array:
        """
        Args:
            features: Normalized waveform, shape (samples,) or (batch, samples)

        Returns:
            Encoder states, shape (batch, frames, hidden_size)
        """
        if features.ndim == 1:
            features = features[None]
        x = self.feature_extractor(features)
        x = self.feature_projection(x)
        return self.encoder(x)

    def ctc_logits(self, features: mx.array) -> mx.array:
        return self.lm_head(self.encode(features))

    def __call__(self, features: mx.array) -> mx.array:
        return self.ctc_logits(features)

    def sanitize_rules(self) -> WeightRules:
        return WeightRules(
            rename=(WeightRule(r"^wav2vec2\.", rename=""),),
            fuse_weight_norm=True,
            drop=(r"^quantizer\.", r"^project_", r"^masked_spec_embed$", r"num_batches_tracked$"),
            transforms=(WeightRule(r"conv\.weight$", transform=transpose_conv),),
        )
