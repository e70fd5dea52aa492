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
LASR conformer encoder with a CTC head.

Log-mel frames (variable length, frames-first) pass through a conv
subsampler, a stack of conformer blocks with rotary self-attention, and a
linear CTC head. Transcripts come from greedy CTC decoding.
"""

from __future__ import annotations

import mlx.core as mx
import mlx.nn as nn

from ..attention import MatmulAttention, RotaryEmbedding
from ..audio import FeatureConfig
from ..config import LasrCTCConfig, LasrEncoderConfig
from ..layers import ConformerConvModule, ConvSubsampler, FeedForward
from ..weights import WeightRule, WeightRules, squeeze, transpose_conv


class LasrConformerBlock(nn.Module):
    """
    Macaron conformer block.

    h = w_ff[0] * x + w_ff[1] * ff1(norm(x))
    h = h + attn(norm(h))
    h = w_conv[0] * h + w_conv[1] * conv(norm(h))
    h = w_ff[0] * h + w_ff[1] * ff2(norm(h))
    out = norm_out(h)
    """

    def __init__(self, config: LasrEncoderConfig):
        super().__init__()
        dims = config.hidden_size
        self._ff_weights = tuple(config.feed_forward_residual_weights)
        self._conv_weights = tuple(config.conv_residual_weights)

        self.feed_forward1 = FeedForward(
            dims, config.intermediate_size, activation=config.hidden_act,
            bias=config.attention_bias, names=("linear1", "linear2"),
        )
        self.self_attn = MatmulAttention(
            dims, config.num_attention_heads, config.num_key_value_heads, bias=config.attention_bias,
        )
        self.conv = ConformerConvModule(
            dims, config.conv_kernel_size, activation=config.hidden_act,
            bias=config.convolution_bias, norm_momentum=config.batch_norm_momentum,
        )
        self.feed_forward2 = FeedForward(
            dims, config.intermediate_size, activation=config.hidden_act,
            bias=config.attention_bias, names=("linear1", "linear2"),
        )

        eps = config.layer_norm_eps
        self.norm_feed_forward1 = nn.LayerNorm(dims, eps=eps)
        self.norm_self_att = nn.LayerNorm(dims, eps=eps)
        self.norm_conv = nn.LayerNorm(dims, eps=eps)
        self.norm_feed_forward2 = nn.LayerNorm(dims, eps=eps)
        self.norm_out = nn.LayerNorm(dims, eps=eps)

    def __call__(
        self,
        x: mx.array,
        position_embeddings: tuple[mx.array, mx.array] | None = None,
        mask: mx.array | None = None,
    ) -> mx.array:
        w_res, w_ff = self._ff_weights
        h = w_res * x + w_ff * self.feed_forward1(self.norm_feed_forward1(x))

        h = h + self.self_attn(self.norm_self_att(h), position_embeddings, mask)

        w_res_conv, w_conv = self._conv_weights
        h = w_res_conv * h + w_conv * self.conv(self.norm_conv(h))

        h = w_res * h + w_ff * self.feed_forward2(self.norm_feed_forward2(h))
        return self.norm_out(h)


class LasrEncoder(nn.Module):
    def __init__(self, config: LasrEncoderConfig):
        super().__init__()
        self.subsampler = ConvSubsampler(
            config.num_mel_bins,
            config.hidden_size,
            config.subsampling_conv_channels,
            kernel_size=config.subsampling_conv_kernel_size,
            stride=config.subsampling_conv_stride,
        )
        self.rotary_emb = RotaryEmbedding(config.head_dim, base=config.rope_theta)
        self.layers = [LasrConformerBlock(config) for _ in range(config.num_hidden_layers)]
        self.out_norm = nn.LayerNorm(config.hidden_size, eps=config.layer_norm_eps)

    def __call__(self, features: mx.array, mask: mx.array | None = None) -> mx.array:
        """
        Args:
            features: Log-mel frames, shape (batch, frames, n_mels)

        Returns:
            Encoder states, shape (batch, subsampled_frames, hidden_size)
        """
        x = self.subsampler(features)
        position_embeddings = self.rotary_emb(x.shape[1])
        for layer in self.layers:
            x = layer(x, position_embeddings, mask)
        return self.out_norm(x)


class LasrCTCModel(nn.Module):
    """Conformer encoder + CTC head."""

    model_type = "lasr_ctc"
    is_ctc = True

    def __init__(self, config: LasrCTCConfig):
        super().__init__()
        self.config = config
        self.blank_id = config.pad_token_id
        self.encoder = LasrEncoder(config.encoder)
        self.ctc_head = nn.Linear(config.encoder.hidden_size, config.vocab_size)

    @property
    def feature_config(self) -> FeatureConfig:
        return FeatureConfig(
            n_mels=self.config.encoder.num_mel_bins,
            framing="none",
            layout="frames_first",
            drop_last_frame=True,
            drop_nyquist_bin=True,
        )

    def encode(self, features: mx.array) -> mx.array:
        if features.ndim == 2:
            features = features[None]
        return self.encoder(features)

    def ctc_logits(self, features: mx.array) -> mx.array:
        """Per-frame vocabulary logits, shape (batch, frames, vocab_size)."""
        return self.ctc_head(self.encode(features))

    def __call__(self, features: mx.array) -> mx.array:
        return self.ctc_logits(features)

    def sanitize_rules(self) -> WeightRules:
        return WeightRules(
            drop=(r"rotary_emb\.inv_freq$", r"num_batches_tracked$"),
            transforms=(
                # CTC head ships as a kernel-1 conv: (vocab, hidden, 1) -> (vocab, hidden)
                WeightRule(r"^ctc_head\.(weight|bias)$", transform=squeeze),
                WeightRule(r"\.weight$", transform=transpose_conv),
            ),
        )
