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
Building blocks shared by the stt_mlx model families.

Feed-forward:  SwiGLU, FeedForward
Convolution:   CausalConv1d, ConformerConvModule, ConvSubsampler,
               FeatureEncoder (raw-waveform conv stack),
               PositionalConvEmbedding
Conditioning:  AdaptiveNorm, time_embedding

All sequence tensors are (batch, time, channels).
"""

from __future__ import annotations

import math
from collections.abc import Callable

import mlx.core as mx
import mlx.nn as nn

ACTIVATIONS: dict[str, Callable[[mx.array], mx.array]] = {
    "gelu": nn.gelu,
    "relu": nn.relu,
    "silu": nn.silu,
}


def get_activation(name: str) -> Callable[[mx.array], mx.array]:
    try:
        return ACTIVATIONS[name]
    except KeyError:
        raise ValueError(f"Unsupported activation: {name}") from None


class SwiGLU(nn.Module):
    """down_proj(silu(gate_proj(x)) * up_proj(x))"""

    def __init__(
        self,
        dims: int,
        hidden_dims: int,
        gate_bias: bool = False,
        up_bias: bool = False,
        down_bias: bool = False,
    ):
        super().__init__()
        self.gate_proj = nn.Linear(dims, hidden_dims, bias=gate_bias)
        self.up_proj = nn.Linear(dims, hidden_dims, bias=up_bias)
        self.down_proj = nn.Linear(hidden_dims, dims, bias=down_bias)

    def __call__(self, x: mx.array) -> mx.array:
        return self.down_proj(nn.silu(self.gate_proj(x)) * self.up_proj(x))


class FeedForward(nn.Module):
    """
    Two-layer MLP: out(act(in(x))).

    Layer names follow the checkpoint being loaded, e.g.
    ("fc1", "fc2"), ("linear1", "linear2") or
    ("intermediate_dense", "output_dense").
    """

    def __init__(
        self,
        dims: int,
        hidden_dims: int,
        activation: str = "gelu",
        bias: bool = True,
        names: tuple[str, str] = ("fc1", "fc2"),
    ):
        super().__init__()
        self._names = names
        self._activation = get_activation(activation)
        setattr(self, names[0], nn.Linear(dims, hidden_dims, bias=bias))
        setattr(self, names[1], nn.Linear(hidden_dims, dims, bias=bias))

    def __call__(self, x: mx.array) -> mx.array:
        x = self._activation(getattr(self, self._names[0])(x))
        return getattr(self, self._names[1])(x)


class CausalConv1d(nn.Module):
    """
    Left-padded 1D convolution.

    Pads kernel_size - stride zeros on the left so output frame t depends
    only on input frames <= t * stride. Weight is stored in MLX layout
    (out_channels, kernel_size, in_channels).
    """

    def __init__(self, in_channels: int, out_channels: int, kernel_size: int, stride: int = 1):
        super().__init__()
        self.stride = stride
        self.kernel_size = kernel_size
        self.padding = kernel_size - stride
        scale = math.sqrt(1.0 / (in_channels * kernel_size))
        self.weight = mx.random.uniform(
            low=-scale, high=scale, shape=(out_channels, kernel_size, in_channels),
        )
        self.bias = mx.zeros((out_channels,))

    def __call__(self, x: mx.array) -> mx.array:
        if self.padding > 0:
            x = mx.pad(x, [(0, 0), (self.padding, 0), (0, 0)])
        return mx.conv1d(x, self.weight, stride=self.stride) + self.bias


class ConformerConvModule(nn.Module):
    """
    Conformer convolution module.

    pointwise_conv1 (2C) -> GLU -> pad -> depthwise_conv (groups=C)
    -> BatchNorm -> activation -> pointwise_conv2

    Symmetric padding ((k-1)//2, k-1-(k-1)//2) by default; causal=True
    pads k-1 on the left only.
    """

    def __init__(
        self,
        channels: int,
        kernel_size: int,
        activation: str = "silu",
        bias: bool = False,
        norm_momentum: float = 0.1,
        norm_eps: float = 1e-5,
        causal: bool = False,
    ):
        super().__init__()
        self.kernel_size = kernel_size
        self.causal = causal
        self._activation = get_activation(activation)

        self.pointwise_conv1 = nn.Conv1d(channels, 2 * channels, kernel_size=1, bias=bias)
        self.depthwise_conv = nn.Conv1d(
            channels, channels, kernel_size=kernel_size, groups=channels, bias=bias,
        )
        self.norm = nn.BatchNorm(channels, eps=norm_eps, momentum=norm_momentum)
        self.pointwise_conv2 = nn.Conv1d(channels, channels, kernel_size=1, bias=bias)

    def __call__(self, x: mx.array) -> mx.array:
        h = self.pointwise_conv1(x)
        half = h.shape[-1] // 2
        h = h[..., :half] * mx.sigmoid(h[..., half:])

        if self.causal:
            pad_left, pad_right = self.kernel_size - 1, 0
        else:
            pad_left = (self.kernel_size - 1) // 2
            pad_right = self.kernel_size - 1 - pad_left
        h = mx.pad(h, [(0, 0), (pad_left, pad_right), (0, 0)])

        h = self.depthwise_conv(h)
        h = self.norm(h)
        h = self._activation(h)
        return self.pointwise_conv2(h)


class ConvSubsampler(nn.Module):
    """
    Conformer front-end: dense_0 -> relu -> conv_0 -> relu -> conv_1 -> relu -> dense_1.

    Each unpadded strided conv shortens the sequence to
    (T - kernel_size) // stride + 1.
    """

    def __init__(
        self,
        n_mels: int,
        dims: int,
        channels: int,
        kernel_size: int = 5,
        stride: int = 2,
    ):
        super().__init__()
        self.dense_0 = nn.Linear(n_mels, dims)
        self.conv_0 = nn.Conv1d(dims, dims, kernel_size=kernel_size, stride=stride)
        self.conv_1 = nn.Conv1d(dims, channels, kernel_size=kernel_size, stride=stride)
        self.dense_1 = nn.Linear(channels, dims)

    def __call__(self, x: mx.array) -> mx.array:
        x = nn.relu(self.dense_0(x))
        x = nn.relu(self.conv_0(x))
        x = nn.relu(self.conv_1(x))
        return self.dense_1(x)


class AdaptiveNorm(nn.Module):
    """
    Time-conditioned scale for the decoder FFN input.

    ada(t) = linear_out(gelu(linear_in(t))), applied as ffn_norm(h) * (1 + ada(t)).
    """

    def __init__(self, dims: int, cond_dims: int = 32):
        super().__init__()
        self.linear_in = nn.Linear(dims, cond_dims, bias=False)
        self.linear_out = nn.Linear(cond_dims, dims, bias=False)

    def __call__(self, t_cond: mx.array) -> mx.array:
        return self.linear_out(nn.gelu(self.linear_in(t_cond)))


def time_embedding(t: float, dims: int, theta: float = 10000.0) -> mx.array:
    """
    Sinusoidal embedding of a scalar t, shape (dims,).

    cat[cos(t * f), sin(t * f)] with f = exp(-log(theta) * arange(half) / half).
    """
    half = dims // 2
    freqs = mx.exp(-math.log(theta) * mx.arange(half, dtype=mx.float32) / half)
    args = t * freqs
    return mx.concatenate([mx.cos(args), mx.sin(args)], axis=-1)


class PositionalConvEmbedding(nn.Module):
    """Positional encoding using grouped convolution.

    The conv weight arrives already reconstructed from its weight-norm
    (g, v) pair at load time. Symmetric K // 2 padding yields one extra
    frame for even K, which is trimmed.
    """

    def __init__(self, dims: int, kernel_size: int = 128, groups: int = 16):
        super().__init__()
        self.kernel_size = kernel_size
        self.conv = nn.Conv1d(
            dims, dims, kernel_size=kernel_size, padding=kernel_size // 2, groups=groups,
        )

    def __call__(self, x: mx.array) -> mx.array:
        """Apply positional convolution.

        Args:
            x: Input (batch, seq_len, dims)

        Returns:
            Output (batch, seq_len, dims)
        """
        out = self.conv(x)
        if self.kernel_size % 2 == 0:
            out = out[:, :-1, :]
        return nn.gelu(out)


class FeatureEncoderLayer(nn.Module):
    """Single conv layer in the raw-waveform feature encoder."""

    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        kernel_size: int,
        stride: int,
        bias: bool = False,
        norm: str | None = None,
    ):
        super().__init__()
        self.conv = nn.Conv1d(
            in_channels, out_channels, kernel_size=kernel_size, stride=stride, bias=bias,
        )
        if norm == "group":
            # One group per channel: each channel normalized over time
            self.layer_norm = nn.GroupNorm(out_channels, out_channels, pytorch_compatible=True)
        elif norm == "layer":
            self.layer_norm = nn.LayerNorm(out_channels)
        self._norm = norm

    def __call__(self, x: mx.array) -> mx.array:
        x = self.conv(x)
        if self._norm is not None:
            x = self.layer_norm(x)
        return nn.gelu(x)


class FeatureEncoder(nn.Module):
    """
    Raw waveform -> frame features.

    feat_extract_norm "group": group norm on the first layer only.
    feat_extract_norm "layer": layer norm on every layer.
    """

    def __init__(
        self,
        conv_dim: tuple[int, ...],
        conv_kernel: tuple[int, ...],
        conv_stride: tuple[int, ...],
        conv_bias: bool = False,
        feat_extract_norm: str = "group",
    ):
        super().__init__()
        self.conv_layers = []
        in_ch = 1
        for i, (out_ch, kernel, stride) in enumerate(zip(conv_dim, conv_kernel, conv_stride)):
            if feat_extract_norm == "layer":
                norm = "layer"
            else:
                norm = "group" if i == 0 else None
            self.conv_layers.append(
                FeatureEncoderLayer(in_ch, out_ch, kernel, stride, bias=conv_bias, norm=norm),
            )
            in_ch = out_ch

    def __call__(self, x: mx.array) -> mx.array:
        """
        Args:
            x: Raw audio (batch, samples) or (batch, samples, 1)

        Returns:
            Features (batch, frames, conv_dim[-1])
        """
        if x.ndim == 2:
            x = x[:, :, None]
        for layer in self.conv_layers:
            x = layer(x)
        return x
