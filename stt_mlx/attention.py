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
Attention modules for stt_mlx.

Implements:
- Rotary position embeddings (fused mx.fast.rope, or explicit cos/sin tables)
- Additive causal masks with optional sliding-window look-back
- Configurable multi-head / grouped-query attention over a KV cache
- Explicit matmul attention for the conformer encoder
"""

from __future__ import annotations

import mlx.core as mx
import mlx.nn as nn

ROPE_STYLES = (None, "traditional", "rotate_half")


def apply_rope(
    x: mx.array,
    dims: int,
    base: float = 10000.0,
    traditional: bool = False,
    offset: int = 0,
) -> mx.array:
    """
    Rotate x, shape (batch, heads, seq_len, head_dim), by its positions.

    traditional=True rotates interleaved pairs (x0, x1), (x2, x3), ...
    traditional=False rotates the two halves of the head dimension.
    Positions start at offset.
    """
    return mx.fast.rope(x, dims, traditional=traditional, base=base, scale=1.0, offset=offset)


def rotate_half(x: mx.array) -> mx.array:
    half = x.shape[-1] // 2
    return mx.concatenate([-x[..., half:], x[..., :half]], axis=-1)


def apply_rotary_pos_emb(
    q: mx.array,
    k: mx.array,
    cos: mx.array,
    sin: mx.array,
) -> tuple[mx.array, mx.array]:
    """Rotate-half RoPE with precomputed cos/sin tables."""
    return (q * cos) + (rotate_half(q) * sin), (k * cos) + (rotate_half(k) * sin)


class RotaryEmbedding(nn.Module):
    """
    Explicit cos/sin rotary tables.

    Used by encoders whose checkpoints ship an inv_freq buffer. The buffer
    is recomputed here (and dropped from the checkpoint) so it never
    becomes a loadable parameter.
    """

    def __init__(self, dim: int, base: float = 10000.0):
        super().__init__()
        self.dim = dim
        self.base = base
        self._inv_freq = 1.0 / (base ** (mx.arange(0, dim, 2, dtype=mx.float32) / dim))

    def __call__(self, seq_len: int, offset: int = 0) -> tuple[mx.array, mx.array]:
        """
        Returns:
            (cos, sin), each shape (1, seq_len, 1, dim) for (B, L, H, D) inputs
        """
        positions = mx.arange(offset, offset + seq_len, dtype=mx.float32)
        freqs = positions[:, None] * self._inv_freq[None, :]
        emb = mx.concatenate([freqs, freqs], axis=-1)
        return mx.cos(emb)[None, :, None, :], mx.sin(emb)[None, :, None, :]


def repeat_kv(x: mx.array, n_rep: int) -> mx.array:
    """Broadcast KV heads for grouped-query attention, x shape (B, H_kv, T, D)."""
    if n_rep == 1:
        return x
    return mx.repeat(x, n_rep, axis=1)


def create_causal_mask(
    n_queries: int,
    offset: int = 0,
    window: int | None = None,
    n_keys: int | None = None,
    dtype: mx.Dtype = mx.float32,
) -> mx.array:
    """
    Create an additive causal attention mask.

    Queries sit at absolute positions offset .. offset + n_queries - 1.
    Keys are the last n_keys positions ending at the final query (defaults
    to every position from 0), which covers both unbounded and rotating
    caches. With window set, each query sees only its last `window` keys,
    itself included.

    Returns:
        Mask of shape (n_queries, n_keys), where:
        - 0.0 = attend
        - -inf = mask out

    Example:
        n_queries=4, window=2:
        [[   0,-inf,-inf,-inf],
         [   0,   0,-inf,-inf],
         [-inf,   0,   0,-inf],
         [-inf,-inf,   0,   0]]
    """
    end = offset + n_queries
    if n_keys is None:
        n_keys = end
    query_pos = mx.arange(offset, end)[:, None]
    key_pos = mx.arange(end - n_keys, end)[None, :]
    allowed = key_pos <= query_pos
    if window is not None:
        allowed = mx.logical_and(allowed, (query_pos - key_pos) < window)
    return mx.where(allowed, mx.array(0.0, dtype=dtype), mx.array(float("-inf"), dtype=dtype))


class Attention(nn.Module):
    """
    Multi-head attention with grouped KV heads.

    Covers the encoder and decoder attention of every model family:
    - per-projection biases (q, k, v, output)
    - output projection named "o_proj" or "out_proj" to match checkpoints
    - RoPE: none, interleaved ("traditional") or "rotate_half"
    - query scaling before the dot product (kernel scale 1.0) or in-kernel
    - causal / sliding-window masking built from the cache offset
    """

    def __init__(
        self,
        dims: int,
        n_heads: int,
        n_kv_heads: int | None = None,
        head_dim: int | None = None,
        q_bias: bool = False,
        k_bias: bool = False,
        v_bias: bool = False,
        o_bias: bool = False,
        out_name: str = "o_proj",
        rope: str | None = None,
        rope_theta: float = 10000.0,
        scale_queries_before_dot: bool = False,
        causal: bool = False,
        window: int | None = None,
    ):
        super().__init__()
        if rope not in ROPE_STYLES:
            raise ValueError(f"rope must be one of {ROPE_STYLES}, got {rope!r}")
        self.n_heads = n_heads
        self.n_kv_heads = n_kv_heads or n_heads
        self.head_dim = head_dim or dims // n_heads
        self.scale = self.head_dim ** -0.5
        self.rope = rope
        self.rope_theta = rope_theta
        self.scale_queries_before_dot = scale_queries_before_dot
        self.causal = causal
        self.window = window
        self._out_name = out_name

        self.q_proj = nn.Linear(dims, self.n_heads * self.head_dim, bias=q_bias)
        self.k_proj = nn.Linear(dims, self.n_kv_heads * self.head_dim, bias=k_bias)
        self.v_proj = nn.Linear(dims, self.n_kv_heads * self.head_dim, bias=v_bias)
        setattr(self, out_name, nn.Linear(self.n_heads * self.head_dim, dims, bias=o_bias))

    def __call__(
        self,
        x: mx.array,
        mask: mx.array | None = None,
        cache=None,
    ) -> mx.array:
        """
        Args:
            x: Input, shape (batch, seq_len, dims)
            mask: Explicit additive mask; overrides causal/window masking
            cache: KVCache or RotatingKVCache, updated in place

        Returns:
            Output, shape (batch, seq_len, dims)
        """
        B, L, _ = x.shape

        q = self.q_proj(x).reshape(B, L, self.n_heads, self.head_dim).transpose(0, 2, 1, 3)
        k = self.k_proj(x).reshape(B, L, self.n_kv_heads, self.head_dim).transpose(0, 2, 1, 3)
        v = self.v_proj(x).reshape(B, L, self.n_kv_heads, self.head_dim).transpose(0, 2, 1, 3)

        offset = cache.offset if cache is not None else 0
        if self.rope is not None:
            traditional = self.rope == "traditional"
            q = apply_rope(q, self.head_dim, self.rope_theta, traditional, offset)
            k = apply_rope(k, self.head_dim, self.rope_theta, traditional, offset)

        if cache is not None:
            k, v = cache.update(k, v)

        if mask is None and self.causal:
            n_keys = k.shape[2]
            # A single query attends to every retained key unless a window cuts it
            if L > 1 or (self.window is not None and n_keys > self.window):
                mask = create_causal_mask(L, offset, self.window, n_keys, dtype=q.dtype)

        scale = self.scale
        if self.scale_queries_before_dot:
            q = q * self.scale
            scale = 1.0

        out = mx.fast.scaled_dot_product_attention(q, k, v, scale=scale, mask=mask)
        out = out.transpose(0, 2, 1, 3).reshape(B, L, -1)
        return getattr(self, self._out_name)(out)


class MatmulAttention(nn.Module):
    """
    Explicit softmax attention for the conformer encoder.

    Rotary tables are applied in (B, L, H, D) layout before the heads are
    transposed; KV heads are repeated, and scaling happens after the
    q @ k^T product.
    """

    def __init__(
        self,
        dims: int,
        n_heads: int,
        n_kv_heads: int | None = None,
        bias: bool = False,
    ):
        super().__init__()
        self.n_heads = n_heads
        self.n_kv_heads = n_kv_heads or n_heads
        self.head_dim = dims // n_heads
        self.scale = self.head_dim ** -0.5

        self.q_proj = nn.Linear(dims, self.n_heads * self.head_dim, bias=bias)
        self.k_proj = nn.Linear(dims, self.n_kv_heads * self.head_dim, bias=bias)
        self.v_proj = nn.Linear(dims, self.n_kv_heads * self.head_dim, bias=bias)
        self.o_proj = nn.Linear(self.n_heads * self.head_dim, dims, bias=bias)

    def __call__(
        self,
        x: mx.array,
        position_embeddings: tuple[mx.array, mx.array] | None = None,
        mask: mx.array | None = None,
    ) -> mx.array:
        B, L, _ = x.shape
        q = self.q_proj(x).reshape(B, L, self.n_heads, self.head_dim)
        k = self.k_proj(x).reshape(B, L, self.n_kv_heads, self.head_dim)
        v = self.v_proj(x).reshape(B, L, self.n_kv_heads, self.head_dim)

        if position_embeddings is not None:
            cos, sin = position_embeddings
            q, k = apply_rotary_pos_emb(q, k, cos, sin)

        q = q.transpose(0, 2, 1, 3)
        k = repeat_kv(k.transpose(0, 2, 1, 3), self.n_heads // self.n_kv_heads)
        v = repeat_kv(v.transpose(0, 2, 1, 3), self.n_heads // self.n_kv_heads)

        weights = (q @ k.transpose(0, 1, 3, 2)) * self.scale
        if mask is not None:
            weights = weights + mask
        weights = mx.softmax(weights.astype(mx.float32), axis=-1).astype(q.dtype)

        out = (weights @ v).transpose(0, 2, 1, 3).reshape(B, L, -1)
        return self.o_proj(out)
