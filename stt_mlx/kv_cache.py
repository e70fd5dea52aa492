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
KV-Cache implementations for stt_mlx decoders.

Provides:
- Unbounded cache that grows with every token
- Rotating cache that keeps the most recent max_size entries
- Cross-attention cache that also pins encoder keys/values

All hold keys/values shaped (batch, kv_heads, seq_len, head_dim) for a
single layer and report `offset`, the total number of tokens seen, which
drives the position phase (RoPE or learned) of the next call. A cache
belongs to one generation session and is never shared between sessions.
"""

from __future__ import annotations

import mlx.core as mx


class KVCache:
    """
    Unbounded per-layer KV cache.

    New keys/values are concatenated on each update.
    """

    def __init__(self):
        self.keys: mx.array | None = None
        self.values: mx.array | None = None
        self.offset = 0

    def update(self, keys: mx.array, values: mx.array) -> tuple[mx.array, mx.array]:
        """Append keys/values and return the full history."""
        if self.keys is None:
            self.keys, self.values = keys, values
        else:
            self.keys = mx.concatenate([self.keys, keys], axis=2)
            self.values = mx.concatenate([self.values, values], axis=2)
        self.offset += keys.shape[2]
        return self.keys, self.values

    @property
    def state(self) -> tuple[mx.array | None, mx.array | None]:
        return self.keys, self.values

    @property
    def is_empty(self) -> bool:
        return self.keys is None

    @property
    def nbytes(self) -> int:
        if self.keys is None:
            return 0
        return self.keys.nbytes + self.values.nbytes

    def reset(self):
        """Clear all cached values."""
        self.keys = None
        self.values = None
        self.offset = 0


class RotatingKVCache(KVCache):
    """
    Bounded per-layer KV cache.

    Stores at most max_size entries and evicts the oldest first. A
    single-token step returns the retained window, so a decode step never
    attends to more than max_size keys. A multi-token update returns the
    retained history concatenated with the new entries, so a prefill still
    attends to every key of the current call even when the call alone
    exceeds max_size. offset keeps counting every token seen.
    """

    def __init__(self, max_size: int):
        """
        Args:
            max_size: Maximum number of retained entries
        """
        if max_size <= 0:
            raise ValueError(f"max_size must be positive, got {max_size}")
        super().__init__()
        self.max_size = max_size

    def update(self, keys: mx.array, values: mx.array) -> tuple[mx.array, mx.array]:
        if self.keys is None:
            all_keys, all_values = keys, values
        else:
            all_keys = mx.concatenate([self.keys, keys], axis=2)
            all_values = mx.concatenate([self.values, values], axis=2)

        self.keys = all_keys[:, :, -self.max_size:, :]
        self.values = all_values[:, :, -self.max_size:, :]
        self.offset += keys.shape[2]
        if keys.shape[2] == 1:
            return self.keys, self.values
        return all_keys, all_values

    @property
    def length(self) -> int:
        """Number of retained entries (never above max_size)."""
        return 0 if self.keys is None else self.keys.shape[2]


class CrossAttentionCache(KVCache):
    """
    Decoder cache for encoder-decoder attention.

    Grows like KVCache for self-attention and additionally holds the
    encoder states plus the cross-attention keys/values projected from
    them. The cross keys/values are computed on the first decode call and
    reused for every later step of the session.
    """

    def __init__(self, encoder_states: mx.array | None = None):
        super().__init__()
        self.encoder_states = encoder_states
        self.cross_keys: mx.array | None = None
        self.cross_values: mx.array | None = None

    @property
    def nbytes(self) -> int:
        total = super().nbytes
        if self.cross_keys is not None:
            total += self.cross_keys.nbytes + self.cross_values.nbytes
        return total

    def reset(self):
        super().reset()
        self.encoder_states = None
        self.cross_keys = None
        self.cross_values = None


def make_kv_caches(n_layers: int, max_size: int | None = None) -> list[KVCache]:
    """
    Build one cache per decoder layer.

    Args:
        n_layers: Number of decoder layers
        max_size: Rotating window size, or None for unbounded caches
    """
    if max_size is None:
        return [KVCache() for _ in range(n_layers)]
    return [RotatingKVCache(max_size) for _ in range(n_layers)]
