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
Tests for stt_mlx attention module.

Tests:
- Causal and sliding-window masks
- Rotary embeddings (fused and explicit tables)
- Attention with KV caches matches the full-sequence pass
- MatmulAttention shapes with grouped KV heads
"""

import mlx.core as mx
import numpy as np
import pytest

NEG_INF = float("-inf")


class TestCausalMask:
    """Tests for create_causal_mask."""

    def test_causal(self):
        """Test plain lower-triangular mask."""
        from stt_mlx.attention import create_causal_mask

        mask = np.array(create_causal_mask(3))
        expected = np.array([
            [0, NEG_INF, NEG_INF],
            [0, 0, NEG_INF],
            [0, 0, 0],
        ])
        np.testing.assert_array_equal(mask, expected)

    def test_sliding_window(self):
        """Test each query sees only its last `window` keys."""
        from stt_mlx.attention import create_causal_mask

        mask = np.array(create_causal_mask(4, window=2))
        expected = np.array([
            [0, NEG_INF, NEG_INF, NEG_INF],
            [0, 0, NEG_INF, NEG_INF],
            [NEG_INF, 0, 0, NEG_INF],
            [NEG_INF, NEG_INF, 0, 0],
        ])
        np.testing.assert_array_equal(mask, expected)

    def test_offset(self):
        """Test queries after a cached prefix attend to the whole prefix."""
        from stt_mlx.attention import create_causal_mask

        mask = np.array(create_causal_mask(2, offset=3))
        assert mask.shape == (2, 5)
        np.testing.assert_array_equal(mask[0], [0, 0, 0, 0, NEG_INF])
        np.testing.assert_array_equal(mask[1], [0, 0, 0, 0, 0])

    def test_rotating_keys(self):
        """Test n_keys addresses the most recent key positions."""
        from stt_mlx.attention import create_causal_mask

        # Query at position 9, keys at positions 7, 8, 9
        mask = np.array(create_causal_mask(1, offset=9, window=2, n_keys=3))
        np.testing.assert_array_equal(mask, [[NEG_INF, 0, 0]])

    def test_dtype(self):
        """Test the mask takes the requested dtype."""
        from stt_mlx.attention import create_causal_mask

        assert create_causal_mask(4, dtype=mx.float16).dtype == mx.float16


class TestRotary:
    """Tests for rotary position embeddings."""

    def test_table_shapes(self):
        """Test cos/sin tables broadcast over (B, L, H, D)."""
        from stt_mlx.attention import RotaryEmbedding

        cos, sin = RotaryEmbedding(16)(10)
        assert cos.shape == (1, 10, 1, 16)
        assert sin.shape == (1, 10, 1, 16)
        assert mx.allclose(cos[0, 0, 0], mx.ones((16,))).item()
        assert mx.allclose(sin[0, 0, 0], mx.zeros((16,))).item()

    def test_inv_freq_not_a_parameter(self):
        """Test the frequency buffer is not loadable."""
        from mlx.utils import tree_flatten

        from stt_mlx.attention import RotaryEmbedding

        assert tree_flatten(RotaryEmbedding(16).parameters()) == []

    def test_tables_match_fused_rope(self):
        """Test explicit rotate-half tables agree with mx.fast.rope."""
        from stt_mlx.attention import RotaryEmbedding, apply_rope, apply_rotary_pos_emb

        x = mx.random.normal((1, 7, 2, 16))  # (B, L, H, D)
        cos, sin = RotaryEmbedding(16, base=10000.0)(7)
        explicit, _ = apply_rotary_pos_emb(x, x, cos, sin)
        fused = apply_rope(x.transpose(0, 2, 1, 3), 16, 10000.0, traditional=False)
        assert mx.allclose(explicit, fused.transpose(0, 2, 1, 3), atol=1e-5).item()

    def test_rope_offset(self):
        """Test rotating one token at offset t equals position t of a full pass."""
        from stt_mlx.attention import apply_rope

        x = mx.random.normal((1, 2, 6, 16))
        full = apply_rope(x, 16, traditional=True)
        last = apply_rope(x[:, :, 5:6], 16, traditional=True, offset=5)
        assert mx.allclose(full[:, :, 5:6], last, atol=1e-5).item()


class TestRepeatKV:
    """Tests for repeat_kv."""

    def test_repeat(self):
        """Test KV heads are repeated on axis 1."""
        from stt_mlx.attention import repeat_kv

        x = mx.random.normal((1, 2, 5, 8))
        out = repeat_kv(x, 3)
        assert out.shape == (1, 6, 5, 8)
        assert mx.array_equal(out[:, 0], out[:, 2]).item()
        assert mx.array_equal(out[:, 3], x[:, 1]).item()

    def test_identity(self):
        """Test n_rep=1 returns the input."""
        from stt_mlx.attention import repeat_kv

        x = mx.zeros((1, 2, 3, 4))
        assert repeat_kv(x, 1) is x


class TestAttention:
    """Tests for Attention."""

    def test_output_name(self):
        """Test the output projection follows out_name."""
        from stt_mlx.attention import Attention

        attn = Attention(32, 4, out_name="out_proj", o_bias=True)
        assert "out_proj" in attn
        assert "o_proj" not in attn
        assert attn.out_proj.bias.shape == (32,)

    def test_invalid_rope(self):
        """Test unknown rope styles are rejected."""
        from stt_mlx.attention import Attention

        with pytest.raises(ValueError):
            Attention(32, 4, rope="yarn")

    def test_gqa_shapes(self):
        """Test grouped-query projections."""
        from stt_mlx.attention import Attention

        attn = Attention(64, 8, n_kv_heads=2, head_dim=16)
        assert attn.q_proj.weight.shape == (128, 64)
        assert attn.k_proj.weight.shape == (32, 64)
        out = attn(mx.random.normal((1, 5, 64)))
        assert out.shape == (1, 5, 64)

    @pytest.mark.parametrize("rope", ["traditional", "rotate_half"])
    def test_incremental_matches_full(self, rope):
        """Test prefill + single-token steps reproduce the full causal pass."""
        from stt_mlx.attention import Attention
        from stt_mlx.kv_cache import KVCache

        mx.random.seed(0)
        attn = Attention(32, 4, n_kv_heads=2, rope=rope, causal=True)
        x = mx.random.normal((1, 6, 32))
        full = attn(x)

        cache = KVCache()
        outputs = [attn(x[:, :4], cache=cache)]
        for t in range(4, 6):
            outputs.append(attn(x[:, t:t + 1], cache=cache))
        incremental = mx.concatenate(outputs, axis=1)

        assert cache.offset == 6
        assert mx.allclose(full, incremental, atol=1e-4).item()

    def test_windowed_rotating_cache(self):
        """Test a rotating cache with a window reproduces windowed attention."""
        from stt_mlx.attention import Attention
        from stt_mlx.kv_cache import RotatingKVCache

        mx.random.seed(1)
        attn = Attention(32, 4, rope="traditional", causal=True, window=2)
        x = mx.random.normal((1, 7, 32))
        full = attn(x)

        cache = RotatingKVCache(max_size=2)
        outputs = [attn(x[:, :4], cache=cache)]
        for t in range(4, 7):
            outputs.append(attn(x[:, t:t + 1], cache=cache))
            assert cache.length == 2
        incremental = mx.concatenate(outputs, axis=1)

        assert mx.allclose(full, incremental, atol=1e-4).item()

    def test_rotating_cache_caps_decode_keys(self):
        """Test a decode step over a full rotating cache attends to max_size keys."""
        from stt_mlx.attention import Attention
        from stt_mlx.kv_cache import RotatingKVCache

        mx.random.seed(3)
        windowed = Attention(32, 4, rope="traditional", causal=True, window=3)
        bounded = Attention(32, 4, rope="traditional", causal=True)
        bounded.update(windowed.parameters())
        x = mx.random.normal((1, 5, 32))
        reference = windowed(x)

        cache = RotatingKVCache(max_size=3)
        bounded(x[:, :3], cache=cache)
        for t in range(3, 5):
            step = bounded(x[:, t:t + 1], cache=cache)
            assert mx.allclose(step[:, 0], reference[:, t], atol=1e-4).item()

    def test_query_scaling_equivalent(self):
        """Test scaling queries before the dot product matches in-kernel scaling."""
        from stt_mlx.attention import Attention

        mx.random.seed(2)
        a = Attention(32, 4)
        b = Attention(32, 4, scale_queries_before_dot=True)
        b.update(a.parameters())
        x = mx.random.normal((1, 5, 32))
        assert mx.allclose(a(x), b(x), atol=1e-5).item()


class TestMatmulAttention:
    """Tests for MatmulAttention."""

    def test_shapes_with_rotary(self):
        """Test output shape with rotary tables and grouped KV heads."""
        from stt_mlx.attention import MatmulAttention, RotaryEmbedding

        attn = MatmulAttention(32, 4, n_kv_heads=2)
        x = mx.random.normal((2, 9, 32))
        out = attn(x, RotaryEmbedding(8)(9))
        assert out.shape == (2, 9, 32)

    def test_matches_fused_attention(self):
        """Test explicit softmax attention agrees with the fused kernel."""
        from stt_mlx.attention import Attention, MatmulAttention

        mx.random.seed(3)
        fused = Attention(32, 4)
        explicit = MatmulAttention(32, 4)
        explicit.update(fused.parameters())
        x = mx.random.normal((1, 6, 32))
        assert mx.allclose(fused(x), explicit(x), atol=1e-5).item()
