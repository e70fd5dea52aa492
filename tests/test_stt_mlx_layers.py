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
Tests for stt_mlx shared layers.

Tests:
- Feed-forward variants and activation lookup
- Causal and conformer convolutions
- Conv subsampler and raw-waveform feature encoder
- Time conditioning
"""

import mlx.core as mx
import pytest


class TestActivations:
    """Tests for activation lookup."""

    def test_known(self):
        """Test supported activations resolve."""
        from stt_mlx.layers import get_activation

        x = mx.array([-1.0, 0.0, 1.0])
        assert get_activation("relu")(x).tolist() == [0.0, 0.0, 1.0]

    def test_unknown(self):
        """Test unsupported activations raise ValueError."""
        from stt_mlx.layers import get_activation

        with pytest.raises(ValueError):
            get_activation("swish2")


class TestFeedForward:
    """Tests for SwiGLU and FeedForward."""

    def test_swiglu(self):
        """Test SwiGLU shapes and parameter names."""
        from stt_mlx.layers import SwiGLU

        mlp = SwiGLU(16, 48, down_bias=True)
        assert mlp(mx.random.normal((1, 3, 16))).shape == (1, 3, 16)
        assert set(mlp.keys()) == {"gate_proj", "up_proj", "down_proj"}
        assert "bias" in mlp.down_proj
        assert "bias" not in mlp.gate_proj

    def test_named_layers(self):
        """Test FeedForward uses checkpoint layer names."""
        from stt_mlx.layers import FeedForward

        ff = FeedForward(16, 32, names=("intermediate_dense", "output_dense"))
        assert "intermediate_dense" in ff
        assert "output_dense" in ff
        assert ff(mx.zeros((2, 16))).shape == (2, 16)


class TestCausalConv1d:
    """Tests for CausalConv1d."""

    def test_output_length(self):
        """Test stride 1 keeps the length and stride 2 halves it."""
        from stt_mlx.layers import CausalConv1d

        x = mx.random.normal((1, 10, 4))
        assert CausalConv1d(4, 6, kernel_size=3, stride=1)(x).shape == (1, 10, 6)
        assert CausalConv1d(4, 6, kernel_size=3, stride=2)(x).shape == (1, 5, 6)

    def test_causality(self):
        """Test output frames do not depend on future input."""
        from stt_mlx.layers import CausalConv1d

        conv = CausalConv1d(2, 3, kernel_size=3)
        x = mx.random.normal((1, 8, 2))
        changed = mx.concatenate([x[:, :5], x[:, 5:] + 10.0], axis=1)
        assert mx.allclose(conv(x)[:, :5], conv(changed)[:, :5]).item()


class TestConformerConvModule:
    """Tests for ConformerConvModule."""

    def test_shape(self):
        """Test output keeps (batch, time, channels)."""
        from stt_mlx.layers import ConformerConvModule

        module = ConformerConvModule(8, kernel_size=5)
        module.eval()
        assert module(mx.random.normal((1, 12, 8))).shape == (1, 12, 8)

    def test_even_kernel(self):
        """Test asymmetric padding keeps length for even kernels."""
        from stt_mlx.layers import ConformerConvModule

        module = ConformerConvModule(8, kernel_size=4)
        module.eval()
        assert module(mx.random.normal((1, 12, 8))).shape == (1, 12, 8)

    def test_depthwise_weight_shape(self):
        """Test depthwise conv weight is (C, K, 1) in MLX layout."""
        from stt_mlx.layers import ConformerConvModule

        module = ConformerConvModule(8, kernel_size=5)
        assert module.depthwise_conv.weight.shape == (8, 5, 1)
        assert module.pointwise_conv1.weight.shape == (16, 1, 8)


class TestConvSubsampler:
    """Tests for ConvSubsampler."""

    def test_length(self):
        """Test two unpadded stride-2 convs shorten the sequence."""
        from stt_mlx.layers import ConvSubsampler

        sub = ConvSubsampler(n_mels=20, dims=16, channels=8, kernel_size=5, stride=2)
        out = sub(mx.random.normal((1, 100, 20)))
        # (100 - 5) // 2 + 1 = 48, (48 - 5) // 2 + 1 = 22
        assert out.shape == (1, 22, 16)


class TestFeatureEncoder:
    """Tests for the raw-waveform conv stack."""

    def test_downsampling(self):
        """Test the default wav2vec2 stack produces ~1 frame per 320 samples."""
        from stt_mlx.layers import FeatureEncoder

        encoder = FeatureEncoder(
            conv_dim=(8,) * 7,
            conv_kernel=(10, 3, 3, 3, 3, 2, 2),
            conv_stride=(5, 2, 2, 2, 2, 2, 2),
        )
        out = encoder(mx.random.normal((1, 16000)))
        assert out.shape == (1, 49, 8)

    def test_group_norm_first_layer_only(self):
        """Test "group" norm puts a norm on the first layer only."""
        from stt_mlx.layers import FeatureEncoder

        encoder = FeatureEncoder((4, 4), (3, 3), (2, 2), feat_extract_norm="group")
        assert "layer_norm" in encoder.conv_layers[0]
        assert "layer_norm" not in encoder.conv_layers[1]

    def test_layer_norm_every_layer(self):
        """Test "layer" norm puts a norm on every layer."""
        from stt_mlx.layers import FeatureEncoder

        encoder = FeatureEncoder((4, 4), (3, 3), (2, 2), feat_extract_norm="layer")
        assert all("layer_norm" in layer for layer in encoder.conv_layers)


class TestPositionalConvEmbedding:
    """Tests for PositionalConvEmbedding."""

    @pytest.mark.parametrize("kernel", [4, 5])
    def test_length_preserved(self, kernel):
        """Test even and odd kernels keep the sequence length."""
        from stt_mlx.layers import PositionalConvEmbedding

        pos = PositionalConvEmbedding(16, kernel_size=kernel, groups=4)
        assert pos(mx.random.normal((1, 11, 16))).shape == (1, 11, 16)


class TestTimeConditioning:
    """Tests for time_embedding and AdaptiveNorm."""

    def test_time_embedding(self):
        """Test shape and t=0 values."""
        from stt_mlx.layers import time_embedding

        emb = time_embedding(0.0, 8)
        assert emb.shape == (8,)
        assert emb.tolist() == [1.0, 1.0, 1.0, 1.0, 0.0, 0.0, 0.0, 0.0]

    def test_time_embedding_varies(self):
        """Test different delays give different embeddings."""
        from stt_mlx.layers import time_embedding

        assert not mx.allclose(time_embedding(6.0, 16), time_embedding(7.0, 16)).item()

    def test_adaptive_norm(self):
        """Test AdaptiveNorm maps (dims,) conditioning to (dims,) scale."""
        from stt_mlx.layers import AdaptiveNorm, time_embedding

        ada = AdaptiveNorm(16, cond_dims=4)
        assert ada(time_embedding(6.0, 16)).shape == (16,)
        assert ada.linear_in.weight.shape == (4, 16)
