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
Model configurations for stt_mlx.

One frozen dataclass per architecture family. Each exposes from_dict(),
which reads a checkpoint's config.json (HF layout) or params.json
(Mistral-native layout), ignores unknown keys, fills defaults and raises
ConfigurationError when a value has the wrong type or shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any

from .errors import ConfigurationError


def _section(config_dict: Any, key: str) -> dict:
    """Fetch a nested mapping, treating a missing key as empty."""
    value = config_dict.get(key) if isinstance(config_dict, dict) else None
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"'{key}' must be an object, got {type(value).__name__}")
    return value


def _build(cls, values: dict):
    """Instantiate cls from the known keys of values, coercing numbers."""
    if not isinstance(values, dict):
        raise ConfigurationError(f"{cls.__name__} expects an object, got {type(values).__name__}")
    kwargs = {}
    for f in fields(cls):
        if f.name not in values or values[f.name] is None:
            continue
        value = values[f.name]
        expected = f.type if isinstance(f.type, str) else getattr(f.type, "__name__", "")
        try:
            if expected == "int":
                if isinstance(value, bool) or int(value) != value:
                    raise ValueError(value)
                value = int(value)
            elif expected == "float":
                value = float(value)
            elif expected == "bool":
                if not isinstance(value, bool):
                    raise ValueError(value)
            elif expected == "str":
                if not isinstance(value, str):
                    raise ValueError(value)
            elif expected.startswith("tuple"):
                value = tuple(value)
        except (TypeError, ValueError) as err:
            raise ConfigurationError(
                f"{cls.__name__}.{f.name}: invalid value {values[f.name]!r}",
            ) from err
        kwargs[f.name] = value
    return cls(**kwargs)


@dataclass(frozen=True)
class QuantizationConfig:
    """Affine group quantization parameters (mx.quantize)."""

    group_size: int = 64
    bits: int = 4

    def __post_init__(self):
        if self.bits not in (2, 3, 4, 5, 6, 8):
            raise ConfigurationError(f"Unsupported quantization bits: {self.bits}")
        if self.group_size not in (32, 64, 128):
            raise ConfigurationError(f"Unsupported quantization group size: {self.group_size}")

    @classmethod
    def from_dict(cls, config_dict: dict | None) -> QuantizationConfig | None:
        if not config_dict:
            return None
        return _build(cls, config_dict)


# =============================================================================
# LASR conformer CTC
# =============================================================================


@dataclass(frozen=True)
class LasrEncoderConfig:
    """Conformer encoder of the LASR CTC model."""

    hidden_size: int = 512
    num_hidden_layers: int = 17
    num_attention_heads: int = 8
    num_key_value_heads: int = 8
    intermediate_size: int = 2048
    hidden_act: str = "silu"

    # Convolution module
    conv_kernel_size: int = 32
    convolution_bias: bool = False

    # Subsampler
    num_mel_bins: int = 128
    subsampling_conv_channels: int = 256
    subsampling_conv_kernel_size: int = 5
    subsampling_conv_stride: int = 2

    layer_norm_eps: float = 1e-6
    batch_norm_momentum: float = 0.01
    attention_bias: bool = False
    rope_theta: float = 10000.0

    # Residual mixing: out = w[0] * residual + w[1] * branch
    feed_forward_residual_weights: tuple[float, float] = (1.5, 0.5)
    conv_residual_weights: tuple[float, float] = (2.0, 1.0)

    def __post_init__(self):
        if self.hidden_size % self.num_attention_heads != 0:
            raise ConfigurationError(
                f"hidden_size {self.hidden_size} not divisible by "
                f"num_attention_heads {self.num_attention_heads}",
            )
        if self.num_attention_heads % self.num_key_value_heads != 0:
            raise ConfigurationError("num_attention_heads must be a multiple of num_key_value_heads")
        for name in ("feed_forward_residual_weights", "conv_residual_weights"):
            if len(getattr(self, name)) != 2:
                raise ConfigurationError(f"{name} must have exactly two entries")
        if self.hidden_act not in ("silu", "relu"):
            raise ConfigurationError(f"Unsupported hidden_act: {self.hidden_act}")

    @property
    def head_dim(self) -> int:
        return self.hidden_size // self.num_attention_heads


@dataclass(frozen=True)
class LasrCTCConfig:
    """LASR conformer encoder with a CTC head."""

    encoder: LasrEncoderConfig = field(default_factory=LasrEncoderConfig)
    vocab_size: int = 512
    pad_token_id: int = 0  # also the CTC blank
    model_type: str = "lasr_ctc"

    @classmethod
    def from_dict(cls, config_dict: dict) -> LasrCTCConfig:
        encoder = _build(LasrEncoderConfig, _section(config_dict, "encoder_config"))
        top = _build(cls, {k: v for k, v in config_dict.items() if k != "encoder"})
        return cls(
            encoder=encoder,
            vocab_size=top.vocab_size,
            pad_token_id=top.pad_token_id,
        )


# =============================================================================
# Wav2Vec2 CTC
# =============================================================================


@dataclass(frozen=True)
class Wav2Vec2Config:
    """
    Wav2Vec2 with a CTC head (HuggingFace Wav2Vec2ForCTC layout).

    Architecture:
        - Feature encoder: 7 Conv1d layers, group norm on the first layer
          ("group") or layer norm on every layer ("layer")
        - Feature projection: LayerNorm + Linear (conv_dim[-1] -> hidden)
        - Positional encoding: grouped Conv1d with weight normalization
        - Transformer encoder, post-norm or stable (pre-norm) layer norm
        - lm_head: Linear(hidden, vocab)
    """

    # Transformer architecture
    hidden_size: int = 768
    num_hidden_layers: int = 12
    num_attention_heads: int = 12
    intermediate_size: int = 3072
    hidden_act: str = "gelu"

    # Layer normalization
    layer_norm_eps: float = 1e-5
    do_stable_layer_norm: bool = False

    # Feature extractor
    conv_dim: tuple[int, ...] = (512, 512, 512, 512, 512, 512, 512)
    conv_kernel: tuple[int, ...] = (10, 3, 3, 3, 3, 2, 2)
    conv_stride: tuple[int, ...] = (5, 2, 2, 2, 2, 2, 2)
    conv_bias: bool = False
    feat_extract_norm: str = "group"

    # Positional encoding
    num_conv_pos_embeddings: int = 128
    num_conv_pos_embedding_groups: int = 16

    vocab_size: int = 32
    pad_token_id: int = 0  # also the CTC blank
    model_type: str = "wav2vec2"

    def __post_init__(self):
        if not len(self.conv_dim) == len(self.conv_kernel) == len(self.conv_stride):
            raise ConfigurationError("conv_dim, conv_kernel and conv_stride must have equal length")
        if self.feat_extract_norm not in ("group", "layer"):
            raise ConfigurationError(f"Unsupported feat_extract_norm: {self.feat_extract_norm}")
        if self.hidden_size % self.num_attention_heads != 0:
            raise ConfigurationError("hidden_size must be divisible by num_attention_heads")
        if self.hidden_size % self.num_conv_pos_embedding_groups != 0:
            raise ConfigurationError("hidden_size must be divisible by num_conv_pos_embedding_groups")

    @property
    def head_dim(self) -> int:
        """Attention head dimension."""
        return self.hidden_size // self.num_attention_heads

    @property
    def downsample_factor(self) -> int:
        """Input samples per output frame of the feature encoder."""
        factor = 1
        for stride in self.conv_stride:
            factor *= stride
        return factor

    @classmethod
    def from_dict(cls, config_dict: dict) -> Wav2Vec2Config:
        return _build(cls, config_dict)


# =============================================================================
# Voxtral (encoder + Llama decoder)
# =============================================================================


@dataclass(frozen=True)
class VoxtralAudioConfig:
    """Whisper-style audio tower."""

    hidden_size: int = 1280
    num_hidden_layers: int = 32
    num_attention_heads: int = 20
    intermediate_size: int = 5120
    num_mel_bins: int = 128
    max_source_positions: int = 1500
    layer_norm_eps: float = 1e-5

    def __post_init__(self):
        if self.hidden_size % self.num_attention_heads != 0:
            raise ConfigurationError("audio hidden_size must be divisible by num_attention_heads")

    @property
    def head_dim(self) -> int:
        return self.hidden_size // self.num_attention_heads


@dataclass(frozen=True)
class VoxtralTextConfig:
    """Llama decoder."""

    hidden_size: int = 3072
    num_hidden_layers: int = 30
    num_attention_heads: int = 32
    num_key_value_heads: int = 8
    head_dim: int = 128
    intermediate_size: int = 8192
    vocab_size: int = 131072
    rms_norm_eps: float = 1e-5
    rope_theta: float = 100000000.0
    rope_traditional: bool = False
    tie_word_embeddings: bool = False
    bos_token_id: int = 1
    eos_token_id: int = 2

    def __post_init__(self):
        if self.num_attention_heads % self.num_key_value_heads != 0:
            raise ConfigurationError("num_attention_heads must be a multiple of num_key_value_heads")


@dataclass(frozen=True)
class VoxtralConfig:
    """Voxtral: audio tower + projector + Llama decoder."""

    audio: VoxtralAudioConfig = field(default_factory=VoxtralAudioConfig)
    text: VoxtralTextConfig = field(default_factory=VoxtralTextConfig)
    audio_token_id: int = 24
    # Consecutive encoder frames stacked into one projector input
    projector_stack: int = 4
    quantization: QuantizationConfig | None = None
    model_type: str = "voxtral"

    @property
    def projector_input_dim(self) -> int:
        return self.audio.hidden_size * self.projector_stack

    @classmethod
    def from_dict(cls, config_dict: dict) -> VoxtralConfig:
        audio = _build(VoxtralAudioConfig, _section(config_dict, "audio_config"))
        text = _build(VoxtralTextConfig, _section(config_dict, "text_config"))
        stack = audio.intermediate_size // audio.hidden_size
        if stack * audio.hidden_size != audio.intermediate_size:
            raise ConfigurationError(
                "audio intermediate_size must be a multiple of audio hidden_size",
            )
        audio_token_id = config_dict.get("audio_token_id", 24)
        if not isinstance(audio_token_id, int):
            raise ConfigurationError(f"audio_token_id must be an integer, got {audio_token_id!r}")
        return cls(
            audio=audio,
            text=text,
            audio_token_id=audio_token_id,
            projector_stack=stack,
            quantization=QuantizationConfig.from_dict(config_dict.get("quantization")),
        )


# =============================================================================
# Voxtral Realtime (streaming causal encoder + adaptive-norm decoder)
# =============================================================================


@dataclass(frozen=True)
class VoxtralRealtimeEncoderConfig:
    """Causal Whisper encoder with sliding-window attention."""

    dim: int = 1280
    n_layers: int = 32
    n_heads: int = 32
    head_dim: int = 64
    hidden_dim: int = 5120
    rope_theta: float = 1000000.0
    sliding_window: int = 750
    num_mel_bins: int = 128
    norm_eps: float = 1e-5


@dataclass(frozen=True)
class VoxtralRealtimeConfig:
    """
    Voxtral Mini Realtime (Mistral-native params.json layout).

    Decoder fields sit at the top level; the encoder lives under
    multimodal.whisper_model_args.
    """

    dim: int = 3072
    n_layers: int = 26
    n_heads: int = 32
    n_kv_heads: int = 8
    head_dim: int = 128
    hidden_dim: int = 9216
    vocab_size: int = 131072
    rope_theta: float = 1000000.0
    norm_eps: float = 1e-5
    ada_rms_norm_t_cond: bool = True
    ada_rms_norm_t_cond_dim: int = 32

    encoder: VoxtralRealtimeEncoderConfig = field(default_factory=VoxtralRealtimeEncoderConfig)
    downsample_factor: int = 4
    quantization: QuantizationConfig | None = None

    # Streaming protocol
    delay_tokens: int = 6
    left_pad_tokens: int = 32
    right_pad_tokens: int = 17
    samples_per_token: int = 1280
    decoder_window: int = 8192
    bos_token_id: int = 1
    eos_token_id: int = 2
    streaming_pad_token_id: int = 32
    model_type: str = "voxtral_realtime"

    def __post_init__(self):
        if self.n_heads % self.n_kv_heads != 0:
            raise ConfigurationError("n_heads must be a multiple of n_kv_heads")
        if self.downsample_factor < 1:
            raise ConfigurationError("downsample_factor must be positive")

    @property
    def prefix_length(self) -> int:
        """Prompt length: BOS plus one streaming pad per left pad and delay token."""
        return 1 + self.left_pad_tokens + self.delay_tokens

    @classmethod
    def from_dict(cls, config_dict: dict) -> VoxtralRealtimeConfig:
        whisper = _section(_section(config_dict, "multimodal"), "whisper_model_args")
        encoder_args = dict(_section(whisper, "encoder_args"))
        encoding = _section(encoder_args, "audio_encoding_args")
        if "num_mel_bins" in encoding:
            encoder_args["num_mel_bins"] = encoding["num_mel_bins"]
        encoder = _build(VoxtralRealtimeEncoderConfig, encoder_args)
        downsample = _section(whisper, "downsample_args").get("downsample_factor", 4)

        top = _build(
            cls,
            {k: v for k, v in config_dict.items() if k not in ("encoder", "quantization")},
        )
        quantization = _section(config_dict, "quantization")
        return cls(
            **{
                f.name: getattr(top, f.name)
                for f in fields(cls)
                if f.name not in ("encoder", "downsample_factor", "quantization")
            },
            encoder=encoder,
            downsample_factor=int(downsample),
            quantization=QuantizationConfig.from_dict({"bits": 6, **quantization}) if quantization else None,
        )


# =============================================================================
# Whisper (encoder-decoder with cross-attention)
# =============================================================================

# HF config.json name -> field name. d_model sets both widths.
_WHISPER_HF_KEYS = {
    "num_mel_bins": "n_mels",
    "max_source_positions": "n_audio_ctx",
    "encoder_attention_heads": "n_audio_head",
    "encoder_layers": "n_audio_layer",
    "vocab_size": "n_vocab",
    "max_target_positions": "n_text_ctx",
    "decoder_attention_heads": "n_text_head",
    "decoder_layers": "n_text_layer",
}


@dataclass(frozen=True)
class WhisperConfig:
    """
    Whisper model dimensions.

    Accepts both the MLX layout (n_mels, n_audio_state, ...) and the HF
    config.json layout (num_mel_bins, d_model, ...). Defaults are whisper-tiny.
    """

    n_mels: int = 80
    n_audio_ctx: int = 1500
    n_audio_state: int = 384
    n_audio_head: int = 6
    n_audio_layer: int = 4
    n_vocab: int = 51864
    n_text_ctx: int = 448
    n_text_state: int = 384
    n_text_head: int = 6
    n_text_layer: int = 4
    # HF config.json names; None derives them from n_vocab
    eos_token_id: int | None = None
    decoder_start_token_id: int | None = None
    quantization: QuantizationConfig | None = None
    model_type: str = "whisper"

    def __post_init__(self):
        if self.n_audio_state % self.n_audio_head != 0:
            raise ConfigurationError("n_audio_state must be divisible by n_audio_head")
        if self.n_text_state % self.n_text_head != 0:
            raise ConfigurationError("n_text_state must be divisible by n_text_head")
        if self.n_audio_state % 2 != 0 or self.n_audio_state < 4:
            raise ConfigurationError("n_audio_state must be even and at least 4 for sinusoidal positions")
        for name in ("eos_token_id", "decoder_start_token_id"):
            value = getattr(self, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                raise ConfigurationError(f"{name} must be an integer, got {value!r}")

    @property
    def is_multilingual(self) -> bool:
        return self.n_vocab >= 51865

    @property
    def eot_token_id(self) -> int:
        if self.eos_token_id is not None:
            return self.eos_token_id
        return 50257 if self.is_multilingual else 50256

    @property
    def sot_token_id(self) -> int:
        if self.decoder_start_token_id is not None:
            return self.decoder_start_token_id
        return self.eot_token_id + 1

    @property
    def sample_len(self) -> int:
        """Upper bound on generated tokens per 30 s window."""
        return self.n_text_ctx // 2

    @classmethod
    def from_dict(cls, config_dict: dict) -> WhisperConfig:
        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"WhisperConfig expects an object, got {type(config_dict).__name__}")
        values = {k: v for k, v in config_dict.items() if k != "quantization"}
        for hf_key, name in _WHISPER_HF_KEYS.items():
            if hf_key in values and name not in values:
                values[name] = values[hf_key]
        if "d_model" in values:
            values.setdefault("n_audio_state", values["d_model"])
            values.setdefault("n_text_state", values["d_model"])
        values.pop("model_type", None)
        top = _build(cls, values)
        return cls(
            **{f.name: getattr(top, f.name) for f in fields(cls) if f.name != "quantization"},
            quantization=QuantizationConfig.from_dict(config_dict.get("quantization")),
        )
