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

"""Shared fixtures: tiny model configs and byte-level tekken and tokenizer.json tokenizers."""

import base64

import pytest

TEKKEN_PATTERN = r"[^\r\n\p{L}\p{N}]?[\p{L}]+|\p{N}| ?[^\s\p{L}\p{N}]+|\s+"
TEKKEN_NUM_SPECIAL = 1000
TEKKEN_MERGES = [b"he", b"ll", b"hell", b"hello", b"<|", b"|>", b"Please", b" transcribe"]

TINY_LASR = {
    "model_type": "lasr_ctc",
    "vocab_size": 8,
    "pad_token_id": 0,
    "encoder_config": {
        "hidden_size": 32,
        "num_hidden_layers": 1,
        "num_attention_heads": 2,
        "num_key_value_heads": 2,
        "intermediate_size": 64,
        "conv_kernel_size": 3,
        "subsampling_conv_channels": 16,
    },
}

TINY_WAV2VEC2 = {
    "model_type": "wav2vec2",
    "hidden_size": 32,
    "num_hidden_layers": 1,
    "num_attention_heads": 2,
    "intermediate_size": 64,
    "conv_dim": [16, 16],
    "conv_kernel": [10, 3],
    "conv_stride": [5, 2],
    "num_conv_pos_embeddings": 4,
    "num_conv_pos_embedding_groups": 2,
    "vocab_size": 8,
}

TINY_VOXTRAL = {
    "model_type": "voxtral",
    "audio_config": {
        "hidden_size": 16,
        "num_hidden_layers": 1,
        "num_attention_heads": 2,
        "intermediate_size": 64,
    },
    "text_config": {
        "hidden_size": 32,
        "num_hidden_layers": 1,
        "num_attention_heads": 4,
        "num_key_value_heads": 2,
        "head_dim": 8,
        "intermediate_size": 64,
        "vocab_size": 1300,
    },
}

TINY_VOXTRAL_REALTIME = {
    "dim": 32,
    "n_layers": 1,
    "n_heads": 4,
    "n_kv_heads": 2,
    "head_dim": 8,
    "hidden_dim": 64,
    "vocab_size": 1300,
    "ada_rms_norm_t_cond_dim": 4,
    "multimodal": {
        "whisper_model_args": {
            "encoder_args": {
                "dim": 16,
                "n_layers": 1,
                "n_heads": 2,
                "head_dim": 8,
                "hidden_dim": 32,
                "sliding_window": 750,
                "audio_encoding_args": {"num_mel_bins": 128},
            },
            "downsample_args": {"downsample_factor": 4},
        },
    },
}

TINY_WHISPER = {
    "model_type": "whisper",
    "n_mels": 80,
    "n_audio_ctx": 1500,
    "n_audio_state": 16,
    "n_audio_head": 2,
    "n_audio_layer": 1,
    "n_vocab": 261,
    "n_text_ctx": 32,
    "n_text_state": 16,
    "n_text_head": 2,
    "n_text_layer": 1,
    "eos_token_id": 256,
    "decoder_start_token_id": 257,
}

# Appended after the 256 byte-level tokens, so ids 256..260
WHISPER_SPECIAL_TOKENS = [
    "<|endoftext|>",
    "<|startoftranscript|>",
    "<|en|>",
    "<|transcribe|>",
    "<|notimestamps|>",
]


def make_whisper_tokenizer_file(path):
    """Write a byte-level tokenizer.json with no merges plus Whisper's task tokens."""
    from tokenizers import Tokenizer, decoders, models, pre_tokenizers

    alphabet = sorted(pre_tokenizers.ByteLevel.alphabet())
    tokenizer = Tokenizer(models.BPE(vocab={ch: i for i, ch in enumerate(alphabet)}, merges=[]))
    tokenizer.pre_tokenizer = pre_tokenizers.ByteLevel(add_prefix_space=False)
    tokenizer.decoder = decoders.ByteLevel()
    tokenizer.add_special_tokens(WHISPER_SPECIAL_TOKENS)
    tokenizer.save(str(path))
    return path


# MLX Whisper name -> Hugging Face name, applied in order
_WHISPER_TO_HF = [
    (r"\.blocks\.(\d+)\.", r".layers.\1."),
    (r"\.attn_ln\.", ".self_attn_layer_norm."),
    (r"\.cross_attn_ln\.", ".encoder_attn_layer_norm."),
    (r"\.mlp_ln\.", ".final_layer_norm."),
    (r"\.attn\.", ".self_attn."),
    (r"\.cross_attn\.", ".encoder_attn."),
    (r"\.query\.", ".q_proj."),
    (r"\.key\.", ".k_proj."),
    (r"\.value\.", ".v_proj."),
    (r"\.out\.", ".out_proj."),
    (r"\.mlp1\.", ".fc1."),
    (r"\.mlp2\.", ".fc2."),
    (r"^encoder\.ln_post\.", "encoder.layer_norm."),
    (r"^decoder\.ln\.", "decoder.layer_norm."),
    (r"^decoder\.token_embedding\.", "decoder.embed_tokens."),
    (r"^decoder\.positional_embedding$", "decoder.embed_positions.weight"),
]


def whisper_hf_checkpoint(weights):
    """Rename MLX Whisper parameters the way a transformers checkpoint ships them."""
    import re

    import mlx.core as mx

    out = {}
    for name, value in weights.items():
        for pattern, replacement in _WHISPER_TO_HF:
            name = re.sub(pattern, replacement, name)
        if re.search(r"conv[12]\.weight$", name):
            value = value.swapaxes(1, 2)
        out[f"model.{name}"] = value
    n_audio_ctx, n_state = TINY_WHISPER["n_audio_ctx"], TINY_WHISPER["n_audio_state"]
    out["model.encoder.embed_positions.weight"] = mx.zeros((n_audio_ctx, n_state))
    out["proj_out.weight"] = weights["decoder.token_embedding.weight"]
    return out


def make_tekken_dict():
    tokens = [bytes([i]) for i in range(256)] + TEKKEN_MERGES
    return {
        "config": {
            "pattern": TEKKEN_PATTERN,
            "default_num_special_tokens": TEKKEN_NUM_SPECIAL,
            "default_vocab_size": TEKKEN_NUM_SPECIAL + len(tokens),
        },
        "vocab": [
            {"rank": rank, "token_bytes": base64.b64encode(tok).decode("ascii")}
            for rank, tok in enumerate(tokens)
        ],
    }


@pytest.fixture
def tekken_tokenizer():
    from stt_mlx.tokenizer import TekkenTokenizer

    return TekkenTokenizer.from_dict(make_tekken_dict())


@pytest.fixture
def whisper_tokenizer(tmp_path):
    from stt_mlx.tokenizer import HFTokenizer

    return HFTokenizer.from_file(make_whisper_tokenizer_file(tmp_path / "tokenizer.json"))


@pytest.fixture
def tiny_configs():
    return {
        "lasr_ctc": TINY_LASR,
        "wav2vec2": TINY_WAV2VEC2,
        "voxtral": TINY_VOXTRAL,
        "voxtral_realtime": TINY_VOXTRAL_REALTIME,
        "whisper": TINY_WHISPER,
    }


@pytest.fixture
def build_tiny():
    """Build a tiny random-weight model of the requested family."""
    import mlx.core as mx

    from stt_mlx.models import build_model

    def _build(model_type, seed=0):
        mx.random.seed(seed)
        configs = {
            "lasr_ctc": TINY_LASR,
            "wav2vec2": TINY_WAV2VEC2,
            "voxtral": TINY_VOXTRAL,
            "voxtral_realtime": TINY_VOXTRAL_REALTIME,
            "whisper": TINY_WHISPER,
        }
        model = build_model(configs[model_type])
        mx.eval(model.parameters())
        return model

    return _build
