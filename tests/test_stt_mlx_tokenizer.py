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
Tests for stt_mlx tokenizers.

Tests:
- TekkenTokenizer: BPE encode/decode, special tokens, unknown policy
- HFTokenizer: tokenizer.json loading, byte-level round trips, special tokens
- CTC collapsing and greedy decoding
- CTCVocabulary loading and rendering
"""

import base64
import json

import mlx.core as mx
import pytest

PATTERN = r"[^\r\n\p{L}\p{N}]?[\p{L}]+|\p{N}| ?[^\s\p{L}\p{N}]+|\s+"
NUM_SPECIAL = 1000

# Merges on top of the 256 single bytes (rank 256 onward)
MERGES = [b"he", b"ll", b"hell", b"hello", b" w", b"or", b" wor", b"ld", b" world"]


def make_tekken_dict(skip_bytes=()):
    """Byte-level vocabulary with a few merges, in tekken.json layout."""
    tokens = [bytes([i]) for i in range(256) if i not in skip_bytes] + MERGES
    vocab = [
        {"rank": rank, "token_bytes": base64.b64encode(tok).decode("ascii")}
        for rank, tok in enumerate(tokens)
    ]
    return {
        "config": {
            "pattern": PATTERN,
            "default_num_special_tokens": NUM_SPECIAL,
            "default_vocab_size": NUM_SPECIAL + len(tokens),
        },
        "vocab": vocab,
    }


def make_tokenizer(**kwargs):
    from stt_mlx.tokenizer import TekkenTokenizer

    return TekkenTokenizer.from_dict(make_tekken_dict(), **kwargs)


class TestTekkenTokenizer:
    """Tests for TekkenTokenizer."""

    def test_vocab_size(self):
        """Test vocab size covers reserved and BPE ids."""
        tok = make_tokenizer()
        assert tok.vocab_size == NUM_SPECIAL + 256 + len(MERGES)

    def test_whole_word_token(self):
        """Test a word present in the vocabulary maps to its own id."""
        tok = make_tokenizer()
        hello_id = NUM_SPECIAL + 256 + MERGES.index(b"hello")
        assert tok.encode("hello") == [hello_id]

    def test_bpe_offset(self):
        """Test BPE ids start after the reserved range."""
        tok = make_tokenizer()
        assert tok.encode("7") == [NUM_SPECIAL + ord("7")]
        assert all(i >= NUM_SPECIAL for i in tok.encode("hello world"))

    def test_round_trip(self):
        """Test decode(encode(text)) == text."""
        tok = make_tokenizer()
        for text in ("hello world", "Hello, world!", "dig 42 holes\n", "café"):
            assert tok.decode(tok.encode(text)) == text

    def test_merges_applied(self):
        """Test BPE merges shorten the sequence."""
        tok = make_tokenizer()
        ids = tok.encode(" world")
        assert ids == [NUM_SPECIAL + 256 + MERGES.index(b" world")]

    def test_add_bos(self):
        """Test add_bos prepends id 1."""
        tok = make_tokenizer()
        ids = tok.encode("hello", add_bos=True)
        assert ids[0] == 1
        assert tok.decode(ids) == "hello"

    def test_special_token_single_id(self):
        """Test literal special token text maps to exactly one reserved id."""
        tok = make_tokenizer()
        ids = tok.encode("[INST]hello[/INST]")
        assert ids[0] == tok.token_to_id("[INST]") == 3
        assert ids[-1] == tok.token_to_id("[/INST]") == 4
        assert len(ids) == 3

    def test_streaming_pad_id(self):
        """Test [STREAMING_PAD] has its reserved id."""
        tok = make_tokenizer()
        assert tok.token_to_id("[STREAMING_PAD]") == 32
        assert tok.is_special(32)
        assert not tok.is_special(NUM_SPECIAL)

    def test_decode_skips_special(self):
        """Test control tokens are dropped by default and rendered on request."""
        tok = make_tokenizer()
        ids = [1] + tok.encode("hello") + [2]
        assert tok.decode(ids) == "hello"
        assert tok.decode(ids, skip_special_tokens=False) == "<s>hello</s>"

    def test_split_multibyte(self):
        """Test a character split across tokens decodes only when complete."""
        tok = make_tokenizer()
        ids = tok.encode("é")
        assert len(ids) == 2
        assert tok.decode(ids[:1]) == "\ufffd"
        assert tok.decode(ids) == "é"

    def test_id_to_token(self):
        """Test id -> token string for special and BPE ids."""
        tok = make_tokenizer()
        assert tok.id_to_token(2) == "</s>"
        assert tok.id_to_token(NUM_SPECIAL + ord("a")) == "a"
        assert tok.id_to_token(10 ** 7) is None

    def test_unknown_policy_drop(self):
        """Test unmapped byte groups are dropped by default."""
        from stt_mlx.tokenizer import TekkenTokenizer

        tok = TekkenTokenizer.from_dict(make_tekken_dict(skip_bytes={ord("z")}))
        assert tok.encode("z") == []

    def test_unknown_policy_unk(self):
        """Test unmapped byte groups map to <unk> when requested."""
        from stt_mlx.tokenizer import TekkenTokenizer

        tok = TekkenTokenizer.from_dict(
            make_tekken_dict(skip_bytes={ord("z")}), unknown_token_policy="unk",
        )
        assert tok.encode("z") == [0]

    def test_invalid_policy(self):
        """Test unsupported unknown-token policies are rejected."""
        with pytest.raises(ValueError):
            make_tokenizer(unknown_token_policy="ignore")

    def test_from_file(self, tmp_path):
        """Test loading tekken.json from disk."""
        from stt_mlx.tokenizer import TekkenTokenizer

        path = tmp_path / "tekken.json"
        path.write_text(json.dumps(make_tekken_dict()))
        tok = TekkenTokenizer.from_file(path)
        assert tok.decode(tok.encode("hello")) == "hello"

    def test_malformed_asset(self, tmp_path):
        """Test missing keys raise TokenizerAssetError."""
        from stt_mlx.errors import TokenizerAssetError
        from stt_mlx.tokenizer import TekkenTokenizer

        path = tmp_path / "tekken.json"
        path.write_text(json.dumps({"vocab": []}))
        with pytest.raises(TokenizerAssetError):
            TekkenTokenizer.from_file(path)

    def test_bad_base64(self):
        """Test undecodable token bytes raise TokenizerAssetError."""
        from stt_mlx.errors import TokenizerAssetError
        from stt_mlx.tokenizer import TekkenTokenizer

        data = make_tekken_dict()
        data["vocab"][0]["token_bytes"] = "***"
        with pytest.raises(TokenizerAssetError):
            TekkenTokenizer.from_dict(data)

    def test_missing_file(self, tmp_path):
        """Test a missing file raises TokenizerAssetError."""
        from stt_mlx.errors import TokenizerAssetError
        from stt_mlx.tokenizer import TekkenTokenizer

        with pytest.raises(TokenizerAssetError):
            TekkenTokenizer.from_file(tmp_path / "absent.json")


class TestHFTokenizer:
    """Tests for HFTokenizer."""

    def test_round_trip(self, whisper_tokenizer):
        """Test byte-level text, including multi-byte characters, decodes back."""
        ids = whisper_tokenizer.encode(" Héllo, world")
        assert all(i < 256 for i in ids)
        assert whisper_tokenizer.decode(ids) == " Héllo, world"

    def test_special_tokens(self, whisper_tokenizer):
        """Test task tokens resolve by name and are skipped on decode."""
        assert whisper_tokenizer.token_to_id("<|startoftranscript|>") == 257
        assert whisper_tokenizer.id_to_token(256) == "<|endoftext|>"
        assert whisper_tokenizer.token_to_id("<|fr|>") is None
        ids = [257, 260] + whisper_tokenizer.encode("hi") + [256]
        assert whisper_tokenizer.decode(ids) == "hi"
        assert whisper_tokenizer.decode(ids, skip_special_tokens=False).startswith("<|startoftranscript|>")
        assert whisper_tokenizer.vocab_size == 261

    def test_missing_file(self, tmp_path):
        """Test a missing tokenizer.json."""
        from stt_mlx.errors import TokenizerAssetError
        from stt_mlx.tokenizer import HFTokenizer

        with pytest.raises(TokenizerAssetError):
            HFTokenizer.from_file(tmp_path / "tokenizer.json")

    def test_malformed_file(self, tmp_path):
        """Test a file that is not a tokenizer.json."""
        from stt_mlx.errors import TokenizerAssetError
        from stt_mlx.tokenizer import HFTokenizer

        path = tmp_path / "tokenizer.json"
        path.write_text(json.dumps({"vocab": []}))
        with pytest.raises(TokenizerAssetError):
            HFTokenizer.from_file(path)


class TestCTCDecoding:
    """Tests for CTC collapse and greedy decoding."""

    def test_collapse(self):
        """Test duplicates merge and blanks vanish."""
        from stt_mlx.tokenizer import ctc_collapse

        assert ctc_collapse([0, 1, 1, 0, 2, 0, 0, 3]) == [1, 2, 3]

    def test_blank_separates_repeats(self):
        """Test a blank between equal labels keeps both."""
        from stt_mlx.tokenizer import ctc_collapse

        assert ctc_collapse([1, 0, 1]) == [1, 1]
        assert ctc_collapse([1, 1, 1]) == [1]

    def test_all_blank(self):
        """Test an all-blank sequence collapses to nothing."""
        from stt_mlx.tokenizer import ctc_collapse

        assert ctc_collapse([0, 0, 0]) == []

    def test_custom_blank(self):
        """Test a non-zero blank id."""
        from stt_mlx.tokenizer import ctc_collapse

        assert ctc_collapse([5, 1, 5, 2, 2], blank_id=5) == [1, 2]

    def test_greedy_decode(self):
        """Test arg-max per frame then collapse, with or without batch axis."""
        from stt_mlx.tokenizer import ctc_greedy_decode

        labels = [0, 1, 1, 0, 2, 0, 0, 3]
        logits = mx.zeros((len(labels), 4))
        logits = logits + mx.eye(4)[mx.array(labels)] * 5.0
        assert ctc_greedy_decode(logits) == [1, 2, 3]
        assert ctc_greedy_decode(logits[None]) == [1, 2, 3]


class TestCTCVocabulary:
    """Tests for CTCVocabulary."""

    def test_character_vocab(self):
        """Test '|' renders as a space and specials are hidden."""
        from stt_mlx.tokenizer import CTCVocabulary

        vocab = CTCVocabulary({0: "<pad>", 1: "H", 2: "I", 3: "|"})
        assert vocab.piece(3) == " "
        assert vocab.piece(0) == ""
        assert vocab.decode([1, 2, 3, 1, 2]) == "HI HI"

    def test_sentencepiece_vocab(self):
        """Test '▁' marks word starts."""
        from stt_mlx.tokenizer import CTCVocabulary

        vocab = CTCVocabulary({0: "<blank>", 1: "▁he", 2: "llo", 3: "▁there"})
        assert vocab.decode([1, 2, 3]) == "hello there"

    def test_from_vocab_json(self, tmp_path):
        """Test loading a {token: id} vocab.json."""
        from stt_mlx.tokenizer import CTCVocabulary

        path = tmp_path / "vocab.json"
        path.write_text(json.dumps({"<pad>": 0, "A": 1, "|": 2}))
        vocab = CTCVocabulary.from_file(path)
        assert vocab.decode([1, 2, 1]) == "A A"

    def test_from_tokenizer_json(self, tmp_path):
        """Test loading a tokenizer.json with a unigram piece list."""
        from stt_mlx.tokenizer import CTCVocabulary

        path = tmp_path / "tokenizer.json"
        path.write_text(json.dumps({"model": {"vocab": [["<blank>", 0.0], ["▁a", -1.0], ["b", -2.0]]}}))
        vocab = CTCVocabulary.from_file(path)
        assert vocab.decode([1, 2]) == "ab"

    def test_empty_vocab(self, tmp_path):
        """Test an empty table raises TokenizerAssetError."""
        from stt_mlx.errors import TokenizerAssetError
        from stt_mlx.tokenizer import CTCVocabulary

        path = tmp_path / "vocab.json"
        path.write_text("{}")
        with pytest.raises(TokenizerAssetError):
            CTCVocabulary.from_file(path)

    def test_render_ids(self):
        """Test the id fallback rendering."""
        from stt_mlx.tokenizer import render_ids

        assert render_ids([4, 5, 6]) == "4 5 6"
