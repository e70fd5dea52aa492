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
Tokenizers for stt_mlx.

Provides:
- TekkenTokenizer: byte-level BPE over tekken.json with a reserved
  low-ID special token range
- HFTokenizer: tokenizer.json (Hugging Face tokenizers) wrapper
- CTC label collapsing (ctc_collapse, ctc_greedy_decode)
- CTCVocabulary: id -> string table for CTC heads
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from pathlib import Path

import mlx.core as mx
import regex
from tokenizers import Tokenizer

from .errors import TokenizerAssetError

logger = logging.getLogger(__name__)

# Reserved control tokens. Rank == id; ids up to num_special_tokens - 1 are
# reserved even when unnamed.
SPECIAL_TOKENS: tuple[str, ...] = (
    "<unk>",
    "<s>",
    "</s>",
    "[INST]",
    "[/INST]",
    "[AVAILABLE_TOOLS]",
    "[/AVAILABLE_TOOLS]",
    "[TOOL_RESULTS]",
    "[/TOOL_RESULTS]",
    "[TOOL_CALLS]",
    "[IMG]",
    "<pad>",
    "[IMG_BREAK]",
    "[IMG_END]",
    "[PREFIX]",
    "[MIDDLE]",
    "[SUFFIX]",
    "[SYSTEM_PROMPT]",
    "[/SYSTEM_PROMPT]",
    "[TOOL_CONTENT]",
    "[BBOX]",
    "[/BBOX]",
    "[STEP]",
    "[/STEP]",
    "[AUDIO]",
    "[BEGIN_AUDIO]",
    "[OUTPUT_AUDIO]",
    "[REF]",
    "[/REF]",
    "[REASONING]",
    "[VERIFICATION]",
    "[SCORE]",
    "[STREAMING_PAD]",
    "[STREAMING_WORD]",
    "[REPEAT_AUDIO_TEXT]",
)

UNK_ID = 0
BOS_ID = 1
EOS_ID = 2

UNKNOWN_POLICIES = ("drop", "unk")


class TekkenTokenizer:
    """
    Byte-level BPE tokenizer with Tekken's split ID space.

    IDs [0, num_special) are control tokens, matched as literal substrings
    before any BPE. IDs [num_special, vocab_size) are BPE byte sequences,
    each id = merge rank + num_special.

    Example:
        >>> tok = TekkenTokenizer.from_file("model/tekken.json")
        >>> ids = tok.encode("hello")
        >>> tok.decode(ids)
        'hello'
    """

    def __init__(
        self,
        ranks: dict[bytes, int],
        pattern: str,
        num_special_tokens: int = 1000,
        special_tokens: tuple[str, ...] = SPECIAL_TOKENS,
        unknown_token_policy: str = "drop",
    ):
        """
        Args:
            ranks: Raw BPE rank for each byte sequence (before the special offset)
            pattern: Pre-tokenizer regex (may use Unicode property classes)
            num_special_tokens: Size of the reserved control range
            special_tokens: Named control tokens, index == id
            unknown_token_policy: "drop" unmapped BPE groups or map them to "unk"
        """
        if unknown_token_policy not in UNKNOWN_POLICIES:
            raise ValueError(f"unknown_token_policy must be one of {UNKNOWN_POLICIES}")
        self.num_special_tokens = num_special_tokens
        self.unknown_token_policy = unknown_token_policy

        try:
            self._pattern = regex.compile(pattern)
        except regex.error as e:
            raise TokenizerAssetError(f"Invalid pre-tokenizer pattern: {e}") from e

        self._ranks = ranks
        self._encoder = {token: rank + num_special_tokens for token, rank in ranks.items()}
        self._decoder = {token_id: token for token, token_id in self._encoder.items()}

        self._special_to_id = {
            name: i for i, name in enumerate(special_tokens) if i < num_special_tokens
        }
        self._id_to_special = {i: name for name, i in self._special_to_id.items()}
        # Longest first so "[/INST]" wins over any shorter prefix match
        self._special_by_length = sorted(self._special_to_id, key=len, reverse=True)
        self._special_splitter = (
            regex.compile("|".join(regex.escape(s) for s in self._special_by_length))
            if self._special_by_length
            else None
        )

    @classmethod
    def from_file(cls, path: str | Path, **kwargs) -> TekkenTokenizer:
        """
        Load a tekken.json asset.

        Raises:
            TokenizerAssetError: unreadable file, missing keys or bad base64
        """
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise TokenizerAssetError(f"Cannot read tokenizer asset {path}: {e}") from e
        return cls.from_dict(data, **kwargs)

    @classmethod
    def from_dict(cls, data: dict, **kwargs) -> TekkenTokenizer:
        try:
            config = data["config"]
            pattern = config["pattern"]
            num_special = int(config["default_num_special_tokens"])
            vocab_size = int(config["default_vocab_size"])
            entries = data["vocab"]
        except (KeyError, TypeError, ValueError) as e:
            raise TokenizerAssetError(f"Malformed tekken asset: missing {e}") from e

        inner_vocab_size = vocab_size - num_special
        ranks: dict[bytes, int] = {}
        for entry in entries:
            try:
                rank = int(entry["rank"])
                token_bytes = base64.b64decode(entry["token_bytes"], validate=True)
            except (KeyError, TypeError, ValueError, binascii.Error) as e:
                raise TokenizerAssetError(f"Malformed vocab entry {entry!r}: {e}") from e
            if rank >= inner_vocab_size:
                continue
            ranks[token_bytes] = rank

        logger.debug(
            "Loaded tekken vocabulary: %d BPE tokens, %d reserved", len(ranks), num_special,
        )
        return cls(ranks, pattern, num_special_tokens=num_special, **kwargs)

    @property
    def vocab_size(self) -> int:
        return self.num_special_tokens + len(self._ranks)

    @property
    def bos_id(self) -> int:
        return BOS_ID

    @property
    def eos_id(self) -> int:
        return EOS_ID

    @property
    def unk_id(self) -> int:
        return UNK_ID

    def is_special(self, token_id: int) -> bool:
        return 0 <= token_id < self.num_special_tokens

    def token_to_id(self, token: str) -> int | None:
        """Special token name or exact BPE token string -> id."""
        if token in self._special_to_id:
            return self._special_to_id[token]
        return self._encoder.get(token.encode("utf-8"))

    def id_to_token(self, token_id: int) -> str | None:
        if token_id in self._id_to_special:
            return self._id_to_special[token_id]
        token = self._decoder.get(token_id)
        if token is None:
            return None
        return token.decode("utf-8", errors="replace")

    def _split_special(self, text: str) -> list[tuple[str, bool]]:
        """Split text into (segment, is_special) runs."""
        if self._special_splitter is None:
            return [(text, False)] if text else []
        segments = []
        pos = 0
        for match in self._special_splitter.finditer(text):
            if match.start() > pos:
                segments.append((text[pos:match.start()], False))
            segments.append((match.group(0), True))
            pos = match.end()
        if pos < len(text):
            segments.append((text[pos:], False))
        return segments

    def _bpe(self, piece: bytes) -> list[int]:
        """Merge lowest-rank adjacent pairs until nothing merges."""
        parts = [piece[i:i + 1] for i in range(len(piece))]
        while len(parts) > 1:
            best_index = -1
            best_rank = None
            for i in range(len(parts) - 1):
                rank = self._ranks.get(parts[i] + parts[i + 1])
                if rank is not None and (best_rank is None or rank < best_rank):
                    best_index, best_rank = i, rank
            if best_rank is None:
                break
            parts = parts[:best_index] + [parts[best_index] + parts[best_index + 1]] + parts[best_index + 2:]

        ids = []
        for part in parts:
            token_id = self._encoder.get(part)
            if token_id is not None:
                ids.append(token_id)
            elif self.unknown_token_policy == "unk":
                ids.append(UNK_ID)
            else:
                logger.debug("Dropping unmapped BPE group %r", part)
        return ids

    def encode_ordinary(self, text: str) -> list[int]:
        """BPE-encode text without special token matching."""
        ids = []
        for match in self._pattern.finditer(text):
            piece = match.group(0).encode("utf-8")
            token_id = self._encoder.get(piece)
            if token_id is not None:
                ids.append(token_id)
            else:
                ids.extend(self._bpe(piece))
        return ids

    def encode(self, text: str, add_bos: bool = False) -> list[int]:
        """
        Encode text to token ids.

        Literal special token strings map to exactly one reserved id and are
        never split into BPE pieces.

        Args:
            text: Input text
            add_bos: Prepend <s>

        Returns:
            Token ids
        """
        ids = [BOS_ID] if add_bos else []
        for segment, is_special in self._split_special(text):
            if is_special:
                ids.append(self._special_to_id[segment])
            else:
                ids.extend(self.encode_ordinary(segment))
        return ids

    def decode(self, ids: list[int], skip_special_tokens: bool = True) -> str:
        """
        Decode token ids to text.

        Byte sequences are concatenated before UTF-8 decoding, so a
        multi-byte character split across tokens decodes correctly.
        Invalid byte runs become U+FFFD.
        """
        buffer = bytearray()
        for token_id in ids:
            token_id = int(token_id)
            if self.is_special(token_id):
                if skip_special_tokens:
                    continue
                name = self._id_to_special.get(token_id)
                if name is not None:
                    buffer.extend(name.encode("utf-8"))
                continue
            token = self._decoder.get(token_id)
            if token is not None:
                buffer.extend(token)
        return buffer.decode("utf-8", errors="replace")


class HFTokenizer:
    """
    Hugging Face tokenizer.json wrapper (byte-level BPE with added tokens).

    Used by checkpoints that ship a tokenizer.json instead of tekken.json.
    Added tokens marked special are skipped on decode.
    """

    def __init__(self, tokenizer: Tokenizer):
        self.model = tokenizer

    @classmethod
    def from_file(cls, path: str | Path) -> HFTokenizer:
        """
        Raises:
            TokenizerAssetError: the file is missing or not a valid tokenizer.json
        """
        path = Path(path)
        if not path.is_file():
            raise TokenizerAssetError(f"Tokenizer asset {path} not found")
        try:
            tokenizer = Tokenizer.from_file(str(path))
        except Exception as e:
            raise TokenizerAssetError(f"Cannot read tokenizer asset {path}: {e}") from e
        logger.debug("Loaded tokenizer.json: %d tokens", tokenizer.get_vocab_size())
        return cls(tokenizer)

    @property
    def vocab_size(self) -> int:
        return self.model.get_vocab_size()

    def token_to_id(self, token: str) -> int | None:
        return self.model.token_to_id(token)

    def id_to_token(self, token_id: int) -> str | None:
        return self.model.id_to_token(token_id)

    def encode(self, text: str) -> list[int]:
        return self.model.encode(text, add_special_tokens=False).ids

    def decode(self, ids: list[int], skip_special_tokens: bool = True) -> str:
        return self.model.decode([int(i) for i in ids], skip_special_tokens=skip_special_tokens)


# =============================================================================
# CTC decoding
# =============================================================================


def ctc_collapse(labels: list[int], blank_id: int = 0) -> list[int]:
    """
    Collapse a frame-level CTC label sequence.

    Removes consecutive duplicates, then blanks. A blank between two equal
    labels keeps both: [b, 1, 1, b, 2, b, b, 3] -> [1, 2, 3] and
    [1, b, 1] -> [1, 1].
    """
    collapsed = []
    prev = None
    for label in labels:
        label = int(label)
        if label != blank_id and label != prev:
            collapsed.append(label)
        prev = label
    return collapsed


def ctc_greedy_decode(logits: mx.array, blank_id: int = 0) -> list[int]:
    """
    Greedy CTC decode: per-frame arg-max then collapse.

    Args:
        logits: (frames, vocab) or (1, frames, vocab)

    Returns:
        Collapsed label ids
    """
    if logits.ndim == 3:
        logits = logits[0]
    best = mx.argmax(logits, axis=-1)
    return ctc_collapse(best.tolist(), blank_id)


class CTCVocabulary:
    """
    id -> string table for CTC output labels.

    Handles the two common conventions: character vocabularies with a word
    delimiter ("|" -> space) and SentencePiece pieces ("▁" -> space).
    """

    def __init__(
        self,
        id_to_token: dict[int, str],
        word_delimiter: str | None = "|",
        special_tokens: set[str] | None = None,
    ):
        self.id_to_token = id_to_token
        self.word_delimiter = word_delimiter
        self.special_tokens = special_tokens or {"<pad>", "<s>", "</s>", "<unk>", "<blank>"}

    @classmethod
    def from_file(cls, path: str | Path) -> CTCVocabulary:
        """
        Load vocab.json ({token: id}) or tokenizer.json (HF model.vocab).

        Raises:
            TokenizerAssetError: unreadable or malformed file
        """
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise TokenizerAssetError(f"Cannot read vocabulary {path}: {e}") from e

        if isinstance(data, dict) and isinstance(data.get("model"), dict):
            vocab = data["model"].get("vocab")
            # Unigram tokenizers store [[piece, score], ...]
            if isinstance(vocab, list):
                vocab = {entry[0]: i for i, entry in enumerate(vocab)}
        else:
            vocab = data

        if not isinstance(vocab, dict) or not vocab:
            raise TokenizerAssetError(f"No vocabulary table found in {path}")
        try:
            id_to_token = {int(i): str(tok) for tok, i in vocab.items()}
        except (TypeError, ValueError) as e:
            raise TokenizerAssetError(f"Vocabulary ids in {path} are not integers") from e
        return cls(id_to_token)

    def piece(self, token_id: int) -> str:
        """Surface text of one label, with word boundaries as spaces."""
        token = self.id_to_token.get(int(token_id))
        if token is None or token in self.special_tokens:
            return ""
        if self.word_delimiter and token == self.word_delimiter:
            return " "
        return token.replace("▁", " ")

    def decode(self, ids: list[int]) -> str:
        text = "".join(self.piece(i) for i in ids)
        return " ".join(text.split())


def render_ids(ids: list[int]) -> str:
    """Fallback rendering when a CTC model ships no vocabulary."""
    return " ".join(str(i) for i in ids)
