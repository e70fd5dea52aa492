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
Checkpoint tensors -> verified module parameters.

Pipeline (fixed order):
1. load_safetensors: read every shard (or the shards an index names)
2. WeightRules.sanitize: rename -> weight-norm fusion -> drop -> transform
3. quantize_weights: map pre-quantized tensors or quantize post hoc
4. verify_and_load: strict name/shape check, then update + eval

Nothing is partially loaded: any mismatch raises WeightMismatchError
before the module tree is touched.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import mlx.core as mx
import mlx.nn as nn
from mlx.utils import tree_flatten, tree_unflatten

from .errors import WeightMismatchError

logger = logging.getLogger(__name__)

SAFETENSORS_INDEX = "model.safetensors.index.json"

# Suffix pairs (magnitude, direction) of weight-normalized parameters
WEIGHT_NORM_SUFFIXES = (
    ("weight_g", "weight_v"),
    ("parametrizations.weight.original0", "parametrizations.weight.original1"),
)


def load_safetensors(model_dir: str | Path) -> dict[str, mx.array]:
    """
    Load all checkpoint tensors of a model directory.

    With a model.safetensors.index.json, exactly the shards named in its
    weight_map are read. Otherwise every *.safetensors file is read in
    sorted order.

    Raises:
        WeightMismatchError: no tensors, a missing shard, or a malformed index
    """
    model_dir = Path(model_dir)
    index_path = model_dir / SAFETENSORS_INDEX

    if index_path.exists():
        try:
            with open(index_path) as f:
                weight_map = json.load(f)["weight_map"]
            shard_names = sorted(set(weight_map.values()))
        except (OSError, json.JSONDecodeError, KeyError, TypeError, AttributeError) as err:
            raise WeightMismatchError(f"Malformed safetensors index {index_path}") from err
        shard_files = [model_dir / name for name in shard_names]
        missing = [str(p.name) for p in shard_files if not p.exists()]
        if missing:
            raise WeightMismatchError(f"Shards named in {SAFETENSORS_INDEX} are missing", missing=missing)
    else:
        shard_files = sorted(model_dir.glob("*.safetensors"))

    weights: dict[str, mx.array] = {}
    for shard in shard_files:
        weights.update(mx.load(str(shard)))

    if not weights:
        raise WeightMismatchError(f"No safetensors weights found in {model_dir}")

    logger.debug("Loaded %d tensors from %d shard(s)", len(weights), len(shard_files))
    return weights


# =============================================================================
# Tensor transforms
# =============================================================================


def transpose_conv(w: mx.array) -> mx.array:
    """PyTorch conv (out, in, k) -> MLX conv (out, k, in)."""
    if w.ndim != 3:
        return w
    return w.swapaxes(1, 2)


def transpose_conv_if_ambiguous(w: mx.array) -> mx.array:
    """
    Transpose a conv weight only when it still looks like PyTorch layout.

    Heuristic: a 3-D weight whose last axis is smaller than its middle axis
    is taken to be (out, in, k). Checkpoints converted ahead of time are
    left alone.
    """
    if w.ndim == 3 and w.shape[2] < w.shape[1]:
        return w.swapaxes(1, 2)
    return w


def squeeze(w: mx.array) -> mx.array:
    return w.squeeze()


def reconstruct_weight_norm(g: mx.array, v: mx.array, eps: float = 1e-12) -> mx.array:
    """
    Fuse a weight-norm pair into a plain weight: g * v / (||v|| + eps).

    The norm of v runs over every axis except axis 0 (output channel), and
    g broadcasts against v. A 1-D g is taken as one magnitude per output
    channel.
    """
    if g.ndim == 1 and v.ndim > 1:
        g = g.reshape((-1,) + (1,) * (v.ndim - 1))
    if g.ndim != v.ndim:
        raise WeightMismatchError(
            f"Weight norm magnitude {g.shape} incompatible with direction {v.shape}",
        )
    v32 = v.astype(mx.float32)
    axes = list(range(1, v.ndim))
    norm = mx.sqrt(mx.sum(v32 * v32, axis=axes, keepdims=True)) if axes else mx.abs(v32)
    return (g.astype(mx.float32) * v32 / (norm + eps)).astype(v.dtype)


# =============================================================================
# Rules
# =============================================================================


@dataclass(frozen=True)
class WeightRule:
    """
    One declarative, regex-keyed rule.

    For rename rules, `rename` is the re.sub replacement applied to matching
    names. For transform rules, `transform` is applied to matching tensors.
    """

    pattern: str
    transform: Callable[[mx.array], mx.array] | None = None
    rename: str | None = None

    def matches(self, name: str) -> bool:
        return re.search(self.pattern, name) is not None


@dataclass(frozen=True)
class WeightRules:
    """
    Per-architecture sanitize policy.

    Attributes:
        rename: Key rewrites, applied first
        drop: Allow-list of patterns for tensors the model intentionally
            does not load (training-only heads, recomputed buffers)
        transforms: Tensor rewrites, first matching rule wins
        fuse_weight_norm: Replace (g, v) pairs with reconstructed weights
    """

    rename: tuple[WeightRule, ...] = ()
    drop: tuple[str, ...] = ()
    transforms: tuple[WeightRule, ...] = ()
    fuse_weight_norm: bool = False
    _drop_res: tuple = field(default=(), init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_drop_res", tuple(re.compile(p) for p in self.drop))

    def is_dropped(self, name: str) -> bool:
        return any(r.search(name) for r in self._drop_res)

    def sanitize(self, weights: dict[str, mx.array]) -> dict[str, mx.array]:
        """Apply rename -> weight-norm fusion -> drop -> transform."""
        renamed = {}
        for name, value in weights.items():
            for rule in self.rename:
                name = re.sub(rule.pattern, rule.rename, name)
            renamed[name] = value

        if self.fuse_weight_norm:
            renamed = fuse_weight_norm(renamed)

        sanitized = {}
        for name, value in renamed.items():
            if self.is_dropped(name):
                logger.debug("Dropping tensor %s", name)
                continue
            for rule in self.transforms:
                if rule.matches(name):
                    transformed = rule.transform(value)
                    if rule.transform is transpose_conv_if_ambiguous and transformed is not value:
                        logger.info("Transposed conv weight %s %s -> %s", name, value.shape, transformed.shape)
                    value = transformed
                    break
            sanitized[name] = value
        return sanitized


def fuse_weight_norm(weights: dict[str, mx.array]) -> dict[str, mx.array]:
    """
    Replace every weight-norm (g, v) pair with its reconstructed weight.

    Raises:
        WeightMismatchError: a magnitude or direction tensor without its partner
    """
    fused = dict(weights)
    for g_suffix, v_suffix in WEIGHT_NORM_SUFFIXES:
        for name in list(fused):
            if not name.endswith("." + g_suffix):
                continue
            prefix = name[: -len(g_suffix) - 1]
            v_name = f"{prefix}.{v_suffix}"
            if v_name not in fused:
                raise WeightMismatchError(f"Weight norm pair incomplete for {prefix}", missing=[v_name])
            g = fused.pop(name)
            v = fused.pop(v_name)
            fused[f"{prefix}.weight"] = reconstruct_weight_norm(g, v)
            logger.debug("Reconstructed weight norm for %s", prefix)
        orphans = [n for n in fused if n.endswith("." + v_suffix)]
        if orphans:
            raise WeightMismatchError("Weight norm direction without magnitude", unexpected=orphans)
    return fused


# =============================================================================
# Quantization
# =============================================================================


def is_prequantized(weights: dict[str, mx.array]) -> bool:
    return any(name.endswith(".scales") for name in weights)


def quantize_weights(
    model: nn.Module,
    weights: dict[str, mx.array],
    group_size: int = 64,
    bits: int = 4,
) -> dict[str, mx.array]:
    """
    Quantize Linear/Embedding layers and the matching checkpoint tensors.

    Pre-quantized checkpoints (tensors with .scales) only swap the modules
    whose scales are present. Otherwise every Linear/Embedding whose input
    dimension divides group_size is quantized, and its sanitized weight is
    packed with mx.quantize so the strict check sees matching shapes.

    Returns:
        The weights dict to verify against the quantized module tree
    """
    if is_prequantized(weights):
        def _prequantized(path: str, module: nn.Module) -> bool:
            return f"{path}.scales" in weights

        nn.quantize(model, group_size=group_size, bits=bits, class_predicate=_prequantized)
        logger.info("Mapped pre-quantized checkpoint (%d-bit, group %d)", bits, group_size)
        return weights

    quantized_paths: list[str] = []

    def _quantizable(path: str, module: nn.Module) -> bool:
        if not isinstance(module, (nn.Linear, nn.Embedding)):
            return False
        if f"{path}.weight" not in weights:
            return False
        if module.weight.shape[-1] % group_size != 0:
            return False
        quantized_paths.append(path)
        return True

    nn.quantize(model, group_size=group_size, bits=bits, class_predicate=_quantizable)

    weights = dict(weights)
    for path in quantized_paths:
        w_q, scales, biases = mx.quantize(weights[f"{path}.weight"], group_size=group_size, bits=bits)
        weights[f"{path}.weight"] = w_q
        weights[f"{path}.scales"] = scales
        weights[f"{path}.biases"] = biases

    logger.info("Quantized %d layers to %d bits (group %d)", len(quantized_paths), bits, group_size)
    return weights


# =============================================================================
# Strict verification
# =============================================================================


def verify_and_load(model: nn.Module, weights: dict[str, mx.array]) -> None:
    """
    Load weights into model after a strict name and shape check.

    Raises:
        WeightMismatchError: listing missing, unexpected and mismatched tensors
    """
    expected = dict(tree_flatten(model.parameters()))

    missing = [name for name in expected if name not in weights]
    unexpected = [name for name in weights if name not in expected]
    mismatched = [
        (name, tuple(expected[name].shape), tuple(weights[name].shape))
        for name in expected
        if name in weights and tuple(expected[name].shape) != tuple(weights[name].shape)
    ]
    if missing or unexpected or mismatched:
        raise WeightMismatchError(
            f"Checkpoint does not match {type(model).__name__}",
            missing=missing,
            unexpected=unexpected,
            mismatched=mismatched,
        )

    model.update(tree_unflatten(list(weights.items())))
    mx.eval(model.parameters())
