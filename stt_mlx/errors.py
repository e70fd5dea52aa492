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
Error taxonomy for the speech-to-text runtime.

Load-time errors (configuration, weights, tokenizer assets, resolution) are
fatal for the model instance being loaded. Session errors (inference,
cancellation, audio input) terminate only the session that raised them.
"""


class STTError(Exception):
    """Base class for every error raised by stt_mlx."""


class ConfigurationError(STTError):
    """Malformed or missing model configuration."""


class WeightMismatchError(STTError):
    """
    Sanitized tensors do not line up with the module tree.

    Attributes:
        missing: Module parameters with no tensor in the checkpoint
        unexpected: Checkpoint tensors with no module parameter
        mismatched: (name, expected_shape, actual_shape) for shape conflicts
    """

    def __init__(
        self,
        message: str,
        missing: list[str] | None = None,
        unexpected: list[str] | None = None,
        mismatched: list[tuple[str, tuple, tuple]] | None = None,
    ):
        self.missing = sorted(missing or [])
        self.unexpected = sorted(unexpected or [])
        self.mismatched = sorted(mismatched or [])
        details = []
        if self.missing:
            details.append(f"missing={self.missing[:10]}")
        if self.unexpected:
            details.append(f"unexpected={self.unexpected[:10]}")
        if self.mismatched:
            details.append(f"mismatched={self.mismatched[:10]}")
        if details:
            message = f"{message} ({', '.join(details)})"
        super().__init__(message)


class TokenizerAssetError(STTError):
    """Malformed or missing vocabulary file."""


class InferenceError(STTError):
    """A forward pass failed (shape error, non-finite values)."""


class CancellationError(STTError):
    """The caller cancelled a running session. Not a failure."""


class AudioInputError(STTError, ValueError):
    """Empty waveform, wrong rank, non-finite samples or wrong sample rate."""


class ModelResolutionError(STTError):
    """A package identifier could not be resolved to a local directory."""
