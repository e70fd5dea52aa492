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
Model registry.

Maps a model_type to its (config class, model class) pair and infers the
type of a checkpoint from its config and package identifier.
"""

from __future__ import annotations

import logging

from ..config import (
    LasrCTCConfig,
    VoxtralConfig,
    VoxtralRealtimeConfig,
    Wav2Vec2Config,
    WhisperConfig,
)
from ..errors import ConfigurationError
from .base import AutoregressiveModel, CTCModel, Prompt, STTModel
from .lasr_ctc import LasrCTCModel
from .voxtral import VoxtralModel
from .voxtral_realtime import VoxtralRealtimeModel
from .wav2vec2 import Wav2Vec2ForCTC
from .whisper import WhisperModel

logger = logging.getLogger(__name__)

MODEL_REGISTRY = {
    "lasr_ctc": (LasrCTCConfig, LasrCTCModel),
    "wav2vec2": (Wav2Vec2Config, Wav2Vec2ForCTC),
    "voxtral": (VoxtralConfig, VoxtralModel),
    "voxtral_realtime": (VoxtralRealtimeConfig, VoxtralRealtimeModel),
    "whisper": (WhisperConfig, WhisperModel),
}

# Checkpoint model_type values that map onto a registered family
MODEL_TYPE_ALIASES = {
    "lasr": "lasr_ctc",
    "lasr_encoder": "lasr_ctc",
    "wav2vec2-ctc": "wav2vec2",
    "voxtral-realtime": "voxtral_realtime",
}


def _normalize(model_type: str) -> str:
    model_type = model_type.lower()
    return MODEL_TYPE_ALIASES.get(model_type, model_type)


def infer_model_type(config_dict: dict, identifier: str = "") -> str:
    """
    Decide which family a checkpoint belongs to.

    Order: explicit model_type in the config, then the Mistral-native
    multimodal layout (realtime), then substrings of the identifier.

    Raises:
        ConfigurationError: no rule matched
    """
    model_type = config_dict.get("model_type")
    if isinstance(model_type, str) and _normalize(model_type) in MODEL_REGISTRY:
        return _normalize(model_type)

    if "multimodal" in config_dict:
        return "voxtral_realtime"

    name = identifier.lower()
    if "wav2vec" in name:
        return "wav2vec2"
    if "voxtral" in name and "realtime" in name:
        return "voxtral_realtime"
    if "voxtral" in name:
        return "voxtral"
    if "whisper" in name:
        return "whisper"
    if "lasr" in name:
        return "lasr_ctc"

    raise ConfigurationError(
        f"Cannot determine model type for {identifier!r} (model_type={model_type!r})",
    )


def build_model(config_dict: dict, identifier: str = "", model_type: str | None = None):
    """
    Instantiate an uninitialized model for a parsed config.json.

    Returns:
        Model in eval mode (weights still random)
    """
    if not isinstance(config_dict, dict):
        raise ConfigurationError("Model config must be a JSON object")
    model_type = _normalize(model_type) if model_type else infer_model_type(config_dict, identifier)
    if model_type not in MODEL_REGISTRY:
        raise ConfigurationError(
            f"Unknown model type {model_type!r}; expected one of {sorted(MODEL_REGISTRY)}",
        )
    config_cls, model_cls = MODEL_REGISTRY[model_type]
    config = config_cls.from_dict(config_dict)
    logger.debug("Building %s model", model_type)
    model = model_cls(config)
    model.eval()
    return model


__all__ = [
    "MODEL_REGISTRY",
    "AutoregressiveModel",
    "CTCModel",
    "LasrCTCModel",
    "Prompt",
    "STTModel",
    "VoxtralModel",
    "VoxtralRealtimeModel",
    "Wav2Vec2ForCTC",
    "WhisperModel",
    "build_model",
    "infer_model_type",
]
