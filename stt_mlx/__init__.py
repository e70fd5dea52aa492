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
stt_mlx - On-device speech-to-text on Apple Silicon with MLX

Model families:
- lasr_ctc: conformer encoder + CTC head
- wav2vec2: raw-waveform transformer + CTC head
- voxtral: Whisper-style encoder + projector + Llama decoder
- voxtral_realtime: causal encoder + adaptive-norm decoder for streaming
- whisper: convolutional encoder + cross-attending text decoder

Example:
    >>> from stt_mlx import load_model, load_audio
    >>> model = load_model("path/to/model")
    >>> print(model.transcribe(load_audio("speech.wav")).text)
"""

from .audio import FeatureConfig, Waveform, extract_features, load_audio, log_mel_spectrogram
from .errors import (
    AudioInputError,
    CancellationError,
    ConfigurationError,
    InferenceError,
    ModelResolutionError,
    STTError,
    TokenizerAssetError,
    WeightMismatchError,
)
from .generation import (
    CancellationToken,
    GenerationConfig,
    GenerationSession,
    GenerationStats,
    ResultEvent,
    SessionState,
    TelemetryEvent,
    TokenEvent,
    TranscriptionResult,
)
from .loader import LoadedModel, load_model
from .models import MODEL_REGISTRY, build_model, infer_model_type
from .resolver import ChainResolver, HubCacheResolver, LocalDirectoryResolver, default_resolver
from .tokenizer import CTCVocabulary, HFTokenizer, TekkenTokenizer
from .transcribe import transcribe, transcribe_stream, transcribe_stream_async

__version__ = "0.1.0"

__all__ = [
    # Audio
    "FeatureConfig",
    "Waveform",
    "extract_features",
    "load_audio",
    "log_mel_spectrogram",
    # Errors
    "AudioInputError",
    "CancellationError",
    "ConfigurationError",
    "InferenceError",
    "ModelResolutionError",
    "STTError",
    "TokenizerAssetError",
    "WeightMismatchError",
    # Generation
    "CancellationToken",
    "GenerationConfig",
    "GenerationSession",
    "GenerationStats",
    "ResultEvent",
    "SessionState",
    "TelemetryEvent",
    "TokenEvent",
    "TranscriptionResult",
    # Loading
    "LoadedModel",
    "load_model",
    "MODEL_REGISTRY",
    "build_model",
    "infer_model_type",
    "ChainResolver",
    "HubCacheResolver",
    "LocalDirectoryResolver",
    "default_resolver",
    # Tokenizers
    "CTCVocabulary",
    "HFTokenizer",
    "TekkenTokenizer",
    # Transcription
    "transcribe",
    "transcribe_stream",
    "transcribe_stream_async",
]
