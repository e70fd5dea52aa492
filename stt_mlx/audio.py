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
Audio front-end for stt_mlx.

Turns a mono waveform into model input features:
- Length normalization (fixed-chunk pad/trim, token-aligned causal padding)
- Whisper-style log-mel spectrogram with Slaney mel filters
- Zero-mean/unit-variance waveform normalization for raw-waveform models

The mel filterbank is built lazily once per parameter set and shared
read-only across threads.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from functools import lru_cache
from typing import Union

import mlx.core as mx
import numpy as np

from .errors import AudioInputError

logger = logging.getLogger(__name__)

# Audio constants
SAMPLE_RATE = 16000
N_FFT = 400
HOP_LENGTH = 160
CHUNK_LENGTH = 30  # seconds
N_SAMPLES = CHUNK_LENGTH * SAMPLE_RATE  # 480000 samples for 30s

LAYOUTS = ("mels_first", "frames_first")
FRAMINGS = ("fixed", "causal", "none")


@dataclass(frozen=True)
class Waveform:
    """Immutable mono float32 buffer at a known sample rate."""

    samples: np.ndarray
    sample_rate: int = SAMPLE_RATE

    @classmethod
    def from_array(
        cls,
        audio: Union[Waveform, np.ndarray, mx.array, list],
        sample_rate: int = SAMPLE_RATE,
    ) -> Waveform:
        if isinstance(audio, Waveform):
            return audio
        if isinstance(audio, mx.array):
            audio = np.array(audio)
        samples = np.array(audio, dtype=np.float32)
        samples.setflags(write=False)
        return cls(samples=samples, sample_rate=sample_rate)

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate


@dataclass(frozen=True)
class FeatureConfig:
    """
    Front-end parameters for one model family.

    framing:
        "fixed"  - right-pad/trim to chunk_seconds before framing
        "causal" - token-aligned left/right padding for streaming encoders
        "none"   - use the waveform length as is
    layout:
        "mels_first" -> [n_mels, frames], "frames_first" -> [frames, n_mels]
    log_mel_max:
        Fixed clamp ceiling. None uses the spectrogram's own maximum.
    """

    sample_rate: int = SAMPLE_RATE
    n_fft: int = N_FFT
    hop_length: int = HOP_LENGTH
    n_mels: int = 128
    framing: str = "fixed"
    chunk_seconds: int = CHUNK_LENGTH
    layout: str = "frames_first"
    log_mel_max: float | None = None
    drop_last_frame: bool = True
    drop_nyquist_bin: bool = True
    samples_per_token: int = 1280
    left_pad_tokens: int = 0
    right_pad_tokens: int = 0
    use_mel: bool = True
    normalize_waveform: bool = False

    def __post_init__(self):
        if self.layout not in LAYOUTS:
            raise ValueError(f"layout must be one of {LAYOUTS}, got {self.layout!r}")
        if self.framing not in FRAMINGS:
            raise ValueError(f"framing must be one of {FRAMINGS}, got {self.framing!r}")

    @property
    def n_samples(self) -> int:
        """Samples in one fixed chunk."""
        return self.chunk_seconds * self.sample_rate


def validate_waveform(
    waveform: Union[Waveform, np.ndarray, mx.array],
    expected_rate: int = SAMPLE_RATE,
) -> np.ndarray:
    """
    Check a waveform before it reaches the front-end.

    Args:
        waveform: Waveform or raw array (assumed to be at expected_rate)
        expected_rate: Sample rate the model was trained on

    Returns:
        The samples as a float32 numpy array

    Raises:
        AudioInputError: empty, not mono, non-finite, or wrong sample rate
    """
    wav = Waveform.from_array(waveform, expected_rate)
    if wav.sample_rate != expected_rate:
        raise AudioInputError(
            f"Expected {expected_rate} Hz audio, got {wav.sample_rate} Hz",
        )
    samples = wav.samples
    if samples.ndim != 1:
        raise AudioInputError(f"Expected mono 1-D waveform, got shape {samples.shape}")
    if samples.size == 0:
        raise AudioInputError("Waveform is empty")
    if not np.all(np.isfinite(samples)):
        raise AudioInputError("Waveform contains NaN or Inf samples")
    return samples


def pad_or_trim(
    audio: Union[np.ndarray, mx.array],
    length: int = N_SAMPLES,
    axis: int = -1,
) -> Union[np.ndarray, mx.array]:
    """
    Pad or trim audio to exact length.

    Zeros are appended on the right. When the length already matches the
    input is returned unchanged.

    Args:
        audio: Audio waveform
        length: Target length in samples
        axis: Axis along which to pad/trim

    Returns:
        Audio padded or trimmed to exact length
    """
    current = audio.shape[axis]
    if current > length:
        slices = [slice(None)] * audio.ndim
        slices[axis] = slice(0, length)
        return audio[tuple(slices)]
    if current < length:
        pad_width = [(0, 0)] * audio.ndim
        pad_width[axis] = (0, length - current)
        if isinstance(audio, np.ndarray):
            return np.pad(audio, pad_width, mode="constant")
        return mx.pad(audio, pad_width)
    return audio


def pad_for_streaming(
    audio: np.ndarray,
    samples_per_token: int,
    left_pad_tokens: int,
    right_pad_tokens: int,
) -> np.ndarray:
    """
    Pad audio so its length is a whole number of decoder tokens.

    Left padding is left_pad_tokens full tokens of silence. Right padding
    first aligns the tail to a token boundary, then adds right_pad_tokens
    more tokens so the causal encoder sees the end of speech.
    """
    left = left_pad_tokens * samples_per_token
    align = (samples_per_token - len(audio) % samples_per_token) % samples_per_token
    right = align + right_pad_tokens * samples_per_token
    return np.pad(audio, (left, right), mode="constant")


def num_frames(num_samples: int, hop_length: int = HOP_LENGTH, drop_last_frame: bool = True) -> int:
    """Spectrogram frames produced for num_samples of (already padded) audio."""
    frames = 1 + num_samples // hop_length
    return frames - 1 if drop_last_frame else frames


@lru_cache(maxsize=4)
def get_hanning_window(size: int) -> np.ndarray:
    """Periodic Hann window, shape (size,)."""
    window = np.hanning(size + 1)[:-1].astype(np.float32)
    window.setflags(write=False)
    return window


def _hz_to_mel(freqs: np.ndarray) -> np.ndarray:
    """Slaney mel scale: linear below 1 kHz, logarithmic above."""
    freqs = np.asarray(freqs, dtype=np.float64)
    f_sp = 200.0 / 3
    mels = freqs / f_sp
    min_log_hz = 1000.0
    min_log_mel = min_log_hz / f_sp
    logstep = np.log(6.4) / 27.0
    log_region = freqs >= min_log_hz
    mels[log_region] = min_log_mel + np.log(freqs[log_region] / min_log_hz) / logstep
    return mels


def _mel_to_hz(mels: np.ndarray) -> np.ndarray:
    mels = np.asarray(mels, dtype=np.float64)
    f_sp = 200.0 / 3
    freqs = f_sp * mels
    min_log_hz = 1000.0
    min_log_mel = min_log_hz / f_sp
    logstep = np.log(6.4) / 27.0
    log_region = mels >= min_log_mel
    freqs[log_region] = min_log_hz * np.exp(logstep * (mels[log_region] - min_log_mel))
    return freqs


def _build_mel_filters(
    sample_rate: int,
    n_fft: int,
    n_mels: int,
    f_min: float,
    f_max: float,
) -> np.ndarray:
    n_freqs = n_fft // 2 + 1
    fft_freqs = np.linspace(0, sample_rate / 2, n_freqs)

    mel_points = np.linspace(_hz_to_mel(np.array([f_min]))[0], _hz_to_mel(np.array([f_max]))[0], n_mels + 2)
    hz_points = _mel_to_hz(mel_points)

    fdiff = np.diff(hz_points)
    ramps = hz_points[:, None] - fft_freqs[None, :]

    filters = np.zeros((n_mels, n_freqs), dtype=np.float64)
    for i in range(n_mels):
        lower = -ramps[i] / fdiff[i]
        upper = ramps[i + 2] / fdiff[i + 1]
        filters[i] = np.maximum(0, np.minimum(lower, upper))

    # Slaney area normalization
    enorm = 2.0 / (hz_points[2:n_mels + 2] - hz_points[:n_mels])
    filters *= enorm[:, np.newaxis]
    return filters.astype(np.float32)


_MEL_FILTERS: dict[tuple, np.ndarray] = {}
_MEL_FILTERS_LOCK = threading.Lock()


def get_mel_filters(
    sample_rate: int = SAMPLE_RATE,
    n_fft: int = N_FFT,
    n_mels: int = 128,
    f_min: float = 0.0,
    f_max: float | None = None,
) -> np.ndarray:
    """
    Get the Slaney mel filterbank, shape (n_mels, n_fft // 2 + 1).

    Built on first use and cached for the life of the process. The returned
    array is read-only, so callers on any thread can share it.
    """
    if f_max is None:
        f_max = sample_rate / 2
    key = (sample_rate, n_fft, n_mels, float(f_min), float(f_max))
    filters = _MEL_FILTERS.get(key)
    if filters is not None:
        return filters
    with _MEL_FILTERS_LOCK:
        filters = _MEL_FILTERS.get(key)
        if filters is None:
            filters = _build_mel_filters(sample_rate, n_fft, n_mels, f_min, f_max)
            filters.setflags(write=False)
            _MEL_FILTERS[key] = filters
            logger.debug("Built mel filterbank %s", key)
    return filters


def log_mel_spectrogram(
    audio: Union[np.ndarray, mx.array],
    n_mels: int = 128,
    n_fft: int = N_FFT,
    hop_length: int = HOP_LENGTH,
    sample_rate: int = SAMPLE_RATE,
    log_mel_max: float | None = None,
    drop_last_frame: bool = True,
    layout: str = "mels_first",
    drop_nyquist_bin: bool = True,
) -> mx.array:
    """
    Compute a log-mel spectrogram.

    Steps: reflect pad n_fft // 2, Hann-windowed frames, rfft, optionally
    drop the Nyquist bin, power spectrum, Slaney mel projection,
    log10(max(x, 1e-10)), clamp to (max - 8), then (x + 4) / 4. The clamp
    must run before the affine step.

    Args:
        audio: Audio waveform, shape (n_samples,)
        n_mels: Number of mel bands
        n_fft: FFT window size
        hop_length: Hop between frames
        sample_rate: Audio sample rate
        log_mel_max: Fixed clamp ceiling, or None for the spectrogram max
        drop_last_frame: Drop the final STFT frame (reference framing)
        layout: "mels_first" -> (n_mels, n_frames), "frames_first" -> (n_frames, n_mels)
        drop_nyquist_bin: Drop the last rfft bin and its filterbank column

    Returns:
        Log-mel spectrogram as float32 mx.array in the requested layout
    """
    if layout not in LAYOUTS:
        raise ValueError(f"layout must be one of {LAYOUTS}, got {layout!r}")

    if isinstance(audio, mx.array):
        audio = np.array(audio)
    audio = np.ascontiguousarray(audio, dtype=np.float32)

    padding = n_fft // 2
    audio = np.pad(audio, (padding, padding), mode="reflect")

    n_frames = 1 + (len(audio) - n_fft) // hop_length
    frames = np.lib.stride_tricks.as_strided(
        audio,
        shape=(n_frames, n_fft),
        strides=(audio.strides[0] * hop_length, audio.strides[0]),
    )
    if drop_last_frame:
        frames = frames[:-1]
    if frames.shape[0] == 0:
        raise AudioInputError(f"Waveform too short for a single {hop_length}-sample hop")

    windowed = mx.array(frames * get_hanning_window(n_fft))
    stft = mx.fft.rfft(windowed, n=n_fft)
    filters = get_mel_filters(sample_rate, n_fft, n_mels)
    if drop_nyquist_bin:
        stft = stft[:, :-1]
        filters = filters[:, :-1]
    magnitudes = mx.abs(stft) ** 2
    mel_spec = magnitudes @ mx.array(filters.T)

    log_spec = mx.log10(mx.maximum(mel_spec, 1e-10))
    ceiling = mx.max(log_spec) if log_mel_max is None else mx.array(log_mel_max, dtype=mx.float32)
    log_spec = mx.maximum(log_spec, ceiling - 8.0)
    log_spec = ((log_spec + 4.0) / 4.0).astype(mx.float32)

    if layout == "mels_first":
        return log_spec.T
    return log_spec


def normalize_waveform(audio: np.ndarray) -> np.ndarray:
    """Zero-mean, unit-variance normalization for raw-waveform encoders."""
    mean = audio.mean()
    variance = np.mean((audio - mean) ** 2)
    return ((audio - mean) / np.sqrt(variance + 1e-7)).astype(np.float32)


def prepare_samples(samples: np.ndarray, config: FeatureConfig) -> np.ndarray:
    """Apply the framing policy of config to validated samples."""
    if config.framing == "fixed":
        return pad_or_trim(samples, config.n_samples)
    if config.framing == "causal":
        return pad_for_streaming(
            samples,
            config.samples_per_token,
            config.left_pad_tokens,
            config.right_pad_tokens,
        )
    return samples


def extract_features(
    waveform: Union[Waveform, np.ndarray, mx.array],
    config: FeatureConfig,
) -> mx.array:
    """
    Waveform -> model input features.

    Validates the waveform, applies the framing policy, then computes the
    log-mel spectrogram in config.layout orientation. Raw-waveform models
    (config.use_mel False) get the (optionally normalized) samples instead.

    Raises:
        AudioInputError: invalid waveform
    """
    samples = validate_waveform(waveform, config.sample_rate)
    samples = prepare_samples(samples, config)

    if not config.use_mel:
        if config.normalize_waveform:
            samples = normalize_waveform(samples)
        return mx.array(samples)

    return log_mel_spectrogram(
        samples,
        n_mels=config.n_mels,
        n_fft=config.n_fft,
        hop_length=config.hop_length,
        sample_rate=config.sample_rate,
        log_mel_max=config.log_mel_max,
        drop_last_frame=config.drop_last_frame,
        layout=config.layout,
        drop_nyquist_bin=config.drop_nyquist_bin,
    )


def load_audio(file_path: str, sample_rate: int = SAMPLE_RATE) -> Waveform:
    """
    Read an audio file as a mono Waveform at sample_rate.

    Uses soundfile for decoding and scipy for resampling; multi-channel
    audio is averaged down to mono.

    Raises:
        AudioInputError: the file cannot be decoded
    """
    import soundfile as sf
    from scipy import signal

    try:
        audio, file_sr = sf.read(file_path, dtype="float32")
    except (RuntimeError, OSError) as err:
        raise AudioInputError(f"Cannot read audio file {file_path}: {err}") from err

    if audio.ndim > 1:
        audio = audio.mean(axis=1)

    if file_sr != sample_rate:
        num_samples = int(len(audio) * sample_rate / file_sr)
        audio = signal.resample(audio, num_samples).astype(np.float32)

    return Waveform.from_array(audio, sample_rate)
