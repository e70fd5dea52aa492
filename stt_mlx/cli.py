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
Command-line transcription.

Usage:
    python -m stt_mlx <model> <audio> [--stream] [--max-tokens N]
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys

from .audio import load_audio
from .errors import CancellationError, STTError
from .generation import CancellationToken, ResultEvent, TelemetryEvent, TokenEvent
from .loader import load_model
from .resolver import default_resolver

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stt-mlx",
        description="Transcribe an audio file with an on-device MLX speech model",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("model", type=str, help="Model directory or cached Hugging Face repo id")
    parser.add_argument("audio", type=str, help="Audio file (WAV, FLAC, ...)")
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=4096,
        help="Maximum generated tokens (default: 4096)",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=0.0,
        help="Sampling temperature, 0 = greedy (default: 0.0)",
    )
    parser.add_argument(
        "--quantize-bits",
        type=int,
        default=None,
        choices=[2, 3, 4, 5, 6, 8],
        help="Quantize Linear/Embedding layers after loading",
    )
    parser.add_argument(
        "--cache-dir",
        type=str,
        default=None,
        help="Hugging Face cache directory",
    )
    parser.add_argument(
        "--stream",
        action="store_true",
        help="Print tokens as they are generated",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Debug logging and generation statistics",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        loaded = load_model(
            args.model,
            resolver=default_resolver(args.cache_dir),
            quantize_bits=args.quantize_bits,
        )
        waveform = load_audio(args.audio)
    except STTError as err:
        logger.error("%s: %s", type(err).__name__, err)
        return 1
    logger.info("Audio: %.2fs", waveform.duration)

    # Installed after loading: Ctrl-C during a load still interrupts it,
    # during generation it stops at the next step
    cancel_token = CancellationToken()
    previous_handler = signal.signal(signal.SIGINT, lambda *_: cancel_token.cancel())
    try:
        _run(loaded, waveform, args, cancel_token)
    except CancellationError:
        print()
        logger.warning("Cancelled")
        return 130
    except STTError as err:
        logger.error("%s: %s", type(err).__name__, err)
        return 1
    finally:
        signal.signal(signal.SIGINT, previous_handler)
    return 0


def _run(loaded, waveform, args, cancel_token: CancellationToken):
    for event in loaded.transcribe_stream(
        waveform,
        cancel_token=cancel_token,
        max_new_tokens=args.max_tokens,
        temperature=args.temperature,
    ):
        if isinstance(event, TokenEvent) and args.stream:
            print(event.text, end="", flush=True)
        elif isinstance(event, TelemetryEvent):
            stats = event.stats
            logger.info(
                "Prompt: %d tokens, %.1f tok/s | Generation: %d tokens, %.1f tok/s | Peak memory: %.2f GB",
                stats.prompt_tokens, stats.prompt_tps,
                stats.generation_tokens, stats.generation_tps, stats.peak_memory_gb,
            )
        elif isinstance(event, ResultEvent):
            if args.stream:
                print()
            else:
                print(event.result.text)


if __name__ == "__main__":
    sys.exit(main())
