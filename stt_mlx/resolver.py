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
Model resolution: package identifier -> local model directory.

Resolvers never download. A local path is accepted as is, and Hugging Face
repo ids are looked up in the local hub cache only.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from .errors import ModelResolutionError

logger = logging.getLogger(__name__)

CONFIG_FILES = ("config.json", "params.json")


def has_model_config(path: Path) -> bool:
    return any((path / name).is_file() for name in CONFIG_FILES)


@runtime_checkable
class ModelResolver(Protocol):
    def resolve(self, identifier: str) -> Path: ...


class LocalDirectoryResolver:
    """Accepts an existing directory holding config.json or params.json."""

    def resolve(self, identifier: str) -> Path:
        path = Path(identifier).expanduser()
        if not path.is_dir():
            raise ModelResolutionError(f"{identifier!r} is not a local directory")
        if not has_model_config(path):
            raise ModelResolutionError(
                f"{path} has no {' or '.join(CONFIG_FILES)}",
            )
        return path.resolve()


class HubCacheResolver:
    """
    Finds already-downloaded Hugging Face snapshots.

    Args:
        cache_dir: Hub cache directory (default: the huggingface_hub default)
        revision: Branch, tag or commit to look up
    """

    def __init__(self, cache_dir: str | Path | None = None, revision: str | None = None):
        self.cache_dir = cache_dir
        self.revision = revision

    def resolve(self, identifier: str) -> Path:
        from huggingface_hub import snapshot_download
        from huggingface_hub.errors import HFValidationError, LocalEntryNotFoundError

        try:
            path = snapshot_download(
                identifier,
                revision=self.revision,
                cache_dir=self.cache_dir,
                local_files_only=True,
            )
        except (LocalEntryNotFoundError, HFValidationError, FileNotFoundError, OSError) as err:
            raise ModelResolutionError(
                f"{identifier!r} is not in the local Hugging Face cache",
            ) from err

        path = Path(path)
        if not has_model_config(path):
            raise ModelResolutionError(f"Cached snapshot {path} has no model config")
        return path


class ChainResolver:
    """Tries each resolver in order; the first success wins."""

    def __init__(self, resolvers: list[ModelResolver]):
        self.resolvers = list(resolvers)

    def resolve(self, identifier: str) -> Path:
        failures = []
        for resolver in self.resolvers:
            try:
                path = resolver.resolve(identifier)
            except ModelResolutionError as err:
                failures.append(f"{type(resolver).__name__}: {err}")
                continue
            logger.debug("Resolved %s via %s -> %s", identifier, type(resolver).__name__, path)
            return path
        raise ModelResolutionError(
            f"Could not resolve {identifier!r}: " + "; ".join(failures),
        )


def default_resolver(cache_dir: str | Path | None = None) -> ChainResolver:
    """Local directory first, then the Hugging Face cache."""
    return ChainResolver([LocalDirectoryResolver(), HubCacheResolver(cache_dir=cache_dir)])
