"""
The set of files that make up one downloaded model.

A model is complete when every metadata file and every numbered weight shard
exists in its directory:

  {model_dir}/
    config.json                       ┐
    tokenizer.json                    │
    tokenizer_config.json             │ metadata files (JSON)
    model.safetensors.index.json      │
    generation_config.json            │
    special_tokens_map.json           ┘
    model-00001-of-00005.safetensors  ┐
    ...                               │ weight shards
    model-00005-of-00005.safetensors  ┘

The readiness check here is deliberately LIGHTWEIGHT: presence plus a
minimum size for shards. Shard headers are not opened; structural damage is
caught later, when weights are loaded.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


TMP_SUFFIX = ".tmp"


def shard_filename(index: int, count: int, extension: str = "safetensors") -> str:
    """1-based shard name, e.g. shard_filename(3, 5) → 'model-00003-of-00005.safetensors'."""
    return f"model-{index:05d}-of-{count:05d}.{extension}"


@dataclass(frozen=True)
class ManifestEntry:
    """One required file. expected_size is filled in by remote probing, if at all."""
    filename: str
    is_shard: bool
    expected_size: Optional[int] = None

    def local_path(self, model_dir: str) -> str:
        return os.path.join(model_dir, self.filename)

    def tmp_path(self, model_dir: str) -> str:
        return os.path.join(model_dir, self.filename + TMP_SUFFIX)


@dataclass
class ModelStatus:
    """Snapshot of what is on disk for display."""
    is_complete: bool
    missing_files: list = field(default_factory=list)
    present_bytes: int = 0


class ShardManifest:
    """
    Required metadata files + N weight shards for one model layout.

    Metadata files come first in entries() so the small files are fetched
    before the multi-gigabyte shards.
    """

    def __init__(self, metadata_names, shard_names):
        self._metadata = [ManifestEntry(name, is_shard=False) for name in metadata_names]
        self._shards = [ManifestEntry(name, is_shard=True) for name in shard_names]

    @classmethod
    def from_config(cls, config) -> "ShardManifest":
        """Build the manifest described by an AcquisitionConfig."""
        shards = [
            shard_filename(i, config.shard_count, config.shard_extension)
            for i in range(1, config.shard_count + 1)
        ]
        return cls(config.metadata_files, shards)

    @property
    def entries(self) -> list[ManifestEntry]:
        return self._metadata + self._shards

    @property
    def shard_names(self) -> list[str]:
        return [e.filename for e in self._shards]

    @property
    def metadata_names(self) -> list[str]:
        return [e.filename for e in self._metadata]

    def entry(self, filename: str) -> ManifestEntry:
        for e in self.entries:
            if e.filename == filename:
                return e
        raise KeyError(filename)

    def is_present(self, entry: ManifestEntry, model_dir: str, min_shard_bytes: int) -> bool:
        """
        A metadata file is present if it exists and is non-empty; a shard
        additionally needs at least min_shard_bytes.
        """
        path = entry.local_path(model_dir)
        if not os.path.isfile(path):
            return False
        size = os.path.getsize(path)
        if entry.is_shard:
            return size >= max(min_shard_bytes, 1)
        return size > 0

    def missing(self, model_dir: str, min_shard_bytes: int) -> list[ManifestEntry]:
        """Entries that still need downloading, in download order."""
        return [
            e for e in self.entries
            if not self.is_present(e, model_dir, min_shard_bytes)
        ]

    def status(self, model_dir: str, min_shard_bytes: int) -> ModelStatus:
        """
        Completeness report: missing file names and bytes of the files that
        passed the presence check.
        """
        missing_files = []
        present_bytes = 0
        for e in self.entries:
            if self.is_present(e, model_dir, min_shard_bytes):
                present_bytes += os.path.getsize(e.local_path(model_dir))
            else:
                missing_files.append(e.filename)
        return ModelStatus(
            is_complete=not missing_files,
            missing_files=missing_files,
            present_bytes=present_bytes,
        )
