from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

from crustup.checkpoint import CheckpointKey, CheckpointStore
from crustup.models import ChunkRef, FileManifest
from crustup.structured_logging import log_event

log = logging.getLogger("crustup.splitter")

_COPY_BLOCK = 1024 * 256


def default_output_dir(source_path: str) -> str:
    return f"{source_path}.meta.output"


def part_name(source_path: str, index: int) -> str:
    """1-based part file name for the given source file."""
    return f"{Path(source_path).name}.sf-part{int(index)}"


def _copy_range(src, dst_path: Path, length: int) -> int:
    written = 0
    with open(dst_path, "wb") as dst:
        while written < length:
            block = src.read(min(_COPY_BLOCK, length - written))
            if not block:
                break
            dst.write(block)
            written += len(block)
    return written


def split_file(source_path: str, threshold_bytes: int, output_dir: str) -> FileManifest:
    """Split source_path into contiguous parts of at most threshold_bytes.

    The last part may be shorter. An empty file produces no parts.
    """
    threshold = int(threshold_bytes)
    if threshold <= 0:
        raise ValueError("threshold_bytes must be positive")

    source_size = os.path.getsize(source_path)
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    chunks: List[ChunkRef] = []
    with open(source_path, "rb") as src:
        remaining = source_size
        index = 1
        while remaining > 0:
            want = min(threshold, remaining)
            dst = out_dir / part_name(source_path, index)
            got = _copy_range(src, dst, want)
            if got != want:
                raise OSError(f"short read on {source_path}: expected {want} bytes, got {got}")
            chunks.append(ChunkRef(path=str(dst), size_bytes=got))
            remaining -= got
            index += 1

    return FileManifest(
        source_path=str(source_path),
        chunk_size_bytes=threshold,
        source_size_bytes=source_size,
        chunks=chunks,
    )


class Splitter:
    def __init__(self, checkpoints: CheckpointStore) -> None:
        self.checkpoints = checkpoints

    def split(self, source_path: str, threshold_bytes: int, output_dir: Optional[str] = None) -> FileManifest:
        """Return the manifest for source_path, splitting only if none was recorded."""
        key = CheckpointKey(path=str(source_path), stage="manifest")
        if self.checkpoints.has(key):
            return self.checkpoints.load_model(key, FileManifest)

        out_dir = output_dir or default_output_dir(source_path)
        log_event(log, "split_start", source=str(source_path), threshold=int(threshold_bytes), output_dir=out_dir)
        manifest = split_file(source_path, threshold_bytes, out_dir)
        self.checkpoints.save(key, manifest)
        log_event(
            log,
            "split_done",
            source=str(source_path),
            parts=len(manifest.chunks),
            size=manifest.source_size_bytes,
        )
        return manifest
