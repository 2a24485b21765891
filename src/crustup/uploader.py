from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO, Protocol, Tuple

from crustup import metrics
from crustup.checkpoint import CheckpointKey, CheckpointStore
from crustup.models import UploadRecord
from crustup.structured_logging import log_event

log = logging.getLogger("crustup.uploader")


class ContentStore(Protocol):
    def add_fileobj(self, fileobj: BinaryIO, *, name: str = ...) -> Tuple[str, int]: ...

    def stat(self, cid: str) -> int: ...


class ContentUploader:
    """Adds one chunk to the content store, at most once per checkpoint."""

    def __init__(self, store: ContentStore, checkpoints: CheckpointStore) -> None:
        self.store = store
        self.checkpoints = checkpoints

    def upload(self, chunk_path: str) -> UploadRecord:
        key = CheckpointKey(path=str(chunk_path), stage="upload")
        if self.checkpoints.has(key):
            return self.checkpoints.load_model(key, UploadRecord)

        p = Path(chunk_path)
        raw_bytes = p.stat().st_size
        log_event(log, "upload_start", path=str(chunk_path), bytes=raw_bytes)

        # StoreUnavailable propagates: no retry here.
        with p.open("rb") as f:
            cid, _ = self.store.add_fileobj(f, name=p.name)
        size = self.store.stat(cid)

        rec = UploadRecord(cid=cid, size=int(size))
        self.checkpoints.save(key, rec)
        metrics.inc_counter("uploads_total")
        log_event(log, "upload_done", path=str(chunk_path), cid=rec.cid, size=rec.size, raw_bytes=raw_bytes)
        return rec
