from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from crustup import metrics
from crustup.checkpoint import CheckpointKey, CheckpointStore
from crustup.config import PipelineConfig
from crustup.errors import PipelineError, PollCancelled
from crustup.ledger.base import LedgerClient
from crustup.models import ChunkRef, FileManifest, OrderState, TxReceipt, UploadRecord
from crustup.orders import OrderSubmitter, PrepaidFunder
from crustup.poller import ExitPredicate, StatusPoller
from crustup.splitter import Splitter
from crustup.structured_logging import log_event
from crustup.uploader import ContentStore, ContentUploader

Json = Dict[str, Any]

log = logging.getLogger("crustup.pipeline")


def _dump(m: Any) -> Any:
    return None if m is None else m.model_dump(mode="json")


@dataclass
class ChunkResult:
    """Per-stage outcomes for one chunk, filled in as stages complete."""

    index: int
    path: str
    upload: Optional[UploadRecord] = None
    order: Optional[TxReceipt] = None
    prepaid: Optional[TxReceipt] = None
    final: Optional[OrderState] = None
    resumed: bool = False

    def to_json(self) -> Json:
        return {
            "index": self.index,
            "path": self.path,
            "resumed": self.resumed,
            "upload": _dump(self.upload),
            "order": _dump(self.order),
            "prepaid": _dump(self.prepaid),
            "final": _dump(self.final),
        }


@dataclass
class PipelineResult:
    source_path: str
    ok: bool = False
    total_chunks: int = 0
    chunks: List[ChunkResult] = field(default_factory=list)
    failed_chunk: Optional[int] = None
    error_code: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False

    def to_json(self) -> Json:
        return {
            "ok": self.ok,
            "source_path": self.source_path,
            "total_chunks": self.total_chunks,
            "completed_chunks": sum(1 for c in self.chunks if c.final is not None),
            "failed_chunk": self.failed_chunk,
            "error_code": self.error_code,
            "error": self.error,
            "cancelled": self.cancelled,
            "chunks": [c.to_json() for c in self.chunks],
        }


class UploadPipeline:
    """split -> (upload -> order -> prepaid -> poll -> final) per chunk.

    Chunks run one at a time in manifest order. The first failure stops the
    run; completed stages stay checkpointed so a rerun picks up from there.
    """

    def __init__(
        self,
        cfg: PipelineConfig,
        *,
        checkpoints: CheckpointStore,
        splitter: Splitter,
        uploader: ContentUploader,
        orders: OrderSubmitter,
        funder: PrepaidFunder,
        poller: StatusPoller,
        ledger: LedgerClient,
    ) -> None:
        self.cfg = cfg
        self.checkpoints = checkpoints
        self.splitter = splitter
        self.uploader = uploader
        self.orders = orders
        self.funder = funder
        self.poller = poller
        self.ledger = ledger
        self.predicate = ExitPredicate(
            wait_for_replica=bool(cfg.wait_for_replica),
            wait_for_prepaid=bool(cfg.wait_for_prepaid),
        )
        self._ledger_ready = False

    @classmethod
    def build(
        cls,
        cfg: PipelineConfig,
        *,
        store: ContentStore,
        ledger: LedgerClient,
        keypair: Any,
        checkpoints: Optional[CheckpointStore] = None,
    ) -> "UploadPipeline":
        cp = checkpoints or CheckpointStore()
        return cls(
            cfg,
            checkpoints=cp,
            splitter=Splitter(cp),
            uploader=ContentUploader(store, cp),
            orders=OrderSubmitter(ledger, keypair, cp),
            funder=PrepaidFunder(ledger, keypair, cp),
            poller=StatusPoller(ledger),
            ledger=ledger,
        )

    def _ensure_ledger_ready(self) -> None:
        if self._ledger_ready:
            return
        self.ledger.wait_ready(float(self.cfg.ready_timeout_s))
        self._ledger_ready = True

    def process_chunk(self, index: int, chunk: ChunkRef, cancel: threading.Event) -> ChunkResult:
        res = ChunkResult(index=index, path=chunk.path)

        final_key = CheckpointKey(path=chunk.path, stage="final")
        if self.checkpoints.has(final_key):
            res.final = self.checkpoints.load_model(final_key, OrderState)
            res.resumed = True
            log_event(log, "chunk_skipped", index=index, path=chunk.path)
            return res

        log_event(log, "chunk_start", index=index, path=chunk.path, size=chunk.size_bytes)

        res.upload = self.uploader.upload(chunk.path)
        cid = res.upload.cid

        self._ensure_ledger_ready()
        res.order = self.orders.place_order(chunk.path, cid, res.upload.size)

        if int(self.cfg.prepaid_amount) > 0:
            res.prepaid = self.funder.add_prepaid(chunk.path, cid, int(self.cfg.prepaid_amount))

        res.final = self.poller.poll_until(cid, self.predicate, int(self.cfg.poll_interval_ms), cancel)
        self.checkpoints.save(final_key, res.final)

        metrics.inc_counter("chunks_completed_total")
        log_event(
            log,
            "chunk_done",
            index=index,
            cid=cid,
            reported_replica_count=res.final.reported_replica_count,
            prepaid=res.final.prepaid,
        )
        return res

    def run(self, cancel: Optional[threading.Event] = None) -> PipelineResult:
        stop = cancel or threading.Event()
        result = PipelineResult(source_path=str(self.cfg.source_path))
        log_event(log, "pipeline_start", config=self.cfg.redacted())

        current: Optional[int] = None
        try:
            manifest: FileManifest = self.splitter.split(self.cfg.source_path, int(self.cfg.chunk_size_bytes))
            result.total_chunks = len(manifest.chunks)
            metrics.set_gauge("chunks_total", len(manifest.chunks))

            for i, chunk in enumerate(manifest.chunks):
                if stop.is_set():
                    raise PollCancelled("cancelled", "between_chunks", i)
                current = i
                result.chunks.append(self.process_chunk(i, chunk, stop))
            current = None
        except PollCancelled as e:
            result.cancelled = True
            result.error_code = e.code
            result.error = str(e)
            log_event(log, "pipeline_cancelled", level=logging.WARNING, chunk=current)
            return result
        except (PipelineError, OSError) as e:
            result.failed_chunk = current
            result.error_code = e.code if isinstance(e, PipelineError) else "io_error"
            result.error = str(e)
            log_event(
                log,
                "pipeline_aborted",
                level=logging.ERROR,
                chunk=current,
                error_code=result.error_code,
                error=result.error,
            )
            return result

        result.ok = True
        log_event(log, "pipeline_done", chunks=result.total_chunks)
        return result
