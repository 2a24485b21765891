from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Type, TypeVar

from pydantic import BaseModel, ValidationError

from crustup import metrics
from crustup.structured_logging import log_event

Json = Dict[str, Any]
M = TypeVar("M", bound=BaseModel)

log = logging.getLogger("crustup.checkpoint")

# Stage name -> file suffix appended to the keyed path.
# manifest is keyed by the source file, every other stage by the chunk file.
STAGE_SUFFIXES: Dict[str, str] = {
    "manifest": ".meta.splitted.json",
    "upload": ".meta.ipfs.json",
    "order": ".meta.order.json",
    "prepaid": ".meta.prepaid.json",
    "final": ".meta.crust.json",
}


def _canon_json(obj: Any) -> str:
    # No default=str: non-JSON values must fail loudly instead of being persisted lossy.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class CheckpointCorrupt(OSError):
    """A checkpoint file exists but cannot be decoded or validated."""


@dataclass(frozen=True)
class CheckpointKey:
    path: str
    stage: str

    def __post_init__(self) -> None:
        if self.stage not in STAGE_SUFFIXES:
            raise ValueError(f"unknown checkpoint stage: {self.stage!r}")

    @property
    def filename(self) -> str:
        return f"{self.path}{STAGE_SUFFIXES[self.stage]}"


class CheckpointStore:
    """Durable per-stage idempotency markers stored as JSON files.

    Files sit next to the file they describe. They are never deleted or
    expired here; removing one by hand forces that stage to run again.
    """

    def has(self, key: CheckpointKey) -> bool:
        return Path(key.filename).is_file()

    def load(self, key: CheckpointKey) -> Json:
        p = Path(key.filename)
        raw = p.read_text(encoding="utf-8")
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CheckpointCorrupt(f"invalid json in checkpoint {p}") from e
        if not isinstance(obj, dict):
            raise CheckpointCorrupt(f"checkpoint {p} is not an object")
        return obj

    def load_model(self, key: CheckpointKey, model: Type[M]) -> M:
        obj = self.load(key)
        try:
            out = model.model_validate(obj)
        except ValidationError as e:
            raise CheckpointCorrupt(f"checkpoint {key.filename} failed validation: {e}") from e
        metrics.inc_counter("checkpoint_hits_total")
        log_event(log, "checkpoint_hit", stage=key.stage, path=key.path)
        return out

    def save(self, key: CheckpointKey, payload: Json | BaseModel) -> None:
        """Atomically replace the checkpoint file.

        Readers see either the previous file or the complete new one.
        """
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        data = _canon_json(payload).encode("utf-8")

        target = Path(key.filename)
        fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, target)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

        log_event(log, "checkpoint_saved", stage=key.stage, path=key.path)
