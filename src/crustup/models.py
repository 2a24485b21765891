from __future__ import annotations

"""Pydantic models for every payload persisted as a checkpoint.

Field names are the on-disk compatibility contract: a rerun (possibly by a
newer version) must be able to read what an earlier run wrote.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class ChunkRef(BaseModel):
    path: str = Field(..., description="Path of the part file")
    size_bytes: int = Field(..., ge=0)


class FileManifest(BaseModel):
    source_path: str
    chunk_size_bytes: int = Field(..., gt=0)
    source_size_bytes: int = Field(..., ge=0)
    chunks: List[ChunkRef] = Field(default_factory=list)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _sizes_add_up(self) -> "FileManifest":
        total = sum(c.size_bytes for c in self.chunks)
        if total != self.source_size_bytes:
            raise ValueError(f"chunk sizes sum to {total}, source is {self.source_size_bytes}")
        return self


class UploadRecord(BaseModel):
    cid: str = Field(..., min_length=1)
    # Cumulative size as reported by the store (includes DAG overhead).
    size: int = Field(..., ge=0)

    model_config = {"frozen": True}


class TxReceipt(BaseModel):
    call: str = Field(..., description="Module.function, e.g. Market.place_storage_order")
    cid: str
    extrinsic_hash: Optional[str] = None
    block_hash: Optional[str] = None
    events: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}


def _non_negative_int(v: Any) -> int:
    """Chain numbers may arrive as int, decimal str or 0x-hex str."""
    if v is None or isinstance(v, bool):
        return 0
    if isinstance(v, int):
        return max(0, v)
    s = str(v).strip()
    try:
        n = int(s, 16) if s.lower().startswith("0x") else int(s)
    except ValueError:
        return 0
    return max(0, n)


class OrderState(BaseModel):
    """Snapshot of Market.FilesV2(cid) as seen by the poller."""

    reported_replica_count: int = Field(default=0, ge=0)
    prepaid: int = Field(default=0, ge=0)
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_chain(cls, raw: Dict[str, Any]) -> "OrderState":
        return cls(
            reported_replica_count=_non_negative_int(raw.get("reported_replica_count")),
            prepaid=_non_negative_int(raw.get("prepaid")),
            raw=dict(raw),
        )
