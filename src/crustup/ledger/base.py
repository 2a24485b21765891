from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

Json = Dict[str, Any]

SUCCESS_EVENT = "System.ExtrinsicSuccess"
FAILURE_EVENT = "System.ExtrinsicFailed"


@dataclass(frozen=True)
class TxCall:
    module: str
    function: str
    params: Json = field(default_factory=dict)

    @property
    def name(self) -> str:
        return f"{self.module}.{self.function}"


@dataclass(frozen=True)
class InclusionResult:
    """What the ledger reported when the extrinsic landed in a block.

    events holds "<Module>.<Event>" names triggered by this extrinsic only.
    """

    extrinsic_hash: Optional[str]
    block_hash: Optional[str]
    events: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return SUCCESS_EVENT in self.events


class LedgerClient(Protocol):
    def wait_ready(self, timeout_s: float) -> None:
        """Block until the connection can take calls; raise SubmissionFault otherwise."""

    def submit(self, call: TxCall, keypair: Any) -> InclusionResult:
        """Sign, submit and block until the extrinsic is in a block."""

    def query_file(self, cid: str) -> Optional[Json]:
        """Raw Market.FilesV2 value for cid, None while the order is not on chain."""
