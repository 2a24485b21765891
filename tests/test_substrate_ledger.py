from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from substrateinterface.exceptions import BlockNotFound, ExtrinsicNotFound, SubstrateRequestException

from crustup.checkpoint import CheckpointStore
from crustup.config import PipelineConfig
from crustup.errors import QueryError, SubmissionFault
from crustup.ledger.base import TxCall
from crustup.ledger.substrate import SubstrateLedgerClient, event_names
from crustup.orders import place_storage_order_call
from crustup.pipeline import UploadPipeline
from crustup.testing.fakes import FakeContentStore


def _event(module: str, name: str) -> SimpleNamespace:
    return SimpleNamespace(value={"phase": "ApplyExtrinsic", "event": {"module_id": module, "event_id": name, "attributes": {}}})


class _DroppedReceipt:
    extrinsic_hash = "0xabc"
    block_hash = "0xdef"

    def __init__(self, exc: Exception) -> None:
        self._exc = exc

    @property
    def is_success(self) -> bool:
        raise self._exc

    @property
    def triggered_events(self) -> List[Any]:
        raise self._exc


class _StubSubstrate:
    chain = "Crust Shadow"

    def __init__(self, *, events: Optional[List[Any]] = None, success: bool = True, files: Optional[Dict[str, Any]] = None) -> None:
        self.events = events if events is not None else [_event("Market", "FileSuccess"), _event("System", "ExtrinsicSuccess")]
        self.success = success
        self.files = files or {}
        self.composed: List[Dict[str, Any]] = []
        self.raise_on_submit: Optional[Exception] = None
        self.raise_on_query: Optional[Exception] = None
        self.receipt: Optional[Any] = None

    def init_runtime(self) -> None:
        return None

    def compose_call(self, call_module: str, call_function: str, call_params: Dict[str, Any]) -> Dict[str, Any]:
        c = {"module": call_module, "function": call_function, "params": call_params}
        self.composed.append(c)
        return c

    def create_signed_extrinsic(self, call: Any, keypair: Any) -> Any:
        return {"call": call, "signer": keypair}

    def submit_extrinsic(self, extrinsic: Any, wait_for_inclusion: bool = False) -> Any:
        assert wait_for_inclusion is True
        if self.raise_on_submit is not None:
            raise self.raise_on_submit
        if self.receipt is not None:
            return self.receipt
        return SimpleNamespace(
            extrinsic_hash="0xabc",
            block_hash="0xdef",
            triggered_events=self.events,
            is_success=self.success,
            error_message=None if self.success else {"name": "InsufficientCurrency"},
        )

    def query(self, module: str, storage_function: str, params: List[Any]) -> Any:
        if self.raise_on_query is not None:
            raise self.raise_on_query
        assert (module, storage_function) == ("Market", "FilesV2")
        return SimpleNamespace(value=self.files.get(params[0]))


def _ready_client(stub: _StubSubstrate) -> SubstrateLedgerClient:
    c = SubstrateLedgerClient("ws://stub", connect=lambda: stub, retry_interval_s=0)
    c.wait_ready(1)
    return c


def test_event_names_flattens_receipt_events() -> None:
    receipt = SimpleNamespace(triggered_events=[_event("Balances", "Withdraw"), _event("System", "ExtrinsicSuccess")])
    assert event_names(receipt) == ["Balances.Withdraw", "System.ExtrinsicSuccess"]


def test_submit_maps_receipt() -> None:
    stub = _StubSubstrate()
    c = _ready_client(stub)

    res = c.submit(place_storage_order_call("bafkdemo234567", 10), keypair=SimpleNamespace(ss58_address="5Grw"))

    assert res.succeeded is True
    assert (res.extrinsic_hash, res.block_hash) == ("0xabc", "0xdef")
    assert stub.composed[0]["function"] == "place_storage_order"
    assert stub.composed[0]["params"]["reported_file_size"] == 10


def test_failed_extrinsic_is_reported_not_raised() -> None:
    stub = _StubSubstrate(events=[_event("System", "ExtrinsicFailed")], success=False)
    res = _ready_client(stub).submit(TxCall("Market", "add_prepaid", {"cid": "c", "amount": 1}), keypair=object())

    assert res.succeeded is False
    assert "InsufficientCurrency" in (res.error or "")


def test_rpc_rejection_is_submission_fault() -> None:
    stub = _StubSubstrate()
    stub.raise_on_submit = SubstrateRequestException({"code": 1010, "message": "Invalid Transaction"})

    with pytest.raises(SubmissionFault) as e:
        _ready_client(stub).submit(TxCall("Market", "add_prepaid", {}), keypair=object())
    assert e.value.code == "tx_submit_failed"


def test_submit_before_ready_is_refused() -> None:
    c = SubstrateLedgerClient("ws://stub", connect=lambda: _StubSubstrate())
    with pytest.raises(SubmissionFault):
        c.submit(TxCall("Market", "add_prepaid", {}), keypair=object())


def test_wait_ready_retries_then_gives_up() -> None:
    attempts = []

    def _refuse():
        attempts.append(1)
        raise ConnectionRefusedError("nope")

    c = SubstrateLedgerClient("ws://stub", connect=_refuse, retry_interval_s=0)
    with pytest.raises(SubmissionFault) as e:
        c.wait_ready(0)
    assert e.value.code == "ledger_not_ready"
    assert len(attempts) == 1


def test_wait_ready_recovers_after_transient_failure() -> None:
    stub = _StubSubstrate()
    calls = []

    def _flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionRefusedError("starting")
        return stub

    c = SubstrateLedgerClient("ws://stub", connect=_flaky, retry_interval_s=0)
    c.wait_ready(30)
    c.wait_ready(30)
    assert len(calls) == 3


def test_query_file_returns_value_or_none() -> None:
    stub = _StubSubstrate(files={"c1": {"reported_replica_count": 2, "prepaid": 0}})
    c = _ready_client(stub)

    assert c.query_file("c1") == {"reported_replica_count": 2, "prepaid": 0}
    assert c.query_file("c2") is None


def test_query_transport_error_is_query_error() -> None:
    stub = _StubSubstrate()
    stub.raise_on_query = BrokenPipeError("socket closed")

    with pytest.raises(QueryError):
        _ready_client(stub).query_file("c1")


@pytest.mark.parametrize("exc", [ExtrinsicNotFound("dropped"), BlockNotFound("reorged")])
def test_dropped_extrinsic_is_submission_fault(exc: Exception) -> None:
    stub = _StubSubstrate()
    stub.receipt = _DroppedReceipt(exc)

    with pytest.raises(SubmissionFault) as e:
        _ready_client(stub).submit(place_storage_order_call("bafkdemo234567", 10), keypair=object())
    assert e.value.code == "tx_submit_failed"


@pytest.mark.parametrize("exc", [ValueError("Decoding <FileInfoV2> failed"), NotImplementedError("type not supported")])
def test_undecodable_order_is_query_error(exc: Exception) -> None:
    stub = _StubSubstrate()
    stub.raise_on_query = exc

    with pytest.raises(QueryError) as e:
        _ready_client(stub).query_file("c1")
    assert e.value.code == "order_query_failed"


def test_dropped_order_ends_run_with_summary(make_file) -> None:
    src = make_file("small.bin", 100)
    stub = _StubSubstrate()
    stub.receipt = _DroppedReceipt(ExtrinsicNotFound("dropped"))
    ledger = SubstrateLedgerClient("ws://stub", connect=lambda: stub, retry_interval_s=0)
    cfg = PipelineConfig(source_path=str(src), seed="//Alice", chunk_size_bytes=500, poll_interval_ms=0).validate()

    res = UploadPipeline.build(
        cfg, store=FakeContentStore(), ledger=ledger, keypair=object(), checkpoints=CheckpointStore()
    ).run()

    assert res.ok is False
    assert res.failed_chunk == 0
    assert res.error_code == "tx_submit_failed"
