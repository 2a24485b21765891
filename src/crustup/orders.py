from __future__ import annotations

import logging
from typing import Any

from crustup import metrics
from crustup.checkpoint import CheckpointKey, CheckpointStore
from crustup.errors import SubmissionFault
from crustup.ledger.base import LedgerClient, TxCall
from crustup.models import TxReceipt
from crustup.structured_logging import log_event

log = logging.getLogger("crustup.orders")


def place_storage_order_call(cid: str, size: int) -> TxCall:
    return TxCall(
        module="Market",
        function="place_storage_order",
        params={
            "cid": cid,
            "reported_file_size": int(size),
            "tips": 0,
            # Current runtimes name the argument `_memo`, older ones `memo`.
            # The call encoder ignores keys the runtime does not declare.
            "_memo": "",
            "memo": "",
        },
    )


def add_prepaid_call(cid: str, amount: int) -> TxCall:
    return TxCall(module="Market", function="add_prepaid", params={"cid": cid, "amount": int(amount)})


def submit_and_confirm(ledger: LedgerClient, keypair: Any, call: TxCall, cid: str) -> TxReceipt:
    """Submit one extrinsic and require System.ExtrinsicSuccess in its block.

    Never retried: resubmitting could place a second order for the same cid.
    """
    res = ledger.submit(call, keypair)
    if not res.succeeded:
        log_event(
            log,
            "tx_failed",
            level=logging.ERROR,
            call=call.name,
            cid=cid,
            extrinsic_hash=res.extrinsic_hash,
            events=res.events,
            error=res.error,
        )
        raise SubmissionFault("extrinsic_failed", call.name, res.error or ",".join(res.events) or "no_success_event")

    return TxReceipt(
        call=call.name,
        cid=cid,
        extrinsic_hash=res.extrinsic_hash,
        block_hash=res.block_hash,
        events=list(res.events),
    )


class OrderSubmitter:
    def __init__(self, ledger: LedgerClient, keypair: Any, checkpoints: CheckpointStore) -> None:
        self.ledger = ledger
        self.keypair = keypair
        self.checkpoints = checkpoints

    def place_order(self, chunk_path: str, cid: str, size: int) -> TxReceipt:
        """Market.place_storage_order(cid, size, tips=0, memo="")."""
        key = CheckpointKey(path=str(chunk_path), stage="order")
        if self.checkpoints.has(key):
            return self.checkpoints.load_model(key, TxReceipt)

        receipt = submit_and_confirm(self.ledger, self.keypair, place_storage_order_call(cid, size), cid)
        self.checkpoints.save(key, receipt)
        metrics.inc_counter("orders_placed_total")
        log_event(log, "order_placed", cid=cid, size=int(size), block_hash=receipt.block_hash)
        return receipt


class PrepaidFunder:
    def __init__(self, ledger: LedgerClient, keypair: Any, checkpoints: CheckpointStore) -> None:
        self.ledger = ledger
        self.keypair = keypair
        self.checkpoints = checkpoints

    def add_prepaid(self, chunk_path: str, cid: str, amount: int) -> TxReceipt:
        key = CheckpointKey(path=str(chunk_path), stage="prepaid")
        if self.checkpoints.has(key):
            return self.checkpoints.load_model(key, TxReceipt)

        receipt = submit_and_confirm(self.ledger, self.keypair, add_prepaid_call(cid, amount), cid)
        self.checkpoints.save(key, receipt)
        metrics.inc_counter("prepaid_added_total")
        log_event(log, "prepaid_added", cid=cid, amount=int(amount), block_hash=receipt.block_hash)
        return receipt
