from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from substrateinterface import SubstrateInterface
from substrateinterface.exceptions import BlockNotFound, ExtrinsicNotFound, SubstrateRequestException
from websocket import WebSocketException

from crustup.errors import QueryError, SubmissionFault
from crustup.ledger.base import InclusionResult, TxCall
from crustup.structured_logging import log_event

Json = Dict[str, Any]

log = logging.getLogger("crustup.ledger")

_TRANSPORT_ERRORS = (OSError, WebSocketException)
# Raised by receipt properties when the extrinsic or its block was dropped.
_DROPPED_ERRORS = (ExtrinsicNotFound, BlockNotFound)
# Runtime metadata mismatch or undecodable storage value.
_DECODE_ERRORS = (ValueError, TypeError, NotImplementedError)


def event_names(receipt: Any) -> List[str]:
    """"<Module>.<Event>" for each event triggered by the receipt's extrinsic."""
    out: List[str] = []
    for rec in receipt.triggered_events or []:
        value = getattr(rec, "value", rec)
        if not isinstance(value, dict):
            continue
        ev = value.get("event") if isinstance(value.get("event"), dict) else value
        module = str(ev.get("module_id") or "")
        name = str(ev.get("event_id") or "")
        if module and name:
            out.append(f"{module}.{name}")
    return out


class SubstrateLedgerClient:
    """Crust parachain access through substrate-interface.

    The websocket connection is opened by wait_ready() and then reused by
    every call for the process lifetime. Calls are not thread safe: one
    account, one nonce sequence, one caller at a time.
    """

    def __init__(
        self,
        url: str,
        *,
        connect: Optional[Callable[[], SubstrateInterface]] = None,
        retry_interval_s: float = 1.0,
    ) -> None:
        self.url = url
        self.retry_interval_s = float(retry_interval_s)
        self._connect = connect or (lambda: SubstrateInterface(url=url, auto_reconnect=True))
        self._substrate: Optional[SubstrateInterface] = None
        self._ready = False

    def wait_ready(self, timeout_s: float) -> None:
        if self._ready:
            return
        deadline = time.monotonic() + float(timeout_s)
        attempt = 0
        while True:
            attempt += 1
            try:
                if self._substrate is None:
                    self._substrate = self._connect()
                self._substrate.init_runtime()
                self._ready = True
                log_event(log, "ledger_ready", url=self.url, chain=str(self._substrate.chain or ""), attempts=attempt)
                return
            except (SubstrateRequestException, *_TRANSPORT_ERRORS) as e:
                self._substrate = None
                self._ready = False
                if time.monotonic() >= deadline:
                    raise SubmissionFault("ledger_not_ready", self.url, str(e)) from e
                log_event(log, "ledger_not_ready", level=logging.WARNING, url=self.url, attempt=attempt, error=str(e))
                time.sleep(self.retry_interval_s)

    def _api(self) -> SubstrateInterface:
        if self._substrate is None or not self._ready:
            raise SubmissionFault("ledger_not_ready", self.url, "wait_ready() not called")
        return self._substrate

    def submit(self, call: TxCall, keypair: Any) -> InclusionResult:
        api = self._api()
        try:
            composed = api.compose_call(call_module=call.module, call_function=call.function, call_params=dict(call.params))
            extrinsic = api.create_signed_extrinsic(call=composed, keypair=keypair)
            log_event(log, "tx_submit", call=call.name, signer=str(getattr(keypair, "ss58_address", "")))
            receipt = api.submit_extrinsic(extrinsic, wait_for_inclusion=True)
            result = InclusionResult(
                extrinsic_hash=receipt.extrinsic_hash,
                block_hash=receipt.block_hash,
                events=event_names(receipt),
                error=None if receipt.is_success else str(receipt.error_message),
            )
        except (SubstrateRequestException, ValueError, *_DROPPED_ERRORS, *_TRANSPORT_ERRORS) as e:
            raise SubmissionFault("tx_submit_failed", call.name, str(e)) from e

        log_event(
            log,
            "tx_in_block",
            call=call.name,
            extrinsic_hash=result.extrinsic_hash,
            block_hash=result.block_hash,
            events=result.events,
        )
        return result

    def query_file(self, cid: str) -> Optional[Json]:
        api = self._api()
        try:
            obj = api.query(module="Market", storage_function="FilesV2", params=[cid])
        except (SubstrateRequestException, *_DECODE_ERRORS, *_TRANSPORT_ERRORS) as e:
            raise QueryError("order_query_failed", cid, str(e)) from e
        value = getattr(obj, "value", None)
        if value is None:
            return None
        if not isinstance(value, dict):
            raise QueryError("order_query_failed", cid, f"unexpected value: {value!r}")
        return value
