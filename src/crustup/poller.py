from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from crustup import metrics
from crustup.errors import PollCancelled, QueryError
from crustup.ledger.base import LedgerClient
from crustup.models import OrderState
from crustup.structured_logging import log_event

log = logging.getLogger("crustup.poller")


@dataclass(frozen=True)
class ExitPredicate:
    """Replica condition OR prepaid condition, over the enabled ones.

    Either enabled condition being met is enough (OR, not AND). With both
    wait flags off nothing is awaited and the first snapshot exits.
    """

    wait_for_replica: bool
    wait_for_prepaid: bool

    def replica_met(self, state: OrderState) -> bool:
        return self.wait_for_replica and state.reported_replica_count > 0

    def prepaid_met(self, state: OrderState) -> bool:
        return self.wait_for_prepaid and state.prepaid > 0

    def __call__(self, state: OrderState) -> bool:
        # A disabled condition does not count as met: otherwise the default
        # flags would exit on the first snapshot, before prepaid lands.
        if not self.wait_for_replica and not self.wait_for_prepaid:
            return True
        return self.replica_met(state) or self.prepaid_met(state)


class StatusPoller:
    """Fixed-interval Market.FilesV2 poller.

    No back-off, no iteration cap: only the predicate or the cancel event
    ends the loop.
    """

    def __init__(self, ledger: LedgerClient) -> None:
        self.ledger = ledger

    def poll_until(
        self,
        cid: str,
        predicate: Callable[[OrderState], bool],
        interval_ms: int,
        cancel: Optional[threading.Event] = None,
    ) -> OrderState:
        stop = cancel or threading.Event()
        interval_s = max(0, int(interval_ms)) / 1000.0
        attempt = 0

        while not stop.is_set():
            attempt += 1
            metrics.inc_counter("poll_queries_total")
            try:
                raw = self.ledger.query_file(cid)
                if raw is None:
                    raise QueryError("order_not_found", cid)
                state = OrderState.from_chain(raw)
            except QueryError as e:
                # Transient: keep polling an otherwise healthy order.
                metrics.inc_counter("poll_errors_total")
                log_event(log, "order_query_error", level=logging.WARNING, cid=cid, attempt=attempt, error=str(e))
            else:
                log_event(
                    log,
                    "order_state",
                    cid=cid,
                    attempt=attempt,
                    reported_replica_count=state.reported_replica_count,
                    prepaid=state.prepaid,
                )
                if predicate(state):
                    return state

            stop.wait(interval_s)

        raise PollCancelled("cancelled", "poll", cid)
