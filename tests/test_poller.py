from __future__ import annotations

import threading

import pytest

from crustup import metrics
from crustup.errors import PollCancelled
from crustup.models import OrderState
from crustup.poller import ExitPredicate, StatusPoller
from crustup.testing.fakes import FakeLedger, simulated_query_error

CID = "bafkpolldemo23456"


def _st(replicas: int, prepaid: int) -> dict:
    return {"reported_replica_count": replicas, "prepaid": prepaid, "file_size": 10}


@pytest.mark.parametrize(
    "wait_replica,wait_prepaid,replicas,prepaid,expected",
    [
        (False, False, 0, 0, True),
        (True, False, 0, 0, False),
        (True, False, 0, 99, False),
        (True, False, 1, 0, True),
        (False, True, 5, 0, False),
        (False, True, 0, 1, True),
        (True, True, 0, 0, False),
        (True, True, 2, 0, True),
        (True, True, 0, 7, True),
    ],
)
def test_exit_predicate(wait_replica: bool, wait_prepaid: bool, replicas: int, prepaid: int, expected: bool) -> None:
    p = ExitPredicate(wait_for_replica=wait_replica, wait_for_prepaid=wait_prepaid)
    assert p(OrderState(reported_replica_count=replicas, prepaid=prepaid)) is expected


def test_both_flags_off_exits_on_first_snapshot(ledger: FakeLedger) -> None:
    ledger.script(CID, _st(0, 0), _st(3, 3))
    st = StatusPoller(ledger).poll_until(CID, ExitPredicate(False, False), 0)

    assert st.reported_replica_count == 0
    assert len(ledger.queries) == 1


def test_replica_wait_ignores_prepaid(ledger: FakeLedger) -> None:
    ledger.script(CID, _st(0, 0), _st(0, 0), _st(0, 0), _st(2, 0))
    st = StatusPoller(ledger).poll_until(CID, ExitPredicate(True, False), 0)

    assert st.reported_replica_count == 2
    assert st.prepaid == 0
    assert len(ledger.queries) == 4


def test_prepaid_wait_exits_when_prepaid_first_positive(ledger: FakeLedger) -> None:
    ledger.script(CID, _st(0, 0), _st(0, 0), _st(0, 100_000_000_000))
    st = StatusPoller(ledger).poll_until(CID, ExitPredicate(False, True), 0)

    assert st.prepaid == 100_000_000_000
    assert st.raw["file_size"] == 10
    assert len(ledger.queries) == 3


def test_query_error_is_logged_and_polling_continues(ledger: FakeLedger) -> None:
    ledger.script(CID, simulated_query_error(CID), _st(0, 5))
    st = StatusPoller(ledger).poll_until(CID, ExitPredicate(False, True), 0)

    assert st.prepaid == 5
    assert metrics.counter("poll_errors_total") == 1
    assert metrics.counter("poll_queries_total") == 2


def test_order_not_yet_on_chain_counts_as_non_exiting(ledger: FakeLedger) -> None:
    ledger.script(CID, None, None, _st(0, 0))
    st = StatusPoller(ledger).poll_until(CID, ExitPredicate(False, False), 0)

    assert st.prepaid == 0
    assert len(ledger.queries) == 3


def test_hex_encoded_chain_numbers_are_decoded(ledger: FakeLedger) -> None:
    ledger.script(CID, {"reported_replica_count": 0, "prepaid": "0x64"})
    st = StatusPoller(ledger).poll_until(CID, ExitPredicate(False, True), 0)
    assert st.prepaid == 100


def test_cancel_stops_an_unbounded_poll(ledger: FakeLedger) -> None:
    cancel = threading.Event()

    class _CancelAfterThree(FakeLedger):
        def query_file(self, cid):
            out = super().query_file(cid)
            if len(self.queries) >= 3:
                cancel.set()
            return out

    led = _CancelAfterThree()
    led.script(CID, *[_st(0, 0)] * 10)

    with pytest.raises(PollCancelled):
        StatusPoller(led).poll_until(CID, ExitPredicate(True, True), 1, cancel)

    assert len(led.queries) == 3


def test_already_cancelled_never_queries(ledger: FakeLedger) -> None:
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(PollCancelled):
        StatusPoller(ledger).poll_until(CID, ExitPredicate(False, False), 0, cancel)
    assert ledger.queries == []
