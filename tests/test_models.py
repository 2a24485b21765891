from __future__ import annotations

import pytest
from pydantic import ValidationError

from crustup.models import ChunkRef, FileManifest, OrderState


def test_manifest_sizes_must_sum_to_source() -> None:
    with pytest.raises(ValidationError):
        FileManifest(
            source_path="a.bin",
            chunk_size_bytes=500,
            source_size_bytes=1200,
            chunks=[ChunkRef(path="p1", size_bytes=500), ChunkRef(path="p2", size_bytes=500)],
        )


def test_order_state_from_chain_keeps_raw_payload() -> None:
    raw = {"file_size": 5, "reported_replica_count": 4, "prepaid": 10, "replicas": {"cTH": {"who": "cTH"}}}
    st = OrderState.from_chain(raw)

    assert (st.reported_replica_count, st.prepaid) == (4, 10)
    assert st.raw == raw


@pytest.mark.parametrize("value,expected", [(None, 0), ("12", 12), ("0x0a", 10), (-3, 0), ("junk", 0)])
def test_order_state_numbers_are_normalised(value, expected: int) -> None:
    assert OrderState.from_chain({"prepaid": value}).prepaid == expected
