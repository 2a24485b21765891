from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure local "src/" takes precedence over any globally-installed "crustup" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from crustup import metrics  # noqa: E402
from crustup.checkpoint import CheckpointStore  # noqa: E402
from crustup.testing.fakes import FakeContentStore, FakeLedger  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def checkpoints() -> CheckpointStore:
    return CheckpointStore()


@pytest.fixture
def store() -> FakeContentStore:
    return FakeContentStore()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


def _write_file(path: Path, size: int) -> Path:
    # Non-repeating content, so every part gets a distinct cid.
    block = bytes(range(251))
    with open(path, "wb") as fh:
        left = int(size)
        n = 0
        while left > 0:
            chunk = (block + n.to_bytes(4, "big"))[: min(left, 255)]
            fh.write(chunk)
            left -= len(chunk)
            n += 1
    return path


@pytest.fixture
def make_file(tmp_path: Path):
    def _make(name: str, size: int) -> Path:
        return _write_file(tmp_path / name, size)

    return _make
