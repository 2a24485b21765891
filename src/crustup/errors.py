from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class PipelineError(Exception):
    """Canonical error type for upload/order pipeline failures."""

    code: str
    reason: str
    details: Any | None = None

    def __str__(self) -> str:
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


class StoreUnavailable(PipelineError):
    """Content store unreachable, or it rejected the content."""


class SubmissionFault(PipelineError):
    """Transaction rejected, dropped, or included without a success event."""


class QueryError(PipelineError):
    """Transient ledger state query failure."""


class ConfigError(PipelineError):
    """Invalid or missing configuration detected at startup."""


class PollCancelled(PipelineError):
    """Cancellation observed while waiting on the ledger."""
