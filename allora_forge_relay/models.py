"""Plain data types passed between the relay components."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Mapping, Optional

__all__ = [
    "TopicDetails",
    "Coin",
    "CreatedWallet",
    "ModelSigningDetails",
    "ForecastEntry",
    "WorkerPrediction",
    "SubmissionStatus",
    "SubmissionRecord",
    "Job",
    "JobState",
    "TxOutcome",
    "FundingCheck",
    "WorkerPerformance",
    "PerformanceMetric",
]


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip().strip('"'))
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class TopicDetails:
    """Read-only view of a topic as reported by the ledger."""

    id: int
    epoch_length: int
    epoch_last_ended: int
    worker_submission_window: int
    is_active: Optional[bool] = None
    creator: Optional[str] = None
    metadata: Optional[str] = None

    @classmethod
    def from_chain(cls, topic_id: int, raw: Mapping[str, Any], is_active: Optional[bool] = None) -> Optional["TopicDetails"]:
        """Build from the ``topic`` object of a chain query; ``None`` when timing fields are missing."""

        epoch_length = _as_int(raw.get("epoch_length"))
        epoch_last_ended = _as_int(raw.get("epoch_last_ended"))
        window = _as_int(raw.get("worker_submission_window"))
        if epoch_length is None or epoch_last_ended is None or window is None:
            return None
        return cls(
            id=_as_int(raw.get("id")) or topic_id,
            epoch_length=epoch_length,
            epoch_last_ended=epoch_last_ended,
            worker_submission_window=window,
            is_active=is_active,
            creator=raw.get("creator"),
            metadata=raw.get("metadata"),
        )

    @property
    def window_start(self) -> int:
        return self.epoch_last_ended + 1

    @property
    def window_end(self) -> int:
        return self.epoch_last_ended + self.worker_submission_window


@dataclass(frozen=True)
class Coin:
    amount: Decimal
    denom: str

    def __str__(self) -> str:
        return f"{self.amount.normalize():f}{self.denom}"


@dataclass(frozen=True)
class CreatedWallet:
    id: str
    address: str
    secret_ref: str


@dataclass(frozen=True)
class ModelSigningDetails:
    """Everything the pipeline needs to sign for one model."""

    model_id: str
    topic_id: int
    webhook_url: str
    wallet_id: str
    address: str
    secret_ref: str
    max_gas_price: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class ForecastEntry:
    worker_address: str
    forecasted_value: str


@dataclass(frozen=True)
class WorkerPrediction:
    """A validated webhook answer: an inference, forecasts, or both."""

    inference_value: Optional[str] = None
    forecasts: List[ForecastEntry] = field(default_factory=list)
    extra_data: Optional[bytes] = None
    proof: Optional[str] = None


class SubmissionStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class SubmissionRecord:
    model_id: str
    topic_id: int
    status: SubmissionStatus
    nonce_height: Optional[int] = None
    tx_hash: Optional[str] = None
    raw_log: Optional[str] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None


class JobState(str, enum.Enum):
    ENQUEUED = "enqueued"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"


@dataclass
class Job:
    """A transient unit of work: one submission attempt chain for one model."""

    model_id: str
    webhook_url: str
    topic_id: int
    attempts: int = 0
    state: JobState = JobState.ENQUEUED
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


@dataclass(frozen=True)
class TxOutcome:
    """Typed result of a signed write; exactly one of ``tx_hash``/``error`` is set."""

    tx_hash: Optional[str] = None
    error: Optional[str] = None
    rejected: bool = False
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.tx_hash is not None and self.error is None


@dataclass(frozen=True)
class FundingCheck:
    balance: Optional[int]
    topped_up: bool = False
    tx_hash: Optional[str] = None
    balance_after: Optional[int] = None


@dataclass(frozen=True)
class WorkerPerformance:
    """A worker's inferer EMA score on one topic."""

    topic_id: int
    worker_address: str
    ema_score: Decimal


@dataclass(frozen=True)
class PerformanceMetric:
    model_id: str
    timestamp: datetime
    ema_score: Optional[Decimal]
