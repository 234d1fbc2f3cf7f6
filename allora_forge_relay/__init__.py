from __future__ import annotations

from .config import RelayConfig
from .connector import LedgerConnector
from .errors import ChainErrorAction, RelayError, classify_chain_error
from .models import Job, JobState, SubmissionStatus, TopicDetails, TxOutcome, WorkerPrediction
from .nonce import NonceWindowResolver
from .pipeline import SubmissionPipeline, WorkerPool
from .runtime import Relay
from .wallet import WalletProvisioner

__all__ = [
    "RelayConfig",
    "LedgerConnector",
    "ChainErrorAction",
    "RelayError",
    "classify_chain_error",
    "Job",
    "JobState",
    "SubmissionStatus",
    "TopicDetails",
    "TxOutcome",
    "WorkerPrediction",
    "NonceWindowResolver",
    "SubmissionPipeline",
    "WorkerPool",
    "Relay",
    "WalletProvisioner",
]
