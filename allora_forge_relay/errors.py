"""Exception types shared by the connector, provisioner and job pipeline."""

from __future__ import annotations

import enum
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

__all__ = [
    "RelayError",
    "ConfigError",
    "ChainCommandError",
    "LedgerRejectedError",
    "WebhookContractError",
    "InvalidModelOutput",
    "SkipSubmission",
    "SecretNotFoundError",
    "ProvisioningError",
    "ChainErrorAction",
    "classify_chain_error",
    "expected_sequence",
]


class RelayError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(RelayError):
    """Raised when the environment does not describe a usable configuration."""


class ChainCommandError(RelayError):
    """A chain read or write could not be completed (transport level)."""

    def __init__(self, message: str, *, stdout: str = "", stderr: str = "", returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode


class LedgerRejectedError(RelayError):
    """The ledger answered, but refused the transaction."""

    def __init__(self, code: int, raw_log: str, tx_hash: Optional[str] = None) -> None:
        super().__init__(f"transaction rejected with code {code}: {raw_log}")
        self.code = code
        self.raw_log = raw_log
        self.tx_hash = tx_hash

    @property
    def out_of_gas(self) -> bool:
        return "out of gas" in self.raw_log.lower()


class WebhookContractError(RelayError):
    """The model webhook answered with something that is not a usable prediction."""


class InvalidModelOutput(WebhookContractError):
    """A prediction value could not be read as a finite decimal."""


class SkipSubmission(RelayError):
    """The configured output policy asks to skip this cycle."""


class SecretNotFoundError(RelayError):
    """No secret is stored under the requested reference."""


class ProvisioningError(RelayError):
    """Wallet creation could not be completed."""


class ChainErrorAction(str, enum.Enum):
    RETRY = "retry"
    SWITCH_NODE = "switch_node"
    RESET_SEQUENCE = "reset_sequence"
    FAIL = "fail"


_SEQUENCE_RE = re.compile(r"expected\s+(\d+)")
_NODE_MARKERS = ("connection refused", "timed out", "timeout", "503 service unavailable", "no route to host", "dial tcp")


def _error_text(error: BaseException) -> str:
    parts = [str(error)]
    if isinstance(error, ChainCommandError):
        parts.append(error.stderr)
    if isinstance(error, LedgerRejectedError):
        parts.append(error.raw_log)
    return " ".join(p for p in parts if p).lower()


def classify_chain_error(error: BaseException) -> ChainErrorAction:
    """Decide how a failed chain interaction should be handled."""

    text = _error_text(error)
    logger.debug("Classifying chain error: %s", text[:200])

    if "account sequence mismatch" in text:
        return ChainErrorAction.RESET_SEQUENCE
    if any(marker in text for marker in _NODE_MARKERS):
        return ChainErrorAction.SWITCH_NODE
    if "out of gas" in text:
        return ChainErrorAction.RETRY
    if "insufficient funds" in text or "insufficient fee" in text:
        logger.error("Unrecoverable chain error: insufficient funds or fee")
        return ChainErrorAction.FAIL
    return ChainErrorAction.RETRY


def expected_sequence(error: BaseException) -> Optional[int]:
    """Return the sequence number the node expected, when it reported one."""

    match = _SEQUENCE_RE.search(_error_text(error))
    return int(match.group(1)) if match else None
