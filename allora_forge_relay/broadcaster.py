"""Signed transaction broadcast through the ``allorad`` CLI."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Protocol, Set, Union

from .chain_reader import AlloradRunner
from .errors import ChainCommandError, LedgerRejectedError
from .signing import derive_keypair

logger = logging.getLogger(__name__)

__all__ = ["BankSend", "WorkerPayload", "BroadcastResult", "TxBroadcaster", "AlloradTxBroadcaster"]

_GAS_ESTIMATE_RE = re.compile(r"gas estimate:\s*(\d+)", re.IGNORECASE)


@dataclass(frozen=True)
class BankSend:
    to_address: str
    amount: str


@dataclass(frozen=True)
class WorkerPayload:
    payload: str


TxMessage = Union[BankSend, WorkerPayload]


@dataclass(frozen=True)
class BroadcastResult:
    tx_hash: str
    code: int = 0
    raw_log: str = ""


class TxBroadcaster(Protocol):
    async def simulate(self, signer_mnemonic: str, msg: TxMessage) -> int: ...

    async def broadcast(self, signer_mnemonic: str, msg: TxMessage, *, gas: int, fees: str) -> BroadcastResult: ...


class AlloradTxBroadcaster:
    """Signs with the local keyring and broadcasts in ``sync`` mode.

    The signer mnemonic is imported into the keyring under ``relay-<address>``
    the first time it is used. It is passed to ``allorad`` on stdin only.
    """

    def __init__(self, runner: AlloradRunner, chain_id: str, keyring_backend: str = "test") -> None:
        self.runner = runner
        self.chain_id = chain_id
        self.keyring_backend = keyring_backend
        self._imported: Set[str] = set()

    async def _ensure_key(self, mnemonic: str) -> str:
        address = derive_keypair(mnemonic).address
        name = f"relay-{address}"
        if name in self._imported:
            return name
        try:
            await self.runner.run(
                ["keys", "show", name, "-a", "--keyring-backend", self.keyring_backend], with_node=False
            )
            logger.debug("Key %s already present in keyring", name)
        except ChainCommandError:
            logger.info("Importing signer %s into %s keyring", address, self.keyring_backend)
            await self.runner.run(
                ["keys", "add", name, "--recover", "--keyring-backend", self.keyring_backend],
                stdin=mnemonic + "\n",
                with_node=False,
            )
        self._imported.add(name)
        return name

    def _tx_args(self, key_name: str, msg: TxMessage) -> List[str]:
        if isinstance(msg, BankSend):
            body = ["tx", "bank", "send", key_name, msg.to_address, msg.amount]
        elif isinstance(msg, WorkerPayload):
            body = ["tx", "emissions", "insert-worker-payload", key_name, msg.payload]
        else:
            raise TypeError(f"unsupported message type {type(msg).__name__}")
        return body + [
            "--from",
            key_name,
            "--keyring-backend",
            self.keyring_backend,
            "--chain-id",
            self.chain_id,
        ]

    async def simulate(self, signer_mnemonic: str, msg: TxMessage) -> int:
        key_name = await self._ensure_key(signer_mnemonic)
        result = await self.runner.run(self._tx_args(key_name, msg) + ["--gas", "auto", "--dry-run"])
        match = _GAS_ESTIMATE_RE.search(result.stdout) or _GAS_ESTIMATE_RE.search(result.stderr)
        if not match:
            raise ChainCommandError("Simulation did not report a gas estimate", stdout=result.stdout, stderr=result.stderr)
        return int(match.group(1))

    async def broadcast(self, signer_mnemonic: str, msg: TxMessage, *, gas: int, fees: str) -> BroadcastResult:
        key_name = await self._ensure_key(signer_mnemonic)
        args = self._tx_args(key_name, msg) + [
            "--fees",
            fees,
            "--gas",
            str(gas),
            "--broadcast-mode",
            "sync",
            "--output",
            "json",
            "--yes",
        ]
        result = await self.runner.run(args)
        return parse_broadcast_response(result.stdout)


def parse_broadcast_response(stdout: str) -> BroadcastResult:
    try:
        resp = json.loads(stdout)
    except json.JSONDecodeError as exc:
        raise ChainCommandError(f"Failed to parse JSON response: {exc}", stdout=stdout) from exc

    tx_hash: Optional[str] = resp.get("txhash")
    code = int(resp.get("code", 0) or 0)
    raw_log = str(resp.get("raw_log") or "")
    if code != 0:
        raise LedgerRejectedError(code, raw_log, tx_hash)
    if not tx_hash:
        raise ChainCommandError("Broadcast response carried no txhash", stdout=stdout)
    return BroadcastResult(tx_hash=tx_hash, code=code, raw_log=raw_log)
