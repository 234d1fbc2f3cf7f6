"""
Ledger connector: every read and signed write the relay performs.

Calls go through one retry policy (3 attempts, 1s then 2s by default).
After the last attempt a read resolves to ``None`` and a write to a
:class:`~allora_forge_relay.models.TxOutcome` carrying the error, so callers
always have a "could not determine" branch instead of an exception.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import re
from dataclasses import asdict
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .broadcaster import BankSend, TxBroadcaster, TxMessage, WorkerPayload
from .chain_reader import ChainReader, NodeRing
from .config import RelayConfig
from .errors import ChainErrorAction, LedgerRejectedError, classify_chain_error, expected_sequence
from .models import Coin, TopicDetails, TxOutcome, WorkerPerformance, WorkerPrediction
from .retry import RetryPolicy, Sleep, retry_async
from .signing import JsonPayloadCodec, build_worker_bundle, canonical_json, derive_keypair

logger = logging.getLogger(__name__)

__all__ = ["LedgerConnector", "parse_amount", "compute_fee"]

T = TypeVar("T")

_AMOUNT_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z][a-zA-Z0-9/]*)\s*$")


def parse_amount(text: str) -> Coin:
    """Split ``"50000uallo"`` into a :class:`Coin`."""

    match = _AMOUNT_RE.match(text or "")
    if not match:
        raise ValueError(f"unrecognised coin amount {text!r}")
    try:
        amount = Decimal(match.group(1))
    except InvalidOperation as exc:
        raise ValueError(f"unrecognised coin amount {text!r}") from exc
    return Coin(amount=amount, denom=match.group(2))


def compute_fee(gas_limit: int, gas_price: Coin) -> str:
    """Fee string for ``gas_limit`` at ``gas_price``, rounded up to a whole unit."""

    total = Decimal(gas_limit) * gas_price.amount
    return f"{math.ceil(total)}{gas_price.denom}"


class LedgerConnector:
    def __init__(
        self,
        reader: ChainReader,
        broadcaster: TxBroadcaster,
        *,
        nodes: Optional[NodeRing] = None,
        policy: Optional[RetryPolicy] = None,
        fee_denom: str = "uallo",
        default_gas_price: str = "10uallo",
        universal_gas_limit: int = 200_000,
        fixed_gas_limit: int = 180_000,
        gas_adjustment: float = 1.3,
        fast_broadcast: bool = False,
        dry_run: bool = False,
        codec: Optional[JsonPayloadCodec] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.reader = reader
        self.broadcaster = broadcaster
        self.nodes = nodes
        self.policy = policy or RetryPolicy()
        self.fee_denom = fee_denom
        self.default_gas_price = default_gas_price
        self.universal_gas_limit = universal_gas_limit
        self.fixed_gas_limit = fixed_gas_limit
        self.gas_adjustment = gas_adjustment
        self.fast_broadcast = fast_broadcast
        self.dry_run = dry_run
        self.codec = codec or JsonPayloadCodec()
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: RelayConfig,
        reader: ChainReader,
        broadcaster: TxBroadcaster,
        nodes: Optional[NodeRing] = None,
    ) -> "LedgerConnector":
        return cls(
            reader,
            broadcaster,
            nodes=nodes,
            policy=RetryPolicy.from_millis(config.chain_max_retries, config.chain_retry_base_ms),
            fee_denom=config.fee_denom,
            default_gas_price=config.default_gas_price,
            universal_gas_limit=config.universal_gas_limit,
            fixed_gas_limit=config.submission_fixed_gas_limit,
            gas_adjustment=config.gas_adjustment,
            fast_broadcast=config.fast_broadcast,
            dry_run=config.dry_run_transactions,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _on_retry(self, exc: BaseException, attempt: int) -> None:
        action = classify_chain_error(exc)
        if action is ChainErrorAction.SWITCH_NODE and self.nodes is not None:
            self.nodes.advance()
        elif action is ChainErrorAction.RESET_SEQUENCE:
            logger.warning("Account sequence mismatch, node expects %s; retrying", expected_sequence(exc))

    async def _read(self, label: str, call: Callable[[], Awaitable[T]]) -> Optional[T]:
        attempt = await retry_async(call, self.policy, label=label, on_retry=self._on_retry, sleep=self._sleep)
        if not attempt.ok:
            logger.error("%s could not be determined: %s", label, attempt.error)
            return None
        return attempt.value

    async def query_topic(self, topic_id: int, check_active: bool = True) -> Optional[TopicDetails]:
        raw = await self._read(f"topic {topic_id}", lambda: self.reader.topic(topic_id))
        if raw is None:
            return None
        is_active = None
        if check_active:
            is_active = await self._read(f"is-topic-active {topic_id}", lambda: self.reader.is_topic_active(topic_id))
        details = TopicDetails.from_chain(topic_id, raw, is_active)
        if details is None:
            logger.warning("Topic %s is missing epoch fields: %s", topic_id, dict(raw))
        return details

    async def get_current_height(self) -> Optional[int]:
        return await self._read("block height", self.reader.latest_height)

    async def get_balance(self, address: str) -> Optional[int]:
        return await self._read(f"balance {address}", lambda: self.reader.balance(address, self.fee_denom))

    async def is_worker_nonce_unfulfilled(self, topic_id: int, height: int) -> Optional[bool]:
        return await self._read(
            f"worker-nonce-unfulfilled {topic_id}@{height}",
            lambda: self.reader.is_worker_nonce_unfulfilled(topic_id, height),
        )

    async def can_submit(self, topic_id: int, address: str) -> Optional[bool]:
        return await self._read(
            f"can-submit {topic_id}/{address}", lambda: self.reader.can_submit_worker_payload(topic_id, address)
        )

    async def get_active_inferers(self, topic_id: int) -> Optional[List[str]]:
        return await self._read(f"active-inferers {topic_id}", lambda: self.reader.active_inferers(topic_id))

    async def get_active_topics(self) -> Optional[List[Dict[str, Any]]]:
        height = await self.get_current_height()
        if height is None:
            return None
        return await self._read(f"active-topics@{height}", lambda: self.reader.active_topics_at_block(height))

    async def get_worker_performance(self, topic_id: int, address: str) -> Optional[WorkerPerformance]:
        raw = await self._read(
            f"inferer-score-ema {topic_id}/{address}", lambda: self.reader.inferer_score_ema(topic_id, address)
        )
        if raw is None:
            return None
        try:
            score = Decimal(str(raw).strip())
        except InvalidOperation:
            logger.warning("Unparseable EMA score for %s on topic %s: %r", address, topic_id, raw)
            return None
        if not score.is_finite():
            logger.warning("Non-finite EMA score for %s on topic %s: %r", address, topic_id, raw)
            return None
        return WorkerPerformance(topic_id=topic_id, worker_address=address, ema_score=score)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def transfer(self, from_mnemonic: str, to_address: str, amount: int) -> TxOutcome:
        msg = BankSend(to_address=to_address, amount=f"{amount}{self.fee_denom}")
        logger.info("Transferring %s to %s", msg.amount, to_address)
        return await self._write(
            f"transfer to {to_address}", from_mnemonic, msg, self.default_gas_price, fixed_gas=self.universal_gas_limit
        )

    async def sign_and_submit(
        self,
        mnemonic: str,
        topic_id: int,
        prediction: WorkerPrediction,
        gas_price: Optional[str],
        nonce_height: int,
    ) -> TxOutcome:
        """Sign a worker bundle for ``nonce_height`` and broadcast it."""

        try:
            keypair = derive_keypair(mnemonic)
            bundle = build_worker_bundle(keypair, topic_id, nonce_height, prediction)
        except ValueError as exc:
            logger.error("Could not build worker payload for topic %s: %s", topic_id, exc)
            return TxOutcome(error=str(exc))

        msg = WorkerPayload(payload=self.codec.encode(bundle))
        logger.info(
            "Submitting worker payload: topic_id=%s nonce=%s worker=%s", topic_id, nonce_height, keypair.address
        )
        fixed_gas = self.fixed_gas_limit if self.fast_broadcast else None
        return await self._write(
            f"insert-worker-payload {topic_id}@{nonce_height}",
            mnemonic,
            msg,
            gas_price or self.default_gas_price,
            fixed_gas=fixed_gas,
        )

    async def _write(
        self,
        label: str,
        mnemonic: str,
        msg: TxMessage,
        gas_price: str,
        *,
        fixed_gas: Optional[int] = None,
    ) -> TxOutcome:
        try:
            price = parse_amount(gas_price)
        except ValueError as exc:
            return TxOutcome(error=str(exc))

        if self.dry_run:
            gas = fixed_gas or self.fixed_gas_limit
            digest = hashlib.sha256(canonical_json({"label": label, "msg": asdict(msg)}).encode("utf-8")).hexdigest()
            tx_hash = f"dryrun-{digest[:16]}"
            logger.info("DRY RUN %s: gas=%s fees=%s tx=%s", label, gas, compute_fee(gas, price), tx_hash)
            return TxOutcome(tx_hash=tx_hash, attempts=1)

        gas_boost = 1.0

        async def attempt():
            if fixed_gas is not None:
                gas = fixed_gas
            else:
                simulated = await self.broadcaster.simulate(mnemonic, msg)
                gas = math.ceil(simulated * self.gas_adjustment)
            gas = math.ceil(gas * gas_boost)
            fees = compute_fee(gas, price)
            logger.debug("%s: gas=%s fees=%s", label, gas, fees)
            return await self.broadcaster.broadcast(mnemonic, msg, gas=gas, fees=fees)

        def should_retry(exc: BaseException) -> bool:
            action = classify_chain_error(exc)
            if action is ChainErrorAction.FAIL:
                return False
            if isinstance(exc, LedgerRejectedError):
                return action is ChainErrorAction.RESET_SEQUENCE or exc.out_of_gas
            return True

        def on_retry(exc: BaseException, attempt_no: int) -> None:
            nonlocal gas_boost
            if isinstance(exc, LedgerRejectedError) and exc.out_of_gas:
                gas_boost *= self.gas_adjustment
                logger.warning("%s ran out of gas, raising the limit by %.2fx", label, gas_boost)
            self._on_retry(exc, attempt_no)

        result = await retry_async(
            attempt, self.policy, label=label, should_retry=should_retry, on_retry=on_retry, sleep=self._sleep
        )
        if result.ok:
            logger.info("%s succeeded: tx=%s", label, result.value.tx_hash)
            return TxOutcome(tx_hash=result.value.tx_hash, attempts=result.attempts)

        error = result.error
        rejected = isinstance(error, LedgerRejectedError) or classify_chain_error(error) is ChainErrorAction.FAIL
        logger.error("%s failed after %d attempt(s): %s", label, result.attempts, error)
        return TxOutcome(error=str(error), rejected=rejected, attempts=result.attempts)
