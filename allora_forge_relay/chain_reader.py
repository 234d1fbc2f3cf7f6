"""
Read access to the Allora chain.

Two interchangeable readers implement :class:`ChainReader`:

1. ``AlloradCliReader`` shells out to the ``allorad`` CLI (the default)
2. ``SdkChainReader`` uses the allora-sdk gRPC client, with bank balances
   read from the Cosmos REST endpoint

Readers raise on failure; retries and the "could not determine" results live
in the ledger connector.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import requests

from .errors import ChainCommandError
from .parsing import decode_document, extract_addresses, extract_bool, extract_height

logger = logging.getLogger(__name__)

__all__ = [
    "ChainReader",
    "NodeRing",
    "CommandOutput",
    "AlloradRunner",
    "AlloradCliReader",
    "SdkChainReader",
]

# This marker in stderr means the command failed even with a zero exit code
ERROR_MARKER = "error"


class ChainReader(Protocol):
    async def topic(self, topic_id: int) -> Mapping[str, Any]: ...

    async def is_topic_active(self, topic_id: int) -> bool: ...

    async def latest_height(self) -> int: ...

    async def is_worker_nonce_unfulfilled(self, topic_id: int, height: int) -> bool: ...

    async def can_submit_worker_payload(self, topic_id: int, address: str) -> bool: ...

    async def balance(self, address: str, denom: str) -> int: ...

    async def active_inferers(self, topic_id: int) -> List[str]: ...

    async def active_topics_at_block(self, height: int) -> List[Dict[str, Any]]: ...

    async def inferer_score_ema(self, topic_id: int, address: str) -> str: ...


class NodeRing:
    """Round-robin over the configured RPC nodes; the first one is primary."""

    def __init__(self, urls: Sequence[str]) -> None:
        if not urls:
            raise ValueError("At least one RPC URL is required")
        self._urls = list(urls)
        self._index = 0

    @property
    def current(self) -> str:
        return self._urls[self._index]

    def advance(self) -> str:
        self._index = (self._index + 1) % len(self._urls)
        if len(self._urls) > 1:
            logger.warning("Switching RPC node to %s", self.current)
        return self.current


@dataclass(frozen=True)
class CommandOutput:
    stdout: str
    stderr: str
    returncode: int


class AlloradRunner:
    """Runs ``allorad`` subcommands as asyncio subprocesses."""

    def __init__(self, binary: str, nodes: NodeRing, timeout: float = 30.0) -> None:
        self.binary = binary
        self.nodes = nodes
        self.timeout = timeout

    async def run(self, args: Sequence[str], *, stdin: Optional[str] = None, with_node: bool = True) -> CommandOutput:
        cmd = [self.binary, *[str(a) for a in args]]
        if with_node:
            cmd += ["--node", self.nodes.current]
        label = " ".join(cmd[:6])
        logger.debug("Running CLI command: %s", label)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ChainCommandError(f"{self.binary} CLI not found in PATH") from exc

        try:
            out, err = await asyncio.wait_for(
                proc.communicate(stdin.encode("utf-8") if stdin is not None else None),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise ChainCommandError(f"{label} timed out after {self.timeout}s") from exc

        result = CommandOutput(
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
            returncode=proc.returncode if proc.returncode is not None else -1,
        )
        return check_output(result, label)


def check_output(result: CommandOutput, label: str) -> CommandOutput:
    """Turn a failed exit code or an stderr error marker into :class:`ChainCommandError`."""

    stderr = result.stderr.strip()
    if result.returncode != 0:
        raise ChainCommandError(
            f"{label} exited with code {result.returncode}: {stderr or result.stdout.strip()}",
            stdout=result.stdout,
            stderr=result.stderr,
            returncode=result.returncode,
        )
    if stderr:
        if ERROR_MARKER in stderr.lower():
            raise ChainCommandError(
                f"{label} reported an error: {stderr}",
                stdout=result.stdout,
                stderr=result.stderr,
                returncode=result.returncode,
            )
        logger.warning("Stderr reported from %s: %s", label, stderr[:300])
    return result


class AlloradCliReader:
    """:class:`ChainReader` backed by ``allorad query``."""

    def __init__(self, runner: AlloradRunner) -> None:
        self.runner = runner

    async def _query(self, *args: Any) -> str:
        result = await self.runner.run(["query", *args])
        return result.stdout

    async def topic(self, topic_id: int) -> Mapping[str, Any]:
        out = await self._query("emissions", "topic", topic_id)
        document = decode_document(out)
        topic = document.get("topic") if isinstance(document, Mapping) else None
        if not isinstance(topic, Mapping):
            raise ChainCommandError(f"Unrecognised topic output for topic {topic_id}", stdout=out)
        return topic

    async def is_topic_active(self, topic_id: int) -> bool:
        out = await self._query("emissions", "is-topic-active", topic_id)
        return self._require_bool(out, ("is_topic_active", "is_active", "active", "value", "result"), "is-topic-active")

    async def latest_height(self) -> int:
        try:
            out = await self._query("block", "--type=height")
            height = extract_height(out)
        except ChainCommandError as exc:
            logger.debug("query block --type=height failed, falling back: %s", exc)
            height = None
        if height is None:
            out = await self._query("block")
            height = extract_height(out)
        if height is None:
            raise ChainCommandError("Failed to parse current block height from CLI output", stdout=out)
        return height

    async def is_worker_nonce_unfulfilled(self, topic_id: int, height: int) -> bool:
        out = await self._query("emissions", "worker-nonce-unfulfilled", topic_id, height)
        return self._require_bool(
            out, ("is_worker_nonce_unfulfilled", "unfulfilled", "value", "result"), "worker-nonce-unfulfilled"
        )

    async def can_submit_worker_payload(self, topic_id: int, address: str) -> bool:
        out = await self._query("emissions", "can-submit-worker-payload", topic_id, address)
        return self._require_bool(
            out, ("can_submit_worker_payload", "can_submit", "value", "result"), "can-submit-worker-payload"
        )

    async def balance(self, address: str, denom: str) -> int:
        out = await self._query("bank", "balances", address, "--output", "json")
        return balance_from_document(decode_document(out), denom, address)

    async def active_inferers(self, topic_id: int) -> List[str]:
        out = await self._query("emissions", "active-inferers", topic_id)
        addresses = extract_addresses(out, ("inferers", "active_inferers", "addresses"))
        return addresses or []

    async def active_topics_at_block(self, height: int) -> List[Dict[str, Any]]:
        out = await self._query("emissions", "active-topics-at-block", height)
        document = decode_document(out)
        topics = document.get("topics") if isinstance(document, Mapping) else None
        if topics is None:
            return []
        if not isinstance(topics, list):
            raise ChainCommandError("Unrecognised active-topics output", stdout=out)
        return [
            {"id": int(t["id"]), "metadata": str(t.get("metadata") or f"Topic {t['id']}")}
            for t in topics
            if isinstance(t, Mapping) and "id" in t
        ]

    async def inferer_score_ema(self, topic_id: int, address: str) -> str:
        out = await self._query("emissions", "inferer-score-ema", topic_id, address)
        return score_from_document(decode_document(out), f"inferer-score-ema {topic_id} {address}")

    @staticmethod
    def _require_bool(out: str, keys: Sequence[str], label: str) -> bool:
        value = extract_bool(out, keys)
        if value is None:
            raise ChainCommandError(f"Failed to parse {label} output", stdout=out)
        return value


def score_from_document(document: Any, label: str) -> str:
    """Read ``score`` whether it is flat or the nested ``Score`` message."""

    score = document.get("score") if isinstance(document, Mapping) else None
    if isinstance(score, Mapping):
        score = score.get("score")
    if score is None or isinstance(score, (Mapping, list, bool)):
        raise ChainCommandError(f"Unrecognised {label} output")
    return str(score)


def balance_from_document(document: Any, denom: str, address: str) -> int:
    if not isinstance(document, Mapping) or not isinstance(document.get("balances"), list):
        raise ChainCommandError(f"Unrecognised balance output for {address}")
    for entry in document["balances"]:
        if isinstance(entry, Mapping) and entry.get("denom") == denom:
            return int(entry.get("amount", "0"))
    logger.warning("%s balance not found for %s, returning 0", denom, address)
    return 0


class SdkChainReader:
    """:class:`ChainReader` backed by allora-sdk gRPC queries.

    SDK imports are deferred to first use so that the CLI reader works in
    environments where the SDK's native dependencies are unavailable.
    """

    def __init__(self, chain_id: str, grpc_url: str, rest_url: str, fee_denom: str = "uallo", timeout: float = 10.0) -> None:
        self.chain_id = chain_id
        self.grpc_url = grpc_url
        self.rest_url = rest_url.rstrip("/")
        self.fee_denom = fee_denom
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        if self._client is None:
            from allora_sdk.rpc_client import AlloraRPCClient
            from allora_sdk.rpc_client.config import AlloraNetworkConfig

            network_cfg = AlloraNetworkConfig(
                chain_id=self.chain_id,
                url=self.grpc_url,
                fee_denom=self.fee_denom,
                fee_minimum_gas_price=10.0,
            )
            self._client = AlloraRPCClient(network_cfg)
        return self._client

    async def _call(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except ChainCommandError:
            raise
        except Exception as exc:  # noqa: BLE001 - normalised for the connector
            raise ChainCommandError(f"gRPC query failed: {type(exc).__name__}: {str(exc)[:200]}") from exc

    async def topic(self, topic_id: int) -> Mapping[str, Any]:
        def fetch() -> Mapping[str, Any]:
            from allora_sdk.protos.emissions.v9 import GetTopicRequest

            topic = self._get_client().emissions.query.get_topic(GetTopicRequest(topic_id=topic_id)).topic
            return {
                "id": topic.id,
                "creator": topic.creator,
                "metadata": topic.metadata,
                "epoch_length": topic.epoch_length,
                "epoch_last_ended": topic.epoch_last_ended,
                "worker_submission_window": topic.worker_submission_window,
            }

        return await self._call(fetch)

    async def is_topic_active(self, topic_id: int) -> bool:
        def fetch() -> bool:
            from allora_sdk.protos.emissions.v9 import IsTopicActiveRequest

            return bool(self._get_client().emissions.query.is_topic_active(IsTopicActiveRequest(topic_id=topic_id)).is_active)

        return await self._call(fetch)

    async def latest_height(self) -> int:
        def fetch() -> int:
            block = self._get_client().get_latest_block()
            return int(block.header.height)

        return await self._call(fetch)

    async def is_worker_nonce_unfulfilled(self, topic_id: int, height: int) -> bool:
        def fetch() -> bool:
            from allora_sdk.protos.emissions.v9 import IsWorkerNonceUnfulfilledRequest

            resp = self._get_client().emissions.query.is_worker_nonce_unfulfilled(
                IsWorkerNonceUnfulfilledRequest(topic_id=topic_id, block_height=height)
            )
            return bool(resp.is_worker_nonce_unfulfilled)

        return await self._call(fetch)

    async def can_submit_worker_payload(self, topic_id: int, address: str) -> bool:
        def fetch() -> bool:
            from allora_sdk.protos.emissions.v9 import CanSubmitWorkerPayloadRequest

            resp = self._get_client().emissions.query.can_submit_worker_payload(
                CanSubmitWorkerPayloadRequest(topic_id=topic_id, address=address)
            )
            return bool(resp.can_submit_worker_payload)

        return await self._call(fetch)

    async def balance(self, address: str, denom: str) -> int:
        def fetch() -> int:
            url = f"{self.rest_url}/cosmos/bank/v1beta1/balances/{address}"
            resp = requests.get(url, timeout=self.timeout)
            if resp.status_code == 404:
                # Accounts appear on chain only after their first funding
                return 0
            resp.raise_for_status()
            return balance_from_document(resp.json(), denom, address)

        return await self._call(fetch)

    async def active_inferers(self, topic_id: int) -> List[str]:
        def fetch() -> List[str]:
            from allora_sdk.protos.emissions.v9 import GetActiveInferersForTopicRequest

            resp = self._get_client().emissions.query.get_active_inferers_for_topic(
                GetActiveInferersForTopicRequest(topic_id=topic_id)
            )
            return [str(a) for a in resp.inferers]

        return await self._call(fetch)

    async def active_topics_at_block(self, height: int) -> List[Dict[str, Any]]:
        def fetch() -> List[Dict[str, Any]]:
            from allora_sdk.protos.emissions.v9 import GetActiveTopicsAtBlockRequest

            resp = self._get_client().emissions.query.get_active_topics_at_block(
                GetActiveTopicsAtBlockRequest(block_height=height)
            )
            return [{"id": int(t.id), "metadata": t.metadata or f"Topic {t.id}"} for t in resp.topics]

        return await self._call(fetch)

    async def inferer_score_ema(self, topic_id: int, address: str) -> str:
        def fetch() -> str:
            from allora_sdk.protos.emissions.v9 import GetInfererScoreEmaRequest

            resp = self._get_client().emissions.query.get_inferer_score_ema(
                GetInfererScoreEmaRequest(topic_id=topic_id, inferer=address)
            )
            return str(resp.score.score)

        return await self._call(fetch)
