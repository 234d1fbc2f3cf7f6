"""Explicit construction of the relay's collaborators from configuration."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Optional

from .broadcaster import AlloradTxBroadcaster
from .chain_reader import AlloradCliReader, AlloradRunner, ChainReader, NodeRing, SdkChainReader
from .config import RelayConfig
from .connector import LedgerConnector
from .nonce import NonceWindowResolver
from .performance import PerformanceCollector
from .pipeline import SubmissionPipeline, WorkerPool
from .prediction import PredictionClient
from .scheduler import InferenceScheduler
from .secret_store import SecretStore, build_secret_store
from .store import RelayStore
from .wallet import WalletProvisioner

logger = logging.getLogger(__name__)

__all__ = ["Relay", "build_reader"]


def build_reader(config: RelayConfig, runner: AlloradRunner) -> ChainReader:
    if config.chain_reader == "sdk":
        return SdkChainReader(
            chain_id=config.chain_id,
            grpc_url=config.grpc_url,
            rest_url=config.rest_url,
            fee_denom=config.fee_denom,
            timeout=config.chain_command_timeout_s,
        )
    return AlloradCliReader(runner)


@dataclass
class Relay:
    config: RelayConfig
    store: RelayStore
    secrets: SecretStore
    connector: LedgerConnector
    resolver: NonceWindowResolver
    provisioner: WalletProvisioner
    predictions: PredictionClient
    pipeline: SubmissionPipeline

    @classmethod
    def from_config(
        cls,
        config: RelayConfig,
        store: Optional[RelayStore] = None,
        secrets: Optional[SecretStore] = None,
    ) -> "Relay":
        nodes = NodeRing(config.rpc_urls)
        runner = AlloradRunner(config.allorad_binary, nodes, timeout=config.chain_command_timeout_s)
        broadcaster = AlloradTxBroadcaster(runner, config.chain_id, config.keyring_backend)
        connector = LedgerConnector.from_config(config, build_reader(config, runner), broadcaster, nodes)

        store = store or RelayStore.from_url(config.database_url)
        secrets = secrets or build_secret_store(config)
        resolver = NonceWindowResolver(connector, scan_depth=config.nonce_scan_depth)
        provisioner = WalletProvisioner(secrets, store, connector, config)
        predictions = PredictionClient(timeout=config.webhook_timeout_s, policy=config.invalid_model_output_policy)
        pipeline = SubmissionPipeline(store, connector, resolver, provisioner, predictions, config)
        logger.info(
            "Relay configured: chain=%s reader=%s nodes=%d secrets=%s",
            config.chain_id,
            config.chain_reader,
            len(config.rpc_urls),
            config.secrets_backend,
        )
        return cls(config, store, secrets, connector, resolver, provisioner, predictions, pipeline)

    async def run(self, stop: Optional[asyncio.Event] = None, drain_timeout: float = 120.0) -> None:
        """Run scheduler, worker pool and performance collector until ``stop`` is set or SIGINT/SIGTERM arrives."""

        stop = stop or asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s not supported here", sig)

        pool = WorkerPool.from_config(self.pipeline, self.config)
        scheduler = InferenceScheduler(
            self.store,
            self.connector,
            pool.enqueue,
            block_time_seconds=self.config.average_block_time_seconds,
        )
        collector: Optional[asyncio.Task] = None
        if self.config.enable_performance_collection:
            performance = PerformanceCollector(self.store, self.connector, interval=self.config.performance_interval_s)
            collector = asyncio.create_task(performance.run(stop), name="performance")
        pool.start()
        try:
            await scheduler.run(stop)
        finally:
            if collector is not None:
                stop.set()
                await collector
            logger.info("Shutting down: draining worker pool")
            await pool.drain(timeout=drain_timeout)
            await self.predictions.close()
