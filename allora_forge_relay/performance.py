"""Periodic collection of each model's inferer EMA score."""

from __future__ import annotations

import asyncio
from typing import Optional

from .connector import LedgerConnector
from .logging_utils import get_stage_logger
from .models import ModelSigningDetails, PerformanceMetric
from .store import RelayStore

logger = get_stage_logger("performance")

__all__ = ["PERFORMANCE_INTERVAL_SECONDS", "PerformanceCollector"]

PERFORMANCE_INTERVAL_SECONDS = 900


class PerformanceCollector:
    """Samples the on-chain EMA score of every active model.

    Models are visited one after the other. A model whose score cannot be read
    is skipped until the next sweep; it never stops the others.
    """

    def __init__(
        self,
        store: RelayStore,
        connector: LedgerConnector,
        interval: float = PERFORMANCE_INTERVAL_SECONDS,
    ) -> None:
        self.store = store
        self.connector = connector
        self.interval = interval

    async def collect_model(self, details: ModelSigningDetails) -> Optional[PerformanceMetric]:
        performance = await self.connector.get_worker_performance(details.topic_id, details.address)
        if performance is None:
            logger.warning(
                "No EMA score for model %s (%s) on topic %s", details.model_id, details.address, details.topic_id
            )
            return None
        metric = await asyncio.to_thread(self.store.record_performance, details.model_id, performance.ema_score)
        if metric is not None:
            logger.info("Model %s EMA score %s on topic %s", details.model_id, metric.ema_score, details.topic_id)
        return metric

    async def collect_once(self) -> int:
        """One sweep over the active models; returns the number of samples stored."""

        models = await asyncio.to_thread(self.store.active_models)
        stored = 0
        for details in models:
            try:
                if await self.collect_model(details) is not None:
                    stored += 1
            except Exception:  # noqa: BLE001 - one model never stops the sweep
                logger.exception("Performance collection failed for model %s", details.model_id)
        logger.info("Performance sweep stored %d/%d sample(s)", stored, len(models))
        return stored

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await self.collect_once()
            except Exception:  # noqa: BLE001 - next sweep tries again
                logger.exception("Performance sweep failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Performance collector stopped")
