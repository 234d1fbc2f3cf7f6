"""Periodic job scheduling, one cadence per active topic."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional

from .connector import LedgerConnector
from .logging_utils import get_stage_logger
from .models import Job
from .retry import Sleep
from .store import RelayStore

logger = get_stage_logger("scheduler")

__all__ = ["RESYNC_INTERVAL_SECONDS", "topic_interval_seconds", "InferenceScheduler"]

RESYNC_INTERVAL_SECONDS = 300


def topic_interval_seconds(epoch_length: int, block_time_seconds: float) -> int:
    """Epoch duration rounded to whole minutes, never below one minute."""

    minutes = max(1, round(epoch_length * block_time_seconds / 60))
    return minutes * 60


class InferenceScheduler:
    """Keeps one periodic task per topic that has active models.

    Each tick enqueues one job per active model of the topic. The first tick
    runs as soon as the topic is scheduled.
    """

    def __init__(
        self,
        store: RelayStore,
        connector: LedgerConnector,
        enqueue: Callable[[Job], bool],
        block_time_seconds: float = 5,
        resync_interval: float = RESYNC_INTERVAL_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.store = store
        self.connector = connector
        self.enqueue = enqueue
        self.block_time_seconds = block_time_seconds
        self.resync_interval = resync_interval
        self._sleep = sleep
        self._tasks: Dict[int, asyncio.Task] = {}
        self.intervals: Dict[int, int] = {}

    @property
    def scheduled_topics(self) -> list[int]:
        return sorted(self._tasks)

    async def tick(self, topic_id: int) -> int:
        models = await asyncio.to_thread(self.store.active_models, topic_id)
        queued = 0
        for model in models:
            if self.enqueue(Job(model_id=model.model_id, webhook_url=model.webhook_url, topic_id=topic_id)):
                queued += 1
        logger.info("Topic %s tick: enqueued %d/%d job(s)", topic_id, queued, len(models))
        return queued

    async def _run_topic(self, topic_id: int, interval: int) -> None:
        while True:
            try:
                await self.tick(topic_id)
            except Exception:  # noqa: BLE001 - keep the cadence alive
                logger.exception("Tick for topic %s failed", topic_id)
            await self._sleep(interval)

    async def sync(self) -> None:
        """Align the scheduled topics with the topics of active models."""

        topic_ids = set(await asyncio.to_thread(self.store.active_topic_ids))

        for topic_id in list(self._tasks):
            if topic_id not in topic_ids:
                logger.info("Topic %s has no active models; unscheduling", topic_id)
                self._cancel(topic_id)

        for topic_id in sorted(topic_ids - set(self._tasks)):
            topic = await self.connector.query_topic(topic_id)
            if topic is None:
                logger.warning("Topic %s not found on chain; will retry at next resync", topic_id)
                continue
            if topic.is_active is False:
                logger.info("Topic %s is inactive on chain; not scheduling", topic_id)
                continue
            interval = topic_interval_seconds(topic.epoch_length, self.block_time_seconds)
            self.intervals[topic_id] = interval
            self._tasks[topic_id] = asyncio.create_task(self._run_topic(topic_id, interval), name=f"topic-{topic_id}")
            logger.info("Scheduled topic %s every %ds (epoch_length=%d)", topic_id, interval, topic.epoch_length)

    def _cancel(self, topic_id: int) -> None:
        task = self._tasks.pop(topic_id, None)
        self.intervals.pop(topic_id, None)
        if task is not None:
            task.cancel()

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        try:
            while not stop.is_set():
                try:
                    await self.sync()
                except Exception:  # noqa: BLE001 - next resync tries again
                    logger.exception("Scheduler resync failed")
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.resync_interval)
                except asyncio.TimeoutError:
                    continue
        finally:
            await self.stop()

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for topic_id in list(self._tasks):
            self._cancel(topic_id)
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped")
